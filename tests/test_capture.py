"""
Tests for audio capture: sample math, framing and the capture pump.

Last Grunted: 10/16/2026
"""

from __future__ import annotations

import asyncio
import sys
from typing import Optional

import numpy as np
import pytest

from live_interview.capture import (
    AudioCapture,
    AudioFrame,
    CaptureError,
    CapturePermissionError,
    CaptureUnsupportedError,
    FrameAccumulator,
    PyAudioTrackProvider,
    downmix,
    mix_tracks,
    quantize_pcm16,
    resample,
)
from live_interview.config import PipelineConfig
from live_interview.models import SourceMode
from tests.mock_data import FakeTrackProvider, wait_for


def _samples(frame: AudioFrame) -> np.ndarray:
    return np.frombuffer(frame.data, dtype="<i2")


async def _drain(queue: asyncio.Queue[Optional[AudioFrame]]) -> list[Optional[AudioFrame]]:
    items: list[Optional[AudioFrame]] = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


# =============================================================================
# Sample math
# =============================================================================

class TestSampleMath:
    """Mixing, resampling and quantization."""

    def test_quantize_saturates(self):
        """Out-of-range samples clamp to full scale instead of wrapping."""
        pcm = quantize_pcm16(np.array([2.0, -2.0, 1.0, -1.0, 0.0], dtype=np.float32))

        assert pcm.dtype == np.int16
        assert pcm.tolist() == [32767, -32767, 32767, -32767, 0]

    def test_single_track_passes_through(self):
        track = np.array([0.5, -0.25], dtype=np.float32)

        np.testing.assert_allclose(mix_tracks([track]), track)

    def test_two_tracks_attenuated_and_summed(self):
        mixed = mix_tracks([np.full(4, 0.5, np.float32), np.full(4, 0.25, np.float32)], gain=0.8)

        np.testing.assert_allclose(mixed, np.full(4, 0.6), rtol=1e-6)

    def test_shorter_track_zero_padded(self):
        mixed = mix_tracks([np.ones(4, np.float32), np.ones(2, np.float32)], gain=0.5)

        np.testing.assert_allclose(mixed, [1.0, 1.0, 0.5, 0.5])

    def test_no_tracks(self):
        assert mix_tracks([]).size == 0

    def test_downmix_averages_channels(self):
        stereo = np.array([[1.0, 0.0], [0.5, 0.5]], dtype=np.float32)

        np.testing.assert_allclose(downmix(stereo), [0.5, 0.5])

    def test_resample_to_streaming_rate(self):
        """100 ms at 48 kHz becomes 100 ms at 16 kHz."""
        out = resample(np.zeros(4800, dtype=np.float32), 48000, 16000)

        assert out.size == 1600
        assert out.dtype == np.float32

    def test_resample_same_rate_is_identity(self):
        samples = np.arange(10, dtype=np.float32)

        np.testing.assert_array_equal(resample(samples, 16000, 16000), samples)


class TestFrameAccumulator:
    """Fixed-length framing."""

    def test_frames_released_when_full(self):
        acc = FrameAccumulator(frame_samples=1600)

        assert acc.push(np.zeros(1000, dtype=np.int16)) == []
        frames = acc.push(np.zeros(2500, dtype=np.int16))

        assert len(frames) == 2
        assert acc.pending == 300
        assert all(len(frame.data) == 3200 for frame in frames)
        assert frames[0].duration_ms == 100.0

    def test_little_endian_pcm(self):
        acc = FrameAccumulator(frame_samples=2)
        frame = acc.push(np.array([1, -2], dtype=np.int16))[0]

        assert frame.data == b"\x01\x00\xfe\xff"

    def test_flush_emits_remainder(self):
        acc = FrameAccumulator(frame_samples=1600)
        acc.push(np.ones(300, dtype=np.int16))

        remainder = acc.flush()

        assert remainder is not None
        assert remainder.sample_count == 300
        assert acc.flush() is None

    def test_invalid_frame_size(self):
        with pytest.raises(ValueError):
            FrameAccumulator(frame_samples=0)


# =============================================================================
# Capture pump
# =============================================================================

class TestAudioCapture:
    """Acquiring tracks and pumping frames."""

    @pytest.mark.asyncio
    async def test_both_sources_mixed_into_frames(self):
        """Two tracks at 0.5 mix to 0.8 full scale in 1600-sample frames."""
        provider = FakeTrackProvider()
        capture = AudioCapture(provider, PipelineConfig())
        queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        await capture.start(SourceMode.BOTH, queue)
        await wait_for(lambda: capture.frames_emitted >= 3)
        await capture.stop()

        items = await _drain(queue)
        frames = [item for item in items if item is not None]
        assert items[-1] is None
        assert [track.name for track in provider.opened] == ["meeting audio", "microphone"]
        assert all(track.closed for track in provider.opened)
        assert frames[0].sample_count == 1600
        assert abs(int(_samples(frames[0])[0]) - int(0.8 * 32767)) <= 1

    @pytest.mark.asyncio
    async def test_microphone_only_passes_through(self):
        provider = FakeTrackProvider()
        capture = AudioCapture(provider, PipelineConfig())
        queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        await capture.start(SourceMode.MIC, queue)
        await wait_for(lambda: capture.frames_emitted >= 1)
        await capture.stop()

        frame = queue.get_nowait()
        assert capture.track_count == 0
        assert len(provider.opened) == 1
        assert abs(int(_samples(frame)[0]) - int(0.5 * 32767)) <= 1

    @pytest.mark.asyncio
    async def test_resampled_stereo_source(self):
        """A 48 kHz stereo device still yields 16 kHz frames."""
        provider = FakeTrackProvider(sample_rate=48000, block_samples=4800, channels=2)
        capture = AudioCapture(provider, PipelineConfig())
        queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        await capture.start(SourceMode.TAB, queue)
        await wait_for(lambda: capture.frames_emitted >= 2)
        await capture.stop()

        frame = queue.get_nowait()
        assert frame.sample_count == 1600
        assert frame.sample_rate == 16000

    @pytest.mark.asyncio
    async def test_denied_source_raises_and_releases(self):
        """A refused microphone releases the already-acquired meeting track."""
        provider = FakeTrackProvider(mic_error=CapturePermissionError("Microphone access denied."))
        capture = AudioCapture(provider, PipelineConfig())
        queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        with pytest.raises(CapturePermissionError):
            await capture.start(SourceMode.BOTH, queue)

        assert len(provider.opened) == 1
        assert provider.opened[0].closed is True
        assert capture.is_running is False
        assert queue.empty()

    @pytest.mark.asyncio
    async def test_unsupported_tab_source(self):
        provider = FakeTrackProvider(tab_error=CaptureUnsupportedError("No loopback device."))
        capture = AudioCapture(provider, PipelineConfig())

        with pytest.raises(CaptureUnsupportedError):
            await capture.start(SourceMode.TAB, asyncio.Queue())

        assert provider.opened == []

    @pytest.mark.asyncio
    async def test_track_failure_ends_stream_and_reports(self):
        """A failing track ends the stream with a sentinel and reports the error."""
        errors: list[CaptureError] = []

        async def on_error(exc: CaptureError) -> None:
            errors.append(exc)

        provider = FakeTrackProvider(fail_after=3)
        capture = AudioCapture(provider, PipelineConfig(), on_error=on_error)
        queue: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        await capture.start(SourceMode.MIC, queue)
        await wait_for(lambda: bool(errors) and not capture.is_running)

        items = await _drain(queue)
        assert items[-1] is None
        assert capture.error is errors[0]
        assert provider.opened[0].closed is True
        assert capture.is_running is False

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        capture = AudioCapture(FakeTrackProvider(), PipelineConfig())
        await capture.start(SourceMode.MIC, asyncio.Queue())
        try:
            with pytest.raises(RuntimeError):
                await capture.start(SourceMode.MIC, asyncio.Queue())
        finally:
            await capture.stop()


class TestPyAudioTrackProvider:
    """Host without PortAudio bindings."""

    def test_missing_pyaudio_is_unsupported(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setitem(sys.modules, "pyaudio", None)
        provider = PyAudioTrackProvider()

        with pytest.raises(CaptureUnsupportedError) as exc_info:
            provider.open_microphone()

        assert "PyAudio" in exc_info.value.user_message
