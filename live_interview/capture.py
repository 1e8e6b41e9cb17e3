"""
Audio capture and PCM encoder.

Acquires one or two input tracks (microphone, meeting loopback, or both),
mixes them to mono, resamples to the streaming rate, quantizes to signed
16-bit PCM and emits fixed-length frames onto an asyncio queue.

Tracks come from a ``TrackProvider``. The PyAudio provider is the real one;
tests and headless deployments pass their own.

Last Grunted: 10/15/2026
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from math import gcd
from typing import Awaitable, Callable, Optional, Protocol, Sequence

import numpy as np
from scipy.signal import resample_poly

from .config import PipelineConfig
from .models import SourceMode


__all__ = [
    "AudioCapture",
    "AudioFrame",
    "AudioTrack",
    "CaptureError",
    "CapturePermissionError",
    "CaptureUnsupportedError",
    "FrameAccumulator",
    "NoAudioTrackError",
    "PyAudioTrackProvider",
    "TrackProvider",
    "downmix",
    "mix_tracks",
    "quantize_pcm16",
    "resample",
]


logger = logging.getLogger(__name__)


MAX_16BIT_INT = 32767


# =============================================================================
# Errors
# =============================================================================

class CaptureError(Exception):
    """Base class for capture failures. ``user_message`` is shown to the user."""

    def __init__(self, user_message: str) -> None:
        self.user_message = user_message
        super().__init__(user_message)


class CapturePermissionError(CaptureError):
    """The user or the OS denied access to an input device."""


class CaptureUnsupportedError(CaptureError):
    """The requested source kind is not available on this host."""


class NoAudioTrackError(CaptureError):
    """A source was granted but carries no audio."""


# =============================================================================
# Sample math
# =============================================================================

def downmix(block: np.ndarray) -> np.ndarray:
    """Average interleaved channels ``(n, channels)`` down to mono float32."""
    data = np.asarray(block, dtype=np.float32)
    if data.ndim == 2:
        data = data.mean(axis=1)
    return data.astype(np.float32, copy=False)


def resample(samples: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resample from ``source_rate`` to ``target_rate``."""
    if source_rate == target_rate or samples.size == 0:
        return samples.astype(np.float32, copy=False)
    divisor = gcd(source_rate, target_rate)
    return resample_poly(
        samples,
        up=target_rate // divisor,
        down=source_rate // divisor,
    ).astype(np.float32)


def mix_tracks(tracks: Sequence[np.ndarray], gain: float = 0.8) -> np.ndarray:
    """
    Mix mono tracks into one channel.

    A single track passes through unchanged. With several tracks each is
    attenuated by ``gain`` before summing; the shorter ones are zero-padded.
    """
    if not tracks:
        return np.zeros(0, dtype=np.float32)
    if len(tracks) == 1:
        return np.asarray(tracks[0], dtype=np.float32)

    length = max(len(track) for track in tracks)
    mixed = np.zeros(length, dtype=np.float32)
    for track in tracks:
        mixed[: len(track)] += np.asarray(track, dtype=np.float32) * gain
    return mixed


def quantize_pcm16(samples: np.ndarray) -> np.ndarray:
    """Clamp to [-1, 1] and scale to int16. Out-of-range input saturates, never wraps."""
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return (clipped * MAX_16BIT_INT).astype(np.int16)


@dataclass(frozen=True)
class AudioFrame:
    """Fixed-length block of little-endian signed 16-bit mono PCM."""

    data: bytes
    sample_rate: int = 16000

    @property
    def sample_count(self) -> int:
        return len(self.data) // 2

    @property
    def duration_ms(self) -> float:
        return self.sample_count * 1000.0 / self.sample_rate


class FrameAccumulator:
    """
    Buffers quantized samples and releases whole frames.

    Samples that do not fill a frame stay buffered for the next push, so
    nothing is dropped between capture callbacks.

    Example:
        >>> acc = FrameAccumulator(frame_samples=1600)
        >>> len(acc.push(np.zeros(1000, dtype=np.int16)))
        0
        >>> len(acc.push(np.zeros(2500, dtype=np.int16)))
        2
        >>> acc.pending
        300
    """

    def __init__(self, frame_samples: int = 1600, sample_rate: int = 16000) -> None:
        if frame_samples <= 0:
            raise ValueError("frame_samples must be positive")
        self.frame_samples = frame_samples
        self.sample_rate = sample_rate
        self._buffer = np.zeros(0, dtype=np.int16)

    @property
    def pending(self) -> int:
        """Samples buffered but not yet emitted."""
        return int(self._buffer.size)

    def push(self, samples: np.ndarray) -> list[AudioFrame]:
        self._buffer = np.concatenate([self._buffer, np.asarray(samples, dtype=np.int16)])
        frames: list[AudioFrame] = []
        while self._buffer.size >= self.frame_samples:
            chunk = self._buffer[: self.frame_samples]
            self._buffer = self._buffer[self.frame_samples:]
            frames.append(AudioFrame(chunk.astype("<i2").tobytes(), self.sample_rate))
        return frames

    def flush(self) -> Optional[AudioFrame]:
        """Emit the buffered remainder as a short final frame, if any."""
        if self._buffer.size == 0:
            return None
        frame = AudioFrame(self._buffer.astype("<i2").tobytes(), self.sample_rate)
        self._buffer = np.zeros(0, dtype=np.int16)
        return frame


# =============================================================================
# Tracks
# =============================================================================

class AudioTrack(Protocol):
    """One acquired input source."""

    name: str
    sample_rate: int

    async def read(self) -> np.ndarray:
        """Next block of float32 samples in [-1, 1], shape (n,) or (n, channels)."""

    def close(self) -> None:
        """Release the device. Must be idempotent."""


class TrackProvider(Protocol):
    """Acquires input tracks; raises CaptureError subclasses on failure."""

    def open_microphone(self) -> AudioTrack: ...

    def open_tab(self) -> AudioTrack: ...


class _PyAudioTrack:
    """Blocking PyAudio input stream read off the event loop."""

    def __init__(
        self,
        name: str,
        pa: object,
        stream: object,
        sample_rate: int,
        channels: int,
        frames_per_buffer: int,
    ) -> None:
        self.name = name
        self.sample_rate = sample_rate
        self._pa = pa
        self._stream = stream
        self._channels = channels
        self._frames_per_buffer = frames_per_buffer
        self._closed = False

    async def read(self) -> np.ndarray:
        raw = await asyncio.to_thread(
            self._stream.read, self._frames_per_buffer, exception_on_overflow=False
        )
        samples = np.frombuffer(raw, dtype=np.int16).astype(np.float32) / 32768.0
        if self._channels > 1:
            samples = samples.reshape(-1, self._channels)
        return samples

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._stream.stop_stream()
            self._stream.close()
        finally:
            self._pa.terminate()
        logger.info("Closed audio track '%s'", self.name)


class PyAudioTrackProvider:
    """
    Opens input devices with PyAudio.

    The meeting ("tab") source is a loopback or monitor input device, found by
    case-insensitive name match against ``loopback_names``.

    PyAudio is imported lazily so the rest of the pipeline runs on hosts
    without PortAudio.
    """

    def __init__(
        self,
        microphone_name: Optional[str] = None,
        loopback_names: Sequence[str] = ("monitor", "loopback", "stereo mix", "blackhole"),
        block_ms: int = 100,
    ) -> None:
        self.microphone_name = microphone_name
        self.loopback_names = tuple(name.lower() for name in loopback_names)
        self.block_ms = block_ms

    def _pyaudio(self):
        try:
            import pyaudio
        except ImportError as exc:
            raise CaptureUnsupportedError(
                "Audio capture is not available on this host. Install the 'audio' extra "
                "(PyAudio) and try again."
            ) from exc
        return pyaudio

    def _find_device(self, pa: object, needles: Sequence[str]) -> Optional[dict]:
        for index in range(pa.get_device_count()):
            info = pa.get_device_info_by_index(index)
            name = str(info.get("name", "")).lower()
            if any(needle in name for needle in needles):
                return info
        return None

    def _open(self, pyaudio, pa: object, info: dict, label: str) -> _PyAudioTrack:
        channels = min(2, int(info.get("maxInputChannels", 0)))
        if channels < 1:
            raise NoAudioTrackError(
                f"The selected {label} device has no audio input. Pick a device that carries audio."
            )
        sample_rate = int(info.get("defaultSampleRate", 48000))
        frames_per_buffer = int(sample_rate * self.block_ms / 1000)
        try:
            stream = pa.open(
                format=pyaudio.paInt16,
                channels=channels,
                rate=sample_rate,
                input=True,
                input_device_index=int(info["index"]),
                frames_per_buffer=frames_per_buffer,
            )
        except OSError as exc:
            raise CapturePermissionError(
                f"Access to the {label} was denied. Allow audio access for this "
                "application and start recording again."
            ) from exc
        logger.info(
            "Opened %s '%s' (%d ch @ %d Hz)", label, info.get("name"), channels, sample_rate
        )
        return _PyAudioTrack(label, pa, stream, sample_rate, channels, frames_per_buffer)

    def open_microphone(self) -> AudioTrack:
        pyaudio = self._pyaudio()
        pa = pyaudio.PyAudio()
        try:
            if self.microphone_name:
                info = self._find_device(pa, (self.microphone_name.lower(),))
            else:
                try:
                    info = pa.get_default_input_device_info()
                except OSError:
                    info = None
            if info is None:
                raise NoAudioTrackError(
                    "No microphone was found. Connect a microphone and start recording again."
                )
            return self._open(pyaudio, pa, info, "microphone")
        except CaptureError:
            pa.terminate()
            raise

    def open_tab(self) -> AudioTrack:
        pyaudio = self._pyaudio()
        pa = pyaudio.PyAudio()
        try:
            info = self._find_device(pa, self.loopback_names)
            if info is None:
                raise CaptureUnsupportedError(
                    "Meeting audio capture is not supported here: no loopback or monitor "
                    "input device was found. Use microphone-only mode or enable a loopback device."
                )
            return self._open(pyaudio, pa, info, "meeting audio")
        except CaptureError:
            pa.terminate()
            raise


# =============================================================================
# Capture
# =============================================================================

class AudioCapture:
    """
    Pumps mixed 16 kHz PCM frames from acquired tracks onto a queue.

    ``None`` is put on the queue after the last frame once capture stops.

    Example:
        >>> queue: asyncio.Queue[AudioFrame | None] = asyncio.Queue()
        >>> capture = AudioCapture(PyAudioTrackProvider(), PipelineConfig())
        >>> await capture.start(SourceMode.BOTH, queue)
        >>> ...
        >>> await capture.stop()
    """

    def __init__(
        self,
        provider: TrackProvider,
        config: Optional[PipelineConfig] = None,
        on_error: Optional[Callable[[CaptureError], Awaitable[None]]] = None,
    ) -> None:
        self.provider = provider
        self.config = config or PipelineConfig()
        self.on_error = on_error
        self._tracks: list[AudioTrack] = []
        self._queue: Optional[asyncio.Queue[Optional[AudioFrame]]] = None
        self._accumulator = FrameAccumulator(self.config.frame_samples, self.config.sample_rate)
        self._task: Optional[asyncio.Task[None]] = None
        self.error: Optional[CaptureError] = None
        self.frames_emitted = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def track_count(self) -> int:
        return len(self._tracks)

    def _acquire(self, source_mode: SourceMode) -> list[AudioTrack]:
        tracks: list[AudioTrack] = []
        try:
            # Meeting audio first: it is the source most likely to be refused.
            if source_mode in (SourceMode.TAB, SourceMode.BOTH):
                tracks.append(self.provider.open_tab())
            if source_mode in (SourceMode.MIC, SourceMode.BOTH):
                tracks.append(self.provider.open_microphone())
        except CaptureError:
            for track in tracks:
                track.close()
            raise
        return tracks

    async def start(
        self,
        source_mode: SourceMode,
        queue: asyncio.Queue[Optional[AudioFrame]],
    ) -> None:
        """
        Acquire tracks for ``source_mode`` and start pumping frames.

        Raises:
            CaptureError: If any track cannot be acquired. Tracks acquired
                before the failure are released.
            RuntimeError: If capture is already running.
        """
        if self.is_running:
            raise RuntimeError("Capture already running")
        self.error = None
        self._tracks = self._acquire(SourceMode(source_mode))
        self._queue = queue
        self._accumulator = FrameAccumulator(self.config.frame_samples, self.config.sample_rate)
        self._task = asyncio.create_task(self._pump())
        logger.info(
            "Capture started (mode=%s, tracks=%d)",
            SourceMode(source_mode).value,
            len(self._tracks),
        )

    async def _read_mixed(self) -> np.ndarray:
        blocks = await asyncio.gather(*(track.read() for track in self._tracks))
        mono = [
            resample(downmix(block), track.sample_rate, self.config.sample_rate)
            for track, block in zip(self._tracks, blocks)
        ]
        return mix_tracks(mono, self.config.mix_gain)

    async def _emit(self, frame: AudioFrame) -> None:
        assert self._queue is not None
        await self._queue.put(frame)
        self.frames_emitted += 1

    async def _pump(self) -> None:
        try:
            while True:
                mixed = await self._read_mixed()
                for frame in self._accumulator.push(quantize_pcm16(mixed)):
                    await self._emit(frame)
        except asyncio.CancelledError:
            self._release()
            raise
        except CaptureError as exc:
            self.error = exc
            logger.error("Capture failed: %s", exc.user_message)
        except Exception as exc:
            self.error = CaptureError(
                f"Audio capture stopped unexpectedly ({exc}). The transcript so far is kept; "
                "start recording again to continue."
            )
            logger.error("Capture pump crashed: %s", exc, exc_info=True)

        self._release()
        await self._end_stream()
        if self.on_error is not None and self.error is not None:
            await self.on_error(self.error)

    async def _end_stream(self) -> None:
        if self._queue is None:
            return
        remainder = self._accumulator.flush()
        if remainder is not None:
            await self._emit(remainder)
        await self._queue.put(None)
        self._queue = None

    def _release(self) -> None:
        for track in self._tracks:
            try:
                track.close()
            except Exception as exc:  # noqa: BLE001 - release every track
                logger.warning("Failed to close track '%s': %s", getattr(track, "name", "?"), exc)
        self._tracks = []

    async def stop(self) -> None:
        """Stop pumping, flush the partial frame, release all tracks, and end the stream."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self._release()
        await self._end_stream()
        logger.info("Capture stopped (frames emitted=%d)", self.frames_emitted)
