"""
Tests for the streaming transcription client.

Last Grunted: 10/16/2026
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import httpx
import pytest
from websockets.exceptions import ConnectionClosedError

from live_interview.capture import AudioFrame
from live_interview.models import ConnectionState, Turn
from live_interview.transcription import (
    StreamingTranscriber,
    TokenFetchError,
    TranscriptionError,
    TranscriptionTransportError,
    build_streaming_url,
    fetch_streaming_token,
)
from tests.mock_data import FakeConnector, generate_turn_message, static_token, wait_for


FRAME = AudioFrame(b"\x00\x01" * 1600)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class Listener:
    """Collects transcriber callbacks."""

    def __init__(self) -> None:
        self.turns: list[Turn] = []
        self.states: list[ConnectionState] = []
        self.errors: list[TranscriptionError] = []

    async def on_turn(self, turn: Turn) -> None:
        self.turns.append(turn)

    async def on_state(self, state: ConnectionState) -> None:
        self.states.append(state)

    async def on_error(self, exc: TranscriptionError) -> None:
        self.errors.append(exc)

    def transcriber(self, connector: FakeConnector, **kwargs) -> StreamingTranscriber:
        return StreamingTranscriber(
            token_provider=kwargs.pop("token_provider", static_token),
            on_turn=self.on_turn,
            on_state=self.on_state,
            on_error=self.on_error,
            connect=connector,
            **kwargs,
        )


# =============================================================================
# Token
# =============================================================================

class TestFetchStreamingToken:
    """Temporary token exchange."""

    @pytest.mark.asyncio
    async def test_token_returned(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"token": "tmp-abc"})

        async with _client(handler) as client:
            token = await fetch_streaming_token("aai-key", client=client)

        assert token == "tmp-abc"
        assert seen[0].headers["Authorization"] == "aai-key"
        assert seen[0].url.params["expires_in_seconds"] == "600"

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(TokenFetchError, match="ASSEMBLYAI_API_KEY"):
            await fetch_streaming_token(None)

    @pytest.mark.asyncio
    async def test_rejected_key(self):
        async with _client(lambda request: httpx.Response(401)) as client:
            with pytest.raises(TokenFetchError, match="rejected"):
                await fetch_streaming_token("bad-key", client=client)

    @pytest.mark.asyncio
    async def test_server_error(self):
        async with _client(lambda request: httpx.Response(503)) as client:
            with pytest.raises(TokenFetchError, match="HTTP 503"):
                await fetch_streaming_token("aai-key", client=client)

    @pytest.mark.asyncio
    async def test_no_token_in_body(self):
        async with _client(lambda request: httpx.Response(200, json={})) as client:
            with pytest.raises(TokenFetchError, match="no token"):
                await fetch_streaming_token("aai-key", client=client)

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("name resolution failed", request=request)

        async with _client(handler) as client:
            with pytest.raises(TokenFetchError, match="Could not reach"):
                await fetch_streaming_token("aai-key", client=client)


def test_streaming_url():
    url = build_streaming_url("tmp-abc")

    assert url.startswith("wss://streaming.assemblyai.com/v3/ws?")
    assert "sample_rate=16000" in url
    assert "formatted_finals=true" in url
    assert "token=tmp-abc" in url


# =============================================================================
# Streaming
# =============================================================================

class TestStreamingTranscriber:
    """Socket lifecycle and message handling."""

    @pytest.mark.asyncio
    async def test_streams_frames_and_reports_turns(self):
        """Frames go out as binary, turns come back, Terminate ends the stream."""
        listener = Listener()
        connector = FakeConnector()
        transcriber = listener.transcriber(connector)
        frames: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()

        await transcriber.start(frames)
        socket = connector.socket
        frames.put_nowait(FRAME)
        frames.put_nowait(FRAME)
        socket.feed(generate_turn_message(0, "How do you build"))
        socket.feed(generate_turn_message(0, "How do you build a pipeline?"))
        await wait_for(lambda: len(listener.turns) == 2)

        frames.put_nowait(None)
        await transcriber.stop()

        assert "token=temp-token-123" in connector.urls[0]
        assert socket.binary_frames == [FRAME.data, FRAME.data]
        assert socket.text_frames == [{"type": "Terminate"}]
        assert socket.closed is True
        assert listener.turns[-1] == Turn(order=0, text="How do you build a pipeline?")
        assert listener.states == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]
        assert transcriber.frames_sent == 2
        assert listener.errors == []

    @pytest.mark.asyncio
    async def test_turns_after_terminate_still_delivered(self):
        """Final turns sent before the server's Termination are not lost."""
        listener = Listener()
        connector = FakeConnector(auto_terminate=False)
        transcriber = listener.transcriber(connector)
        frames: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()
        await transcriber.start(frames)

        frames.put_nowait(None)
        stopping = asyncio.create_task(transcriber.stop())
        await wait_for(lambda: bool(connector.socket.text_frames))
        connector.socket.feed(generate_turn_message(4, "Thanks for your time."))
        connector.socket.feed(json.dumps({"type": "Termination"}))
        await stopping

        assert listener.turns == [Turn(order=4, text="Thanks for your time.")]

    @pytest.mark.asyncio
    async def test_ignores_noise(self):
        listener = Listener()
        connector = FakeConnector()
        transcriber = listener.transcriber(connector)
        frames: asyncio.Queue[Optional[AudioFrame]] = asyncio.Queue()
        await transcriber.start(frames)

        socket = connector.socket
        socket.feed("not json")
        socket.feed(json.dumps({"type": "Begin", "id": "abc"}))
        socket.feed(json.dumps({"type": "Turn", "transcript": "no order"}))
        socket.feed(json.dumps({"type": "Error", "error": "bad audio"}))
        socket.feed(generate_turn_message(1, "kept"))
        await wait_for(lambda: bool(listener.turns))

        frames.put_nowait(None)
        await transcriber.stop()

        assert listener.turns == [Turn(order=1, text="kept")]

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        listener = Listener()
        transcriber = listener.transcriber(FakeConnector(error=OSError("connection refused")))

        with pytest.raises(TranscriptionTransportError, match="Could not connect"):
            await transcriber.start(asyncio.Queue())

        assert listener.states == [ConnectionState.CONNECTING, ConnectionState.DISCONNECTED]
        assert transcriber.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_token_failure(self):
        async def no_token() -> str:
            raise TokenFetchError("Speech-to-text is not configured.")

        listener = Listener()
        connector = FakeConnector()
        transcriber = listener.transcriber(connector, token_provider=no_token)

        with pytest.raises(TokenFetchError):
            await transcriber.start(asyncio.Queue())

        assert connector.urls == []
        assert transcriber.state is ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_dropped_connection_reported(self):
        """A socket that drops mid-stream reports a transport error."""
        listener = Listener()
        connector = FakeConnector()
        transcriber = listener.transcriber(connector, close_timeout=0.05)
        await transcriber.start(asyncio.Queue())

        connector.socket.fail(ConnectionClosedError(None, None))
        await wait_for(lambda: bool(listener.errors))

        assert isinstance(listener.errors[0], TranscriptionTransportError)
        assert "transcript so far is kept" in listener.errors[0].user_message
        assert transcriber.state is ConnectionState.DISCONNECTED
        await transcriber.stop()

    @pytest.mark.asyncio
    async def test_stop_without_sentinel_times_out(self):
        """Stop still completes when no end-of-stream sentinel or Termination arrives."""
        listener = Listener()
        connector = FakeConnector(auto_terminate=False)
        transcriber = listener.transcriber(connector, close_timeout=0.05)
        await transcriber.start(asyncio.Queue())

        await transcriber.stop()

        assert transcriber.state is ConnectionState.DISCONNECTED
        assert connector.socket.closed is True
        assert listener.errors == []
