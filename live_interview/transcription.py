"""
Streaming speech-to-text client (AssemblyAI Universal Streaming v3).

Fetches a short-lived token over HTTP, opens the streaming websocket, sends
binary PCM frames from the capture queue, and reports ``Turn`` messages as
they arrive. Sending ``{"type": "Terminate"}`` ends the stream.

The websocket connect function is injectable so tests can run without
network access.

Last Grunted: 10/16/2026
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlencode

import httpx
import websockets

from .capture import AudioFrame
from .models import ConnectionState, Turn


__all__ = [
    "ASSEMBLYAI_TOKEN_URL",
    "ASSEMBLYAI_WS_URL",
    "StreamingTranscriber",
    "TokenFetchError",
    "TranscriptionError",
    "TranscriptionTransportError",
    "build_streaming_url",
    "fetch_streaming_token",
]


logger = logging.getLogger(__name__)


ASSEMBLYAI_TOKEN_URL = "https://streaming.assemblyai.com/v3/token"
ASSEMBLYAI_WS_URL = "wss://streaming.assemblyai.com/v3/ws"


class TranscriptionError(Exception):
    """Base class for transcription failures. ``user_message`` is shown to the user."""

    def __init__(self, user_message: str) -> None:
        self.user_message = user_message
        super().__init__(user_message)


class TokenFetchError(TranscriptionError):
    """The short-lived streaming token could not be obtained."""


class TranscriptionTransportError(TranscriptionError):
    """The streaming socket failed to open or dropped."""


async def fetch_streaming_token(
    api_key: Optional[str],
    expires_in_seconds: int = 600,
    client: Optional[httpx.AsyncClient] = None,
    token_url: str = ASSEMBLYAI_TOKEN_URL,
) -> str:
    """
    Exchange the long-lived API key for a temporary streaming token.

    Raises:
        TokenFetchError: If the key is missing or the request fails.
    """
    if not api_key:
        raise TokenFetchError(
            "Speech-to-text is not configured. Set ASSEMBLYAI_API_KEY on the server and try again."
        )

    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=10.0)
    try:
        response = await http.get(
            token_url,
            params={"expires_in_seconds": expires_in_seconds},
            headers={"Authorization": api_key},
        )
    except httpx.HTTPError as exc:
        raise TokenFetchError(
            f"Could not reach the speech-to-text service ({exc}). Check the network and try again."
        ) from exc
    finally:
        if owns_client:
            await http.aclose()

    if response.status_code == 401:
        raise TokenFetchError(
            "The speech-to-text API key was rejected. Check ASSEMBLYAI_API_KEY on the server."
        )
    if response.status_code >= 400:
        raise TokenFetchError(
            f"Failed to get a recording token (HTTP {response.status_code}). Try again shortly."
        )

    try:
        token = response.json().get("token")
    except ValueError:
        token = None
    if not token:
        raise TokenFetchError("The speech-to-text service returned no token. Try again shortly.")
    return str(token)


def build_streaming_url(
    token: str,
    sample_rate: int = 16000,
    base_url: str = ASSEMBLYAI_WS_URL,
) -> str:
    query = urlencode(
        {"sample_rate": sample_rate, "formatted_finals": "true", "token": token}
    )
    return f"{base_url}?{query}"


ConnectFn = Callable[..., Awaitable[Any]]


class StreamingTranscriber:
    """
    One streaming transcription connection.

    Example:
        >>> transcriber = StreamingTranscriber(
        ...     token_provider=lambda: fetch_streaming_token(api_key),
        ...     on_turn=handle_turn,
        ...     on_state=handle_state,
        ...     on_error=handle_error,
        ... )
        >>> await transcriber.start(frame_queue)
        >>> ...
        >>> await transcriber.stop()
    """

    def __init__(
        self,
        token_provider: Callable[[], Awaitable[str]],
        on_turn: Callable[[Turn], Awaitable[None]],
        on_state: Callable[[ConnectionState], Awaitable[None]],
        on_error: Callable[[TranscriptionError], Awaitable[None]],
        sample_rate: int = 16000,
        connect: ConnectFn = websockets.connect,
        ws_url: str = ASSEMBLYAI_WS_URL,
        close_timeout: float = 3.0,
    ) -> None:
        self._token_provider = token_provider
        self._on_turn = on_turn
        self._on_state = on_state
        self._on_error = on_error
        self.sample_rate = sample_rate
        self._connect = connect
        self.ws_url = ws_url
        self.close_timeout = close_timeout

        self._ws: Any = None
        self._send_task: Optional[asyncio.Task[None]] = None
        self._receive_task: Optional[asyncio.Task[None]] = None
        self._stopping = False
        self.state = ConnectionState.DISCONNECTED
        self.frames_sent = 0

    async def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        self.state = state
        logger.info("Transcription connection: %s", state.value)
        await self._on_state(state)

    async def start(self, frames: asyncio.Queue[Optional[AudioFrame]]) -> None:
        """
        Connect and begin streaming ``frames`` until a ``None`` sentinel arrives.

        Raises:
            TranscriptionError: If the token fetch or connection fails.
        """
        # A dropped connection leaves its socket behind until the next start.
        await self._close_socket()
        self._stopping = False
        await self._set_state(ConnectionState.CONNECTING)
        try:
            token = await self._token_provider()
            url = build_streaming_url(token, self.sample_rate, self.ws_url)
            try:
                self._ws = await self._connect(url, max_size=2**20, open_timeout=20)
            except Exception as exc:
                raise TranscriptionTransportError(
                    f"Could not connect to the speech-to-text service ({exc}). Try again."
                ) from exc
        except TranscriptionError:
            await self._set_state(ConnectionState.DISCONNECTED)
            raise

        await self._set_state(ConnectionState.CONNECTED)
        self._send_task = asyncio.create_task(self._send_loop(frames))
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def _send_loop(self, frames: asyncio.Queue[Optional[AudioFrame]]) -> None:
        while True:
            frame = await frames.get()
            if frame is None:
                break
            try:
                await self._ws.send(frame.data)
                self.frames_sent += 1
            except websockets.ConnectionClosed:
                logger.debug("Socket closed while sending; dropping frames until stop")
                return
        try:
            await self._ws.send(json.dumps({"type": "Terminate"}))
            logger.info("Sent Terminate after %d frames", self.frames_sent)
        except websockets.ConnectionClosed:
            logger.debug("Socket already closed; Terminate not sent")

    async def _receive_loop(self) -> None:
        error: Optional[TranscriptionError] = None
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Ignoring non-JSON transcription message")
                    continue

                message_type = data.get("type")
                if message_type == "Turn":
                    order = data.get("turn_order")
                    if order is None:
                        continue
                    await self._on_turn(Turn(order=int(order), text=data.get("transcript") or ""))
                elif message_type == "Termination":
                    logger.info("Transcription session terminated by server")
                    break
                elif message_type == "Error":
                    logger.error("Transcription service error: %s", data.get("error"))
        except websockets.ConnectionClosed as exc:
            if not self._stopping:
                error = TranscriptionTransportError(
                    f"Connection to the speech-to-text service was lost ({exc}). "
                    "The transcript so far is kept; start recording again to continue."
                )
        finally:
            await self._set_state(ConnectionState.DISCONNECTED)

        if error is not None:
            logger.error("Transcription connection lost: %s", error.user_message)
            await self._on_error(error)

    async def stop(self) -> None:
        """
        Finish the stream: send Terminate, drain the last turns, close the socket.

        The capture side must have queued its ``None`` sentinel first, or the
        sender is cancelled after ``close_timeout``. The receiver gets the same
        grace period to see the server's ``Termination`` message.
        """
        self._stopping = True
        for task in (self._send_task, self._receive_task):
            if task is None:
                continue
            try:
                await asyncio.wait_for(asyncio.shield(task), timeout=self.close_timeout)
            except asyncio.TimeoutError:
                logger.warning("Transcription shutdown timed out; cancelling")
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        await self._close_socket()
        self._send_task = None
        self._receive_task = None
        await self._set_state(ConnectionState.DISCONNECTED)

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        ws, self._ws = self._ws, None
        try:
            await ws.close()
        except Exception as exc:  # noqa: BLE001 - closing must not mask shutdown
            logger.debug("Error closing transcription socket: %s", exc)
