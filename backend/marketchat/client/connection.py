"""Socket channel used by a client surface.

``SocketConnection`` is an explicit service with a lifecycle
(``connect`` / ``on_message`` / ``disconnect``) that is handed to the
surface that needs it. Nothing here is module-level state.

After an unexpected drop the connection reconnects in the background with
exponential backoff and then runs the registered reconnect callbacks, which
re-join the focused room and re-fetch to close the gap.
"""
import asyncio
import contextlib
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from marketchat.conversations.schemas import Message
from marketchat.errors import TransportError

logger = logging.getLogger(__name__)

FrameHandler = Callable[[Dict[str, Any]], Awaitable[None]]
ReconnectHandler = Callable[[], Awaitable[None]]


class SocketConnection:
    """One authenticated WebSocket to ``/ws``.

    Args:
        url: Socket endpoint, e.g. ``ws://localhost:8000/ws``.
        token: Bearer credential, sent as the ``token`` query parameter.
        backoff_initial: First reconnect delay in seconds.
        backoff_max: Upper bound for the reconnect delay.
        connect_timeout: Limit for opening the socket and the ``connected`` frame.
        connector: Opens the socket; defaults to ``websockets.connect``.
    """

    def __init__(
        self,
        url: str,
        token: str,
        backoff_initial: float = 1.0,
        backoff_max: float = 30.0,
        connect_timeout: float = 10.0,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
    ) -> None:
        self.url = url
        self._token = token
        self.backoff_initial = backoff_initial
        self.backoff_max = backoff_max
        self.connect_timeout = connect_timeout
        self._connector = connector or websockets.connect

        self.connection_id: Optional[str] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False
        self._frame_handlers: List[FrameHandler] = []
        self._reconnect_handlers: List[ReconnectHandler] = []

    @property
    def connected(self) -> bool:
        return self._ws is not None

    def on_message(self, handler: FrameHandler) -> None:
        """Register a coroutine called with every decoded server frame."""
        self._frame_handlers.append(handler)

    def on_reconnect(self, handler: ReconnectHandler) -> None:
        """Register a coroutine called after each successful reconnect."""
        self._reconnect_handlers.append(handler)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> str:
        """Open the socket and start reading. Returns the connection ID.

        Raises:
            TransportError: The socket could not be opened.
        """
        self._closing = False
        await self._open()
        self._reader = asyncio.create_task(self._run())
        return self.connection_id

    def connect_in_background(self) -> None:
        """Keep trying to connect without blocking the caller.

        Used when the first ``connect()`` failed; polling covers the gap.
        """
        self._closing = False
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._run())

    async def disconnect(self) -> None:
        """Close the socket and stop reconnecting."""
        self._closing = True
        if self._reader is not None:
            self._reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        await self._close_ws()
        logger.info("[Socket] Disconnected")

    async def _open(self) -> None:
        target = f"{self.url}?{urlencode({'token': self._token})}"
        ws = None
        try:
            ws = await asyncio.wait_for(self._connector(target), self.connect_timeout)
            hello = json.loads(await asyncio.wait_for(ws.recv(), self.connect_timeout))
        except (OSError, asyncio.TimeoutError, WebSocketException, ValueError) as e:
            if ws is not None:
                await ws.close()
            raise TransportError(f"Socket connect failed: {e!r}") from e

        if not isinstance(hello, dict) or hello.get("type") != "connected":
            await ws.close()
            raise TransportError(f"Unexpected handshake frame: {hello!r}")

        self._ws = ws
        self.connection_id = hello.get("connectionId")
        logger.info("[Socket] Connected as %s (connection %s)", hello.get("userId"), self.connection_id)

    async def _close_ws(self) -> None:
        ws, self._ws = self._ws, None
        self.connection_id = None
        if ws is not None:
            with contextlib.suppress(WebSocketException, OSError):
                await ws.close()

    async def _run(self) -> None:
        while not self._closing:
            if self._ws is None:
                await self._reconnect()
                continue
            try:
                async for raw in self._ws:
                    await self._dispatch(raw)
            except (WebSocketException, OSError) as e:
                logger.warning("[Socket] Connection lost: %r", e)
            if self._closing:
                break
            await self._close_ws()

    async def _reconnect(self) -> None:
        delay = self.backoff_initial
        attempt = 0
        while not self._closing:
            await asyncio.sleep(delay)
            attempt += 1
            try:
                await self._open()
            except TransportError as e:
                logger.info("[Socket] Reconnect attempt %d failed: %s", attempt, e.message)
                delay = min(delay * 2, self.backoff_max)
                continue

            logger.info("[Socket] Reconnected after %d attempt(s)", attempt)
            for handler in self._reconnect_handlers:
                try:
                    await handler()
                except Exception:
                    logger.exception("[Socket] Reconnect handler failed")
            return

    async def _dispatch(self, raw) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            frame = None
        if not isinstance(frame, dict):
            logger.warning("[Socket] Ignoring malformed frame: %.100r", raw)
            return
        if frame.get("type") == "error":
            logger.info("[Socket] Server error %s: %s", frame.get("error"), frame.get("detail"))
        for handler in self._frame_handlers:
            try:
                await handler(frame)
            except Exception:
                logger.exception("[Socket] Frame handler failed for type=%s", frame.get("type"))

    # -- frames --------------------------------------------------------------

    async def send(self, frame: Dict[str, Any]) -> None:
        """Send one JSON frame.

        Raises:
            TransportError: Not connected, or the send failed.
        """
        if self._ws is None:
            raise TransportError("Socket is not connected")
        try:
            await self._ws.send(json.dumps(frame))
        except (WebSocketException, OSError) as e:
            raise TransportError(f"Socket send failed: {e!r}") from e

    async def join_room(self, conversation_id: str) -> None:
        await self.send({"type": "join_room", "conversationId": conversation_id})

    async def leave_room(self) -> None:
        await self.send({"type": "leave_room"})

    async def send_message(self, message: Message) -> None:
        """Advisory fan-out trigger for a message already stored via REST."""
        await self.send({
            "type": "send_message",
            "conversationId": message.conversationId,
            "message": message.model_dump(),
        })

    async def heartbeat(self) -> None:
        await self.send({"type": "heartbeat"})
