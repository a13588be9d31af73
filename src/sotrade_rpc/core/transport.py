"""
ZeroMQ named-event transport for Connection.
"""

import asyncio
import inspect
import zmq
import zmq.asyncio
from typing import Any, Dict, List, Optional

from .interfaces import Handler
from .logging import LogEvent, StructuredLogger
from .message import TransportEvent, pack_frame, unpack_frame


class ZmqSocket:
    """
    Named-event socket over a ZeroMQ DEALER socket.

    Each frame carries ``{"ev": <event>, "data": <payload>}`` packed with
    msgpack behind an empty delimiter frame, so it pairs with a ROUTER
    server. ``connect`` and ``disconnect`` events are raised locally.
    """

    def __init__(
        self,
        endpoint: str,
        context: Optional[zmq.asyncio.Context] = None,
        logger: Optional[StructuredLogger] = None,
        poll_interval: float = 0.01,
    ):
        self.endpoint = endpoint
        self.poll_interval = poll_interval
        self._own_context = context is None
        self.context = context or zmq.asyncio.Context()
        self.socket: Optional[zmq.asyncio.Socket] = None
        self._logger = logger or StructuredLogger()
        self._handlers: Dict[str, List[Handler]] = {}
        self._recv_task: Optional[asyncio.Task] = None
        self.connected = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    # Event registration

    def on(self, event: str, handler: Handler):
        self._handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: Handler):
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def _fire(self, event: str, payload: Any = None):
        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(
                    LogEvent.HANDLER_ERROR,
                    f"Handler for {event!r} failed: {e}",
                    error=str(e),
                    error_type=type(e).__name__,
                )

    # Connection management

    def _open_socket(self):
        try:
            self.socket = self.context.socket(zmq.DEALER)
            self.socket.setsockopt(zmq.LINGER, 0)
            self.socket.setsockopt(zmq.RCVTIMEO, 100)
            self.socket.setsockopt(zmq.SNDTIMEO, 100)
            self.socket.connect(self.endpoint)
        except zmq.ZMQError as e:
            raise ConnectionError(f"Failed to setup ZMQ socket: {e}")

    async def connect(self, force_new: bool = False):
        """Open the DEALER socket; with ``force_new`` tear down the old one first."""
        if self._closed:
            raise ConnectionError("Socket is closed")
        if self.socket is not None and not force_new:
            return self

        await self._teardown()
        self._open_socket()
        self.connected = True
        self._recv_task = asyncio.create_task(self._recv_loop())
        await self._fire(TransportEvent.CONNECT.value)
        return self

    async def _teardown(self):
        task, self._recv_task = self._recv_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if self.socket is not None:
            self.socket.close()
            self.socket = None
        self.connected = False

    async def close(self):
        """Close the socket and context, raising ``disconnect`` once."""
        if self._closed:
            return
        self._closed = True
        was_connected = self.connected
        await self._teardown()
        if self._own_context:
            self.context.term()
        if was_connected:
            await self._fire(TransportEvent.DISCONNECT.value, "io client disconnect")

    # Traffic

    async def emit(self, event: str, payload: Any, retries: int = 5):
        """Send a named event, retrying while the socket is busy."""
        if self.socket is None:
            raise ConnectionError("Socket is not connected")

        frame = pack_frame(event, payload)
        for attempt in range(retries):
            try:
                await self.socket.send_multipart([b"", frame], zmq.NOBLOCK)
                return
            except zmq.Again:
                if attempt < retries - 1:
                    await asyncio.sleep(0.1)
                    continue
                raise ConnectionError("Failed to send: socket busy after retries")

    async def _recv_loop(self):
        """Poll the DEALER socket and dispatch incoming events."""
        while self.socket is not None:
            try:
                frames = await self.socket.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                await asyncio.sleep(self.poll_interval)
                continue
            except asyncio.CancelledError:
                raise
            except zmq.ZMQError as e:
                await self._lost(f"transport error: {e}")
                return

            # DEALER receives [empty_frame, frame_data]
            if len(frames) >= 2:
                await self.handle_frame(frames[-1])

    async def handle_frame(self, data: bytes):
        try:
            event, payload = unpack_frame(data)
        except ValueError as e:
            self._logger.error(
                LogEvent.DECODE_ERROR,
                f"Dropped malformed frame: {e}",
                error=str(e),
            )
            return
        await self._fire(event, payload)

    async def _lost(self, reason: str):
        if self.socket is not None:
            self.socket.close()
            self.socket = None
        self.connected = False
        self._recv_task = None
        await self._fire(TransportEvent.DISCONNECT.value, reason)


class ZmqTransport:
    """
    Connect factory producing connected ``ZmqSocket`` instances.

    Usage:
        conn = Connection(ZmqTransport("tcp://localhost:5555"))
        await conn.start()
    """

    def __init__(
        self,
        endpoint: str,
        context: Optional[zmq.asyncio.Context] = None,
        logger: Optional[StructuredLogger] = None,
    ):
        self.endpoint = endpoint
        self.context = context
        self.logger = logger

    async def __call__(self) -> ZmqSocket:
        socket = ZmqSocket(self.endpoint, context=self.context, logger=self.logger)
        await socket.connect()
        return socket
