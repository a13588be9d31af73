"""
Collaborator contracts consumed by the connection, plus simple defaults.
"""

import asyncio
import lzma
from typing import Any, Awaitable, Callable, Optional, Protocol, Union


Handler = Callable[[Any], Union[None, Awaitable[None]]]


class TransportSocket(Protocol):
    """Bidirectional named-event socket.

    Must fire ``connect``, ``disconnect``, ``response``, ``push`` and
    ``push-container`` events. Other named events are delivered to
    listeners of the same name. A ``closed`` attribute, when present, tells
    the connection that reconnecting is pointless. Handlers may be plain
    callables or coroutine functions; ``emit`` may return an awaitable.
    """

    def on(self, event: str, handler: Handler) -> None: ...

    def emit(self, event: str, payload: Any) -> Optional[Awaitable[None]]: ...

    def remove_listener(self, event: str, handler: Handler) -> None: ...

    def connect(self, force_new: bool = False) -> Any: ...


class KeyStorage(Protocol):
    def get_key(self) -> Optional[str]: ...

    def set_key(self, key: Optional[str]) -> Optional[str]: ...


class MessageSigner(Protocol):
    async def create_signed_message(self, payload: dict) -> Any: ...


class Decompressor(Protocol):
    async def decompress(self, data: bytes) -> str: ...


class MemoryKeyStorage:
    """Process-local session key holder used when none is supplied."""

    def __init__(self, key: Optional[str] = None):
        self._key = key

    def get_key(self) -> Optional[str]:
        return self._key

    def set_key(self, key: Optional[str]) -> Optional[str]:
        self._key = key
        return key


class LzmaDecompressor:
    """Decompress LZMA/XZ bodies off the event loop."""

    def __init__(self, encoding: str = "utf-8"):
        self.encoding = encoding

    async def decompress(self, data: bytes) -> str:
        loop = asyncio.get_running_loop()
        raw = await loop.run_in_executor(None, lzma.decompress, bytes(data))
        return raw.decode(self.encoding)
