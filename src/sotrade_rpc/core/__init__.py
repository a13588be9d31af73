"""
Core modules for the async query/response protocol.
"""

from .message import (
    Encoding,
    TransportEvent,
    PROTOCOL_VERSION,
    make_request_id,
    parse_request_id,
)
from .decoder import Decoder, ProtocolError, UnsupportedEncoding
from .registry import CorrelationRegistry, PendingCall
from .cache import CacheEntry, ResponseCache, canonical_key
from .listeners import ListenerRegistry, Subscription
from .interfaces import (
    Decompressor,
    KeyStorage,
    LzmaDecompressor,
    MemoryKeyStorage,
    MessageSigner,
    TransportSocket,
)
from .config import ConnectionConfig
from .connection import Connection, ConnectionClosedError, ConnectionState
from .transport import ZmqSocket, ZmqTransport
from .metrics import Metrics, MetricsSnapshot, RoundTripTiming
from .logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__all__ = [
    "Encoding",
    "TransportEvent",
    "PROTOCOL_VERSION",
    "make_request_id",
    "parse_request_id",
    "Decoder",
    "ProtocolError",
    "UnsupportedEncoding",
    "CorrelationRegistry",
    "PendingCall",
    "CacheEntry",
    "ResponseCache",
    "canonical_key",
    "ListenerRegistry",
    "Subscription",
    "Decompressor",
    "KeyStorage",
    "LzmaDecompressor",
    "MemoryKeyStorage",
    "MessageSigner",
    "TransportSocket",
    "ConnectionConfig",
    "Connection",
    "ConnectionClosedError",
    "ConnectionState",
    "ZmqSocket",
    "ZmqTransport",
    # Metrics
    "Metrics",
    "MetricsSnapshot",
    "RoundTripTiming",
    # Logging
    "StructuredLogger",
    "LogEntry",
    "LogEvent",
    "LogLevel",
    "LogHandler",
    "default_json_handler",
    "default_pretty_handler",
]
