"""
sotrade-rpc - correlated request/response over an event transport

Turns a bidirectional, named-event transport (no notion of "reply to this
call") into stateless RPC: every call resolves exactly once with its
response, while server pushes are delivered to listeners.

## Quick Start

```python
from sotrade_rpc import Connection, ZmqTransport

conn = Connection(ZmqTransport("tcp://localhost:5555"))
await conn.start()

# Await the response
reply = await conn.call("ping")

# Or use a continuation
conn.call("get-ranking", {"since": 0}, lambda reply: print(reply["result"]))

await conn.close()
```

### Listening for pushes
```python
conn.on("trade", lambda event: print(event))     # one event type
conn.on("*", lambda event: print(event["type"]))  # everything

# Release automatically when a task finishes
conn.on("trade", handle_trade, scope=some_task)

event = await conn.once("order-filled")
```

### Caching, signing and compression
```python
from sotrade_rpc import ConnectionConfig, LzmaDecompressor

conn = Connection(
    ZmqTransport("tcp://localhost:5555"),
    signer=my_signer,                 # async create_signed_message(payload)
    decompressor=LzmaDecompressor(),  # accept "lzma" encoded replies
    config=ConnectionConfig.from_env(),
)

# Answered from cache for 30 seconds; a session key change clears it
quote = await conn.call("get-quote", {"symbol": "ACME", "_cache": 30})
```

### With Observability (Metrics & Logging)
```python
from sotrade_rpc import Connection, default_json_handler

conn = Connection(transport, log_handler=default_json_handler)
await conn.start()

metrics = conn.metrics.snapshot()
print(f"Avg round trip: {metrics.latency_avg_ms}ms")
print(f"Cache hits: {metrics.cache_hits}")
```

## Exports

- Connection: Query/response engine over a transport socket
- ConnectionConfig: Tunables, loadable from SOTRADE_* environment variables
- ZmqTransport / ZmqSocket: ZeroMQ DEALER transport adapter
- Decoder, UnsupportedEncoding: Response envelope decoding
- CorrelationRegistry, ResponseCache, ListenerRegistry: Protocol building blocks
- Metrics: Metrics collection for observability
- StructuredLogger: Structured logging
"""

from .core.connection import Connection, ConnectionClosedError, ConnectionState
from .core.config import ConnectionConfig
from .core.transport import ZmqSocket, ZmqTransport
from .core.decoder import Decoder, ProtocolError, UnsupportedEncoding
from .core.registry import CorrelationRegistry, PendingCall
from .core.cache import ResponseCache, canonical_key
from .core.listeners import ListenerRegistry, Subscription
from .core.interfaces import LzmaDecompressor, MemoryKeyStorage
from .core.message import Encoding, PROTOCOL_VERSION
from .core.metrics import Metrics, MetricsSnapshot, RoundTripTiming
from .core.logging import (
    StructuredLogger,
    LogEntry,
    LogEvent,
    LogLevel,
    LogHandler,
    default_json_handler,
    default_pretty_handler,
)

__version__ = "1.0.0"
__all__ = [
    # Core
    "Connection",
    "ConnectionConfig",
    "ConnectionState",
    "ZmqSocket",
    "ZmqTransport",
    "Decoder",
    "CorrelationRegistry",
    "PendingCall",
    "ResponseCache",
    "canonical_key",
    "ListenerRegistry",
    "Subscription",
    "LzmaDecompressor",
    "MemoryKeyStorage",
    "Encoding",
    "PROTOCOL_VERSION",
    # Errors
    "ConnectionClosedError",
    "ProtocolError",
    "UnsupportedEncoding",
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
