"""
Structured logging for protocol events.

Provides JSON-formatted logs with pluggable output handlers.
"""

import time
import json
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional, Dict
from enum import Enum


class LogLevel(Enum):
    """Log levels for structured logging."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogEvent(Enum):
    """Standard log events for the query/response protocol."""

    # Traffic
    QUERY_SEND = "query_send"
    QUERY_SKIPPED = "query_skipped"
    QUERY_INVALID = "query_invalid"
    RESPONSE_RECEIVE = "response_receive"
    RESPONSE_UNMATCHED = "response_unmatched"
    PUSH_RECEIVE = "push_receive"

    # Failures
    DECODE_ERROR = "decode_error"
    SIGN_ERROR = "sign_error"
    SEND_ERROR = "send_error"
    SERVER_ERROR = "server_error"
    LISTENER_ERROR = "listener_error"
    HANDLER_ERROR = "handler_error"

    # Cache and session
    CACHE_HIT = "cache_hit"
    CACHE_INVALIDATE = "cache_invalidate"
    KEY_CHANGE = "key_change"

    # Connection
    SOCKET_CONNECT = "socket_connect"
    SOCKET_DISCONNECT = "socket_disconnect"
    SOCKET_RECONNECT = "socket_reconnect"
    CONNECTION_CLOSE = "connection_close"

    # Server diagnostics
    DEBUG_INFO = "debug_info"


@dataclass
class LogEntry:
    """
    Structured log entry with all context.

    Can be serialized to JSON or passed to custom handlers.
    """

    # Required
    event: str
    level: str
    message: str
    timestamp: float = field(default_factory=time.time)

    # Correlation
    request_id: Optional[str] = None
    request_type: Optional[str] = None

    # Context
    connection_id: Optional[str] = None
    direction: Optional[str] = None

    # Timing
    duration_ms: Optional[float] = None

    # Status
    success: Optional[bool] = None
    error: Optional[str] = None
    error_type: Optional[str] = None

    # Wire payload (dev mode data log)
    data: Optional[Any] = None

    # Custom metadata
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, omitting None values."""
        result = {}
        for key, value in asdict(self).items():
            if value is not None:
                result[key] = value
        return result

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict(), default=repr)


# Type alias for log handler
LogHandler = Callable[[LogEntry], None]


class StructuredLogger:
    """
    Structured logger with pluggable handlers.

    Usage:
        logger = StructuredLogger(
            handler=lambda entry: print(entry.to_json())
        )

        logger.info(LogEvent.SOCKET_CONNECT, "Socket connected")
        logger.error(LogEvent.DECODE_ERROR, "Bad envelope", error="...")

    Integration with Connection:
        conn = Connection(transport, log_handler=default_pretty_handler)
    """

    def __init__(
        self,
        handler: Optional[LogHandler] = None,
        level: LogLevel = LogLevel.INFO,
        connection_id: Optional[str] = None,
    ):
        self.handler = handler
        self.level = level
        self.connection_id = connection_id
        self._level_order = {
            LogLevel.DEBUG: 0,
            LogLevel.INFO: 1,
            LogLevel.WARN: 2,
            LogLevel.ERROR: 3,
        }

    def set_handler(self, handler: Optional[LogHandler]):
        """Set or update the log handler."""
        self.handler = handler

    def set_level(self, level: LogLevel):
        self.level = level

    def _should_log(self, level: LogLevel) -> bool:
        """Check if this level should be logged."""
        return self._level_order.get(level, 0) >= self._level_order.get(self.level, 0)

    def log(
        self,
        event: LogEvent,
        message: str,
        level: LogLevel = LogLevel.INFO,
        **kwargs,
    ):
        """
        Log an event with structured data.

        Args:
            event: The event type (from LogEvent enum)
            message: Human-readable message
            level: Log level (default: INFO)
            **kwargs: Additional fields for LogEntry
        """
        if not self.handler or not self._should_log(level):
            return

        entry = LogEntry(
            event=event.value,
            level=level.value,
            message=message,
            connection_id=self.connection_id,
            **kwargs,
        )

        try:
            self.handler(entry)
        except Exception as e:
            # Don't let logging errors break the protocol
            print(f"Log handler error: {e}")

    def debug(self, event: LogEvent, message: str, **kwargs):
        """Log at DEBUG level."""
        self.log(event, message, level=LogLevel.DEBUG, **kwargs)

    def info(self, event: LogEvent, message: str, **kwargs):
        """Log at INFO level."""
        self.log(event, message, level=LogLevel.INFO, **kwargs)

    def warn(self, event: LogEvent, message: str, **kwargs):
        """Log at WARN level."""
        self.log(event, message, level=LogLevel.WARN, **kwargs)

    def error(self, event: LogEvent, message: str, **kwargs):
        """Log at ERROR level."""
        self.log(event, message, level=LogLevel.ERROR, **kwargs)

    # Convenience methods for common events

    def datalog(self, event: LogEvent, direction: str, data: Any, **kwargs):
        """Log a wire payload (``>`` sent, ``<`` reply, ``!`` push, ``#`` key).

        Callers gate this on dev mode, so it is not subject to the level filter.
        """
        if not self.handler:
            return
        entry = LogEntry(
            event=event.value,
            level=LogLevel.DEBUG.value,
            message=f"{direction} {event.value}",
            connection_id=self.connection_id,
            direction=direction,
            data=data,
            **kwargs,
        )
        try:
            self.handler(entry)
        except Exception as e:
            print(f"Log handler error: {e}")

    def response_received(
        self,
        request_id: str,
        request_type: str,
        duration_ms: Optional[float] = None,
        matched: bool = True,
    ):
        """Log response arrival."""
        if matched:
            self.debug(
                LogEvent.RESPONSE_RECEIVE,
                f"Response for {request_type}",
                request_id=request_id,
                request_type=request_type,
                duration_ms=round(duration_ms, 2) if duration_ms is not None else None,
                success=True,
            )
        else:
            self.debug(
                LogEvent.RESPONSE_UNMATCHED,
                f"Dropped response for unknown call {request_id}",
                request_id=request_id,
                request_type=request_type,
            )

    def socket_connect(self, reconnect: bool = False):
        self.info(
            LogEvent.SOCKET_RECONNECT if reconnect else LogEvent.SOCKET_CONNECT,
            "Socket reconnected" if reconnect else "Socket connected",
        )

    def socket_disconnect(self, reason: Any, delay: float):
        self.warn(
            LogEvent.SOCKET_DISCONNECT,
            f"Socket disconnected ({reason}), reconnecting in {delay}s",
            metadata={"reason": str(reason), "delay": delay},
        )

    def server_error(self, marked: int):
        self.warn(
            LogEvent.SERVER_ERROR,
            f"Internal server error reported, {marked} open calls marked unanswerable",
            metadata={"marked": marked},
        )


def default_json_handler(entry: LogEntry):
    """Default handler that prints JSON to stdout."""
    print(entry.to_json())


def default_pretty_handler(entry: LogEntry):
    """Default handler that prints human-readable output."""
    timestamp = time.strftime("%H:%M:%S", time.localtime(entry.timestamp))
    level = entry.level.upper().ljust(5)
    prefix = f"[{timestamp}] [{level}]"

    parts = [prefix, entry.event, entry.message]

    if entry.request_id:
        parts.append(f"req={entry.request_id}")
    if entry.duration_ms is not None:
        parts.append(f"{entry.duration_ms:.1f}ms")
    if entry.error:
        parts.append(f"error={entry.error}")
    if entry.data is not None:
        parts.append(json.dumps(entry.data, default=repr))

    print(" ".join(parts))
