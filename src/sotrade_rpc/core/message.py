"""
Wire constants and framing for the query/response protocol.
"""

import math
import msgpack
from enum import Enum
from typing import Any, Dict, Tuple


PROTOCOL_VERSION = 1
ID_SEPARATOR = "--"
WILDCARD = "*"


class Encoding(Enum):
    """Body encodings a server may use for a response envelope."""

    RAW = "raw"
    LZMA = "lzma"
    SPLIT = "split"


class TransportEvent(Enum):
    """Named events exchanged with the transport socket."""

    CONNECT = "connect"
    DISCONNECT = "disconnect"
    QUERY = "query"
    RESPONSE = "response"
    PUSH = "push"
    PUSH_CONTAINER = "push-container"


# Request fields that steer the client and never influence the cache identity
CACHE_EXCLUDED_FIELDS = ("_cache", "id", "_prefill")

INTERNAL_SERVER_ERROR = "internal-server-error"
DEBUG_INFO = "debug-info"


def make_request_id(request_type: str, counter: int) -> str:
    """Build a correlation id such as ``ping--1``."""
    return f"{request_type}{ID_SEPARATOR}{counter}"


def parse_request_id(request_id: str) -> Tuple[str, int]:
    """Split a correlation id into its request type and numeric counter.

    The type is everything before the last separator so that request types
    containing ``--`` still round-trip.
    """
    request_type, sep, counter = str(request_id).rpartition(ID_SEPARATOR)
    if not sep:
        raise ValueError(f"Malformed correlation id: {request_id!r}")
    try:
        return request_type, int(counter)
    except ValueError:
        raise ValueError(f"Malformed correlation id: {request_id!r}")


def _sanitize_for_msgpack(obj: Any) -> Any:
    """Sanitize object for msgpack interop safety across languages.

    Handles:
    - NaN/Infinity → null
    - Integer overflow → clamp to int64
    - Non-string keys → string conversion
    """
    INT64_MAX = 2**63 - 1
    INT64_MIN = -(2**63)

    if isinstance(obj, dict):
        return {str(k): _sanitize_for_msgpack(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_sanitize_for_msgpack(v) for v in obj]
    elif isinstance(obj, bool):
        return obj
    elif isinstance(obj, float):
        if math.isnan(obj) or math.isinf(obj):
            return None
        return obj
    elif isinstance(obj, int):
        return max(INT64_MIN, min(INT64_MAX, obj))
    return obj


def pack_frame(event: str, payload: Any) -> bytes:
    """Pack a named transport event for transmission."""
    frame: Dict[str, Any] = {"ev": event, "data": _sanitize_for_msgpack(payload)}
    return msgpack.packb(frame, use_bin_type=True)


def unpack_frame(data: bytes) -> Tuple[str, Any]:
    """Unpack a transport frame into ``(event, payload)`` with validation."""
    if not isinstance(data, bytes):
        raise ValueError(f"Expected bytes, got {type(data)}")

    if len(data) == 0:
        raise ValueError("Empty frame data")

    try:
        # Size limits guard against hostile peers
        unpacked = msgpack.unpackb(
            data,
            raw=False,
            max_bin_len=10 * 1024 * 1024,
            max_str_len=10 * 1024 * 1024,
            max_array_len=100_000,
            max_map_len=100_000,
        )
    except msgpack.exceptions.ExtraData as e:
        raise ValueError(f"Frame contains extra data: {e}")
    except (msgpack.exceptions.UnpackException, ValueError) as e:
        raise ValueError(f"Failed to unpack frame: {e}")

    if not isinstance(unpacked, dict):
        raise ValueError(f"Expected dict from msgpack, got {type(unpacked)}")
    if not isinstance(unpacked.get("ev"), str):
        raise ValueError("Frame is missing its event name")

    return unpacked["ev"], unpacked.get("data")
