"""
Decoding of response/push envelopes into plain payload mappings.

An envelope is ``{"e": <encoding>, "s": <body>, "t": <server send time>}``.
The encoding tag is parsed into one of three body variants, each with its
own decode routine:

- ``RawBody``: ``s`` is a JSON document.
- ``CompressedBody``: ``s`` is an LZMA buffer holding a JSON document.
  Only accepted when a decompressor is configured.
- ``SplitBody``: ``s`` is a list of raw/compressed sub-envelopes. Parts are
  decoded concurrently and merged in order, later parts overriding earlier
  ones on key collisions.
"""

import asyncio
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from .interfaces import Decompressor
from .message import Encoding


class ProtocolError(ValueError):
    """Raised for malformed wire data."""


class UnsupportedEncoding(ProtocolError):
    """Raised when an envelope uses an unknown or unavailable encoding."""


@dataclass(frozen=True)
class RawBody:
    text: str


@dataclass(frozen=True)
class CompressedBody:
    data: bytes


@dataclass(frozen=True)
class SplitBody:
    parts: Tuple["Body", ...]


Body = Union[RawBody, CompressedBody, SplitBody]


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if isinstance(value, list):
        # JSON transports deliver byte buffers as integer arrays
        return bytes(value)
    raise UnsupportedEncoding(f"Compressed body must be bytes, got {type(value)}")


def parse_body(envelope: Dict[str, Any], nested: bool = False) -> Body:
    """Map the ``e`` tag of an envelope onto a body variant."""
    if not isinstance(envelope, dict):
        raise UnsupportedEncoding(f"Envelope must be a mapping, got {type(envelope)}")

    tag = envelope.get("e")
    body = envelope.get("s")

    if tag == Encoding.RAW.value:
        if isinstance(body, (bytes, bytearray)):
            body = bytes(body).decode("utf-8")
        if not isinstance(body, str):
            raise UnsupportedEncoding(f"Raw body must be text, got {type(body)}")
        return RawBody(body)

    if tag == Encoding.LZMA.value:
        return CompressedBody(_as_bytes(body))

    if tag == Encoding.SPLIT.value and not nested:
        if not isinstance(body, list):
            raise UnsupportedEncoding("Split body must be a list of envelopes")
        return SplitBody(tuple(parse_body(part, nested=True) for part in body))

    raise UnsupportedEncoding(f"Unknown/unsupported encoding: {tag!r}")


@dataclass
class _Decoded:
    fields: Dict[str, Any]
    encoded_size: int
    decoded_size: int


def _load_mapping(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except ValueError as e:
        raise UnsupportedEncoding(f"Body is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise UnsupportedEncoding(f"Body must decode to an object, got {type(value).__name__}")
    return value


class Decoder:
    """Turns raw wire envelopes into plain ``dict`` payloads.

    Args:
        decompressor: Optional async decompressor. Without one, LZMA bodies
            are rejected with ``UnsupportedEncoding``.
        clock: Wall clock in seconds, used for the ``_t_crecv`` and
            ``_t_cdeco`` stamps (milliseconds on the result).
    """

    def __init__(
        self,
        decompressor: Optional[Decompressor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.decompressor = decompressor
        self.clock = clock

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def decode(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """Decode an envelope and stamp receive/decode timing and sizes."""
        received = self._now_ms()
        body = parse_body(envelope)
        decoded = await self._decode_body(body)

        result = decoded.fields
        result["_t_crecv"] = received
        result["_t_ssend"] = envelope.get("t")
        result["_t_cdeco"] = self._now_ms()
        result["_resp_encsize"] = decoded.encoded_size
        result["_resp_decsize"] = decoded.decoded_size
        return result

    async def _decode_body(self, body: Body) -> _Decoded:
        if isinstance(body, RawBody):
            return self._decode_raw(body)
        if isinstance(body, CompressedBody):
            return await self._decode_compressed(body)
        if isinstance(body, SplitBody):
            return await self._decode_split(body)
        raise UnsupportedEncoding(f"Unhandled body variant: {type(body).__name__}")

    def _decode_raw(self, body: RawBody) -> _Decoded:
        return _Decoded(_load_mapping(body.text), len(body.text), len(body.text))

    async def _decode_compressed(self, body: CompressedBody) -> _Decoded:
        if self.decompressor is None:
            raise UnsupportedEncoding(
                "Unknown/unsupported encoding: 'lzma' (no decompressor configured)"
            )
        text = await self.decompressor.decompress(body.data)
        return _Decoded(_load_mapping(text), len(body.data), len(text))

    async def _decode_split(self, body: SplitBody) -> _Decoded:
        parts: List[_Decoded] = await asyncio.gather(
            *(self._decode_body(part) for part in body.parts)
        )

        merged: Dict[str, Any] = {}
        for part in parts:
            merged.update(part.fields)

        return _Decoded(
            merged,
            sum(p.encoded_size for p in parts),
            sum(p.decoded_size for p in parts),
        )
