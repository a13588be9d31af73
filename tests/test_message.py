"""
Tests for wire constants, correlation ids and transport framing.

Tests cover:
- Correlation id construction and parsing
- Frame pack/unpack
- Sanitization (NaN, Infinity, integer overflow, non-string keys)
- Error handling for invalid frames
"""

import math
import msgpack
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc.core.message import (
    Encoding,
    TransportEvent,
    CACHE_EXCLUDED_FIELDS,
    PROTOCOL_VERSION,
    make_request_id,
    parse_request_id,
    pack_frame,
    unpack_frame,
    _sanitize_for_msgpack,
)


class TestConstants:
    """Test protocol constants."""

    def test_transport_events(self):
        assert TransportEvent.QUERY.value == "query"
        assert TransportEvent.RESPONSE.value == "response"
        assert TransportEvent.PUSH.value == "push"
        assert TransportEvent.PUSH_CONTAINER.value == "push-container"

    def test_encodings(self):
        assert {e.value for e in Encoding} == {"raw", "lzma", "split"}

    def test_cache_excluded_fields(self):
        assert set(CACHE_EXCLUDED_FIELDS) == {"_cache", "id", "_prefill"}

    def test_protocol_version(self):
        assert PROTOCOL_VERSION == 1


class TestRequestIds:
    """Test correlation id helpers."""

    def test_make(self):
        assert make_request_id("ping", 1) == "ping--1"

    def test_parse(self):
        assert parse_request_id("get-ranking--17") == ("get-ranking", 17)

    def test_type_with_separator(self):
        request_id = make_request_id("odd--name", 3)
        assert parse_request_id(request_id) == ("odd--name", 3)

    def test_missing_separator(self):
        with pytest.raises(ValueError):
            parse_request_id("ping")

    def test_non_numeric_counter(self):
        with pytest.raises(ValueError):
            parse_request_id("ping--abc")

    def test_none(self):
        with pytest.raises(ValueError):
            parse_request_id(None)


class TestFrames:
    """Test transport frame packing."""

    def test_roundtrip(self):
        payload = {"type": "ping", "id": "ping--1", "pv": 1}
        assert unpack_frame(pack_frame("query", payload)) == ("query", payload)

    def test_frame_layout(self):
        raw = msgpack.unpackb(pack_frame("push", {"a": 1}), raw=False)
        assert raw == {"ev": "push", "data": {"a": 1}}

    def test_binary_payload(self):
        event, payload = unpack_frame(pack_frame("response", {"e": "lzma", "s": b"\x00\xff"}))
        assert payload["s"] == b"\x00\xff"

    def test_unicode(self):
        event, payload = unpack_frame(pack_frame("push", {"name": "Zürich 株"}))
        assert payload["name"] == "Zürich 株"

    def test_missing_payload(self):
        data = msgpack.packb({"ev": "connect"}, use_bin_type=True)
        assert unpack_frame(data) == ("connect", None)

    def test_not_bytes(self):
        with pytest.raises(ValueError, match="Expected bytes"):
            unpack_frame("text")

    def test_empty(self):
        with pytest.raises(ValueError, match="Empty"):
            unpack_frame(b"")

    def test_not_a_map(self):
        with pytest.raises(ValueError, match="Expected dict"):
            unpack_frame(msgpack.packb([1, 2, 3]))

    def test_missing_event(self):
        with pytest.raises(ValueError, match="event name"):
            unpack_frame(msgpack.packb({"data": {}}))

    def test_extra_data(self):
        data = pack_frame("push", {}) + pack_frame("push", {})
        with pytest.raises(ValueError):
            unpack_frame(data)


class TestSanitization:
    """Test msgpack sanitization."""

    def test_nan_and_infinity(self):
        result = _sanitize_for_msgpack({"a": math.nan, "b": math.inf, "c": -math.inf, "d": 1.5})
        assert result == {"a": None, "b": None, "c": None, "d": 1.5}

    def test_integer_clamp(self):
        assert _sanitize_for_msgpack(2**70) == 2**63 - 1
        assert _sanitize_for_msgpack(-(2**70)) == -(2**63)

    def test_bool_preserved(self):
        assert _sanitize_for_msgpack(True) is True

    def test_non_string_keys(self):
        assert _sanitize_for_msgpack({1: "a"}) == {"1": "a"}

    def test_tuple_becomes_list(self):
        assert _sanitize_for_msgpack({"args": (1, 2)}) == {"args": [1, 2]}

    def test_nested(self):
        result = _sanitize_for_msgpack({"outer": [{"x": math.nan}]})
        assert result == {"outer": [{"x": None}]}

    def test_pack_sanitizes(self):
        _, payload = unpack_frame(pack_frame("query", {"price": math.nan}))
        assert payload == {"price": None}
