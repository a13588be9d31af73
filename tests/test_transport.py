"""
Tests for the ZeroMQ transport socket.

The zmq context is replaced by an in-memory mock so no network is used.
"""

import asyncio
import sys
import os

import msgpack
import pytest
import zmq

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc.core.logging import StructuredLogger
from sotrade_rpc.core.message import pack_frame
from sotrade_rpc.core.transport import ZmqSocket, ZmqTransport


class MockZmqSocket:
    """Mock asyncio ZeroMQ socket for testing."""

    def __init__(self, socket_type):
        self.socket_type = socket_type
        self.options = {}
        self.endpoint = None
        self.sent_multipart = []
        self.incoming = []
        self.busy = 0
        self.recv_error = None
        self.closed = False

    def setsockopt(self, option, value):
        self.options[option] = value

    def connect(self, endpoint):
        self.endpoint = endpoint

    async def send_multipart(self, frames, flags=0):
        if self.busy:
            self.busy -= 1
            raise zmq.Again()
        self.sent_multipart.append((frames, flags))

    async def recv_multipart(self, flags=0):
        if self.recv_error is not None:
            raise self.recv_error
        if not self.incoming:
            raise zmq.Again()
        return self.incoming.pop(0)

    def close(self):
        self.closed = True


class MockContext:
    """Mock ZeroMQ context for testing."""

    def __init__(self):
        self.sockets = []
        self.terminated = False

    def socket(self, socket_type):
        sock = MockZmqSocket(socket_type)
        self.sockets.append(sock)
        return sock

    def term(self):
        self.terminated = True


def make_socket(**kwargs):
    context = MockContext()
    sock = ZmqSocket("tcp://127.0.0.1:5555", context=context, poll_interval=0.001, **kwargs)
    return sock, context


async def settle(delay=0.02):
    await asyncio.sleep(delay)


class TestConnect:
    """Test socket setup."""

    def test_connect_opens_dealer(self):
        async def run():
            sock, context = make_socket()
            events = []
            sock.on("connect", lambda payload: events.append("connect"))

            await sock.connect()
            inner = context.sockets[0]
            await sock.close()
            return sock, inner, events

        sock, inner, events = asyncio.run(run())
        assert inner.socket_type == zmq.DEALER
        assert inner.endpoint == "tcp://127.0.0.1:5555"
        assert inner.options[zmq.LINGER] == 0
        assert events == ["connect"]

    def test_connect_is_idempotent(self):
        async def run():
            sock, context = make_socket()
            await sock.connect()
            await sock.connect()
            count = len(context.sockets)
            await sock.close()
            return count

        assert asyncio.run(run()) == 1

    def test_force_new(self):
        async def run():
            sock, context = make_socket()
            events = []
            sock.on("connect", lambda payload: events.append("connect"))
            await sock.connect()
            await sock.connect(force_new=True)
            sockets = list(context.sockets)
            await sock.close()
            return sockets, events

        sockets, events = asyncio.run(run())
        assert len(sockets) == 2
        assert sockets[0].closed
        assert events == ["connect", "connect"]

    def test_connect_after_close(self):
        async def run():
            sock, _ = make_socket()
            await sock.close()
            with pytest.raises(ConnectionError):
                await sock.connect()

        asyncio.run(run())


class TestTraffic:
    """Test emitting and receiving named events."""

    def test_emit_framing(self):
        async def run():
            sock, context = make_socket()
            await sock.connect()
            await sock.emit("query", {"type": "ping", "id": "ping--1"})
            sent = context.sockets[0].sent_multipart
            await sock.close()
            return sent

        sent = asyncio.run(run())
        frames, flags = sent[0]
        assert frames[0] == b""
        assert msgpack.unpackb(frames[1], raw=False) == {
            "ev": "query",
            "data": {"type": "ping", "id": "ping--1"},
        }
        assert flags == zmq.NOBLOCK

    def test_emit_requires_connection(self):
        async def run():
            sock, _ = make_socket()
            with pytest.raises(ConnectionError):
                await sock.emit("query", {})

        asyncio.run(run())

    def test_emit_retries_when_busy(self):
        async def run():
            sock, context = make_socket()
            await sock.connect()
            context.sockets[0].busy = 1
            await sock.emit("query", {"n": 1}, retries=2)
            sent = context.sockets[0].sent_multipart
            await sock.close()
            return sent

        assert len(asyncio.run(run())) == 1

    def test_emit_gives_up(self):
        async def run():
            sock, context = make_socket()
            await sock.connect()
            context.sockets[0].busy = 5
            with pytest.raises(ConnectionError, match="busy"):
                await sock.emit("query", {}, retries=2)
            await sock.close()

        asyncio.run(run())

    def test_receive_dispatches(self):
        async def run():
            sock, context = make_socket()
            received = []

            async def on_response(payload):
                received.append(payload)

            sock.on("response", on_response)
            await sock.connect()
            context.sockets[0].incoming.append(
                [b"", pack_frame("response", {"e": "raw", "s": "{}", "t": 1})]
            )
            await settle()
            await sock.close()
            return received

        assert asyncio.run(run()) == [{"e": "raw", "s": "{}", "t": 1}]

    def test_malformed_frame_logged(self):
        async def run():
            entries = []
            sock, _ = make_socket(logger=StructuredLogger(handler=entries.append))
            await sock.handle_frame(b"\xc1")
            return entries

        entries = asyncio.run(run())
        assert entries[0].event == "decode_error"

    def test_handler_error_isolated(self):
        async def run():
            entries = []
            sock, _ = make_socket(logger=StructuredLogger(handler=entries.append))
            seen = []

            def boom(payload):
                raise RuntimeError("boom")

            sock.on("push", boom)
            sock.on("push", seen.append)
            await sock.handle_frame(pack_frame("push", {"type": "x"}))
            return entries, seen

        entries, seen = asyncio.run(run())
        assert entries[0].event == "handler_error"
        assert seen == [{"type": "x"}]

    def test_remove_listener(self):
        async def run():
            sock, _ = make_socket()
            seen = []
            sock.on("push", seen.append)
            sock.remove_listener("push", seen.append)
            await sock.handle_frame(pack_frame("push", {}))
            return seen

        assert asyncio.run(run()) == []


class TestDisconnect:
    """Test loss and shutdown."""

    def test_close_fires_disconnect(self):
        async def run():
            sock, context = make_socket()
            reasons = []
            sock.on("disconnect", reasons.append)
            await sock.connect()
            await sock.close()
            await sock.close()
            return sock, context, reasons

        sock, context, reasons = asyncio.run(run())
        assert reasons == ["io client disconnect"]
        assert not sock.connected
        assert sock.closed
        assert context.sockets[0].closed
        # A supplied context belongs to the caller
        assert not context.terminated

    def test_close_terminates_own_context(self):
        async def run():
            sock, context = make_socket()
            sock._own_context = True
            await sock.close()
            return context

        assert asyncio.run(run()).terminated

    def test_transport_error_reports_loss(self):
        async def run():
            sock, context = make_socket()
            reasons = []
            sock.on("disconnect", reasons.append)
            await sock.connect()
            context.sockets[0].recv_error = zmq.ZMQError(zmq.ENOTSOCK)
            await settle()
            connected = sock.connected
            await sock.close()
            return reasons, connected

        reasons, connected = asyncio.run(run())
        assert len(reasons) == 1
        assert reasons[0].startswith("transport error")
        assert connected is False


class TestZmqTransport:
    """Test the connect factory."""

    def test_factory_returns_connected_socket(self):
        async def run():
            context = MockContext()
            transport = ZmqTransport("tcp://127.0.0.1:6000", context=context)
            sock = await transport()
            connected = sock.connected
            await sock.close()
            return sock, connected, context

        sock, connected, context = asyncio.run(run())
        assert isinstance(sock, ZmqSocket)
        assert connected
        assert context.sockets[0].endpoint == "tcp://127.0.0.1:6000"
