"""
Async query/response connection on top of a named-event transport.
"""

import asyncio
import copy
import inspect
import json
import time
import uuid
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Tuple

from .cache import CacheEntry, ResponseCache, canonical_key
from .config import ConnectionConfig
from .decoder import Decoder, ProtocolError
from .interfaces import Decompressor, KeyStorage, MemoryKeyStorage, MessageSigner
from .listeners import ListenerRegistry, Listener, Subscription
from .logging import LogEvent, LogHandler, LogLevel, StructuredLogger
from .message import (
    DEBUG_INFO,
    INTERNAL_SERVER_ERROR,
    WILDCARD,
    TransportEvent,
    make_request_id,
    parse_request_id,
)
from .metrics import Metrics, RoundTripTiming
from .registry import Callback, CorrelationRegistry, PendingCall


class ConnectionClosedError(Exception):
    """Raised for calls still pending when the connection is closed."""


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


# (delta field, later timestamp, earlier timestamp)
TIMING_DELTAS = (
    ("_dt_cdelta", "_t_crecv", "_t_csend"),
    ("_dt_inqueue", "_t_srecv", "_t_csend"),
    ("_dt_sdelta", "_t_ssend", "_t_srecv"),
    ("_dt_outqueue", "_t_crecv", "_t_ssend"),
    ("_dt_scomp", "_t_ssend", "_t_sdone"),
    ("_dt_ccomp", "_t_cdeco", "_t_crecv"),
)

AUTH_REQUEST_TYPES = ("login", "register")

# Transport events the connection handles itself
PROTOCOL_EVENTS = frozenset(event.value for event in TransportEvent)


def compute_timing_deltas(data: Dict[str, Any]) -> Dict[str, Any]:
    """Add ``_dt_*`` deltas for every pair of timestamps present in ``data``.

    Client and server clocks are not synchronised; the values are diagnostic.
    """
    for name, later, earlier in TIMING_DELTAS:
        a, b = data.get(later), data.get(earlier)
        if isinstance(a, (int, float)) and isinstance(b, (int, float)):
            data[name] = a - b
    return data


def carries_new_key(request_type: str, data: Dict[str, Any]) -> bool:
    """True for a successful login/registration answer that includes a key."""
    code = data.get("code")
    authenticated = (
        request_type in AUTH_REQUEST_TYPES
        or code == "login-success"
        or (isinstance(code, str) and code.startswith("reg-"))
    )
    return authenticated and bool(data.get("key"))


class Connection:
    """
    Stateless RPC over an unordered, named-event transport.

    Every ``call`` gets a correlation id ``<type>--<n>``; responses carry it
    back as ``is-reply-to`` and resolve the matching pending call regardless
    of arrival order. Server pushes are dispatched to listeners only.

    Features:
    - Response cache: requests with ``_cache`` (seconds) are answered from a
      TTL cache, cleared whenever the session key changes
    - Signing: queries are signed by an optional MessageSigner
    - Decoding: raw, LZMA (with a Decompressor) and split envelopes
    - Reconnect: a transport disconnect schedules a reconnect after
      ``config.reconnect_delay``; pending calls survive it
    - Metrics and structured logging

    Usage:
        conn = Connection(ZmqTransport("tcp://localhost:5555"))
        await conn.start()
        reply = await conn.call("ping")
        await conn.close()
    """

    def __init__(
        self,
        connect: Callable[[], Any],
        *,
        key_storage: Optional[KeyStorage] = None,
        signer: Optional[MessageSigner] = None,
        decompressor: Optional[Decompressor] = None,
        config: Optional[ConnectionConfig] = None,
        apply_wrap: Optional[Callable[[Callable[[], Any]], Any]] = None,
        log_handler: Optional[LogHandler] = None,
        enable_metrics: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self._connect = connect
        self.config = config or ConnectionConfig()
        self._key_storage = key_storage or MemoryKeyStorage()
        self._signer = signer
        self._decompressor = decompressor
        self._clock = clock
        self._connection_id = str(uuid.uuid4())[:8]

        self._logger = StructuredLogger(
            handler=log_handler,
            level=LogLevel.DEBUG if self.config.is_dev_mode() else LogLevel.INFO,
            connection_id=self._connection_id,
        )
        self._metrics = Metrics() if enable_metrics else None

        self._decoder = Decoder(decompressor, clock=clock)
        self._registry = CorrelationRegistry(clock=clock)
        self._cache = ResponseCache()

        self.state = ConnectionState.DISCONNECTED
        self._socket: Optional[Any] = None
        self._socket_handlers: Dict[str, Callable] = {}
        # Subscriptions mirrored onto same-named transport events
        self._socket_listeners: Dict[Subscription, Tuple[str, Callable]] = {}
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Future] = set()
        self._closed = False

        self._tx_packets = 0
        self._rx_packets = 0

        self._listeners = ListenerRegistry(
            logger=self._logger,
            apply_wrap=apply_wrap,
            on_subscribe=self._attach_socket_listener,
            on_release=self._detach_socket_listener,
        )
        self._listeners.subscribe(INTERNAL_SERVER_ERROR, self._on_internal_server_error)
        self._listeners.subscribe(DEBUG_INFO, self._on_debug_info)

    @property
    def metrics(self) -> Optional[Metrics]:
        """Get the metrics collector."""
        return self._metrics

    @property
    def logger(self) -> StructuredLogger:
        """Get the structured logger."""
        return self._logger

    @property
    def registry(self) -> CorrelationRegistry:
        return self._registry

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def tx_packets(self) -> int:
        return self._tx_packets

    @property
    def rx_packets(self) -> int:
        return self._rx_packets

    @property
    def closed(self) -> bool:
        return self._closed

    def set_log_handler(self, handler: LogHandler):
        self._logger.set_handler(handler)

    def raw(self) -> Any:
        """The underlying transport socket."""
        return self._socket

    # Lifecycle

    async def start(self):
        """Connect the transport and install the protocol handlers."""
        if self._closed:
            raise ConnectionClosedError("Connection is closed")
        if self._socket is not None:
            return

        socket = self._connect()
        if inspect.isawaitable(socket):
            socket = await socket
        self._socket = socket

        self._socket_handlers = {
            TransportEvent.CONNECT.value: self._on_connect,
            TransportEvent.DISCONNECT.value: self._on_disconnect,
            TransportEvent.RESPONSE.value: self.handle_response,
            TransportEvent.PUSH.value: self.handle_push,
            TransportEvent.PUSH_CONTAINER.value: self.handle_push_container,
        }
        for event, handler in self._socket_handlers.items():
            socket.on(event, handler)
        for event, handler in self._socket_listeners.values():
            socket.on(event, handler)

        # Transports that connect eagerly report it through a flag
        if getattr(socket, "connected", False) and self.state is ConnectionState.DISCONNECTED:
            self._on_connect()

    def _on_connect(self, *args):
        reconnect = self.state is ConnectionState.RECONNECTING
        self.state = ConnectionState.CONNECTED
        self._logger.socket_connect(reconnect=reconnect)
        self._listeners.dispatch({"type": TransportEvent.CONNECT.value, "reconnect": reconnect})

    def _on_disconnect(self, reason: Any = None, *args):
        if self._closed:
            return

        self.state = ConnectionState.RECONNECTING
        delay = self.config.reconnect_delay
        self._logger.socket_disconnect(reason, delay)
        self._listeners.dispatch({"type": TransportEvent.DISCONNECT.value, "reason": reason})
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        # One pending attempt at a time; the transport may report twice
        if self._reconnect_handle is None:
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(self.config.reconnect_delay, self._reconnect)

    def _reconnect(self):
        self._reconnect_handle = None
        if self._closed or self._socket is None:
            return

        if self._metrics:
            self._metrics.record_reconnect()

        try:
            result = self._socket.connect(force_new=True)
        except Exception as e:
            self._reconnect_failed(e)
            return

        if inspect.isawaitable(result):
            task = self._track(asyncio.ensure_future(result))
            task.add_done_callback(self._on_reconnect_done)

    def _on_reconnect_done(self, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._reconnect_failed(error)

    def _reconnect_failed(self, error: BaseException):
        self._logger.error(
            LogEvent.SOCKET_RECONNECT,
            f"Reconnect failed: {error}",
            error=str(error),
            error_type=type(error).__name__,
        )
        if self._closed:
            return

        # A transport closed for good can never come back
        if getattr(self._socket, "closed", False):
            self.state = ConnectionState.DISCONNECTED
            self._logger.warn(LogEvent.SOCKET_DISCONNECT, "Transport closed, giving up reconnecting")
            return

        # Listeners already saw the disconnect; just try again after the same delay
        self._schedule_reconnect()

    async def close(self):
        """Detach from the transport and reject calls still pending."""
        if self._closed:
            return
        self._closed = True

        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        socket, self._socket = self._socket, None
        if socket is not None:
            for event, handler in self._socket_handlers.items():
                socket.remove_listener(event, handler)
            self._socket_handlers = {}
            for event, handler in self._socket_listeners.values():
                socket.remove_listener(event, handler)

            close = getattr(socket, "close", None)
            if close is not None:
                result = close()
                if inspect.isawaitable(result):
                    await result

        self._registry.clear(ConnectionClosedError("Connection closed"))
        self.state = ConnectionState.DISCONNECTED
        self._logger.info(LogEvent.CONNECTION_CLOSE, "Connection closed")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, tb):
        await self.close()

    # Session key

    def get_key(self) -> Optional[str]:
        return self._key_storage.get_key()

    def set_key(self, key: Optional[str]) -> Optional[str]:
        """Store a new session key; a changed key invalidates the cache."""
        if self.config.is_dev_mode():
            self._logger.datalog(LogEvent.KEY_CHANGE, "#", f"key = {key}")

        if key != self._key_storage.get_key():
            dropped = len(self._cache)
            self._cache.clear()
            self._logger.debug(
                LogEvent.CACHE_INVALIDATE,
                f"Session key changed, dropped {dropped} cached responses",
                metadata={"dropped": dropped},
            )

        return self._key_storage.set_key(key)

    # Outgoing

    def call(
        self,
        request_type: str,
        payload: Optional[Dict[str, Any]] = None,
        callback: Optional[Callback] = None,
        *,
        prefill: Optional[Dict[str, Any]] = None,
    ) -> Optional[asyncio.Future]:
        """
        Issue a query and return a future for its single response.

        Args:
            request_type: Query type, also the prefix of the correlation id
            payload: Query fields. Recognised control fields: ``_cache``
                (seconds), ``_prefill``, ``_expect_no_response``,
                ``__dont_sign__``, ``__sign__``, ``__only_in_dev_mode__``,
                ``__only_in_srv_dev_mode__``
            callback: Invoked with the response before the future resolves
            prefill: Fields merged into the response when the server omits them

        Returns:
            Future completed with the response, or None when ``request_type``
            is empty (nothing is sent).
        """
        if callable(payload) and callback is None:
            callback, payload = payload, None

        if not request_type:
            self._logger.warn(LogEvent.QUERY_INVALID, "event name missing")
            return None

        if self._closed:
            raise ConnectionClosedError("Connection is closed")
        if self._socket is None:
            raise RuntimeError("Connection is not started")

        loop = asyncio.get_running_loop()
        future = loop.create_future()

        data = dict(payload or {})
        call_prefill = dict(data.pop("_prefill", None) or {})
        call_prefill.update(prefill or {})

        data["type"] = request_type
        call_id = self._registry.next_id()
        data["id"] = make_request_id(request_type, call_id)

        if (data.get("__only_in_dev_mode__") and not self.config.is_dev_mode()) or (
            data.get("__only_in_srv_dev_mode__") and not self.config.is_server_dev_mode()
        ):
            self._logger.debug(
                LogEvent.QUERY_SKIPPED,
                f"Skipped dev-mode-only query {data['id']}",
                request_id=data["id"],
                request_type=request_type,
            )
            skipped = PendingCall(id=call_id, type=request_type, callback=callback, future=future)
            loop.call_soon(self._listeners.complete, skipped, None)
            return future

        cache_ttl = float(data.get("_cache") or 0)
        cache_key = None
        cache_hit: Optional[CacheEntry] = None
        if cache_ttl:
            now = self._clock()
            cache_key = canonical_key(data)
            self._cache.purge_expired(now)
            cache_hit = self._cache.lookup(cache_key, now, cache_ttl)
            if self._metrics:
                self._metrics.record_cache(cache_hit is not None)
            if cache_hit is None:
                self._cache.discard(cache_key)

        key = self.get_key()
        if key and not data.get("key"):
            data["key"] = key

        call_prefill["_reqsize"] = len(json.dumps(data, default=str))
        _, entry = self._registry.register(
            request_type,
            prefill=call_prefill,
            callback=callback,
            future=future,
            expect_response=not data.get("_expect_no_response", False),
            call_id=call_id,
        )

        if cache_hit is not None:
            self._logger.debug(
                LogEvent.CACHE_HIT,
                f"Answering {data['id']} from cache",
                request_id=data["id"],
                request_type=request_type,
            )
            # Deferred so cache hits complete asynchronously like real replies
            loop.call_soon(self._replay_cached, call_id, cache_hit)
            return future

        if cache_key is not None:
            entry.cache_key = cache_key
            entry.cache_ttl = cache_ttl

        self._tx_packets += 1
        if self._metrics:
            self._metrics.record_sent()

        if self._decompressor is not None:
            data["lzma"] = 1
        data["pv"] = self.config.protocol_version
        if self.config.client_version:
            data["cs"] = self.config.client_version

        if self.config.is_dev_mode():
            self._logger.datalog(LogEvent.QUERY_SEND, ">", data, request_id=data["id"])

        if self._should_sign(data):
            self._track(loop.create_task(self._sign_and_transmit(call_id, data)))
        else:
            self._transmit(call_id, data)

        if request_type == "logout":
            self.set_key(None)

        return future

    def _should_sign(self, data: Dict[str, Any]) -> bool:
        if self._signer is None or data.get("__dont_sign__"):
            return False
        return self.config.sign_requests or bool(data.get("__sign__"))

    async def _sign_and_transmit(self, call_id: int, data: Dict[str, Any]):
        try:
            signed = await self._signer.create_signed_message(data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if self._metrics:
                self._metrics.record_sign_error()
            self._logger.error(
                LogEvent.SIGN_ERROR,
                f"Signing {data['id']} failed: {e}",
                request_id=data["id"],
                error=str(e),
                error_type=type(e).__name__,
            )
            self._registry.fail(call_id, e)
            return

        self._transmit(call_id, {"signedContent": signed})

    def _transmit(self, call_id: int, message: Dict[str, Any]):
        if self._socket is None:
            self._send_failed(call_id, ConnectionClosedError("Connection closed"))
            return

        try:
            result = self._socket.emit(self.config.query_event, message)
        except Exception as e:
            self._send_failed(call_id, e)
            return

        if inspect.isawaitable(result):
            task = self._track(asyncio.ensure_future(result))
            task.add_done_callback(lambda t: self._on_transmit_done(call_id, t))

    def _on_transmit_done(self, call_id: int, task: asyncio.Future):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._send_failed(call_id, error)

    def _send_failed(self, call_id: int, error: BaseException):
        self._logger.error(
            LogEvent.SEND_ERROR,
            f"Failed to send call {call_id}: {error}",
            error=str(error),
            error_type=type(error).__name__,
        )
        self._registry.fail(call_id, error)

    def _track(self, task: asyncio.Future) -> asyncio.Future:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _replay_cached(self, call_id: int, hit: CacheEntry):
        entry = self._registry.get(call_id)
        if entry is None:
            return

        response = copy.deepcopy(hit.response)
        response["is-reply-to"] = make_request_id(entry.type, call_id)
        self._handle_decoded(response, replayed=True)

    # Incoming

    async def _decode(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        try:
            return await self._decoder.decode(envelope)
        except ProtocolError as e:
            if self._metrics:
                self._metrics.record_decode_error()
            self._logger.error(
                LogEvent.DECODE_ERROR,
                str(e),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

    async def handle_response(self, envelope: Dict[str, Any]):
        """Decode a ``response`` envelope and resolve its call.

        Raises:
            UnsupportedEncoding: for unknown or unavailable encodings
        """
        data = await self._decode(envelope)
        # Servers may put the correlation id on the envelope instead of the body
        if "is-reply-to" not in data and "is-reply-to" in envelope:
            data["is-reply-to"] = envelope["is-reply-to"]
        self.handle_decoded(data)

    def handle_decoded(self, data: Dict[str, Any]) -> Optional[PendingCall]:
        """Resolve and dispatch an already decoded response."""
        return self._handle_decoded(data, replayed=False)

    def _handle_decoded(self, data: Dict[str, Any], replayed: bool) -> Optional[PendingCall]:
        reply_to = data.get("is-reply-to")
        try:
            request_type, call_id = parse_request_id(reply_to)
        except ValueError as e:
            self._logger.error(LogEvent.DECODE_ERROR, str(e), error=str(e))
            raise ProtocolError(str(e))

        if carries_new_key(request_type, data):
            self.set_key(data["key"])

        data["type"] = request_type
        entry = self._registry.resolve(call_id, data)
        compute_timing_deltas(data)

        if not replayed:
            self._rx_packets += 1
            if self._metrics:
                self._metrics.record_received()

        if self.config.is_dev_mode():
            self._logger.datalog(LogEvent.RESPONSE_RECEIVE, "<", data, request_id=reply_to)

        if entry is None:
            if self._metrics:
                self._metrics.record_unmatched()
            self._logger.response_received(reply_to, request_type, matched=False)
        else:
            delta = data.get("_dt_cdelta")
            self._logger.response_received(reply_to, request_type, duration_ms=delta)
            if self._metrics and not replayed and isinstance(delta, (int, float)):
                server = data.get("_dt_sdelta")
                self._metrics.record_round_trip(
                    RoundTripTiming(
                        request_id=reply_to,
                        request_type=request_type,
                        client_delta_ms=delta,
                        server_delta_ms=server if isinstance(server, (int, float)) else 0.0,
                    )
                )
            if entry.cache_key is not None:
                self._cache.insert(entry.cache_key, copy.deepcopy(data), entry.cache_ttl, self._clock())

        self._listeners.dispatch(data, entry)
        return entry

    async def handle_push(self, envelope: Dict[str, Any]):
        """Decode a single server push and dispatch it to listeners."""
        data = await self._decode(envelope)

        if self.config.is_dev_mode():
            self._logger.datalog(LogEvent.PUSH_RECEIVE, "!", data)

        self._rx_packets += 1
        if self._metrics:
            self._metrics.record_received(push=True)
        self._listeners.dispatch(data)

    async def handle_push_container(self, envelope: Dict[str, Any]):
        """Decode a batch of pushes and dispatch them in delivered order."""
        data = await self._decode(envelope)

        # Server debug output is logged by the debug-info listener itself
        if self.config.is_dev_mode() and data.get("type") != DEBUG_INFO:
            self._logger.datalog(LogEvent.PUSH_RECEIVE, "!", data)

        self._rx_packets += 1
        if self._metrics:
            self._metrics.record_received(push=True)

        for push in data.get("pushes") or ():
            self._listeners.dispatch(push)

    def _on_internal_server_error(self, data: Dict[str, Any]):
        marked = self._registry.mark_all_unanswerable()
        if self._metrics:
            self._metrics.record_server_error()
        self._logger.server_error(marked)

    def _on_debug_info(self, data: Any):
        if self.config.is_dev_mode():
            args = data.get("args") if isinstance(data, dict) else data
            self._logger.datalog(LogEvent.DEBUG_INFO, "~!", list(args or ()))

    # Correlation state

    def has_open_calls(self) -> bool:
        return self._registry.has_open_calls()

    def mark_all_unanswerable(self) -> int:
        return self._registry.mark_all_unanswerable()

    # Listeners

    def _attach_socket_listener(self, subscription: Subscription):
        """Also deliver same-named transport events to ``subscription``."""
        event_type = subscription.event_type
        if event_type == WILDCARD or event_type in PROTOCOL_EVENTS:
            return

        def handler(payload=None, *args):
            if subscription.active:
                self._listeners.invoke(subscription.callback, payload, event_type)

        self._socket_listeners[subscription] = (event_type, handler)
        if self._socket is not None:
            self._socket.on(event_type, handler)

    def _detach_socket_listener(self, subscription: Subscription):
        pair = self._socket_listeners.pop(subscription, None)
        if pair is not None and self._socket is not None:
            self._socket.remove_listener(*pair)

    def on(self, event_type: str, callback: Listener, scope: Any = None) -> Subscription:
        """Subscribe to an event type, or ``"*"`` for every event.

        The callback sees decoded pushes and responses of that type as well
        as transport events of the same name. With ``scope`` the subscription
        is released when the scope ends.
        """
        return self._listeners.subscribe(event_type, callback, scope=scope)

    def once(self, event_type: str, callback: Optional[Listener] = None) -> asyncio.Future:
        return self._listeners.subscribe_once(event_type, callback)

    def off(self, subscription: Subscription):
        self._listeners.unsubscribe(subscription)
