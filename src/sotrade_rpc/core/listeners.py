"""
Per-event-type publish/subscribe with a wildcard channel.
"""

import asyncio
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

from .message import WILDCARD
from .logging import LogEvent, StructuredLogger

if TYPE_CHECKING:
    from .registry import PendingCall


Listener = Callable[[Any], Any]


class Subscription:
    """Handle for one registered listener. ``release()`` is idempotent."""

    def __init__(self, registry: "ListenerRegistry", event_type: str, callback: Listener):
        self.registry = registry
        self.event_type = event_type
        self.callback = callback
        self.active = True

    def release(self):
        if not self.active:
            return
        self.active = False
        self.registry._remove(self)

    def bind(self, scope: Any) -> "Subscription":
        """Release this subscription when ``scope`` ends.

        Accepts an emitter exposing ``on(name, fn)`` (released on its
        ``destroy`` event) or anything with ``add_done_callback`` such as an
        asyncio task.
        """
        if hasattr(scope, "on"):
            scope.on("destroy", lambda *args: self.release())
        elif hasattr(scope, "add_done_callback"):
            scope.add_done_callback(lambda _: self.release())
        else:
            raise TypeError(f"Cannot bind subscription to {type(scope).__name__}")
        return self

    def __repr__(self):
        state = "active" if self.active else "released"
        return f"<Subscription {self.event_type!r} {state}>"


class ListenerRegistry:
    """
    Ordered subscriber lists per event type.

    Dispatch order: wildcard subscribers, type subscribers, then the matched
    call's own completion. Iteration runs over a snapshot, and subscriptions
    released mid-dispatch are skipped.

    ``on_subscribe`` / ``on_release`` observe every subscription as it is
    added and removed.
    """

    def __init__(
        self,
        logger: Optional[StructuredLogger] = None,
        apply_wrap: Optional[Callable[[Callable[[], Any]], Any]] = None,
        on_subscribe: Optional[Callable[[Subscription], Any]] = None,
        on_release: Optional[Callable[[Subscription], Any]] = None,
    ):
        self._listeners: Dict[str, List[Subscription]] = {}
        self._logger = logger or StructuredLogger()
        self._apply_wrap = apply_wrap
        self._on_subscribe = on_subscribe
        self._on_release = on_release

    def subscribe(self, event_type: str, callback: Listener, scope: Any = None) -> Subscription:
        subscription = Subscription(self, event_type, callback)
        self._listeners.setdefault(event_type, []).append(subscription)
        if self._on_subscribe is not None:
            self._on_subscribe(subscription)
        if scope is not None:
            subscription.bind(scope)
        return subscription

    def subscribe_once(
        self, event_type: str, callback: Optional[Listener] = None
    ) -> asyncio.Future:
        """Subscribe for a single event; the future resolves with its payload."""
        future = asyncio.get_running_loop().create_future()
        subscription: Optional[Subscription] = None

        def once(event):
            subscription.release()
            try:
                if callback is not None:
                    callback(event)
            finally:
                if not future.done():
                    future.set_result(event)

        subscription = self.subscribe(event_type, once)
        return future

    def unsubscribe(self, subscription: Subscription):
        subscription.release()

    def _remove(self, subscription: Subscription):
        if self._on_release is not None:
            self._on_release(subscription)
        listeners = self._listeners.get(subscription.event_type)
        if not listeners:
            return
        try:
            listeners.remove(subscription)
        except ValueError:
            return
        if not listeners:
            del self._listeners[subscription.event_type]

    def listeners_for(self, event_type: str) -> List[Listener]:
        return [s.callback for s in self._listeners.get(event_type, ())]

    def count(self, event_type: Optional[str] = None) -> int:
        if event_type is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(event_type, ()))

    def dispatch(self, event: Dict[str, Any], pending: Optional["PendingCall"] = None):
        """Deliver ``event`` to subscribers, then complete ``pending``."""
        event_type = event.get("type") if isinstance(event, dict) else None

        snapshot = list(self._listeners.get(WILDCARD, ()))
        if event_type is not None and event_type != WILDCARD:
            snapshot += self._listeners.get(event_type, ())

        for subscription in snapshot:
            if subscription.active:
                self.invoke(subscription.callback, event, event_type)

        if pending is not None:
            self.complete(pending, event)

    def complete(self, pending: "PendingCall", event: Any):
        """Run a call's own continuation with the same error isolation as listeners."""
        event_type = event.get("type") if isinstance(event, dict) else pending.type
        self.invoke(pending.complete, event, event_type)

    def invoke(self, fn: Listener, event: Any, event_type: Optional[str]):
        """Call one listener, wrapped and with errors logged instead of raised."""
        try:
            if self._apply_wrap is not None:
                self._apply_wrap(lambda: fn(event))
            else:
                fn(event)
        except Exception as e:
            self._logger.error(
                LogEvent.LISTENER_ERROR,
                f"Listener for {event_type!r} failed: {e}",
                error=str(e),
                error_type=type(e).__name__,
            )

    def clear(self):
        for listeners in self._listeners.values():
            for subscription in listeners:
                subscription.active = False
        self._listeners.clear()
