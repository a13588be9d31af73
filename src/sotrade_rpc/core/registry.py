"""
Correlation bookkeeping for in-flight calls.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional, Tuple


Callback = Callable[[Any], Any]


@dataclass
class PendingCall:
    """
    One outstanding request.

    - id: numeric part of the correlation id
    - type: request type (prefix of the correlation id)
    - callback: caller continuation, invoked before the future resolves
    - future: asyncio future completed with the response
    - prefill: fields copied into the response when the server omits them
    - expect_response: cleared when the server reports a fatal error
    - cache_key/cache_ttl: where to store the answer, if cacheable
    """

    id: int
    type: str
    callback: Optional[Callback] = None
    future: Optional[asyncio.Future] = None
    prefill: Dict[str, Any] = field(default_factory=dict)
    expect_response: bool = True
    cache_key: Optional[str] = None
    cache_ttl: float = 0.0
    _completed: bool = field(default=False, repr=False)

    @property
    def completed(self) -> bool:
        return self._completed

    def complete(self, response: Any):
        """Run the callback, then resolve the future. Later calls are ignored."""
        if self._completed:
            return
        self._completed = True

        try:
            if self.callback is not None:
                self.callback(response)
        finally:
            if self.future is not None and not self.future.done():
                self.future.set_result(response)

    def fail(self, error: BaseException):
        """Reject the future without running the callback."""
        if self._completed:
            return
        self._completed = True
        if self.future is not None and not self.future.done():
            self.future.set_exception(error)


class CorrelationRegistry:
    """
    Assigns correlation ids and matches responses to pending calls.

    Ids are strictly increasing for the lifetime of the registry. Responses
    for unknown ids (duplicates, late arrivals) are dropped silently.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._counter = 0
        self._pending: Dict[int, PendingCall] = {}

    @property
    def last_id(self) -> int:
        return self._counter

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def __contains__(self, call_id: int) -> bool:
        return call_id in self._pending

    def __iter__(self) -> Iterator[PendingCall]:
        return iter(list(self._pending.values()))

    def get(self, call_id: int) -> Optional[PendingCall]:
        return self._pending.get(call_id)

    def next_id(self) -> int:
        """Allocate an id without registering a pending entry."""
        self._counter += 1
        return self._counter

    def register(
        self,
        request_type: str,
        prefill: Optional[Dict[str, Any]] = None,
        callback: Optional[Callback] = None,
        future: Optional[asyncio.Future] = None,
        expect_response: bool = True,
        call_id: Optional[int] = None,
    ) -> Tuple[int, PendingCall]:
        """Store a pending entry and return ``(id, entry)``.

        The prefill mapping is copied and stamped with ``_t_csend``. When
        ``call_id`` is given it must come from ``next_id()``.
        """
        if call_id is None:
            call_id = self.next_id()
        elif call_id > self._counter or call_id in self._pending:
            raise ValueError(f"Call id {call_id} was not allocated by this registry")

        entry_prefill = dict(prefill or {})
        entry_prefill["_t_csend"] = int(self.clock() * 1000)

        entry = PendingCall(
            id=call_id,
            type=request_type,
            callback=callback,
            future=future,
            prefill=entry_prefill,
            expect_response=expect_response,
        )
        self._pending[call_id] = entry
        return call_id, entry

    def resolve(self, call_id: int, response: Dict[str, Any]) -> Optional[PendingCall]:
        """Remove the entry for ``call_id`` and merge its prefill into ``response``.

        Returns the entry so the caller can dispatch the completion, or None
        when no such call is pending.
        """
        entry = self._pending.pop(call_id, None)
        if entry is None:
            return None

        for key, value in entry.prefill.items():
            if key not in response:
                response[key] = value
        return entry

    def fail(self, call_id: int, error: BaseException) -> Optional[PendingCall]:
        """Remove the entry for ``call_id`` and reject its future."""
        entry = self._pending.pop(call_id, None)
        if entry is not None:
            entry.fail(error)
        return entry

    def mark_all_unanswerable(self) -> int:
        """Flag every pending entry as not expecting a response.

        Entries stay registered so a late reply still resolves them.
        """
        count = 0
        for entry in self._pending.values():
            if entry.expect_response:
                entry.expect_response = False
                count += 1
        return count

    def has_open_calls(self) -> bool:
        return any(entry.expect_response for entry in self._pending.values())

    def clear(self, error: Optional[BaseException] = None):
        """Drop every pending entry, rejecting futures with ``error`` if given."""
        pending = list(self._pending.values())
        self._pending.clear()
        if error is not None:
            for entry in pending:
                entry.fail(error)
