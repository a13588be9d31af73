"""
Tests for CorrelationRegistry and PendingCall.
"""

import asyncio
import sys
import os

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sotrade_rpc.core.registry import CorrelationRegistry, PendingCall


def clock():
    return 42.0


class TestIdAllocation:
    """Test id assignment."""

    def test_ids_strictly_increase(self):
        registry = CorrelationRegistry(clock=clock)
        ids = [registry.register("ping")[0] for _ in range(10)]
        assert ids == sorted(ids)
        assert len(set(ids)) == 10
        assert ids[0] == 1

    def test_next_id_not_reused_after_resolve(self):
        registry = CorrelationRegistry(clock=clock)
        first, _ = registry.register("ping")
        registry.resolve(first, {})
        second, _ = registry.register("ping")
        assert second > first

    def test_register_preallocated_id(self):
        registry = CorrelationRegistry(clock=clock)
        call_id = registry.next_id()
        got, entry = registry.register("ping", call_id=call_id)
        assert got == call_id
        assert entry.id == call_id

    def test_register_unallocated_id_rejected(self):
        registry = CorrelationRegistry(clock=clock)
        with pytest.raises(ValueError):
            registry.register("ping", call_id=5)

    def test_independent_registries(self):
        a = CorrelationRegistry(clock=clock)
        b = CorrelationRegistry(clock=clock)
        a.register("x")
        a.register("x")
        assert b.register("x")[0] == 1


class TestPrefill:
    """Test prefill stamping and merging."""

    def test_send_timestamp_stamped(self):
        registry = CorrelationRegistry(clock=clock)
        _, entry = registry.register("ping", prefill={"a": 1})
        assert entry.prefill == {"a": 1, "_t_csend": 42000}

    def test_prefill_is_copied(self):
        prefill = {"a": 1}
        registry = CorrelationRegistry(clock=clock)
        registry.register("ping", prefill=prefill)
        assert prefill == {"a": 1}

    def test_merge_only_absent_fields(self):
        registry = CorrelationRegistry(clock=clock)
        call_id, _ = registry.register("ping", prefill={"a": 1, "b": 2})
        response = {"b": "server"}
        registry.resolve(call_id, response)
        assert response == {"a": 1, "b": "server", "_t_csend": 42000}


class TestResolve:
    """Test response matching."""

    def test_resolve_removes_entry(self):
        registry = CorrelationRegistry(clock=clock)
        call_id, entry = registry.register("ping")
        assert registry.resolve(call_id, {}) is entry
        assert call_id not in registry
        assert registry.pending_count == 0

    def test_second_resolve_is_noop(self):
        registry = CorrelationRegistry(clock=clock)
        call_id, _ = registry.register("ping")
        registry.resolve(call_id, {})
        assert registry.resolve(call_id, {}) is None

    def test_unknown_id_leaves_others(self):
        registry = CorrelationRegistry(clock=clock)
        call_id, _ = registry.register("ping")
        assert registry.resolve(999, {}) is None
        assert call_id in registry
        assert registry.pending_count == 1

    def test_out_of_order(self):
        registry = CorrelationRegistry(clock=clock)
        first, a = registry.register("a")
        second, b = registry.register("b")
        assert registry.resolve(second, {}) is b
        assert registry.resolve(first, {}) is a


class TestUnanswerable:
    """Test fatal-error flagging."""

    def test_mark_all(self):
        registry = CorrelationRegistry(clock=clock)
        registry.register("a")
        registry.register("b")
        assert registry.has_open_calls()

        assert registry.mark_all_unanswerable() == 2
        assert not registry.has_open_calls()
        assert registry.pending_count == 2

    def test_already_flagged(self):
        registry = CorrelationRegistry(clock=clock)
        registry.register("a", expect_response=False)
        assert not registry.has_open_calls()
        assert registry.mark_all_unanswerable() == 0

    def test_flagged_entry_still_resolves(self):
        registry = CorrelationRegistry(clock=clock)
        call_id, entry = registry.register("a")
        registry.mark_all_unanswerable()
        assert registry.resolve(call_id, {}) is entry

    def test_empty_registry(self):
        assert not CorrelationRegistry(clock=clock).has_open_calls()


class TestPendingCall:
    """Test completion of a single call."""

    def test_callback_before_future(self):
        async def run():
            order = []
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(lambda f: order.append("future"))
            entry = PendingCall(id=1, type="ping", callback=lambda r: order.append("callback"), future=future)
            entry.complete({"ok": True})
            await asyncio.sleep(0)
            return order, future.result()

        order, result = asyncio.run(run())
        assert order == ["callback", "future"]
        assert result == {"ok": True}

    def test_complete_once(self):
        calls = []
        entry = PendingCall(id=1, type="ping", callback=calls.append)
        entry.complete("first")
        entry.complete("second")
        assert calls == ["first"]
        assert entry.completed

    def test_future_resolved_when_callback_raises(self):
        async def run():
            future = asyncio.get_running_loop().create_future()

            def boom(_):
                raise RuntimeError("boom")

            entry = PendingCall(id=1, type="ping", callback=boom, future=future)
            with pytest.raises(RuntimeError):
                entry.complete("value")
            return future.result()

        assert asyncio.run(run()) == "value"

    def test_fail_rejects_future(self):
        async def run():
            registry = CorrelationRegistry(clock=clock)
            future = asyncio.get_running_loop().create_future()
            call_id, _ = registry.register("ping", future=future)
            registry.fail(call_id, ValueError("nope"))
            assert call_id not in registry
            with pytest.raises(ValueError):
                await future

        asyncio.run(run())

    def test_clear_with_error(self):
        async def run():
            registry = CorrelationRegistry(clock=clock)
            future = asyncio.get_running_loop().create_future()
            registry.register("ping", future=future)
            registry.clear(ConnectionError("gone"))
            assert registry.pending_count == 0
            with pytest.raises(ConnectionError):
                await future

        asyncio.run(run())
