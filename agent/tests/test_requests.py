"""Tests for the request registry and request queue."""

import asyncio

import pytest

from ocrelay.requests import QueuedRequest, RequestQueue, RequestRegistry


class FakeHandle:
    def __init__(self, fail: bool = False) -> None:
        self.killed = 0
        self.fail = fail

    def kill(self) -> None:
        self.killed += 1
        if self.fail:
            raise RuntimeError("already dead")


class TestRequestRegistry:
    def test_ids_increase(self) -> None:
        registry = RequestRegistry()
        first = registry.register(FakeHandle())
        second = registry.register(FakeHandle())
        registry.unregister(first)
        third = registry.register(FakeHandle())
        assert first < second < third
        assert registry.active_count() == 2

    def test_cancel_kills_and_cleans_up(self) -> None:
        registry = RequestRegistry()
        handle = FakeHandle()
        cleaned = []
        request_id = registry.register(handle, cleanup=lambda: cleaned.append(True))

        assert registry.cancel(request_id) is True
        assert handle.killed == 1
        assert cleaned == [True]
        assert registry.active_count() == 0

    def test_cancel_unknown_is_noop(self) -> None:
        assert RequestRegistry().cancel(42) is False

    def test_cleanup_runs_even_when_kill_fails(self) -> None:
        registry = RequestRegistry()
        cleaned = []
        request_id = registry.register(FakeHandle(fail=True), cleanup=lambda: cleaned.append(True))
        assert registry.cancel(request_id) is True
        assert cleaned == [True]

    def test_cleanup_failure_is_tolerated(self) -> None:
        registry = RequestRegistry()

        def boom() -> None:
            raise RuntimeError("cleanup failed")

        request_id = registry.register(FakeHandle(), cleanup=boom)
        assert registry.cancel(request_id) is True
        assert registry.active_count() == 0

    @pytest.mark.anyio
    async def test_cancel_all_counts_and_empties(self) -> None:
        registry = RequestRegistry(RequestQueue())
        handles = [FakeHandle() for _ in range(3)]
        for handle in handles:
            registry.register(handle)
        assert registry.cancel_all() == 3
        assert registry.active_count() == 0
        assert all(handle.killed == 1 for handle in handles)


class TestRequestQueue:
    @pytest.mark.anyio
    async def test_next_request_runs_when_slot_frees(self) -> None:
        processed: list[QueuedRequest] = []
        done = asyncio.Event()

        async def processor(item: QueuedRequest) -> None:
            processed.append(item)
            done.set()

        queue = RequestQueue(processor)
        queue.set_busy(True)
        assert queue.enqueue("first", ["a.py"]) == 1
        assert queue.enqueue("second") == 2

        queue.set_busy(False)
        # The slot is reserved again before the processor runs.
        assert queue.busy is True
        await asyncio.wait_for(done.wait(), 1.0)
        assert [item.prompt for item in processed] == ["first"]
        assert processed[0].files == ["a.py"]
        assert len(queue) == 1

    @pytest.mark.anyio
    async def test_suspended_queue_does_not_dispatch(self) -> None:
        processed = []
        queue = RequestQueue(processed.append)
        queue.enqueue("waiting")
        queue.suspended = True
        queue.set_busy(False)
        await asyncio.sleep(0.01)
        assert processed == []
        assert queue.busy is False

    @pytest.mark.anyio
    async def test_cancel_all_leaves_slot_to_owner(self) -> None:
        processed = []
        queue = RequestQueue(processed.append)
        registry = RequestRegistry(queue)
        registry.register(FakeHandle())
        queue.set_busy(True)
        queue.enqueue("next")

        registry.cancel_all()
        await asyncio.sleep(0.01)
        assert processed == []
        assert queue.busy is True
        assert queue.suspended is False

        # The cancelled request releases the slot once it has unwound.
        queue.set_busy(False)
        await asyncio.sleep(0.01)
        assert [item.prompt for item in processed] == ["next"]

    def test_clear(self) -> None:
        queue = RequestQueue()
        queue.enqueue("a")
        queue.enqueue("b")
        assert queue.clear() == 2
        assert len(queue) == 0
