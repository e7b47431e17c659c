"""In-flight request tracking and the sequential request queue."""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from typing import Any, Protocol

import structlog

logger = structlog.get_logger("ocrelay.requests")


class Killable(Protocol):
    def kill(self) -> None: ...


class QueuedRequest:
    """A prompt waiting for the busy slot."""

    def __init__(
        self,
        prompt: str,
        files: list[str] | None = None,
        source_file: str | None = None,
        **options: Any,
    ) -> None:
        self.prompt = prompt
        self.files = files
        self.source_file = source_file
        self.options = options
        self.queued_at = time.monotonic()


class RequestQueue:
    """Single busy slot plus a FIFO of waiting prompts.

    When the slot frees and the queue is not suspended, the next request is
    popped, the slot is reserved again right away, and the processor is
    scheduled on the running loop.
    """

    def __init__(self, processor: Callable[[QueuedRequest], Any] | None = None) -> None:
        self._queue: list[QueuedRequest] = []
        self._processor = processor
        self._tasks: set[asyncio.Task] = set()
        self.busy = False
        self.suspended = False

    def enqueue(self, prompt: str, files: list[str] | None = None, source_file: str | None = None, **options: Any) -> int:
        """Queue a prompt.

        Returns:
            1-based position in the queue.
        """
        self._queue.append(QueuedRequest(prompt, files, source_file, **options))
        return len(self._queue)

    def __len__(self) -> int:
        return len(self._queue)

    def clear(self) -> int:
        count = len(self._queue)
        self._queue = []
        return count

    def set_busy(self, busy: bool) -> None:
        self.busy = busy
        if busy or self.suspended or not self._queue or self._processor is None:
            return
        item = self._queue.pop(0)
        self.busy = True
        asyncio.get_running_loop().call_soon(self._dispatch, item)

    def _dispatch(self, item: QueuedRequest) -> None:
        try:
            result = self._processor(item)
        except Exception:
            logger.exception("Queued request processor failed")
            self.set_busy(False)
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Queued request processor failed", error=str(task.exception()))


class RequestRegistry:
    """Table of in-flight requests keyed by monotonically increasing ids."""

    def __init__(self, queue: RequestQueue | None = None) -> None:
        self._next_id = 0
        self._active: dict[int, tuple[Killable, Callable[[], Any] | None]] = {}
        self.queue = queue

    def register(self, handle: Killable, cleanup: Callable[[], Any] | None = None) -> int:
        self._next_id += 1
        self._active[self._next_id] = (handle, cleanup)
        return self._next_id

    def unregister(self, request_id: int) -> None:
        self._active.pop(request_id, None)

    def active_count(self) -> int:
        return len(self._active)

    def active_ids(self) -> list[int]:
        return sorted(self._active)

    def cancel(self, request_id: int) -> bool:
        """Kill a request and run its cleanup; unknown ids are a no-op.

        A failing kill does not prevent the cleanup from running.
        """
        entry = self._active.pop(request_id, None)
        if entry is None:
            return False
        handle, cleanup = entry
        try:
            handle.kill()
        except Exception:
            logger.warning("Killing request failed", request_id=request_id, exc_info=True)
        if cleanup is not None:
            try:
                cleanup()
            except Exception:
                logger.warning("Request cleanup failed", request_id=request_id, exc_info=True)
        logger.info("Request cancelled", request_id=request_id)
        return True

    def cancel_all(self) -> int:
        """Cancel every active request; queue processing is held off meanwhile.

        The busy slot is left to the owner of each cancelled request, which
        releases it once the request has unwound.
        """
        if self.queue is not None:
            self.queue.suspended = True
        count = 0
        try:
            for request_id in list(self._active):
                if self.cancel(request_id):
                    count += 1
        finally:
            if self.queue is not None:
                self.queue.suspended = False
        return count
