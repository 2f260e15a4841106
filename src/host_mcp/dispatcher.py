from __future__ import annotations

import queue
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .shared.logging import get_logger

logger = get_logger(__name__)


@dataclass
class _Job:
    fn: Callable[[], Any]
    future: Optional[Future] = None


class MainThreadDispatcher:
    """Marshals closures from connection threads onto the host's main thread.

    ``drain()`` must only be called from the main thread, once per host tick.
    Closures submitted from the main thread itself run synchronously so a tool
    calling back into the dispatcher never deadlocks.
    """

    def __init__(self) -> None:
        self._queue: "queue.SimpleQueue[_Job]" = queue.SimpleQueue()
        self._main_thread_id = threading.get_ident()
        self._last_drain: Optional[float] = None
        self.stats: Dict[str, int] = {"ticks": 0, "queued": 0, "executed": 0}
        self._stats_lock = threading.Lock()

    def bind_current_thread(self) -> None:
        self._main_thread_id = threading.get_ident()

    def is_main_thread(self) -> bool:
        return threading.get_ident() == self._main_thread_id

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def enqueue(self, fn: Callable[[], Any]) -> None:
        if self.is_main_thread():
            self._run(_Job(fn))
            return
        self._queue.put(_Job(fn))
        self._count("queued")

    def enqueue_with_result(self, fn: Callable[[], Any]) -> Future:
        future: Future = Future()
        job = _Job(fn, future)
        if self.is_main_thread():
            self._run(job)
        else:
            self._queue.put(job)
            self._count("queued")
        return future

    def drain(self) -> int:
        self._count("ticks")
        executed = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            self._run(job)
            executed += 1
        self._last_drain = time.monotonic()
        return executed

    def seconds_since_last_drain(self) -> float:
        if self._last_drain is None:
            return -1.0
        return time.monotonic() - self._last_drain

    def clear(self) -> int:
        dropped = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job.future is not None:
                job.future.cancel()
            dropped += 1
        if dropped:
            logger.debug("Dispatcher: discarded %d pending closures", dropped)
        return dropped

    def _run(self, job: _Job) -> None:
        future = job.future
        if future is not None and not future.set_running_or_notify_cancel():
            return
        try:
            result = job.fn()
        except Exception as exc:  # noqa: BLE001
            if future is not None:
                future.set_exception(exc)
            else:
                logger.error("Dispatcher: queued closure failed: %s", exc, exc_info=True)
        else:
            if future is not None:
                future.set_result(result)
        finally:
            self._count("executed")

    def _count(self, key: str) -> None:
        with self._stats_lock:
            self.stats[key] += 1
