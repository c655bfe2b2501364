from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Set

logger = logging.getLogger(__name__)


class TaskQueue:
    """Background work for dispatch, poll ticks and sweeps.

    Tasks run on a shared thread pool. Delayed tasks wait on a timer and are
    then handed to the same pool.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job_worker")
        self._timers: Set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable, *args, **kwargs) -> Optional[Future]:
        if self._closed:
            logger.warning("queue closed, dropping task %s", getattr(fn, "__name__", fn))
            return None
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(_log_failure)
        return future

    def schedule(self, delay_seconds: float, fn: Callable, *args, **kwargs) -> Optional[threading.Timer]:
        if self._closed:
            logger.warning("queue closed, dropping delayed task %s", getattr(fn, "__name__", fn))
            return None

        def fire() -> None:
            with self._lock:
                self._timers.discard(timer)
            self.submit(fn, *args, **kwargs)

        timer = threading.Timer(delay_seconds, fire)
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()
        return timer

    def shutdown(self, wait: bool = False) -> None:
        self._closed = True
        with self._lock:
            timers = list(self._timers)
            self._timers.clear()
        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)


class PeriodicTask:
    def __init__(self, queue: TaskQueue, interval_seconds: float, fn: Callable, name: str = "") -> None:
        self.queue = queue
        self.interval_seconds = interval_seconds
        self.fn = fn
        self.name = name or getattr(fn, "__name__", "periodic")
        self._stopped = threading.Event()

    def start(self) -> None:
        self._stopped.clear()
        self.queue.schedule(self.interval_seconds, self._run)

    def stop(self) -> None:
        self._stopped.set()

    def _run(self) -> None:
        if self._stopped.is_set():
            return
        try:
            self.fn()
        except Exception:
            logger.exception("periodic task %s failed", self.name)
        finally:
            if not self._stopped.is_set():
                self.queue.schedule(self.interval_seconds, self._run)


def _log_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("background task failed: %s", exc, exc_info=exc)
