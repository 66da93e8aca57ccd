"""Background task processing and periodic timers used by edge node components."""

from __future__ import annotations

import logging
import queue
import threading
from datetime import timedelta
from typing import Any, Callable, Optional, Union

logger = logging.getLogger(__name__)

_STOP = object()

Interval = Union[float, int, timedelta]


def _as_seconds(value: Interval) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class TaskProcessor:
    """Runs submitted tasks on worker threads, dispatching each by its type."""

    def __init__(self, name: str, workers: int = 1) -> None:
        if workers < 1:
            raise ValueError("a task processor needs at least one worker")
        self.name = name
        self._workers = workers
        self._handlers: dict[type, Callable[[Any], None]] = {}
        self._queue: queue.Queue = queue.Queue()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._started = False
        self._stopped = False

    def register(self, task_type: type, handler: Callable[[Any], None]) -> None:
        """Install the handler that processes tasks of the given type."""
        with self._lock:
            self._handlers[task_type] = handler

    def submit(self, task: Any) -> None:
        """Queue a task for processing."""
        with self._lock:
            if self._stopped:
                raise RuntimeError(f"task processor '{self.name}' is stopped")
            if type(task) not in self._handlers:
                raise TypeError(
                    f"task processor '{self.name}' has no handler for '{type(task).__name__}'"
                )
            self._queue.put(task)

    def start(self) -> None:
        """Start the worker threads."""
        with self._lock:
            if self._stopped:
                raise RuntimeError(f"task processor '{self.name}' is stopped")
            if self._started:
                raise RuntimeError(f"task processor '{self.name}' is already running")
            self._started = True
            self._threads = [
                threading.Thread(
                    target=self._run, name=f"{self.name}-{index}", daemon=True
                )
                for index in range(self._workers)
            ]
            for thread in self._threads:
                thread.start()

    def stop(self) -> None:
        """Finish the queued tasks and stop the worker threads."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            threads = list(self._threads)
        for _ in threads:
            self._queue.put(_STOP)
        current = threading.current_thread()
        for thread in threads:
            if thread is not current:
                thread.join()

    def _run(self) -> None:
        while True:
            task = self._queue.get()
            if task is _STOP:
                return
            with self._lock:
                handler = self._handlers.get(type(task))
            if handler is None:
                logger.error(
                    "Task processor '%s' has no handler for '%s'",
                    self.name,
                    type(task).__name__,
                )
                continue
            try:
                handler(task)
            except Exception:
                logger.exception(
                    "Task processor '%s' failed on '%s'", self.name, type(task).__name__
                )


class IntervalTimer:
    """Calls a function every interval on a background thread."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(
        self, interval: Interval, callback: Callable[[], Any], one_shot: bool = False
    ) -> None:
        """Start calling the callback after every interval; once only if one_shot."""
        seconds = _as_seconds(interval)
        if seconds <= 0:
            raise ValueError("timer interval must be positive")
        with self._lock:
            if self._thread is not None:
                raise RuntimeError(f"timer '{self.name}' is already running")
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run,
                args=(self._stop_event, seconds, callback, one_shot),
                name=self.name,
                daemon=True,
            )
            self._thread.start()

    def _run(
        self,
        stop_event: threading.Event,
        seconds: float,
        callback: Callable[[], Any],
        one_shot: bool,
    ) -> None:
        while not stop_event.wait(seconds):
            try:
                callback()
            except Exception:
                logger.exception("Timer '%s' callback failed", self.name)
            if one_shot:
                return

    def stop(self) -> None:
        """Stop the timer; further calls are not made."""
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop_event.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join()