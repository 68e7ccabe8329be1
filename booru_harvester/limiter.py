"""Bounded admission pools and the task group that joins a crawl run."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

from .config import LimiterConfig

logger = logging.getLogger("booru.limiter")


class AdmissionPool:
    """A counting semaphore paired with one worker thread per slot."""

    def __init__(self, name: str, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"pool {name!r} needs a capacity of at least 1")
        self.name = name
        self.capacity = capacity
        self._slots = threading.BoundedSemaphore(capacity)
        self._executor = ThreadPoolExecutor(max_workers=capacity, thread_name_prefix=f"{name}-")

    def acquire(self) -> None:
        self._slots.acquire()

    def release(self) -> None:
        self._slots.release()

    def drain(self) -> None:
        """Block until every admitted task has released its slot.

        Only valid while nothing else acquires from this pool.
        """
        for _ in range(self.capacity):
            self._slots.acquire()
        for _ in range(self.capacity):
            self._slots.release()

    def submit(self, fn: Callable[..., Any], *args: Any) -> None:
        self._executor.submit(fn, *args)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class Limiter:
    """The listing and ingest pools of one crawl run."""

    def __init__(self, cfg: LimiterConfig | None = None) -> None:
        cfg = cfg or LimiterConfig()
        self.listing = AdmissionPool("listing", cfg.listing_capacity)
        self.ingest = AdmissionPool("ingest", cfg.ingest_capacity)

    def drain(self) -> None:
        self.listing.drain()
        self.ingest.drain()

    def close(self) -> None:
        self.listing.shutdown()
        self.ingest.shutdown()

    def __enter__(self) -> Limiter:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


@dataclass(frozen=True)
class TaskFailure:
    task: str
    error: BaseException


class TaskGroup:
    """Structured join over fire-and-forget tasks.

    Counts outstanding tasks, including tasks spawned by other tasks, and
    collects the exceptions they raise instead of propagating them.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._pending = 0
        self.completed = 0
        self.failures: list[TaskFailure] = []

    @property
    def pending(self) -> int:
        with self._cond:
            return self._pending

    def spawn(self, pool: AdmissionPool, name: str, fn: Callable[..., Any], *args: Any) -> None:
        """Acquire a slot in ``pool`` (blocking) and run ``fn(*args)`` there."""
        pool.acquire()
        with self._cond:
            self._pending += 1
        try:
            pool.submit(self._run, pool, name, fn, args)
        except BaseException:
            self._finish(pool)
            raise

    def _run(self, pool: AdmissionPool, name: str, fn: Callable[..., Any], args: tuple[Any, ...]) -> None:
        try:
            fn(*args)
        except Exception as exc:
            logger.error("Task %s failed: %s", name, exc)
            with self._cond:
                self.failures.append(TaskFailure(name, exc))
        finally:
            self._finish(pool)

    def _finish(self, pool: AdmissionPool) -> None:
        pool.release()
        with self._cond:
            self._pending -= 1
            self.completed += 1
            if self._pending == 0:
                self._cond.notify_all()

    def join(self, timeout: float | None = None) -> bool:
        """Wait for every spawned task.  Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: self._pending == 0, timeout=timeout)
