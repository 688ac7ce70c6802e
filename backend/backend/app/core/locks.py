from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import ExitStack, contextmanager
from typing import Callable, Generic, Iterable, Iterator, TypeVar

from app.core.errors import Busy

logger = logging.getLogger(__name__)

LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "2.0"))

L = TypeVar("L")


class SharedLock:
    """Readers/writer lock with bounded waits.

    Waiting writers block new readers so a steady stream of site-level work
    cannot starve a region-level change.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    def acquire_shared(self, timeout: float) -> bool:
        with self._cond:
            ok = self._cond.wait_for(lambda: not self._writer and self._waiting_writers == 0, timeout)
            if ok:
                self._readers += 1
            return ok

    def release_shared(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_exclusive(self, timeout: float) -> bool:
        with self._cond:
            self._waiting_writers += 1
            try:
                ok = self._cond.wait_for(lambda: not self._writer and self._readers == 0, timeout)
            finally:
                self._waiting_writers -= 1
            if ok:
                self._writer = True
            else:
                # readers held back by this writer may go now
                self._cond.notify_all()
            return ok

    def release_exclusive(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()


class LockTable(Generic[L]):
    """Lazily created lock per key."""

    def __init__(self, factory: Callable[[], L]) -> None:
        self._factory = factory
        self._locks: dict[str, L] = {}
        self._guard = threading.Lock()

    def get(self, key: str) -> L:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._factory()
                self._locks[key] = lock
            return lock


class LockManager:
    """Per-site mutual exclusion plus per-region shared/exclusive locks.

    Locks are always taken regions first, then sites, each group sorted by id,
    so two operations can never wait on each other in a cycle.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._regions: LockTable[SharedLock] = LockTable(SharedLock)
        self._sites: LockTable[threading.Lock] = LockTable(threading.Lock)

    @contextmanager
    def hold(
        self,
        *,
        sites: Iterable[str] = (),
        shared_regions: Iterable[str] = (),
        exclusive_regions: Iterable[str] = (),
        timeout: float | None = None,
    ) -> Iterator[None]:
        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        exclusive = set(exclusive_regions)
        regions = sorted(set(shared_regions) | exclusive)

        def remaining() -> float:
            return max(0.0, deadline - time.monotonic())

        with ExitStack() as stack:
            for region_id in regions:
                lock = self._regions.get(region_id)
                if region_id in exclusive:
                    if not lock.acquire_exclusive(remaining()):
                        raise Busy(f"region '{region_id}' is busy, retry later")
                    stack.callback(lock.release_exclusive)
                else:
                    if not lock.acquire_shared(remaining()):
                        raise Busy(f"region '{region_id}' is busy, retry later")
                    stack.callback(lock.release_shared)
            for site_id in sorted(set(sites)):
                site_lock = self._sites.get(site_id)
                if not site_lock.acquire(timeout=remaining()):
                    raise Busy(f"site '{site_id}' is busy, retry later")
                stack.callback(site_lock.release)
            logger.debug("locks held regions=%s sites=%s", regions, sorted(set(sites)))
            yield
