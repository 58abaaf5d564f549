"""
Mutual exclusion for cache read-modify-write cycles.

A save rewrites one cache file; a bulk sync rewrites every cache of a
project. Saves take a per-file lock. A bulk sync takes a per-project
lease for its whole run: while it is held, saves on that project are
rejected with a retryable CacheBusyError, and the lease is only granted
once in-flight saves have finished. Unrelated projects and files never
wait on each other.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from sdesync.config import DEFAULT_LOCK_TIMEOUT
from sdesync.errors import CacheBusyError

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation flag checked between documents."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CacheLockManager:
    """Per-cache-file locks plus per-project leases."""

    def __init__(self, timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.timeout = timeout
        self._cond = threading.Condition()
        self._file_locks: dict[str, threading.Lock] = {}
        # Holders and waiters per file lock; the lock is dropped at zero
        self._file_users: defaultdict[str, int] = defaultdict(int)
        self._leases: dict[str, str] = {}
        self._active: defaultdict[str, int] = defaultdict(int)

    def _lock_for(self, cache_path: Union[str, Path]) -> tuple[str, threading.Lock]:
        key = str(Path(cache_path).resolve())
        with self._cond:
            lock = self._file_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._file_locks[key] = lock
            self._file_users[key] += 1
            return key, lock

    def _release_lock_for(self, key: str) -> None:
        with self._cond:
            self._file_users[key] -= 1
            if self._file_users[key] == 0:
                del self._file_users[key]
                del self._file_locks[key]

    def lease_holder(self, project_id: str) -> Optional[str]:
        with self._cond:
            return self._leases.get(project_id)

    @contextmanager
    def project_lease(self, project_id: str, holder: str = "bulk-sync") -> Iterator[None]:
        """Hold a project-wide lease.

        Raises:
            CacheBusyError: Another lease is held, or in-flight saves did
                not finish within the timeout.
        """
        with self._cond:
            current = self._leases.get(project_id)
            if current is not None:
                raise CacheBusyError(f"Project {project_id} is locked by {current}")
            self._leases[project_id] = holder
            drained = self._cond.wait_for(lambda: self._active[project_id] == 0, timeout=self.timeout)
            if not drained:
                del self._leases[project_id]
                self._cond.notify_all()
                raise CacheBusyError(f"Project {project_id} has saves in progress, try again later")
        logger.debug(f"Lease on project {project_id} granted to {holder}")
        try:
            yield
        finally:
            with self._cond:
                self._leases.pop(project_id, None)
                self._cond.notify_all()
            logger.debug(f"Lease on project {project_id} released by {holder}")

    @contextmanager
    def cache_lock(
        self,
        cache_path: Union[str, Path],
        project_id: Optional[str] = None,
        within_lease: bool = False,
    ) -> Iterator[None]:
        """Hold the lock of one cache file.

        Args:
            cache_path: Cache file being rewritten.
            project_id: Project the file belongs to. When given, the
                project's lease is honoured.
            within_lease: The caller already holds the project lease.

        Raises:
            CacheBusyError: The project is leased or the file lock timed out.
        """
        counted = project_id is not None and not within_lease
        if counted:
            with self._cond:
                holder = self._leases.get(project_id)
                if holder is not None:
                    raise CacheBusyError(f"Project {project_id} is locked by {holder}, try again later")
                self._active[project_id] += 1

        key, lock = self._lock_for(cache_path)
        acquired = lock.acquire(timeout=self.timeout)
        try:
            if not acquired:
                raise CacheBusyError(f"Cache {Path(cache_path).name} is being updated, try again later")
            yield
        finally:
            if acquired:
                lock.release()
            self._release_lock_for(key)
            if counted:
                with self._cond:
                    self._active[project_id] -= 1
                    self._cond.notify_all()


# Shared by all components of one process unless one is injected
default_lock_manager = CacheLockManager()
