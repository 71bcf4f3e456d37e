"""Named in-process locks with bounded waits.

Two families of names are used:

* ``"assignment"``: serialises every operation that writes the
  (``application.reviewer_ref``, ``reviewer.assigned_applications``) pair;
* ``"team:<team id>"``: serialises mutations of one team's member list.
"""
import logging
import threading
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .errors import ConcurrencyBusyError

ASSIGNMENT_LOCK = 'assignment'


def team_lock_name(team_id: str) -> str:
    """Return the lock name guarding the team with public id *team_id*."""
    return f'team:{team_id}'


class LockRegistry:
    """Hands out one ``threading.Lock`` per name.

    :meth:`hold` never blocks longer than the configured timeout; when a lock
    cannot be taken in time :class:`~app.errors.ConcurrencyBusyError` is
    raised and nothing is held.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self.timeout = float(timeout)
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._log = logging.getLogger('hackreview.locks')

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def hold(self, *names: str, timeout: Optional[float] = None) -> Iterator[None]:
        """Acquire every lock in *names* (sorted, so two callers asking for the
        same pair cannot deadlock) and release them on exit.

        Raises:
            ConcurrencyBusyError: A lock was not acquired within *timeout*
                (defaults to the registry timeout).
        """
        wait = self.timeout if timeout is None else float(timeout)
        acquired = []
        try:
            for name in sorted(set(names)):
                lock = self._lock_for(name)
                if not lock.acquire(timeout=wait):
                    self._log.warning("Timed out after %.1fs waiting for lock %s", wait, name)
                    raise ConcurrencyBusyError(
                        f"Another operation is in progress on '{name}', retry later",
                        {'lock': name, 'timeout_seconds': wait},
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    def is_locked(self, name: str) -> bool:
        """Return True if *name* is currently held by someone."""
        return self._lock_for(name).locked()
