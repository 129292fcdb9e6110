"""Work queue and retry backoff for the reconcile loop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from safir.datetime import current_datetime

from .models.domain.database import DatabaseKey

__all__ = ["ExponentialBackoff", "WorkQueue"]


class WorkQueue:
    """Queue of databases that need to be reconciled.

    The queue provides the only mutual exclusion in the reconcile loop:

    #. A key is queued at most once. Adding a key that is already waiting
       does nothing.
    #. A key handed to a worker with `get` is not handed to any other worker
       until that worker calls `done`. Adding the key in the meantime marks
       it dirty, and it is queued again once when `done` is called.
    #. `add_after` schedules an add in the future. Only the earliest pending
       delayed add for each key is kept.

    `add_after` must be called from within a running event loop.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[DatabaseKey] = asyncio.Queue()
        self._dirty: set[DatabaseKey] = set()
        self._processing: set[DatabaseKey] = set()
        self._delayed: dict[DatabaseKey, asyncio.TimerHandle] = {}
        self._shutdown = False

    def __len__(self) -> int:
        return self._queue.qsize()

    def add(self, key: DatabaseKey) -> None:
        """Queue a key for processing.

        Parameters
        ----------
        key
            Key to queue.
        """
        if self._shutdown or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.put_nowait(key)

    def add_after(self, key: DatabaseKey, delay: timedelta) -> None:
        """Queue a key for processing after a delay.

        Parameters
        ----------
        key
            Key to queue.
        delay
            How long to wait before queuing it.
        """
        if self._shutdown:
            return
        if delay <= timedelta(seconds=0):
            self.add(key)
            return
        loop = asyncio.get_running_loop()
        when = loop.time() + delay.total_seconds()
        if pending := self._delayed.get(key):
            if pending.when() <= when:
                return
            pending.cancel()
        self._delayed[key] = loop.call_at(when, self._add_delayed, key)

    def done(self, key: DatabaseKey) -> None:
        """Mark processing of a key as finished.

        If the key was added again while it was being processed, it is
        queued again.

        Parameters
        ----------
        key
            Key returned by `get`.
        """
        self._processing.discard(key)
        if key in self._dirty and not self._shutdown:
            self._queue.put_nowait(key)

    async def get(self) -> DatabaseKey:
        """Wait for the next key to process.

        The caller must call `done` with the key when finished with it.

        Returns
        -------
        DatabaseKey
            Next key to process.
        """
        key = await self._queue.get()
        self._dirty.discard(key)
        self._processing.add(key)
        return key

    def shutdown(self) -> None:
        """Stop accepting keys and cancel all delayed adds."""
        self._shutdown = True
        for handle in self._delayed.values():
            handle.cancel()
        self._delayed.clear()

    def _add_delayed(self, key: DatabaseKey) -> None:
        del self._delayed[key]
        self.add(key)


class ExponentialBackoff:
    """Per-key exponential backoff for failed reconcile passes.

    The delay after the n-th consecutive failure of a key is ``base * 2 **
    (n - 1)``, capped at the ceiling. A success resets the key.

    Parameters
    ----------
    base
        Delay after the first failure.
    ceiling
        Maximum delay.
    """

    def __init__(self, base: timedelta, ceiling: timedelta) -> None:
        self._base = base
        self._ceiling = ceiling
        self._failures: dict[DatabaseKey, int] = {}
        self._since: dict[DatabaseKey, datetime] = {}

    def delay(self, failures: int) -> timedelta:
        """Return the delay after a number of consecutive failures.

        Parameters
        ----------
        failures
            Number of consecutive failures, at least one.

        Returns
        -------
        datetime.timedelta
            How long to wait before retrying.
        """
        # Bound the exponent so that long failure streaks cannot overflow.
        exponent = min(max(failures - 1, 0), 32)
        seconds = self._base.total_seconds() * 2**exponent
        return min(timedelta(seconds=seconds), self._ceiling)

    def failure(self, key: DatabaseKey) -> timedelta:
        """Record a failure of a key.

        Parameters
        ----------
        key
            Key that failed.

        Returns
        -------
        datetime.timedelta
            How long to wait before retrying it.
        """
        self._failures[key] = self._failures.get(key, 0) + 1
        self._since.setdefault(key, current_datetime(microseconds=True))
        return self.delay(self._failures[key])

    def failures(self, key: DatabaseKey) -> int:
        """Return the number of consecutive failures of a key."""
        return self._failures.get(key, 0)

    def failing_since(self, key: DatabaseKey) -> datetime | None:
        """Return when the current failure streak of a key started."""
        return self._since.get(key)

    def forget(self, key: DatabaseKey) -> None:
        """Reset the failure streak of a key after a success."""
        self._failures.pop(key, None)
        self._since.pop(key, None)
