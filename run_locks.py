#!/usr/bin/env python3
"""
Per-run mutual exclusion.

Every phase transition of a run (round expiry, start, settlement, admin
overrides) runs under the run's lock. Two layers:

- in-process: one asyncio.Lock per run id
- cross-process (optional): a DB lease in run_locks, shared with other
  scheduler processes and the operator CLI

try_hold() is single-flight: if the run is busy the caller skips it.
hold() waits for the lock (admin paths, lobby membership).
retire() drops an ended run's lock once nobody holds or waits for it.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional, Set

from logging_utils import get_logger
from run_errors import StateError

DEFAULT_LEASE_TTL_SECONDS = 120.0
DEFAULT_LEASE_WAIT_SECONDS = 30.0
_LEASE_POLL_SECONDS = 0.25


class RunLockRegistry:
    def __init__(
        self,
        db=None,
        *,
        owner: Optional[str] = None,
        lease_ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS,
        lease_wait_seconds: float = DEFAULT_LEASE_WAIT_SECONDS,
    ):
        self.log = get_logger("run_locks")
        self._db = db
        self._owner = owner or f"chaosrun:{os.getpid()}:{id(self)}"
        self._lease_ttl = float(lease_ttl_seconds)
        self._lease_wait = float(lease_wait_seconds)
        self._locks: Dict[str, asyncio.Lock] = {}
        # holders + waiters per run; a lock is only dropped at zero
        self._users: Dict[str, int] = {}
        self._retired: Set[str] = set()

    @property
    def owner(self) -> str:
        return self._owner

    def _checkout(self, run_id: str) -> asyncio.Lock:
        lock = self._locks.get(run_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[run_id] = lock
        self._users[run_id] = self._users.get(run_id, 0) + 1
        return lock

    def _checkin(self, run_id: str) -> None:
        users = self._users.get(run_id, 1) - 1
        if users > 0:
            self._users[run_id] = users
            return
        self._users.pop(run_id, None)
        if run_id in self._retired:
            self._retired.discard(run_id)
            self._locks.pop(run_id, None)

    def retire(self, run_id: str) -> None:
        """Forget run_id's lock (the run has ENDED)."""
        if self._users.get(run_id, 0) > 0:
            self._retired.add(run_id)
            return
        self._locks.pop(run_id, None)

    @property
    def tracked_runs(self) -> int:
        return len(self._locks)

    def is_busy(self, run_id: str) -> bool:
        lock = self._locks.get(run_id)
        return bool(lock and lock.locked())

    async def _acquire_lease(self, run_id: str) -> bool:
        if self._db is None:
            return True
        return await asyncio.to_thread(self._db.acquire_run_lock, run_id, self._owner, self._lease_ttl)

    async def _release_lease(self, run_id: str) -> None:
        if self._db is None:
            return
        try:
            await asyncio.to_thread(self._db.release_run_lock, run_id, self._owner)
        except Exception as exc:
            # Lease expires on its own; losing the release only delays the next holder.
            self.log.warning(f"Run lease release failed for {run_id}: {exc}")

    @asynccontextmanager
    async def try_hold(self, run_id: str) -> AsyncIterator[bool]:
        """Yield True if the run was acquired, False if it is already in flight."""
        lock = self._checkout(run_id)
        try:
            if lock.locked():
                yield False
                return
            await lock.acquire()
            try:
                if not await self._acquire_lease(run_id):
                    self.log.debug(f"Run {run_id} leased by another process; skipping")
                    yield False
                    return
                try:
                    yield True
                finally:
                    await self._release_lease(run_id)
            finally:
                lock.release()
        finally:
            self._checkin(run_id)

    @asynccontextmanager
    async def hold(self, run_id: str) -> AsyncIterator[None]:
        """Wait for exclusive access to run_id."""
        lock = self._checkout(run_id)
        try:
            async with lock:
                waited = 0.0
                while not await self._acquire_lease(run_id):
                    if waited >= self._lease_wait:
                        raise StateError(f"Run {run_id} is locked by another process")
                    await asyncio.sleep(_LEASE_POLL_SECONDS)
                    waited += _LEASE_POLL_SECONDS
                try:
                    yield
                finally:
                    await self._release_lease(run_id)
        finally:
            self._checkin(run_id)
