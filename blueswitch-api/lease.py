import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Dict, Optional

from errors import LockTimeout
from observability import log_event
from storage import Storage


class Lease:
    def __init__(self, manager: "LeaseManager", environment: str) -> None:
        self.manager = manager
        self.environment = environment

    def renew(self) -> None:
        self.manager.renew(self.environment)


class LeaseManager:
    """Per-environment single-rollout lock, persisted with an expiry.

    The persisted lease excludes other controller processes; a per-environment
    ``asyncio.Lock`` excludes other coroutines of this process, which share a
    holder id. A controller that dies while holding a lease blocks the
    environment for at most ``ttl_seconds``.
    """

    def __init__(
        self,
        storage: Storage,
        holder: Optional[str] = None,
        ttl_seconds: float = 300.0,
        wait_seconds: float = 10.0,
        poll_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.holder = holder or f"controller-{uuid.uuid4()}"
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds
        self.poll_seconds = poll_seconds
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._logger = logging.getLogger("blueswitch.lease")

    def try_acquire(self, environment: str) -> bool:
        return self.storage.try_acquire_lease(environment, self.holder, self.clock(), self.ttl_seconds)

    async def acquire(self, environment: str, wait_seconds: Optional[float] = None) -> Lease:
        budget = self.wait_seconds if wait_seconds is None else wait_seconds
        loop = asyncio.get_running_loop()
        deadline = loop.time() + budget
        lock = self._locks.setdefault(environment, asyncio.Lock())
        if lock.locked():
            try:
                await asyncio.wait_for(lock.acquire(), max(budget, 0.001))
            except asyncio.TimeoutError as exc:
                self._contended(environment)
                raise LockTimeout(f"Environment {environment} is locked by another operation") from exc
        else:
            await lock.acquire()
        try:
            while not self.try_acquire(environment):
                if loop.time() >= deadline:
                    self._contended(environment)
                    raise LockTimeout(f"Environment {environment} is locked by another controller")
                await asyncio.sleep(self.poll_seconds)
        except BaseException:
            lock.release()
            raise
        self._logger.info("lease.acquired environment=%s holder=%s", environment, self.holder)
        return Lease(self, environment)

    def renew(self, environment: str) -> None:
        if not self.storage.renew_lease(environment, self.holder, self.clock(), self.ttl_seconds):
            raise LockTimeout(f"Lease for {environment} expired or was reclaimed")

    def release(self, environment: str) -> None:
        self.storage.release_lease(environment, self.holder)
        lock = self._locks.get(environment)
        if lock is not None and lock.locked():
            lock.release()
        self._logger.info("lease.released environment=%s holder=%s", environment, self.holder)

    def held_elsewhere(self, environment: str) -> Optional[float]:
        """Seconds left on a lease another holder has on ``environment``, if any."""
        lease = self.storage.get_lease(environment)
        if lease is None or lease["holder"] == self.holder:
            return None
        remaining = lease["expiresAt"] - self.clock()
        return remaining if remaining > 0 else None

    def held(self, environment: str) -> bool:
        lock = self._locks.get(environment)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, environment: str, wait_seconds: Optional[float] = None) -> AsyncIterator[Lease]:
        lease = await self.acquire(environment, wait_seconds)
        try:
            yield lease
        finally:
            self.release(environment)

    def _contended(self, environment: str) -> None:
        current = self.storage.get_lease(environment) or {}
        log_event(
            "lease_contended",
            severity="WARNING",
            environment=environment,
            holder=self.holder,
            current_holder=current.get("holder"),
        )
