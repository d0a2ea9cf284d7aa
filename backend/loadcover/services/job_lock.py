"""Database-backed acquire-or-skip lock for periodic jobs.

Multiple instances may fire the same job at the same moment. Only the
instance that inserts the ``scheduler_locks`` row runs it; the others skip.
Rows carry an expiry so a crashed holder does not block the job forever.
"""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from loadcover.core.clock import Clock, utc_now
from loadcover.core.logging import logger
from loadcover.services.store import CoverageStore


def default_instance_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class LockOutcome:
    job_name: str
    acquired: bool
    holder_id: Optional[str] = None
    result: Any = None

    @property
    def skipped(self) -> bool:
        return not self.acquired


class DistributedJobLock:
    def __init__(self, store: CoverageStore, instance_id: Optional[str] = None, clock: Clock = utc_now) -> None:
        self.store = store
        self.instance_id = instance_id or default_instance_id()
        self.clock = clock

    def _holder_id(self) -> str:
        # Unique per acquisition so a late release never removes a successor's row.
        return f"{self.instance_id}:{uuid4().hex[:12]}"

    async def with_lock(
        self,
        job_name: str,
        ttl: timedelta,
        fn: Callable[[], Awaitable[Any]],
    ) -> LockOutcome:
        holder_id = self._holder_id()
        if not self.store.try_acquire_lock(job_name, holder_id, self.clock(), ttl):
            logger.info("Job lock held elsewhere, skipping", job=job_name, instance=self.instance_id)
            return LockOutcome(job_name=job_name, acquired=False)

        logger.debug("Job lock acquired", job=job_name, holder=holder_id)
        try:
            result = await fn()
        finally:
            released = self.store.release_lock(job_name, holder_id)
            if not released:
                logger.warning("Job lock expired before release", job=job_name, holder=holder_id)
        return LockOutcome(job_name=job_name, acquired=True, holder_id=holder_id, result=result)
