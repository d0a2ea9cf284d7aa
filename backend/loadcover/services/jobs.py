"""Periodic job table and the runner invoked by the external scheduler trigger."""
from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from pydantic import BaseModel

from loadcover.core.clock import Clock, ensure_utc, utc_now
from loadcover.core.logging import logger
from loadcover.services.job_lock import DistributedJobLock
from loadcover.services.store import CoverageStore

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class JobRunStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED_LOCKED = "skipped_locked"
    SLOT_TAKEN = "slot_taken"
    NOT_DUE = "not_due"
    DISABLED = "disabled"


class JobRunReport(BaseModel):
    job_name: str
    status: JobRunStatus
    slot_start: Optional[datetime] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    detail: Any = None


@dataclass(frozen=True)
class JobDefinition:
    name: str
    interval: timedelta
    lock_ttl: timedelta
    handler: Callable[[], Awaitable[Any]]
    description: str = ""

    def slot_start(self, now: datetime) -> datetime:
        """Start of the interval slot containing ``now``, aligned to the epoch."""
        seconds = self.interval.total_seconds()
        elapsed = (ensure_utc(now) - EPOCH).total_seconds()
        return EPOCH + timedelta(seconds=(elapsed // seconds) * seconds)


class JobTable:
    def __init__(self, jobs: Optional[List[JobDefinition]] = None) -> None:
        self._jobs: Dict[str, JobDefinition] = {}
        for job in jobs or []:
            self.register(job)

    def register(self, job: JobDefinition) -> JobDefinition:
        if job.name in self._jobs:
            raise ValueError(f"Job '{job.name}' is already registered")
        if job.interval <= timedelta(0):
            raise ValueError(f"Job '{job.name}' needs a positive interval")
        self._jobs[job.name] = job
        return job

    def get(self, name: str) -> JobDefinition:
        return self._jobs[name]

    def names(self) -> List[str]:
        return list(self._jobs)

    def __iter__(self) -> Iterator[JobDefinition]:
        return iter(self._jobs.values())

    def __len__(self) -> int:
        return len(self._jobs)


def _detail(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    return value


class JobRunner:
    """Run due jobs once per slot across all instances sharing the store."""

    def __init__(
        self,
        store: CoverageStore,
        lock: DistributedJobLock,
        table: JobTable,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.lock = lock
        self.table = table
        self.clock = clock
        for job in table:
            store.ensure_job(job.name)

    def _slot_taken(self, job: JobDefinition, slot: datetime) -> bool:
        run = self.store.get_job_run(job.name)
        last_slot = run.get("last_slot_at") if run else None
        if not last_slot:
            return False
        return ensure_utc(datetime.fromisoformat(last_slot)) >= slot

    async def _execute(self, job: JobDefinition, slot: Optional[datetime]) -> JobRunReport:
        if slot is not None and self._slot_taken(job, slot):
            return JobRunReport(job_name=job.name, status=JobRunStatus.SLOT_TAKEN, slot_start=slot)

        self.store.mark_job_started(job.name, self.clock(), slot=slot)
        started = time.perf_counter()
        try:
            result = await job.handler()
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            self.store.mark_job_finished(job.name, succeeded=False, duration_ms=duration_ms, error=str(exc))
            logger.error("Job failed", job=job.name, error=str(exc), duration_ms=round(duration_ms, 1))
            return JobRunReport(
                job_name=job.name,
                status=JobRunStatus.FAILED,
                slot_start=slot,
                duration_ms=duration_ms,
                error=str(exc),
            )

        duration_ms = (time.perf_counter() - started) * 1000
        self.store.mark_job_finished(job.name, succeeded=True, duration_ms=duration_ms)
        logger.info("Job completed", job=job.name, duration_ms=round(duration_ms, 1))
        return JobRunReport(
            job_name=job.name,
            status=JobRunStatus.SUCCESS,
            slot_start=slot,
            duration_ms=duration_ms,
            detail=_detail(result),
        )

    async def _run_locked(self, job: JobDefinition, slot: Optional[datetime]) -> JobRunReport:
        outcome = await self.lock.with_lock(job.name, job.lock_ttl, lambda: self._execute(job, slot))
        if outcome.skipped:
            return JobRunReport(job_name=job.name, status=JobRunStatus.SKIPPED_LOCKED, slot_start=slot)
        return outcome.result

    def is_due(self, job: JobDefinition, now: datetime) -> bool:
        return not self._slot_taken(job, job.slot_start(now))

    async def tick(self) -> List[JobRunReport]:
        """Evaluate every registered job; never raises."""
        now = self.clock()
        reports: List[JobRunReport] = []
        for job in self.table:
            try:
                run = self.store.get_job_run(job.name)
                if run is not None and not run["enabled"]:
                    reports.append(JobRunReport(job_name=job.name, status=JobRunStatus.DISABLED))
                    continue
                slot = job.slot_start(now)
                if self._slot_taken(job, slot):
                    reports.append(JobRunReport(job_name=job.name, status=JobRunStatus.NOT_DUE, slot_start=slot))
                    continue
                reports.append(await self._run_locked(job, slot))
            except Exception as exc:
                logger.error("Job tick failed", job=job.name, error=str(exc))
                reports.append(JobRunReport(job_name=job.name, status=JobRunStatus.FAILED, error=str(exc)))
        return reports

    async def run_job(self, name: str) -> JobRunReport:
        """Manual trigger: bypasses slot alignment but still honours the lock.

        The run is recorded without claiming the current slot, so the scheduled
        run for that slot still happens.
        """
        job = self.table.get(name)
        return await self._run_locked(job, None)

    def set_enabled(self, name: str, enabled: bool) -> bool:
        self.table.get(name)
        return self.store.set_job_enabled(name, enabled)

    def list_jobs(self) -> List[Dict[str, Any]]:
        runs = {run["job_name"]: run for run in self.store.list_job_runs()}
        listing = []
        for job in self.table:
            entry = {
                "job_name": job.name,
                "description": job.description,
                "interval_seconds": job.interval.total_seconds(),
                "lock_ttl_seconds": job.lock_ttl.total_seconds(),
            }
            entry.update({k: v for k, v in runs.get(job.name, {}).items() if k != "job_name"})
            listing.append(entry)
        return listing
