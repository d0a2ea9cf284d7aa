"""Wires the coverage services together once per process."""
from __future__ import annotations

from datetime import timedelta
from functools import lru_cache
from typing import Optional

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.services.check_calls import CheckCallScheduler
from loadcover.services.fall_off import FallOffRecoveryOrchestrator
from loadcover.services.job_lock import DistributedJobLock
from loadcover.services.jobs import JobDefinition, JobRunner, JobTable
from loadcover.services.matching import MatchingEngine
from loadcover.services.messaging import HttpMessagingGateway, MessagingGateway
from loadcover.services.notifications import Notifier
from loadcover.services.risk import RiskEngine
from loadcover.services.store import CoverageStore

CHECK_CALL_SWEEP = "check-call-sweep"
RISK_SWEEP = "risk-sweep"
FALL_OFF_REVIEW = "fall-off-review"


class AssignmentHooks:
    """Follow-up work when a carrier is (re)assigned or reports delivery."""

    def __init__(self, pipeline: "CoveragePipeline") -> None:
        self.pipeline = pipeline

    async def on_carrier_assigned(self, load_id: str, carrier_id: str) -> None:
        self.pipeline.check_calls.create_schedule(load_id)
        self.pipeline.matching.track_match_assignment(load_id, carrier_id)

    async def on_load_delivered(self, load_id: str) -> None:
        self.pipeline.matching.track_match_completion(load_id)


class CoveragePipeline:
    def __init__(
        self,
        store: CoverageStore,
        messaging: MessagingGateway,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.messaging = messaging
        self.clock = clock

        hooks = AssignmentHooks(self)
        self.notifier = Notifier(store, messaging, clock=clock, settings=self.settings)
        self.matching = MatchingEngine(store, clock=clock, settings=self.settings)
        self.check_calls = CheckCallScheduler(
            store,
            messaging,
            self.notifier,
            delivery_handler=hooks,
            clock=clock,
            settings=self.settings,
        )
        self.fall_off = FallOffRecoveryOrchestrator(
            store,
            self.matching,
            messaging,
            self.notifier,
            assignment_listener=hooks,
            clock=clock,
            settings=self.settings,
        )
        self.risk = RiskEngine(store, self.notifier, recoverer=self.fall_off, clock=clock, settings=self.settings)
        self.job_lock = DistributedJobLock(store, instance_id=instance_id or self.settings.instance_id or None, clock=clock)
        self.jobs = JobTable(self._job_definitions())
        self.runner = JobRunner(store, self.job_lock, self.jobs, clock=clock)

    def _job_definitions(self) -> list[JobDefinition]:
        s = self.settings
        return [
            JobDefinition(
                name=CHECK_CALL_SWEEP,
                interval=timedelta(minutes=s.check_call_sweep_interval_minutes),
                lock_ttl=timedelta(seconds=s.check_call_sweep_lock_ttl_seconds),
                handler=self.check_calls.process_due,
                description="Send due check-calls, retry and escalate unanswered ones",
            ),
            JobDefinition(
                name=RISK_SWEEP,
                interval=timedelta(minutes=s.risk_sweep_interval_minutes),
                lock_ttl=timedelta(seconds=s.risk_sweep_lock_ttl_seconds),
                handler=self.risk.run_sweep,
                description="Score every active load and alert on AMBER/RED",
            ),
            JobDefinition(
                name=FALL_OFF_REVIEW,
                interval=timedelta(minutes=s.fall_off_review_interval_minutes),
                lock_ttl=timedelta(seconds=s.fall_off_review_lock_ttl_seconds),
                handler=self.fall_off.review_stale_events,
                description="Remind owners about unresolved fall-off recoveries",
            ),
        ]


@lru_cache()
def get_pipeline() -> CoveragePipeline:
    settings = get_settings()
    pipeline = CoveragePipeline(CoverageStore(settings.coverage_db_path), HttpMessagingGateway(settings), settings=settings)
    logger.info("Coverage pipeline ready", db_path=str(pipeline.store.db_path), jobs=pipeline.jobs.names())
    return pipeline
