"""Composite risk scoring for active loads.

Score bands: 0-20 GREEN, 21-40 AMBER, 41+ RED.
"""
from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Protocol

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import (
    ACTIVE_LOAD_STATUSES,
    PICKUP_CONFIRMED_STATUSES,
    UNASSIGNED_STATUSES,
    AlertPriority,
    Load,
    LoyaltyTier,
    RiskAssessment,
    RiskFactor,
    RiskLevel,
    RiskLog,
    RiskSweepResult,
)
from loadcover.services.notifications import Notifier, render_email
from loadcover.services.store import CoverageStore

GREEN_MAX = 20
AMBER_MAX = 40


def level_for_score(score: int) -> RiskLevel:
    if score <= GREEN_MAX:
        return RiskLevel.GREEN
    if score <= AMBER_MAX:
        return RiskLevel.AMBER
    return RiskLevel.RED


def alert_title(level: RiskLevel, reference_number: str) -> str:
    if level == RiskLevel.RED:
        return f"RISK RED: Load #{reference_number}"
    return f"Risk {level.value}: Load #{reference_number}"


class Recoverer(Protocol):
    """Receives RED loads that are still waiting for a carrier."""

    async def flag_for_recovery(self, load: Load, assessment: RiskAssessment) -> None: ...


class LoggingRecoverer:
    async def flag_for_recovery(self, load: Load, assessment: RiskAssessment) -> None:
        logger.warning(
            "RED risk on unassigned load, consider fall-off recovery",
            load_id=load.load_id,
            reference=load.reference_number,
            score=assessment.score,
        )


class RiskEngine:
    """Score loads on demand and run the periodic risk sweep."""

    def __init__(
        self,
        store: CoverageStore,
        notifier: Notifier,
        recoverer: Optional[Recoverer] = None,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.recoverer: Recoverer = recoverer or LoggingRecoverer()
        self.clock = clock
        self.settings = settings or get_settings()

    def _factors(self, load: Load) -> List[RiskFactor]:
        now = self.clock()
        factors: List[RiskFactor] = []

        if load.carrier_id is None:
            hours_unassigned = (now - load.created_at).total_seconds() / 3600
            if hours_unassigned >= 4:
                factors.append(
                    RiskFactor(factor="UNASSIGNED_4HR", points=50, description=f"Unassigned for {round(hours_unassigned)}h")
                )
            elif hours_unassigned >= 2:
                factors.append(
                    RiskFactor(factor="UNASSIGNED_2HR", points=30, description=f"Unassigned for {round(hours_unassigned)}h")
                )

        missed = self.store.count_escalated_check_calls(load.load_id)
        if missed >= 2:
            factors.append(
                RiskFactor(factor="MISSED_CHECKCALLS_2PLUS", points=50, description=f"{missed} missed check calls")
            )
        elif missed == 1:
            factors.append(RiskFactor(factor="MISSED_CHECKCALL", points=25, description="1 missed check call"))

        hours_to_pickup = (load.pickup_at - now).total_seconds() / 3600
        if 0 < hours_to_pickup <= 4 and load.status not in PICKUP_CONFIRMED_STATUSES:
            factors.append(
                RiskFactor(
                    factor="PICKUP_UNCONFIRMED",
                    points=40,
                    description=f"Pickup in {round(hours_to_pickup)}h, no confirmation",
                )
            )

        carrier = self.store.get_carrier(load.carrier_id) if load.carrier_id else None
        if carrier is not None:
            performance = carrier.performance_score or 0
            if 0 < performance < 80:
                factors.append(
                    RiskFactor(factor="LOW_PERFORMANCE", points=15, description=f"Performance score: {performance:.0f}%")
                )
            if carrier.tier == LoyaltyTier.BRONZE:
                factors.append(RiskFactor(factor="BRONZE_TIER", points=10, description="Bronze tier carrier"))

        if load.customer_rate and load.carrier_rate and load.customer_rate > 0:
            margin = (load.customer_rate - load.carrier_rate) / load.customer_rate * 100
            if margin < 15:
                factors.append(RiskFactor(factor="LOW_MARGIN", points=15, description=f"Margin: {margin:.1f}%"))

        return factors

    def assess(self, load: Load) -> RiskAssessment:
        factors = self._factors(load)
        score = sum(f.points for f in factors)
        level = level_for_score(score)
        assessment = RiskAssessment(load_id=load.load_id, score=score, level=level, factors=factors)
        assessment.recovery_candidate = (
            level == RiskLevel.RED and assessment.has_unassigned_factor and load.status in UNASSIGNED_STATUSES
        )
        return assessment

    def score_load(self, load_id: str) -> RiskAssessment:
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)
        return self.assess(load)

    async def _alert(self, load: Load, assessment: RiskAssessment) -> bool:
        """Raise the AMBER/RED alert unless one was raised recently; returns True when sent."""
        title = alert_title(assessment.level, load.reference_number)
        window = timedelta(minutes=self.settings.risk_alert_dedup_minutes)
        if self.notifier.recent_alert_exists(load.owner_id, title, window, load_id=load.load_id):
            logger.info("Risk alert suppressed by dedup window", load_id=load.load_id, level=assessment.level.value)
            return False

        summary = "; ".join(f.description for f in assessment.factors)
        red = assessment.level == RiskLevel.RED
        self.notifier.alert(
            load.owner_id,
            title,
            f"URGENT: {summary}" if red else summary,
            priority=AlertPriority.URGENT if red else AlertPriority.HIGH,
            action_url=self.notifier.load_url(load.load_id),
            load_id=load.load_id,
        )
        if red:
            html = render_email(
                title,
                [
                    f"Load #{load.reference_number} ({load.origin_label} to {load.destination_label}) "
                    f"scored {assessment.score}.",
                    *[f"{f.factor}: {f.description} (+{f.points})" for f in assessment.factors],
                ],
                action_url=self.notifier.load_url(load.load_id),
            )
            await self.notifier.email_staff(load.owner_id, title, html)
        return True

    async def run_sweep(self) -> RiskSweepResult:
        result = RiskSweepResult()
        loads = self.store.list_loads(ACTIVE_LOAD_STATUSES)
        for load in loads:
            result.scanned += 1
            try:
                assessment = self.assess(load)
                self.store.add_risk_log(
                    RiskLog(
                        log_id=self.store.new_id("RISK"),
                        load_id=load.load_id,
                        score=assessment.score,
                        level=assessment.level,
                        factors=assessment.factors,
                        notified=assessment.level != RiskLevel.GREEN,
                        created_at=self.clock(),
                    )
                )
                if assessment.level == RiskLevel.GREEN:
                    result.green += 1
                    continue
                if assessment.level == RiskLevel.AMBER:
                    result.amber += 1
                else:
                    result.red += 1

                alerted = await self._alert(load, assessment)
                if assessment.recovery_candidate:
                    result.recovery_candidates.append(load.load_id)
                    if alerted:
                        await self.recoverer.flag_for_recovery(load, assessment)
            except Exception as exc:
                result.failed += 1
                logger.error("Risk scoring failed", load_id=load.load_id, error=str(exc))

        logger.info(
            "Risk sweep complete",
            scanned=result.scanned,
            red=result.red,
            amber=result.amber,
            failed=result.failed,
        )
        return result
