"""
Carrier matching for uncovered loads.

Each eligible carrier is scored on five bands:

    lane (5-30) + rate (5-25) + loyalty tier (0-25) + availability (0-20) + source (0-5)

and the top candidates are returned best-first. Every scored candidate is
recorded as a MatchResult so later assignment and delivery can be traced back
to the run that proposed the carrier.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import (
    CarrierCandidate,
    CarrierSource,
    CarrierStatus,
    Load,
    LoyaltyTier,
    MatchCandidate,
    MatchResult,
    MatchRun,
    OnboardingStatus,
    ScoreBreakdown,
)
from loadcover.services.store import CoverageStore

TIER_POINTS: Dict[LoyaltyTier, int] = {
    LoyaltyTier.PLATINUM: 25,
    LoyaltyTier.GOLD: 20,
    LoyaltyTier.SILVER: 15,
    LoyaltyTier.BRONZE: 10,
    LoyaltyTier.GUEST: 0,
    LoyaltyTier.NONE: 0,
}

# (max percent difference from lane average, points)
RATE_BANDS: Tuple[Tuple[float, int], ...] = ((5.0, 25), (10.0, 20), (15.0, 15))
RATE_FLOOR = 5

ACTIVE_CARRIER_STATUSES = frozenset({CarrierStatus.APPROVED, CarrierStatus.NEW})
AVAILABILITY_WINDOW = timedelta(hours=24)


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class LaneContext:
    """Lane statistics shared by every candidate in one run."""

    def __init__(self, store: CoverageStore, load: Load) -> None:
        self.exact = store.completed_load_counts(origin_state=load.origin_state, dest_state=load.dest_state)
        self.origin = store.completed_load_counts(origin_state=load.origin_state)
        self.dest = store.completed_load_counts(dest_state=load.dest_state)

        lane_average = store.average_lane_carrier_rate(load.origin_state, load.dest_state)
        self.average_rate: Optional[float] = lane_average or load.offer_rate or None

        window_start = load.pickup_at - AVAILABILITY_WINDOW
        window_end = load.pickup_at + AVAILABILITY_WINDOW
        self.active = store.committed_load_counts(window_start, window_end, exclude_load_id=load.load_id)
        self.delivering_near = store.carriers_delivering_into(load.origin_state, window_start, load.pickup_at)


class MatchingEngine:
    """Rank carriers for a load and keep the self-learning match ledger."""

    def __init__(
        self,
        store: CoverageStore,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.settings = settings or get_settings()

    def _load_candidates(self) -> Tuple[List[CarrierCandidate], int]:
        candidates: List[CarrierCandidate] = []
        skipped = 0
        for payload in self.store.list_carrier_payloads():
            try:
                candidates.append(CarrierCandidate.model_validate(payload))
            except ValidationError as exc:
                skipped += 1
                logger.warning(
                    "Skipping malformed carrier record",
                    carrier_id=payload.get("carrier_id"),
                    error=str(exc).splitlines()[0],
                )
        return candidates, skipped

    def is_eligible(self, carrier: CarrierCandidate, load: Load, now: datetime) -> bool:
        if load.equipment_type not in carrier.equipment_types:
            return False
        if carrier.insurance_expiry is not None and carrier.insurance_expiry < now:
            return False
        if carrier.onboarding_status != OnboardingStatus.APPROVED:
            return False
        return carrier.status in ACTIVE_CARRIER_STATUSES

    def _lane_score(self, carrier: CarrierCandidate, load: Load, ctx: LaneContext) -> Tuple[int, str]:
        exact = ctx.exact.get(carrier.carrier_id, 0)
        origin = ctx.origin.get(carrier.carrier_id, 0)
        dest = ctx.dest.get(carrier.carrier_id, 0)
        preferred = any(
            lane.origin_state == load.origin_state and lane.dest_state == load.dest_state
            for lane in carrier.preferred_lanes
        )
        if exact > 0:
            return 30, f"Exact lane: {exact} completed loads"
        if preferred:
            return 25, "Preferred lane match"
        if origin > 0:
            return 20, f"Origin state match: {origin} loads"
        if dest > 0:
            return 15, f"Dest state match: {dest} loads"
        return 5, "No lane history"

    def _rate_score(self, load: Load, ctx: LaneContext) -> Tuple[int, str]:
        offer = load.offer_rate
        if not ctx.average_rate or not offer:
            return RATE_FLOOR, "No lane rate history"
        diff = abs(offer - ctx.average_rate) / ctx.average_rate * 100
        detail = f"Lane avg: ${ctx.average_rate:.0f}, diff: {diff:.1f}%"
        for threshold, points in RATE_BANDS:
            if diff <= threshold:
                return points, detail
        return RATE_FLOOR, detail

    def _availability_score(self, carrier: CarrierCandidate, ctx: LaneContext) -> Tuple[int, str]:
        active = ctx.active.get(carrier.carrier_id, 0)
        if active == 0:
            return 20, "No conflicting loads"
        if carrier.carrier_id in ctx.delivering_near:
            return 15, "Delivering near origin"
        return 0, f"{active} active load(s) on pickup date"

    def score_carrier(self, carrier: CarrierCandidate, load: Load, ctx: LaneContext) -> ScoreBreakdown:
        lane, lane_detail = self._lane_score(carrier, load, ctx)
        rate, rate_detail = self._rate_score(load, ctx)
        availability, availability_detail = self._availability_score(carrier, ctx)
        loyalty = TIER_POINTS.get(carrier.tier, 0)
        source = 5 if carrier.source == CarrierSource.PLATFORM else 0
        return ScoreBreakdown(
            lane=_clamp(lane, 0, 30),
            rate=_clamp(rate, 0, 25),
            loyalty=_clamp(loyalty, 0, 25),
            availability=_clamp(availability, 0, 20),
            source=_clamp(source, 0, 5),
            details={
                "lane": lane_detail,
                "rate": rate_detail,
                "loyalty": f"Tier: {carrier.tier.value}",
                "availability": availability_detail,
                "source": "Platform member (+5)" if source else "Imported directory (+0)",
            },
        )

    def rank_carriers(
        self,
        load_id: str,
        *,
        exclude_carrier_ids: Optional[set[str]] = None,
        limit: Optional[int] = None,
    ) -> MatchRun:
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)

        now = self.clock()
        limit = limit or self.settings.match_limit
        excluded = exclude_carrier_ids or set()
        candidates, skipped = self._load_candidates()
        considered = [c for c in candidates if c.carrier_id not in excluded]
        eligible = [c for c in considered if self.is_eligible(c, load, now)]
        ctx = LaneContext(self.store, load)

        scored = [(carrier, self.score_carrier(carrier, load, ctx)) for carrier in eligible]
        scored.sort(key=lambda item: (-item[1].total, item[0].carrier_id))

        run_id = self.store.new_id("RUN")
        results: List[MatchResult] = []
        matches: List[MatchCandidate] = []
        for rank, (carrier, breakdown) in enumerate(scored, start=1):
            results.append(
                MatchResult(
                    result_id=self.store.new_id("MR"),
                    run_id=run_id,
                    load_id=load.load_id,
                    carrier_id=carrier.carrier_id,
                    total_score=breakdown.total,
                    lane_score=breakdown.lane,
                    rate_score=breakdown.rate,
                    loyalty_score=breakdown.loyalty,
                    availability_score=breakdown.availability,
                    source_score=breakdown.source,
                    breakdown=breakdown.details,
                    rank=rank,
                    created_at=now,
                )
            )
            if rank <= limit:
                matches.append(
                    MatchCandidate(
                        carrier_id=carrier.carrier_id,
                        company=carrier.company,
                        contact_name=carrier.contact_name,
                        phone=carrier.phone,
                        email=carrier.email,
                        tier=carrier.tier,
                        source=carrier.source,
                        rank=rank,
                        total_score=breakdown.total,
                        scores=breakdown,
                    )
                )
        self.store.add_match_results(results)

        logger.info(
            "Carrier matching complete",
            load_id=load.load_id,
            run_id=run_id,
            candidates=len(candidates),
            eligible=len(eligible),
            excluded=len(candidates) - len(considered),
            skipped=skipped,
            top_score=matches[0].total_score if matches else None,
        )
        return MatchRun(
            load_id=load.load_id,
            run_id=run_id,
            matches=matches,
            total_candidates=len(candidates),
            filtered=len(considered) - len(eligible),
            excluded=len(candidates) - len(considered),
            skipped=skipped,
        )

    def track_match_assignment(self, load_id: str, carrier_id: str) -> int:
        touched = self.store.flag_match_results(load_id, carrier_id, field="was_assigned")
        logger.info("Match assignment tracked", load_id=load_id, carrier_id=carrier_id, rows=touched)
        return touched

    def track_match_completion(self, load_id: str) -> int:
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)
        if not load.carrier_id:
            return 0
        touched = self.store.flag_match_results(
            load_id, load.carrier_id, field="was_completed", require_assigned=True
        )
        logger.info("Match completion tracked", load_id=load_id, carrier_id=load.carrier_id, rows=touched)
        return touched
