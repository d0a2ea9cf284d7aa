"""Tests for risk scoring and the periodic risk sweep."""
from __future__ import annotations

import asyncio
import os
import sys
from datetime import timedelta
from pathlib import Path

import pytest

os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["OPENPHONE_API_KEY"] = ""
os.environ["RESEND_API_KEY"] = ""

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from loadcover.models.coverage import (  # noqa: E402
    CheckCallSchedule,
    CheckCallStatus,
    CheckCallType,
    LoadStatus,
    LoyaltyTier,
    RiskLevel,
)
from loadcover.services.risk import RiskEngine, level_for_score  # noqa: E402
from support import NOW, make_carrier, make_load, make_pipeline  # noqa: E402


class RecordingRecoverer:
    def __init__(self) -> None:
        self.flagged = []

    async def flag_for_recovery(self, load, assessment) -> None:
        self.flagged.append((load.load_id, assessment.score))


def _engine(pipeline, recoverer=None) -> RiskEngine:
    return RiskEngine(
        pipeline.store,
        pipeline.notifier,
        recoverer=recoverer,
        clock=pipeline.clock,
        settings=pipeline.settings,
    )


@pytest.mark.parametrize(
    "score, level",
    [(0, RiskLevel.GREEN), (20, RiskLevel.GREEN), (21, RiskLevel.AMBER), (40, RiskLevel.AMBER), (41, RiskLevel.RED)],
)
def test_level_boundaries(score, level):
    assert level_for_score(score) == level


def test_load_unassigned_for_five_hours_is_red(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = make_load(pipeline.store, created_at=NOW - timedelta(hours=5))

    assessment = pipeline.risk.score_load(load.load_id)

    assert [f.factor for f in assessment.factors] == ["UNASSIGNED_4HR"]
    assert assessment.score == 50
    assert assessment.level == RiskLevel.RED
    assert assessment.recovery_candidate is True


def test_unassigned_between_two_and_four_hours_is_amber(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = make_load(pipeline.store, created_at=NOW - timedelta(hours=3))

    assessment = pipeline.risk.score_load(load.load_id)

    assert [f.factor for f in assessment.factors] == ["UNASSIGNED_2HR"]
    assert assessment.level == RiskLevel.AMBER
    assert assessment.recovery_candidate is False


def test_pickup_within_four_hours_without_dispatch(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    make_carrier(pipeline.store, "CAR-A")
    load = make_load(
        pipeline.store,
        status=LoadStatus.BOOKED,
        carrier_id="CAR-A",
        pickup_at=NOW + timedelta(hours=3),
    )

    assessment = pipeline.risk.score_load(load.load_id)
    assert [f.factor for f in assessment.factors] == ["PICKUP_UNCONFIRMED"]
    assert assessment.score == 40

    pipeline.store.update_load(load.load_id, status=LoadStatus.DISPATCHED)
    assert pipeline.risk.score_load(load.load_id).score == 0


def test_carrier_and_margin_factors_accumulate(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    make_carrier(pipeline.store, "CAR-A", tier=LoyaltyTier.BRONZE, performance_score=70.0)
    load = make_load(
        pipeline.store,
        status=LoadStatus.BOOKED,
        carrier_id="CAR-A",
        customer_rate=2500.0,
        carrier_rate=2300.0,
    )

    assessment = pipeline.risk.score_load(load.load_id)

    assert [f.factor for f in assessment.factors] == ["LOW_PERFORMANCE", "BRONZE_TIER", "LOW_MARGIN"]
    assert assessment.score == sum(f.points for f in assessment.factors) == 40
    assert assessment.level == RiskLevel.AMBER


def test_escalated_check_calls_count_as_missed(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    make_carrier(pipeline.store, "CAR-A")
    load = make_load(pipeline.store, status=LoadStatus.IN_TRANSIT, carrier_id="CAR-A")
    for index in range(2):
        pipeline.store.save_check_call(
            CheckCallSchedule(
                schedule_id=f"CC-ESC-{index}",
                load_id=load.load_id,
                call_type=CheckCallType.TRANSIT_DAILY,
                scheduled_at=NOW - timedelta(hours=index + 1),
                status=CheckCallStatus.ESCALATED,
            )
        )

    assessment = pipeline.risk.score_load(load.load_id)

    assert [f.factor for f in assessment.factors] == ["MISSED_CHECKCALLS_2PLUS"]
    assert assessment.level == RiskLevel.RED
    assert assessment.recovery_candidate is False


def test_missing_load_raises_key_error(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)

    with pytest.raises(KeyError):
        pipeline.risk.score_load("LOAD99999")


def test_sweep_logs_alerts_and_flags_recovery_once_per_window(tmp_path):
    pipeline, messaging, clock = make_pipeline(tmp_path)
    store = pipeline.store
    recoverer = RecordingRecoverer()
    engine = _engine(pipeline, recoverer)

    red = make_load(store, "LOAD00001", created_at=NOW - timedelta(hours=5))
    amber = make_load(store, "LOAD00002", created_at=NOW - timedelta(hours=3))
    make_carrier(store, "CAR-A")
    green = make_load(store, "LOAD00003", status=LoadStatus.BOOKED, carrier_id="CAR-A")
    make_load(store, "LOAD00004", status=LoadStatus.DELIVERED, carrier_id="CAR-A", created_at=NOW - timedelta(days=3))

    result = asyncio.run(engine.run_sweep())

    assert (result.scanned, result.green, result.amber, result.red, result.failed) == (3, 1, 1, 1, 0)
    assert result.recovery_candidates == [red.load_id]
    assert recoverer.flagged == [(red.load_id, 50)]
    assert len(store.list_risk_logs(green.load_id)) == 1
    assert store.list_risk_logs(red.load_id)[0].notified is True
    assert store.list_risk_logs(green.load_id)[0].notified is False

    titles = [n.title for n in store.list_notifications("ae-1")]
    assert titles.count(f"RISK RED: Load #{red.reference_number}") == 1
    assert titles.count(f"Risk AMBER: Load #{amber.reference_number}") == 1
    assert [subject for _, subject, _ in messaging.emails] == [f"RISK RED: Load #{red.reference_number}"]

    clock.advance(minutes=10)
    asyncio.run(engine.run_sweep())

    titles = [n.title for n in store.list_notifications("ae-1")]
    assert titles.count(f"RISK RED: Load #{red.reference_number}") == 1
    assert len(store.list_risk_logs(red.load_id)) == 2
    assert len(recoverer.flagged) == 1
    assert len(messaging.emails) == 1

    clock.advance(minutes=31)
    asyncio.run(engine.run_sweep())

    titles = [n.title for n in store.list_notifications("ae-1")]
    assert titles.count(f"RISK RED: Load #{red.reference_number}") == 2


def test_dedup_does_not_cross_loads_with_prefixed_references(tmp_path):
    pipeline, messaging, _ = make_pipeline(tmp_path)
    store = pipeline.store
    recoverer = RecordingRecoverer()
    engine = _engine(pipeline, recoverer)
    long_ref = make_load(store, "LOAD00010", reference_number="SRL-10", created_at=NOW - timedelta(hours=6))
    short_ref = make_load(store, "LOAD00001", reference_number="SRL-1", created_at=NOW - timedelta(hours=5))

    result = asyncio.run(engine.run_sweep())

    assert result.red == 2
    titles = sorted(n.title for n in store.list_notifications("ae-1"))
    assert titles == ["RISK RED: Load #SRL-1", "RISK RED: Load #SRL-10"]
    assert sorted(subject for _, subject, _ in messaging.emails) == titles
    assert sorted(load_id for load_id, _ in recoverer.flagged) == [short_ref.load_id, long_ref.load_id]


def test_sweep_isolates_per_load_failures(tmp_path, monkeypatch):
    pipeline, _, _ = make_pipeline(tmp_path)
    engine = _engine(pipeline)
    make_load(pipeline.store, "LOAD00001")
    make_load(pipeline.store, "LOAD00002")
    original = engine.assess

    def _assess(load):
        if load.load_id == "LOAD00001":
            raise RuntimeError("scorecard lookup failed")
        return original(load)

    monkeypatch.setattr(engine, "assess", _assess)
    result = asyncio.run(engine.run_sweep())

    assert result.scanned == 2
    assert result.failed == 1
    assert result.green == 1
    assert pipeline.store.list_risk_logs("LOAD00002")
