"""Tests for check-call planning, the escalation sweep and reply handling."""
from __future__ import annotations

import asyncio
import os
import sys
from collections import Counter
from datetime import datetime, timedelta, timezone
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
    NotificationType,
)
from support import NOW, FakeClock, FakeMessaging, make_carrier, make_load, make_pipeline  # noqa: E402

PICKUP = datetime(2026, 3, 11, 14, 0, tzinfo=timezone.utc)
CARRIER_PHONE = "+1 (555) 010-0001"


class RecordingDeliveryHandler:
    def __init__(self) -> None:
        self.delivered = []

    async def on_load_delivered(self, load_id: str) -> None:
        self.delivered.append(load_id)


def _booked_load(store, load_id="LOAD00001", transit_days=2, **overrides):
    make_carrier(store, "CAR-A", phone=CARRIER_PHONE)
    values = {
        "status": LoadStatus.BOOKED,
        "carrier_id": "CAR-A",
        "pickup_at": PICKUP,
        "delivery_at": PICKUP + timedelta(days=transit_days),
    }
    values.update(overrides)
    return make_load(store, load_id, **values)


def test_standard_two_day_load_gets_seven_touchpoints(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store)

    schedules = pipeline.check_calls.create_schedule(load.load_id)

    assert [s.call_type for s in schedules] == [
        CheckCallType.PRE_PICKUP,
        CheckCallType.PICKUP_30MIN,
        CheckCallType.PICKUP_CONFIRM,
        CheckCallType.TRANSIT_DAILY,
        CheckCallType.PRE_DELIVERY,
        CheckCallType.POD_REQUEST_30MIN,
        CheckCallType.POD_REQUEST_1HR,
    ]
    # 13:30 America/Chicago (CDT) on the first transit day.
    assert schedules[3].scheduled_at == datetime(2026, 3, 12, 18, 30, tzinfo=timezone.utc)
    assert schedules[0].scheduled_at == PICKUP - timedelta(hours=2)
    assert schedules[-1].scheduled_at == PICKUP + timedelta(days=2, hours=1)
    assert all(s.status == CheckCallStatus.PENDING for s in schedules)
    assert all(s.carrier_phone == CARRIER_PHONE for s in schedules)


def test_expedited_customers_get_four_transit_touchpoints_per_day(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store, transit_days=3, customer_rating=3)

    schedules = pipeline.check_calls.create_schedule(load.load_id)
    counts = Counter(s.call_type for s in schedules)

    assert counts[CheckCallType.CARRIER_CHECK_AM] == 2
    assert counts[CheckCallType.TRANSIT_AM] == 2
    assert counts[CheckCallType.CARRIER_CHECK_PM] == 2
    assert counts[CheckCallType.TRANSIT_PM] == 2
    assert counts[CheckCallType.TRANSIT_DAILY] == 0
    assert len(schedules) == 6 + 8
    first_am = next(s for s in schedules if s.call_type == CheckCallType.CARRIER_CHECK_AM)
    assert first_am.scheduled_at == datetime(2026, 3, 12, 13, 30, tzinfo=timezone.utc)


def test_standard_customers_get_one_transit_touchpoint_per_day(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store, transit_days=3, customer_rating=2)

    schedules = pipeline.check_calls.create_schedule(load.load_id)

    assert sum(1 for s in schedules if s.call_type == CheckCallType.TRANSIT_DAILY) == 2
    assert len(schedules) == 6 + 2


def test_past_touchpoints_are_dropped(tmp_path):
    clock = FakeClock(PICKUP - timedelta(minutes=15))
    pipeline, _, _ = make_pipeline(tmp_path, clock=clock)
    load = _booked_load(pipeline.store)

    schedules = pipeline.check_calls.create_schedule(load.load_id)

    assert [s.call_type for s in schedules][:2] == [CheckCallType.PICKUP_CONFIRM, CheckCallType.TRANSIT_DAILY]
    assert len(schedules) == 5
    assert all(s.scheduled_at > clock() for s in schedules)


def test_regeneration_replaces_existing_plan(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store)

    pipeline.check_calls.create_schedule(load.load_id)
    pipeline.check_calls.create_schedule(load.load_id)

    assert len(pipeline.store.list_check_calls(load.load_id)) == 7


def test_create_schedule_requires_load_and_carrier(tmp_path):
    pipeline, _, _ = make_pipeline(tmp_path)
    make_load(pipeline.store, "LOAD00002")

    with pytest.raises(KeyError):
        pipeline.check_calls.create_schedule("LOAD99999")
    with pytest.raises(ValueError):
        pipeline.check_calls.create_schedule("LOAD00002")


def test_due_touchpoint_is_sent_then_retried_then_escalated(tmp_path):
    pipeline, messaging, clock = make_pipeline(tmp_path)
    store = pipeline.store
    load = _booked_load(store)
    pipeline.check_calls.create_schedule(load.load_id)

    clock.now = PICKUP - timedelta(hours=2)
    first = asyncio.run(pipeline.check_calls.process_due())
    assert (first.sent, first.retried, first.escalated) == (1, 0, 0)
    assert messaging.sms[0][0] == CARRIER_PHONE
    assert f"Load #{load.reference_number}" in messaging.sms[0][1]
    sent = store.list_check_calls(load.load_id)[0]
    assert sent.status == CheckCallStatus.SENT
    assert sent.sent_at == clock()

    clock.advance(minutes=30)
    second = asyncio.run(pipeline.check_calls.process_due())
    assert (second.sent, second.retried, second.escalated) == (0, 1, 0)
    assert messaging.sms[-1][1].startswith("REMINDER")
    retried = store.list_check_calls(load.load_id)[0]
    assert retried.status == CheckCallStatus.SENT
    assert retried.retry_count == 1
    assert retried.sent_at == clock()

    clock.advance(minutes=30)
    third = asyncio.run(pipeline.check_calls.process_due())
    assert (third.sent, third.retried, third.escalated) == (0, 0, 1)
    escalated = store.list_check_calls(load.load_id)[0]
    assert escalated.status == CheckCallStatus.ESCALATED
    assert escalated.escalated_at == clock()

    titles = [n.title for n in store.list_notifications("ae-1")]
    assert f"Check-Call Missed: Load #{load.reference_number}" in titles
    assert f"URGENT: Carrier Unresponsive: Load #{load.reference_number}" in titles
    assert "MISSED_CHECKCALL" in [f.factor for f in pipeline.risk.score_load(load.load_id).factors]


def test_sms_outage_still_advances_touchpoint_to_escalation(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path, messaging=FakeMessaging(fail=True))
    store = pipeline.store
    load = _booked_load(store)
    pipeline.check_calls.create_schedule(load.load_id)

    clock.now = PICKUP - timedelta(hours=2)
    results = [asyncio.run(pipeline.check_calls.process_due())]
    for _ in range(2):
        clock.advance(minutes=31)
        results.append(asyncio.run(pipeline.check_calls.process_due()))

    assert [(r.sent, r.retried, r.escalated, r.failed) for r in results] == [
        (1, 0, 0, 0),
        (0, 1, 0, 0),
        (0, 0, 1, 0),
    ]
    assert store.list_check_calls(load.load_id)[0].status == CheckCallStatus.ESCALATED
    titles = Counter(n.title for n in store.list_notifications("ae-1"))
    assert titles[f"Check-Call Missed: Load #{load.reference_number}"] == 1
    assert titles[f"URGENT: Carrier Unresponsive: Load #{load.reference_number}"] == 1


def test_touchpoint_without_phone_is_marked_sent_without_sms(tmp_path):
    pipeline, messaging, clock = make_pipeline(tmp_path)
    make_carrier(pipeline.store, "CAR-NOPHONE")
    load = make_load(
        pipeline.store,
        status=LoadStatus.BOOKED,
        carrier_id="CAR-NOPHONE",
        pickup_at=PICKUP,
    )
    pipeline.check_calls.create_schedule(load.load_id)

    clock.now = PICKUP - timedelta(hours=2)
    result = asyncio.run(pipeline.check_calls.process_due())

    assert result.sent == 1
    assert result.send_skipped == 1
    assert messaging.sms == []
    assert pipeline.store.list_check_calls(load.load_id)[0].status == CheckCallStatus.SENT


def test_sweep_isolates_failing_items(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store)
    pipeline.check_calls.create_schedule(load.load_id)
    pipeline.store.save_check_call(
        CheckCallSchedule(
            schedule_id="CC-GHOST",
            load_id="LOAD-GHOST",
            call_type=CheckCallType.PRE_PICKUP,
            scheduled_at=NOW,
        )
    )

    clock.now = PICKUP - timedelta(hours=2)
    result = asyncio.run(pipeline.check_calls.process_due())

    assert result.failed == 1
    assert result.sent == 1


def _send_first_touchpoint(pipeline, clock, load):
    pipeline.check_calls.create_schedule(load.load_id)
    clock.now = PICKUP - timedelta(hours=2)
    asyncio.run(pipeline.check_calls.process_due())


def test_reply_marks_touchpoint_responded_and_advances_load(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store)
    _send_first_touchpoint(pipeline, clock, load)

    reply = asyncio.run(pipeline.check_calls.handle_response("555-010-0001", " 1 at the dock"))

    assert reply is not None
    assert reply.status == LoadStatus.AT_PICKUP
    assert reply.label == "At Pickup"
    assert reply.load_advanced is True
    assert pipeline.store.get_load(load.load_id).status == LoadStatus.AT_PICKUP
    touchpoint = pipeline.store.list_check_calls(load.load_id)[0]
    assert touchpoint.status == CheckCallStatus.RESPONDED
    assert touchpoint.response_code == "1"

    assert asyncio.run(pipeline.check_calls.handle_response("555-010-0001", "2")) is None


def test_reply_never_moves_load_backwards(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store, status=LoadStatus.IN_TRANSIT)
    _send_first_touchpoint(pipeline, clock, load)

    reply = asyncio.run(pipeline.check_calls.handle_response("+15550100001", "1"))

    assert reply is not None
    assert reply.load_advanced is False
    assert pipeline.store.get_load(load.load_id).status == LoadStatus.IN_TRANSIT


def test_unmapped_or_unmatched_replies_return_none(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path)
    load = _booked_load(pipeline.store)
    _send_first_touchpoint(pipeline, clock, load)

    assert asyncio.run(pipeline.check_calls.handle_response("555-010-0001", "yes")) is None
    assert asyncio.run(pipeline.check_calls.handle_response("555-999-0000", "3")) is None
    assert pipeline.store.list_check_calls(load.load_id)[0].status == CheckCallStatus.SENT


def test_delivered_reply_runs_delivery_handler_and_requests_pod(tmp_path):
    pipeline, _, clock = make_pipeline(tmp_path)
    handler = RecordingDeliveryHandler()
    pipeline.check_calls.delivery_handler = handler
    load = _booked_load(pipeline.store, status=LoadStatus.IN_TRANSIT)
    _send_first_touchpoint(pipeline, clock, load)

    reply = asyncio.run(pipeline.check_calls.handle_response("555-010-0001", "5"))

    assert reply.status == LoadStatus.DELIVERED
    assert pipeline.store.get_load(load.load_id).status == LoadStatus.DELIVERED
    assert handler.delivered == [load.load_id]
    pod = pipeline.store.list_notifications("CAR-A")
    assert [n.notif_type for n in pod] == [NotificationType.POD_REQUEST]
    assert pod[0].title == f"Upload POD: Load #{load.reference_number}"
