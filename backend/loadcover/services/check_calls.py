"""
Check-call planning, sweep and reply handling.

A load with an assigned carrier gets a plan of touchpoints around pickup, each
intermediate transit day and delivery. The sweep sends due touchpoints, retries
once after the response window and escalates on a second miss. Numeric SMS
replies from the carrier close the touchpoint and may advance the load.
"""
from __future__ import annotations

import math
from datetime import datetime, time, timedelta
from typing import Dict, List, Optional, Protocol, Tuple
from zoneinfo import ZoneInfo

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import (
    LOAD_STATUS_ORDER,
    AlertPriority,
    CheckCallReply,
    CheckCallSchedule,
    CheckCallStatus,
    CheckCallSweepResult,
    CheckCallType,
    Load,
    LoadStatus,
    NotificationType,
)
from loadcover.services.lifecycle import (
    InvalidTransitionError,
    ensure_check_call_transition,
    ensure_load_transition,
)
from loadcover.services.messaging import MessagingGateway
from loadcover.services.notifications import Notifier
from loadcover.services.store import CoverageStore, phone_digits

RESPONSE_MAP: Dict[str, Tuple[LoadStatus, str]] = {
    "1": (LoadStatus.AT_PICKUP, "At Pickup"),
    "2": (LoadStatus.LOADED, "Loaded"),
    "3": (LoadStatus.IN_TRANSIT, "In Transit"),
    "4": (LoadStatus.AT_DELIVERY, "At Delivery"),
    "5": (LoadStatus.DELIVERED, "Delivered"),
}

REPLY_PROMPT = "Reply: 1=At Pickup, 2=Loaded, 3=In Transit, 4=At Delivery, 5=Delivered"

EXPEDITED_SLOTS: Tuple[Tuple[CheckCallType, time], ...] = (
    (CheckCallType.CARRIER_CHECK_AM, time(8, 30)),
    (CheckCallType.TRANSIT_AM, time(9, 0)),
    (CheckCallType.CARRIER_CHECK_PM, time(15, 30)),
    (CheckCallType.TRANSIT_PM, time(16, 0)),
)
STANDARD_SLOTS: Tuple[Tuple[CheckCallType, time], ...] = ((CheckCallType.TRANSIT_DAILY, time(13, 30)),)


class DeliveryHandler(Protocol):
    """Downstream work triggered when a carrier reports delivery."""

    async def on_load_delivered(self, load_id: str) -> None: ...


class CheckCallScheduler:
    def __init__(
        self,
        store: CoverageStore,
        messaging: MessagingGateway,
        notifier: Notifier,
        delivery_handler: Optional[DeliveryHandler] = None,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.messaging = messaging
        self.notifier = notifier
        self.delivery_handler = delivery_handler
        self.clock = clock
        self.settings = settings or get_settings()
        self.tz = ZoneInfo(self.settings.check_call_timezone)

    def is_expedited(self, load: Load) -> bool:
        return load.customer_rating >= self.settings.expedited_min_customer_rating

    def build_plan(self, load: Load) -> List[Tuple[CheckCallType, datetime]]:
        """All touchpoints for the load in chronological order, past ones included."""
        pickup = load.pickup_at
        delivery = load.delivery_at
        transit_days = math.ceil((delivery - pickup).total_seconds() / 86400)

        plan: List[Tuple[CheckCallType, datetime]] = [
            (CheckCallType.PRE_PICKUP, pickup - timedelta(hours=2)),
            (CheckCallType.PICKUP_30MIN, pickup - timedelta(minutes=30)),
            (CheckCallType.PICKUP_CONFIRM, pickup),
        ]

        slots = EXPEDITED_SLOTS if self.is_expedited(load) else STANDARD_SLOTS
        for day in range(1, transit_days):
            local_day = (pickup + timedelta(days=day)).astimezone(self.tz).date()
            for call_type, slot in slots:
                scheduled = datetime.combine(local_day, slot, tzinfo=self.tz)
                plan.append((call_type, scheduled.astimezone(pickup.tzinfo)))

        plan.extend(
            [
                (CheckCallType.PRE_DELIVERY, delivery - timedelta(hours=2)),
                (CheckCallType.POD_REQUEST_30MIN, delivery + timedelta(minutes=30)),
                (CheckCallType.POD_REQUEST_1HR, delivery + timedelta(hours=1)),
            ]
        )
        plan.sort(key=lambda item: item[1])
        return plan

    def _carrier_phone(self, load: Load) -> Optional[str]:
        carrier = self.store.get_carrier(load.carrier_id) if load.carrier_id else None
        if carrier is not None and carrier.phone:
            return carrier.phone
        return load.driver_phone

    def create_schedule(self, load_id: str) -> List[CheckCallSchedule]:
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)
        if not load.carrier_id:
            raise ValueError(f"Load {load_id} has no carrier assigned")

        now = self.clock()
        phone = self._carrier_phone(load)
        schedules = [
            CheckCallSchedule(
                schedule_id=self.store.new_id("CC"),
                load_id=load.load_id,
                call_type=call_type,
                scheduled_at=scheduled_at,
                carrier_phone=phone,
            )
            for call_type, scheduled_at in self.build_plan(load)
            if scheduled_at > now
        ]
        removed = self.store.replace_check_calls(load.load_id, schedules)
        logger.info(
            "Check-call schedule created",
            load_id=load.load_id,
            reference=load.reference_number,
            touchpoints=len(schedules),
            replaced=removed,
            expedited=self.is_expedited(load),
        )
        return schedules

    def _check_call_message(self, load: Load) -> str:
        return (
            f"Check-Call: Load #{load.reference_number} "
            f"({load.origin_label} -> {load.destination_label}). {REPLY_PROMPT}"
        )

    async def _sms(self, phone: str, body: str, schedule_id: str) -> bool:
        try:
            return await self.messaging.send_sms(phone, body)
        except Exception as exc:
            logger.error("Check-call SMS failed", schedule_id=schedule_id, error=str(exc))
            return False

    async def _send_due(self, schedule: CheckCallSchedule, now: datetime, result: CheckCallSweepResult) -> None:
        load = self.store.get_load(schedule.load_id)
        if load is None:
            raise KeyError(schedule.load_id)
        ensure_check_call_transition(schedule.status, CheckCallStatus.SENT)

        if schedule.carrier_phone:
            delivered = await self._sms(
                schedule.carrier_phone, self._check_call_message(load), schedule.schedule_id
            )
            if not delivered:
                logger.warning("Check-call SMS not delivered", schedule_id=schedule.schedule_id)
        else:
            result.send_skipped += 1

        self.store.save_check_call(
            schedule.model_copy(update={"status": CheckCallStatus.SENT, "sent_at": now})
        )
        result.sent += 1
        logger.info(
            "Check-call sent",
            load_id=load.load_id,
            schedule_id=schedule.schedule_id,
            call_type=schedule.call_type.value,
        )

    async def _handle_unanswered(
        self,
        schedule: CheckCallSchedule,
        now: datetime,
        result: CheckCallSweepResult,
    ) -> None:
        load = self.store.get_load(schedule.load_id)
        if load is None:
            raise KeyError(schedule.load_id)

        if schedule.retry_count == 0:
            ensure_check_call_transition(schedule.status, CheckCallStatus.SENT)
            self.notifier.alert(
                load.owner_id,
                f"Check-Call Missed: Load #{load.reference_number}",
                f"Carrier has not responded to {schedule.call_type.value} check-call. Auto-retrying.",
                priority=AlertPriority.INFO,
                action_url=self.notifier.load_url(load.load_id),
            )
            if schedule.carrier_phone:
                await self._sms(
                    schedule.carrier_phone,
                    f"REMINDER: Load #{load.reference_number}, please respond with your status. {REPLY_PROMPT}",
                    schedule.schedule_id,
                )
            self.store.save_check_call(schedule.model_copy(update={"retry_count": 1, "sent_at": now}))
            result.retried += 1
            logger.info("Check-call retry sent", load_id=load.load_id, schedule_id=schedule.schedule_id)
            return

        ensure_check_call_transition(schedule.status, CheckCallStatus.ESCALATED)
        self.store.save_check_call(
            schedule.model_copy(update={"status": CheckCallStatus.ESCALATED, "escalated_at": now})
        )
        self.notifier.alert(
            load.owner_id,
            f"URGENT: Carrier Unresponsive: Load #{load.reference_number}",
            "Carrier has not responded to check-call after retry. Manual intervention required.",
            priority=AlertPriority.URGENT,
            action_url=self.notifier.load_url(load.load_id),
        )
        result.escalated += 1
        logger.warning("Carrier unresponsive, check-call escalated", load_id=load.load_id, schedule_id=schedule.schedule_id)

    async def process_due(self) -> CheckCallSweepResult:
        now = self.clock()
        result = CheckCallSweepResult()
        batch = self.settings.check_call_batch_size

        for schedule in self.store.list_due_check_calls(now, limit=batch):
            try:
                await self._send_due(schedule, now, result)
            except Exception as exc:
                result.failed += 1
                logger.error("Failed to send check-call", schedule_id=schedule.schedule_id, error=str(exc))

        cutoff = now - timedelta(minutes=self.settings.check_call_response_window_minutes)
        for schedule in self.store.list_unanswered_check_calls(cutoff, limit=batch):
            try:
                await self._handle_unanswered(schedule, now, result)
            except Exception as exc:
                result.failed += 1
                logger.error("Failed to process missed check-call", schedule_id=schedule.schedule_id, error=str(exc))

        logger.info("Check-call sweep complete", **result.model_dump())
        return result

    def _advance_load(self, load: Load, target: LoadStatus) -> bool:
        if load.status not in LOAD_STATUS_ORDER:
            return False
        if LOAD_STATUS_ORDER.index(target) <= LOAD_STATUS_ORDER.index(load.status):
            return False
        try:
            ensure_load_transition(load.status, target)
        except InvalidTransitionError as exc:
            logger.warning("Check-call reply cannot advance load", load_id=load.load_id, error=str(exc))
            return False
        self.store.update_load(load.load_id, status=target, status_updated_at=self.clock())
        return True

    async def _after_delivery(self, load: Load) -> None:
        if self.delivery_handler is not None:
            try:
                await self.delivery_handler.on_load_delivered(load.load_id)
            except Exception as exc:
                logger.error("Delivery handler failed", load_id=load.load_id, error=str(exc))
        if load.carrier_id:
            self.notifier.alert(
                load.carrier_id,
                f"Upload POD: Load #{load.reference_number}",
                "Load marked as delivered. Please upload the Proof of Delivery document.",
                notif_type=NotificationType.POD_REQUEST,
                priority=AlertPriority.HIGH,
            )

    async def handle_response(self, from_phone: str, text: str) -> Optional[CheckCallReply]:
        code = (text or "").strip()[:1]
        mapping = RESPONSE_MAP.get(code)
        if mapping is None:
            logger.info("Unrecognised check-call reply", from_phone=from_phone)
            return None

        schedule = self.store.find_latest_sent_check_call(phone_digits(from_phone)[-10:])
        if schedule is None:
            logger.info("No open check-call for reply", from_phone=from_phone)
            return None

        target, label = mapping
        now = self.clock()
        ensure_check_call_transition(schedule.status, CheckCallStatus.RESPONDED)
        self.store.save_check_call(
            schedule.model_copy(
                update={
                    "status": CheckCallStatus.RESPONDED,
                    "responded_at": now,
                    "response_code": code,
                    "response_label": label,
                }
            )
        )

        load = self.store.get_load(schedule.load_id)
        if load is None:
            raise KeyError(schedule.load_id)
        advanced = self._advance_load(load, target)
        logger.info(
            "Check-call reply received",
            load_id=load.load_id,
            reference=load.reference_number,
            label=label,
            advanced=advanced,
        )

        if target == LoadStatus.DELIVERED:
            await self._after_delivery(load)

        return CheckCallReply(
            load_id=load.load_id,
            schedule_id=schedule.schedule_id,
            status=target,
            label=label,
            load_advanced=advanced,
        )
