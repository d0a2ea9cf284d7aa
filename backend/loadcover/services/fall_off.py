"""Carrier fall-off recovery: unassign, alert, offer backups, penalise, and close on acceptance."""
from __future__ import annotations

from datetime import timedelta
from typing import List, Optional, Protocol

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import (
    AlertPriority,
    FallOffEvent,
    FallOffStatus,
    Load,
    LoadStatus,
    MatchCandidate,
    NotificationType,
    RiskAssessment,
)
from loadcover.services.lifecycle import ensure_fall_off_transition, ensure_load_transition
from loadcover.services.matching import MatchingEngine
from loadcover.services.messaging import MessagingGateway
from loadcover.services.notifications import Notifier, render_email
from loadcover.services.store import CoverageStore

DEFAULT_REASON = "Carrier cancelled/removed"
METHOD_BACKUP_OFFER = "BACKUP_OFFER"
METHOD_DIRECT = "DIRECT_ASSIGNMENT"


class AssignmentListener(Protocol):
    """Notified after a backup carrier has been assigned to a recovered load."""

    async def on_carrier_assigned(self, load_id: str, carrier_id: str) -> None: ...


class FallOffRecoveryOrchestrator:
    def __init__(
        self,
        store: CoverageStore,
        matching: MatchingEngine,
        messaging: MessagingGateway,
        notifier: Notifier,
        assignment_listener: Optional[AssignmentListener] = None,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.matching = matching
        self.messaging = messaging
        self.notifier = notifier
        self.assignment_listener = assignment_listener
        self.clock = clock
        self.settings = settings or get_settings()

    def _carrier_name(self, carrier_id: Optional[str]) -> str:
        if not carrier_id:
            return "Unknown"
        carrier = self.store.get_carrier(carrier_id)
        if carrier is None:
            return carrier_id
        return carrier.company or carrier.contact_name or carrier_id

    def _offer_text(self, load: Load) -> str:
        return (
            f"Urgent load: {load.origin_label} to {load.destination_label}, ${load.offer_rate:,.0f}, "
            f"pickup {load.pickup_at:%m/%d/%Y}. Reply YES to accept."
        )

    async def _send_offers(self, load: Load, exclude: set[str]) -> List[MatchCandidate]:
        run = self.matching.rank_carriers(
            load.load_id,
            exclude_carrier_ids=exclude,
            limit=self.settings.backup_offer_count,
        )
        offered = run.matches[: self.settings.backup_offer_count]
        for match in offered:
            if match.phone:
                try:
                    await self.messaging.send_sms(match.phone, self._offer_text(load))
                except Exception as exc:
                    logger.error(
                        "Backup offer SMS failed",
                        load_id=load.load_id,
                        carrier_id=match.carrier_id,
                        error=str(exc),
                    )
            self.notifier.alert(
                match.carrier_id,
                f"Urgent Load Available: #{load.reference_number}",
                f"{load.origin_label} -> {load.destination_label}. Rate: ${load.offer_rate:,.0f}. Reply to accept.",
                notif_type=NotificationType.LOAD_TENDERED,
                priority=AlertPriority.URGENT,
            )
            logger.info(
                "Backup offer sent",
                load_id=load.load_id,
                carrier_id=match.carrier_id,
                rank=match.rank,
                score=match.total_score,
            )
        return offered

    async def _alert_owner(self, load: Load, carrier_name: str, reason: str) -> None:
        title = f"CARRIER FALL-OFF: Load #{load.reference_number}"
        url = self.notifier.load_url(load.load_id)
        self.notifier.alert(
            load.owner_id,
            title,
            f"Carrier {carrier_name} has fallen off. Recovery in progress.",
            priority=AlertPriority.URGENT,
            action_url=url,
        )
        html = render_email(
            title,
            [
                f"Carrier {carrier_name} fell off load #{load.reference_number}.",
                f"Lane: {load.origin_label} to {load.destination_label}.",
                f"Reason: {reason}.",
                "Backup carriers are being contacted automatically.",
            ],
            action_url=url,
        )
        await self.notifier.email_staff(load.owner_id, title, html)

    def _unassign(self, load: Load) -> None:
        self.store.update_load(
            load.load_id,
            carrier_id=None,
            status=LoadStatus.POSTED,
            driver_name=None,
            driver_phone=None,
            truck_number=None,
            trailer_number=None,
            status_updated_at=self.clock(),
        )
        closed = self.store.close_open_check_calls(load.load_id)
        logger.info("Carrier unassigned from load", load_id=load.load_id, check_calls_closed=closed)

    def _record_penalty(self, load: Load, carrier_id: str, reason: str) -> None:
        carrier = self.store.get_carrier(carrier_id)
        if carrier is None:
            logger.warning("Fall-off carrier profile not found", carrier_id=carrier_id)
            return
        count = self.store.count_fall_offs(carrier_id)
        note = (
            f"[{self.clock().isoformat()}] Fall-off #{count}: Load {load.reference_number}. Reason: {reason}"
        )
        self.store.append_carrier_note(carrier_id, note)
        if count >= self.settings.deactivation_review_threshold:
            self.notifier.alert(
                load.owner_id,
                f"Carrier Deactivation Review: {carrier.company}",
                f"This carrier has {count} fall-offs. Consider deactivation review.",
                notif_type=NotificationType.GENERAL,
                priority=AlertPriority.HIGH,
            )
            logger.warning("Carrier flagged for deactivation review", carrier_id=carrier_id, fall_offs=count)

    async def execute_fall_off_recovery(self, load_id: str, reason: Optional[str] = None) -> FallOffEvent:
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)
        ensure_load_transition(load.status, LoadStatus.POSTED)

        reason = reason or DEFAULT_REASON
        original_carrier_id = load.carrier_id
        event = self.store.save_fall_off_event(
            FallOffEvent(
                event_id=self.store.new_id("FOE"),
                load_id=load.load_id,
                original_carrier_id=original_carrier_id,
                reason=reason,
                created_at=self.clock(),
            )
        )
        logger.warning(
            "Carrier fall-off recorded",
            load_id=load.load_id,
            event_id=event.event_id,
            carrier_id=original_carrier_id,
        )

        try:
            await self._alert_owner(load, self._carrier_name(original_carrier_id), reason)
        except Exception as exc:
            logger.error("Fall-off owner alert failed", load_id=load.load_id, error=str(exc))

        try:
            self._unassign(load)
        except Exception as exc:
            logger.error("Fall-off unassign failed", load_id=load.load_id, error=str(exc))

        offered: List[MatchCandidate] = []
        try:
            exclude = {original_carrier_id} if original_carrier_id else set()
            offered = await self._send_offers(load, exclude)
        except Exception as exc:
            logger.error("Fall-off backup matching failed", load_id=load.load_id, error=str(exc))

        if original_carrier_id:
            try:
                self._record_penalty(load, original_carrier_id, reason)
            except Exception as exc:
                logger.error("Fall-off penalty logging failed", carrier_id=original_carrier_id, error=str(exc))

        event = self.store.save_fall_off_event(
            event.model_copy(
                update={
                    "backups_sent": len(offered),
                    "contacted_carrier_ids": [m.carrier_id for m in offered],
                }
            )
        )
        logger.info("Fall-off recovery initiated", load_id=load.load_id, backups_sent=event.backups_sent)
        return event

    async def handle_fall_off_acceptance(self, load_id: str, carrier_id: str) -> Optional[FallOffEvent]:
        event = self.store.latest_active_fall_off(load_id)
        if event is None:
            logger.info("No active fall-off for acceptance", load_id=load_id, carrier_id=carrier_id)
            return None
        load = self.store.get_load(load_id)
        if load is None:
            raise KeyError(load_id)
        ensure_load_transition(load.status, LoadStatus.BOOKED)
        ensure_fall_off_transition(event.status, FallOffStatus.RECOVERED)

        now = self.clock()
        load = self.store.update_load(
            load_id,
            carrier_id=carrier_id,
            status=LoadStatus.BOOKED,
            status_updated_at=now,
        )
        minutes = (now - event.created_at).total_seconds() / 60
        event = self.store.save_fall_off_event(
            event.model_copy(
                update={
                    "status": FallOffStatus.RECOVERED,
                    "new_carrier_id": carrier_id,
                    "recovery_method": (
                        METHOD_BACKUP_OFFER if carrier_id in event.contacted_carrier_ids else METHOD_DIRECT
                    ),
                    "recovery_minutes": round(minutes, 2),
                    "backups_accepted": 1,
                    "resolved_at": now,
                }
            )
        )

        self.notifier.alert(
            load.owner_id,
            f"Fall-Off Recovered: Load #{load.reference_number}",
            f"{self._carrier_name(carrier_id)} accepted. Recovery time: {minutes:.0f} min.",
            priority=AlertPriority.HIGH,
            action_url=self.notifier.load_url(load.load_id),
        )
        logger.info("Fall-off recovered", load_id=load_id, carrier_id=carrier_id, minutes=round(minutes, 1))

        if self.assignment_listener is not None:
            try:
                await self.assignment_listener.on_carrier_assigned(load_id, carrier_id)
            except Exception as exc:
                logger.error("Assignment listener failed", load_id=load_id, error=str(exc))
        return event

    async def flag_for_recovery(self, load: Load, assessment: RiskAssessment) -> None:
        """Risk-engine hook for RED loads that still have no carrier."""
        if not self.settings.auto_rematch_red_unassigned:
            logger.warning(
                "RED risk on unassigned load, consider fall-off recovery",
                load_id=load.load_id,
                reference=load.reference_number,
                score=assessment.score,
            )
            return
        offered = await self._send_offers(load, exclude=set())
        logger.info("Auto re-match offers sent", load_id=load.load_id, offers=len(offered))

    async def review_stale_events(self) -> int:
        """Alert owners about recovery episodes that are still open after the stale window."""
        window = timedelta(minutes=self.settings.fall_off_stale_after_minutes)
        cutoff = self.clock() - window
        alerted = 0
        for event in self.store.list_fall_off_events(status=FallOffStatus.ACTIVE, created_before=cutoff):
            try:
                load = self.store.get_load(event.load_id)
                if load is None:
                    logger.warning("Fall-off event references missing load", event_id=event.event_id)
                    continue
                title = f"Fall-Off Unresolved: Load #{load.reference_number}"
                if self.notifier.recent_alert_exists(load.owner_id, title, window, load_id=load.load_id):
                    continue
                age = (self.clock() - event.created_at).total_seconds() / 60
                self.notifier.alert(
                    load.owner_id,
                    title,
                    f"Recovery has been open for {age:.0f} min with {event.backups_sent} backup(s) contacted.",
                    priority=AlertPriority.HIGH,
                    action_url=self.notifier.load_url(load.load_id),
                    load_id=load.load_id,
                )
                alerted += 1
            except Exception as exc:
                logger.error("Stale fall-off review failed", event_id=event.event_id, error=str(exc))
        logger.info("Fall-off review complete", alerted=alerted)
        return alerted
