"""In-app alerts and staff email for pipeline events."""
from __future__ import annotations

import html
from datetime import timedelta
from typing import Iterable, Optional

from loadcover.core.clock import Clock, utc_now
from loadcover.core.config import Settings, get_settings
from loadcover.core.logging import logger
from loadcover.models.coverage import AlertPriority, Notification, NotificationType
from loadcover.services.messaging import MessagingGateway
from loadcover.services.store import CoverageStore


def render_email(heading: str, lines: Iterable[str], action_url: Optional[str] = None) -> str:
    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    button = ""
    if action_url:
        button = f'<p><a href="{html.escape(action_url, quote=True)}">Open in dashboard</a></p>'
    return (
        '<div style="font-family: Arial, sans-serif; max-width: 600px;">'
        f"<h2>{html.escape(heading)}</h2>{body}{button}</div>"
    )


class Notifier:
    """Writes notification rows and emails staff; sink failures never propagate."""

    def __init__(
        self,
        store: CoverageStore,
        messaging: MessagingGateway,
        clock: Clock = utc_now,
        settings: Optional[Settings] = None,
    ) -> None:
        self.store = store
        self.messaging = messaging
        self.clock = clock
        self.settings = settings or get_settings()

    def load_url(self, load_id: str) -> str:
        return f"{self.settings.app_base_url.rstrip('/')}/dashboard/loads?id={load_id}"

    def alert(
        self,
        user_id: str,
        title: str,
        message: str,
        *,
        notif_type: NotificationType = NotificationType.LOAD_UPDATE,
        priority: AlertPriority = AlertPriority.INFO,
        action_url: Optional[str] = None,
        load_id: Optional[str] = None,
    ) -> Optional[Notification]:
        try:
            notification = Notification(
                notification_id=self.store.new_id("NTF"),
                user_id=user_id,
                load_id=load_id,
                notif_type=notif_type,
                priority=priority,
                title=title,
                message=message,
                action_url=action_url,
                created_at=self.clock(),
            )
            return self.store.add_notification(notification)
        except Exception as exc:
            logger.error("Failed to write notification", user_id=user_id, title=title, error=str(exc))
            return None

    def recent_alert_exists(
        self,
        user_id: str,
        title: str,
        window: timedelta,
        load_id: Optional[str] = None,
    ) -> bool:
        since = self.clock() - window
        return self.store.find_recent_notification(user_id, title, since, load_id=load_id) is not None

    async def email_staff(self, user_id: str, subject: str, html_body: str) -> bool:
        try:
            staff = self.store.get_staff(user_id)
            if staff is None or not staff.email:
                logger.warning("No email on file for staff member", user_id=user_id)
                return False
            return await self.messaging.send_email(staff.email, subject, html_body)
        except Exception as exc:
            logger.error("Failed to email staff member", user_id=user_id, subject=subject, error=str(exc))
            return False
