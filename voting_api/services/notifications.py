# voting_api/services/notifications.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional, Protocol

from voting_api.common.errors import ValidationFailed
from voting_api.models.notification_outbox import NotificationOutbox, CHANNELS

log = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


class Notifier(Protocol):
    def send(self, channel: str, event_type: str, payload: dict) -> None: ...


class LoggingNotifier:
    """Default sink: writes each event to the log. Real transports plug in via init_engine."""

    def send(self, channel: str, event_type: str, payload: dict) -> None:
        log.info("notify [%s] %s %s", channel, event_type, payload)


class Outbox:
    """Queues notification events inside the caller's transaction."""

    def __init__(self, session):
        self.session = session

    def enqueue(self, channel: str, event_type: str, payload: dict) -> NotificationOutbox:
        if channel not in CHANNELS:
            raise ValidationFailed(f"Unknown notification channel {channel!r}")
        row = NotificationOutbox(
            channel=channel,
            event_type=event_type,
            payload=payload or {},
            status="pending",
            attempts=0,
        )
        self.session.add(row)
        return row


class OutboxDispatcher:
    """
    Delivers pending outbox rows through a Notifier.

    Every row is committed on its own, so a failing transport only marks
    its own row and never touches campaign/vote state.
    """

    def __init__(self, session, notifier: Optional[Notifier] = None, max_attempts: int = MAX_ATTEMPTS):
        self.session = session
        self.notifier = notifier or LoggingNotifier()
        self.max_attempts = max_attempts

    def pending(self, limit: int = 100):
        return (
            self.session.query(NotificationOutbox)
            .filter(NotificationOutbox.status == "pending")
            .order_by(NotificationOutbox.created_at.asc(), NotificationOutbox.id.asc())
            .limit(limit)
            .all()
        )

    def deliver_pending(self, limit: int = 100, now: Optional[datetime] = None) -> dict:
        sent = failed = retry = 0
        for row in self.pending(limit):
            row.attempts = (row.attempts or 0) + 1
            try:
                self.notifier.send(row.channel, row.event_type, row.payload or {})
            except Exception as e:
                row.last_error = str(e)
                if row.attempts >= self.max_attempts:
                    row.status = "failed"
                    failed += 1
                else:
                    retry += 1
                log.warning("notification %s delivery failed (attempt %s): %s", row.id, row.attempts, e)
            else:
                row.status = "sent"
                row.sent_at = now or datetime.utcnow()
                row.last_error = None
                sent += 1
            self.session.commit()
        return {"sent": sent, "failed": failed, "retry": retry}
