import pytest

from voting_api.common.errors import ValidationFailed
from voting_api.extensions import db
from voting_api.models.notification_outbox import NotificationOutbox
from voting_api.services.notifications import Outbox, OutboxDispatcher

from conftest import NOW


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def send(self, channel, event_type, payload):
        self.sent.append((channel, event_type, payload))


class BrokenNotifier:
    def send(self, channel, event_type, payload):
        raise ConnectionError("smtp down")


def _queue(n=2):
    outbox = Outbox(db.session)
    for i in range(n):
        outbox.enqueue("management" if i % 2 == 0 else "staff", "campaign_resolved", {"campaign_id": i})
    db.session.commit()


def test_enqueue_rejects_unknown_channel(app):
    with pytest.raises(ValidationFailed):
        Outbox(db.session).enqueue("everyone", "campaign_resolved", {})


def test_pending_rows_are_delivered_in_order(app):
    _queue(3)
    notifier = RecordingNotifier()
    summary = OutboxDispatcher(db.session, notifier).deliver_pending(now=NOW)

    assert summary == {"sent": 3, "failed": 0, "retry": 0}
    assert [p["campaign_id"] for _, _, p in notifier.sent] == [0, 1, 2]
    for row in NotificationOutbox.query.all():
        assert row.status == "sent"
        assert row.sent_at == NOW
        assert row.attempts == 1

    # nothing left to send
    assert OutboxDispatcher(db.session, notifier).deliver_pending(now=NOW)["sent"] == 0


def test_failing_transport_retries_then_gives_up(app):
    _queue(1)
    dispatcher = OutboxDispatcher(db.session, BrokenNotifier(), max_attempts=3)

    assert dispatcher.deliver_pending(now=NOW) == {"sent": 0, "failed": 0, "retry": 1}
    assert dispatcher.deliver_pending(now=NOW) == {"sent": 0, "failed": 0, "retry": 1}
    assert dispatcher.deliver_pending(now=NOW) == {"sent": 0, "failed": 1, "retry": 0}

    row = NotificationOutbox.query.one()
    assert row.status == "failed"
    assert row.attempts == 3
    assert "smtp down" in row.last_error
    assert dispatcher.deliver_pending(now=NOW) == {"sent": 0, "failed": 0, "retry": 0}


def test_engine_delivers_queued_campaign_events(engine, make_employee):
    make_employee(position="intern", hired=NOW.date().replace(year=2025))
    engine.check_promotions(now=NOW)
    summary = engine.deliver_notifications(now=NOW)
    assert summary["sent"] == 2
    assert NotificationOutbox.query.filter_by(status="pending").count() == 0
