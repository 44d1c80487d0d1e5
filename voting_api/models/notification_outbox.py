from datetime import datetime

from voting_api.extensions import db

CHANNELS = ("management", "staff")


class NotificationOutbox(db.Model):
    __tablename__ = "notification_outbox"

    id = db.Column(db.Integer, primary_key=True)
    channel = db.Column(db.String(16), nullable=False)          # management|staff
    event_type = db.Column(db.String(64), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    status = db.Column(db.String(16), nullable=False, default="pending")  # pending|sent|failed
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    sent_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint("channel IN ('management','staff')", name="ck_outbox_channel"),
        db.Index("ix_outbox_status_created", "status", "created_at"),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "channel": self.channel,
            "event_type": self.event_type,
            "payload": self.payload,
            "status": self.status,
            "attempts": self.attempts,
            "last_error": self.last_error,
        }
