from datetime import datetime

from voting_api.extensions import db


class PositionChange(db.Model):
    __tablename__ = "position_changes"

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(
        db.Integer, db.ForeignKey("voting_campaigns.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)

    change_type = db.Column(db.String(16), nullable=False)      # promotion|demotion
    old_position = db.Column(db.String(32), nullable=False)
    new_position = db.Column(db.String(32), nullable=False)

    status = db.Column(db.String(16), nullable=False, default="pending")  # pending|completed|failed|skipped
    scheduled_for = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    executed_at = db.Column(db.DateTime, nullable=True)
    executed_by = db.Column(db.String(50), nullable=False, default="SYSTEM")
    failure_reason = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.Index("ix_position_change_status_due", "status", "scheduled_for"),
    )

    campaign = db.relationship("Campaign")
    employee = db.relationship("Employee")

    def to_dict(self):
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "employee_id": self.employee_id,
            "change_type": self.change_type,
            "old_position": self.old_position,
            "new_position": self.new_position,
            "status": self.status,
            "scheduled_for": self.scheduled_for.isoformat() if self.scheduled_for else None,
            "executed_at": self.executed_at.isoformat() if self.executed_at else None,
            "failure_reason": self.failure_reason,
        }
