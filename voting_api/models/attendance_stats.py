from datetime import datetime

from voting_api.extensions import db


class AttendanceStatistics(db.Model):
    __tablename__ = "attendance_statistics"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)

    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)

    late_count = db.Column(db.Integer, nullable=False, default=0)
    late_minutes_total = db.Column(db.Integer, nullable=False, default=0)

    # one-shot latch per period; cleared only by a period reset
    is_punishment_triggered = db.Column(db.Boolean, nullable=False, default=False)
    # carried over from period to period
    punishment_count = db.Column(db.Integer, nullable=False, default=0)

    last_updated = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    reset_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("employee_id", "year", "month", name="uq_attendance_stats_emp_month"),
        db.CheckConstraint("month BETWEEN 1 AND 12", name="ck_attendance_stats_month"),
        db.Index("ix_attendance_stats_period", "year", "month"),
        db.Index("ix_attendance_stats_punishment", "is_punishment_triggered"),
    )

    employee = db.relationship("Employee")
    late_records = db.relationship(
        "LateRecord",
        back_populates="statistics",
        order_by="LateRecord.id",
    )

    def should_trigger_punishment(self, count_threshold: int = 3, minutes_threshold: int = 10) -> bool:
        return (self.late_count or 0) > count_threshold or (self.late_minutes_total or 0) > minutes_threshold

    def mark_punishment_triggered(self) -> bool:
        """Latch the period. Returns False when it was already latched."""
        if self.is_punishment_triggered:
            return False
        self.is_punishment_triggered = True
        self.punishment_count = (self.punishment_count or 0) + 1
        self.last_updated = datetime.utcnow()
        return True

    def to_dict(self, include_records: bool = False):
        out = {
            "id": self.id,
            "employee_id": self.employee_id,
            "year": self.year,
            "month": self.month,
            "late_count": self.late_count,
            "late_minutes_total": self.late_minutes_total,
            "is_punishment_triggered": self.is_punishment_triggered,
            "punishment_count": self.punishment_count,
            "last_updated": self.last_updated.isoformat() if self.last_updated else None,
        }
        if include_records:
            out["late_records"] = [r.to_dict() for r in self.late_records]
        return out


class LateRecord(db.Model):
    __tablename__ = "attendance_late_records"

    id = db.Column(db.Integer, primary_key=True)
    statistics_id = db.Column(
        db.Integer, db.ForeignKey("attendance_statistics.id", ondelete="CASCADE"), nullable=False, index=True
    )
    employee_id = db.Column(db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    # stable id of the upstream attendance event; replays are ignored
    event_ref = db.Column(db.String(128), nullable=False, unique=True)
    late_minutes = db.Column(db.Integer, nullable=False)
    occurred_at = db.Column(db.DateTime, nullable=True)
    reason = db.Column(db.String(120), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    statistics = db.relationship("AttendanceStatistics", back_populates="late_records")

    def to_dict(self):
        return {
            "event_ref": self.event_ref,
            "late_minutes": self.late_minutes,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "reason": self.reason,
        }


class PeriodReset(db.Model):
    """Marker row: the scheduled reset for (year, month) already ran."""
    __tablename__ = "attendance_period_resets"

    id = db.Column(db.Integer, primary_key=True)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    rows_reset = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("year", "month", name="uq_period_reset_year_month"),
    )
