from datetime import datetime, date
from typing import Optional

from voting_api.extensions import db

# lowest rank first
POSITION_HIERARCHY = (
    "intern",
    "staff",
    "assistant_manager",
    "manager",
    "regional_manager",
)
LOWEST_POSITION = POSITION_HIERARCHY[0]


def position_rank(position: str) -> int:
    """Index in POSITION_HIERARCHY, -1 for unknown positions."""
    try:
        return POSITION_HIERARCHY.index(position)
    except ValueError:
        return -1


def position_above(position: str) -> Optional[str]:
    i = position_rank(position)
    if i < 0 or i == len(POSITION_HIERARCHY) - 1:
        return None
    return POSITION_HIERARCHY[i + 1]


def position_below(position: str) -> Optional[str]:
    i = position_rank(position)
    if i <= 0:
        return None
    return POSITION_HIERARCHY[i - 1]


class Employee(db.Model):
    __tablename__ = "employees"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(120), nullable=False)

    position = db.Column(db.String(32), nullable=False, default=LOWEST_POSITION)
    position_start_date = db.Column(db.DateTime, nullable=True)

    hire_date = db.Column(db.Date, nullable=False, default=date.today)
    current_store = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), default="active", nullable=False)  # active/inactive

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.CheckConstraint(
            "position IN ('intern','staff','assistant_manager','manager','regional_manager')",
            name="ck_employee_position",
        ),
        db.Index("ix_emp_position_status", "position", "status"),
        db.Index("ix_emp_store", "current_store"),
    )

    def days_employed(self, now: datetime) -> int:
        return (now.date() - self.hire_date).days

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "position": self.position,
            "hire_date": self.hire_date.isoformat() if self.hire_date else None,
            "current_store": self.current_store,
            "status": self.status,
        }
