from datetime import datetime
from typing import Optional

from sqlalchemy.orm import validates

from voting_api.extensions import db
from voting_api.common.errors import CampaignStateError

CAMPAIGN_KINDS = ("manual", "auto_promotion", "auto_demotion")
AUTO_KINDS = ("auto_promotion", "auto_demotion")

CAMPAIGN_STATUSES = ("draft", "active", "closed")
OPEN_STATUSES = ("draft", "active")

# draft -> active -> closed, closed is terminal
_ALLOWED_TRANSITIONS = {
    "draft": {"active"},
    "active": {"closed"},
    "closed": set(),
}

_OPEN_AUTO_WHERE = db.text(
    "status IN ('draft', 'active') AND trigger_employee_id IS NOT NULL"
    " AND kind IN ('auto_promotion', 'auto_demotion')"
)


class Campaign(db.Model):
    __tablename__ = "voting_campaigns"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)

    kind = db.Column(db.String(20), nullable=False, default="manual")     # manual|auto_promotion|auto_demotion
    status = db.Column(db.String(16), nullable=False, default="draft")    # draft|active|closed
    target_position = db.Column(db.String(32), nullable=True)

    start_date = db.Column(db.DateTime, nullable=False)
    end_date = db.Column(db.DateTime, nullable=False)

    max_votes_per_voter = db.Column(db.Integer, nullable=False, default=1)
    pass_threshold = db.Column(db.Numeric(5, 2), nullable=False, default=50)
    # {"positions": [...], "min_tenure_days": n, "stores": [...], "exclude_employees": [...]}
    eligible_voter_criteria = db.Column(db.JSON, nullable=False, default=dict)

    trigger_employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="SET NULL"), nullable=True, index=True
    )
    trigger_conditions = db.Column(db.JSON, nullable=True)
    system_generated = db.Column(db.Boolean, nullable=False, default=False)
    priority = db.Column(db.Integer, nullable=False, default=0)

    can_modify_votes = db.Column(db.Boolean, nullable=False, default=True)
    max_modifications = db.Column(db.Integer, nullable=False, default=3)
    buffer_period_days = db.Column(db.Integer, nullable=False, default=0)

    # cached aggregates, recomputed from valid votes on every cast/modify
    total_votes = db.Column(db.Integer, nullable=False, default=0)
    total_voters = db.Column(db.Integer, nullable=False, default=0)

    # set once, when the campaign is closed
    results = db.Column(db.JSON, nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    closed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.CheckConstraint("end_date > start_date", name="ck_campaign_window"),
        db.CheckConstraint("max_modifications >= 0", name="ck_campaign_max_mods"),
        db.CheckConstraint(
            "status IN ('draft','active','closed')", name="ck_campaign_status"
        ),
        db.CheckConstraint(
            "kind IN ('manual','auto_promotion','auto_demotion')", name="ck_campaign_kind"
        ),
        # at most one open auto campaign of a kind per employee
        db.Index(
            "uq_campaign_open_auto",
            "trigger_employee_id",
            "kind",
            unique=True,
            postgresql_where=_OPEN_AUTO_WHERE,
            sqlite_where=_OPEN_AUTO_WHERE,
        ),
        db.Index("ix_campaign_status_end", "status", "end_date"),
        db.Index("ix_campaign_kind", "kind"),
    )

    candidates = db.relationship(
        "Candidate",
        back_populates="campaign",
        order_by="Candidate.display_order",
        cascade="all, delete-orphan",
    )
    trigger_employee = db.relationship("Employee", foreign_keys=[trigger_employee_id])

    @validates("status")
    def _validate_status(self, key, value):
        if value not in CAMPAIGN_STATUSES:
            raise CampaignStateError(f"Unknown campaign status {value!r}")
        current = self.status
        if current is None or current == value:
            return value
        if value not in _ALLOWED_TRANSITIONS[current]:
            raise CampaignStateError(
                f"Campaign {self.id} cannot move from {current} to {value}"
            )
        return value

    @validates("results")
    def _validate_results(self, key, value):
        if self.results is not None:
            raise CampaignStateError(f"Campaign {self.id} results are already set")
        return value

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    def is_open_for_voting(self, now: datetime) -> bool:
        return self.status == "active" and self.start_date <= now <= self.end_date

    def remaining_minutes(self, now: datetime) -> int:
        if self.is_closed or now > self.end_date:
            return 0
        return int((self.end_date - now).total_seconds() // 60)

    def criteria(self) -> dict:
        return dict(self.eligible_voter_criteria or {})

    def to_dict(self, include_candidates: bool = False, now: Optional[datetime] = None):
        out = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "kind": self.kind,
            "status": self.status,
            "target_position": self.target_position,
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "max_votes_per_voter": self.max_votes_per_voter,
            "pass_threshold": float(self.pass_threshold) if self.pass_threshold is not None else None,
            "eligible_voter_criteria": self.eligible_voter_criteria,
            "trigger_employee_id": self.trigger_employee_id,
            "system_generated": self.system_generated,
            "priority": self.priority,
            "can_modify_votes": self.can_modify_votes,
            "max_modifications": self.max_modifications,
            "buffer_period_days": self.buffer_period_days,
            "total_votes": self.total_votes,
            "total_voters": self.total_voters,
            "results": self.results,
        }
        if now is not None:
            out["remaining_minutes"] = self.remaining_minutes(now)
        if include_candidates:
            out["candidates"] = [c.to_public_dict() for c in self.candidates]
        return out


class Candidate(db.Model):
    __tablename__ = "voting_candidates"

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(
        db.Integer, db.ForeignKey("voting_campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    employee_id = db.Column(
        db.Integer, db.ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True
    )
    anonymous_id = db.Column(db.String(64), nullable=False)
    display_order = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.String(16), nullable=False, default="approved")
    current_position = db.Column(db.String(32), nullable=True)

    # cached aggregates
    vote_count = db.Column(db.Integer, nullable=False, default=0)
    agree_count = db.Column(db.Integer, nullable=False, default=0)
    vote_percentage = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("campaign_id", "anonymous_id", name="uq_candidate_anonymous_id"),
        db.UniqueConstraint("campaign_id", "employee_id", name="uq_candidate_employee"),
    )

    campaign = db.relationship("Campaign", back_populates="candidates")
    employee = db.relationship("Employee")

    def to_public_dict(self):
        """Pseudonymous view: never exposes the employee behind the candidate."""
        return {
            "id": self.id,
            "anonymous_id": self.anonymous_id,
            "display_order": self.display_order,
            "status": self.status,
            "current_position": self.current_position,
            "vote_count": self.vote_count,
            "agree_count": self.agree_count,
            "vote_percentage": float(self.vote_percentage or 0),
        }
