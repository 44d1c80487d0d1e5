from datetime import datetime
from typing import Optional

from sqlalchemy import event

from voting_api.extensions import db

DECISIONS = ("agree", "disagree", "abstain")


class Vote(db.Model):
    __tablename__ = "voting_votes"

    id = db.Column(db.Integer, primary_key=True)
    campaign_id = db.Column(
        db.Integer, db.ForeignKey("voting_campaigns.id", ondelete="CASCADE"), nullable=False, index=True
    )
    candidate_id = db.Column(
        db.Integer, db.ForeignKey("voting_candidates.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # sha256 of employee id + campaign id; never the employee id itself
    voter_fingerprint = db.Column(db.String(64), nullable=False)

    original_decision = db.Column(db.String(10), nullable=False)
    current_decision = db.Column(db.String(10), nullable=False)
    reason = db.Column(db.Text, nullable=True)

    modification_count = db.Column(db.Integer, nullable=False, default=0)
    can_still_modify = db.Column(db.Boolean, nullable=False, default=True)
    is_valid = db.Column(db.Boolean, nullable=False, default=True)

    voted_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_modified_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.UniqueConstraint("campaign_id", "voter_fingerprint", name="uq_vote_campaign_voter"),
        db.CheckConstraint("modification_count >= 0", name="ck_vote_mod_count"),
        db.CheckConstraint(
            "current_decision IN ('agree','disagree','abstain')", name="ck_vote_decision"
        ),
        db.Index("ix_vote_campaign_candidate", "campaign_id", "candidate_id"),
    )

    campaign = db.relationship("Campaign")
    candidate = db.relationship("Candidate")
    modifications = db.relationship(
        "VoteModification",
        back_populates="vote",
        order_by="VoteModification.modification_number",
    )

    def modifiable(self, now: datetime) -> bool:
        """Modification count under the limit and the campaign still inside its window."""
        campaign = self.campaign
        if not (self.can_still_modify and self.is_valid and campaign is not None):
            return False
        return bool(
            campaign.can_modify_votes
            and self.modification_count < campaign.max_modifications
            and campaign.is_open_for_voting(now)
        )

    def to_dict(self, now: Optional[datetime] = None):
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "candidate_id": self.candidate_id,
            "original_decision": self.original_decision,
            "current_decision": self.current_decision,
            "modification_count": self.modification_count,
            "can_still_modify": self.modifiable(now or datetime.utcnow()),
            "is_valid": self.is_valid,
            "voted_at": self.voted_at.isoformat() if self.voted_at else None,
            "last_modified_at": self.last_modified_at.isoformat() if self.last_modified_at else None,
        }


class VoteModification(db.Model):
    __tablename__ = "vote_modifications"

    id = db.Column(db.Integer, primary_key=True)
    vote_id = db.Column(
        db.Integer, db.ForeignKey("voting_votes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    modification_number = db.Column(db.Integer, nullable=False)
    old_decision = db.Column(db.String(10), nullable=False)
    new_decision = db.Column(db.String(10), nullable=False)
    reason = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        db.UniqueConstraint("vote_id", "modification_number", name="uq_vote_modification_number"),
    )

    vote = db.relationship("Vote", back_populates="modifications")

    def to_dict(self):
        return {
            "modification_number": self.modification_number,
            "old_decision": self.old_decision,
            "new_decision": self.new_decision,
            "reason": self.reason,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }


@event.listens_for(VoteModification, "before_update")
def _modification_is_append_only(mapper, connection, target):
    raise RuntimeError("vote_modifications rows are append-only")


@event.listens_for(VoteModification, "before_delete")
def _modification_is_never_deleted(mapper, connection, target):
    raise RuntimeError("vote_modifications rows are append-only")
