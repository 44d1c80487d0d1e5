# voting_api/services/voting.py
from __future__ import annotations

import hashlib
import logging
from datetime import datetime
from typing import Optional, Tuple, List

from sqlalchemy import func, case
from sqlalchemy.exc import IntegrityError

from voting_api.common.errors import ValidationFailed, VoteRejected, RejectionReason
from voting_api.common.paging import as_int
from voting_api.models.campaign import Campaign, Candidate
from voting_api.models.employee import Employee
from voting_api.models.vote import Vote, VoteModification, DECISIONS
from voting_api.services.policy import VotingPolicy

log = logging.getLogger(__name__)


def voter_fingerprint(employee_id: int, campaign_id: int, salt: str = "") -> str:
    """
    Deterministic one-way id of a (voter, campaign) pair.

    Only prevents duplicate ballots: anyone able to enumerate employee ids
    can recompute it, so it is not an anonymity guarantee.
    """
    raw = f"{employee_id}_{campaign_id}{salt}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _check_decision(decision) -> str:
    if decision not in DECISIONS:
        raise ValidationFailed(
            f"decision must be one of {', '.join(DECISIONS)}", payload={"decision": decision}
        )
    return decision


class VotingService:
    def __init__(self, session, policy: VotingPolicy):
        self.session = session
        self.policy = policy

    def fingerprint(self, employee_id: int, campaign_id: int) -> str:
        return voter_fingerprint(employee_id, campaign_id, self.policy.fingerprint_salt)

    # ---------- eligibility ----------

    def check_eligibility(self, campaign: Campaign, employee: Employee, now: datetime) -> Tuple[bool, Optional[str]]:
        criteria = campaign.criteria()
        if employee.status != "active":
            return False, "employee is not active"
        if employee.id in (criteria.get("exclude_employees") or []):
            return False, "employee is excluded from this campaign"
        positions = criteria.get("positions") or []
        if positions and employee.position not in positions:
            return False, f"position {employee.position} is not allowed to vote"
        min_days = int(criteria.get("min_tenure_days") or 0)
        if min_days and employee.days_employed(now) < min_days:
            return False, f"tenure below {min_days} days"
        stores = criteria.get("stores") or []
        if stores and employee.current_store not in stores:
            return False, "store is not allowed to vote"
        return True, None

    def eligibility(self, campaign_id: int, employee_id: int, now: Optional[datetime] = None) -> dict:
        """Read-only pre-check used by the eligibility endpoint."""
        now = now or datetime.utcnow()
        campaign = self._campaign(campaign_id)
        employee = self._employee(employee_id)
        ok, reason = self.check_eligibility(campaign, employee, now)
        has_voted = self._find_vote(campaign.id, self.fingerprint(employee.id, campaign.id)) is not None
        return {
            "campaign_id": campaign.id,
            "eligible": ok and not has_voted and campaign.is_open_for_voting(now),
            "reason": reason,
            "has_voted": has_voted,
            "campaign_open": campaign.is_open_for_voting(now),
        }

    # ---------- lookups ----------

    def _campaign(self, campaign_id: int, lock: bool = False) -> Campaign:
        q = self.session.query(Campaign).filter(Campaign.id == campaign_id)
        if lock:
            q = q.with_for_update()
        campaign = q.first()
        if not campaign:
            raise VoteRejected(RejectionReason.CAMPAIGN_NOT_FOUND, f"Campaign {campaign_id} not found")
        return campaign

    def _employee(self, employee_id: int) -> Employee:
        emp = self.session.get(Employee, employee_id)
        if not emp:
            raise VoteRejected(RejectionReason.EMPLOYEE_NOT_FOUND, f"Employee {employee_id} not found")
        return emp

    def _find_vote(self, campaign_id: int, fingerprint: str) -> Optional[Vote]:
        return (
            self.session.query(Vote)
            .filter(Vote.campaign_id == campaign_id, Vote.voter_fingerprint == fingerprint)
            .first()
        )

    def _owned_vote(self, vote_id: int, employee_id: int, campaign_id: Optional[int] = None, lock: bool = False) -> Vote:
        q = self.session.query(Vote).filter(Vote.id == vote_id)
        if lock:
            q = q.with_for_update()
        vote = q.first()
        if not vote:
            raise VoteRejected(RejectionReason.VOTE_NOT_FOUND, f"Vote {vote_id} not found")
        if campaign_id is not None and vote.campaign_id != campaign_id:
            raise VoteRejected(RejectionReason.VOTE_NOT_FOUND, f"Vote {vote_id} not found in campaign {campaign_id}")
        if vote.voter_fingerprint != self.fingerprint(employee_id, vote.campaign_id):
            raise VoteRejected(RejectionReason.NOT_VOTE_OWNER)
        return vote

    # ---------- aggregates ----------

    def _tallies(self, campaign_id: int):
        """(candidate_id, total, agree, disagree, abstain) from valid votes."""
        return (
            self.session.query(
                Vote.candidate_id,
                func.count(Vote.id),
                func.sum(case((Vote.current_decision == "agree", 1), else_=0)),
                func.sum(case((Vote.current_decision == "disagree", 1), else_=0)),
                func.sum(case((Vote.current_decision == "abstain", 1), else_=0)),
            )
            .filter(Vote.campaign_id == campaign_id, Vote.is_valid.is_(True))
            .group_by(Vote.candidate_id)
            .all()
        )

    def refresh_aggregates(self, campaign: Campaign) -> None:
        """Recompute cached candidate and campaign counters from valid votes."""
        self.session.flush()
        by_candidate = {row[0]: row for row in self._tallies(campaign.id)}
        total = sum(int(row[1]) for row in by_candidate.values())
        for cand in campaign.candidates:
            row = by_candidate.get(cand.id)
            count = int(row[1]) if row else 0
            cand.vote_count = count
            cand.agree_count = int(row[2] or 0) if row else 0
            cand.vote_percentage = round(count / total * 100, 2) if total else 0
        campaign.total_votes = total
        campaign.total_voters = (
            self.session.query(func.count(func.distinct(Vote.voter_fingerprint)))
            .filter(Vote.campaign_id == campaign.id, Vote.is_valid.is_(True))
            .scalar()
            or 0
        )

    # ---------- cast ----------

    def cast_vote(
        self,
        campaign_id,
        candidate_id,
        employee_id,
        decision,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Vote:
        campaign_id = as_int(campaign_id, "campaign_id")
        candidate_id = as_int(candidate_id, "candidate_id")
        employee_id = as_int(employee_id, "employee_id")
        decision = _check_decision(decision)
        now = now or datetime.utcnow()

        try:
            campaign = self._campaign(campaign_id, lock=True)
            if not campaign.is_open_for_voting(now):
                raise VoteRejected(
                    RejectionReason.CAMPAIGN_NOT_ACTIVE,
                    f"Campaign {campaign_id} is not open for voting",
                    payload={"status": campaign.status},
                )
            candidate = (
                self.session.query(Candidate)
                .filter(Candidate.id == candidate_id, Candidate.campaign_id == campaign.id)
                .first()
            )
            if not candidate:
                raise VoteRejected(RejectionReason.CANDIDATE_NOT_FOUND)

            fp = self.fingerprint(employee_id, campaign.id)
            if self._find_vote(campaign.id, fp):
                raise VoteRejected(RejectionReason.ALREADY_VOTED)

            employee = self._employee(employee_id)
            ok, why = self.check_eligibility(campaign, employee, now)
            if not ok:
                raise VoteRejected(RejectionReason.NOT_ELIGIBLE, f"Not eligible: {why}", payload={"reason": why})

            vote = Vote(
                campaign_id=campaign.id,
                candidate_id=candidate.id,
                voter_fingerprint=fp,
                original_decision=decision,
                current_decision=decision,
                reason=reason,
                modification_count=0,
                can_still_modify=bool(campaign.can_modify_votes and campaign.max_modifications > 0),
                is_valid=True,
                voted_at=now,
            )
            self.session.add(vote)
            try:
                self.session.flush()
            except IntegrityError:
                # a concurrent cast won the unique (campaign, fingerprint) slot
                self.session.rollback()
                raise VoteRejected(RejectionReason.ALREADY_VOTED)

            self.refresh_aggregates(campaign)
            self.session.commit()
        except VoteRejected as e:
            self.session.rollback()
            log.info("vote rejected campaign=%s reason=%s", campaign_id, e.reason.value)
            raise
        except Exception:
            self.session.rollback()
            raise

        log.info("vote %s cast in campaign %s", vote.id, campaign_id)
        return vote

    # ---------- modify ----------

    def modify_vote(
        self,
        vote_id,
        employee_id,
        new_decision,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
        campaign_id: Optional[int] = None,
    ) -> Vote:
        vote_id = as_int(vote_id, "vote_id")
        employee_id = as_int(employee_id, "employee_id")
        new_decision = _check_decision(new_decision)
        now = now or datetime.utcnow()

        try:
            vote = self._owned_vote(vote_id, employee_id, campaign_id, lock=True)
            campaign = self._campaign(vote.campaign_id, lock=True)

            if not campaign.can_modify_votes or not vote.is_valid:
                raise VoteRejected(RejectionReason.MODIFICATION_NOT_ALLOWED)
            if not campaign.is_open_for_voting(now):
                raise VoteRejected(
                    RejectionReason.CAMPAIGN_NOT_ACTIVE,
                    "Voting window is closed",
                    payload={"status": campaign.status},
                )
            if vote.modification_count >= campaign.max_modifications:
                raise VoteRejected(
                    RejectionReason.MODIFICATION_LIMIT_REACHED,
                    f"Vote already modified {vote.modification_count} times",
                    payload={"max_modifications": campaign.max_modifications},
                )
            if new_decision == vote.current_decision:
                raise ValidationFailed("new decision is the same as the current one")

            number = vote.modification_count + 1
            self.session.add(VoteModification(
                vote_id=vote.id,
                modification_number=number,
                old_decision=vote.current_decision,
                new_decision=new_decision,
                reason=reason,
                created_at=now,
            ))
            vote.current_decision = new_decision
            vote.modification_count = number
            vote.can_still_modify = number < campaign.max_modifications
            vote.last_modified_at = now

            self.refresh_aggregates(campaign)
            self.session.commit()
        except VoteRejected as e:
            self.session.rollback()
            log.info("vote modification rejected vote=%s reason=%s", vote_id, e.reason.value)
            raise
        except Exception:
            self.session.rollback()
            raise

        log.info("vote %s modified (%s/%s)", vote.id, vote.modification_count, campaign.max_modifications)
        return vote

    # ---------- reads ----------

    def vote_history(self, vote_id, employee_id, campaign_id: Optional[int] = None, now: Optional[datetime] = None) -> dict:
        vote = self._owned_vote(as_int(vote_id, "vote_id"), as_int(employee_id, "employee_id"), campaign_id)
        out = vote.to_dict(now)
        out["modifications"] = [m.to_dict() for m in vote.modifications]
        return out

    def modification_status(self, campaign_id, employee_id, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        campaign = self._campaign(as_int(campaign_id, "campaign_id"))
        employee_id = as_int(employee_id, "employee_id")
        vote = self._find_vote(campaign.id, self.fingerprint(employee_id, campaign.id))
        if not vote:
            return {"campaign_id": campaign.id, "has_voted": False}
        return {
            "campaign_id": campaign.id,
            "has_voted": True,
            "vote_id": vote.id,
            "current_decision": vote.current_decision,
            "modification_count": vote.modification_count,
            "remaining_modifications": max(campaign.max_modifications - vote.modification_count, 0),
            "can_modify": vote.modifiable(now),
        }

    def eligible_voters(self, campaign: Campaign, now: datetime) -> List[Employee]:
        employees = self.session.query(Employee).filter(Employee.status == "active").all()
        return [e for e in employees if self.check_eligibility(campaign, e, now)[0]]

    def get_campaign_stats(self, campaign_id, now: Optional[datetime] = None) -> dict:
        """
        Tallies recomputed from valid votes; cached counters are only
        compared against, never reported. Integrity problems come back as
        ``warnings`` and do not fail the call.
        """
        now = now or datetime.utcnow()
        campaign = self._campaign(as_int(campaign_id, "campaign_id"))
        by_candidate = {row[0]: row for row in self._tallies(campaign.id)}
        total = sum(int(row[1]) for row in by_candidate.values())
        warnings = []

        candidates = []
        decisions = {d: 0 for d in DECISIONS}
        for cand in campaign.candidates:
            row = by_candidate.get(cand.id)
            count, agree, disagree, abstain = (int(x or 0) for x in row[1:]) if row else (0, 0, 0, 0)
            decisions["agree"] += agree
            decisions["disagree"] += disagree
            decisions["abstain"] += abstain
            candidates.append({
                "id": cand.id,
                "anonymous_id": cand.anonymous_id,
                "vote_count": count,
                "agree": agree,
                "disagree": disagree,
                "abstain": abstain,
                "vote_percentage": round(count / total * 100, 2) if total else 0.0,
                "agree_percentage": round(agree / count * 100, 2) if count else 0.0,
            })
            if cand.vote_count != count or cand.agree_count != agree:
                warnings.append({
                    "type": "aggregate_drift",
                    "candidate": cand.anonymous_id,
                    "cached": cand.vote_count,
                    "recomputed": count,
                })

        fingerprints = (
            self.session.query(func.count(func.distinct(Vote.voter_fingerprint)))
            .filter(Vote.campaign_id == campaign.id, Vote.is_valid.is_(True))
            .scalar()
            or 0
        )
        eligible = len(self.eligible_voters(campaign, now))
        if fingerprints > eligible:
            warnings.append({"type": "voters_exceed_eligible", "voters": fingerprints, "eligible": eligible})

        dupes = (
            self.session.query(Vote.voter_fingerprint)
            .filter(Vote.campaign_id == campaign.id)
            .group_by(Vote.voter_fingerprint)
            .having(func.count(Vote.id) > 1)
            .count()
        )
        if dupes:
            warnings.append({"type": "duplicate_fingerprints", "count": dupes})

        outside = (
            self.session.query(func.count(Vote.id))
            .filter(
                Vote.campaign_id == campaign.id,
                (Vote.voted_at < campaign.start_date) | (Vote.voted_at > campaign.end_date),
            )
            .scalar()
            or 0
        )
        if outside:
            warnings.append({"type": "votes_outside_window", "count": outside})

        for w in warnings:
            log.warning("campaign %s integrity warning: %s", campaign.id, w)

        return {
            "campaign": campaign.to_dict(now=now),
            "candidates": candidates,
            "decisions": decisions,
            "total_votes": total,
            "total_voters": fingerprints,
            "eligible_voters": eligible,
            "participation_rate": round(fingerprints / eligible * 100, 2) if eligible else 0.0,
            "warnings": warnings,
        }
