# voting_api/services/campaigns.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, time as _time
from typing import Optional, Union
import logging

from sqlalchemy.exc import IntegrityError

from voting_api.common.errors import ValidationFailed, CampaignStateError, VoteRejected, RejectionReason
from voting_api.common.http import parse_dt
from voting_api.models.campaign import Campaign, Candidate, CAMPAIGN_KINDS, OPEN_STATUSES
from voting_api.models.employee import Employee, POSITION_HIERARCHY
from voting_api.services.policy import VotingPolicy

log = logging.getLogger(__name__)

# everyone above the lowest rank votes on auto campaigns
DEFAULT_VOTER_POSITIONS = list(POSITION_HIERARCHY[1:])


# ---------- campaign kind variants ----------

@dataclass(frozen=True)
class PromotionPolicy:
    duration_days: int
    pass_threshold: float
    priority: int
    buffer_period_days: int
    max_modifications: int
    kind: str = "auto_promotion"
    anonymous_prefix: str = "AUTO_PROMO"


@dataclass(frozen=True)
class DemotionPolicy:
    duration_days: int
    pass_threshold: float
    priority: int
    max_modifications: int
    buffer_period_days: int = 0
    kind: str = "auto_demotion"
    anonymous_prefix: str = "AUTO_DEMO"


@dataclass(frozen=True)
class ManualPolicy:
    max_modifications: int
    pass_threshold: float = 50.0
    priority: int = 0
    buffer_period_days: int = 0
    kind: str = "manual"
    anonymous_prefix: str = "CANDIDATE"


CampaignPolicy = Union[PromotionPolicy, DemotionPolicy, ManualPolicy]


def policy_for(kind: str, policy: VotingPolicy) -> CampaignPolicy:
    match kind:
        case "auto_promotion":
            return PromotionPolicy(
                duration_days=policy.promotion_duration_days,
                pass_threshold=policy.promotion_pass_threshold,
                priority=policy.promotion_priority,
                buffer_period_days=policy.buffer_period_days,
                max_modifications=policy.max_modifications,
            )
        case "auto_demotion":
            return DemotionPolicy(
                duration_days=policy.demotion_duration_days,
                pass_threshold=policy.demotion_pass_threshold,
                priority=policy.demotion_priority,
                max_modifications=policy.max_modifications,
            )
        case "manual":
            return ManualPolicy(max_modifications=policy.max_modifications)
        case _:
            raise ValidationFailed(f"Unknown campaign kind {kind!r}")


def voting_window(start: datetime, duration_days: int) -> tuple[datetime, datetime]:
    """Opens at ``start`` and closes at the end of the last voting day."""
    end_day = start.date() + timedelta(days=duration_days)
    return start, datetime.combine(end_day, _time(23, 59, 59))


def anonymous_id(variant: CampaignPolicy, campaign_id: int, order: int) -> str:
    return f"{variant.anonymous_prefix}_{campaign_id}_{order:03d}"


# ---------- validation helpers ----------

def _validate_criteria(raw) -> dict:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise ValidationFailed("eligible_voter_criteria must be an object")
    positions = raw.get("positions") or []
    bad = [p for p in positions if p not in POSITION_HIERARCHY]
    if bad:
        raise ValidationFailed("Unknown positions in eligible_voter_criteria", payload={"positions": bad})
    try:
        min_tenure = int(raw.get("min_tenure_days") or 0)
        excluded = [int(x) for x in (raw.get("exclude_employees") or [])]
    except (TypeError, ValueError):
        raise ValidationFailed("min_tenure_days and exclude_employees must be integers")
    if min_tenure < 0:
        raise ValidationFailed("min_tenure_days cannot be negative")
    return {
        "positions": list(positions),
        "min_tenure_days": min_tenure,
        "stores": list(raw.get("stores") or []),
        "exclude_employees": excluded,
    }


class CampaignService:
    def __init__(self, session, policy: VotingPolicy):
        self.session = session
        self.policy = policy

    def variant_for(self, campaign_or_kind) -> CampaignPolicy:
        kind = campaign_or_kind.kind if isinstance(campaign_or_kind, Campaign) else campaign_or_kind
        return policy_for(kind, self.policy)

    # ---------- reads ----------

    def get(self, campaign_id: int, lock: bool = False) -> Campaign:
        q = self.session.query(Campaign).filter(Campaign.id == campaign_id)
        if lock:
            q = q.with_for_update()
        c = q.first()
        if not c:
            raise VoteRejected(RejectionReason.CAMPAIGN_NOT_FOUND, f"Campaign {campaign_id} not found")
        return c

    def open_auto_campaign(self, employee_id: int, kind: str) -> Optional[Campaign]:
        return (
            self.session.query(Campaign)
            .filter(
                Campaign.trigger_employee_id == employee_id,
                Campaign.kind == kind,
                Campaign.status.in_(OPEN_STATUSES),
            )
            .first()
        )

    def last_failed_auto_campaign(self, employee_id: int, kind: str) -> Optional[Campaign]:
        closed = (
            self.session.query(Campaign)
            .filter(
                Campaign.trigger_employee_id == employee_id,
                Campaign.kind == kind,
                Campaign.status == "closed",
            )
            .order_by(Campaign.end_date.desc())
            .all()
        )
        for c in closed:
            if c.results and not c.results.get("passed"):
                return c
        return None

    def find_conflicts(self, now: datetime) -> dict:
        """Active campaigns that share a trigger employee."""
        active = (
            self.session.query(Campaign)
            .filter(
                Campaign.status == "active",
                Campaign.start_date <= now,
                Campaign.end_date >= now,
            )
            .order_by(Campaign.priority.desc(), Campaign.start_date.asc())
            .all()
        )
        seen: dict[int, Campaign] = {}
        conflicts = []
        for c in active:
            if not c.trigger_employee_id:
                continue
            first = seen.get(c.trigger_employee_id)
            if first:
                conflicts.append({
                    "type": "employee_multiple_campaigns",
                    "employee_id": c.trigger_employee_id,
                    "campaigns": [first.id, c.id],
                    "severity": "medium",
                })
            else:
                seen[c.trigger_employee_id] = c
        return {
            "active_campaigns": len(active),
            "campaigns": [
                {"id": c.id, "name": c.name, "kind": c.kind, "priority": c.priority,
                 "trigger_employee_id": c.trigger_employee_id}
                for c in active
            ],
            "conflicts": conflicts,
            "has_conflicts": bool(conflicts),
        }

    # ---------- writes ----------

    def create_campaign(self, data: dict, now: Optional[datetime] = None) -> Campaign:
        """
        Manual campaign from an administrative caller.

        data: name, start_date, end_date, candidates [employee ids],
              [description, target_position, pass_threshold, status,
               eligible_voter_criteria, trigger_employee_id, can_modify_votes,
               max_modifications, max_votes_per_voter, priority, created_by]
        """
        now = now or datetime.utcnow()
        variant = self.variant_for("manual")

        name = (data.get("name") or "").strip()
        start = parse_dt(data.get("start_date")) or (now if data.get("start_date") is None else None)
        end = parse_dt(data.get("end_date"))
        if not name:
            raise ValidationFailed("name is required")
        if not start or not end:
            raise ValidationFailed("start_date and end_date must be ISO dates")
        if end <= start:
            raise ValidationFailed("end_date must be after start_date")

        status = data.get("status", "draft")
        if status not in OPEN_STATUSES:
            raise ValidationFailed("status must be draft or active")

        target = data.get("target_position")
        if target is not None and target not in POSITION_HIERARCHY:
            raise ValidationFailed(f"Unknown target_position {target!r}")

        try:
            threshold = float(data.get("pass_threshold", variant.pass_threshold))
            max_mods = int(data.get("max_modifications", variant.max_modifications))
            max_votes = int(data.get("max_votes_per_voter", 1))
            priority = int(data.get("priority", variant.priority))
            candidate_ids = [int(x) for x in (data.get("candidates") or [])]
            trigger_id = int(data["trigger_employee_id"]) if data.get("trigger_employee_id") else None
        except (TypeError, ValueError):
            raise ValidationFailed("Malformed numeric field")
        if not 0 <= threshold <= 100:
            raise ValidationFailed("pass_threshold must be between 0 and 100")
        if max_mods < 0 or max_votes < 1:
            raise ValidationFailed("max_modifications must be >= 0 and max_votes_per_voter >= 1")
        if not candidate_ids:
            raise ValidationFailed("At least one candidate is required")
        if len(set(candidate_ids)) != len(candidate_ids):
            raise ValidationFailed("Duplicate candidates")

        employees = self.session.query(Employee).filter(Employee.id.in_(candidate_ids)).all()
        by_id = {e.id: e for e in employees}
        unknown = [i for i in candidate_ids if i not in by_id]
        if unknown:
            raise ValidationFailed("Unknown candidate employees", payload={"employee_ids": unknown})
        if trigger_id and not self.session.get(Employee, trigger_id):
            raise ValidationFailed(f"Unknown trigger employee {trigger_id}")

        criteria = _validate_criteria(data.get("eligible_voter_criteria"))
        # candidates and the trigger employee never vote on themselves
        excluded = set(criteria["exclude_employees"]) | set(candidate_ids)
        if trigger_id:
            excluded.add(trigger_id)
        criteria["exclude_employees"] = sorted(excluded)

        campaign = Campaign(
            name=name,
            description=data.get("description"),
            kind=variant.kind,
            status=status,
            target_position=target,
            start_date=start,
            end_date=end,
            max_votes_per_voter=max_votes,
            pass_threshold=threshold,
            eligible_voter_criteria=criteria,
            trigger_employee_id=trigger_id,
            system_generated=False,
            priority=priority,
            can_modify_votes=bool(data.get("can_modify_votes", True)),
            max_modifications=max_mods,
            buffer_period_days=variant.buffer_period_days,
            created_by=data.get("created_by") or "admin",
        )
        try:
            self.session.add(campaign)
            self.session.flush()
            for order, emp_id in enumerate(candidate_ids, start=1):
                emp = by_id[emp_id]
                campaign.candidates.append(Candidate(
                    employee_id=emp.id,
                    anonymous_id=anonymous_id(variant, campaign.id, order),
                    display_order=order,
                    current_position=emp.position,
                ))
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log.info("manual campaign %s created with %s candidates", campaign.id, len(candidate_ids))
        return campaign

    def create_auto_campaign(
        self,
        variant: CampaignPolicy,
        employee: Employee,
        target_position: str,
        now: datetime,
        trigger_conditions: Optional[dict] = None,
    ) -> Optional[Campaign]:
        """
        Campaign + single candidate for a system-triggered decision.

        Flushes but does not commit, so the caller can add its own writes to
        the same transaction. Returns None when the store already holds an
        open campaign of this kind for the employee.
        """
        match variant:
            case PromotionPolicy():
                name = f"{employee.name} promotion vote"
                description = f"Whether {employee.name} moves from {employee.position} to {target_position}"
            case DemotionPolicy():
                name = f"{employee.name} demotion vote"
                description = f"Lateness review of {employee.name}: {employee.position} to {target_position}"
            case _:
                raise ValidationFailed("Auto campaigns are promotion or demotion only")

        start, end = voting_window(now, variant.duration_days)
        campaign = Campaign(
            name=name,
            description=description,
            kind=variant.kind,
            status="active",
            target_position=target_position,
            start_date=start,
            end_date=end,
            max_votes_per_voter=1,
            pass_threshold=variant.pass_threshold,
            eligible_voter_criteria={
                "positions": list(DEFAULT_VOTER_POSITIONS),
                "min_tenure_days": 0,
                "stores": [],
                "exclude_employees": [employee.id],
            },
            trigger_employee_id=employee.id,
            trigger_conditions=trigger_conditions,
            system_generated=True,
            priority=variant.priority,
            can_modify_votes=True,
            max_modifications=variant.max_modifications,
            buffer_period_days=variant.buffer_period_days,
            created_by="AUTO_SYSTEM",
        )
        try:
            with self.session.begin_nested():
                self.session.add(campaign)
                self.session.flush()
                campaign.candidates.append(Candidate(
                    employee_id=employee.id,
                    anonymous_id=anonymous_id(variant, campaign.id, 1),
                    display_order=1,
                    current_position=employee.position,
                ))
        except IntegrityError:
            log.warning(
                "open %s campaign already exists for employee %s, creation blocked",
                variant.kind, employee.id,
            )
            return None
        return campaign

    def transition(self, campaign: Campaign, new_status: str, now: Optional[datetime] = None) -> Campaign:
        """Move along draft -> active -> closed. Does not commit."""
        if campaign.status == new_status:
            raise CampaignStateError(f"Campaign {campaign.id} is already {new_status}")
        campaign.status = new_status
        if new_status == "closed":
            campaign.closed_at = now or datetime.utcnow()
        return campaign

    def activate_campaign(self, campaign_id: int, now: Optional[datetime] = None) -> Campaign:
        try:
            campaign = self.get(campaign_id, lock=True)
            if campaign.status != "draft":
                raise CampaignStateError(f"Campaign {campaign_id} is {campaign.status}, not draft")
            self.transition(campaign, "active", now)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        log.info("campaign %s activated", campaign_id)
        return campaign

    def list_campaigns(self, status: Optional[str] = None, kind: Optional[str] = None):
        q = self.session.query(Campaign)
        if status:
            q = q.filter(Campaign.status == status)
        if kind:
            if kind not in CAMPAIGN_KINDS:
                raise ValidationFailed(f"Unknown campaign kind {kind!r}")
            q = q.filter(Campaign.kind == kind)
        return q.order_by(Campaign.priority.desc(), Campaign.start_date.desc())
