# voting_api/services/resolution.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, List

from sqlalchemy import func, case, update

from voting_api.models.campaign import Campaign
from voting_api.models.employee import Employee, position_rank
from voting_api.models.position_change import PositionChange
from voting_api.models.vote import Vote
from voting_api.services.campaigns import CampaignService, PromotionPolicy, DemotionPolicy, ManualPolicy
from voting_api.services.notifications import Outbox
from voting_api.services.policy import VotingPolicy

log = logging.getLogger(__name__)


class ResolutionEngine:
    """Closes expired campaigns, decides pass/fail and applies the position change."""

    def __init__(self, session, policy: VotingPolicy, campaigns: CampaignService, outbox: Outbox):
        self.session = session
        self.policy = policy
        self.campaigns = campaigns
        self.outbox = outbox

    def _change_type(self, campaign: Campaign, employee: Employee) -> str:
        match self.campaigns.variant_for(campaign):
            case PromotionPolicy():
                return "promotion"
            case DemotionPolicy():
                return "demotion"
            case ManualPolicy():
                up = position_rank(campaign.target_position) > position_rank(employee.position)
                return "promotion" if up else "demotion"

    def _count(self, campaign_id: int):
        total, agree = (
            self.session.query(
                func.count(Vote.id),
                func.sum(case((Vote.current_decision == "agree", 1), else_=0)),
            )
            .filter(Vote.campaign_id == campaign_id, Vote.is_valid.is_(True))
            .one()
        )
        return int(total or 0), int(agree or 0)

    def expired_campaign_ids(self, now: datetime) -> List[int]:
        rows = (
            self.session.query(Campaign.id)
            .filter(Campaign.status == "active", Campaign.end_date < now)
            .order_by(Campaign.priority.desc(), Campaign.end_date.asc())
            .all()
        )
        return [r[0] for r in rows]

    def process_expired(self, now: Optional[datetime] = None) -> List[dict]:
        now = now or datetime.utcnow()
        results = []
        for campaign_id in self.expired_campaign_ids(now):
            campaign = self.session.get(Campaign, campaign_id)
            try:
                results.append(self.resolve_campaign(campaign, now))
            except Exception:
                # left active, retried on the next sweep
                log.exception("campaign %s could not be resolved", campaign_id)
        if results:
            log.info("processed %s expired campaigns", len(results))
        return results

    def resolve_campaign(self, campaign: Campaign, now: Optional[datetime] = None) -> dict:
        """
        Close one campaign and persist its results.

        A campaign that is no longer active is returned as-is, so replays
        yield the stored results without writing anything.
        """
        now = now or datetime.utcnow()
        try:
            campaign = (
                self.session.query(Campaign)
                .filter(Campaign.id == campaign.id)
                .with_for_update()
                .populate_existing()
                .one()
            )
            if campaign.status != "active":
                self.session.rollback()
                return {"campaign_id": campaign.id, "already_closed": True, "results": campaign.results}

            total, agree = self._count(campaign.id)
            pct = round(agree / total * 100, 2) if total else 0.0
            threshold = float(campaign.pass_threshold)
            # exact ratio; the rounded percentage is for display only
            passed = total > 0 and Decimal(agree) * 100 >= Decimal(str(threshold)) * total

            self.campaigns.transition(campaign, "closed", now)
            self.session.execute(
                update(Vote)
                .where(Vote.campaign_id == campaign.id, Vote.can_still_modify.is_(True))
                .values(can_still_modify=False)
                .execution_options(synchronize_session="fetch")
            )
            campaign.results = {
                "total_votes": total,
                "agree_votes": agree,
                "agree_percentage": pct,
                "pass_threshold": threshold,
                "passed": passed,
                "processed_at": now.isoformat(),
            }

            change = None
            employee = self.session.get(Employee, campaign.trigger_employee_id) if campaign.trigger_employee_id else None
            if passed and employee and campaign.target_position:
                change = PositionChange(
                    campaign_id=campaign.id,
                    employee_id=employee.id,
                    change_type=self._change_type(campaign, employee),
                    old_position=employee.position,
                    new_position=campaign.target_position,
                    status="pending",
                    scheduled_for=now + timedelta(hours=self.policy.position_change_delay_hours),
                )
                self.session.add(change)
                if self.policy.position_change_delay_hours <= 0:
                    self.execute_position_change(change, now)

            self._announce(campaign, change)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log.info(
            "campaign %s closed: %s/%s agree (%.2f%%, threshold %.2f%%) passed=%s",
            campaign.id, agree, total, pct, threshold, passed,
        )
        return {"campaign_id": campaign.id, "already_closed": False, "results": campaign.results,
                "position_change": change.to_dict() if change else None}

    def execute_position_change(self, change: PositionChange, now: datetime) -> PositionChange:
        """Apply one change to the employee registry. Does not commit."""
        employee = self.session.get(Employee, change.employee_id)
        if not employee:
            change.status = "skipped"
            change.failure_reason = "employee no longer exists"
        elif employee.position != change.old_position:
            change.status = "skipped"
            change.failure_reason = (
                f"employee position is {employee.position}, expected {change.old_position}"
            )
        else:
            employee.position = change.new_position
            employee.position_start_date = now
            change.status = "completed"
        change.executed_at = now

        if change.status == "completed":
            log.info(
                "employee %s %s: %s -> %s",
                change.employee_id, change.change_type, change.old_position, change.new_position,
            )
        else:
            log.warning("position change %s skipped: %s", change.id, change.failure_reason)
        return change

    def execute_pending_changes(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        due = (
            self.session.query(PositionChange.id)
            .filter(PositionChange.status == "pending", PositionChange.scheduled_for <= now)
            .order_by(PositionChange.scheduled_for.asc())
            .all()
        )
        summary = {"due": len(due), "completed": 0, "skipped": 0, "failed": 0}
        for (change_id,) in due:
            try:
                change = (
                    self.session.query(PositionChange)
                    .filter(PositionChange.id == change_id, PositionChange.status == "pending")
                    .with_for_update()
                    .first()
                )
                if not change:
                    self.session.rollback()
                    continue
                self.execute_position_change(change, now)
                self.outbox.enqueue("management", "position_change_executed", change.to_dict())
                self.session.commit()
            except Exception as e:
                self.session.rollback()
                log.exception("position change %s failed", change_id)
                self._mark_failed(change_id, str(e), now)
                summary["failed"] += 1
                continue
            summary[change.status] += 1
        return summary

    def _mark_failed(self, change_id: int, reason: str, now: datetime) -> None:
        change = self.session.get(PositionChange, change_id)
        change.status = "failed"
        change.failure_reason = reason
        change.executed_at = now
        self.outbox.enqueue("management", "position_change_failed", change.to_dict())
        self.session.commit()

    def _announce(self, campaign: Campaign, change: Optional[PositionChange]) -> None:
        results = campaign.results or {}
        self.outbox.enqueue("management", "campaign_resolved", {
            "campaign_id": campaign.id,
            "kind": campaign.kind,
            "employee_id": campaign.trigger_employee_id,
            "results": results,
            "position_change": change.to_dict() if change else None,
        })
        self.outbox.enqueue("staff", "campaign_resolved", {
            "campaign_id": campaign.id,
            "kind": campaign.kind,
            "passed": results.get("passed"),
            "agree_percentage": results.get("agree_percentage"),
        })
