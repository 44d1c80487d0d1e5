# voting_api/services/auto_trigger.py
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Tuple

from voting_api.models.attendance_stats import AttendanceStatistics
from voting_api.models.campaign import Campaign
from voting_api.models.employee import Employee, LOWEST_POSITION, position_above, position_below
from voting_api.services.attendance_stats import AttendanceStatsService
from voting_api.services.campaigns import CampaignService
from voting_api.services.notifications import Outbox
from voting_api.services.policy import VotingPolicy

log = logging.getLogger(__name__)


def demotion_target(position: str) -> Optional[str]:
    """One rank below; None when already at the lowest rank."""
    return position_below(position)


class AutoTriggerEngine:
    """Creates auto-promotion / auto-demotion campaigns from tenure and lateness."""

    def __init__(
        self,
        session,
        policy: VotingPolicy,
        campaigns: CampaignService,
        stats: AttendanceStatsService,
        outbox: Outbox,
    ):
        self.session = session
        self.policy = policy
        self.campaigns = campaigns
        self.stats = stats
        self.outbox = outbox

    # ---------- promotion ----------

    def check_promotion_eligibility(self, employee: Employee, now: datetime) -> dict:
        days = employee.days_employed(now)
        out = {
            "employee_id": employee.id,
            "eligible": False,
            "reason": None,
            "days_employed": days,
            "required_days": self.policy.required_tenure_days,
            "target_position": position_above(employee.position),
        }
        if employee.status != "active":
            out["reason"] = "employee is not active"
            return out
        if employee.position != LOWEST_POSITION:
            out["reason"] = f"position {employee.position} is not the entry rank"
            return out
        if days < self.policy.required_tenure_days:
            out["reason"] = "tenure not reached"
            return out
        if self.campaigns.open_auto_campaign(employee.id, "auto_promotion"):
            out["reason"] = "promotion campaign already open"
            return out

        failed = self.campaigns.last_failed_auto_campaign(employee.id, "auto_promotion")
        if failed:
            buffer_until = failed.end_date + timedelta(days=failed.buffer_period_days or 0)
            if now < buffer_until:
                out["reason"] = "buffer period after failed campaign"
                out["buffer_until"] = buffer_until.isoformat()
                return out

        out["eligible"] = True
        return out

    def check_promotions(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        variant = self.campaigns.variant_for("auto_promotion")
        summary = {"checked": 0, "created": 0, "skipped": 0, "duplicates_blocked": 0, "campaign_ids": []}
        seen = set()

        employees = (
            self.session.query(Employee)
            .filter(Employee.position == LOWEST_POSITION, Employee.status == "active")
            .order_by(Employee.id)
            .all()
        )
        for emp in employees:
            if emp.id in seen:
                continue
            seen.add(emp.id)
            summary["checked"] += 1

            check = self.check_promotion_eligibility(emp, now)
            if not check["eligible"]:
                summary["skipped"] += 1
                continue

            try:
                campaign = self.campaigns.create_auto_campaign(
                    variant,
                    emp,
                    check["target_position"],
                    now,
                    trigger_conditions={
                        "days_employed": check["days_employed"],
                        "required_days": check["required_days"],
                        "hire_date": emp.hire_date.isoformat(),
                    },
                )
                if campaign is None:
                    self.session.rollback()
                    summary["duplicates_blocked"] += 1
                    continue
                self._announce(campaign, emp, "promotion_campaign_created")
                self.session.commit()
            except Exception:
                self.session.rollback()
                raise

            summary["created"] += 1
            summary["campaign_ids"].append(campaign.id)
            log.info("auto promotion campaign %s created for employee %s", campaign.id, emp.id)

        log.info("promotion check finished: %s", summary)
        return summary

    # ---------- demotion ----------

    def trigger_demotion_for(self, stats: AttendanceStatistics, now: datetime) -> Tuple[str, Optional[Campaign]]:
        """
        Create the demotion campaign for one statistics row and latch it.

        Returns (outcome, campaign); outcome is one of created, not_triggered,
        skipped, lowest_rank, duplicate.
        """
        try:
            row = (
                self.session.query(AttendanceStatistics)
                .filter(AttendanceStatistics.id == stats.id)
                .with_for_update()
                .one()
            )
            if row.is_punishment_triggered or not self.stats.should_trigger_punishment(row):
                self.session.rollback()
                return "not_triggered", None

            emp = self.session.get(Employee, row.employee_id)
            if not emp or emp.status != "active":
                self.session.rollback()
                return "skipped", None

            target = demotion_target(emp.position)
            if target is None:
                self.session.rollback()
                log.info("employee %s already at lowest rank, demotion skipped", emp.id)
                return "lowest_rank", None

            campaign = self.campaigns.create_auto_campaign(
                self.campaigns.variant_for("auto_demotion"),
                emp,
                target,
                now,
                trigger_conditions={
                    "year": row.year,
                    "month": row.month,
                    "late_count": row.late_count,
                    "late_minutes_total": row.late_minutes_total,
                    "late_count_threshold": self.policy.late_count_threshold,
                    "late_minutes_threshold": self.policy.late_minutes_threshold,
                },
            )
            if campaign is None:
                self.session.rollback()
                return "duplicate", None

            row.mark_punishment_triggered()
            self._announce(campaign, emp, "demotion_campaign_created")
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log.info(
            "auto demotion campaign %s created for employee %s (%s late, %s minutes)",
            campaign.id, emp.id, row.late_count, row.late_minutes_total,
        )
        return "created", campaign

    def check_demotions(self, now: Optional[datetime] = None, year: Optional[int] = None, month: Optional[int] = None) -> dict:
        now = now or datetime.utcnow()
        year = year or now.year
        month = month or now.month
        summary = {
            "year": year,
            "month": month,
            "checked": 0,
            "created": 0,
            "skipped": 0,
            "duplicates_blocked": 0,
            "campaign_ids": [],
        }
        seen = set()

        for stats in self.stats.find_punishment_candidates(year, month):
            if stats.employee_id in seen:
                continue
            seen.add(stats.employee_id)
            summary["checked"] += 1

            outcome, campaign = self.trigger_demotion_for(stats, now)
            if outcome == "created":
                summary["created"] += 1
                summary["campaign_ids"].append(campaign.id)
            elif outcome == "duplicate":
                summary["duplicates_blocked"] += 1
            else:
                summary["skipped"] += 1

        log.info("demotion check finished: %s", summary)
        return summary

    # ---------- notifications ----------

    def _announce(self, campaign: Campaign, emp: Employee, event_type: str) -> None:
        self.outbox.enqueue("management", event_type, {
            "campaign_id": campaign.id,
            "kind": campaign.kind,
            "employee_id": emp.id,
            "employee_name": emp.name,
            "current_position": emp.position,
            "target_position": campaign.target_position,
            "end_date": campaign.end_date.isoformat(),
            "trigger_conditions": campaign.trigger_conditions,
        })
        candidate = campaign.candidates[0] if campaign.candidates else None
        self.outbox.enqueue("staff", event_type, {
            "campaign_id": campaign.id,
            "kind": campaign.kind,
            "candidate": candidate.anonymous_id if candidate else None,
            "target_position": campaign.target_position,
            "end_date": campaign.end_date.isoformat(),
        })
