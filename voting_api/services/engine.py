# voting_api/services/engine.py
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo

from flask import current_app
from sqlalchemy import func

from voting_api.extensions import db
from voting_api.models.attendance_stats import AttendanceStatistics
from voting_api.models.campaign import Campaign
from voting_api.models.notification_outbox import NotificationOutbox
from voting_api.models.position_change import PositionChange
from voting_api.models.vote import Vote, VoteModification
from voting_api.services.attendance_stats import AttendanceStatsService
from voting_api.services.auto_trigger import AutoTriggerEngine
from voting_api.services.campaigns import CampaignService
from voting_api.services.notifications import Outbox, OutboxDispatcher, Notifier
from voting_api.services.policy import VotingPolicy
from voting_api.services.resolution import ResolutionEngine
from voting_api.services.voting import VotingService

log = logging.getLogger(__name__)

EXTENSION_KEY = "voting_engine"


def wall_clock(tz: str, now: Optional[datetime] = None) -> datetime:
    """
    Naive local time in ``tz``. Aware datetimes are converted; naive ones
    are taken as already local.
    """
    if now is None:
        return datetime.now(ZoneInfo(tz)).replace(tzinfo=None)
    if now.tzinfo is not None:
        return now.astimezone(ZoneInfo(tz)).replace(tzinfo=None)
    return now


class VotingEngine:
    """
    Composition root of the voting services.

    One instance per app, built by init_engine() and reached through
    current_engine(). ``session`` is the scoped db.session, so the services
    are safe to share between request and job threads.
    """

    def __init__(self, session, policy: VotingPolicy, notifier: Optional[Notifier] = None):
        self.session = session
        self.policy = policy
        self.notifier = notifier

        self.outbox = Outbox(session)
        self.stats = AttendanceStatsService(session, policy)
        self.campaigns = CampaignService(session, policy)
        self.voting = VotingService(session, policy)
        self.auto = AutoTriggerEngine(session, policy, self.campaigns, self.stats, self.outbox)
        self.resolution = ResolutionEngine(session, policy, self.campaigns, self.outbox)
        self.dispatcher = OutboxDispatcher(session, notifier)

    # ---------- attendance ----------

    def ingest_attendance_event(self, event: dict, now: Optional[datetime] = None) -> dict:
        """Record one attendance event and fire the demotion check right away."""
        now = now or datetime.utcnow()
        res = self.stats.ingest_attendance_event(event)
        if res is None:
            return {"counted": False}

        stats, recorded = res
        out = {"counted": True, "recorded": recorded, "statistics": stats.to_dict(), "demotion": None}
        if recorded and not stats.is_punishment_triggered and self.stats.should_trigger_punishment(stats):
            outcome, campaign = self.auto.trigger_demotion_for(stats, now)
            out["demotion"] = {"outcome": outcome, "campaign_id": campaign.id if campaign else None}
            out["statistics"] = stats.to_dict()
        return out

    def reset_monthly_stats(
        self,
        year: Optional[int] = None,
        month: Optional[int] = None,
        force: bool = False,
        now: Optional[datetime] = None,
    ) -> dict:
        """
        Start a period with zeroed counters. Without an explicit period the
        one containing ``now`` is reset; closed periods keep their totals.
        """
        now = now or datetime.utcnow()
        if year is None or month is None:
            year, month = now.year, now.month
        return self.stats.reset_period(year, month, force=force, now=now)

    def scheduled_period_reset(self, now: Optional[datetime] = None, tz: str = "UTC") -> dict:
        """Monthly job body; "first day" is judged on the wall clock of ``tz``."""
        local = wall_clock(tz, now)
        if local.day != 1:
            return {"skipped": True, "reason": "not the first day of the month"}
        return self.reset_monthly_stats(now=local)

    # ---------- job bodies ----------

    def check_promotions(self, now: Optional[datetime] = None) -> dict:
        return self.auto.check_promotions(now)

    def check_demotions(self, now: Optional[datetime] = None) -> dict:
        return self.auto.check_demotions(now)

    def urgent_check(self, now: Optional[datetime] = None) -> dict:
        """Sub-hourly recheck of the current period's lateness."""
        return self.auto.check_demotions(now)

    def process_expired(self, now: Optional[datetime] = None) -> dict:
        results = self.resolution.process_expired(now)
        return {"processed": len(results), "results": results}

    def execute_position_changes(self, now: Optional[datetime] = None) -> dict:
        return self.resolution.execute_pending_changes(now)

    def deliver_notifications(self, now: Optional[datetime] = None) -> dict:
        return self.dispatcher.deliver_pending(now=now)

    # ---------- reporting ----------

    def expired_backlog(self, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        return (
            self.session.query(func.count(Campaign.id))
            .filter(Campaign.status == "active", Campaign.end_date < now)
            .scalar()
            or 0
        )

    def voting_statistics(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()

        by_status = dict(
            self.session.query(Campaign.status, func.count(Campaign.id)).group_by(Campaign.status).all()
        )
        by_kind = dict(
            self.session.query(Campaign.kind, func.count(Campaign.id)).group_by(Campaign.kind).all()
        )
        closed = self.session.query(Campaign).filter(Campaign.status == "closed").all()
        passed = sum(1 for c in closed if (c.results or {}).get("passed"))

        punished = (
            self.session.query(func.count(AttendanceStatistics.id))
            .filter(
                AttendanceStatistics.year == now.year,
                AttendanceStatistics.month == now.month,
                AttendanceStatistics.is_punishment_triggered.is_(True),
            )
            .scalar()
            or 0
        )
        return {
            "campaigns": {
                "by_status": by_status,
                "by_kind": by_kind,
                "closed": len(closed),
                "passed": passed,
                "failed": len(closed) - passed,
                "expired_unprocessed": self.expired_backlog(now),
            },
            "votes": {
                "total": self.session.query(func.count(Vote.id)).scalar() or 0,
                "valid": self.session.query(func.count(Vote.id)).filter(Vote.is_valid.is_(True)).scalar() or 0,
                "modifications": self.session.query(func.count(VoteModification.id)).scalar() or 0,
            },
            "position_changes": dict(
                self.session.query(PositionChange.status, func.count(PositionChange.id))
                .group_by(PositionChange.status)
                .all()
            ),
            "notifications": dict(
                self.session.query(NotificationOutbox.status, func.count(NotificationOutbox.id))
                .group_by(NotificationOutbox.status)
                .all()
            ),
            "attendance": {"year": now.year, "month": now.month, "punishments_triggered": punished},
            "policy": self.policy.to_dict(),
            "generated_at": now.isoformat(),
        }


def init_engine(app, notifier: Optional[Notifier] = None) -> VotingEngine:
    engine = VotingEngine(db.session, VotingPolicy.from_config(app.config), notifier)
    app.extensions[EXTENSION_KEY] = engine
    return engine


def current_engine() -> VotingEngine:
    return current_app.extensions[EXTENSION_KEY]
