# voting_api/services/attendance_stats.py
from __future__ import annotations

from datetime import datetime
from typing import Optional, Tuple, List
import logging

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from voting_api.common.errors import ValidationFailed
from voting_api.common.http import parse_dt
from voting_api.common.paging import as_int
from voting_api.models.attendance_stats import AttendanceStatistics, LateRecord, PeriodReset
from voting_api.models.employee import Employee
from voting_api.services.policy import VotingPolicy

log = logging.getLogger(__name__)

_CLOCK_IN = {"in", "clock_in", "clock-in", "checkin", "check_in"}
_LATE = {"late"}


class AttendanceStatsService:
    """
    Monthly lateness counters per employee.

    A row is keyed by (employee_id, year, month) and created lazily on the
    first late event of the period. Every late event carries a stable
    ``event_ref``; a replayed ref is ignored so counters never double-count.
    """

    def __init__(self, session, policy: VotingPolicy):
        self.session = session
        self.policy = policy

    # ---------- load / create ----------

    def _get(self, employee_id: int, year: int, month: int, lock: bool = False) -> Optional[AttendanceStatistics]:
        q = self.session.query(AttendanceStatistics).filter_by(
            employee_id=employee_id, year=year, month=month
        )
        if lock:
            q = q.with_for_update()
        return q.first()

    def _carried_punishments(self, employee_id: int, year: int, month: int) -> int:
        prev = (
            self.session.query(AttendanceStatistics)
            .filter(
                AttendanceStatistics.employee_id == employee_id,
                or_(
                    AttendanceStatistics.year < year,
                    (AttendanceStatistics.year == year) & (AttendanceStatistics.month < month),
                ),
            )
            .order_by(AttendanceStatistics.year.desc(), AttendanceStatistics.month.desc())
            .first()
        )
        return prev.punishment_count if prev else 0

    def load_or_create(self, employee_id: int, year: int, month: int) -> AttendanceStatistics:
        stats = self._get(employee_id, year, month, lock=True)
        if stats:
            return stats

        stats = AttendanceStatistics(
            employee_id=employee_id,
            year=year,
            month=month,
            late_count=0,
            late_minutes_total=0,
            is_punishment_triggered=False,
            punishment_count=self._carried_punishments(employee_id, year, month),
            last_updated=datetime.utcnow(),
        )
        try:
            with self.session.begin_nested():
                self.session.add(stats)
        except IntegrityError:
            # another writer created the period row first
            stats = self._get(employee_id, year, month, lock=True)
        return stats

    # ---------- public API ----------

    def record_late_event(
        self,
        employee_id: int,
        year: int,
        month: int,
        late_minutes: int,
        event_ref: str,
        occurred_at: Optional[datetime] = None,
        reason: str = "late clock-in",
    ) -> Tuple[AttendanceStatistics, bool]:
        """
        Append one late entry to the (employee, year, month) row.

        Returns (stats, recorded). ``recorded`` is False when ``event_ref``
        was already processed; the counters are left untouched then.
        """
        if not event_ref:
            raise ValidationFailed("event_ref is required")
        year = as_int(year, "year")
        month = as_int(month, "month")
        late_minutes = as_int(late_minutes, "late_minutes")
        if not 1 <= month <= 12:
            raise ValidationFailed("month must be 1..12")
        if late_minutes < 0:
            raise ValidationFailed("late_minutes cannot be negative")

        try:
            existing = self.session.query(LateRecord).filter_by(event_ref=event_ref).first()
            if existing:
                log.info("late event %s already recorded, ignoring replay", event_ref)
                return existing.statistics, False

            stats = self.load_or_create(employee_id, year, month)
            rec = LateRecord(
                statistics_id=stats.id,
                employee_id=employee_id,
                event_ref=event_ref,
                late_minutes=late_minutes,
                occurred_at=occurred_at,
                reason=reason,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(rec)
            except IntegrityError:
                log.info("late event %s recorded concurrently, ignoring", event_ref)
                self.session.rollback()
                existing = self.session.query(LateRecord).filter_by(event_ref=event_ref).one()
                return existing.statistics, False

            stats.late_count = (stats.late_count or 0) + 1
            stats.late_minutes_total = (stats.late_minutes_total or 0) + late_minutes
            stats.last_updated = datetime.utcnow()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

        log.info(
            "late statistics updated employee=%s period=%s-%02d count=%s minutes=%s",
            employee_id, year, month, stats.late_count, stats.late_minutes_total,
        )
        return stats, True

    def should_trigger_punishment(self, stats: AttendanceStatistics) -> bool:
        return stats.should_trigger_punishment(
            self.policy.late_count_threshold, self.policy.late_minutes_threshold
        )

    def late_minutes_for(self, clock_time: datetime) -> int:
        expected = datetime.combine(clock_time.date(), self.policy.work_start)
        return int((clock_time - expected).total_seconds() // 60)

    def ingest_attendance_event(self, event: dict) -> Optional[Tuple[AttendanceStatistics, bool]]:
        """
        Consume one upstream attendance event:
          {employeeId, clockType, status, clockTime, eventRef[, lateMinutes]}

        Only late clock-ins count. Returns None for events that do not count.
        """
        employee_id = event.get("employeeId", event.get("employee_id"))
        event_ref = event.get("eventRef", event.get("event_ref"))
        clock_type = str(event.get("clockType", event.get("clock_type")) or "").strip().lower()
        status = str(event.get("status") or "").strip().lower()
        clock_time = parse_dt(event.get("clockTime", event.get("clock_time")))

        missing = [
            k for k, v in (
                ("employeeId", employee_id),
                ("eventRef", event_ref),
                ("clockType", clock_type),
                ("status", status),
                ("clockTime", clock_time),
            ) if not v
        ]
        if missing:
            raise ValidationFailed("Missing or malformed attendance event fields", payload={"fields": missing})
        try:
            employee_id = int(employee_id)
        except (TypeError, ValueError):
            raise ValidationFailed("employeeId must be an integer")

        if clock_type not in _CLOCK_IN or status not in _LATE:
            return None

        raw_minutes = event.get("lateMinutes", event.get("late_minutes"))
        late_minutes = as_int(raw_minutes, "lateMinutes") if raw_minutes is not None else self.late_minutes_for(clock_time)
        if late_minutes <= 0:
            return None

        if not self.session.get(Employee, employee_id):
            raise ValidationFailed(f"Unknown employee {employee_id}")

        return self.record_late_event(
            employee_id,
            clock_time.year,
            clock_time.month,
            late_minutes,
            str(event_ref),
            occurred_at=clock_time,
        )

    def reset_period(self, year: int, month: int, force: bool = False, now: Optional[datetime] = None) -> dict:
        """
        Zero the counters of every row of the period and clear its latch.
        punishment_count is kept. Without ``force`` a period is reset once.
        """
        now = now or datetime.utcnow()
        try:
            marker = self.session.query(PeriodReset).filter_by(year=year, month=month).first()
            if marker and not force:
                return {"year": year, "month": month, "skipped": True, "rows_reset": 0}

            rows = self.session.query(AttendanceStatistics).filter_by(year=year, month=month).count()
            self.session.execute(
                update(AttendanceStatistics)
                .where(AttendanceStatistics.year == year, AttendanceStatistics.month == month)
                .values(
                    late_count=0,
                    late_minutes_total=0,
                    is_punishment_triggered=False,
                    reset_at=now,
                    last_updated=now,
                )
                .execution_options(synchronize_session=False)
            )
            if marker:
                marker.rows_reset = rows
            else:
                self.session.add(PeriodReset(year=year, month=month, rows_reset=rows, created_at=now))
            self.session.commit()
        except IntegrityError:
            # concurrent scheduled reset already wrote the marker
            self.session.rollback()
            return {"year": year, "month": month, "skipped": True, "rows_reset": 0}
        except Exception:
            self.session.rollback()
            raise

        log.info("attendance statistics reset for %s-%02d (%s rows)", year, month, rows)
        return {"year": year, "month": month, "skipped": False, "rows_reset": rows}

    # ---------- reads ----------

    def get_employee_stats(self, employee_id: int, year: int, month: int) -> dict:
        stats = self._get(employee_id, year, month)
        if not stats:
            return {
                "employee_id": employee_id,
                "year": year,
                "month": month,
                "late_count": 0,
                "late_minutes_total": 0,
                "late_records": [],
                "is_punishment_triggered": False,
                "punishment_count": self._carried_punishments(employee_id, year, month),
            }
        return stats.to_dict(include_records=True)

    def list_period_stats(self, year: int, month: int) -> List[AttendanceStatistics]:
        return (
            self.session.query(AttendanceStatistics)
            .filter_by(year=year, month=month)
            .order_by(
                AttendanceStatistics.late_minutes_total.desc(),
                AttendanceStatistics.late_count.desc(),
            )
            .all()
        )

    def find_punishment_candidates(self, year: int, month: int) -> List[AttendanceStatistics]:
        return (
            self.session.query(AttendanceStatistics)
            .filter(
                AttendanceStatistics.year == year,
                AttendanceStatistics.month == month,
                AttendanceStatistics.is_punishment_triggered.is_(False),
                or_(
                    AttendanceStatistics.late_count > self.policy.late_count_threshold,
                    AttendanceStatistics.late_minutes_total > self.policy.late_minutes_threshold,
                ),
            )
            .order_by(AttendanceStatistics.id)
            .all()
        )
