# voting_api/services/policy.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import time as _time
from typing import Mapping, Any


def _parse_hhmm(raw) -> _time:
    if isinstance(raw, _time):
        return raw
    hh, mm = str(raw or "09:00").split(":", 1)
    return _time(int(hh), int(mm))


@dataclass(frozen=True)
class VotingPolicy:
    """Tunable thresholds of the voting engine, read once from app.config."""

    required_tenure_days: int = 20
    late_count_threshold: int = 3
    late_minutes_threshold: int = 10

    promotion_duration_days: int = 5
    demotion_duration_days: int = 3
    promotion_pass_threshold: float = 50.0
    demotion_pass_threshold: float = 30.0
    promotion_priority: int = 5
    demotion_priority: int = 10

    buffer_period_days: int = 30
    max_modifications: int = 3

    fingerprint_salt: str = ""
    work_start: _time = _time(9, 0)
    position_change_delay_hours: int = 0
    health_expired_backlog: int = 5

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "VotingPolicy":
        return cls(
            required_tenure_days=int(cfg.get("VOTING_REQUIRED_TENURE_DAYS", 20)),
            late_count_threshold=int(cfg.get("VOTING_LATE_COUNT_THRESHOLD", 3)),
            late_minutes_threshold=int(cfg.get("VOTING_LATE_MINUTES_THRESHOLD", 10)),
            promotion_duration_days=int(cfg.get("VOTING_PROMOTION_DURATION_DAYS", 5)),
            demotion_duration_days=int(cfg.get("VOTING_DEMOTION_DURATION_DAYS", 3)),
            promotion_pass_threshold=float(cfg.get("VOTING_PROMOTION_PASS_THRESHOLD", 50.0)),
            demotion_pass_threshold=float(cfg.get("VOTING_DEMOTION_PASS_THRESHOLD", 30.0)),
            promotion_priority=int(cfg.get("VOTING_PROMOTION_PRIORITY", 5)),
            demotion_priority=int(cfg.get("VOTING_DEMOTION_PRIORITY", 10)),
            buffer_period_days=int(cfg.get("VOTING_BUFFER_PERIOD_DAYS", 30)),
            max_modifications=int(cfg.get("VOTING_MAX_MODIFICATIONS", 3)),
            fingerprint_salt=str(cfg.get("VOTING_FINGERPRINT_SALT", "") or ""),
            work_start=_parse_hhmm(cfg.get("VOTING_WORK_START", "09:00")),
            position_change_delay_hours=int(cfg.get("VOTING_POSITION_CHANGE_DELAY_HOURS", 0)),
            health_expired_backlog=int(cfg.get("VOTING_HEALTH_EXPIRED_BACKLOG", 5)),
        )

    def to_dict(self) -> dict:
        return {
            "required_tenure_days": self.required_tenure_days,
            "late_count_threshold": self.late_count_threshold,
            "late_minutes_threshold": self.late_minutes_threshold,
            "promotion_duration_days": self.promotion_duration_days,
            "demotion_duration_days": self.demotion_duration_days,
            "promotion_pass_threshold": self.promotion_pass_threshold,
            "demotion_pass_threshold": self.demotion_pass_threshold,
            "buffer_period_days": self.buffer_period_days,
            "max_modifications": self.max_modifications,
            "work_start": self.work_start.strftime("%H:%M"),
            "position_change_delay_hours": self.position_change_delay_hours,
        }
