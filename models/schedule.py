"""Per-source collection schedule state."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional

from models.timeutil import format_iso8601, parse_iso8601


@dataclass(slots=True)
class SourceScheduleConfig:
    """Smoothed posting rate and the derived collection interval for one source."""

    source_id: str
    average_items_per_day: float
    safe_interval_days: float
    last_calculated_at: datetime
    next_collection_due_at: datetime
    consecutive_failures: int = 0
    retry_not_before: Optional[datetime] = None
    last_dispatched_at: Optional[datetime] = None
    # set when a source fails before its first dispatch; due once any retry window passes
    awaiting_first_dispatch: bool = False

    def is_due(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        if self.retry_not_before is not None and now < self.retry_not_before:
            return False
        if self.awaiting_first_dispatch:
            return True
        return now >= self.next_collection_due_at

    def due_at(self) -> datetime:
        if self.awaiting_first_dispatch:
            return self.retry_not_before or self.last_calculated_at
        if self.retry_not_before is not None and self.retry_not_before > self.next_collection_due_at:
            return self.retry_not_before
        return self.next_collection_due_at

    def interval(self) -> timedelta:
        return timedelta(days=self.safe_interval_days)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "average_items_per_day": self.average_items_per_day,
            "safe_interval_days": self.safe_interval_days,
            "last_calculated_at": format_iso8601(self.last_calculated_at),
            "next_collection_due_at": format_iso8601(self.next_collection_due_at),
            "consecutive_failures": self.consecutive_failures,
            "retry_not_before": format_iso8601(self.retry_not_before),
            "last_dispatched_at": format_iso8601(self.last_dispatched_at),
            "awaiting_first_dispatch": self.awaiting_first_dispatch,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SourceScheduleConfig":
        last_calculated = parse_iso8601(payload.get("last_calculated_at"))
        next_due = parse_iso8601(payload.get("next_collection_due_at"))
        if last_calculated is None or next_due is None:
            raise ValueError("last_calculated_at and next_collection_due_at are required")
        return cls(
            source_id=str(payload.get("source_id", "")),
            average_items_per_day=float(payload.get("average_items_per_day", 0.0) or 0.0),
            safe_interval_days=float(payload.get("safe_interval_days", 0.0) or 0.0),
            last_calculated_at=last_calculated,
            next_collection_due_at=next_due,
            consecutive_failures=int(payload.get("consecutive_failures", 0) or 0),
            retry_not_before=parse_iso8601(payload.get("retry_not_before")),
            last_dispatched_at=parse_iso8601(payload.get("last_dispatched_at")),
            awaiting_first_dispatch=bool(payload.get("awaiting_first_dispatch", False)),
        )


__all__ = ["SourceScheduleConfig"]
