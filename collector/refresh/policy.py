"""Safety-buffer interval policy derived from a source's posting volume."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from collector.settings import SchedulingSettings, get_scheduling_settings


@dataclass(slots=True)
class IntervalCalculation:
    source_id: str
    average_items_per_day: float
    raw_interval: float
    constrained_interval: float
    next_due_at: datetime
    reasoning: str
    substituted_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "average_items_per_day": self.average_items_per_day,
            "raw_interval": self.raw_interval,
            "constrained_interval": self.constrained_interval,
            "next_due_at": self.next_due_at.isoformat(),
            "reasoning": self.reasoning,
            "substituted_default": self.substituted_default,
        }


def is_valid_rate(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def compute_interval(
    source_id: str,
    average_items_per_day: Any,
    *,
    settings: Optional[SchedulingSettings] = None,
    now: Optional[datetime] = None,
) -> IntervalCalculation:
    """Space collection cycles so roughly SAFETY_BUFFER_ITEMS accumulate between runs."""

    settings = settings or get_scheduling_settings()
    now = now or datetime.now(timezone.utc)

    substituted = False
    if not is_valid_rate(average_items_per_day):
        average_items_per_day = settings.default_rate_for(source_id)
        substituted = True
    rate = float(average_items_per_day)

    raw_interval = settings.safety_buffer_items / rate
    constrained = raw_interval
    reasoning = "Standard calculation within constraints"

    if raw_interval < settings.min_interval_days:
        constrained = settings.min_interval_days
        reasoning = (
            f"Interval {raw_interval:.1f} days below minimum, "
            f"constrained to {settings.min_interval_days:g} days"
        )
    elif raw_interval > settings.max_interval_days:
        constrained = settings.max_interval_days
        reasoning = (
            f"Interval {raw_interval:.1f} days above maximum, "
            f"constrained to {settings.max_interval_days:g} days"
        )

    if substituted:
        reasoning = f"Invalid rate replaced with default {rate:g}/day; {reasoning}"

    return IntervalCalculation(
        source_id=source_id,
        average_items_per_day=rate,
        raw_interval=raw_interval,
        constrained_interval=constrained,
        next_due_at=now + timedelta(days=constrained),
        reasoning=reasoning,
        substituted_default=substituted,
    )


def smooth_rate(previous: float, observed: Any, weight: float) -> float:
    """Exponential moving average; a bad observation leaves the estimate unchanged."""

    if not is_valid_rate(observed) and observed != 0:
        return previous
    return previous * (1 - weight) + float(observed) * weight


__all__ = ["IntervalCalculation", "compute_interval", "is_valid_rate", "smooth_rate"]
