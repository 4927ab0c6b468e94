"""Per-source collection schedule registry.

Each tracked source carries a smoothed posting-rate estimate and an interval
derived from it.  The ticker asks which sources are due, dispatches them, and
feeds observed throughput back through :meth:`update_observed_rate`.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from collector.core.store import ScheduleStore
from collector.refresh.cooldown import next_delay
from collector.refresh.policy import IntervalCalculation, compute_interval, smooth_rate
from collector.settings import SchedulingSettings, get_scheduling_settings
from collector.utils.logger import get_logger
from models.schedule import SourceScheduleConfig

log = get_logger(__name__)


class SourceScheduleRegistry:
    def __init__(self, store: ScheduleStore, settings: Optional[SchedulingSettings] = None) -> None:
        self.store = store
        self.settings = settings or get_scheduling_settings()

    def _config_from(self, calculation: IntervalCalculation, now: datetime) -> SourceScheduleConfig:
        return SourceScheduleConfig(
            source_id=calculation.source_id,
            average_items_per_day=calculation.average_items_per_day,
            safe_interval_days=calculation.constrained_interval,
            last_calculated_at=now,
            next_collection_due_at=calculation.next_due_at,
        )

    async def get(self, source_id: str) -> Optional[SourceScheduleConfig]:
        return await self.store.get(source_id)

    async def initialize(self, source_id: str, *, now: Optional[datetime] = None) -> SourceScheduleConfig:
        """Create the schedule from the configured default rate if it does not exist yet."""
        existing = await self.store.get(source_id)
        if existing is not None:
            return existing

        now = now or datetime.now(timezone.utc)
        calculation = compute_interval(
            source_id, self.settings.default_rate_for(source_id), settings=self.settings, now=now
        )
        config = self._config_from(calculation, now)
        await self.store.save(config)
        log.info(
            f"Initialized schedule for {source_id}: {calculation.average_items_per_day:g} items/day, "
            f"interval {calculation.constrained_interval:.1f} days ({calculation.reasoning})"
        )
        return config

    async def update_observed_rate(
        self,
        source_id: str,
        observed_items_per_day: Any,
        *,
        now: Optional[datetime] = None,
    ) -> SourceScheduleConfig:
        now = now or datetime.now(timezone.utc)
        existing = await self.store.get(source_id)
        if existing is None:
            # First sighting seeds from defaults; the observation is not applied.
            return await self.initialize(source_id, now=now)

        new_rate = smooth_rate(existing.average_items_per_day, observed_items_per_day, self.settings.smoothing_weight)
        calculation = compute_interval(source_id, new_rate, settings=self.settings, now=now)
        config = self._config_from(calculation, now)
        config.last_dispatched_at = existing.last_dispatched_at
        await self.store.save(config)
        log.info(
            f"Recalibrated {source_id}: {existing.average_items_per_day:.2f} -> "
            f"{calculation.average_items_per_day:.2f} items/day, next due {config.next_collection_due_at.isoformat()} "
            f"({calculation.reasoning})"
        )
        return config

    async def is_due(self, source_id: str, *, now: Optional[datetime] = None) -> bool:
        config = await self.store.get(source_id)
        if config is None:
            return True
        return config.is_due(now or datetime.now(timezone.utc))

    async def due_sources(self, *, now: Optional[datetime] = None) -> List[SourceScheduleConfig]:
        now = now or datetime.now(timezone.utc)
        configs = await self.store.list_all()
        due = [config for config in configs if config.is_due(now)]
        due.sort(key=lambda config: config.due_at())
        return due

    async def time_until_next(self, source_id: str, *, now: Optional[datetime] = None) -> timedelta:
        config = await self.store.get(source_id)
        if config is None:
            return timedelta(0)
        remaining = config.due_at() - (now or datetime.now(timezone.utc))
        return max(remaining, timedelta(0))

    async def record_dispatch(self, source_id: str, *, now: Optional[datetime] = None) -> SourceScheduleConfig:
        """Re-arm the interval from ``now`` after a collection was handed off."""
        now = now or datetime.now(timezone.utc)
        existing = await self.store.get(source_id)
        rate = existing.average_items_per_day if existing else self.settings.default_rate_for(source_id)
        calculation = compute_interval(source_id, rate, settings=self.settings, now=now)
        config = self._config_from(calculation, now)
        config.last_dispatched_at = now
        await self.store.save(config)
        log.debug(f"Dispatched {source_id}; next collection due {config.next_collection_due_at.isoformat()}")
        return config

    async def record_failure(self, source_id: str, *, now: Optional[datetime] = None) -> SourceScheduleConfig:
        """Push the next attempt out with exponential backoff; the interval itself is untouched."""
        now = now or datetime.now(timezone.utc)
        config = await self.store.get(source_id)
        if config is None:
            config = await self.initialize(source_id, now=now)
            # never collected yet, so it stays due once the retry window passes
            config.awaiting_first_dispatch = True

        delay = next_delay(
            config.consecutive_failures,
            base=self.settings.retry_base_seconds,
            factor=self.settings.retry_factor,
            cap=self.settings.retry_max_seconds,
        )
        config.consecutive_failures += 1
        config.retry_not_before = now + timedelta(seconds=delay)
        await self.store.save(config)
        log.warning(
            f"Dispatch failed for {source_id} ({config.consecutive_failures} in a row); "
            f"retrying after {delay:.0f}s"
        )
        return config

    async def statistics(self, *, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        configs = await self.store.list_all()
        if not configs:
            return {
                "tracked_sources": 0,
                "due_sources": 0,
                "average_interval_days": 0.0,
                "average_items_per_day": 0.0,
                "next_due_at": None,
            }
        earliest = min(config.due_at() for config in configs)
        return {
            "tracked_sources": len(configs),
            "due_sources": sum(1 for config in configs if config.is_due(now)),
            "average_interval_days": sum(c.safe_interval_days for c in configs) / len(configs),
            "average_items_per_day": sum(c.average_items_per_day for c in configs) / len(configs),
            "next_due_at": earliest.isoformat(),
        }


__all__ = ["SourceScheduleRegistry"]
