"""Periodic driver for chronological collection and on-demand backlog replay.

Each tick walks the tracked sources, hands every due source to the job queue,
re-arms its interval on success or backs it off on failure, and then gives
the on-demand backlog a reconciliation pass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from collector.core.errors import describe_error
from collector.core.interfaces import JobQueue, SourceResolver
from collector.ondemand.reconciler import BacklogReconciler, ReconcileSummary
from collector.scheduling.registry import SourceScheduleRegistry
from collector.utils.logger import get_logger
from models.queue import CollectionJob
from models.schedule import SourceScheduleConfig

log = get_logger(__name__)

CHRONOLOGICAL_JOB = "chronological_collection"


@dataclass(slots=True)
class TickSummary:
    started_at: datetime
    tracked: int = 0
    dispatched: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    not_due: int = 0
    reconcile: Optional[ReconcileSummary] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "tracked": self.tracked,
            "dispatched": list(self.dispatched),
            "failed": list(self.failed),
            "not_due": self.not_due,
            "reconcile": self.reconcile.to_dict() if self.reconcile else None,
            "errors": list(self.errors),
        }


class CollectionTicker:
    def __init__(
        self,
        registry: SourceScheduleRegistry,
        resolver: SourceResolver,
        job_queue: JobQueue,
        reconciler: Optional[BacklogReconciler] = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver
        self.job_queue = job_queue
        self.reconciler = reconciler

    def _build_job(self, source_id: str, config: Optional[SourceScheduleConfig], now: datetime) -> CollectionJob:
        payload: Dict[str, Any] = {"requested_at": now.isoformat()}
        if config is not None:
            payload["average_items_per_day"] = config.average_items_per_day
            payload["safe_interval_days"] = config.safe_interval_days
            payload["last_dispatched_at"] = (
                config.last_dispatched_at.isoformat() if config.last_dispatched_at else None
            )
        return CollectionJob(job_type=CHRONOLOGICAL_JOB, source_id=source_id, payload=payload)

    async def _dispatch(self, source_id: str, now: datetime, summary: TickSummary) -> None:
        if not await self.registry.is_due(source_id, now=now):
            summary.not_due += 1
            return

        config = await self.registry.get(source_id)
        try:
            await self.job_queue.enqueue(self._build_job(source_id, config, now))
        except Exception as exc:
            summary.failed.append(source_id)
            summary.errors.append({"source_id": source_id, **describe_error(exc)})
            await self.registry.record_failure(source_id, now=now)
            return

        summary.dispatched.append(source_id)
        await self.registry.record_dispatch(source_id, now=now)

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        now = now or datetime.now(timezone.utc)
        summary = TickSummary(started_at=now)

        try:
            sources = list(await self.resolver.list_tracked_sources())
        except Exception as exc:
            log.error(f"Could not list tracked sources: {exc}")
            summary.errors.append({"phase": "list_tracked_sources", **describe_error(exc)})
            sources = []
        summary.tracked = len(sources)

        for source_id in sources:
            # one broken schedule row must not starve the sources after it
            try:
                await self._dispatch(source_id, now, summary)
            except Exception as exc:
                log.error(f"Scheduling {source_id} failed during tick: {exc}")
                summary.errors.append({**describe_error(exc), "source_id": source_id, "phase": "schedule"})
                if source_id not in summary.failed and source_id not in summary.dispatched:
                    summary.failed.append(source_id)

        if self.reconciler is not None:
            try:
                summary.reconcile = await self.reconciler.reconcile(now=now)
            except Exception as exc:
                log.error(f"Backlog reconciliation failed during tick: {exc}")
                summary.errors.append({"phase": "reconcile", **describe_error(exc)})

        log.info(
            f"Tick complete: tracked={summary.tracked} dispatched={len(summary.dispatched)} "
            f"failed={len(summary.failed)} not_due={summary.not_due}"
        )
        return summary

    async def report_observation(
        self, source_id: str, observed_items_per_day: Any, *, now: Optional[datetime] = None
    ) -> SourceScheduleConfig:
        """Feed a completed collection's throughput back into the schedule."""
        return await self.registry.update_observed_rate(source_id, observed_items_per_day, now=now)


__all__ = ["CollectionTicker", "TickSummary", "CHRONOLOGICAL_JOB"]
