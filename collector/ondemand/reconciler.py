"""Re-offers pending backlog requests to the admission controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Collection, Dict, List, Optional

from collector.core.errors import describe_error
from collector.ondemand.admission import AdmissionController, AdmissionResult
from collector.ondemand.ledger import RequestLedger
from collector.refresh.budget import BatchBudget
from collector.settings import OnDemandSettings, get_on_demand_settings
from collector.utils.logger import get_logger

log = get_logger(__name__)


@dataclass(slots=True)
class ReconcileSummary:
    offered: int = 0
    admitted: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    released: int = 0
    results: List[AdmissionResult] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "offered": self.offered,
            "admitted": self.admitted,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "failed": self.failed,
            "released": self.released,
        }


class BacklogReconciler:
    def __init__(
        self,
        ledger: RequestLedger,
        controller: AdmissionController,
        settings: Optional[OnDemandSettings] = None,
    ) -> None:
        self.ledger = ledger
        self.controller = controller
        self.settings = settings or get_on_demand_settings()

    async def reconcile(
        self, *, now: Optional[datetime] = None, exclude: Optional[Collection[str]] = None
    ) -> ReconcileSummary:
        """Release stale rows, then offer the highest-demand pending requests.

        ``exclude`` holds request ids the caller is about to offer itself.
        """
        now = now or datetime.now(timezone.utc)
        exclude = set(exclude or ())
        summary = ReconcileSummary()

        released = await self.ledger.release_stale(now=now)
        summary.released = len(released)

        budget = BatchBudget(self.settings.max_requests_per_batch)
        backlog = await self.ledger.list_backlog(budget.limit + len(exclude), now=now)

        for request in backlog:
            if request.request_id in exclude:
                continue
            if not budget.allow():
                break
            budget.consume()
            summary.offered += 1
            try:
                result = await self.controller.offer(request, now=now)
            except Exception as exc:
                summary.failed += 1
                summary.errors.append({"request_id": request.request_id, **describe_error(exc)})
                log.error(f"Failed to process backlog request {request.request_id} ({request.term}): {exc}")
                continue

            summary.results.append(result)
            if result.queued:
                summary.admitted += 1
            elif result.defer_reason:
                summary.deferred += 1
            else:
                summary.skipped += 1

        if summary.offered or summary.released:
            log.info(
                f"Backlog pass: offered={summary.offered} admitted={summary.admitted} "
                f"deferred={summary.deferred} skipped={summary.skipped} failed={summary.failed} "
                f"released={summary.released}"
            )
        return summary


__all__ = ["BacklogReconciler", "ReconcileSummary"]
