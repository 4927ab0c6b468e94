"""Inbound facade: record, reconcile the backlog, then admit fresh requests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional, Sequence

from collector.core.interfaces import QueueProbe
from collector.ondemand.admission import AdmissionController, AdmissionResult
from collector.ondemand.ledger import RequestLedger
from collector.ondemand.reconciler import BacklogReconciler
from collector.settings import OnDemandSettings, get_on_demand_settings
from collector.utils.logger import get_logger
from models.request import RequestInput

log = get_logger(__name__)


class OnDemandService:
    def __init__(
        self,
        ledger: RequestLedger,
        controller: AdmissionController,
        reconciler: BacklogReconciler,
        probe: QueueProbe,
        settings: Optional[OnDemandSettings] = None,
    ) -> None:
        self.ledger = ledger
        self.controller = controller
        self.reconciler = reconciler
        self.probe = probe
        self.settings = settings or get_on_demand_settings()

    async def enqueue_requests(
        self,
        requests: Sequence[RequestInput],
        *,
        requester_id: Optional[str] = None,
        context: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> List[AdmissionResult]:
        """Record ``requests`` and try to start up to ``max_requests_per_batch`` of them.

        Errors never reach the caller; a failing backlog pass or a failing
        request is logged and the rest of the batch carries on.
        """
        if not requests:
            return []
        now = now or datetime.now(timezone.utc)

        try:
            rows = await self.ledger.record_requests(
                requests, requester_id=requester_id, observed_at=now, context=context
            )
        except Exception as exc:
            log.error(f"Failed to record {len(requests)} on-demand requests: {exc}")
            return []

        try:
            await self.reconciler.reconcile(now=now, exclude=[row.request_id for row in rows])
        except Exception as exc:
            log.warning(f"Failed to process pending on-demand backlog: {exc}")

        results: List[AdmissionResult] = []
        for row in rows[: self.settings.max_requests_per_batch]:
            try:
                current = await self.ledger.get(row.request_id)
                if current is None:
                    continue
                results.append(await self.controller.offer(current, now=now))
            except Exception as exc:
                log.error(f"Failed to enqueue on-demand request {row.request_id} ({row.term}): {exc}")

        if any(result.queued and result.eta_seconds is None for result in results):
            eta = await self.estimate_queue_delay()
            for result in results:
                if result.queued and result.eta_seconds is None:
                    result.eta_seconds = eta
        return results

    async def estimate_queue_delay(self) -> float:
        """Seconds until a newly queued job is likely to finish."""
        try:
            depth = await self.probe.get_queue_depth()
        except Exception as exc:
            log.debug(f"Unable to estimate on-demand queue delay: {exc}")
            return self.settings.estimated_job_seconds
        position = max(1, depth.total_backlog + 1)
        return position * self.settings.estimated_job_seconds


__all__ = ["OnDemandService"]
