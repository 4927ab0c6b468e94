"""Admission control: run a pending request now, or defer it with a cooldown."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from collector.core.interfaces import QueueProbe
from collector.ondemand.ledger import RequestLedger
from collector.ondemand.runner import EnrichmentRunner, RunResult
from collector.refresh.cooldown import cooldown_for_outcome
from collector.refresh.decision import (
    REASON_COOLDOWN_ACTIVE,
    REASON_PROBE_UNAVAILABLE,
    AdmissionDecision,
    evaluate_cooldown,
    evaluate_queue_depth,
)
from collector.settings import OnDemandSettings, get_on_demand_settings
from collector.utils.logger import get_logger
from models.request import OUTCOME_DEFERRED, STATUS_PENDING, STATUS_QUEUED, EnrichmentRequest

log = get_logger(__name__)


@dataclass(slots=True)
class AdmissionResult:
    request_id: str
    term: str
    entity_kind: str
    reason: str
    location_scope: str
    queued: bool
    status: str = STATUS_PENDING
    defer_reason: Optional[str] = None
    outcome: Optional[str] = None
    eta_seconds: Optional[float] = None

    @classmethod
    def for_request(cls, request: EnrichmentRequest, *, queued: bool, **extra: Any) -> "AdmissionResult":
        return cls(
            request_id=request.request_id,
            term=request.term,
            entity_kind=request.entity_kind,
            reason=request.reason,
            location_scope=request.location_scope,
            queued=queued,
            status=extra.pop("status", request.status),
            **extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "term": self.term,
            "entity_kind": self.entity_kind,
            "reason": self.reason,
            "location_scope": self.location_scope,
            "queued": self.queued,
            "status": self.status,
            "defer_reason": self.defer_reason,
            "outcome": self.outcome,
            "eta_seconds": self.eta_seconds,
        }


class AdmissionController:
    """Guards the shared downstream pipeline.

    With ``background=True`` admitted requests run as tasks and the caller gets
    control back immediately; :meth:`drain` waits for them.  Otherwise the
    runner is awaited inline and its outcome is part of the result.
    """

    def __init__(
        self,
        ledger: RequestLedger,
        probe: QueueProbe,
        runner: EnrichmentRunner,
        settings: Optional[OnDemandSettings] = None,
        *,
        background: bool = False,
    ) -> None:
        self.ledger = ledger
        self.probe = probe
        self.runner = runner
        self.settings = settings or get_on_demand_settings()
        self.background = background
        self._tasks: Set[asyncio.Task] = set()

    async def should_run_immediately(
        self, request: EnrichmentRequest, *, now: Optional[datetime] = None
    ) -> AdmissionDecision:
        now = now or datetime.now(timezone.utc)
        cooling = evaluate_cooldown(request, now=now)
        if cooling is not None:
            return cooling

        try:
            snapshot = await self.probe.get_queue_depth()
        except Exception as exc:
            log.warning(f"Queue depth probe failed; admitting {request.request_id} ({request.term}): {exc}")
            return AdmissionDecision(True, REASON_PROBE_UNAVAILABLE)
        return evaluate_queue_depth(snapshot, self.settings)

    async def offer(self, request: EnrichmentRequest, *, now: Optional[datetime] = None) -> AdmissionResult:
        if request.status != STATUS_PENDING:
            log.debug(f"Request {request.request_id} ({request.term}) is {request.status}; not offering")
            return AdmissionResult.for_request(request, queued=False)

        now = now or datetime.now(timezone.utc)
        decision = await self.should_run_immediately(request, now=now)

        if not decision.run_now:
            cooldown = None
            if decision.reason != REASON_COOLDOWN_ACTIVE:
                cooldown = cooldown_for_outcome(OUTCOME_DEFERRED, self.settings, now=now)
            await self.ledger.mark_deferred(
                request,
                reason=decision.reason or "unspecified",
                cooldown_until=cooldown,
                snapshot=decision.snapshot.to_dict() if decision.snapshot else None,
                now=now,
            )
            log.debug(
                f"Deferred {request.request_id} ({request.term}, {request.reason}): {decision.reason}"
            )
            return AdmissionResult.for_request(request, queued=False, defer_reason=decision.reason)

        token = await self.ledger.mark_queued(request.request_id, now=now)
        if token is None:
            return AdmissionResult.for_request(request, queued=False, status=STATUS_QUEUED)

        if not await self.ledger.mark_processing(request.request_id, token):
            log.warning(f"Lost {request.request_id} ({request.term}) between queued and processing; not running it")
            return AdmissionResult.for_request(request, queued=False, status=STATUS_QUEUED)
        current = await self.ledger.get(request.request_id) or request
        log.info(f"Admitted {request.request_id} ({request.term} @ {request.location_scope})")

        if self.background:
            task = asyncio.create_task(self.runner.run(current, attempt_token=token))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return AdmissionResult.for_request(request, queued=True, status=current.status)

        result: RunResult = await self.runner.run(current, attempt_token=token)
        return AdmissionResult.for_request(request, queued=True, status=STATUS_PENDING, outcome=result.outcome)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)


__all__ = ["AdmissionController", "AdmissionResult"]
