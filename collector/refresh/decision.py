"""Admission decision engine based on cooldown state and live queue depth."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from collector.settings import OnDemandSettings
from models.queue import QueueDepthSnapshot
from models.request import EnrichmentRequest

REASON_COOLDOWN_ACTIVE = "cooldown_active"
REASON_EXECUTION_WAITING = "execution_queue_waiting"
REASON_EXECUTION_ACTIVE = "execution_queue_active"
REASON_PROCESSING_BACKLOG = "processing_queue_backlog"
REASON_PROBE_UNAVAILABLE = "queue_probe_unavailable"


@dataclass(slots=True)
class AdmissionDecision:
    run_now: bool
    reason: Optional[str] = None
    snapshot: Optional[QueueDepthSnapshot] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_now": self.run_now,
            "reason": self.reason,
            "snapshot": self.snapshot.to_dict() if self.snapshot else None,
        }


def evaluate_cooldown(request: EnrichmentRequest, *, now: Optional[datetime] = None) -> Optional[AdmissionDecision]:
    now = now or datetime.now(timezone.utc)
    if request.in_cooldown(now):
        return AdmissionDecision(False, REASON_COOLDOWN_ACTIVE)
    return None


def evaluate_queue_depth(snapshot: QueueDepthSnapshot, settings: OnDemandSettings) -> AdmissionDecision:
    if snapshot.execution.waiting >= settings.max_immediate_waiting:
        return AdmissionDecision(False, REASON_EXECUTION_WAITING, snapshot)
    if snapshot.execution.active >= settings.max_immediate_active:
        return AdmissionDecision(False, REASON_EXECUTION_ACTIVE, snapshot)
    if snapshot.processing.backlog >= settings.max_processing_backlog:
        return AdmissionDecision(False, REASON_PROCESSING_BACKLOG, snapshot)
    return AdmissionDecision(True, None, snapshot)


__all__ = [
    "AdmissionDecision",
    "evaluate_cooldown",
    "evaluate_queue_depth",
    "REASON_COOLDOWN_ACTIVE",
    "REASON_EXECUTION_WAITING",
    "REASON_EXECUTION_ACTIVE",
    "REASON_PROCESSING_BACKLOG",
    "REASON_PROBE_UNAVAILABLE",
]
