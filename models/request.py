"""Domain model for on-demand enrichment requests."""

from __future__ import annotations

import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Sequence

from models.timeutil import format_iso8601, parse_iso8601, utc_now

STATUS_PENDING = "pending"
STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

REQUEST_STATUSES = frozenset(
    {STATUS_PENDING, STATUS_QUEUED, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED}
)
IN_FLIGHT_STATUSES = frozenset({STATUS_QUEUED, STATUS_PROCESSING})

OUTCOME_SUCCESS = "success"
OUTCOME_NO_RESULTS = "no_results"
OUTCOME_NO_ACTIVE_SOURCES = "no_active_sources"
OUTCOME_ERROR = "error"
OUTCOME_DEFERRED = "deferred"

REQUEST_OUTCOMES = frozenset(
    {OUTCOME_SUCCESS, OUTCOME_NO_RESULTS, OUTCOME_NO_ACTIVE_SOURCES, OUTCOME_ERROR, OUTCOME_DEFERRED}
)

REASON_UNRESOLVED = "unresolved"
REASON_LOW_RESULT = "low_result"

REQUEST_REASONS = frozenset({REASON_UNRESOLVED, REASON_LOW_RESULT})

GLOBAL_SCOPE = "global"


class RequestKey(NamedTuple):
    """Deduplication boundary of the ledger."""

    reason: str
    entity_kind: str
    normalized_term: str
    location_scope: str


def normalize_location_scope(value: Optional[str]) -> str:
    normalized = value.strip().lower() if isinstance(value, str) else ""
    return normalized or GLOBAL_SCOPE


@dataclass(slots=True)
class RequestInput:
    """Raw demand observation supplied by a caller."""

    term: str
    entity_kind: str
    reason: str = REASON_UNRESOLVED
    location_scope: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class EnrichmentRequest:
    """One ledger row; never physically deleted."""

    term: str
    normalized_term: str
    entity_kind: str
    reason: str
    location_scope: str = GLOBAL_SCOPE
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: str = STATUS_PENDING
    occurrence_count: int = 1
    distinct_requester_count: int = 0
    linked_entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempted_sources: List[str] = field(default_factory=list)
    deferred_attempts: int = 0
    attempt_count: int = 0
    last_outcome: Optional[str] = None
    cooldown_until: Optional[datetime] = None
    last_enqueued_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_completed_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    result_counts: Dict[str, int] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    # identifies the admission that owns a queued/processing row
    attempt_token: Optional[str] = None
    # bumped by the store on every write
    revision: int = 0

    def __post_init__(self) -> None:
        self.location_scope = normalize_location_scope(self.location_scope)
        if self.status not in REQUEST_STATUSES:
            self.status = STATUS_PENDING
        self.occurrence_count = max(int(self.occurrence_count), 0)
        self.distinct_requester_count = max(min(int(self.distinct_requester_count), self.occurrence_count), 0)
        now = utc_now()
        self.created_at = self.created_at or now
        self.last_seen_at = self.last_seen_at or self.created_at

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.reason, self.entity_kind, self.normalized_term, self.location_scope)

    def in_cooldown(self, now: Optional[datetime] = None) -> bool:
        if self.cooldown_until is None:
            return False
        return (now or utc_now()) < self.cooldown_until

    def copy(self) -> "EnrichmentRequest":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "term": self.term,
            "normalized_term": self.normalized_term,
            "entity_kind": self.entity_kind,
            "reason": self.reason,
            "location_scope": self.location_scope,
            "status": self.status,
            "occurrence_count": self.occurrence_count,
            "distinct_requester_count": self.distinct_requester_count,
            "linked_entity_id": self.linked_entity_id,
            "metadata": self.metadata,
            "attempted_sources": list(self.attempted_sources),
            "deferred_attempts": self.deferred_attempts,
            "attempt_count": self.attempt_count,
            "last_outcome": self.last_outcome,
            "cooldown_until": format_iso8601(self.cooldown_until),
            "last_enqueued_at": format_iso8601(self.last_enqueued_at),
            "last_attempt_at": format_iso8601(self.last_attempt_at),
            "last_completed_at": format_iso8601(self.last_completed_at),
            "last_seen_at": format_iso8601(self.last_seen_at),
            "created_at": format_iso8601(self.created_at),
            "result_counts": dict(self.result_counts),
            "history": list(self.history),
            "attempt_token": self.attempt_token,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "EnrichmentRequest":
        term = str(payload.get("term", ""))
        return cls(
            request_id=str(payload.get("request_id") or uuid.uuid4()),
            term=term,
            normalized_term=str(payload.get("normalized_term") or term.lower()),
            entity_kind=str(payload.get("entity_kind", "")),
            reason=str(payload.get("reason", REASON_UNRESOLVED)),
            location_scope=payload.get("location_scope"),
            status=str(payload.get("status", STATUS_PENDING)),
            occurrence_count=int(payload.get("occurrence_count", 1) or 0),
            distinct_requester_count=int(payload.get("distinct_requester_count", 0) or 0),
            linked_entity_id=payload.get("linked_entity_id"),
            metadata=dict(payload.get("metadata") or {}),
            attempted_sources=list(payload.get("attempted_sources") or []),
            deferred_attempts=int(payload.get("deferred_attempts", 0) or 0),
            attempt_count=int(payload.get("attempt_count", 0) or 0),
            last_outcome=payload.get("last_outcome"),
            cooldown_until=parse_iso8601(payload.get("cooldown_until")),
            last_enqueued_at=parse_iso8601(payload.get("last_enqueued_at")),
            last_attempt_at=parse_iso8601(payload.get("last_attempt_at")),
            last_completed_at=parse_iso8601(payload.get("last_completed_at")),
            last_seen_at=parse_iso8601(payload.get("last_seen_at")),
            created_at=parse_iso8601(payload.get("created_at")),
            result_counts={str(k): int(v) for k, v in dict(payload.get("result_counts") or {}).items()},
            history=list(payload.get("history") or []),
            attempt_token=payload.get("attempt_token"),
            revision=int(payload.get("revision", 0) or 0),
        )


def append_history(
    history: List[Dict[str, Any]],
    outcome: str,
    *,
    at: datetime,
    limit: int,
    detail: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    entry: Dict[str, Any] = {"outcome": outcome, "at": format_iso8601(at)}
    if detail:
        entry["detail"] = dict(detail)
    updated = list(history) + [entry]
    return updated[-limit:] if limit > 0 else updated


def consecutive_errors(history: Sequence[Mapping[str, Any]]) -> int:
    """Length of the trailing run of ``error`` outcomes."""
    count = 0
    for entry in reversed(history):
        if entry.get("outcome") != OUTCOME_ERROR:
            break
        count += 1
    return count


__all__ = [
    "STATUS_PENDING",
    "STATUS_QUEUED",
    "STATUS_PROCESSING",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "REQUEST_STATUSES",
    "IN_FLIGHT_STATUSES",
    "OUTCOME_SUCCESS",
    "OUTCOME_NO_RESULTS",
    "OUTCOME_NO_ACTIVE_SOURCES",
    "OUTCOME_ERROR",
    "OUTCOME_DEFERRED",
    "REQUEST_OUTCOMES",
    "REASON_UNRESOLVED",
    "REASON_LOW_RESULT",
    "REQUEST_REASONS",
    "GLOBAL_SCOPE",
    "RequestKey",
    "RequestInput",
    "EnrichmentRequest",
    "append_history",
    "consecutive_errors",
    "normalize_location_scope",
]
