"""Store contracts for schedules and the request ledger, plus in-memory implementations.

Both request stores honour the same two guarantees the admission path relies on:

* ``upsert_batch`` applies a whole batch atomically.
* ``update(..., expected_status=...)`` is a compare-and-swap on ``status``;
  it returns ``False`` without writing anything when the row moved on.
  ``cooldown_clear_at`` additionally requires that no cooldown is active at
  that instant.
* ``expected_token`` pins the write to the admission that owns the row and
  ``expected_revision`` to the exact version a caller read.  Every
  successful write bumps ``revision``.
"""

from __future__ import annotations

import asyncio
import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Union

from models.request import (
    STATUS_PENDING,
    EnrichmentRequest,
    RequestKey,
)
from models.schedule import SourceScheduleConfig
from models.timeutil import utc_now

StatusFilter = Union[str, Iterable[str], None]

# Columns a ledger update may touch; anything else is a programming error.
MUTABLE_FIELDS = frozenset(
    {
        "status",
        "linked_entity_id",
        "metadata",
        "attempted_sources",
        "deferred_attempts",
        "attempt_count",
        "last_outcome",
        "cooldown_until",
        "last_enqueued_at",
        "last_attempt_at",
        "last_completed_at",
        "history",
        "attempt_token",
    }
)


@dataclass(slots=True)
class RequestUpsert:
    """One deduplicated observation to fold into the ledger."""

    term: str
    normalized_term: str
    entity_kind: str
    reason: str
    location_scope: str
    entity_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    context: Dict[str, Any] = field(default_factory=dict)
    result_counts: Dict[str, int] = field(default_factory=dict)
    requester_id: Optional[str] = None

    @property
    def key(self) -> RequestKey:
        return RequestKey(self.reason, self.entity_kind, self.normalized_term, self.location_scope)


def merge_metadata(
    existing: Optional[Mapping[str, Any]],
    metadata: Optional[Mapping[str, Any]],
    context: Optional[Mapping[str, Any]],
) -> Dict[str, Any]:
    merged: Dict[str, Any] = dict(existing or {})
    merged.update(metadata or {})
    if context:
        previous = merged.get("context")
        combined = dict(previous) if isinstance(previous, dict) else {}
        combined.update(context)
        merged["context"] = combined
    return merged


def build_request(upsert: RequestUpsert, observed_at: datetime) -> EnrichmentRequest:
    return EnrichmentRequest(
        term=upsert.term,
        normalized_term=upsert.normalized_term,
        entity_kind=upsert.entity_kind,
        reason=upsert.reason,
        location_scope=upsert.location_scope,
        occurrence_count=1,
        linked_entity_id=upsert.entity_id,
        metadata=merge_metadata(None, upsert.metadata, upsert.context),
        result_counts=dict(upsert.result_counts),
        created_at=observed_at,
        last_seen_at=observed_at,
    )


def apply_repeat(request: EnrichmentRequest, upsert: RequestUpsert, observed_at: datetime) -> None:
    """Fold a repeat sighting into an existing row; ``status`` is left alone."""

    request.occurrence_count += 1
    if request.last_seen_at is None or observed_at > request.last_seen_at:
        request.last_seen_at = observed_at
    request.metadata = merge_metadata(request.metadata, upsert.metadata, upsert.context)
    if upsert.result_counts:
        request.result_counts = {**request.result_counts, **upsert.result_counts}
    if upsert.entity_id is not None:
        request.linked_entity_id = upsert.entity_id
    request.revision += 1


def _status_set(expected: StatusFilter) -> Optional[Set[str]]:
    if expected is None:
        return None
    if isinstance(expected, str):
        return {expected}
    return set(expected)


def _check_changes(changes: Mapping[str, Any]) -> None:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported ledger fields: {sorted(unknown)}")


class RequestStore(Protocol):
    async def upsert_batch(
        self, upserts: Sequence[RequestUpsert], *, observed_at: datetime
    ) -> List[EnrichmentRequest]:
        ...

    async def get(self, request_id: str) -> Optional[EnrichmentRequest]:
        ...

    async def find_by_key(self, key: RequestKey) -> Optional[EnrichmentRequest]:
        ...

    async def update(
        self,
        request_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: StatusFilter = None,
        cooldown_clear_at: Optional[datetime] = None,
        expected_token: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> bool:
        ...

    async def list_backlog(self, limit: int, now: datetime) -> List[EnrichmentRequest]:
        ...

    async def list_stale(self, statuses: Iterable[str], older_than: datetime) -> List[EnrichmentRequest]:
        ...

    async def prune_requesters(self, cutoff: datetime) -> int:
        ...


class ScheduleStore(Protocol):
    async def get(self, source_id: str) -> Optional[SourceScheduleConfig]:
        ...

    async def save(self, config: SourceScheduleConfig) -> None:
        ...

    async def list_all(self) -> List[SourceScheduleConfig]:
        ...


class InMemoryRequestStore:
    """Process-local ledger; every operation runs under a single asyncio lock."""

    def __init__(self) -> None:
        self._rows: Dict[str, EnrichmentRequest] = {}
        self._by_key: Dict[RequestKey, str] = {}
        self._requesters: Dict[str, Dict[str, datetime]] = {}
        self._lock = asyncio.Lock()

    async def upsert_batch(
        self, upserts: Sequence[RequestUpsert], *, observed_at: datetime
    ) -> List[EnrichmentRequest]:
        async with self._lock:
            staged: Dict[str, EnrichmentRequest] = {}
            staged_requesters: Dict[str, Dict[str, datetime]] = {}
            for upsert in upserts:
                request_id = self._by_key.get(upsert.key)
                if request_id is None:
                    request = build_request(upsert, observed_at)
                else:
                    request = staged.get(request_id) or self._rows[request_id].copy()
                    apply_repeat(request, upsert, observed_at)
                requesters = staged_requesters.setdefault(
                    request.request_id, dict(self._requesters.get(request.request_id, {}))
                )
                if upsert.requester_id:
                    requesters[upsert.requester_id] = observed_at
                request.distinct_requester_count = min(len(requesters), request.occurrence_count)
                staged[request.request_id] = request

            # Commit only after every row in the batch was built.
            for request_id, request in staged.items():
                self._rows[request_id] = request
                self._by_key[request.key] = request_id
                self._requesters[request_id] = staged_requesters[request_id]
            return [request.copy() for request in staged.values()]

    async def get(self, request_id: str) -> Optional[EnrichmentRequest]:
        async with self._lock:
            request = self._rows.get(request_id)
            return request.copy() if request else None

    async def find_by_key(self, key: RequestKey) -> Optional[EnrichmentRequest]:
        async with self._lock:
            request_id = self._by_key.get(key)
            return self._rows[request_id].copy() if request_id else None

    async def update(
        self,
        request_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: StatusFilter = None,
        cooldown_clear_at: Optional[datetime] = None,
        expected_token: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> bool:
        _check_changes(changes)
        expected = _status_set(expected_status)
        async with self._lock:
            request = self._rows.get(request_id)
            if request is None:
                return False
            if expected is not None and request.status not in expected:
                return False
            if cooldown_clear_at is not None and request.in_cooldown(cooldown_clear_at):
                return False
            if expected_token is not None and request.attempt_token != expected_token:
                return False
            if expected_revision is not None and request.revision != expected_revision:
                return False
            for name, value in changes.items():
                setattr(request, name, copy.deepcopy(value))
            request.revision += 1
            return True

    async def list_backlog(self, limit: int, now: datetime) -> List[EnrichmentRequest]:
        async with self._lock:
            candidates = [
                request
                for request in self._rows.values()
                if request.status == STATUS_PENDING and not request.in_cooldown(now)
            ]
        candidates.sort(key=lambda request: (-request.occurrence_count, request.last_seen_at))
        return [request.copy() for request in candidates[: max(limit, 0)]]

    async def list_stale(self, statuses: Iterable[str], older_than: datetime) -> List[EnrichmentRequest]:
        wanted = set(statuses)
        async with self._lock:
            stale = [
                request.copy()
                for request in self._rows.values()
                if request.status in wanted and _in_flight_since(request) < older_than
            ]
        return stale

    async def prune_requesters(self, cutoff: datetime) -> int:
        removed = 0
        async with self._lock:
            for request_id, requesters in self._requesters.items():
                expired = [rid for rid, seen in requesters.items() if seen < cutoff]
                for requester_id in expired:
                    del requesters[requester_id]
                removed += len(expired)
                if expired:
                    request = self._rows[request_id]
                    request.distinct_requester_count = min(len(requesters), request.occurrence_count)
        return removed

    async def requesters_for(self, request_id: str) -> Dict[str, datetime]:
        async with self._lock:
            return dict(self._requesters.get(request_id, {}))


def _in_flight_since(request: EnrichmentRequest) -> datetime:
    return request.last_enqueued_at or request.last_attempt_at or request.last_seen_at or utc_now()


class InMemoryScheduleStore:
    def __init__(self) -> None:
        self._configs: Dict[str, SourceScheduleConfig] = {}
        self._lock = asyncio.Lock()

    async def get(self, source_id: str) -> Optional[SourceScheduleConfig]:
        async with self._lock:
            config = self._configs.get(source_id)
            return SourceScheduleConfig.from_dict(config.to_dict()) if config else None

    async def save(self, config: SourceScheduleConfig) -> None:
        async with self._lock:
            self._configs[config.source_id] = SourceScheduleConfig.from_dict(config.to_dict())

    async def list_all(self) -> List[SourceScheduleConfig]:
        async with self._lock:
            return [SourceScheduleConfig.from_dict(config.to_dict()) for config in self._configs.values()]


__all__ = [
    "MUTABLE_FIELDS",
    "RequestUpsert",
    "RequestStore",
    "ScheduleStore",
    "InMemoryRequestStore",
    "InMemoryScheduleStore",
    "apply_repeat",
    "build_request",
    "merge_metadata",
]
