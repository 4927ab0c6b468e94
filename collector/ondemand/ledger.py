"""Durable, deduplicated ledger of on-demand enrichment requests.

Rows are keyed by ``(reason, entity_kind, normalized_term, location_scope)``
and are never deleted.  Status changes that decide ownership of a request
(``pending -> queued``, ``queued -> processing``, ``processing -> completed``)
are compare-and-swap writes against the store.  Once queued, a row belongs to
the attempt token ``mark_queued`` handed out; every later transition checks it.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from collector.core.store import RequestStore, RequestUpsert
from collector.ondemand.sanitize import normalize_term, sanitize_term
from collector.refresh.cooldown import cooldown_for_outcome
from collector.settings import OnDemandSettings, get_on_demand_settings
from collector.utils.logger import get_logger
from models.request import (
    IN_FLIGHT_STATUSES,
    OUTCOME_DEFERRED,
    OUTCOME_ERROR,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    STATUS_QUEUED,
    EnrichmentRequest,
    RequestInput,
    RequestKey,
    append_history,
    consecutive_errors,
    normalize_location_scope,
)

log = get_logger(__name__)

# re-read and retry budget for revision-guarded writes
MODIFY_ATTEMPTS = 5


def _extract_result_counts(context: Mapping[str, Any]) -> Dict[str, int]:
    raw = context.get("result_counts")
    if not isinstance(raw, Mapping):
        return {}
    counts: Dict[str, int] = {}
    for name, value in raw.items():
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value >= 0:
            counts[str(name)] = int(value)
    return counts


class RequestLedger:
    def __init__(self, store: RequestStore, settings: Optional[OnDemandSettings] = None) -> None:
        self.store = store
        self.settings = settings or get_on_demand_settings()

    def key_for(self, request: RequestInput) -> Optional[RequestKey]:
        term = sanitize_term(request.term, self.settings.stop_words)
        if not term:
            return None
        return RequestKey(
            request.reason,
            request.entity_kind,
            normalize_term(term),
            normalize_location_scope(request.location_scope),
        )

    def _prepare(
        self,
        requests: Sequence[RequestInput],
        requester_id: Optional[str],
        context: Mapping[str, Any],
    ) -> List[RequestUpsert]:
        seen = set()
        prepared: List[RequestUpsert] = []
        result_counts = _extract_result_counts(context)
        extra_context = {k: v for k, v in context.items() if k != "result_counts"}

        for request in requests:
            term = sanitize_term(request.term, self.settings.stop_words)
            if not term:
                log.debug(f"Dropping request with empty term after sanitization: {request.term!r}")
                continue
            upsert = RequestUpsert(
                term=term,
                normalized_term=normalize_term(term),
                entity_kind=request.entity_kind,
                reason=request.reason,
                location_scope=normalize_location_scope(request.location_scope),
                entity_id=request.entity_id,
                metadata=dict(request.metadata or {}),
                context=dict(extra_context),
                result_counts=dict(result_counts),
                requester_id=requester_id,
            )
            if upsert.key in seen:
                continue
            seen.add(upsert.key)
            prepared.append(upsert)
        return prepared

    async def record_requests(
        self,
        requests: Sequence[RequestInput],
        requester_id: Optional[str] = None,
        observed_at: Optional[datetime] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> List[EnrichmentRequest]:
        """Upsert a batch of observations and return the rows they landed on."""
        prepared = self._prepare(requests, requester_id, context or {})
        if not prepared:
            return []

        observed_at = observed_at or datetime.now(timezone.utc)
        rows = await self.store.upsert_batch(prepared, observed_at=observed_at)
        log.debug(
            "Recorded on-demand requests: "
            + ", ".join(f"{row.term}/{row.entity_kind}/{row.reason}@{row.location_scope}" for row in rows)
        )
        return rows

    async def get(self, request_id: str) -> Optional[EnrichmentRequest]:
        return await self.store.get(request_id)

    async def find_by_key(self, key: RequestKey) -> Optional[EnrichmentRequest]:
        return await self.store.find_by_key(key)

    async def find(self, request: RequestInput) -> Optional[EnrichmentRequest]:
        key = self.key_for(request)
        if key is None:
            return None
        return await self.store.find_by_key(key)

    async def _modify(
        self,
        request_id: str,
        build: Callable[[EnrichmentRequest], Optional[Dict[str, Any]]],
        *,
        expected_status: Union[str, Sequence[str]],
        expected_token: Optional[str] = None,
    ) -> Optional[EnrichmentRequest]:
        """Re-read, build changes from the fresh row, write only if nothing moved in between.

        Returns the row the changes were built from, or ``None`` when the row is
        gone, no longer in ``expected_status``, owned by another admission or
        ``build`` declined.
        """
        statuses = {expected_status} if isinstance(expected_status, str) else set(expected_status)
        for _ in range(MODIFY_ATTEMPTS):
            current = await self.store.get(request_id)
            if current is None or current.status not in statuses:
                return None
            if expected_token is not None and current.attempt_token != expected_token:
                return None
            changes = build(current)
            if changes is None:
                return None
            if await self.store.update(
                request_id,
                changes,
                expected_status=statuses,
                expected_token=expected_token,
                expected_revision=current.revision,
            ):
                return current
        log.warning(f"Request {request_id} kept changing underneath an update; gave up after {MODIFY_ATTEMPTS} tries")
        return None

    async def mark_queued(self, request_id: str, *, now: Optional[datetime] = None) -> Optional[str]:
        """Claim a pending request; returns the attempt token that owns it from here on."""
        now = now or datetime.now(timezone.utc)
        token = str(uuid.uuid4())
        won = await self.store.update(
            request_id,
            {"status": STATUS_QUEUED, "last_enqueued_at": now, "attempt_token": token},
            expected_status=STATUS_PENDING,
            cooldown_clear_at=now,
        )
        if not won:
            log.debug(f"Request {request_id} already queued or processed")
            return None
        return token

    async def mark_processing(self, request_id: str, token: Optional[str] = None) -> bool:
        return await self.store.update(
            request_id, {"status": STATUS_PROCESSING}, expected_status=STATUS_QUEUED, expected_token=token
        )

    async def mark_deferred(
        self,
        request: EnrichmentRequest,
        *,
        reason: str,
        cooldown_until: Optional[datetime],
        snapshot: Optional[Mapping[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or datetime.now(timezone.utc)

        def build(current: EnrichmentRequest) -> Dict[str, Any]:
            metadata = dict(current.metadata)
            metadata["deferred_reason"] = reason
            metadata["last_deferred_at"] = now.isoformat()
            if snapshot is not None:
                metadata["last_queue_snapshot"] = dict(snapshot)

            changes: Dict[str, Any] = {
                "deferred_attempts": current.deferred_attempts + 1,
                "metadata": metadata,
                "history": append_history(
                    current.history,
                    OUTCOME_DEFERRED,
                    at=now,
                    limit=self.settings.history_limit,
                    detail={"reason": reason},
                ),
            }
            if cooldown_until is not None:
                # never shorten a longer outcome cooldown
                if current.cooldown_until is None or cooldown_until > current.cooldown_until:
                    changes["cooldown_until"] = cooldown_until
            return changes

        return await self._modify(request.request_id, build, expected_status=STATUS_PENDING) is not None

    async def mark_completed(
        self,
        request: EnrichmentRequest,
        *,
        outcome: str,
        entity_id: Optional[str],
        attempted_sources: Sequence[str],
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or datetime.now(timezone.utc)
        return await self.store.update(
            request.request_id,
            {
                "status": STATUS_COMPLETED,
                "linked_entity_id": entity_id,
                "last_outcome": outcome,
                "last_completed_at": now,
                "last_attempt_at": now,
                "deferred_attempts": 0,
                "attempted_sources": list(attempted_sources),
            },
            expected_status=STATUS_PROCESSING,
            expected_token=token or request.attempt_token,
        )

    async def mark_failed(
        self,
        request: EnrichmentRequest,
        *,
        error: Mapping[str, Any],
        attempted_sources: Sequence[str],
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or datetime.now(timezone.utc)

        def build(current: EnrichmentRequest) -> Dict[str, Any]:
            metadata = dict(current.metadata)
            metadata["last_error"] = dict(error)
            return {
                "status": STATUS_FAILED,
                "last_outcome": OUTCOME_ERROR,
                "last_attempt_at": now,
                "attempted_sources": list(attempted_sources),
                "metadata": metadata,
            }

        owner = token or request.attempt_token
        return (
            await self._modify(request.request_id, build, expected_status=STATUS_PROCESSING, expected_token=owner)
            is not None
        )

    async def reset_to_pending(
        self,
        request_id: str,
        *,
        outcome: str,
        cooldown_until: Optional[datetime],
        attempted_sources: Sequence[str] = (),
        consume_attempt: bool = True,
        detail: Optional[Mapping[str, Any]] = None,
        token: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Return a request to ``pending`` after any outcome.

        With ``token`` only the admission holding it can reset the row, from
        ``processing`` or the terminal state it reached.  Without one the row
        must already be out of flight.  The history append and attempt counter
        are built from the row the store holds, not from a stale copy.
        """
        now = now or datetime.now(timezone.utc)

        def build(current: EnrichmentRequest) -> Dict[str, Any]:
            metadata = dict(current.metadata)
            if detail and outcome == OUTCOME_ERROR:
                metadata["last_error"] = dict(detail)

            changes: Dict[str, Any] = {
                "status": STATUS_PENDING,
                "last_outcome": outcome,
                "last_attempt_at": now,
                "deferred_attempts": 0,
                "attempted_sources": list(attempted_sources),
                "cooldown_until": cooldown_until,
                "metadata": metadata,
                "attempt_token": None,
                "history": append_history(
                    current.history, outcome, at=now, limit=self.settings.history_limit, detail=detail
                ),
            }
            if consume_attempt:
                changes["attempt_count"] = current.attempt_count + 1
            return changes

        if token is not None:
            statuses = (STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)
        else:
            statuses = (STATUS_PENDING, STATUS_COMPLETED, STATUS_FAILED)
        previous = await self._modify(request_id, build, expected_status=statuses, expected_token=token)
        if previous is None:
            log.warning(f"Request {request_id} is no longer ours to reset after {outcome}; left as is")
            return False
        log.info(
            f"Request {request_id} ({previous.term}) back to pending after {outcome}"
            + (f"; cooldown until {cooldown_until.isoformat()}" if cooldown_until else "")
        )
        return True

    async def list_backlog(self, limit: Optional[int] = None, *, now: Optional[datetime] = None) -> List[EnrichmentRequest]:
        now = now or datetime.now(timezone.utc)
        limit = self.settings.max_requests_per_batch if limit is None else limit
        return await self.store.list_backlog(limit, now)

    async def release_stale(
        self, older_than: Optional[timedelta] = None, *, now: Optional[datetime] = None
    ) -> List[str]:
        """Return requests stuck in ``queued``/``processing`` to ``pending``.

        A released row backs off like an error outcome and revokes the attempt
        token, so a runner that wakes up late can no longer write to it.
        """
        now = now or datetime.now(timezone.utc)
        older_than = older_than if older_than is not None else timedelta(seconds=self.settings.stale_after_seconds)
        stale = await self.store.list_stale(IN_FLIGHT_STATUSES, now - older_than)

        released: List[str] = []
        for request in stale:

            def build(current: EnrichmentRequest, seen: EnrichmentRequest = request) -> Optional[Dict[str, Any]]:
                if current.status != seen.status or current.attempt_token != seen.attempt_token:
                    return None
                return {
                    "status": STATUS_PENDING,
                    "last_outcome": OUTCOME_ERROR,
                    "last_attempt_at": now,
                    "attempted_sources": [],
                    "attempt_token": None,
                    "cooldown_until": cooldown_for_outcome(
                        OUTCOME_ERROR, self.settings, now=now, attempt=consecutive_errors(current.history)
                    ),
                    "history": append_history(
                        current.history,
                        OUTCOME_ERROR,
                        at=now,
                        limit=self.settings.history_limit,
                        detail={"reason": "stale_in_flight", "status": current.status},
                    ),
                }

            if await self._modify(request.request_id, build, expected_status=request.status) is not None:
                released.append(request.request_id)
                log.warning(f"Released stale request {request.request_id} ({request.term}) from {request.status}")
        return released

    async def prune_requesters(
        self, retention: Optional[timedelta] = None, *, now: Optional[datetime] = None
    ) -> int:
        now = now or datetime.now(timezone.utc)
        retention = retention if retention is not None else timedelta(days=self.settings.requester_retention_days)
        removed = await self.store.prune_requesters(now - retention)
        if removed:
            log.info(f"Pruned {removed} requester rows older than {retention.days} days")
        return removed


__all__ = ["RequestLedger"]
