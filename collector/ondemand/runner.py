"""Executes one admitted enrichment request against its candidate sources."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from collector.core.errors import SourceFetchError, describe_error
from collector.core.interfaces import ContentSearcher, EntityStore, SearchOutcome, SourceResolver
from collector.ondemand.ledger import RequestLedger
from collector.refresh.cooldown import cooldown_for_outcome
from collector.settings import OnDemandSettings, get_on_demand_settings
from collector.utils.logger import get_logger
from models.request import (
    OUTCOME_ERROR,
    OUTCOME_NO_ACTIVE_SOURCES,
    OUTCOME_NO_RESULTS,
    OUTCOME_SUCCESS,
    REASON_LOW_RESULT,
    EnrichmentRequest,
    consecutive_errors,
)

log = get_logger(__name__)


@dataclass(slots=True)
class RunResult:
    request_id: str
    outcome: str
    entity_id: Optional[str] = None
    attempted_sources: List[str] = field(default_factory=list)
    cooldown_until: Optional[datetime] = None
    detail: Dict[str, Any] = field(default_factory=dict)


class EnrichmentRunner:
    def __init__(
        self,
        ledger: RequestLedger,
        resolver: SourceResolver,
        searcher: ContentSearcher,
        entities: EntityStore,
        settings: Optional[OnDemandSettings] = None,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.searcher = searcher
        self.entities = entities
        self.settings = settings or get_on_demand_settings()

    async def run(
        self,
        request: EnrichmentRequest,
        *,
        now: Optional[datetime] = None,
        attempt_token: Optional[str] = None,
    ) -> RunResult:
        """Run ``request`` to an outcome; the row always ends back in ``pending``.

        Every write is made under ``attempt_token`` (the row's own token when not
        given).  Once the row was released and admitted again the writes are
        refused and the new owner is left alone.
        """
        token = attempt_token or request.attempt_token
        attempted: List[str] = []
        try:
            return await self._execute(request, attempted, now, token)
        except Exception as exc:
            detail = describe_error(exc)
            log.exception(f"Enrichment failed for {request.request_id} ({request.term}): {exc}")
            return await self._finish_with_error(request, attempted, detail, now, token)

    async def _execute(
        self,
        request: EnrichmentRequest,
        attempted: List[str],
        now: Optional[datetime],
        token: Optional[str],
    ) -> RunResult:
        sources = list(await self.resolver.resolve_candidate_sources(request.location_scope, request))
        if not sources:
            log.warning(
                f"No active sources for {request.request_id} ({request.term} @ {request.location_scope})"
            )
            await self.ledger.reset_to_pending(
                request.request_id,
                outcome=OUTCOME_NO_ACTIVE_SOURCES,
                cooldown_until=None,
                consume_attempt=False,
                token=token,
                now=now,
            )
            return RunResult(request.request_id, OUTCOME_NO_ACTIVE_SOURCES)

        for source_id in sources:
            if source_id in attempted:
                continue
            attempted.append(source_id)
            result = await self._attempt(source_id, request)
            if not result.succeeded:
                continue

            entity_id = await self._resolve_entity(request, source_id, result)
            if not await self.ledger.mark_completed(
                request,
                outcome=OUTCOME_SUCCESS,
                entity_id=entity_id,
                attempted_sources=attempted,
                token=token,
                now=now,
            ):
                return self._superseded(request, OUTCOME_SUCCESS, attempted, entity_id)
            return await self._reset(
                request,
                OUTCOME_SUCCESS,
                attempted,
                now,
                token,
                entity_id=entity_id,
                detail={
                    "source_id": source_id,
                    "new_items": result.new_items,
                    "new_relationships": result.new_relationships,
                },
            )

        if not await self.ledger.mark_completed(
            request,
            outcome=OUTCOME_NO_RESULTS,
            entity_id=request.linked_entity_id,
            attempted_sources=attempted,
            token=token,
            now=now,
        ):
            return self._superseded(request, OUTCOME_NO_RESULTS, attempted, request.linked_entity_id)
        log.info(f"No source produced results for {request.request_id} ({request.term}); tried {attempted}")
        return await self._reset(request, OUTCOME_NO_RESULTS, attempted, now, token)

    async def _attempt(self, source_id: str, request: EnrichmentRequest) -> SearchOutcome:
        try:
            return await asyncio.wait_for(
                self.searcher.search_and_extract(
                    source_id,
                    request.term,
                    entity_kind=request.entity_kind,
                    metadata=request.metadata,
                ),
                timeout=self.settings.source_timeout_seconds,
            )
        except asyncio.TimeoutError:
            log.warning(
                f"Source {source_id} timed out after {self.settings.source_timeout_seconds:g}s "
                f"for {request.request_id}"
            )
        except SourceFetchError as exc:
            log.warning(f"Source {source_id} failed for {request.request_id}: {exc}")
        return SearchOutcome()

    async def _resolve_entity(self, request: EnrichmentRequest, source_id: str, result: SearchOutcome) -> str:
        if request.reason == REASON_LOW_RESULT and request.linked_entity_id:
            if await self.entities.entity_exists(request.linked_entity_id):
                return request.linked_entity_id
            log.warning(
                f"Linked entity {request.linked_entity_id} for {request.request_id} no longer exists; "
                "falling back to lookup by name"
            )

        entity_id = await self.entities.find_or_create_entity(
            request.term, request.entity_kind, request.location_scope
        )
        await self.entities.enrich_entity(
            entity_id,
            {
                "term": request.term,
                "entity_kind": request.entity_kind,
                "location_scope": request.location_scope,
                "source_id": source_id,
                "metadata": dict(request.metadata),
                "extraction": dict(result.details),
            },
        )
        return entity_id

    def _superseded(
        self,
        request: EnrichmentRequest,
        outcome: str,
        attempted: List[str],
        entity_id: Optional[str],
    ) -> RunResult:
        log.warning(
            f"Request {request.request_id} ({request.term}) was released while running; "
            f"dropping its {outcome} outcome"
        )
        return RunResult(
            request.request_id,
            outcome,
            entity_id=entity_id,
            attempted_sources=list(attempted),
            detail={"reason": "superseded"},
        )

    async def _reset(
        self,
        request: EnrichmentRequest,
        outcome: str,
        attempted: List[str],
        now: Optional[datetime],
        token: Optional[str],
        *,
        entity_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> RunResult:
        moment = now or datetime.now(timezone.utc)
        cooldown = cooldown_for_outcome(outcome, self.settings, now=moment)
        await self.ledger.reset_to_pending(
            request.request_id,
            outcome=outcome,
            cooldown_until=cooldown,
            attempted_sources=attempted,
            detail=detail,
            token=token,
            now=moment,
        )
        return RunResult(
            request.request_id,
            outcome,
            entity_id=entity_id or request.linked_entity_id,
            attempted_sources=list(attempted),
            cooldown_until=cooldown,
            detail=detail or {},
        )

    async def _finish_with_error(
        self,
        request: EnrichmentRequest,
        attempted: List[str],
        detail: Dict[str, Any],
        now: Optional[datetime],
        token: Optional[str],
    ) -> RunResult:
        moment = now or datetime.now(timezone.utc)
        await self.ledger.mark_failed(request, error=detail, attempted_sources=attempted, token=token, now=moment)
        cooldown = cooldown_for_outcome(
            OUTCOME_ERROR, self.settings, now=moment, attempt=consecutive_errors(request.history)
        )
        # refused when another admission owns the row by now
        await self.ledger.reset_to_pending(
            request.request_id,
            outcome=OUTCOME_ERROR,
            cooldown_until=cooldown,
            attempted_sources=attempted,
            detail=detail,
            token=token,
            now=moment,
        )
        return RunResult(
            request.request_id,
            OUTCOME_ERROR,
            attempted_sources=list(attempted),
            cooldown_until=cooldown,
            detail=detail,
        )


__all__ = ["EnrichmentRunner", "RunResult", "consecutive_errors"]
