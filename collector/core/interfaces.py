"""Narrow contracts for the collaborators the collector drives but does not own."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from models.queue import CollectionJob, QueueDepthSnapshot
from models.request import EnrichmentRequest


@dataclass(slots=True)
class SearchOutcome:
    """What a single source attempt produced."""

    new_items: int = 0
    new_relationships: int = 0
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.new_items > 0 or self.new_relationships > 0


@runtime_checkable
class QueueProbe(Protocol):
    async def get_queue_depth(self) -> QueueDepthSnapshot:
        ...


@runtime_checkable
class JobQueue(Protocol):
    async def enqueue(self, job: CollectionJob) -> Optional[str]:
        ...


@runtime_checkable
class SourceResolver(Protocol):
    async def resolve_candidate_sources(
        self, location_scope: str, request: Optional[EnrichmentRequest] = None
    ) -> Sequence[str]:
        ...

    async def list_tracked_sources(self) -> List[str]:
        ...


@runtime_checkable
class ContentSearcher(Protocol):
    async def search_and_extract(
        self,
        source_id: str,
        term: str,
        *,
        entity_kind: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> SearchOutcome:
        ...


@runtime_checkable
class EntityStore(Protocol):
    async def entity_exists(self, entity_id: str) -> bool:
        ...

    async def find_or_create_entity(self, term: str, entity_kind: str, location_scope: str) -> str:
        ...

    async def enrich_entity(self, entity_id: str, context: Mapping[str, Any]) -> None:
        ...


__all__ = [
    "SearchOutcome",
    "QueueProbe",
    "JobQueue",
    "SourceResolver",
    "ContentSearcher",
    "EntityStore",
]
