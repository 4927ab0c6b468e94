"""Source resolver driven by the ``sources`` section of settings.yaml."""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from collector.core.config import Config
from collector.utils.logger import get_logger
from models.request import GLOBAL_SCOPE, EnrichmentRequest, normalize_location_scope

log = get_logger(__name__)


class StaticSourceResolver:
    """
    Maps location scopes to the sources that cover them.

    ``global`` and unmapped scopes resolve to nothing unless
    ``fallback_to_all`` is set, in which case every tracked source is a
    candidate.
    """

    def __init__(
        self,
        tracked: Optional[Iterable[str]] = None,
        scopes: Optional[Mapping[str, Sequence[str]]] = None,
        fallback_to_all: Optional[bool] = None,
    ):
        section = Config.get("sources", default={}) or {}
        self.tracked: List[str] = list(tracked if tracked is not None else section.get("tracked") or [])
        raw_scopes = scopes if scopes is not None else section.get("scopes") or {}
        self.scopes: Dict[str, List[str]] = {
            normalize_location_scope(scope): list(sources) for scope, sources in raw_scopes.items()
        }
        self.fallback_to_all = bool(
            fallback_to_all if fallback_to_all is not None else section.get("fallback_to_all", False)
        )

    async def resolve_candidate_sources(
        self, location_scope: str, request: Optional[EnrichmentRequest] = None
    ) -> List[str]:
        scope = normalize_location_scope(location_scope)
        sources = self.scopes.get(scope)
        if sources:
            return list(sources)
        if self.fallback_to_all:
            return list(self.tracked)
        if scope != GLOBAL_SCOPE:
            log.debug(f"No sources mapped for scope {scope!r}")
        return []

    async def list_tracked_sources(self) -> List[str]:
        return list(self.tracked)


__all__ = ["StaticSourceResolver"]
