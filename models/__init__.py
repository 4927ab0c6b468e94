"""Model exports for the collector."""

from .queue import CollectionJob, QueueDepthSnapshot, StageDepth
from .request import (
    GLOBAL_SCOPE,
    EnrichmentRequest,
    RequestInput,
    RequestKey,
    normalize_location_scope,
)
from .schedule import SourceScheduleConfig

__all__ = [
    "CollectionJob",
    "EnrichmentRequest",
    "GLOBAL_SCOPE",
    "QueueDepthSnapshot",
    "RequestInput",
    "RequestKey",
    "SourceScheduleConfig",
    "StageDepth",
    "normalize_location_scope",
]
