"""Core contracts shared by the scheduling and on-demand layers."""

from .errors import CollectorError, ConfigError, PersistenceError, QueueProbeError, SourceFetchError
from .interfaces import ContentSearcher, EntityStore, JobQueue, QueueProbe, SearchOutcome, SourceResolver
from .store import InMemoryRequestStore, InMemoryScheduleStore, RequestStore, ScheduleStore

__all__ = [
    "CollectorError",
    "ConfigError",
    "PersistenceError",
    "QueueProbeError",
    "SourceFetchError",
    "ContentSearcher",
    "EntityStore",
    "JobQueue",
    "QueueProbe",
    "SearchOutcome",
    "SourceResolver",
    "InMemoryRequestStore",
    "InMemoryScheduleStore",
    "RequestStore",
    "ScheduleStore",
]
