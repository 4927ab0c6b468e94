import asyncio
from datetime import datetime, timezone
from typing import Dict, List, Optional

import pytest

from collector.core.interfaces import SearchOutcome
from collector.core.store import InMemoryRequestStore, InMemoryScheduleStore
from collector.ondemand.admission import AdmissionController
from collector.ondemand.ledger import RequestLedger
from collector.ondemand.reconciler import BacklogReconciler
from collector.ondemand.runner import EnrichmentRunner
from collector.ondemand.service import OnDemandService
from collector.settings import OnDemandSettings, SchedulingSettings
from models.queue import QueueDepthSnapshot, StageDepth

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeProbe:
    """Queue depth probe returning a fixed snapshot, or raising."""

    def __init__(self, snapshot: Optional[QueueDepthSnapshot] = None, error: Optional[Exception] = None):
        self.snapshot = snapshot or QueueDepthSnapshot()
        self.error = error
        self.calls = 0

    async def get_queue_depth(self) -> QueueDepthSnapshot:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.snapshot


class FakeJobQueue:
    def __init__(self, failing: Optional[set] = None):
        self.failing = failing or set()
        self.jobs = []

    async def enqueue(self, job):
        if job.source_id in self.failing:
            raise RuntimeError(f"queue rejected {job.source_id}")
        self.jobs.append(job)
        return f"job-{len(self.jobs)}"


class FakeResolver:
    def __init__(self, scopes: Optional[Dict[str, List[str]]] = None, tracked: Optional[List[str]] = None):
        self.scopes = scopes or {}
        self.tracked = tracked or []

    async def resolve_candidate_sources(self, location_scope, request=None):
        return list(self.scopes.get(location_scope, []))

    async def list_tracked_sources(self):
        return list(self.tracked)


class FakeSearcher:
    """Per-source scripted results: a SearchOutcome, an exception, or a delay in seconds."""

    def __init__(self, results=None, delays=None):
        self.results = results or {}
        self.delays = delays or {}
        self.calls: List[tuple] = []

    async def search_and_extract(self, source_id, term, *, entity_kind=None, metadata=None):
        self.calls.append((source_id, term))
        delay = self.delays.get(source_id)
        await asyncio.sleep(delay if delay is not None else 0)
        result = self.results.get(source_id, SearchOutcome())
        if isinstance(result, Exception):
            raise result
        return result


class FakeEntityStore:
    def __init__(self, existing: Optional[set] = None):
        self.existing = set(existing or ())
        self.created: List[tuple] = []
        self.enriched: List[tuple] = []

    async def entity_exists(self, entity_id):
        return entity_id in self.existing

    async def find_or_create_entity(self, term, entity_kind, location_scope):
        entity_id = f"{entity_kind}:{term.lower()}@{location_scope}"
        if entity_id not in self.existing:
            self.existing.add(entity_id)
            self.created.append((term, entity_kind, location_scope))
        return entity_id

    async def enrich_entity(self, entity_id, context):
        self.enriched.append((entity_id, dict(context)))


def busy_snapshot(waiting=0, active=0, processing_waiting=0, processing_active=0) -> QueueDepthSnapshot:
    return QueueDepthSnapshot(
        execution=StageDepth(waiting=waiting, active=active),
        processing=StageDepth(waiting=processing_waiting, active=processing_active),
    )


@pytest.fixture
def on_demand_settings():
    return OnDemandSettings(
        max_requests_per_batch=5,
        max_immediate_waiting=3,
        max_immediate_active=1,
        max_processing_backlog=10,
        instant_cooldown_ms=300000,
        estimated_job_minutes=120,
        success_cooldown_days=7,
        no_results_cooldown_days=60,
        error_cooldown_max_seconds=86400,
        source_timeout_seconds=0.05,
        stale_after_seconds=3600,
        requester_retention_days=90,
        history_limit=5,
    )


@pytest.fixture
def scheduling_settings():
    return SchedulingSettings(
        safety_buffer_items=750,
        min_interval_days=7,
        max_interval_days=60,
        smoothing_weight=0.3,
        default_items_per_day=20,
        default_source_rates={"austinfood": 15, "FoodNYC": 40},
        retry_base_seconds=5,
        retry_factor=2,
        retry_max_seconds=3600,
    )


@pytest.fixture
def request_store():
    return InMemoryRequestStore()


@pytest.fixture
def schedule_store():
    return InMemoryScheduleStore()


@pytest.fixture
def ledger(request_store, on_demand_settings):
    return RequestLedger(request_store, on_demand_settings)


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def resolver():
    return FakeResolver(scopes={"austin": ["austinfood", "texasfood"], "global": ["food"]}, tracked=["austinfood"])


@pytest.fixture
def searcher():
    return FakeSearcher()


@pytest.fixture
def entities():
    return FakeEntityStore()


@pytest.fixture
def runner(ledger, resolver, searcher, entities, on_demand_settings):
    return EnrichmentRunner(ledger, resolver, searcher, entities, on_demand_settings)


@pytest.fixture
def controller(ledger, probe, runner, on_demand_settings):
    return AdmissionController(ledger, probe, runner, on_demand_settings)


@pytest.fixture
def reconciler(ledger, controller, on_demand_settings):
    return BacklogReconciler(ledger, controller, on_demand_settings)


@pytest.fixture
def service(ledger, controller, reconciler, probe, on_demand_settings):
    return OnDemandService(ledger, controller, reconciler, probe, on_demand_settings)
