from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from collector.ondemand.ledger import RequestLedger
from collector.scheduling.registry import SourceScheduleRegistry
from collector.settings import OnDemandSettings, SchedulingSettings
from db.manager import DatabaseManager
from db.repository import SqlRequestStore, SqlScheduleStore
from models.request import RequestInput

NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def db(tmp_path):
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'collector.db'}")
    await manager.create_all()
    yield manager
    await manager.close()


@pytest.fixture
def ledger(db):
    settings = OnDemandSettings(history_limit=5, stale_after_seconds=3600, requester_retention_days=90)
    return RequestLedger(SqlRequestStore(db.session_factory), settings)


def brisket(**kwargs):
    values = {"term": "Brisket", "entity_kind": "food", "location_scope": "Austin"}
    values.update(kwargs)
    return RequestInput(**values)


@pytest.mark.asyncio
async def test_connection_check(db):
    assert await db.check_connection()


@pytest.mark.asyncio
async def test_upsert_is_idempotent_per_key(ledger):
    [first] = await ledger.record_requests(
        [brisket()], requester_id="u1", observed_at=NOW, context={"result_counts": {"foods": 0}}
    )
    [second] = await ledger.record_requests([brisket(term="brisket ")], requester_id="u2", observed_at=NOW)
    [third] = await ledger.record_requests([brisket()], requester_id="u1", observed_at=NOW + timedelta(hours=1))

    assert first.request_id == second.request_id == third.request_id
    stored = await ledger.get(first.request_id)
    assert stored.occurrence_count == 3
    assert stored.distinct_requester_count == 2
    assert stored.location_scope == "austin"
    assert stored.result_counts == {"foods": 0}
    assert stored.last_seen_at == NOW + timedelta(hours=1)
    assert stored.created_at == NOW


@pytest.mark.asyncio
async def test_status_transitions_are_conditional(ledger):
    [row] = await ledger.record_requests([brisket()], observed_at=NOW)

    assert await ledger.mark_queued(row.request_id, now=NOW)
    assert not await ledger.mark_queued(row.request_id, now=NOW)
    assert await ledger.mark_processing(row.request_id)
    assert not await ledger.mark_processing(row.request_id)

    current = await ledger.get(row.request_id)
    assert current.status == "processing"
    assert current.last_enqueued_at == NOW


@pytest.mark.asyncio
async def test_cooldown_blocks_queueing(ledger):
    [row] = await ledger.record_requests([brisket()], observed_at=NOW)
    until = NOW + timedelta(days=7)
    assert await ledger.reset_to_pending(row.request_id, outcome="success", cooldown_until=until, now=NOW)

    assert not await ledger.mark_queued(row.request_id, now=NOW + timedelta(days=1))
    assert await ledger.mark_queued(row.request_id, now=until)

    stored = await ledger.get(row.request_id)
    assert stored.cooldown_until == until
    assert stored.history[-1]["outcome"] == "success"


@pytest.mark.asyncio
async def test_backlog_order_and_cooldown_filter(ledger):
    await ledger.record_requests([brisket(term="queso")], observed_at=NOW)
    await ledger.record_requests([brisket(term="kolaches")], observed_at=NOW - timedelta(hours=1))
    for _ in range(3):
        await ledger.record_requests([brisket(term="tacos")], observed_at=NOW)
    [cooling] = await ledger.record_requests([brisket(term="migas")], observed_at=NOW)
    await ledger.reset_to_pending(
        cooling.request_id, outcome="no_results", cooldown_until=NOW + timedelta(days=60), now=NOW
    )

    backlog = await ledger.list_backlog(limit=10, now=NOW)

    assert [row.term for row in backlog] == ["tacos", "kolaches", "queso"]


@pytest.mark.asyncio
async def test_metadata_round_trips(ledger):
    [row] = await ledger.record_requests(
        [brisket(metadata={"query": "brisket austin"})], observed_at=NOW, context={"locale": "en-US"}
    )
    await ledger.mark_deferred(row, reason="execution_queue_active", cooldown_until=NOW + timedelta(minutes=5), now=NOW)

    stored = await ledger.get(row.request_id)
    assert stored.metadata["query"] == "brisket austin"
    assert stored.metadata["context"] == {"locale": "en-US"}
    assert stored.metadata["deferred_reason"] == "execution_queue_active"
    assert stored.deferred_attempts == 1


@pytest.mark.asyncio
async def test_release_stale_and_prune(ledger):
    [row] = await ledger.record_requests([brisket()], requester_id="old", observed_at=NOW - timedelta(days=120))
    await ledger.record_requests([brisket()], requester_id="new", observed_at=NOW)
    assert await ledger.mark_queued(row.request_id, now=NOW - timedelta(hours=2))

    assert await ledger.release_stale(now=NOW) == [row.request_id]
    assert (await ledger.get(row.request_id)).status == "pending"

    assert await ledger.prune_requesters(now=NOW) == 1
    assert (await ledger.get(row.request_id)).distinct_requester_count == 1


@pytest.mark.asyncio
async def test_schedule_store_round_trip(db):
    settings = SchedulingSettings(default_source_rates={"FoodNYC": 40})
    registry = SourceScheduleRegistry(SqlScheduleStore(db.session_factory), settings)

    config = await registry.initialize("FoodNYC", now=NOW)
    await registry.record_failure("FoodNYC", now=config.next_collection_due_at)

    stored = await registry.get("FoodNYC")
    assert stored.safe_interval_days == pytest.approx(18.75)
    assert stored.next_collection_due_at == NOW + timedelta(days=18.75)
    assert stored.consecutive_failures == 1
    assert stored.retry_not_before is not None

    await registry.update_observed_rate("FoodNYC", 100, now=NOW + timedelta(days=19))
    assert [c.source_id for c in await SqlScheduleStore(db.session_factory).list_all()] == ["FoodNYC"]


@pytest.mark.asyncio
async def test_released_token_is_rejected(ledger):
    [row] = await ledger.record_requests([brisket()], observed_at=NOW)
    first = await ledger.mark_queued(row.request_id, now=NOW)
    assert await ledger.mark_processing(row.request_id, first)

    released_at = NOW + timedelta(hours=2)
    assert await ledger.release_stale(now=released_at) == [row.request_id]
    released = await ledger.get(row.request_id)
    assert released.attempt_token is None
    assert released.cooldown_until == released_at + timedelta(seconds=300)

    second = await ledger.mark_queued(row.request_id, now=released_at + timedelta(minutes=10))
    assert await ledger.mark_processing(row.request_id, second)
    assert not await ledger.reset_to_pending(
        row.request_id, outcome="success", cooldown_until=None, token=first, now=released_at
    )

    current = await ledger.get(row.request_id)
    assert current.status == "processing"
    assert current.attempt_token == second
    assert current.revision > released.revision


@pytest.mark.asyncio
async def test_repeat_sighting_bumps_revision_without_touching_status(ledger):
    [row] = await ledger.record_requests([brisket()], observed_at=NOW)
    token = await ledger.mark_queued(row.request_id, now=NOW)
    queued = await ledger.get(row.request_id)

    await ledger.record_requests([brisket(metadata={"query": "smoked brisket"})], observed_at=NOW)

    current = await ledger.get(row.request_id)
    assert current.status == "queued"
    assert current.attempt_token == token
    assert current.occurrence_count == 2
    assert current.revision == queued.revision + 1


@pytest.mark.asyncio
async def test_first_dispatch_flag_persists(db):
    settings = SchedulingSettings(default_source_rates={"FoodNYC": 40})
    registry = SourceScheduleRegistry(SqlScheduleStore(db.session_factory), settings)

    await registry.record_failure("FoodNYC", now=NOW)

    stored = await registry.get("FoodNYC")
    assert stored.awaiting_first_dispatch
    assert stored.next_collection_due_at == NOW + timedelta(days=18.75)
    assert await registry.is_due("FoodNYC", now=stored.retry_not_before)

    await registry.record_dispatch("FoodNYC", now=stored.retry_not_before)
    assert not (await registry.get("FoodNYC")).awaiting_first_dispatch
