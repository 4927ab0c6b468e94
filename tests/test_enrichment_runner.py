from datetime import timedelta

import pytest

from collector.core.errors import SourceFetchError
from collector.core.interfaces import SearchOutcome
from collector.ondemand.runner import consecutive_errors
from conftest import NOW
from models.request import REASON_LOW_RESULT, RequestInput


async def admitted(ledger, term="Brisket", scope="austin", **kwargs):
    """Record a request and walk it to ``processing`` the way admission does."""
    [row] = await ledger.record_requests(
        [RequestInput(term=term, entity_kind="food", location_scope=scope, **kwargs)], observed_at=NOW
    )
    assert await ledger.mark_queued(row.request_id, now=NOW)
    assert await ledger.mark_processing(row.request_id)
    return await ledger.get(row.request_id)


@pytest.mark.asyncio
async def test_success_from_second_source(ledger, runner, searcher, entities):
    searcher.results["texasfood"] = SearchOutcome(new_items=4, details={"pages": 2})
    request = await admitted(ledger)

    result = await runner.run(request, now=NOW)

    assert result.outcome == "success"
    assert result.attempted_sources == ["austinfood", "texasfood"]
    assert result.entity_id == "food:brisket@austin"
    assert result.cooldown_until == NOW + timedelta(days=7)
    assert entities.created == [("Brisket", "food", "austin")]
    [(entity_id, context)] = entities.enriched
    assert entity_id == "food:brisket@austin"
    assert context["source_id"] == "texasfood"
    assert context["extraction"] == {"pages": 2}

    row = await ledger.get(request.request_id)
    assert row.status == "pending"
    assert row.linked_entity_id == "food:brisket@austin"
    assert row.attempt_count == 1
    assert row.last_completed_at == NOW
    assert row.history[-1]["outcome"] == "success"


@pytest.mark.asyncio
async def test_low_result_reuses_linked_entity(ledger, runner, searcher, entities):
    entities.existing.add("food:42")
    searcher.results["austinfood"] = SearchOutcome(new_relationships=1)
    request = await admitted(ledger, reason=REASON_LOW_RESULT, entity_id="food:42")

    result = await runner.run(request, now=NOW)

    assert result.outcome == "success"
    assert result.entity_id == "food:42"
    assert entities.created == []
    assert entities.enriched == []


@pytest.mark.asyncio
async def test_low_result_with_vanished_entity_falls_back_to_lookup(ledger, runner, searcher, entities):
    searcher.results["austinfood"] = SearchOutcome(new_items=1)
    request = await admitted(ledger, reason=REASON_LOW_RESULT, entity_id="food:gone")

    result = await runner.run(request, now=NOW)

    assert result.entity_id == "food:brisket@austin"
    assert entities.created == [("Brisket", "food", "austin")]


@pytest.mark.asyncio
async def test_no_results_applies_long_cooldown(ledger, runner, searcher):
    request = await admitted(ledger)

    result = await runner.run(request, now=NOW)

    assert result.outcome == "no_results"
    assert result.cooldown_until == NOW + timedelta(days=60)
    row = await ledger.get(request.request_id)
    assert row.status == "pending"
    assert row.attempted_sources == ["austinfood", "texasfood"]
    assert row.cooldown_until == NOW + timedelta(days=60)


@pytest.mark.asyncio
async def test_no_active_sources_does_not_consume_attempt(ledger, runner, searcher):
    request = await admitted(ledger, scope="denver")

    result = await runner.run(request, now=NOW)

    assert result.outcome == "no_active_sources"
    assert searcher.calls == []
    row = await ledger.get(request.request_id)
    assert row.status == "pending"
    assert row.cooldown_until is None
    assert row.attempt_count == 0
    assert row.last_outcome == "no_active_sources"


@pytest.mark.asyncio
async def test_timeout_and_fetch_error_count_as_no_yield(ledger, runner, searcher):
    searcher.delays["austinfood"] = 1.0
    searcher.results["texasfood"] = SourceFetchError("upstream returned 503", status_code=503)
    request = await admitted(ledger)

    result = await runner.run(request, now=NOW)

    assert result.outcome == "no_results"
    assert result.attempted_sources == ["austinfood", "texasfood"]


@pytest.mark.asyncio
async def test_unexpected_error_backs_off_and_never_stays_in_flight(ledger, runner, searcher):
    searcher.results["austinfood"] = RuntimeError("parser crashed")
    request = await admitted(ledger)

    result = await runner.run(request, now=NOW)

    assert result.outcome == "error"
    assert result.cooldown_until == NOW + timedelta(seconds=300)
    row = await ledger.get(request.request_id)
    assert row.status == "pending"
    assert row.metadata["last_error"]["error_type"] == "RuntimeError"
    assert row.attempt_count == 1

    later = NOW + timedelta(minutes=10)
    assert await ledger.mark_queued(row.request_id, now=later)
    assert await ledger.mark_processing(row.request_id)
    again = await runner.run(await ledger.get(row.request_id), now=later)

    assert again.cooldown_until == later + timedelta(seconds=600)


@pytest.mark.asyncio
async def test_resolver_failure_is_an_error_outcome(ledger, runner, resolver):
    async def broken(location_scope, request=None):
        raise RuntimeError("registry offline")

    resolver.resolve_candidate_sources = broken
    request = await admitted(ledger)

    result = await runner.run(request, now=NOW)

    assert result.outcome == "error"
    row = await ledger.get(request.request_id)
    assert row.status == "pending"


def test_consecutive_errors_counts_trailing_run():
    history = [{"outcome": "error"}, {"outcome": "success"}, {"outcome": "error"}, {"outcome": "error"}]
    assert consecutive_errors(history) == 2
    assert consecutive_errors([]) == 0


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "scripted, outcome",
    [(SearchOutcome(new_items=2), "success"), (None, "no_results"), (RuntimeError("parser crashed"), "error")],
)
async def test_runner_released_mid_flight_leaves_new_owner_alone(ledger, runner, searcher, scripted, outcome):
    if scripted is not None:
        searcher.results["austinfood"] = scripted
    request = await admitted(ledger)

    released_at = NOW + timedelta(hours=2)
    assert await ledger.release_stale(timedelta(hours=1), now=released_at) == [request.request_id]
    readmitted_at = released_at + timedelta(minutes=10)
    second = await ledger.mark_queued(request.request_id, now=readmitted_at)
    assert await ledger.mark_processing(request.request_id, second)

    result = await runner.run(request, now=readmitted_at + timedelta(minutes=1))

    assert result.outcome == outcome
    row = await ledger.get(request.request_id)
    assert row.status == "processing"
    assert row.attempt_token == second
    assert row.attempt_count == 0
    assert row.last_completed_at is None
    assert "last_error" not in row.metadata
