import pytest

from collector.core.errors import QueueProbeError
from collector.ondemand.admission import AdmissionController
from collector.ondemand.reconciler import BacklogReconciler
from collector.ondemand.service import OnDemandService
from conftest import NOW, FakeProbe, busy_snapshot
from models.request import RequestInput


def build_service(ledger, runner, settings, probe):
    controller = AdmissionController(ledger, probe, runner, settings)
    reconciler = BacklogReconciler(ledger, controller, settings)
    return OnDemandService(ledger, controller, reconciler, probe, settings)


def dishes(*terms, scope="austin"):
    return [RequestInput(term=term, entity_kind="food", location_scope=scope) for term in terms]


@pytest.mark.asyncio
async def test_admitted_request_gets_eta_for_empty_queue(service):
    [result] = await service.enqueue_requests(dishes("brisket"), requester_id="u1", now=NOW)

    assert result.queued
    assert result.outcome == "no_results"
    assert result.eta_seconds == 7200


@pytest.mark.asyncio
async def test_eta_scales_with_queue_backlog(ledger, runner, on_demand_settings):
    probe = FakeProbe(busy_snapshot(processing_waiting=3))
    service = build_service(ledger, runner, on_demand_settings, probe)

    [result] = await service.enqueue_requests(dishes("brisket"), now=NOW)

    assert result.queued
    assert result.eta_seconds == (3 + 1) * 7200


@pytest.mark.asyncio
async def test_probe_failure_admits_with_fallback_eta(ledger, runner, on_demand_settings):
    probe = FakeProbe(error=QueueProbeError("queue metrics unavailable"))
    service = build_service(ledger, runner, on_demand_settings, probe)

    [result] = await service.enqueue_requests(dishes("brisket"), now=NOW)

    assert result.queued
    assert result.eta_seconds == on_demand_settings.estimated_job_seconds


@pytest.mark.asyncio
async def test_deferred_request_has_no_eta(ledger, runner, on_demand_settings):
    service = build_service(ledger, runner, on_demand_settings, FakeProbe(busy_snapshot(waiting=5)))

    [result] = await service.enqueue_requests(dishes("brisket"), now=NOW)

    assert not result.queued
    assert result.defer_reason == "execution_queue_waiting"
    assert result.eta_seconds is None
    row = await ledger.get(result.request_id)
    assert row.status == "pending"
    assert row.deferred_attempts == 1


@pytest.mark.asyncio
async def test_only_batch_limit_is_offered(service, ledger, searcher, on_demand_settings):
    terms = [f"dish {index}" for index in range(on_demand_settings.max_requests_per_batch + 2)]

    results = await service.enqueue_requests(dishes(*terms), now=NOW)

    assert len(results) == on_demand_settings.max_requests_per_batch
    backlog = await ledger.list_backlog(limit=10, now=NOW)
    assert {row.term for row in backlog} == set(terms[on_demand_settings.max_requests_per_batch:])


@pytest.mark.asyncio
async def test_backlog_is_reconciled_before_fresh_requests(service, ledger, searcher):
    await ledger.record_requests(dishes("queso"), observed_at=NOW)

    await service.enqueue_requests(dishes("tacos"), now=NOW)

    assert [term for _, term in searcher.calls][::2] == ["queso", "tacos"]


@pytest.mark.asyncio
async def test_record_failure_is_swallowed(service, ledger):
    async def broken(*args, **kwargs):
        raise RuntimeError("database unavailable")

    ledger.record_requests = broken

    assert await service.enqueue_requests(dishes("brisket"), now=NOW) == []


@pytest.mark.asyncio
async def test_empty_and_sanitized_away_input(service):
    assert await service.enqueue_requests([], now=NOW) == []
    assert await service.enqueue_requests(dishes("the best near me"), now=NOW) == []


@pytest.mark.asyncio
async def test_repeat_request_in_cooldown_is_not_rerun(service, searcher):
    [first] = await service.enqueue_requests(dishes("brisket"), now=NOW)
    calls = len(searcher.calls)

    [second] = await service.enqueue_requests(dishes("Brisket"), requester_id="u2", now=NOW)

    assert first.request_id == second.request_id
    assert not second.queued
    assert second.defer_reason == "cooldown_active"
    assert len(searcher.calls) == calls
