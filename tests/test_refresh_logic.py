from datetime import datetime, timedelta, timezone

import pytest

from collector.refresh.budget import BatchBudget
from collector.refresh.cooldown import cooldown_for_outcome, is_in_cooldown, next_delay
from collector.refresh.decision import evaluate_cooldown, evaluate_queue_depth
from models.queue import QueueDepthSnapshot, StageDepth
from models.request import EnrichmentRequest

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


def make_request(**overrides) -> EnrichmentRequest:
    data = {
        "term": "Brisket",
        "normalized_term": "brisket",
        "entity_kind": "food",
        "reason": "unresolved",
        "location_scope": "austin",
    }
    data.update(overrides)
    return EnrichmentRequest(**data)


def test_next_delay_grows_and_caps():
    assert next_delay(0, base=5, factor=2, cap=3600) == 5
    assert next_delay(3, base=5, factor=2, cap=3600) == 40
    assert next_delay(20, base=5, factor=2, cap=3600) == 3600
    assert next_delay(10_000, base=5, factor=2, cap=3600) == 3600


def test_is_in_cooldown():
    assert is_in_cooldown(until=NOW + timedelta(seconds=1), now=NOW)
    assert not is_in_cooldown(until=NOW, now=NOW)
    assert not is_in_cooldown(until=None, now=NOW)


def test_outcome_cooldowns(on_demand_settings):
    assert cooldown_for_outcome("no_active_sources", on_demand_settings, now=NOW) is None
    assert cooldown_for_outcome("success", on_demand_settings, now=NOW) == NOW + timedelta(days=7)
    assert cooldown_for_outcome("no_results", on_demand_settings, now=NOW) == NOW + timedelta(days=60)
    assert cooldown_for_outcome("deferred", on_demand_settings, now=NOW) == NOW + timedelta(minutes=5)


def test_error_cooldown_backs_off(on_demand_settings):
    first = cooldown_for_outcome("error", on_demand_settings, now=NOW, attempt=0)
    third = cooldown_for_outcome("error", on_demand_settings, now=NOW, attempt=2)
    capped = cooldown_for_outcome("error", on_demand_settings, now=NOW, attempt=50)
    assert first == NOW + timedelta(minutes=5)
    assert third == NOW + timedelta(minutes=20)
    assert capped == NOW + timedelta(days=1)


def test_cooldown_blocks_before_queue_inspection():
    request = make_request(cooldown_until=NOW + timedelta(minutes=1))
    decision = evaluate_cooldown(request, now=NOW)
    assert decision is not None
    assert not decision.run_now
    assert decision.reason == "cooldown_active"
    assert evaluate_cooldown(make_request(), now=NOW) is None


@pytest.mark.parametrize(
    "snapshot, reason",
    [
        (QueueDepthSnapshot(execution=StageDepth(waiting=3)), "execution_queue_waiting"),
        (QueueDepthSnapshot(execution=StageDepth(waiting=5, active=4)), "execution_queue_waiting"),
        (QueueDepthSnapshot(execution=StageDepth(active=1)), "execution_queue_active"),
        (QueueDepthSnapshot(processing=StageDepth(waiting=6, active=4)), "processing_queue_backlog"),
    ],
)
def test_queue_depth_defers(on_demand_settings, snapshot, reason):
    decision = evaluate_queue_depth(snapshot, on_demand_settings)
    assert not decision.run_now
    assert decision.reason == reason
    assert decision.snapshot is snapshot


def test_queue_depth_admits_with_headroom(on_demand_settings):
    snapshot = QueueDepthSnapshot(
        execution=StageDepth(waiting=2, active=0, delayed=40),
        processing=StageDepth(waiting=5, active=4),
    )
    decision = evaluate_queue_depth(snapshot, on_demand_settings)
    assert decision.run_now
    assert decision.reason is None


def test_batch_budget_consumption():
    budget = BatchBudget(2)
    assert budget.allow()
    budget.consume()
    assert budget.allow()
    budget.consume()
    assert not budget.allow()
    assert budget.used == 2
    with pytest.raises(RuntimeError):
        budget.consume()
