import json

import httpx
import pytest

from collector.adapters.http_queue import HttpQueueClient
from collector.core.errors import QueueProbeError
from models.queue import CollectionJob

BASE_URL = "http://queue.test"


def make_client(handler, max_attempts=3):
    transport = httpx.MockTransport(handler)
    client = httpx.AsyncClient(transport=transport)
    return HttpQueueClient(base_url=BASE_URL, max_attempts=max_attempts, backoff_seconds=0, client=client)


@pytest.mark.asyncio
async def test_queue_depth_parsing():
    def handler(request):
        assert request.url.path == "/queues/depth"
        return httpx.Response(
            200,
            json={
                "execution": {"waiting": 2, "active": 1, "delayed": 4},
                "processing": {"waiting": 7},
                "updated_at": "2025-03-01T12:00:00Z",
            },
        )

    client = make_client(handler)
    snapshot = await client.get_queue_depth()

    assert snapshot.execution.waiting == 2
    assert snapshot.execution.active == 1
    assert snapshot.execution.delayed == 4
    assert snapshot.processing.backlog == 7
    assert snapshot.total_backlog == 10


@pytest.mark.asyncio
async def test_transient_status_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) < 3:
            return httpx.Response(503, json={"detail": "warming up"})
        return httpx.Response(200, json={"execution": {}, "processing": {}})

    snapshot = await make_client(handler).get_queue_depth()

    assert len(calls) == 3
    assert snapshot.total_backlog == 0


@pytest.mark.asyncio
async def test_exhausted_retries_raise_probe_error():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(502)

    with pytest.raises(QueueProbeError) as excinfo:
        await make_client(handler, max_attempts=2).get_queue_depth()

    assert len(calls) == 2
    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(404)

    with pytest.raises(QueueProbeError):
        await make_client(handler).get_queue_depth()
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_transport_error_becomes_probe_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(QueueProbeError) as excinfo:
        await make_client(handler, max_attempts=2).get_queue_depth()
    assert excinfo.value.endpoint == f"{BASE_URL}/queues/depth"


@pytest.mark.asyncio
async def test_malformed_depth_payload():
    def handler(request):
        return httpx.Response(200, json={"execution": {"waiting": -1}})

    with pytest.raises(QueueProbeError, match="Malformed"):
        await make_client(handler).get_queue_depth()


@pytest.mark.asyncio
async def test_enqueue_posts_job_and_returns_id():
    received = {}

    def handler(request):
        assert request.method == "POST"
        assert request.url.path == "/jobs"
        received.update(json.loads(request.content))
        return httpx.Response(202, json={"job_id": "job-17", "status": "accepted"})

    job = CollectionJob(job_type="chronological_collection", source_id="austinfood", payload={"n": 1})
    async with make_client(handler) as client:
        job_id = await client.enqueue(job)

    assert job_id == "job-17"
    assert received == {"job_type": "chronological_collection", "source_id": "austinfood", "payload": {"n": 1}}


@pytest.mark.asyncio
async def test_enqueue_tolerates_empty_acceptance_body():
    def handler(request):
        return httpx.Response(204)

    job = CollectionJob(job_type="chronological_collection", source_id="FoodNYC")
    assert await make_client(handler).enqueue(job) is None
