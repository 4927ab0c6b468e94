"""
HTTP Queue Client
=================

Talks to the queue metrics service that fronts the downstream
fetch/extraction pipeline:

- ``GET  {base_url}/queues/depth`` returns waiting/active/delayed counts
- ``POST {base_url}/jobs`` enqueues a collection job

Transient failures (transport errors, 5xx, 429) are retried with tenacity
before surfacing as :class:`QueueProbeError`.
"""

from typing import Optional

import httpx
from pydantic import ValidationError
from tenacity import AsyncRetrying, RetryError, retry_if_exception, stop_after_attempt, wait_exponential

from collector.adapters.schemas import JobAccepted, JobCreate, QueueDepthRead
from collector.core.config import Config
from collector.core.errors import QueueProbeError
from collector.utils.logger import get_logger
from models.queue import CollectionJob, QueueDepthSnapshot

log = get_logger(__name__)

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return False


class HttpQueueClient:
    """Async client for queue depth probes and job submission."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        client: Optional[httpx.AsyncClient] = None,
    ):
        section = Config.get("queue", default={}) or {}
        self.base_url = (base_url or section.get("base_url") or "http://127.0.0.1:8100").rstrip("/")
        self.timeout = float(timeout if timeout is not None else section.get("timeout_seconds", 10))
        self.max_attempts = max(int(max_attempts), 1)
        self.backoff_seconds = backoff_seconds
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=self.base_url, timeout=httpx.Timeout(self.timeout))
        log.info(f"HttpQueueClient initialized for {self.base_url}, timeout={self.timeout}s")

    async def __aenter__(self) -> "HttpQueueClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self.client.request(method, url, **kwargs)
                    response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            raise QueueProbeError(
                f"{method} {path} failed with status {exc.response.status_code}",
                endpoint=url,
                status_code=exc.response.status_code,
                phase="queue",
            ) from exc
        except (httpx.HTTPError, RetryError) as exc:
            raise QueueProbeError(f"{method} {path} failed: {exc}", endpoint=url, phase="queue") from exc

    async def get_queue_depth(self) -> QueueDepthSnapshot:
        response = await self._request("GET", "/queues/depth")
        try:
            payload = QueueDepthRead.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise QueueProbeError(
                f"Malformed queue depth payload: {exc}", endpoint=str(response.url), phase="queue"
            ) from exc
        snapshot = payload.to_snapshot()
        log.debug(f"Queue depth: {snapshot.to_dict()}")
        return snapshot

    async def enqueue(self, job: CollectionJob) -> Optional[str]:
        body = JobCreate(job_type=job.job_type, source_id=job.source_id, payload=job.payload)
        response = await self._request("POST", "/jobs", json=body.model_dump())
        try:
            accepted = JobAccepted.model_validate(response.json())
        except (ValueError, ValidationError):
            accepted = JobAccepted()
        log.info(f"Enqueued {job.job_type} job for {job.source_id} (job_id={accepted.job_id})")
        return accepted.job_id


__all__ = ["HttpQueueClient"]
