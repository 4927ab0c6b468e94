import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from collector.core.errors import PersistenceError
from collector.core.store import MUTABLE_FIELDS, RequestUpsert, StatusFilter, apply_repeat, build_request
from db.models import EnrichmentRequestRequester, EnrichmentRequestRow, SourceSchedule
from models.request import STATUS_PENDING, EnrichmentRequest, RequestKey
from models.schedule import SourceScheduleConfig
from models.timeutil import ensure_utc

log = logging.getLogger(__name__)

# Domain field -> mapped attribute where the names differ
_ATTRIBUTE_NAMES = {"metadata": "metadata_"}

_DATETIME_FIELDS = {
    "cooldown_until",
    "last_enqueued_at",
    "last_attempt_at",
    "last_completed_at",
    "last_seen_at",
    "created_at",
}


def _to_request(row: EnrichmentRequestRow) -> EnrichmentRequest:
    return EnrichmentRequest(
        request_id=row.request_id,
        term=row.term,
        normalized_term=row.normalized_term,
        entity_kind=row.entity_kind,
        reason=row.reason,
        location_scope=row.location_scope,
        status=row.status,
        occurrence_count=row.occurrence_count,
        distinct_requester_count=row.distinct_requester_count,
        linked_entity_id=row.linked_entity_id,
        metadata=dict(row.metadata_ or {}),
        attempted_sources=list(row.attempted_sources or []),
        deferred_attempts=row.deferred_attempts or 0,
        attempt_count=row.attempt_count or 0,
        last_outcome=row.last_outcome,
        cooldown_until=ensure_utc(row.cooldown_until),
        last_enqueued_at=ensure_utc(row.last_enqueued_at),
        last_attempt_at=ensure_utc(row.last_attempt_at),
        last_completed_at=ensure_utc(row.last_completed_at),
        last_seen_at=ensure_utc(row.last_seen_at),
        created_at=ensure_utc(row.created_at),
        result_counts=dict(row.result_counts or {}),
        history=list(row.history or []),
        attempt_token=row.attempt_token,
        revision=row.revision or 0,
    )


def _write_request(row: EnrichmentRequestRow, request: EnrichmentRequest) -> None:
    row.term = request.term
    row.normalized_term = request.normalized_term
    row.entity_kind = request.entity_kind
    row.reason = request.reason
    row.location_scope = request.location_scope
    row.status = request.status
    row.occurrence_count = request.occurrence_count
    row.distinct_requester_count = request.distinct_requester_count
    row.linked_entity_id = request.linked_entity_id
    row.metadata_ = dict(request.metadata)
    row.attempted_sources = list(request.attempted_sources)
    row.deferred_attempts = request.deferred_attempts
    row.attempt_count = request.attempt_count
    row.last_outcome = request.last_outcome
    row.cooldown_until = ensure_utc(request.cooldown_until)
    row.last_enqueued_at = ensure_utc(request.last_enqueued_at)
    row.last_attempt_at = ensure_utc(request.last_attempt_at)
    row.last_completed_at = ensure_utc(request.last_completed_at)
    row.last_seen_at = ensure_utc(request.last_seen_at)
    row.created_at = ensure_utc(request.created_at)
    row.result_counts = dict(request.result_counts)
    row.history = list(request.history)
    row.attempt_token = request.attempt_token
    row.revision = request.revision


def _write_repeat(row: EnrichmentRequestRow, request: EnrichmentRequest) -> None:
    # only the columns a repeat sighting changes; status and ledger fields stay with the ledger
    row.occurrence_count = request.occurrence_count
    row.last_seen_at = ensure_utc(request.last_seen_at)
    row.metadata_ = dict(request.metadata)
    row.result_counts = dict(request.result_counts)
    row.linked_entity_id = request.linked_entity_id
    row.revision = EnrichmentRequestRow.revision + 1


def _column_values(changes: Mapping[str, Any]) -> Dict[Any, Any]:
    unknown = set(changes) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported ledger fields: {sorted(unknown)}")
    values: Dict[Any, Any] = {}
    for name, value in changes.items():
        if name in _DATETIME_FIELDS:
            value = ensure_utc(value)
        values[getattr(EnrichmentRequestRow, _ATTRIBUTE_NAMES.get(name, name))] = value
    return values


class SqlRequestStore:
    """
    Request ledger backed by SQLAlchemy.
    Conditional status changes are single UPDATE statements; rowcount decides the winner.
    """

    def __init__(self, session_factory: async_sessionmaker, upsert_attempts: int = 2):
        self.session_factory = session_factory
        self.upsert_attempts = max(upsert_attempts, 1)

    async def _find_row(self, session: AsyncSession, key: RequestKey) -> Optional[EnrichmentRequestRow]:
        stmt = select(EnrichmentRequestRow).where(
            EnrichmentRequestRow.reason == key.reason,
            EnrichmentRequestRow.entity_kind == key.entity_kind,
            EnrichmentRequestRow.normalized_term == key.normalized_term,
            EnrichmentRequestRow.location_scope == key.location_scope,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _touch_requester(
        self, session: AsyncSession, request_id: str, requester_id: str, observed_at: datetime
    ) -> None:
        existing = await session.get(EnrichmentRequestRequester, (request_id, requester_id))
        if existing is None:
            session.add(
                EnrichmentRequestRequester(
                    request_id=request_id,
                    requester_id=requester_id,
                    first_seen_at=observed_at,
                    last_seen_at=observed_at,
                )
            )
        elif ensure_utc(existing.last_seen_at) < observed_at:
            existing.last_seen_at = observed_at
        await session.flush()

    async def _count_requesters(self, session: AsyncSession, request_id: str) -> int:
        stmt = select(func.count()).select_from(EnrichmentRequestRequester).where(
            EnrichmentRequestRequester.request_id == request_id
        )
        return int((await session.execute(stmt)).scalar_one())

    async def _upsert_once(self, upserts: Sequence[RequestUpsert], observed_at: datetime) -> List[EnrichmentRequest]:
        saved: List[EnrichmentRequest] = []
        async with self.session_factory() as session:
            async with session.begin():
                for upsert in upserts:
                    row = await self._find_row(session, upsert.key)
                    if row is None:
                        request = build_request(upsert, observed_at)
                        row = EnrichmentRequestRow(request_id=request.request_id)
                        session.add(row)
                        _write_request(row, request)
                    else:
                        request = _to_request(row)
                        apply_repeat(request, upsert, observed_at)
                        _write_repeat(row, request)
                    await session.flush()

                    if upsert.requester_id:
                        await self._touch_requester(session, request.request_id, upsert.requester_id, observed_at)
                    requesters = await self._count_requesters(session, request.request_id)
                    row.distinct_requester_count = min(requesters, row.occurrence_count)
                    request.distinct_requester_count = row.distinct_requester_count
                    saved.append(request)
        return saved

    async def upsert_batch(
        self, upserts: Sequence[RequestUpsert], *, observed_at: datetime
    ) -> List[EnrichmentRequest]:
        observed_at = ensure_utc(observed_at)
        for attempt in range(1, self.upsert_attempts + 1):
            try:
                return await self._upsert_once(upserts, observed_at)
            except IntegrityError as e:
                # A concurrent batch inserted one of our keys first; the retry sees it as a repeat.
                log.warning(f"Upsert conflict on attempt {attempt}: {e.orig}")
                if attempt == self.upsert_attempts:
                    raise PersistenceError("Request upsert kept conflicting", operation="upsert_batch") from e
            except SQLAlchemyError as e:
                raise PersistenceError(f"Request upsert failed: {e}", operation="upsert_batch") from e
        return []

    async def get(self, request_id: str) -> Optional[EnrichmentRequest]:
        async with self.session_factory() as session:
            row = await session.get(EnrichmentRequestRow, request_id)
            return _to_request(row) if row else None

    async def find_by_key(self, key: RequestKey) -> Optional[EnrichmentRequest]:
        async with self.session_factory() as session:
            row = await self._find_row(session, key)
            return _to_request(row) if row else None

    async def update(
        self,
        request_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: StatusFilter = None,
        cooldown_clear_at: Optional[datetime] = None,
        expected_token: Optional[str] = None,
        expected_revision: Optional[int] = None,
    ) -> bool:
        values = _column_values(changes)
        values[EnrichmentRequestRow.revision] = EnrichmentRequestRow.revision + 1
        stmt = update(EnrichmentRequestRow).where(EnrichmentRequestRow.request_id == request_id)
        if expected_status is not None:
            expected = [expected_status] if isinstance(expected_status, str) else list(expected_status)
            stmt = stmt.where(EnrichmentRequestRow.status.in_(expected))
        if cooldown_clear_at is not None:
            stmt = stmt.where(
                or_(
                    EnrichmentRequestRow.cooldown_until.is_(None),
                    EnrichmentRequestRow.cooldown_until <= ensure_utc(cooldown_clear_at),
                )
            )
        if expected_token is not None:
            stmt = stmt.where(EnrichmentRequestRow.attempt_token == expected_token)
        if expected_revision is not None:
            stmt = stmt.where(EnrichmentRequestRow.revision == expected_revision)
        stmt = stmt.values(values).execution_options(synchronize_session=False)

        try:
            async with self.session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Request update failed: {e}", operation="update", request_id=request_id
            ) from e
        return result.rowcount == 1

    async def list_backlog(self, limit: int, now: datetime) -> List[EnrichmentRequest]:
        now = ensure_utc(now)
        stmt = (
            select(EnrichmentRequestRow)
            .where(
                EnrichmentRequestRow.status == STATUS_PENDING,
                or_(EnrichmentRequestRow.cooldown_until.is_(None), EnrichmentRequestRow.cooldown_until <= now),
            )
            .order_by(EnrichmentRequestRow.occurrence_count.desc(), EnrichmentRequestRow.last_seen_at.asc())
            .limit(max(limit, 0))
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_to_request(row) for row in result.scalars().all()]

    async def list_stale(self, statuses: Iterable[str], older_than: datetime) -> List[EnrichmentRequest]:
        since = func.coalesce(
            EnrichmentRequestRow.last_enqueued_at,
            EnrichmentRequestRow.last_attempt_at,
            EnrichmentRequestRow.last_seen_at,
        )
        stmt = select(EnrichmentRequestRow).where(
            EnrichmentRequestRow.status.in_(list(statuses)),
            since < ensure_utc(older_than),
        )
        async with self.session_factory() as session:
            result = await session.execute(stmt)
            return [_to_request(row) for row in result.scalars().all()]

    async def prune_requesters(self, cutoff: datetime) -> int:
        cutoff = ensure_utc(cutoff)
        async with self.session_factory() as session:
            async with session.begin():
                affected = (
                    await session.execute(
                        select(EnrichmentRequestRequester.request_id)
                        .where(EnrichmentRequestRequester.last_seen_at < cutoff)
                        .distinct()
                    )
                ).scalars().all()
                if not affected:
                    return 0

                result = await session.execute(
                    delete(EnrichmentRequestRequester).where(EnrichmentRequestRequester.last_seen_at < cutoff)
                )
                for request_id in affected:
                    row = await session.get(EnrichmentRequestRow, request_id)
                    if row is None:
                        continue
                    remaining = await self._count_requesters(session, request_id)
                    row.distinct_requester_count = min(remaining, row.occurrence_count)
                return result.rowcount or 0


class SqlScheduleStore:
    """
    Per-source schedule rows; one row per tracked source.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @staticmethod
    def _to_config(row: SourceSchedule) -> SourceScheduleConfig:
        return SourceScheduleConfig(
            source_id=row.source_id,
            average_items_per_day=row.average_items_per_day,
            safe_interval_days=row.safe_interval_days,
            last_calculated_at=ensure_utc(row.last_calculated_at),
            next_collection_due_at=ensure_utc(row.next_collection_due_at),
            consecutive_failures=row.consecutive_failures or 0,
            retry_not_before=ensure_utc(row.retry_not_before),
            last_dispatched_at=ensure_utc(row.last_dispatched_at),
            awaiting_first_dispatch=bool(row.awaiting_first_dispatch),
        )

    async def get(self, source_id: str) -> Optional[SourceScheduleConfig]:
        async with self.session_factory() as session:
            row = await session.get(SourceSchedule, source_id)
            return self._to_config(row) if row else None

    async def save(self, config: SourceScheduleConfig) -> None:
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    row = await session.get(SourceSchedule, config.source_id)
                    if row is None:
                        row = SourceSchedule(source_id=config.source_id)
                        session.add(row)
                    row.average_items_per_day = config.average_items_per_day
                    row.safe_interval_days = config.safe_interval_days
                    row.last_calculated_at = ensure_utc(config.last_calculated_at)
                    row.next_collection_due_at = ensure_utc(config.next_collection_due_at)
                    row.consecutive_failures = config.consecutive_failures
                    row.retry_not_before = ensure_utc(config.retry_not_before)
                    row.last_dispatched_at = ensure_utc(config.last_dispatched_at)
                    row.awaiting_first_dispatch = config.awaiting_first_dispatch
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Schedule save failed: {e}", operation="save", source_id=config.source_id
            ) from e

    async def list_all(self) -> List[SourceScheduleConfig]:
        async with self.session_factory() as session:
            result = await session.execute(select(SourceSchedule).order_by(SourceSchedule.source_id))
            return [self._to_config(row) for row in result.scalars().all()]
