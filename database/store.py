"""
SqlDataStore — Dispatch queries for PostgreSQL and SQLite.

Queue, outcome and roster access is plain ORM and runs on every dialect.

On PostgreSQL the conversation/message/assignment procedures are called by
name and their errors mapped by SQLSTATE:
  - 40001 or a "version" message → VersionConflictError
  - P0002                        → ConversationNotFoundError
  - class 08 / connection loss   → DataStoreUnavailableError
  - anything else                → ProcedureError

Other dialects have no stored procedures, so the same rules are applied
with conditional updates (development and tests).

Run locks:
  - PostgreSQL: pg_try_advisory_xact_lock(hashtext(key)) in a dedicated
    transaction, released when that transaction ends
  - elsewhere:  a run_leases row with TTL, renewed by a heartbeat task
"""
from __future__ import annotations

import asyncio
import contextlib
import uuid
import structlog
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from sqlalchemy import JSON, and_, delete, func, literal, or_, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    AgentProfileRow, ChannelRow, ConversationRow, MessageRow,
    QueueItemRow, RunLeaseRow, SendOutcomeRow,
)
from database.session import get_session_factory, session_scope
from database.store_base import DataStore, RunLease, ScanCursor, keep_lease_alive
from models.errors import (
    ConversationNotFoundError, DataStoreError, DataStoreUnavailableError,
    ProcedureError, VersionConflictError,
)
from models.schemas import (
    AgentProfile, ChannelCredentials, Conversation, ConversationStatus,
    MessageRecord, QueueItem, QueueStatus, SendOutcome, TemplateDefinition,
)

logger = structlog.get_logger()

_CLAIMABLE = (QueueStatus.PENDING.value, QueueStatus.RETRY_QUEUED.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _sqlstate(error: DBAPIError) -> Optional[str]:
    orig = error.orig
    return getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)


class SqlDataStore(DataStore):
    """
    Persistent data store backed by any SQLAlchemy-supported database.
    Procedures run natively on PostgreSQL and as ORM updates on SQLite.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        lease_ttl_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._session_factory = session_factory
        self.lease_ttl_seconds = lease_ttl_seconds
        self._clock = clock

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            self._session_factory = get_session_factory()
        return self._session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Transactional scope; connection failures surface as DataStoreUnavailableError."""
        try:
            async with session_scope(self._factory()) as session:
                yield session
        except (OperationalError, InterfaceError, OSError) as e:
            raise DataStoreUnavailableError(str(e)) from e
        except SQLAlchemyError as e:
            raise DataStoreError(str(e)) from e

    @staticmethod
    def _is_postgres(session: AsyncSession) -> bool:
        return session.get_bind().dialect.name == "postgresql"

    # ── Outbound queue ─────────────────────────────────────

    async def fetch_due_queue_items(self, now: datetime, limit: int) -> list[QueueItem]:
        async with self._session() as db:
            stmt = (
                select(QueueItemRow)
                .where(and_(
                    QueueItemRow.status.in_(_CLAIMABLE),
                    QueueItemRow.next_attempt_at <= now,
                ))
                .order_by(QueueItemRow.created_at, QueueItemRow.id)
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_item(r) for r in result.scalars().all()]

    async def claim_queue_item(self, item_id: str, expected_attempt: int, now: datetime) -> bool:
        async with self._session() as db:
            stmt = (
                update(QueueItemRow)
                .where(and_(
                    QueueItemRow.id == item_id,
                    QueueItemRow.status.in_(_CLAIMABLE),
                    QueueItemRow.attempt_count == expected_attempt,
                    QueueItemRow.next_attempt_at <= now,
                ))
                .values(status=QueueStatus.PROCESSING.value, last_attempt_at=now)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def requeue_queue_item(self, item_id: str, attempt_count: int,
                                 next_attempt_at: datetime, last_error: str = "") -> None:
        async with self._session() as db:
            await db.execute(
                update(QueueItemRow)
                .where(QueueItemRow.id == item_id)
                .values(
                    status=QueueStatus.RETRY_QUEUED.value,
                    attempt_count=attempt_count,
                    next_attempt_at=next_attempt_at,
                    last_error=last_error or None,
                )
            )

    async def delete_queue_item(self, item_id: str) -> None:
        async with self._session() as db:
            await db.execute(delete(QueueItemRow).where(QueueItemRow.id == item_id))

    async def reclaim_stale_processing(self, older_than: datetime, now: datetime) -> int:
        stale = and_(
            QueueItemRow.status == QueueStatus.PROCESSING.value,
            or_(
                QueueItemRow.last_attempt_at.is_(None),
                QueueItemRow.last_attempt_at < older_than,
            ),
        )
        recorded = (
            select(SendOutcomeRow.id)
            .where(and_(
                SendOutcomeRow.batch_id == QueueItemRow.batch_id,
                SendOutcomeRow.recipient_phone == QueueItemRow.recipient_phone,
            ))
            .correlate(QueueItemRow)
            .exists()
        )
        async with self._session() as db:
            # Outcome already recorded; only the delete was lost
            cleared = await db.execute(
                delete(QueueItemRow).where(and_(stale, recorded)).execution_options(synchronize_session=False)
            )
            requeued = await db.execute(
                update(QueueItemRow)
                .where(stale)
                .values(status=QueueStatus.RETRY_QUEUED.value, next_attempt_at=now)
                .execution_options(synchronize_session=False)
            )
            return (cleared.rowcount or 0) + (requeued.rowcount or 0)

    async def upsert_send_outcome(self, outcome: SendOutcome) -> None:
        values = {
            "status": outcome.status.value,
            "provider_message_id": outcome.provider_message_id,
            "error": outcome.error,
            "warning": outcome.warning,
            "attempts": outcome.attempts,
            "conversation_id": outcome.conversation_id,
            "updated_at": self._clock(),
        }
        async with self._session() as db:
            stmt = select(SendOutcomeRow).where(and_(
                SendOutcomeRow.batch_id == outcome.batch_id,
                SendOutcomeRow.recipient_phone == outcome.recipient_phone,
            ))
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row:
                for k, v in values.items():
                    setattr(row, k, v)
            else:
                db.add(SendOutcomeRow(
                    batch_id=outcome.batch_id,
                    recipient_phone=outcome.recipient_phone,
                    **values,
                ))

    async def mark_channel_rate_limited(self, channel_id: str, at: datetime) -> None:
        async with self._session() as db:
            await db.execute(
                update(ChannelRow)
                .where(ChannelRow.id == channel_id)
                .values(rate_limited=True, rate_limited_at=at)
            )

    async def reset_channel_capacity(self, channel_id: Optional[str] = None) -> int:
        async with self._session() as db:
            stmt = update(ChannelRow).where(ChannelRow.rate_limited.is_(True))
            if channel_id:
                stmt = stmt.where(ChannelRow.id == channel_id)
            result = await db.execute(stmt.values(rate_limited=False, rate_limited_at=None))
            return result.rowcount or 0

    # ── Procedures ─────────────────────────────────────────

    async def resolve_or_create_conversation(self, recipient_phone: str, channel_id: str,
                                             segment: Optional[str]) -> str:
        name = "resolve_or_create_conversation"
        async with self._session() as db:
            if self._is_postgres(db):
                stmt = select(func.resolve_or_create_conversation(recipient_phone, channel_id, segment))
                return str(await self._call(db, name, stmt))

            channel = await db.get(ChannelRow, channel_id)
            if not recipient_phone or channel is None:
                raise ProcedureError(name, "invalid recipient or channel")
            stmt = (
                select(ConversationRow)
                .where(and_(
                    ConversationRow.recipient_phone == recipient_phone,
                    ConversationRow.channel_id == channel_id,
                    ConversationRow.status == ConversationStatus.OPEN.value,
                ))
                .limit(1)
            )
            row = (await db.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = ConversationRow(
                    recipient_phone=recipient_phone, channel_id=channel_id,
                    segment=segment, status=ConversationStatus.OPEN.value, version=0,
                )
                db.add(row)
                await db.flush()
            return row.id

    async def insert_message_record(self, record: MessageRecord) -> str:
        name = "insert_message_record"
        async with self._session() as db:
            if self._is_postgres(db):
                stmt = select(func.insert_message_record(
                    record.conversation_id, record.content_type, record.sender_type,
                    record.template_name, literal(record.variables, type_=JSON),
                    record.media_url, record.provider_message_id, record.sender_override,
                ))
                return str(await self._call(db, name, stmt))

            if await db.get(ConversationRow, record.conversation_id) is None:
                raise ProcedureError(name, f"unknown conversation {record.conversation_id}")
            row = MessageRow(**record.model_dump())
            db.add(row)
            await db.flush()
            return row.id

    async def assign_conversation(self, actor_id: str, conversation_id: str, agent_id: str,
                                  reason: str, expected_version: int) -> Conversation:
        name = "assign_conversation"
        async with self._session() as db:
            if self._is_postgres(db):
                stmt = select(func.assign_conversation(
                    actor_id, conversation_id, agent_id, reason, expected_version,
                ))
                await self._call(db, name, stmt, conversation_id, expected_version)
                row = await db.get(ConversationRow, conversation_id, populate_existing=True)
                return self._row_to_conversation(row)

            agent = await db.get(AgentProfileRow, agent_id)
            now = self._clock()
            result = await db.execute(
                update(ConversationRow)
                .where(and_(
                    ConversationRow.id == conversation_id,
                    ConversationRow.status == ConversationStatus.OPEN.value,
                    ConversationRow.version == expected_version,
                ))
                .values(
                    assigned_agent_id=agent_id,
                    version=ConversationRow.version + 1,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                row = await db.get(ConversationRow, conversation_id)
                if row is None or row.status != ConversationStatus.OPEN.value:
                    raise ConversationNotFoundError(conversation_id)
                raise VersionConflictError(conversation_id, expected_version)
            if agent is None or not agent.is_active:
                raise ProcedureError(name, f"agent {agent_id} cannot take conversations")
            agent.last_chat_assigned_at = now

            row = await db.get(ConversationRow, conversation_id, populate_existing=True)
            return self._row_to_conversation(row)

    async def _call(self, db: AsyncSession, name: str, stmt,
                    conversation_id: str = "", expected_version: int = 0):
        try:
            return (await db.execute(stmt)).scalar()
        except DBAPIError as e:
            state = _sqlstate(e) or ""
            message = str(e.orig) if e.orig is not None else str(e)
            logger.warning("procedure_failed", procedure=name, sqlstate=state, error=message)
            if e.connection_invalidated or state.startswith("08"):
                raise DataStoreUnavailableError(message) from e
            if state == "40001" or "version" in message.lower():
                raise VersionConflictError(conversation_id, expected_version) from e
            if state == "P0002":
                raise ConversationNotFoundError(conversation_id) from e
            raise ProcedureError(name, message) from e

    # ── Assignment reads ───────────────────────────────────

    async def fetch_unassigned_conversations(self, segment: Optional[str],
                                             after: Optional[ScanCursor],
                                             limit: int) -> list[Conversation]:
        async with self._session() as db:
            stmt = select(ConversationRow).where(and_(
                ConversationRow.status == ConversationStatus.OPEN.value,
                ConversationRow.assigned_agent_id.is_(None),
            ))
            if segment is not None:
                stmt = stmt.where(ConversationRow.segment == segment)
            if after is not None:
                created_at, last_id = after
                stmt = stmt.where(or_(
                    ConversationRow.created_at > created_at,
                    and_(ConversationRow.created_at == created_at, ConversationRow.id > last_id),
                ))
            stmt = stmt.order_by(ConversationRow.created_at, ConversationRow.id).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_conversation(r) for r in result.scalars().all()]

    async def fetch_eligible_agents(self, segment: str) -> list[AgentProfile]:
        async with self._session() as db:
            stmt = (
                select(AgentProfileRow)
                .where(and_(
                    AgentProfileRow.segment == segment,
                    AgentProfileRow.is_active.is_(True),
                    AgentProfileRow.present_today.is_(True),
                ))
                .order_by(
                    AgentProfileRow.last_chat_assigned_at.is_not(None),
                    AgentProfileRow.last_chat_assigned_at,
                    AgentProfileRow.id,
                )
            )
            result = await db.execute(stmt)
            return [
                AgentProfile(
                    id=r.id, segment=r.segment, is_active=r.is_active,
                    present_today=r.present_today,
                    last_chat_assigned_at=_aware(r.last_chat_assigned_at),
                )
                for r in result.scalars().all()
            ]

    # ── Mutual exclusion ───────────────────────────────────

    @asynccontextmanager
    async def exclusive_run(self, lock_key: str) -> AsyncIterator[RunLease]:
        factory = self._factory()
        async with factory() as session:
            if self._is_postgres(session):
                async with session.begin():
                    stmt = select(func.pg_try_advisory_xact_lock(func.hashtext(lock_key)))
                    try:
                        acquired = bool((await session.execute(stmt)).scalar())
                    except (OperationalError, InterfaceError, OSError) as e:
                        raise DataStoreUnavailableError(str(e)) from e
                    if not acquired:
                        logger.info("run_lock_unavailable", lock_key=lock_key)
                    yield RunLease(lock_key, acquired)
                return

        async with self._lease(lock_key) as lease:
            yield lease

    @asynccontextmanager
    async def _lease(self, lock_key: str) -> AsyncIterator[RunLease]:
        holder = uuid.uuid4().hex
        ttl = timedelta(seconds=self.lease_ttl_seconds)

        try:
            acquired = await self._take_lease(lock_key, holder, ttl)
        except DataStoreError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            acquired = False
        if not acquired:
            logger.info("run_lock_unavailable", lock_key=lock_key)
            yield RunLease(lock_key, acquired=False)
            return

        async def renew() -> bool:
            async with self._session() as db:
                result = await db.execute(
                    update(RunLeaseRow)
                    .where(and_(RunLeaseRow.lock_key == lock_key, RunLeaseRow.holder == holder))
                    .values(expires_at=self._clock() + ttl)
                )
                return result.rowcount == 1

        lease = RunLease(lock_key, acquired=True)
        heartbeat = asyncio.create_task(
            keep_lease_alive(renew, max(self.lease_ttl_seconds / 3, 0.01), lease)
        )
        try:
            yield lease
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            async with self._session() as db:
                await db.execute(
                    delete(RunLeaseRow)
                    .where(and_(RunLeaseRow.lock_key == lock_key, RunLeaseRow.holder == holder))
                )

    async def _take_lease(self, lock_key: str, holder: str, ttl: timedelta) -> bool:
        now = self._clock()
        async with self._session() as db:
            row = await db.get(RunLeaseRow, lock_key)
            if row is None:
                db.add(RunLeaseRow(lock_key=lock_key, holder=holder, expires_at=now + ttl))
                return True
            if _aware(row.expires_at) > now:
                return False
            # Expired lease: take over only if nobody renewed it meanwhile
            result = await db.execute(
                update(RunLeaseRow)
                .where(and_(
                    RunLeaseRow.lock_key == lock_key,
                    RunLeaseRow.holder == row.holder,
                    RunLeaseRow.expires_at == row.expires_at,
                ))
                .values(holder=holder, expires_at=now + ttl)
            )
            return result.rowcount == 1

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_item(row: QueueItemRow) -> QueueItem:
        batch = row.batch
        template = batch.template if batch else None
        channel = batch.channel if batch else None
        return QueueItem(
            id=row.id, batch_id=row.batch_id,
            recipient_phone=row.recipient_phone,
            variables=row.variables, media_url=row.media_url,
            attempt_count=row.attempt_count, status=row.status,
            next_attempt_at=_aware(row.next_attempt_at),
            last_attempt_at=_aware(row.last_attempt_at),
            created_at=_aware(row.created_at),
            template=TemplateDefinition(
                name=template.name, language=template.language,
                components=template.components or [],
            ) if template else None,
            channel=ChannelCredentials(
                id=channel.id, phone_number_id=channel.phone_number_id or "",
                access_token=channel.access_token or "", segment=channel.segment,
                rate_limited=bool(channel.rate_limited),
            ) if channel else None,
        )

    @staticmethod
    def _row_to_conversation(row: ConversationRow) -> Conversation:
        return Conversation(
            id=row.id, status=row.status,
            assigned_agent_id=row.assigned_agent_id, segment=row.segment,
            version=row.version, recipient_phone=row.recipient_phone or "",
            channel_id=row.channel_id, created_at=_aware(row.created_at),
        )
