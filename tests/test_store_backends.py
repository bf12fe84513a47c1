"""
Tests for the data store backends.

Covers:
  - SqlDataStore (via SQLite for test portability)
  - InMemoryDataStore procedure semantics
  - Store factory
  - Session URL translation
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from channels.base import RecordingDeliveryClient
from config.settings import QueueConfig
from database.models import (
    AgentProfileRow, ChannelRow, ConversationRow, MessageRow, QueueItemRow,
    RunLeaseRow, SendBatchRow, SendOutcomeRow, TemplateRow,
)
from database.session import create_engine_for, init_db, make_session_factory
from database.store import SqlDataStore, _aware
from job_queue.processor import OutboundQueueProcessor
from models.errors import ConversationNotFoundError, ProcedureError, VersionConflictError
from models.schemas import MessageRecord, SendOutcome, SendStatus


NOW = datetime(2024, 5, 6, 9, 0, 0, tzinfo=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Fixtures
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine_for(f"sqlite:///{tmp_path}/dispatch_test.db")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def sql_store(session_factory):
    return SqlDataStore(session_factory=session_factory, clock=lambda: NOW)


@pytest_asyncio.fixture
async def seeded(session_factory):
    """Channel, template and batch rows, plus two queue items (one due, one future)."""
    async with session_factory() as db:
        db.add(ChannelRow(id="ch-1", phone_number_id="1098", access_token="tok", segment="sales"))
        db.add(TemplateRow(id="tpl-1", name="payment_reminder", language="en_US",
                           components=[{"type": "BODY", "text": "Hi {{1}}"}]))
        db.add(SendBatchRow(id="batch-1", template_id="tpl-1", channel_id="ch-1"))
        db.add(QueueItemRow(id="q-due", batch_id="batch-1", recipient_phone="+15550001",
                            variables=["Ana"], status="pending",
                            next_attempt_at=NOW - timedelta(minutes=1),
                            created_at=NOW - timedelta(minutes=10)))
        db.add(QueueItemRow(id="q-later", batch_id="batch-1", recipient_phone="+15550002",
                            variables=["Bo"], status="retry_queued", attempt_count=1,
                            next_attempt_at=NOW + timedelta(minutes=5),
                            created_at=NOW - timedelta(minutes=20)))
        await db.commit()


async def fetch_row(session_factory, model, key):
    async with session_factory() as db:
        return await db.get(model, key)


# ──────────────────────────────────────────────────────────────
#  SqlDataStore: outbound queue
# ──────────────────────────────────────────────────────────────

class TestSqlQueueOperations:
    @pytest.mark.asyncio
    async def test_fetch_due_with_joined_context(self, sql_store, seeded):
        items = await sql_store.fetch_due_queue_items(NOW, 20)

        assert [i.id for i in items] == ["q-due"]
        item = items[0]
        assert item.template.name == "payment_reminder"
        assert item.channel.phone_number_id == "1098"
        assert item.channel.segment == "sales"
        assert item.variables == ["Ana"]
        assert item.next_attempt_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_fetch_respects_limit_and_order(self, sql_store, seeded):
        later = NOW + timedelta(minutes=10)
        items = await sql_store.fetch_due_queue_items(later, 1)
        assert [i.id for i in items] == ["q-later"]

    @pytest.mark.asyncio
    async def test_claim_is_compare_and_swap(self, sql_store, seeded, session_factory):
        assert await sql_store.claim_queue_item("q-due", 0, NOW) is True
        assert await sql_store.claim_queue_item("q-due", 0, NOW) is False

        row = await fetch_row(session_factory, QueueItemRow, "q-due")
        assert row.status == "processing"
        assert _aware(row.last_attempt_at) == NOW

    @pytest.mark.asyncio
    async def test_requeue_and_delete(self, sql_store, seeded, session_factory):
        await sql_store.claim_queue_item("q-due", 0, NOW)
        await sql_store.requeue_queue_item("q-due", 1, NOW + timedelta(seconds=60), last_error="[4] slow down")

        row = await fetch_row(session_factory, QueueItemRow, "q-due")
        assert row.status == "retry_queued"
        assert row.attempt_count == 1
        assert _aware(row.next_attempt_at) == NOW + timedelta(seconds=60)
        assert row.last_error == "[4] slow down"

        await sql_store.delete_queue_item("q-due")
        assert await fetch_row(session_factory, QueueItemRow, "q-due") is None

    @pytest.mark.asyncio
    async def test_reclaim_stale_processing(self, sql_store, seeded, session_factory):
        claimed_at = NOW - timedelta(minutes=1)
        await sql_store.claim_queue_item("q-due", 0, claimed_at)

        assert await sql_store.reclaim_stale_processing(claimed_at - timedelta(seconds=1), NOW) == 0
        assert await sql_store.reclaim_stale_processing(claimed_at + timedelta(seconds=1), NOW) == 1

        row = await fetch_row(session_factory, QueueItemRow, "q-due")
        assert row.status == "retry_queued"
        assert row.attempt_count == 0

    @pytest.mark.asyncio
    async def test_claim_checks_attempt_and_due_time(self, sql_store, seeded, session_factory):
        assert await sql_store.claim_queue_item("q-later", 0, NOW + timedelta(minutes=5)) is False
        assert await sql_store.claim_queue_item("q-later", 1, NOW) is False
        assert await sql_store.claim_queue_item("q-later", 1, NOW + timedelta(minutes=5)) is True

        row = await fetch_row(session_factory, QueueItemRow, "q-later")
        assert row.status == "processing"
        assert row.attempt_count == 1

    @pytest.mark.asyncio
    async def test_reclaim_clears_rows_with_recorded_outcome(self, sql_store, seeded, session_factory):
        claimed_at = NOW - timedelta(minutes=1)
        await sql_store.claim_queue_item("q-due", 0, claimed_at)
        await sql_store.upsert_send_outcome(SendOutcome(
            batch_id="batch-1", recipient_phone="+15550001",
            status=SendStatus.SENT, provider_message_id="wamid.1", attempts=1,
        ))

        assert await sql_store.reclaim_stale_processing(claimed_at + timedelta(seconds=1), NOW) == 1

        assert await fetch_row(session_factory, QueueItemRow, "q-due") is None
        later = await fetch_row(session_factory, QueueItemRow, "q-later")
        assert later.status == "retry_queued"

    @pytest.mark.asyncio
    async def test_upsert_send_outcome_keeps_one_row(self, sql_store, seeded, session_factory):
        first = SendOutcome(batch_id="batch-1", recipient_phone="+15550001",
                            status=SendStatus.FAILED, error="boom", attempts=1)
        second = SendOutcome(batch_id="batch-1", recipient_phone="+15550001",
                             status=SendStatus.SENT, provider_message_id="wamid.2", attempts=2)
        await sql_store.upsert_send_outcome(first)
        await sql_store.upsert_send_outcome(second)

        from sqlalchemy import select
        async with session_factory() as db:
            rows = (await db.execute(select(SendOutcomeRow))).scalars().all()
        assert len(rows) == 1
        assert rows[0].status == "sent"
        assert rows[0].provider_message_id == "wamid.2"
        assert rows[0].error is None

    @pytest.mark.asyncio
    async def test_rate_limit_flag_and_reset(self, sql_store, seeded, session_factory):
        await sql_store.mark_channel_rate_limited("ch-1", NOW)
        row = await fetch_row(session_factory, ChannelRow, "ch-1")
        assert row.rate_limited is True

        assert await sql_store.reset_channel_capacity() == 1
        row = await fetch_row(session_factory, ChannelRow, "ch-1")
        assert row.rate_limited is False
        assert row.rate_limited_at is None


# ──────────────────────────────────────────────────────────────
#  SqlDataStore: procedures on a dialect without them
# ──────────────────────────────────────────────────────────────

class TestSqlProcedures:
    @pytest.mark.asyncio
    async def test_resolve_creates_then_reuses(self, sql_store, seeded):
        first = await sql_store.resolve_or_create_conversation("+15550001", "ch-1", "sales")
        second = await sql_store.resolve_or_create_conversation("+15550001", "ch-1", "sales")
        assert first == second

    @pytest.mark.asyncio
    async def test_resolve_unknown_channel(self, sql_store, seeded):
        with pytest.raises(ProcedureError):
            await sql_store.resolve_or_create_conversation("+15550001", "ch-missing", "sales")

    @pytest.mark.asyncio
    async def test_insert_message_record(self, sql_store, seeded, session_factory):
        conversation_id = await sql_store.resolve_or_create_conversation("+15550001", "ch-1", "sales")
        message_id = await sql_store.insert_message_record(MessageRecord(
            conversation_id=conversation_id, template_name="payment_reminder",
            variables=["Ana"], provider_message_id="wamid.1",
        ))
        row = await fetch_row(session_factory, MessageRow, message_id)
        assert row.sender_type == "system"
        assert row.variables == ["Ana"]

    @pytest.mark.asyncio
    async def test_insert_message_unknown_conversation(self, sql_store, seeded):
        with pytest.raises(ProcedureError):
            await sql_store.insert_message_record(MessageRecord(conversation_id="nope"))

    @pytest.mark.asyncio
    async def test_assign_with_version(self, sql_store, session_factory):
        async with session_factory() as db:
            db.add(AgentProfileRow(id="agent-1", segment="sales"))
            db.add(ConversationRow(id="conv-1", segment="sales", version=3, created_at=NOW))
            db.add(ConversationRow(id="conv-closed", segment="sales", status="closed", created_at=NOW))
            await db.commit()

        with pytest.raises(VersionConflictError):
            await sql_store.assign_conversation("actor", "conv-1", "agent-1", "round-robin", 2)

        conversation = await sql_store.assign_conversation("actor", "conv-1", "agent-1", "round-robin", 3)
        assert conversation.assigned_agent_id == "agent-1"
        assert conversation.version == 4

        agent = await fetch_row(session_factory, AgentProfileRow, "agent-1")
        assert _aware(agent.last_chat_assigned_at) == NOW

        with pytest.raises(ConversationNotFoundError):
            await sql_store.assign_conversation("actor", "conv-closed", "agent-1", "round-robin", 0)

    @pytest.mark.asyncio
    async def test_unassigned_keyset_and_agent_order(self, sql_store, session_factory):
        async with session_factory() as db:
            for n in range(3):
                db.add(ConversationRow(id=f"conv-{n}", segment="sales", created_at=NOW + timedelta(seconds=n)))
            db.add(ConversationRow(id="conv-taken", segment="sales", assigned_agent_id="agent-old",
                                   created_at=NOW))
            db.add(AgentProfileRow(id="agent-old", segment="sales", last_chat_assigned_at=NOW - timedelta(days=1)))
            db.add(AgentProfileRow(id="agent-new", segment="sales"))
            db.add(AgentProfileRow(id="agent-off", segment="sales", present_today=False))
            await db.commit()

        first = await sql_store.fetch_unassigned_conversations("sales", None, 2)
        assert [c.id for c in first] == ["conv-0", "conv-1"]
        rest = await sql_store.fetch_unassigned_conversations("sales", (first[-1].created_at, first[-1].id), 2)
        assert [c.id for c in rest] == ["conv-2"]

        agents = await sql_store.fetch_eligible_agents("sales")
        assert [a.id for a in agents] == ["agent-new", "agent-old"]


# ──────────────────────────────────────────────────────────────
#  SqlDataStore: run lease (no advisory locks on SQLite)
# ──────────────────────────────────────────────────────────────

class TestSqlRunLease:
    @pytest.mark.asyncio
    async def test_second_acquisition_fails_while_held(self, sql_store, session_factory):
        async with sql_store.exclusive_run("assign") as first:
            async with sql_store.exclusive_run("assign") as second:
                assert first.acquired is True
                assert second.acquired is False

        assert await fetch_row(session_factory, RunLeaseRow, "assign") is None
        async with sql_store.exclusive_run("assign") as again:
            assert again.acquired is True

    @pytest.mark.asyncio
    async def test_expired_lease_taken_over(self, sql_store, session_factory):
        async with session_factory() as db:
            db.add(RunLeaseRow(lock_key="assign", holder="dead", expires_at=NOW - timedelta(seconds=5)))
            await db.commit()

        async with sql_store.exclusive_run("assign") as lease:
            assert lease.acquired is True
            assert lease.held


# ──────────────────────────────────────────────────────────────
#  Processor end to end on SQLite
# ──────────────────────────────────────────────────────────────

class TestProcessorOnSql:
    @pytest.mark.asyncio
    async def test_send_and_retry(self, sql_store, seeded, session_factory):
        from models.schemas import DeliveryResult
        client = RecordingDeliveryClient(script=[
            DeliveryResult(success=False, error_code=80007, error_message="throttled"),
        ])
        processor = OutboundQueueProcessor(sql_store, client, QueueConfig(), clock=lambda: NOW)

        summary = await processor.run_once()
        assert summary.retried == 1
        row = await fetch_row(session_factory, QueueItemRow, "q-due")
        assert row.attempt_count == 1
        assert _aware(row.next_attempt_at) == NOW + timedelta(seconds=60)
        channel = await fetch_row(session_factory, ChannelRow, "ch-1")
        assert channel.rate_limited is True

        later = NOW + timedelta(minutes=10)
        processor = OutboundQueueProcessor(sql_store, client, QueueConfig(), clock=lambda: later)
        summary = await processor.run_once()
        assert summary.sent == 2
        assert await fetch_row(session_factory, QueueItemRow, "q-due") is None

        from sqlalchemy import select
        async with session_factory() as db:
            outcomes = (await db.execute(select(SendOutcomeRow))).scalars().all()
            messages = (await db.execute(select(MessageRow))).scalars().all()
        assert {o.status for o in outcomes} == {"sent"}
        assert len(messages) == 2


# ──────────────────────────────────────────────────────────────
#  InMemoryDataStore procedures
# ──────────────────────────────────────────────────────────────

class TestInMemoryProcedures:
    @pytest.mark.asyncio
    async def test_resolve_rejects_unknown_channel(self, store):
        with pytest.raises(ProcedureError):
            await store.resolve_or_create_conversation("+1555", "missing", "sales")

    @pytest.mark.asyncio
    async def test_closed_conversation_not_reused(self, store):
        channel = store.add_channel("ch")
        store.add_conversation(conversation_id="old", status="closed", recipient_phone="+1555", channel_id=channel)
        new_id = await store.resolve_or_create_conversation("+1555", channel, "sales")
        assert new_id != "old"

    @pytest.mark.asyncio
    async def test_assign_errors(self, store):
        store.add_agent("a1")
        store.add_agent("gone", is_active=False)
        store.add_conversation(conversation_id="c1", version=2)

        with pytest.raises(VersionConflictError):
            await store.assign_conversation("actor", "c1", "a1", "round-robin", 1)
        with pytest.raises(ConversationNotFoundError):
            await store.assign_conversation("actor", "missing", "a1", "round-robin", 0)
        with pytest.raises(ProcedureError):
            await store.assign_conversation("actor", "c1", "gone", "round-robin", 2)
        assert store.conversations["c1"]["version"] == 2

    @pytest.mark.asyncio
    async def test_reset_channel_capacity(self, store, clock):
        store.add_channel("a")
        store.add_channel("b")
        await store.mark_channel_rate_limited("a", clock.now)
        await store.mark_channel_rate_limited("b", clock.now)

        assert await store.reset_channel_capacity("a") == 1
        assert store.channels["b"]["rate_limited"] is True
        assert await store.reset_channel_capacity() == 1


# ──────────────────────────────────────────────────────────────
#  Store Factory
# ──────────────────────────────────────────────────────────────

class TestStoreFactory:
    def test_create_memory_store(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDataStore
        store = create_store({"store_backend": "memory"})
        assert isinstance(store, InMemoryDataStore)

    def test_create_sql_store(self):
        from database.store_factory import create_store
        store = create_store({"store_backend": "sql", "lease_ttl_seconds": 30})
        assert isinstance(store, SqlDataStore)
        assert store.lease_ttl_seconds == 30

    def test_default_is_memory(self):
        from database.store_factory import create_store
        from database.store_memory import InMemoryDataStore
        assert isinstance(create_store({}), InMemoryDataStore)

    def test_unknown_backend_rejected(self):
        from database.store_factory import create_store
        with pytest.raises(ValueError):
            create_store({"store_backend": "file"})

    def test_singleton(self):
        from database.store_factory import create_store, get_store
        s1 = create_store({"store_backend": "memory"})
        s2 = get_store()
        assert s1 is s2


# ──────────────────────────────────────────────────────────────
#  Database Session: URLs and engine tuning
# ──────────────────────────────────────────────────────────────

class TestSessionUrlTranslation:
    def test_postgresql_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgresql://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_postgres_url(self):
        from database.session import _to_async_url
        assert _to_async_url("postgres://u:p@h/db") == "postgresql+asyncpg://u:p@h/db"

    def test_sqlite_url(self):
        from database.session import _to_async_url
        assert _to_async_url("sqlite:///./test.db") == "sqlite+aiosqlite:///./test.db"

    def test_already_async_url(self):
        from database.session import _to_async_url
        url = "postgresql+asyncpg://u:p@h/db"
        assert _to_async_url(url) == url

    def test_unsupported_url_rejected_without_credentials(self):
        from database.session import _to_async_url
        with pytest.raises(ValueError) as exc:
            _to_async_url("mysql://user:secret@h/db")
        assert "secret" not in str(exc.value)

    def test_postgres_engine_tuning_from_config(self):
        from config.settings import DatabaseConfig
        from database.session import _engine_kwargs
        kwargs = _engine_kwargs(
            "postgresql+asyncpg://u:p@h/db",
            DatabaseConfig(pool_size=3, max_overflow=1, statement_timeout_seconds=7.5),
        )
        assert kwargs["pool_size"] == 3
        assert kwargs["max_overflow"] == 1
        assert kwargs["connect_args"]["command_timeout"] == 7.5

    def test_sqlite_engine_has_no_pool_tuning(self):
        from config.settings import DatabaseConfig
        from database.session import _engine_kwargs
        kwargs = _engine_kwargs("sqlite+aiosqlite:///x.db", DatabaseConfig())
        assert "pool_size" not in kwargs
