"""
InMemoryDataStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlDataStore
  - Reference behaviour for the database-side procedures
    (conversation resolution, message insert, versioned assignment)
  - TTL lease with heartbeat standing in for the advisory lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import contextlib
import uuid
import structlog
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

from database.store_base import DataStore, RunLease, ScanCursor, keep_lease_alive
from models.errors import (
    ConversationNotFoundError, ProcedureError, VersionConflictError,
)
from models.schemas import (
    AgentProfile, ChannelCredentials, Conversation, ConversationStatus,
    MessageRecord, QueueItem, QueueStatus, SendOutcome, TemplateDefinition,
)

logger = structlog.get_logger()

_CLAIMABLE = {QueueStatus.PENDING.value, QueueStatus.RETRY_QUEUED.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


class InMemoryDataStore(DataStore):
    """
    Full-featured in-memory store with the same interface as SqlDataStore.
    Rows are kept as plain dicts and returned as pydantic models.
    """

    def __init__(self, lease_ttl_seconds: float = 60.0,
                 clock: Callable[[], datetime] = _utcnow):
        self._clock = clock
        self.lease_ttl_seconds = lease_ttl_seconds

        self.channels: dict[str, dict] = {}          # id → channel dict
        self.templates: dict[str, dict] = {}         # id → template dict
        self.batches: dict[str, dict] = {}           # id → {template_id, channel_id}
        self.queue: dict[str, dict] = {}             # id → queue row
        self.outcomes: dict[tuple[str, str], dict] = {}  # (batch_id, phone) → outcome
        self.conversations: dict[str, dict] = {}     # id → conversation dict
        self.agents: dict[str, dict] = {}            # id → agent dict
        self.messages: dict[str, list[dict]] = defaultdict(list)  # conv_id → [msg dicts]
        self.assignment_log: list[dict] = []

        self._leases: dict[str, tuple[str, datetime]] = {}  # key → (holder, expires_at)
        self._failures: dict[str, list[Exception]] = defaultdict(list)
        logger.info("inmemory_store_initialized")

    # ── Seeding / inspection helpers ──────────────────────

    def add_channel(self, channel_id: str = None, phone_number_id: str = "1000",
                    access_token: str = "token", segment: Optional[str] = "default") -> str:
        channel_id = channel_id or _new_id()
        self.channels[channel_id] = {
            "id": channel_id, "phone_number_id": phone_number_id,
            "access_token": access_token, "segment": segment,
            "rate_limited": False, "rate_limited_at": None,
        }
        return channel_id

    def add_template(self, name: str, components: list[dict] = None,
                     language: str = "en_US", template_id: str = None) -> str:
        template_id = template_id or _new_id()
        self.templates[template_id] = {
            "id": template_id, "name": name, "language": language,
            "components": components or [],
        }
        return template_id

    def add_batch(self, template_id: Optional[str], channel_id: Optional[str],
                  batch_id: str = None) -> str:
        batch_id = batch_id or _new_id()
        self.batches[batch_id] = {"id": batch_id, "template_id": template_id, "channel_id": channel_id}
        return batch_id

    def enqueue(self, batch_id: str, recipient_phone: str, variables: Any = None,
                media_url: Optional[str] = None, attempt_count: int = 0,
                status: str = "pending", next_attempt_at: datetime = None,
                created_at: datetime = None, item_id: str = None,
                last_attempt_at: datetime = None) -> str:
        now = self._clock()
        item_id = item_id or _new_id()
        self.queue[item_id] = {
            "id": item_id, "batch_id": batch_id, "recipient_phone": recipient_phone,
            "variables": variables, "media_url": media_url,
            "attempt_count": attempt_count, "status": status,
            "next_attempt_at": next_attempt_at or now,
            "last_attempt_at": last_attempt_at, "last_error": None,
            "created_at": created_at or now,
        }
        return item_id

    def add_conversation(self, segment: Optional[str] = "default", conversation_id: str = None,
                         status: str = "open", assigned_agent_id: Optional[str] = None,
                         version: int = 0, created_at: datetime = None,
                         recipient_phone: str = "", channel_id: Optional[str] = None) -> str:
        conversation_id = conversation_id or _new_id()
        now = self._clock()
        self.conversations[conversation_id] = {
            "id": conversation_id, "status": status,
            "assigned_agent_id": assigned_agent_id, "segment": segment,
            "version": version, "recipient_phone": recipient_phone,
            "channel_id": channel_id, "created_at": created_at or now,
            "updated_at": now,
        }
        return conversation_id

    def add_agent(self, agent_id: str = None, segment: Optional[str] = "default",
                  is_active: bool = True, present_today: bool = True,
                  last_chat_assigned_at: Optional[datetime] = None) -> str:
        agent_id = agent_id or _new_id()
        self.agents[agent_id] = {
            "id": agent_id, "segment": segment, "is_active": is_active,
            "present_today": present_today,
            "last_chat_assigned_at": last_chat_assigned_at,
        }
        return agent_id

    def touch_conversation(self, conversation_id: str) -> int:
        """Simulate a concurrent writer bumping the version."""
        conv = self.conversations[conversation_id]
        conv["version"] += 1
        conv["updated_at"] = self._clock()
        return conv["version"]

    def fail_next(self, operation: str, error: Exception) -> None:
        """Make the next call to `operation` raise `error`."""
        self._failures[operation].append(error)

    def _maybe_fail(self, operation: str) -> None:
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    # ── Outbound queue ────────────────────────────────────

    async def fetch_due_queue_items(self, now: datetime, limit: int) -> list[QueueItem]:
        self._maybe_fail("fetch_due_queue_items")
        due = [
            row for row in self.queue.values()
            if row["status"] in _CLAIMABLE and row["next_attempt_at"] <= now
        ]
        due.sort(key=lambda r: (r["created_at"], r["id"]))
        return [self._row_to_item(row) for row in due[:limit]]

    async def claim_queue_item(self, item_id: str, expected_attempt: int, now: datetime) -> bool:
        self._maybe_fail("claim_queue_item")
        row = self.queue.get(item_id)
        if row is None or row["status"] not in _CLAIMABLE:
            return False
        if row["attempt_count"] != expected_attempt or row["next_attempt_at"] > now:
            return False
        row["status"] = QueueStatus.PROCESSING.value
        row["last_attempt_at"] = now
        return True

    async def requeue_queue_item(self, item_id: str, attempt_count: int,
                                 next_attempt_at: datetime, last_error: str = "") -> None:
        self._maybe_fail("requeue_queue_item")
        row = self.queue.get(item_id)
        if row is None:
            return
        row.update(
            status=QueueStatus.RETRY_QUEUED.value,
            attempt_count=attempt_count,
            next_attempt_at=next_attempt_at,
            last_error=last_error or None,
        )

    async def delete_queue_item(self, item_id: str) -> None:
        self._maybe_fail("delete_queue_item")
        self.queue.pop(item_id, None)

    async def reclaim_stale_processing(self, older_than: datetime, now: datetime) -> int:
        self._maybe_fail("reclaim_stale_processing")
        count = 0
        for item_id, row in list(self.queue.items()):
            if row["status"] != QueueStatus.PROCESSING.value:
                continue
            claimed_at = row["last_attempt_at"]
            if claimed_at is not None and claimed_at >= older_than:
                continue
            if (row["batch_id"], row["recipient_phone"]) in self.outcomes:
                # Outcome already recorded; only the delete was lost
                del self.queue[item_id]
            else:
                row["status"] = QueueStatus.RETRY_QUEUED.value
                row["next_attempt_at"] = now
            count += 1
        return count

    async def upsert_send_outcome(self, outcome: SendOutcome) -> None:
        self._maybe_fail("upsert_send_outcome")
        data = outcome.model_dump(mode="json")
        data["updated_at"] = self._clock()
        self.outcomes[(outcome.batch_id, outcome.recipient_phone)] = data

    async def mark_channel_rate_limited(self, channel_id: str, at: datetime) -> None:
        self._maybe_fail("mark_channel_rate_limited")
        channel = self.channels.get(channel_id)
        if channel is not None:
            channel["rate_limited"] = True
            channel["rate_limited_at"] = at

    async def reset_channel_capacity(self, channel_id: Optional[str] = None) -> int:
        count = 0
        for cid, channel in self.channels.items():
            if channel_id and cid != channel_id:
                continue
            if channel["rate_limited"]:
                channel["rate_limited"] = False
                channel["rate_limited_at"] = None
                count += 1
        return count

    # ── Procedures ────────────────────────────────────────

    async def resolve_or_create_conversation(self, recipient_phone: str, channel_id: str,
                                             segment: Optional[str]) -> str:
        self._maybe_fail("resolve_or_create_conversation")
        if not recipient_phone or channel_id not in self.channels:
            raise ProcedureError("resolve_or_create_conversation", "invalid recipient or channel")

        for conv in self.conversations.values():
            if (conv["recipient_phone"] == recipient_phone
                    and conv["channel_id"] == channel_id
                    and conv["status"] == ConversationStatus.OPEN.value):
                return conv["id"]

        return self.add_conversation(
            segment=segment, recipient_phone=recipient_phone, channel_id=channel_id,
        )

    async def insert_message_record(self, record: MessageRecord) -> str:
        self._maybe_fail("insert_message_record")
        if record.conversation_id not in self.conversations:
            raise ProcedureError("insert_message_record", f"unknown conversation {record.conversation_id}")
        message_id = _new_id()
        self.messages[record.conversation_id].append({
            "id": message_id, **record.model_dump(mode="json"),
            "created_at": self._clock(),
        })
        return message_id

    async def assign_conversation(self, actor_id: str, conversation_id: str, agent_id: str,
                                  reason: str, expected_version: int) -> Conversation:
        self._maybe_fail("assign_conversation")
        conv = self.conversations.get(conversation_id)
        if conv is None or conv["status"] != ConversationStatus.OPEN.value:
            raise ConversationNotFoundError(conversation_id)
        if conv["version"] != expected_version:
            raise VersionConflictError(conversation_id, expected_version)
        agent = self.agents.get(agent_id)
        if agent is None or not agent["is_active"]:
            raise ProcedureError("assign_conversation", f"agent {agent_id} cannot take conversations")

        now = self._clock()
        conv["assigned_agent_id"] = agent_id
        conv["version"] += 1
        conv["updated_at"] = now
        agent["last_chat_assigned_at"] = now
        self.assignment_log.append({
            "actor_id": actor_id, "conversation_id": conversation_id,
            "agent_id": agent_id, "reason": reason, "at": now,
        })
        return Conversation(**conv)

    # ── Assignment reads ──────────────────────────────────

    async def fetch_unassigned_conversations(self, segment: Optional[str],
                                             after: Optional[ScanCursor],
                                             limit: int) -> list[Conversation]:
        self._maybe_fail("fetch_unassigned_conversations")
        rows = [
            c for c in self.conversations.values()
            if c["status"] == ConversationStatus.OPEN.value
            and c["assigned_agent_id"] is None
            and (segment is None or c["segment"] == segment)
        ]
        rows.sort(key=lambda c: (c["created_at"], c["id"]))
        if after is not None:
            rows = [c for c in rows if (c["created_at"], c["id"]) > after]
        return [Conversation(**c) for c in rows[:limit]]

    async def fetch_eligible_agents(self, segment: str) -> list[AgentProfile]:
        self._maybe_fail("fetch_eligible_agents")
        rows = [
            a for a in self.agents.values()
            if a["segment"] == segment and a["is_active"] and a["present_today"]
        ]
        # Never-assigned agents first, then oldest assignment
        rows.sort(key=lambda a: (
            a["last_chat_assigned_at"] is not None,
            a["last_chat_assigned_at"] or datetime.min.replace(tzinfo=timezone.utc),
            a["id"],
        ))
        return [AgentProfile(**a) for a in rows]

    # ── Mutual exclusion ──────────────────────────────────

    @asynccontextmanager
    async def exclusive_run(self, lock_key: str) -> AsyncIterator[RunLease]:
        now = self._clock()
        current = self._leases.get(lock_key)
        if current is not None and current[1] > now:
            logger.info("run_lock_unavailable", lock_key=lock_key, holder=current[0])
            yield RunLease(lock_key, acquired=False)
            return

        holder = _new_id()
        ttl = timedelta(seconds=self.lease_ttl_seconds)
        self._leases[lock_key] = (holder, now + ttl)

        async def renew() -> bool:
            current = self._leases.get(lock_key)
            if current is None or current[0] != holder:
                return False
            self._leases[lock_key] = (holder, self._clock() + ttl)
            return True

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
            current = self._leases.get(lock_key)
            if current is not None and current[0] == holder:
                del self._leases[lock_key]

    # ── Helpers ───────────────────────────────────────────

    def _row_to_item(self, row: dict) -> QueueItem:
        batch = self.batches.get(row["batch_id"]) or {}
        template = self.templates.get(batch.get("template_id"))
        channel = self.channels.get(batch.get("channel_id"))
        return QueueItem(
            id=row["id"], batch_id=row["batch_id"],
            recipient_phone=row["recipient_phone"],
            variables=row["variables"], media_url=row["media_url"],
            attempt_count=row["attempt_count"], status=row["status"],
            next_attempt_at=row["next_attempt_at"],
            last_attempt_at=row["last_attempt_at"],
            created_at=row["created_at"],
            template=TemplateDefinition(
                name=template["name"], language=template["language"],
                components=template["components"],
            ) if template else None,
            channel=ChannelCredentials(
                id=channel["id"], phone_number_id=channel["phone_number_id"],
                access_token=channel["access_token"], segment=channel["segment"],
                rate_limited=channel["rate_limited"],
            ) if channel else None,
        )
