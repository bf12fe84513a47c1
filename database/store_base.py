"""
Abstract Data Store — Interface for all storage backends.

Implementations:
  - SqlDataStore      (PostgreSQL / SQLite via SQLAlchemy)
  - InMemoryDataStore (dict-based, single-process, no persistence)

Queue and outcome operations are plain reads/writes. Conversation
resolution, message insertion and assignment are named procedures whose
business rules live in the database; callers treat them as black boxes
that either return or raise a ProcedureError subclass.
"""
from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from models.schemas import (
    AgentProfile, Conversation, MessageRecord, QueueItem, SendOutcome,
)

logger = structlog.get_logger()

# Keyset cursor for the unassigned-conversation scan: (created_at, id)
ScanCursor = tuple[datetime, str]


class RunLease:
    """
    Result of a run-lock acquisition, yielded by DataStore.exclusive_run.

    Truthy when the lock was acquired. `lost` is set if the lease is taken
    over or can no longer be renewed while the run is still inside the block.
    """

    def __init__(self, lock_key: str, acquired: bool):
        self.lock_key = lock_key
        self.acquired = acquired
        self.lost = asyncio.Event()

    def __bool__(self) -> bool:
        return self.acquired

    @property
    def held(self) -> bool:
        return self.acquired and not self.lost.is_set()


class DataStore(ABC):
    """Interface that all data store backends must implement."""

    # ── Outbound queue ────────────────────────────────────────

    @abstractmethod
    async def fetch_due_queue_items(self, now: datetime, limit: int) -> list[QueueItem]:
        """Pending/retry_queued items with next_attempt_at <= now, oldest first, joined."""
        ...

    @abstractmethod
    async def claim_queue_item(self, item_id: str, expected_attempt: int, now: datetime) -> bool:
        """
        Move an item to processing if it is still the due row that was fetched:
        claimable status, same attempt_count, next_attempt_at <= now.
        False if another run took it or rescheduled it in between.
        """
        ...

    @abstractmethod
    async def requeue_queue_item(self, item_id: str, attempt_count: int,
                                 next_attempt_at: datetime, last_error: str = "") -> None:
        ...

    @abstractmethod
    async def delete_queue_item(self, item_id: str) -> None:
        ...

    @abstractmethod
    async def reclaim_stale_processing(self, older_than: datetime, now: datetime) -> int:
        """
        Heal processing rows claimed before `older_than`: rows whose outcome is
        already recorded are deleted, the rest go back to retry_queued at `now`.
        """
        ...

    @abstractmethod
    async def upsert_send_outcome(self, outcome: SendOutcome) -> None:
        ...

    @abstractmethod
    async def mark_channel_rate_limited(self, channel_id: str, at: datetime) -> None:
        ...

    @abstractmethod
    async def reset_channel_capacity(self, channel_id: Optional[str] = None) -> int:
        """Clear the rate-limit flag (daily reset). Returns channels cleared."""
        ...

    # ── Procedures ────────────────────────────────────────────

    @abstractmethod
    async def resolve_or_create_conversation(self, recipient_phone: str, channel_id: str,
                                             segment: Optional[str]) -> str:
        ...

    @abstractmethod
    async def insert_message_record(self, record: MessageRecord) -> str:
        ...

    @abstractmethod
    async def assign_conversation(self, actor_id: str, conversation_id: str, agent_id: str,
                                  reason: str, expected_version: int) -> Conversation:
        """Raises VersionConflictError or ConversationNotFoundError."""
        ...

    # ── Assignment reads ──────────────────────────────────────

    @abstractmethod
    async def fetch_unassigned_conversations(self, segment: Optional[str],
                                             after: Optional[ScanCursor],
                                             limit: int) -> list[Conversation]:
        ...

    @abstractmethod
    async def fetch_eligible_agents(self, segment: str) -> list[AgentProfile]:
        """Active, present agents of `segment`, least recently assigned first (nulls first)."""
        ...

    # ── Mutual exclusion ──────────────────────────────────────

    @abstractmethod
    def exclusive_run(self, lock_key: str) -> AbstractAsyncContextManager[RunLease]:
        """
        Non-blocking acquisition of a named run lock.

        Usage:
            async with store.exclusive_run("key") as lease:
                if not lease:
                    return
                while lease.held:
                    ...
        """
        ...

    async def close(self) -> None:
        pass


async def keep_lease_alive(renew: Callable[[], Awaitable[bool]], interval: float,
                           lease: RunLease, max_errors: int = 3) -> None:
    """
    Renew a TTL lease until cancelled. Sets `lease.lost` when renewal reports
    the lease was taken over, or after `max_errors` consecutive renewal errors
    (by then the TTL has run out).
    """
    errors = 0
    while True:
        await asyncio.sleep(interval)
        try:
            still_held = await renew()
        except Exception as e:
            errors += 1
            logger.error("lease_renew_error", lock_key=lease.lock_key, error=str(e), errors=errors)
            if errors < max_errors:
                continue
            still_held = False
        else:
            errors = 0
        if not still_held:
            logger.warning("lease_lost", lock_key=lease.lock_key)
            lease.lost.set()
            return
