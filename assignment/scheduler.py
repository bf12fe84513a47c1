"""
Round-robin assignment scheduler.

One run:
  1. Take the global run lock without waiting; if another run holds it,
     report running_elsewhere and do nothing. If the lease is lost mid-run,
     stop before the next conversation and report lease_lost
  2. Walk open, unassigned conversations in (created_at, id) order, one
     chunk at a time, resuming after the last row of the previous chunk
  3. Give each conversation to the next agent of its segment's roster
  4. Commit through assign_conversation with the version that was read;
     a conflict or any other rejection is recorded, not retried

Per-conversation failures are counted and reported. Only an unreachable
store while reading a chunk ends the run early.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from assignment.roster import RosterCache
from config.settings import AssignmentConfig
from database.store_base import DataStore, RunLease
from models.errors import (
    ConversationNotFoundError, DataStoreError, VersionConflictError,
)
from models.schemas import (
    AssignmentFailure, AssignmentRunSummary, Conversation, FailureKind, RunStatus,
)

logger = structlog.get_logger()


class RoundRobinScheduler:
    """
    Usage:
        scheduler = RoundRobinScheduler(store, settings.assignment)
        summary = await scheduler.run_once(segment="sales")
    """

    def __init__(self, store: DataStore, config: AssignmentConfig = None):
        self.store = store
        self.config = config or AssignmentConfig()

    async def run_once(self, segment: Optional[str] = None) -> AssignmentRunSummary:
        summary = AssignmentRunSummary()

        async with self.store.exclusive_run(self.config.lock_key) as lease:
            if not lease:
                summary.status = RunStatus.RUNNING_ELSEWHERE
                logger.info("assignment_running_elsewhere", lock_key=self.config.lock_key, segment=segment)
                return summary

            logger.info("assignment_run_started", segment=segment)
            await self._assign_all(summary, segment, lease)
            if lease.lost.is_set():
                summary.status = RunStatus.LEASE_LOST
                logger.warning("assignment_stopped_lease_lost", lock_key=self.config.lock_key,
                               assigned=summary.assigned, failed=summary.failed)
                return summary

        logger.info("assignment_run_completed", segment=segment,
                    assigned=summary.assigned, failed=summary.failed)
        return summary

    async def _assign_all(self, summary: AssignmentRunSummary, segment: Optional[str],
                          lease: RunLease) -> None:
        rosters = RosterCache(self.store)
        chunk_size = self.config.chunk_size
        after = None

        while lease.held:
            chunk = await self.store.fetch_unassigned_conversations(segment, after, chunk_size)
            logger.debug("assignment_chunk_loaded", size=len(chunk), after=str(after) if after else None)

            for conversation in chunk:
                # Another run may own the lock now; leave the rest to it
                if not lease.held:
                    return
                await self._assign_one(conversation, rosters, summary)

            if len(chunk) < chunk_size:
                break
            last = chunk[-1]
            after = (last.created_at, last.id)

    async def _assign_one(self, conversation: Conversation, rosters: RosterCache,
                          summary: AssignmentRunSummary) -> None:
        if not conversation.segment:
            self._fail(summary, conversation, FailureKind.PERMANENT_CONFIGURATION,
                       "conversation has no segment")
            return

        try:
            roster = await rosters.get(conversation.segment)
        except DataStoreError as e:
            self._fail(summary, conversation, FailureKind.DATABASE_ERROR, f"roster load failed: {e}")
            return

        agent = roster.next_agent()
        if agent is None:
            self._fail(summary, conversation, FailureKind.NO_AGENTS, "no available agents")
            return

        try:
            await asyncio.wait_for(
                self.store.assign_conversation(
                    self.config.actor_id, conversation.id, agent.id,
                    self.config.reason, conversation.version,
                ),
                timeout=self.config.db_timeout_seconds,
            )
        except VersionConflictError as e:
            self._fail(summary, conversation, FailureKind.OPTIMISTIC_CONFLICT, str(e))
        except ConversationNotFoundError as e:
            self._fail(summary, conversation, FailureKind.NOT_FOUND, str(e))
        except asyncio.TimeoutError:
            self._fail(summary, conversation, FailureKind.DATABASE_ERROR,
                       f"assignment timed out after {self.config.db_timeout_seconds}s")
        except DataStoreError as e:
            self._fail(summary, conversation, FailureKind.DATABASE_ERROR, str(e))
        except Exception as e:
            logger.exception("assignment_unexpected_error", conversation_id=conversation.id)
            self._fail(summary, conversation, FailureKind.UNEXPECTED,
                       f"unexpected error: {str(e) or type(e).__name__}")
        else:
            summary.assigned += 1
            logger.info("conversation_assigned", conversation_id=conversation.id,
                        agent_id=agent.id, segment=conversation.segment,
                        expected_version=conversation.version)

    def _fail(self, summary: AssignmentRunSummary, conversation: Conversation,
              kind: FailureKind, reason: str) -> None:
        summary.failed += 1
        logger.warning("conversation_assignment_failed", conversation_id=conversation.id,
                       segment=conversation.segment, kind=kind.value, reason=reason)
        if len(summary.failed_details) < self.config.max_failure_details:
            summary.failed_details.append(AssignmentFailure(
                conversation_id=conversation.id,
                segment=conversation.segment,
                kind=kind,
                reason=reason,
            ))
