"""
Outbound Queue Processor — drains one bounded batch of due WhatsApp sends.

Per invocation:
  1. Heal rows left in `processing` by a crashed run
  2. Select up to batch_size due items (pending / retry_queued), oldest first
  3. For each item, sequentially:
       claim → check config → build payload → deliver → classify
       success     → resolve conversation, log message, record sent, delete
       permanent   → record failed, delete
       rate limit  → flag channel, then retry handling
       transient   → retry with backoff, or fail once retries are exhausted

A failure on one item never stops the batch. Only an unreachable store
during selection ends the run early.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from channels.base import DeliveryClient, idempotency_token
from channels.template_payload import build_template_payload
from config.settings import QueueConfig, WhatsAppConfig
from database.store_base import DataStore
from job_queue.backoff import BackoffPolicy
from job_queue.classifier import OutcomeClassifier
from models.errors import DataStoreError, DeliveryError, TemplatePayloadError
from models.schemas import (
    DeliveryResult, FailureKind, ItemDetail, ItemResult, MessageRecord,
    OutcomeKind, ProcessorRunSummary, QueueItem, SendOutcome, SendStatus,
)

logger = structlog.get_logger()

MAX_OUTCOME_TEXT = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _truncate(text: Optional[str], limit: int = MAX_OUTCOME_TEXT) -> Optional[str]:
    if text is None or len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _describe(result: DeliveryResult) -> str:
    message = result.error_message or "unknown delivery error"
    if result.error_code is not None:
        return f"[{result.error_code}] {message}"
    return message


def missing_configuration(item: QueueItem) -> Optional[str]:
    """Name of the first piece of sending context the item lacks, if any."""
    if item.template is None:
        return "template"
    if item.channel is None:
        return "channel"
    if not item.channel.phone_number_id:
        return "phone_number_id"
    if not item.channel.access_token:
        return "access_token"
    if not item.channel.segment:
        return "segment"
    return None


class OutboundQueueProcessor:
    """
    Usage:
        processor = OutboundQueueProcessor(store, WhatsAppCloudClient())
        summary = await processor.run_once()
    """

    def __init__(
        self,
        store: DataStore,
        client: DeliveryClient,
        config: QueueConfig = None,
        classifier: OutcomeClassifier = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.client = client
        self.config = config or QueueConfig()
        self.classifier = classifier or OutcomeClassifier.from_config(WhatsAppConfig())
        self.backoff = BackoffPolicy(self.config.backoff_schedule)
        self._clock = clock

    # ── Run ────────────────────────────────────────────────

    async def run_once(self) -> ProcessorRunSummary:
        summary = ProcessorRunSummary()
        now = self._clock()

        stale_before = now - timedelta(seconds=self.config.stale_processing_seconds)
        summary.reclaimed = await self.store.reclaim_stale_processing(stale_before, now)
        if summary.reclaimed:
            logger.warning("queue_stale_items_reclaimed", count=summary.reclaimed)

        items = await self.store.fetch_due_queue_items(now, self.config.batch_size)
        logger.info("queue_run_started", due=len(items), batch_size=self.config.batch_size)

        for item in items:
            claimed = False
            try:
                claimed = await self.store.claim_queue_item(item.id, item.attempt_count, self._clock())
                if not claimed:
                    logger.info("queue_item_skipped", item_id=item.id, reason="claimed_elsewhere")
                    detail = ItemDetail(item_id=item.id, result=ItemResult.SKIPPED,
                                        reason="claimed by another run")
                else:
                    detail = await self._process_claimed(item)
            except Exception as e:
                detail = await self._handle_unexpected(item, e, claimed)
            self._record(summary, detail)

        logger.info("queue_run_completed",
                    processed=summary.processed, sent=summary.sent,
                    failed=summary.failed, retried=summary.retried,
                    skipped=summary.skipped, reclaimed=summary.reclaimed)
        return summary

    def _record(self, summary: ProcessorRunSummary, detail: ItemDetail) -> None:
        if detail.result == ItemResult.SKIPPED:
            summary.skipped += 1
        else:
            summary.processed += 1
            if detail.result == ItemResult.SENT:
                summary.sent += 1
            elif detail.result == ItemResult.RETRIED:
                summary.retried += 1
            else:
                summary.failed += 1
        if len(summary.details) < self.config.max_details:
            summary.details.append(detail)

    # ── One item ───────────────────────────────────────────

    async def _process_claimed(self, item: QueueItem) -> ItemDetail:
        missing = missing_configuration(item)
        if missing:
            return await self._fail(item, FailureKind.PERMANENT_CONFIGURATION,
                                    f"missing configuration: {missing}", delivered=False)

        try:
            payload = build_template_payload(item.template, item.variables, item.media_url)
        except TemplatePayloadError as e:
            return await self._fail(item, FailureKind.PERMANENT_CONTENT,
                                    f"invalid template payload: {e}", delivered=False)

        try:
            result = await self._deliver(item, payload)
        except DeliveryError as e:
            if not e.retryable:
                return await self._fail(item, FailureKind.PERMANENT_CONTENT, f"delivery rejected: {e}",
                                        delivered=False)
            result = DeliveryResult(success=False, error_message=str(e))

        kind = self.classifier.classify(result)
        if kind == OutcomeKind.SUCCESS:
            return await self._complete(item, result)
        if kind == OutcomeKind.PERMANENT:
            return await self._fail(item, FailureKind.PERMANENT_CONTENT, _describe(result))
        if kind == OutcomeKind.RATE_LIMITED:
            await self._flag_channel(item)
        return await self._retry(item, kind, _describe(result))

    async def _deliver(self, item: QueueItem, payload: dict[str, Any]) -> DeliveryResult:
        token = idempotency_token(item.id, item.attempt_count)
        timeout = self.config.delivery_timeout_seconds
        try:
            return await asyncio.wait_for(
                self.client.send(item.channel, item.recipient_phone, payload, token),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("queue_item_delivery_timeout", item_id=item.id,
                           attempt=item.attempt_count, timeout=timeout)
            return DeliveryResult(success=False, error_message=f"delivery timed out after {timeout}s")
        except DeliveryError:
            raise
        except Exception as e:
            logger.warning("queue_item_delivery_exception", item_id=item.id,
                           attempt=item.attempt_count, error=_error_text(e))
            return DeliveryResult(success=False, error_message=_error_text(e))

    async def _flag_channel(self, item: QueueItem) -> None:
        try:
            await self.store.mark_channel_rate_limited(item.channel.id, self._clock())
            logger.warning("channel_rate_limited", channel_id=item.channel.id, item_id=item.id)
        except DataStoreError as e:
            logger.error("channel_flag_failed", channel_id=item.channel.id, error=str(e))

    async def _retry(self, item: QueueItem, kind: OutcomeKind, error: str) -> ItemDetail:
        if item.attempt_count >= self.config.max_retries:
            return await self._fail(item, FailureKind.PERMANENT_EXHAUSTED, f"retries exhausted: {error}")

        attempt = item.attempt_count + 1
        next_attempt_at = self.backoff.next_attempt_at(self._clock(), attempt)
        failure_kind = FailureKind.RATE_LIMITED if kind == OutcomeKind.RATE_LIMITED else FailureKind.TRANSIENT
        try:
            await self.store.requeue_queue_item(item.id, attempt, next_attempt_at,
                                                last_error=_truncate(error))
        except DataStoreError as e:
            # Row stays in processing; stale recovery requeues it with the same attempt_count
            logger.error("queue_item_requeue_failed", item_id=item.id, attempt=attempt, error=str(e))
            return ItemDetail(item_id=item.id, result=ItemResult.RETRIED, failure_kind=failure_kind,
                              reason=f"{error}; requeue deferred to stale recovery: {_error_text(e)}")
        logger.info("queue_item_retry_scheduled", item_id=item.id, attempt=attempt,
                    next_attempt_at=next_attempt_at.isoformat(), reason=kind.value)

        return ItemDetail(item_id=item.id, result=ItemResult.RETRIED,
                          failure_kind=failure_kind, reason=error)

    async def _complete(self, item: QueueItem, result: DeliveryResult) -> ItemDetail:
        message_id = result.provider_message_id
        timeout = self.config.delivery_timeout_seconds

        try:
            conversation_id = await asyncio.wait_for(
                self.store.resolve_or_create_conversation(
                    item.recipient_phone, item.channel.id, item.channel.segment,
                ),
                timeout=timeout,
            )
        except (DataStoreError, asyncio.TimeoutError) as e:
            logger.error("queue_item_conversation_failed", item_id=item.id,
                         provider_message_id=message_id, error=_error_text(e))
            return await self._fail(
                item, FailureKind.POST_SEND_LOGGING,
                f"sent but conversation logging failed: {_error_text(e)}",
                provider_message_id=message_id,
            )

        warning = None
        try:
            await asyncio.wait_for(
                self.store.insert_message_record(MessageRecord(
                    conversation_id=conversation_id,
                    template_name=item.template.name,
                    variables=item.variables,
                    media_url=item.media_url,
                    provider_message_id=message_id,
                )),
                timeout=timeout,
            )
        except (DataStoreError, asyncio.TimeoutError) as e:
            warning = f"message record not written: {_error_text(e)}"
            logger.warning("queue_item_message_record_failed", item_id=item.id,
                           conversation_id=conversation_id, error=_error_text(e))

        await self._finalize(item, SendOutcome(
            batch_id=item.batch_id,
            recipient_phone=item.recipient_phone,
            status=SendStatus.SENT,
            provider_message_id=message_id,
            warning=_truncate(warning),
            attempts=item.attempt_count + 1,
            conversation_id=conversation_id,
        ))
        logger.info("queue_item_sent", item_id=item.id, provider_message_id=message_id,
                    conversation_id=conversation_id, attempt=item.attempt_count)
        return ItemDetail(item_id=item.id, result=ItemResult.SENT, reason=warning or "")

    async def _fail(self, item: QueueItem, kind: FailureKind, reason: str,
                    delivered: bool = True, provider_message_id: str = None) -> ItemDetail:
        await self._finalize(item, SendOutcome(
            batch_id=item.batch_id,
            recipient_phone=item.recipient_phone,
            status=SendStatus.FAILED,
            provider_message_id=provider_message_id,
            error=_truncate(reason),
            attempts=item.attempt_count + (1 if delivered else 0),
        ))
        logger.warning("queue_item_failed", item_id=item.id, kind=kind.value,
                       attempt=item.attempt_count, reason=_truncate(reason))
        return ItemDetail(item_id=item.id, result=ItemResult.FAILED, failure_kind=kind, reason=reason)

    async def _finalize(self, item: QueueItem, outcome: SendOutcome) -> None:
        await self.store.upsert_send_outcome(outcome)
        try:
            await self.store.delete_queue_item(item.id)
        except DataStoreError as e:
            # The outcome is recorded; stale recovery deletes the row
            logger.error("queue_item_delete_failed", item_id=item.id,
                         status=outcome.status.value, error=str(e))

    async def _handle_unexpected(self, item: QueueItem, error: Exception, claimed: bool) -> ItemDetail:
        if isinstance(error, DataStoreError):
            # A store write failed mid-item; never overwrite an outcome that may
            # already be recorded. Stale recovery finishes or requeues the row.
            logger.error("queue_item_store_write_failed", item_id=item.id, claimed=claimed, error=str(error))
            return ItemDetail(item_id=item.id, result=ItemResult.FAILED,
                              failure_kind=FailureKind.DATABASE_ERROR,
                              reason=f"store write failed: {_error_text(error)}")

        logger.exception("queue_item_unexpected_error", item_id=item.id, error=str(error))
        reason = f"unexpected error: {_error_text(error)}"
        if claimed:
            try:
                await self._finalize(item, SendOutcome(
                    batch_id=item.batch_id,
                    recipient_phone=item.recipient_phone,
                    status=SendStatus.FAILED,
                    error=_truncate(reason),
                    attempts=item.attempt_count,
                ))
            except Exception as e:
                # Row stays in processing and is reclaimed by a later run
                logger.error("queue_item_finalize_failed", item_id=item.id, error=str(e))
        return ItemDetail(item_id=item.id, result=ItemResult.FAILED,
                          failure_kind=FailureKind.UNEXPECTED, reason=reason)
