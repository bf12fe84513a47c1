"""
Core data models for the dispatch backend.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueueStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_QUEUED = "retry_queued"


class SendStatus(str, Enum):
    SENT = "sent"
    FAILED = "failed"


class ConversationStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class OutcomeKind(str, Enum):
    """How a single delivery attempt is classified."""
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    PERMANENT = "permanent"
    TRANSIENT = "transient"


class ItemResult(str, Enum):
    """What a Queue Processor run did with one item."""
    SENT = "sent"
    FAILED = "failed"
    RETRIED = "retried"
    SKIPPED = "skipped"


class FailureKind(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    PERMANENT_CONTENT = "permanent_content"
    PERMANENT_CONFIGURATION = "permanent_configuration"
    PERMANENT_EXHAUSTED = "permanent_exhausted"
    POST_SEND_LOGGING = "post_send_logging"
    OPTIMISTIC_CONFLICT = "optimistic_conflict"
    NOT_FOUND = "not_found"
    NO_AGENTS = "no_available_agents"
    DATABASE_ERROR = "database_error"
    UNEXPECTED = "unexpected"


class RunStatus(str, Enum):
    COMPLETED = "completed"
    RUNNING_ELSEWHERE = "running_elsewhere"
    LEASE_LOST = "lease_lost"


# ──────────────────────────────────────────────────────────────
#  Outbound queue
# ──────────────────────────────────────────────────────────────

class TemplateDefinition(BaseModel):
    """An approved provider template as synced into the store."""
    name: str
    language: str = "en_US"
    components: list[dict[str, Any]] = []


class ChannelCredentials(BaseModel):
    """Sending identity used to call the provider."""
    id: str
    phone_number_id: str = ""
    access_token: str = ""
    segment: Optional[str] = None
    rate_limited: bool = False


class QueueItem(BaseModel):
    """One pending outbound message, with its joined batch context."""
    id: str
    batch_id: str
    recipient_phone: str
    variables: Union[list[Any], dict[str, Any], None] = None
    media_url: Optional[str] = None
    attempt_count: int = 0
    status: QueueStatus = QueueStatus.PENDING
    next_attempt_at: datetime
    last_attempt_at: Optional[datetime] = None
    created_at: datetime

    # Resolved through send_batches; None when the join found nothing
    template: Optional[TemplateDefinition] = None
    channel: Optional[ChannelCredentials] = None


class SendOutcome(BaseModel):
    """Final delivery status for one (batch, recipient) pair."""
    batch_id: str
    recipient_phone: str
    status: SendStatus
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    warning: Optional[str] = None
    attempts: int = 0
    conversation_id: Optional[str] = None


class MessageRecord(BaseModel):
    """Arguments for the message-insert procedure."""
    conversation_id: str
    content_type: str = "template"
    sender_type: str = "system"
    template_name: Optional[str] = None
    variables: Union[list[Any], dict[str, Any], None] = None
    media_url: Optional[str] = None
    provider_message_id: Optional[str] = None
    sender_override: Optional[str] = None


class DeliveryResult(BaseModel):
    """Provider response reduced to what the classifier needs."""
    success: bool
    provider_message_id: Optional[str] = None
    error_code: Optional[int] = None
    error_message: Optional[str] = None
    error_details: Any = None


# ──────────────────────────────────────────────────────────────
#  Assignment
# ──────────────────────────────────────────────────────────────

class Conversation(BaseModel):
    id: str
    status: ConversationStatus = ConversationStatus.OPEN
    assigned_agent_id: Optional[str] = None
    segment: Optional[str] = None
    version: int = 0
    recipient_phone: str = ""
    channel_id: Optional[str] = None
    created_at: datetime


class AgentProfile(BaseModel):
    id: str
    segment: Optional[str] = None
    is_active: bool = True
    present_today: bool = True
    last_chat_assigned_at: Optional[datetime] = None


# ──────────────────────────────────────────────────────────────
#  Run summaries
# ──────────────────────────────────────────────────────────────

class ItemDetail(BaseModel):
    item_id: str
    result: ItemResult
    failure_kind: Optional[FailureKind] = None
    reason: str = ""


class ProcessorRunSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    reclaimed: int = 0
    details: list[ItemDetail] = []


class AssignmentFailure(BaseModel):
    conversation_id: str
    segment: Optional[str] = None
    kind: FailureKind
    reason: str


class AssignmentRunSummary(BaseModel):
    status: RunStatus = RunStatus.COMPLETED
    assigned: int = 0
    failed: int = 0
    failed_details: list[AssignmentFailure] = []
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
