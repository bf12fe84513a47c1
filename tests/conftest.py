"""Shared test fixtures for the dispatch backend."""
import pytest
from datetime import datetime, timedelta, timezone

from channels.base import RecordingDeliveryClient
from config.settings import AssignmentConfig, QueueConfig, WhatsAppConfig
from database.store_factory import reset_store
from database.store_memory import InMemoryDataStore
from job_queue.classifier import OutcomeClassifier
from job_queue.processor import OutboundQueueProcessor


T0 = datetime(2024, 5, 6, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock shared by the store and the component under test."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


GREETING_COMPONENTS = [
    {"type": "HEADER", "format": "TEXT", "text": "Hello"},
    {"type": "BODY", "text": "Hi {{1}}, invoice {{2}} is due.",
     "example": {"body_text": [["Ana", "INV-1"]]}},
]


@pytest.fixture(autouse=True)
def _reset_store_singleton():
    reset_store()
    yield
    reset_store()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryDataStore:
    return InMemoryDataStore(clock=clock)


@pytest.fixture
def batch(store) -> dict:
    """A sales channel + greeting template + send batch, ready for enqueueing."""
    channel_id = store.add_channel("ch-sales", phone_number_id="1098", access_token="tok-sales", segment="sales")
    template_id = store.add_template("payment_reminder", components=GREETING_COMPONENTS)
    batch_id = store.add_batch(template_id, channel_id, batch_id="batch-1")
    return {"channel_id": channel_id, "template_id": template_id, "batch_id": batch_id}


@pytest.fixture
def client() -> RecordingDeliveryClient:
    return RecordingDeliveryClient()


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig()


@pytest.fixture
def processor(store, client, clock, queue_config) -> OutboundQueueProcessor:
    return OutboundQueueProcessor(
        store, client, queue_config,
        classifier=OutcomeClassifier.from_config(WhatsAppConfig()),
        clock=clock,
    )


@pytest.fixture
def assignment_config() -> AssignmentConfig:
    return AssignmentConfig(chunk_size=200)
