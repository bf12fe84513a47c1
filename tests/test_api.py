"""Tests for the FastAPI job trigger endpoints."""
import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from config.settings import Settings
from models.errors import DataStoreUnavailableError


@pytest.fixture
def api(store, client):
    settings = Settings()
    settings.logging.json = False
    app = create_app(settings=settings, store=store, client=client)
    with TestClient(app) as test_client:
        yield test_client


class TestJobsApi:
    def test_health(self, api):
        resp = api.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_outbound_queue_run(self, api, store, batch, client):
        store.enqueue(batch["batch_id"], "+15550001", variables=["a", "b"])

        resp = api.post("/jobs/outbound-queue")

        assert resp.status_code == 200
        body = resp.json()
        assert body["processed"] == 1
        assert body["sent"] == 1
        assert len(client.calls) == 1

    def test_assignment_run_with_segment(self, api, store):
        store.add_agent("a1", segment="sales")
        store.add_conversation(segment="sales", conversation_id="c1")
        store.add_conversation(segment="support", conversation_id="c2")

        resp = api.post("/jobs/assignment", params={"segment": "sales"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "completed"
        assert body["assigned"] == 1
        assert store.conversations["c2"]["assigned_agent_id"] is None

    def test_assignment_running_elsewhere(self, api, store, clock):
        from datetime import timedelta
        store._leases["round_robin_assignment"] = ("other-run", clock.now + timedelta(seconds=30))

        resp = api.post("/jobs/assignment")

        assert resp.status_code == 200
        assert resp.json()["status"] == "running_elsewhere"

    def test_store_unavailable_returns_503(self, api, store):
        store.fail_next("fetch_due_queue_items", DataStoreUnavailableError("connection refused"))

        resp = api.post("/jobs/outbound-queue")

        assert resp.status_code == 503
        assert resp.json() == {"detail": "data store unavailable"}
