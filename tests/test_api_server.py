import pytest
from fastapi.testclient import TestClient

from server.api_server import app
from server.core.QueryService import QueryService
from services.ingest.IngestService import IngestService
from services.sparse_migration.MigrationService import (
    MigrationAlreadyRunningError,
    MigrationPhase,
    MigrationService,
    MigrationSummary,
)

HEADERS = {"X-API-Key": "test-key"}


class StubMigrationService:
    """Runs instantly; with hold=True the run stays active after it was started."""

    def __init__(self, running: bool = False, hold: bool = False):
        self.running = running
        self.hold = hold
        self.runs = 0
        self.phase = MigrationPhase.NOT_STARTED
        self.last_summary: MigrationSummary | None = None

    def is_running(self) -> bool:
        return self.running

    def reserve_run(self) -> None:
        if self.running:
            raise MigrationAlreadyRunningError("A migration run is already in progress.")
        self.running = True

    async def do_run(self, reserved: bool = False) -> MigrationSummary:
        if not reserved:
            self.reserve_run()
        self.runs += 1
        self.phase = MigrationPhase.SUMMARIZED
        self.last_summary = MigrationSummary(phase=self.phase, users_total=1, users_processed=1, points_updated=4)
        self.running = self.hold
        return self.last_summary


@pytest.fixture
def client(helper_config, store, semantic_encoder, state_store, settings, monkeypatch):
    monkeypatch.setenv("APP_API_KEY", "test-key")
    app.state.helper_config = helper_config
    app.state.query_service = QueryService(helper_config, store, semantic_encoder, state_store, settings)
    app.state.ingest_service = IngestService(helper_config, store, semantic_encoder, state_store, settings)
    app.state.migration_service = StubMigrationService()
    # no context manager: the lifespan would boot real backends
    return TestClient(app)


def test_wrong_api_key_is_rejected(client):
    response = client.post("/search", json={"user_id": "u1", "query": "hi"}, headers={"X-API-Key": "nope"})
    assert response.status_code == 401


def test_search_for_new_user_is_an_unsuccessful_result(client):
    response = client.post("/search", json={"user_id": "new", "query": "hello"}, headers=HEADERS)
    assert response.status_code == 200
    body = response.json()
    assert body["success"] is False
    assert body["error"]


def test_ingest_then_search(client):
    emails = [
        {"user_id": "u1", "direction": "sent", "email_id": f"e{i}", "text": f"thanks for update {i}"}
        for i in range(3)
    ]
    response = client.post("/ingest", json={"emails": emails}, headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["indexed"] == 3

    response = client.post(
        "/search",
        json={"user_id": "u1", "direction": "sent", "query": "thanks", "limit": 2, "score_threshold": 0.0},
        headers=HEADERS,
    )
    body = response.json()
    assert body["success"] is True
    assert len(body["documents"]) == 2
    assert body["stats"]["filtered_count"] == 2
    assert set(body["documents"][0]["scores"]) == {"semantic", "lexical", "combined", "temporal"}


def test_embedding_failure_maps_to_bad_gateway(client, embed_client):
    client.post(
        "/ingest",
        json={"emails": [{"user_id": "u1", "direction": "sent", "email_id": "e1", "text": "hello"}]},
        headers=HEADERS,
    )
    embed_client.fail = True
    response = client.post("/search", json={"user_id": "u1", "query": "something new"}, headers=HEADERS)
    assert response.status_code == 502
    assert response.json()["success"] is False
    assert response.json()["code"] == "EMBEDDING_ERROR"


def test_migration_run_is_accepted(client):
    response = client.post("/migration/run", headers=HEADERS)
    assert response.status_code == 200
    assert response.json() == {"status": "accepted"}
    assert app.state.migration_service.runs == 1


def test_migration_run_conflicts_while_running(client):
    app.state.migration_service.running = True
    response = client.post("/migration/run", headers=HEADERS)
    assert response.status_code == 409


def test_delete_user(client, store):
    client.post(
        "/ingest",
        json={"emails": [{"user_id": "u1", "direction": "received", "email_id": "e1", "text": "hello"}]},
        headers=HEADERS,
    )
    response = client.delete("/users/u1", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["collections"] == [store.get_collection_name("u1", "received")]


def test_back_to_back_runs_conflict(client):
    app.state.migration_service.hold = True
    first = client.post("/migration/run", headers=HEADERS)
    second = client.post("/migration/run", headers=HEADERS)
    assert first.status_code == 200
    assert second.status_code == 409
    assert app.state.migration_service.runs == 1


def test_run_reserved_before_its_task_started_conflicts(client, helper_config, store, state_store, settings):
    service = MigrationService(
        helper_config=helper_config,
        rag_client=store,
        account_client=None,
        state_store=state_store,
        settings=settings,
    )
    app.state.migration_service = service
    service.reserve_run()

    response = client.post("/migration/run", headers=HEADERS)

    assert response.status_code == 409
    assert client.get("/migration/status", headers=HEADERS).json()["running"] is True


def test_status_reports_the_last_summary(client):
    before = client.get("/migration/status", headers=HEADERS).json()
    assert before == {"running": False, "phase": "not_started", "last_summary": None}

    client.post("/migration/run", headers=HEADERS)
    after = client.get("/migration/status", headers=HEADERS).json()

    assert after["running"] is False
    assert after["phase"] == "summarized"
    assert after["last_summary"]["points_updated"] == 4
    assert after["last_summary"]["phase"] == "summarized"
