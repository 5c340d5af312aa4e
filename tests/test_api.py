from __future__ import annotations

import json
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient
from qdrant_client import QdrantClient

from compintel.app import create_app
from compintel.config import Settings
from compintel.embeddings import EmbeddingService
from compintel.jobs import JobStatusTracker
from compintel.knowledge_base import KnowledgeBase, KnowledgeChunk
from compintel.observability import MetricsRecorder
from compintel.webhooks import WorkflowClient

from conftest import RecordingSleep, StubAsyncOpenAI

WORKFLOW_URL = "https://workflows.example.com/webhook"


class _WorkflowStub:
    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, json={"sourceId": "src-1", "chunksCreated": 3}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


@pytest.fixture()
def openai_client() -> StubAsyncOpenAI:
    return StubAsyncOpenAI()


@pytest.fixture()
def workflow_stub() -> _WorkflowStub:
    return _WorkflowStub()


@pytest.fixture()
def api_client(settings: Settings, openai_client: StubAsyncOpenAI, workflow_stub: _WorkflowStub):
    embedding_service = EmbeddingService(
        settings,
        openai_client=openai_client,  # type: ignore[arg-type]
        sleep=RecordingSleep(),
    )
    knowledge_base = KnowledgeBase(QdrantClient(":memory:"), "api-test", vector_size=3)
    knowledge_base.ensure_collection()
    knowledge_base.upsert(
        [
            KnowledgeChunk(
                id=1,
                vector=[1.0, 0.0, 0.0],
                content="Alpha undercuts list price by 20%",
                source_id="src-acme",
                competitor="Acme",
                verticals=["retail"],
            ),
            KnowledgeChunk(
                id=2,
                vector=[0.0, 1.0, 0.0],
                content="Beta lacks SSO",
                source_id="src-globex",
                competitor="Globex",
            ),
        ]
    )
    workflow_client = WorkflowClient(
        WORKFLOW_URL,
        retries=1,
        client=httpx.AsyncClient(transport=httpx.MockTransport(workflow_stub)),
        sleep=RecordingSleep(),
    )
    metrics = MetricsRecorder(enabled=True, namespace="compintel", prometheus_enabled=True)
    app = create_app(
        settings=settings,
        embedding_service=embedding_service,
        knowledge_base=knowledge_base,
        workflow_client=workflow_client,
        job_tracker=JobStatusTracker(metrics=metrics),
        metrics=metrics,
    )
    with TestClient(app) as client:
        yield client


def test_competitive_search_returns_matches(api_client: TestClient) -> None:
    response = api_client.post("/api/search/competitive", json={"query": "alpha pricing", "competitor": "Acme"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert [item["content"] for item in payload["results"]] == ["Alpha undercuts list price by 20%"]
    assert payload["metadata"]["filters"] == {"competitor": "Acme"}


def test_competitive_search_validation_error_uses_structured_payload(api_client: TestClient) -> None:
    response = api_client.post("/api/search/competitive", json={"query": "x" * 501})

    assert response.status_code == 400
    payload = response.json()
    assert payload["error"]["code"] == "VALIDATION_ERROR"
    assert payload["error"]["message"] == "Query must be 500 characters or less"
    assert payload["path"] == "/api/search/competitive"
    assert "timestamp" in payload


def test_malformed_json_is_a_validation_error(api_client: TestClient) -> None:
    response = api_client.post(
        "/api/search/competitive",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "VALIDATION_ERROR"


def test_embedding_outage_maps_to_503(api_client: TestClient, openai_client: StubAsyncOpenAI) -> None:
    openai_client.failures = [RuntimeError("provider down") for _ in range(10)]

    response = api_client.post("/api/search/competitive", json={"query": "alpha"})

    assert response.status_code == 503
    error = response.json()["error"]
    assert error["code"] == "EXTERNAL_API_ERROR"
    assert error["details"]["embeddingError"].startswith("Embedding provider failed")


def test_search_health_and_stats_actions(api_client: TestClient) -> None:
    health = api_client.get("/api/search/competitive", params={"action": "health"})
    stats = api_client.get("/api/search/competitive", params={"action": "stats"})
    invalid = api_client.get("/api/search/competitive", params={"action": "reindex"})

    assert health.json()["status"] == "ok"
    assert stats.json()["features"]["maxResults"] == 100
    assert invalid.status_code == 400


def test_embedding_endpoint_and_health(api_client: TestClient, openai_client: StubAsyncOpenAI) -> None:
    response = api_client.post("/api/embeddings", json={"text": "beta"})
    assert response.status_code == 200
    assert response.json()["embedding"] == [0.0, 1.0, 0.0]
    assert response.json()["dimensions"] == 3

    assert api_client.post("/api/embeddings", json={"text": ""}).status_code == 400
    assert api_client.get("/api/embeddings/health").json()["healthy"] is True

    openai_client.failures = [RuntimeError("unauthorised")]
    assert api_client.get("/api/embeddings/health").status_code == 503


def test_workflow_dispatch_forwards_json(api_client: TestClient, workflow_stub: _WorkflowStub) -> None:
    response = api_client.post(
        "/api/workflows/competitor-analysis",
        json={"payload": {"competitor": "Acme"}, "retries": 0},
    )

    assert response.status_code == 200
    assert response.json()["data"] == {"sourceId": "src-1", "chunksCreated": 3}
    assert str(workflow_stub.requests[0].url) == f"{WORKFLOW_URL}/competitor-analysis"
    assert json.loads(workflow_stub.requests[0].content) == {"competitor": "Acme"}


def test_workflow_dispatch_upstream_failure_maps_to_502(api_client: TestClient, workflow_stub: _WorkflowStub) -> None:
    workflow_stub.responder = lambda request: httpx.Response(500, text="crashed")

    response = api_client.post("/api/workflows/competitor-analysis", json={"payload": {}})

    assert response.status_code == 502
    assert response.json()["error"]["code"] == "WEBHOOK_ERROR"
    assert len(workflow_stub.requests) == 2


def test_workflow_dispatch_rejects_bad_options(api_client: TestClient) -> None:
    response = api_client.post("/api/workflows/x", json={"payload": {}, "timeout": -1})
    assert response.status_code == 400
    assert api_client.post("/api/workflows/x", json={"nope": 1}).status_code == 400


def test_battlecard_file_upload(api_client: TestClient, workflow_stub: _WorkflowStub) -> None:
    response = api_client.post(
        "/api/uploads/battlecard",
        data={"competitor": "Acme", "verticals": "retail,finance", "sourceType": "battlecard"},
        files={"file": ("acme.pdf", b"%PDF-1.7 fake", "application/pdf")},
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["sourceId"] == "src-1"
    assert data["verticals"] == ["retail", "finance"]
    body = workflow_stub.requests[0].content
    assert b'filename="acme.pdf"' in body
    assert b"%PDF-1.7 fake" in body


def test_battlecard_upload_rejects_unsupported_file(api_client: TestClient, workflow_stub: _WorkflowStub) -> None:
    response = api_client.post(
        "/api/uploads/battlecard",
        data={"competitor": "Acme"},
        files={"file": ("deck.pptx", b"PK\x03\x04", "application/vnd.ms-powerpoint")},
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "UNSUPPORTED_FILE_TYPE"
    assert workflow_stub.requests == []


def test_battlecard_text_upload_requires_competitor(api_client: TestClient) -> None:
    response = api_client.post("/api/uploads/battlecard", data={"content": "notes"})

    assert response.status_code == 400
    assert response.json()["error"]["message"] == "Competitor name is required"


def test_upload_health_probes_workflow_service(api_client: TestClient) -> None:
    response = api_client.get("/api/uploads/battlecard")

    assert response.json()["workflowConnectivity"] == "connected"


def test_job_callbacks_round_trip(api_client: TestClient) -> None:
    started = api_client.post("/api/webhooks/workflow", json={"workflowId": "wf-9", "status": "started"})
    assert started.status_code == 200
    assert started.json()["message"] == "Webhook processed successfully"

    api_client.post(
        "/api/webhooks/workflow",
        json={"workflowId": "wf-9", "status": "completed", "progress": 100, "result": {"chunks": 3}},
    )

    job = api_client.get("/api/webhooks/workflow", params={"workflowId": "wf-9"}).json()["job"]
    assert job["status"] == "completed"
    assert job["result"] == {"chunks": 3}

    listing = api_client.get("/api/webhooks/workflow").json()
    assert listing["totalJobs"] == 1
    assert listing["jobs"][0]["workflow_id"] == "wf-9"

    health = api_client.get("/api/webhooks/workflow", params={"action": "health"}).json()
    assert health["activeJobs"] == 1


def test_job_callback_errors(api_client: TestClient) -> None:
    invalid_json = api_client.post(
        "/api/webhooks/workflow",
        content=b"status=done",
        headers={"content-type": "application/json"},
    )
    invalid_status = api_client.post("/api/webhooks/workflow", json={"workflowId": "wf-1", "status": "paused"})
    missing = api_client.get("/api/webhooks/workflow", params={"workflowId": "unknown"})

    assert invalid_json.status_code == 400
    assert invalid_status.status_code == 400
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


def test_metrics_endpoint_exports_prometheus(api_client: TestClient) -> None:
    api_client.post("/api/webhooks/workflow", json={"workflowId": "wf-1", "status": "started"})

    response = api_client.get("/metrics")

    assert response.status_code == 200
    assert "compintel_jobs_notification_total" in response.text


def test_unconfigured_workflow_url_reports_configuration_error(settings: Settings, openai_client) -> None:
    settings.workflow_base_url = None
    app = create_app(
        settings=settings,
        embedding_service=EmbeddingService(settings, openai_client=openai_client),  # type: ignore[arg-type]
        knowledge_base=KnowledgeBase(QdrantClient(":memory:"), "unused", vector_size=3),
        job_tracker=JobStatusTracker(),
    )

    with TestClient(app) as client:
        response = client.post("/api/uploads/battlecard", data={"competitor": "Acme", "content": "notes"})

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "CONFIGURATION_ERROR"
