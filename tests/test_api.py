"""Tests for API routes."""
import asyncio
import csv
import io

import pytest

from app.api import deps
from app.config import EngineConfig
from app.models.visibility import Audit, ConnectorResult, Run, SourceRef
from app.services.memory_store import InMemoryRunStore
from app.services.orchestrator import RunOrchestrator
from app.services.reporting import CSV_COLUMNS

KEYS = {"perplexity": "pplx-key", "chatgpt_search": "sk-test", "claude": "sk-ant-test"}


class _StubConnector:
    async def ask(self, query: str) -> ConnectorResult:
        return ConnectorResult(
            answer=f"About {query}",
            sources=[SourceRef(url="https://acme.io/", title="Acme"), SourceRef(url="https://rival.com/x")],
            raw='{"content": "ok"}',
        )


def _stub_factory(source, config, brand_hosts):  # noqa: ARG001
    return _StubConnector() if config.provider_enabled(source) else None


@pytest.fixture
def store():
    store = InMemoryRunStore()
    asyncio.run(store.save_audit(Audit(id="a1", project_id="p1", domain="acme.io")))
    return store


@pytest.fixture
def engine_config():
    return EngineConfig(
        enabled=True,
        api_keys=dict(KEYS),
        default_sources=("perplexity",),
        cache_enabled=False,
        validate_citations=False,
        dispatch_on_create=True,
    )


@pytest.fixture
def app(store, engine_config):
    from app.main import app

    app.dependency_overrides[deps.get_store] = lambda: store
    app.dependency_overrides[deps.get_engine_config] = lambda: engine_config
    app.dependency_overrides[deps.get_orchestrator] = lambda: RunOrchestrator(
        store, engine_config, connector_factory=_stub_factory
    )
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)


def _create_run(client, **body) -> dict:
    payload = {"audit_id": "a1", "max_intents": 2, **body}
    response = client.post("/api/vi/run", json=payload)
    assert response.status_code in (200, 201), response.text
    return response.json()


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "visibility-engine"}


def test_disabled_flag_rejects_visibility_routes(client, app):
    app.dependency_overrides[deps.get_engine_config] = lambda: EngineConfig(enabled=False)

    response = client.get("/api/vi/health")
    assert response.status_code == 403
    assert response.json()["error"] == "Visibility intelligence is disabled"
    assert client.post("/api/vi/run", json={"audit_id": "a1"}).status_code == 403
    assert client.get("/api/health").status_code == 200


def test_create_run_processes_in_background(client):
    created = _create_run(client)
    assert created["status"] == "queued"
    assert created["domain"] == "acme.io"
    assert created["intents"] == 2
    assert created["reused"] is False

    response = client.get("/api/vi/results", params={"audit_id": "a1"})
    assert response.status_code == 200
    data = response.json()
    assert data["run"]["id"] == created["run_id"]
    assert data["run"]["status"] == "success"
    assert len(data["results"]) == 2
    assert data["summary"]["overall_score"] == 90.0
    assert data["summary"]["counts"]["mentions"] == 2
    assert data["summary"]["counts"]["unique_domains"] == 2
    assert {c["ref_domain"] for c in data["citations"]} == {"acme.io", "rival.com"}


def test_recent_run_is_returned_with_200(client):
    first = _create_run(client)
    response = client.post("/api/vi/run", json={"audit_id": "a1", "max_intents": 2})
    assert response.status_code == 200
    assert response.json()["run_id"] == first["run_id"]
    assert response.json()["reused"] is True


def test_create_run_without_dispatch_stays_queued(client, app, engine_config):
    from dataclasses import replace

    queued_config = replace(engine_config, dispatch_on_create=False)
    app.dependency_overrides[deps.get_engine_config] = lambda: queued_config

    created = _create_run(client)
    data = client.get("/api/vi/results", params={"run_id": created["run_id"]}).json()
    assert data["run"]["status"] == "queued"
    assert data["results"] == []


def test_create_run_errors(client):
    missing = client.post("/api/vi/run", json={"audit_id": "nope"})
    assert missing.status_code == 404
    assert missing.json() == {"error": "Audit not found", "details": {"audit_id": "nope"}}

    invalid = client.post("/api/vi/run", json={})
    assert invalid.status_code == 400
    assert invalid.json()["error"] == "Invalid request"


def test_results_require_a_locator(client):
    assert client.get("/api/vi/results").status_code == 400
    assert client.get("/api/vi/results", params={"run_id": "missing"}).status_code == 404


def test_export_csv(client):
    created = _create_run(client)
    response = client.get("/api/vi/export.csv", params={"run_id": created["run_id"]})
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/csv")

    rows = list(csv.DictReader(io.StringIO(response.text)))
    assert tuple(rows[0].keys()) == CSV_COLUMNS
    assert len(rows) == 4
    assert {r["is_audited_domain"] for r in rows} == {"true", "false"}


def test_compare_is_not_authoritative(client):
    _create_run(client)
    response = client.get("/api/vi/compare", params={"audit_id": "a1", "competitors": "Rival.com"})
    assert response.status_code == 200
    data = response.json()
    assert data["authoritative"] is False
    assert data["competitors"] == [{"domain": "rival.com", "score": 90.0, "authoritative": False}]


def test_generate_intents(client):
    response = client.post(
        "/api/vi/intents:generate",
        json={"project_id": "p1", "domain": "https://www.acme.io", "max_intents": 12},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["intents_count"] == 12
    assert len(data["intents"]) == 10

    bad = client.post("/api/vi/intents:generate", json={"project_id": "p1", "domain": "not a domain"})
    assert bad.status_code == 400


def test_grouped_results(client):
    created = _create_run(client)
    response = client.get("/api/vi/results:grouped", params={"audit_id": "a1"})
    assert response.status_code == 200
    data = response.json()
    assert data["run_id"] == created["run_id"]
    assert data["selected_source"] == "perplexity"
    assert data["counts"] == {"prompts": 2, "citations": 4, "audited": 2}
    assert data["prompts"][0]["citations"][0]["was_audited"] is True


def _mismatched_run(store) -> Run:
    run = Run(
        id="foreign",
        project_id="p1",
        audit_id="a1",
        domain="globex.com",
        audited_url="https://globex.com",
        hostname="globex.com",
        sources=["perplexity"],
    )
    asyncio.run(store.create_run(run))
    return run


def test_grouped_results_reject_domain_mismatch(client, store):
    run = _mismatched_run(store)
    response = client.get("/api/vi/results:grouped", params={"audit_id": "a1", "run_id": run.id})
    assert response.status_code == 400
    body = response.json()
    assert body["error"] == "Domain mismatch between audit and run"
    assert body["details"]["run_domain"] == "globex.com"


def test_provenance(client, store):
    _create_run(client)
    response = client.get("/api/vi/debug/provenance", params={"audit_id": "a1"})
    assert response.status_code == 200
    data = response.json()
    assert data["run"]["alias_match"] is False
    assert data["counts_by_source"] == {"perplexity": 4}
    assert data["parser_modes"] == {"text": 2}

    run = _mismatched_run(store)
    failed = client.get("/api/vi/debug/provenance", params={"audit_id": "a1", "run_id": run.id})
    assert failed.status_code == 500


def test_vi_health_counts_runs(client):
    _create_run(client)
    response = client.get("/api/vi/health")
    assert response.status_code == 200
    data = response.json()
    assert data["runs_24h"] == 1
    assert data["by_status"]["success"] == 1
    assert data["success_rate"] == 1.0
    assert data["sources_enabled"] == ["perplexity", "chatgpt_search", "claude"]
