from fastapi.testclient import TestClient

from src.aikanban.api.main import app
from src.aikanban.observability.metrics import sanitize_path


client = TestClient(app)


def test_sanitize_path_collapses_ids():
    assert sanitize_path("/api/ai/chat") == "/api/ai"
    assert sanitize_path("/health?x=1") == "/health"
    assert sanitize_path("/") == "/"
    assert sanitize_path("") == "/"


def test_metrics_endpoint_exposes_request_histogram():
    client.get("/api/health")
    r = client.get("/api/metrics")
    assert r.status_code == 200
    assert 'path="/api/health"' in r.text
    assert 'path="/api/metrics"' not in r.text


def test_root_reports_service_name():
    assert client.get("/").json() == {"name": "AI Kanban API", "version": "0.1.0"}
