import json
import logging

from fastapi.testclient import TestClient

from config import Config
from logging_config import JSONFormatter, log_security_event, redact
from main import create_app

from conftest import FakeContextFactory, register


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    assert response.headers["x-content-type-options"] == "nosniff"


def test_root_info(client):
    data = client.get("/").json()
    assert data["name"] == "vin-mcp"
    assert data["endpoints"]["streamable_http"] == "/mcp"
    assert data["oauth"]["protected_resource"] == "https://mcp.test/.well-known/oauth-protected-resource"


def test_admin_status(client):
    register(client)
    client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"})

    response = client.get("/api/admin/status", headers={"X-Admin-Key": "admin-secret"})
    assert response.status_code == 200
    data = response.json()
    assert data["active_mcp_sessions"] == 1
    assert data["oauth_clients"] == 1
    assert data["report_cache_entries"] == 0


def test_admin_status_wrong_key(client):
    response = client.get("/api/admin/status", headers={"X-Admin-Key": "nope"})
    assert response.status_code == 403
    assert response.json()["error"] == "forbidden"


def test_admin_status_disabled_without_key(clock):
    app = create_app(Config({"admin_key": None}), context_factory=FakeContextFactory(), clock=clock)
    with TestClient(app) as client:
        assert client.get("/api/admin/status", headers={"X-Admin-Key": ""}).status_code == 403


def test_shutdown_terminates_sessions(app, context_factory):
    with TestClient(app) as client:
        client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"})
        client.post("/mcp", json={"jsonrpc": "2.0", "id": 1, "method": "initialize"})

    assert len(context_factory.contexts) == 2
    assert all(context.terminated for context in context_factory.contexts.values())


def test_json_formatter_lifts_tag_and_security_fields():
    record = logging.LogRecord("security", logging.WARNING, __file__, 1, "[SECURITY] csrf_fail ip=1.2.3.4", None, None)
    record.event_type = "csrf_fail"
    record.ip = "1.2.3.4"

    entry = json.loads(JSONFormatter().format(record))
    assert entry["tag"] == "SECURITY"
    assert entry["message"] == "csrf_fail ip=1.2.3.4"
    assert entry["event_type"] == "csrf_fail"
    assert entry["ip"] == "1.2.3.4"


def test_security_event_is_logged(caplog):
    with caplog.at_level(logging.WARNING, logger="security"):
        log_security_event("rate_limit", "5.6.7.8", "POST /oauth/token")

    assert caplog.records[-1].event_type == "rate_limit"
    assert "ip=5.6.7.8" in caplog.records[-1].getMessage()


def test_redact():
    assert redact("abcdef123456") == "abcdef..."
    assert redact("") == "<none>"
