"""Tests for RagMem HTTP server (Streamable HTTP transport)."""

import stat

import pytest
from starlette.testclient import TestClient

from ragmem.errors import BackendConnectionError
from ragmem.server.http_server import api_key_path, create_http_app, get_or_create_api_key
from ragmem.server.mcp_server import ToolDispatcher
from ragmem.server.tool_schemas import TOOL_SCHEMAS


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def dispatcher(ctx):
    return ToolDispatcher(ctx)


@pytest.fixture
def app(dispatcher):
    """Create an HTTP app with auth disabled."""
    return create_http_app(dispatcher, api_key=None)


@pytest.fixture
def app_with_auth(dispatcher):
    """Create an HTTP app with auth enabled."""
    return create_http_app(dispatcher, api_key="test-secret-key")


_LIST_TOOLS = {"jsonrpc": "2.0", "method": "tools/list", "id": 1}


# ============================================================================
# App creation tests
# ============================================================================

def test_create_http_app(app):
    """create_http_app returns a Starlette app with the expected routes."""
    route_paths = {r.path for r in app.routes}
    assert "/mcp" in route_paths
    assert "/health" in route_paths
    assert "/.well-known/mcp.json" in route_paths


# ============================================================================
# Health endpoint tests
# ============================================================================

def test_health_endpoint(app, ctx):
    """GET /health reports the active database and model readiness."""
    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["server"] == "ragmem"
        assert data["database"] == ctx.config.database
        assert data["dialect"] == "sqlite"
        assert data["modelReady"] is True
        assert data["monitor"]["paused"] is False


def test_health_reports_fatal(app, ctx, monkeypatch):
    """After an unrecoverable switch failure /health returns 503."""
    def refuse(name, create=False):
        raise BackendConnectionError("gone")

    monkeypatch.setattr(ctx.controller.connector, "open", refuse)
    with pytest.raises(Exception):
        ctx.controller.switch_database("other")

    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "fatal"


def test_health_does_not_require_auth(app_with_auth):
    with TestClient(app_with_auth) as client:
        assert client.get("/health").status_code == 200


# ============================================================================
# Server card endpoint tests
# ============================================================================

def test_server_card_endpoint(app):
    """GET /.well-known/mcp.json returns valid server card."""
    with TestClient(app) as client:
        resp = client.get("/.well-known/mcp.json")
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "ragmem"
        assert "version" in data
        assert data["tools_count"] == len(TOOL_SCHEMAS)
        transport_types = [t["type"] for t in data["transports"]]
        assert "streamable-http" in transport_types
        assert "stdio" in transport_types


# ============================================================================
# Auth tests
# ============================================================================

def test_mcp_endpoint_requires_auth(app_with_auth):
    """POST /mcp without API key returns 401 when auth is enabled."""
    with TestClient(app_with_auth) as client:
        resp = client.post("/mcp/", json=_LIST_TOOLS)
        assert resp.status_code == 401
        assert resp.json()["error"] == "Unauthorized"


def test_mcp_endpoint_wrong_key(app_with_auth):
    """POST /mcp with wrong API key returns 401."""
    with TestClient(app_with_auth) as client:
        resp = client.post("/mcp/", json=_LIST_TOOLS, headers={"X-API-Key": "wrong-key"})
        assert resp.status_code == 401


def test_mcp_endpoint_auth_via_query_param(app_with_auth):
    """POST /mcp with api_key query param passes auth (not 401)."""
    with TestClient(app_with_auth, raise_server_exceptions=False) as client:
        resp = client.post("/mcp/?api_key=test-secret-key", json=_LIST_TOOLS)
        assert resp.status_code != 401


def test_mcp_endpoint_auth_via_header(app_with_auth):
    """POST /mcp with X-API-Key header passes auth (not 401)."""
    with TestClient(app_with_auth, raise_server_exceptions=False) as client:
        resp = client.post("/mcp/", json=_LIST_TOOLS, headers={"X-API-Key": "test-secret-key"})
        assert resp.status_code != 401


def test_no_auth_mode(app):
    """When api_key=None, requests pass through without auth."""
    with TestClient(app, raise_server_exceptions=False) as client:
        resp = client.post("/mcp/", json=_LIST_TOOLS)
        assert resp.status_code != 401


# ============================================================================
# API key management tests
# ============================================================================

def test_api_key_generation(config):
    """get_or_create_api_key creates a file with owner-only permissions."""
    key = get_or_create_api_key(config)
    assert len(key) > 20
    path = api_key_path(config)
    assert path.exists()
    mode = path.stat().st_mode
    assert mode & stat.S_IRWXG == 0
    assert mode & stat.S_IRWXO == 0


def test_api_key_persistence(config):
    """Second call returns the same key."""
    assert get_or_create_api_key(config) == get_or_create_api_key(config)


def test_api_key_reads_existing(config):
    path = api_key_path(config)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("my-custom-key\n")
    assert get_or_create_api_key(config) == "my-custom-key"
