"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database and components.permission_cache report 'ok'
  - No authentication required
  - 503 with status 'degraded' when the database is unreachable
  - login fails closed with 503 when the database or the hashing pool fails
"""

from __future__ import annotations

import threading

from sqlalchemy.exc import OperationalError


def test_health_returns_200_with_components(app_env):
    """Health endpoint returns 200 with status, version, and components."""
    resp = app_env.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["version"] == "0.1.0"
    assert data["components"] == {"database": "ok", "permission_cache": "ok"}


def test_health_no_auth_required(app_env):
    """Health endpoint is accessible without any authentication headers."""
    resp = app_env.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_health_degraded_when_database_down(app_env, monkeypatch):
    def unreachable(*args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    monkeypatch.setattr(app_env.state.engine, "connect", unreachable)
    resp = app_env.client.get("/api/v1/health")
    assert resp.status_code == 503
    data = resp.json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "unavailable"


def test_backend_failure_during_login_is_503(app_env, monkeypatch):
    """A database failure on the login path fails closed with 503, never a token."""
    app_env.user("alice")

    def unreachable(*args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("connection refused"))

    monkeypatch.setattr(app_env.state.store, "get_user_by_username", unreachable)
    resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "correct horse battery"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "service_unavailable"


def test_hashing_timeout_during_login_is_503(app_env, monkeypatch):
    """A saturated hashing pool fails the login closed: 503 and no token."""
    app_env.user("alice")
    monkeypatch.setattr(app_env.hasher, "_timeout", 0.05)
    release = threading.Event()
    for _ in range(2):
        app_env.hasher._pool.submit(release.wait)
    try:
        resp = app_env.client.post("/api/v1/auth/login", json={"identity": "alice", "secret": "correct horse battery"})
    finally:
        release.set()
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "service_unavailable"
    assert "accessToken" not in resp.json()
