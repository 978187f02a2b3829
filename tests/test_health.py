"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - Version and component report while the credential store is reachable
  - Public path: no bearer token needed, and a bad one is not rejected
  - Forged identity headers are stripped before the route runs
  - Unreachable store: database "error", status "degraded", still 200
"""

from __future__ import annotations

from sqlalchemy import create_engine

from api import main as api_main
from api.main import API_VERSION


class TestHealth:
    def test_reports_version_and_components(self, api_client):
        client, _, _ = api_client
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        assert resp.json() == {
            "status": "healthy",
            "version": API_VERSION,
            "components": {"app": "ok", "database": "ok"},
        }

    def test_garbage_bearer_is_ignored(self, api_client):
        """The edge filter does not validate tokens on public paths."""
        client, _, _ = api_client
        resp = client.get("/api/v1/health", headers={"Authorization": "Bearer not-a-jwt"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_forged_identity_headers_are_stripped(self, api_client, monkeypatch):
        client, _, _ = api_client
        seen: dict[str, str] = {}
        original = api_main._database_status

        def spy(request):
            seen.update(request.headers)
            return original(request)

        monkeypatch.setattr(api_main, "_database_status", spy)
        resp = client.get(
            "/api/v1/health",
            headers={"X-User-ID": "1", "X-User-Roles": "ROLE_ADMIN", "X-User-Permissions": "RBAC:DELETE"},
        )
        assert resp.status_code == 200
        assert "x-user-id" not in seen
        assert "x-user-roles" not in seen
        assert "x-user-permissions" not in seen


class TestHealthDegraded:
    def test_unreachable_database_reports_error(self, api_client, tmp_path, monkeypatch):
        client, _, _ = api_client
        broken = create_engine(f"sqlite:///{tmp_path / 'missing' / 'auth.db'}")
        monkeypatch.setattr(client.app.state, "engine", broken)
        try:
            resp = client.get("/api/v1/health")
        finally:
            broken.dispose()
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "degraded"
        assert data["components"] == {"app": "ok", "database": "error"}
