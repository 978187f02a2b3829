"""
tests/test_edge.py -- Tests for gateway.edge.EdgeAuthMiddleware.

The middleware is mounted on a minimal FastAPI app whose routes echo the
headers they receive, so each test can assert exactly what the edge forwarded.

Coverage:
  - REJECT: missing / non-Bearer / garbage / expired token -> bare 401, empty body
  - Trust boundary: client identity headers stripped on public and protected paths
  - ENRICH: verified subject, roles, permissions and tenants injected
  - Tenant enforcement: authoritative rejects a mismatch, advisory forwards both
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from auth.store import RefreshTokenStore
from auth.tokens import TokenService
from gateway.edge import ADVISORY, AUTHORITATIVE, EdgeAuthMiddleware, bearer_token

SECRET = "e" * 48


@pytest.fixture
def tokens(engine) -> TokenService:
    return TokenService(RefreshTokenStore(engine), secret_key=SECRET)


def _echo_app(tokens: TokenService, mode: str = AUTHORITATIVE) -> FastAPI:
    app = FastAPI()
    app.state.auth = SimpleNamespace(tokens=tokens)

    @app.get("/api/echo")
    async def echo(request: Request) -> dict:
        state_identity = getattr(request.state, "identity", None)
        return {
            "headers": dict(request.headers),
            "state_user": state_identity.user_id if state_identity else None,
        }

    @app.get("/api/public")
    async def public(request: Request) -> dict:
        return {"headers": dict(request.headers)}

    @app.get("/outside")
    async def outside() -> dict:
        return {"ok": True}

    app.add_middleware(EdgeAuthMiddleware, public_paths=["/api/public"], tenant_enforcement=mode)
    return app


def _bearer(tokens: TokenService, user_id: int = 42, tenant_id: str = "default") -> dict[str, str]:
    token = tokens.issue_access_token(user_id, tenant_id, ["ROLE_USER"], ["BOOKING:READ", "USER:READ"]).token
    return {"Authorization": f"Bearer {token}"}


class TestBearerToken:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("Bearer abc", "abc"),
            ("bearer abc", "abc"),
            ("Bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_parse(self, value, expected) -> None:
        assert bearer_token(value) == expected


class TestReject:
    def test_missing_header(self, tokens: TokenService) -> None:
        resp = TestClient(_echo_app(tokens)).get("/api/echo")
        assert resp.status_code == 401
        assert resp.content == b""
        assert resp.headers["www-authenticate"] == "Bearer"

    def test_non_bearer_scheme(self, tokens: TokenService) -> None:
        resp = TestClient(_echo_app(tokens)).get("/api/echo", headers={"Authorization": "Basic dXNlcjpwYXNz"})
        assert resp.status_code == 401
        assert resp.content == b""

    def test_garbage_token(self, tokens: TokenService) -> None:
        resp = TestClient(_echo_app(tokens)).get("/api/echo", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401
        assert resp.content == b""

    def test_expired_and_forged_tokens_look_identical(self, engine, tokens: TokenService) -> None:
        past = lambda: datetime.now(timezone.utc) - timedelta(days=1)  # noqa: E731
        expired = TokenService(RefreshTokenStore(engine), secret_key=SECRET, clock=past)
        forged = TokenService(RefreshTokenStore(engine), secret_key="f" * 48)
        client = TestClient(_echo_app(tokens))
        a = client.get("/api/echo", headers=_bearer(expired))
        b = client.get("/api/echo", headers=_bearer(forged))
        assert a.status_code == b.status_code == 401
        assert a.content == b.content == b""
        assert dict(a.headers) == dict(b.headers)

    def test_refresh_token_is_not_accepted(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(42, "default").token
        resp = TestClient(_echo_app(tokens)).get("/api/echo", headers={"Authorization": f"Bearer {refresh}"})
        assert resp.status_code == 401

    def test_paths_outside_prefix_are_untouched(self, tokens: TokenService) -> None:
        resp = TestClient(_echo_app(tokens)).get("/outside")
        assert resp.status_code == 200


class TestTrustBoundary:
    def test_public_path_strips_identity_headers(self, tokens: TokenService) -> None:
        forged = {"X-User-ID": "1", "X-User-Roles": "ROLE_ADMIN", "X-User-Permissions": "RBAC:DELETE"}
        resp = TestClient(_echo_app(tokens)).get("/api/public", headers=forged)
        assert resp.status_code == 200
        headers = resp.json()["headers"]
        assert "x-user-id" not in headers
        assert "x-user-roles" not in headers
        assert "x-user-permissions" not in headers

    def test_protected_path_overwrites_identity_headers(self, tokens: TokenService) -> None:
        headers = {**_bearer(tokens, user_id=42), "X-User-ID": "1", "X-User-Roles": "ROLE_ADMIN"}
        resp = TestClient(_echo_app(tokens)).get("/api/echo", headers=headers)
        assert resp.status_code == 200
        forwarded = resp.json()["headers"]
        assert forwarded["x-user-id"] == "42"
        assert forwarded["x-user-roles"] == "ROLE_USER"
        assert forwarded["x-user-permissions"] == "BOOKING:READ,USER:READ"
        assert forwarded["x-auth-tenant-id"] == "default"
        assert forwarded["x-tenant-id"] == "default"
        assert resp.json()["state_user"] == 42


class TestTenantEnforcement:
    def test_authoritative_accepts_matching_header(self, tokens: TokenService) -> None:
        headers = {**_bearer(tokens, tenant_id="acme"), "X-Tenant-ID": "acme"}
        resp = TestClient(_echo_app(tokens, AUTHORITATIVE)).get("/api/echo", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["headers"]["x-tenant-id"] == "acme"

    def test_authoritative_ignores_tenant_case(self, tokens: TokenService) -> None:
        headers = {**_bearer(tokens, tenant_id="acme"), "X-Tenant-ID": "ACME"}
        resp = TestClient(_echo_app(tokens, AUTHORITATIVE)).get("/api/echo", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["headers"]["x-tenant-id"] == "acme"

    def test_authoritative_accepts_matching_host(self, tokens: TokenService) -> None:
        client = TestClient(_echo_app(tokens, AUTHORITATIVE), base_url="http://acme.example.com")
        resp = client.get("/api/echo", headers=_bearer(tokens, tenant_id="acme"))
        assert resp.status_code == 200

    def test_authoritative_rejects_mismatch(self, tokens: TokenService) -> None:
        headers = {**_bearer(tokens, tenant_id="default"), "X-Tenant-ID": "acme"}
        resp = TestClient(_echo_app(tokens, AUTHORITATIVE)).get("/api/echo", headers=headers)
        assert resp.status_code == 401
        assert resp.content == b""

    def test_advisory_forwards_both_tenants(self, tokens: TokenService) -> None:
        headers = {**_bearer(tokens, tenant_id="default"), "X-Tenant-ID": "acme"}
        resp = TestClient(_echo_app(tokens, ADVISORY)).get("/api/echo", headers=headers)
        assert resp.status_code == 200
        forwarded = resp.json()["headers"]
        assert forwarded["x-tenant-id"] == "acme"
        assert forwarded["x-auth-tenant-id"] == "default"

    def test_advisory_still_rejects_bad_tokens(self, tokens: TokenService) -> None:
        resp = TestClient(_echo_app(tokens, ADVISORY)).get("/api/echo", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_unknown_mode_is_refused(self, tokens: TokenService) -> None:
        with pytest.raises(ValueError):
            EdgeAuthMiddleware(FastAPI(), tenant_enforcement="optional")
