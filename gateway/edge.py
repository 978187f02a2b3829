"""
gateway/edge.py -- Edge authentication filter (ASGI middleware).

Runs at the network boundary, in front of every downstream route. Per request:

    START --(public path)---------------------------------> FORWARD
    START --(no / non-Bearer Authorization header)--------> REJECT 401
    START --(Bearer token)--> VALIDATE
    VALIDATE --(TokenService.validate_access_token fails)--> REJECT 401
    VALIDATE --(authoritative tenancy, tenant mismatch)----> REJECT 401
    VALIDATE --(ok)--> ENRICH --> FORWARD

REJECT sends a 401 with an empty body and no hint of which check failed, so
the response is no oracle for token forgery or tenant probing.

ENRICH is the trust boundary. Client-supplied identity headers (X-User-ID,
X-User-Roles, X-User-Permissions, X-Auth-Tenant-ID) are stripped from EVERY
request, public or protected, before anything is forwarded. On protected
requests the verified values are then written back together with the
resolved tenant in X-Tenant-ID. Downstream code (auth/dependencies.py) trusts
these headers only because nothing but this middleware can set them; a
multi-process deployment must keep downstream services reachable solely
through the edge (private network or mutual TLS).

Validation is stateless: a signature check and an expiry comparison, no
store lookup and no lock.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Receive, Scope, Send

from auth.errors import AuthError
from auth.tenant import DEFAULT_TENANT, TENANT_HEADER, resolve_tenant

logger = logging.getLogger("travelauth.gateway")

USER_ID_HEADER = "x-user-id"
ROLES_HEADER = "x-user-roles"
PERMISSIONS_HEADER = "x-user-permissions"
AUTH_TENANT_HEADER = "x-auth-tenant-id"

IDENTITY_HEADERS = frozenset({USER_ID_HEADER, ROLES_HEADER, PERMISSIONS_HEADER, AUTH_TENANT_HEADER})

AUTHORITATIVE = "authoritative"
ADVISORY = "advisory"


def bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an "Authorization: Bearer <token>" value."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class EdgeAuthMiddleware:
    """ASGI middleware validating access tokens and injecting trusted identity.

    The TokenService is looked up on app.state at request time because it is
    created in the lifespan, after middleware construction.

    Usage in api/main.py:
        app.add_middleware(EdgeAuthMiddleware, public_paths=PUBLIC_PATHS)
    """

    def __init__(
        self,
        app: ASGIApp,
        public_paths: Iterable[str] = (),
        protected_prefixes: Iterable[str] = ("/api/",),
        default_tenant: str = DEFAULT_TENANT,
        tenant_header: str = TENANT_HEADER,
        tenant_enforcement: str = AUTHORITATIVE,
    ) -> None:
        if tenant_enforcement not in (AUTHORITATIVE, ADVISORY):
            raise ValueError(f"Unknown tenant enforcement mode: {tenant_enforcement!r}")
        self.app = app
        self.public_paths = frozenset(p.rstrip("/") or "/" for p in public_paths)
        self.protected_prefixes = tuple(protected_prefixes)
        self.default_tenant = default_tenant
        self.tenant_header = tenant_header.lower()
        self.tenant_enforcement = tenant_enforcement

    def is_protected(self, path: str) -> bool:
        normalized = path.rstrip("/") or "/"
        if normalized in self.public_paths:
            return False
        return any(path.startswith(prefix) for prefix in self.protected_prefixes)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        inbound = [(k, v) for k, v in scope["headers"] if k.decode("latin-1").lower() not in IDENTITY_HEADERS]

        if not self.is_protected(scope["path"]):
            await self.app({**scope, "headers": inbound}, receive, send)
            return

        headers = Headers(scope=scope)
        token = bearer_token(headers.get("authorization"))
        if token is None:
            await self._reject(scope, send, "missing bearer token")
            return

        tokens = scope["app"].state.auth.tokens
        try:
            claims = tokens.validate_access_token(token)
        except AuthError as exc:
            await self._reject(scope, send, exc.code)
            return

        tenant_id = resolve_tenant(headers, default=self.default_tenant, header_name=self.tenant_header)
        if self.tenant_enforcement == AUTHORITATIVE and tenant_id != claims.tenant_id:
            await self._reject(scope, send, "tenant mismatch")
            return

        enriched = [(k, v) for k, v in inbound if k.decode("latin-1").lower() != self.tenant_header]
        enriched += [
            (USER_ID_HEADER.encode(), str(claims.user_id).encode()),
            (ROLES_HEADER.encode(), ",".join(sorted(claims.roles)).encode()),
            (PERMISSIONS_HEADER.encode(), ",".join(sorted(claims.permissions)).encode()),
            (AUTH_TENANT_HEADER.encode(), claims.tenant_id.encode("latin-1")),
            (self.tenant_header.encode(), tenant_id.encode("latin-1")),
        ]
        state = {**scope.get("state", {}), "identity": claims, "tenant_id": tenant_id}
        await self.app({**scope, "headers": enriched, "state": state}, receive, send)

    async def _reject(self, scope: Scope, send: Send, reason: str) -> None:
        logger.info("Edge rejected %s %s: %s", scope.get("method", ""), scope["path"], reason)
        await send(
            {
                "type": "http.response.start",
                "status": 401,
                "headers": [(b"content-length", b"0"), (b"www-authenticate", b"Bearer")],
            }
        )
        await send({"type": "http.response.body", "body": b""})
