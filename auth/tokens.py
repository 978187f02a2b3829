"""
auth/tokens.py -- Access/refresh token issuance, validation and rotation.

Security design decisions:
  JWT: python-jose with HS256. Both token classes are signed with SECRET_KEY
       and carry a "type" claim so a refresh token can never be replayed as an
       access token or vice versa.

  Access tokens are stateless. validate_access_token() verifies the signature
       and the expiry and nothing else -- no store lookup, no lock -- so the
       edge can validate every request cheaply. The embedded roles and
       permissions are the issuance-time snapshot.

  Refresh tokens are stateful. Each jti is recorded in RefreshTokenStore and
       redeeming one is a compare-and-swap rotation: the old jti is revoked and
       the new one registered in the same transaction. Two concurrent redeems
       of the same token cannot both win; the loser gets RevokedToken.

Failure kinds are distinct exceptions (MalformedToken, InvalidToken,
ExpiredToken, RevokedToken). The edge filter collapses them all to a bare 401;
the refresh endpoint reports the code so clients know to re-login.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from jose import ExpiredSignatureError, JWTError, jwt

from auth.errors import ExpiredToken, InvalidToken, MalformedToken, RevokedToken
from auth.models import AccessClaims, Grants, IssuedToken, RefreshTokenRecord, TokenPair
from auth.store import RefreshTokenStore

logger = logging.getLogger("travelauth.tokens")

ALGORITHM = "HS256"
ACCESS = "access"
REFRESH = "refresh"

# Loads the *current* grants for (user_id, tenant_id) when a refresh token is
# redeemed. May raise AccountInactive to refuse re-issuance.
GrantsLoader = Callable[[int, str], Grants]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenService:
    """Issues, signs and validates access and refresh tokens.

    Usage:
        service = TokenService(RefreshTokenStore(engine), secret_key=settings.secret_key)
        access = service.issue_access_token(uid, "acme", ["ROLE_USER"], ["BOOKING:READ"])
        claims = service.validate_access_token(access.token)
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        secret_key: str,
        access_ttl: int = 900,
        refresh_ttl: int = 7 * 24 * 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if not secret_key:
            raise ValueError("TokenService requires a signing key")
        self.store = store
        self._secret_key = secret_key
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    # ------------------------------------------------------------------
    # Issuance
    # ------------------------------------------------------------------

    def issue_access_token(
        self,
        user_id: int,
        tenant_id: str,
        roles: list[str] | tuple[str, ...],
        permissions: list[str] | tuple[str, ...] = (),
    ) -> IssuedToken:
        """Sign a short-lived access token. Stateless -- nothing is persisted."""
        now = self._clock()
        expires_at = now + timedelta(seconds=self.access_ttl)
        token_id = uuid.uuid4().hex
        payload = {
            "sub": str(user_id),
            "tenant_id": tenant_id,
            "roles": sorted(set(roles)),
            "permissions": sorted(set(permissions)),
            "iat": now,
            "exp": expires_at,
            "jti": token_id,
            "type": ACCESS,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)

    def issue_refresh_token(self, user_id: int, tenant_id: str) -> IssuedToken:
        """Sign a refresh token and record its jti as live in the revocation store."""
        issued, record = self._new_refresh(user_id, tenant_id)
        self.store.add(record)
        return issued

    def issue_pair(self, user_id: int, tenant_id: str, grants: Grants) -> TokenPair:
        access = self.issue_access_token(user_id, tenant_id, grants.roles, grants.permissions)
        refresh = self.issue_refresh_token(user_id, tenant_id)
        return TokenPair(access=access, refresh=refresh)

    def _new_refresh(self, user_id: int, tenant_id: str) -> tuple[IssuedToken, RefreshTokenRecord]:
        now = self._clock()
        expires_at = now + timedelta(seconds=self.refresh_ttl)
        token_id = uuid.uuid4().hex
        payload = {
            "sub": str(user_id),
            "tenant_id": tenant_id,
            "iat": now,
            "exp": expires_at,
            "jti": token_id,
            "type": REFRESH,
        }
        token = jwt.encode(payload, self._secret_key, algorithm=ALGORITHM)
        record = RefreshTokenRecord(token_id=token_id, user_id=user_id, tenant_id=tenant_id, expires_at=expires_at)
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at), record

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _decode(self, token: str, expected_type: str, verify_exp: bool = True) -> dict:
        """Verify signature (and expiry) and return the raw payload.

        get_unverified_header() only parses the JOSE header; failure there
        means the string is not a JWT at all (MalformedToken) as opposed to a
        well-formed JWT with a bad signature (InvalidToken).
        """
        if not token or not isinstance(token, str):
            raise MalformedToken()
        try:
            jwt.get_unverified_header(token)
        except JWTError as exc:
            raise MalformedToken() from exc
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[ALGORITHM],
                options={"verify_exp": verify_exp},
            )
        except ExpiredSignatureError as exc:
            raise ExpiredToken() from exc
        except JWTError as exc:
            raise InvalidToken() from exc
        if payload.get("type") != expected_type:
            raise InvalidToken()
        for claim in ("sub", "tenant_id", "jti", "exp"):
            if claim not in payload:
                raise InvalidToken()
        if not str(payload["sub"]).isdigit():
            raise InvalidToken()
        return payload

    def validate_access_token(self, token: str) -> AccessClaims:
        """Return verified claims or raise MalformedToken / InvalidToken / ExpiredToken."""
        payload = self._decode(token, ACCESS)
        if not isinstance(payload.get("roles"), list) or not isinstance(payload.get("permissions"), list):
            raise InvalidToken()
        return AccessClaims(
            user_id=int(payload["sub"]),
            tenant_id=payload["tenant_id"],
            roles=frozenset(payload["roles"]),
            permissions=frozenset(payload["permissions"]),
            token_id=payload["jti"],
            issued_at=datetime.fromtimestamp(payload.get("iat", 0), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    # ------------------------------------------------------------------
    # Refresh rotation
    # ------------------------------------------------------------------

    def redeem_refresh_token(self, token: str, load_grants: GrantsLoader) -> TokenPair:
        """Exchange a live refresh token for a fresh pair (rotation).

        Order matters:
          1. Signature/expiry/type check (no store access).
          2. Store lookup -- unknown jti is InvalidToken, revoked is RevokedToken.
          3. load_grants() reads the user's current roles; may raise
             AccountInactive without burning the token.
          4. Compare-and-swap rotation. Losing the race (or the token expiring
             in between) is classified from a fresh read.
        """
        payload = self._decode(token, REFRESH)
        token_id = payload["jti"]
        record = self.store.get(token_id)
        if record is None:
            raise InvalidToken()
        if record.revoked:
            logger.warning("Revoked refresh token presented user_id=%s tenant=%s", record.user_id, record.tenant_id)
            raise RevokedToken()

        grants = load_grants(record.user_id, record.tenant_id)
        access = self.issue_access_token(record.user_id, record.tenant_id, grants.roles, grants.permissions)
        refresh, new_record = self._new_refresh(record.user_id, record.tenant_id)

        if not self.store.rotate(token_id, new_record, self._clock()):
            current = self.store.get(token_id)
            if current is not None and current.revoked:
                logger.warning("Concurrent refresh lost race user_id=%s tenant=%s", record.user_id, record.tenant_id)
                raise RevokedToken()
            raise ExpiredToken()
        return TokenPair(access=access, refresh=refresh)

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke(self, token_id: str) -> None:
        """Mark a refresh token id revoked. Idempotent."""
        self.store.revoke(token_id)

    def revoke_refresh_token(self, token: str) -> None:
        """Revoke the refresh token a client presents (logout).

        Expiry is not checked: logging out with an expired token is harmless.
        Malformed or forged tokens carry no trustworthy jti and are ignored.
        """
        try:
            payload = self._decode(token, REFRESH, verify_exp=False)
        except InvalidToken:
            logger.info("Ignoring logout with an unverifiable refresh token")
            return
        self.revoke(payload["jti"])

    def revoke_all_for_user(self, user_id: int) -> int:
        return self.store.revoke_all_for_user(user_id)

    def purge_expired(self) -> int:
        return self.store.purge_expired(self._clock())
