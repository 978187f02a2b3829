"""
tests/test_tokens.py -- Unit tests for auth.tokens.TokenService.

Coverage:
  - Access tokens: claim round trip, malformed vs forged vs expired, type confusion
  - Refresh rotation: old token dead after use, unknown jti, expiry
  - Concurrent redemption: exactly one of two racing redeems wins
  - Grants are reloaded on refresh; a refused reload does not burn the token
  - Logout-style revocation is idempotent and ignores garbage
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest

from auth.errors import AccountInactive, ExpiredToken, InvalidToken, MalformedToken, RevokedToken
from auth.models import Grants
from auth.store import RefreshTokenStore, create_store_engine
from auth.tokens import TokenService

SECRET = "s" * 48
USER_GRANTS = Grants(roles=("ROLE_USER",), permissions=("BOOKING:READ", "USER:READ"))


def _grants(_user_id: int, _tenant_id: str) -> Grants:
    return USER_GRANTS


@pytest.fixture
def tokens(engine) -> TokenService:
    return TokenService(RefreshTokenStore(engine), secret_key=SECRET)


def _past_clock(hours: int = 48):
    return lambda: datetime.now(timezone.utc) - timedelta(hours=hours)


class TestAccessTokens:
    def test_claims_round_trip(self, tokens: TokenService) -> None:
        issued = tokens.issue_access_token(7, "acme", ["ROLE_USER"], ["BOOKING:READ"])
        claims = tokens.validate_access_token(issued.token)
        assert claims.user_id == 7
        assert claims.tenant_id == "acme"
        assert claims.roles == frozenset({"ROLE_USER"})
        assert claims.permissions == frozenset({"BOOKING:READ"})
        assert claims.token_id == issued.token_id

    def test_expiry_uses_configured_lifetime(self, engine) -> None:
        service = TokenService(RefreshTokenStore(engine), secret_key=SECRET, access_ttl=60)
        issued = service.issue_access_token(1, "default", [])
        remaining = (issued.expires_at - datetime.now(timezone.utc)).total_seconds()
        assert 50 < remaining <= 60

    def test_garbage_is_malformed(self, tokens: TokenService) -> None:
        with pytest.raises(MalformedToken):
            tokens.validate_access_token("not-a-jwt")

    def test_empty_token_is_malformed(self, tokens: TokenService) -> None:
        with pytest.raises(MalformedToken):
            tokens.validate_access_token("")

    def test_foreign_signature_is_invalid_not_malformed(self, engine, tokens: TokenService) -> None:
        other = TokenService(RefreshTokenStore(engine), secret_key="x" * 48)
        forged = other.issue_access_token(1, "default", ["ROLE_ADMIN"]).token
        with pytest.raises(InvalidToken) as excinfo:
            tokens.validate_access_token(forged)
        assert not isinstance(excinfo.value, MalformedToken)

    def test_expired_access_token(self, engine) -> None:
        stale = TokenService(RefreshTokenStore(engine), secret_key=SECRET, clock=_past_clock())
        token = stale.issue_access_token(1, "default", []).token
        with pytest.raises(ExpiredToken):
            TokenService(RefreshTokenStore(engine), secret_key=SECRET).validate_access_token(token)

    def test_refresh_token_rejected_as_access(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(1, "default").token
        with pytest.raises(InvalidToken):
            tokens.validate_access_token(refresh)

    def test_access_token_rejected_as_refresh(self, tokens: TokenService) -> None:
        access = tokens.issue_access_token(1, "default", []).token
        with pytest.raises(InvalidToken):
            tokens.redeem_refresh_token(access, _grants)


class TestRefreshRotation:
    def test_redeem_returns_new_pair_and_kills_old(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(3, "acme")
        pair = tokens.redeem_refresh_token(refresh.token, _grants)
        assert pair.refresh.token != refresh.token
        claims = tokens.validate_access_token(pair.access.token)
        assert (claims.user_id, claims.tenant_id) == (3, "acme")
        with pytest.raises(RevokedToken):
            tokens.redeem_refresh_token(refresh.token, _grants)

    def test_rotated_token_is_redeemable(self, tokens: TokenService) -> None:
        first = tokens.issue_refresh_token(3, "acme")
        second = tokens.redeem_refresh_token(first.token, _grants).refresh
        third = tokens.redeem_refresh_token(second.token, _grants).refresh
        assert len({first.token_id, second.token_id, third.token_id}) == 3
        record = tokens.store.get(first.token_id)
        assert record.revoked and record.replaced_by == second.token_id

    def test_unknown_token_id_is_invalid(self, tmp_path, tokens: TokenService) -> None:
        other_engine = create_store_engine(f"sqlite:///{tmp_path / 'other.db'}")
        try:
            elsewhere = TokenService(RefreshTokenStore(other_engine), secret_key=SECRET)
            token = elsewhere.issue_refresh_token(1, "default").token
        finally:
            other_engine.dispose()
        with pytest.raises(InvalidToken):
            tokens.redeem_refresh_token(token, _grants)

    def test_expired_refresh_token(self, engine) -> None:
        stale = TokenService(RefreshTokenStore(engine), secret_key=SECRET, refresh_ttl=3600, clock=_past_clock())
        token = stale.issue_refresh_token(1, "default").token
        with pytest.raises(ExpiredToken):
            TokenService(RefreshTokenStore(engine), secret_key=SECRET).redeem_refresh_token(token, _grants)

    def test_refresh_embeds_current_grants(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(5, "default")
        promoted = Grants(roles=("ROLE_ADMIN",), permissions=("RBAC:READ",))
        pair = tokens.redeem_refresh_token(refresh.token, lambda uid, tid: promoted)
        claims = tokens.validate_access_token(pair.access.token)
        assert claims.roles == frozenset({"ROLE_ADMIN"})
        assert claims.permissions == frozenset({"RBAC:READ"})

    def test_refused_reload_does_not_burn_token(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(5, "default")

        def inactive(_uid: int, _tid: str) -> Grants:
            raise AccountInactive()

        with pytest.raises(AccountInactive):
            tokens.redeem_refresh_token(refresh.token, inactive)
        assert tokens.redeem_refresh_token(refresh.token, _grants).refresh.token


class TestConcurrentRedeem:
    def test_exactly_one_of_two_concurrent_redeems_wins(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(9, "default").token
        barrier = threading.Barrier(2)
        outcomes: list[object] = []
        lock = threading.Lock()

        def redeem() -> None:
            barrier.wait()
            try:
                result: object = tokens.redeem_refresh_token(refresh, _grants)
            except RevokedToken as exc:
                result = exc
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=redeem) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert len(outcomes) == 2
        losers = [o for o in outcomes if isinstance(o, RevokedToken)]
        assert len(losers) == 1

    def test_sequential_loop_never_double_spends(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(9, "default").token
        wins = 0
        for _ in range(5):
            try:
                tokens.redeem_refresh_token(refresh, _grants)
                wins += 1
            except RevokedToken:
                pass
        assert wins == 1


class TestRevocation:
    def test_revoke_is_idempotent(self, tokens: TokenService) -> None:
        refresh = tokens.issue_refresh_token(2, "default")
        tokens.revoke(refresh.token_id)
        tokens.revoke(refresh.token_id)
        with pytest.raises(RevokedToken):
            tokens.redeem_refresh_token(refresh.token, _grants)

    def test_revoke_refresh_token_ignores_garbage(self, tokens: TokenService) -> None:
        tokens.revoke_refresh_token("garbage")
        tokens.revoke_refresh_token(tokens.issue_access_token(1, "default", []).token)

    def test_revoke_all_for_user(self, tokens: TokenService) -> None:
        a = tokens.issue_refresh_token(4, "default")
        b = tokens.issue_refresh_token(4, "default")
        other = tokens.issue_refresh_token(5, "default")
        assert tokens.revoke_all_for_user(4) == 2
        for issued in (a, b):
            with pytest.raises(RevokedToken):
                tokens.redeem_refresh_token(issued.token, _grants)
        assert tokens.redeem_refresh_token(other.token, _grants)

    def test_purge_removes_only_expired(self, engine) -> None:
        stale = TokenService(RefreshTokenStore(engine), secret_key=SECRET, refresh_ttl=60, clock=_past_clock())
        old = stale.issue_refresh_token(1, "default")
        fresh = TokenService(RefreshTokenStore(engine), secret_key=SECRET)
        live = fresh.issue_refresh_token(1, "default")
        assert fresh.purge_expired() == 1
        assert fresh.store.get(old.token_id) is None
        assert fresh.store.get(live.token_id) is not None
