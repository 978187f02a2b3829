"""
auth/one_time.py -- Single-use, time-bounded tokens for email verification
and password reset.

The raw token is secrets.token_urlsafe(32) (256 bits of entropy) and is
returned ONCE, to be delivered out of band. Only HMAC-SHA256(SECRET_KEY, raw)
is stored: a leaked database row cannot be replayed without the key, and the
deterministic hash gives an O(1) primary-key lookup where bcrypt's slowness
would buy nothing for a high-entropy secret.

consume() is a compare-and-swap on used_at, so of two concurrent redemptions
exactly one succeeds and the other sees AlreadyUsed.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import AlreadyUsed, ExpiredToken, InvalidToken
from auth.models import OneTimeToken
from auth.store import OneTimeTokenStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OneTimeTokens:
    def __init__(
        self,
        store: OneTimeTokenStore,
        secret_key: str,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self._secret_key = secret_key
        self._clock = clock

    def hash_token(self, raw_token: str) -> str:
        return hmac.new(self._secret_key.encode(), raw_token.encode(), hashlib.sha256).hexdigest()

    def issue(self, user_id: int, tenant_id: str, purpose: str, ttl_seconds: int) -> str:
        """Create a token for the user, superseding any unused one for the same purpose.

        Superseding keeps a retried request from leaving several live tokens
        behind: only the most recently issued token can be redeemed.
        """
        raw = secrets.token_urlsafe(32)
        self.store.replace(
            OneTimeToken(
                token_hash=self.hash_token(raw),
                purpose=purpose,
                user_id=user_id,
                tenant_id=tenant_id,
                expires_at=self._clock() + timedelta(seconds=ttl_seconds),
            )
        )
        return raw

    def peek(self, raw_token: str, purpose: str) -> OneTimeToken:
        """Return the live token record without consuming it.

        Raises the same errors consume() would, so callers can validate a
        token before doing work that must not happen for a bad one.
        """
        if not raw_token:
            raise InvalidToken()
        record = self.store.get(self.hash_token(raw_token), purpose)
        if record is None:
            raise InvalidToken()
        if record.used_at is not None:
            raise AlreadyUsed()
        if record.expires_at <= self._clock():
            raise ExpiredToken()
        return record

    def consume(self, raw_token: str, purpose: str) -> OneTimeToken:
        """Redeem a token exactly once.

        Raises InvalidToken (unknown), AlreadyUsed (redeemed before) or
        ExpiredToken (past its lifetime).
        """
        record = self.peek(raw_token, purpose)
        if not self.store.consume(record.token_hash, purpose, self._clock()):
            current = self.store.get(record.token_hash, purpose)
            if current is None:
                raise InvalidToken()
            if current.used_at is not None:
                raise AlreadyUsed()
            raise ExpiredToken()
        return record

    def purge_expired(self) -> int:
        return self.store.purge_expired(self._clock())
