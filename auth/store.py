"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore, RefreshTokenStore and OneTimeTokenStore are the repositories;
the _row_to_* functions are the mappers. Services and routes never touch SQL
directly. RBACStore (auth/rbac.py) shares the schema defined here.

All stores in a process share one Engine built by create_store_engine(), so
the users, roles and token tables live in a single database and join rows can
be validated against their parents in the same connection.

Security:
  All queries use bound parameters. No f-strings in SQL.

  UNIQUE(tenant_id, username) and UNIQUE(tenant_id, email) are database
  constraints, so two concurrent registrations of the same identity cannot
  both commit. create_user() lets the IntegrityError propagate; the auth
  service maps it to DuplicateUsername / DuplicateEmail.

  Single-winner transitions (refresh-token rotation, one-time token
  consumption) are compare-and-swap UPDATEs: the WHERE clause carries the
  expected old state and rowcount tells the caller whether it won.

Timestamps: audit columns are ISO 8601 strings; expiry columns are REAL epoch
seconds so range comparisons are plain numeric comparisons in SQL.

DB path: auth/travelauth.db by default (see core.config.Settings.database_url).

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    or_,
)
from sqlalchemy.engine import Engine

from auth.models import OneTimeToken, RefreshTokenRecord, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(100), nullable=False, index=True),
    Column("username", String(255), nullable=False),
    Column("email", String(255), nullable=False),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone_number", String(32)),
    Column("profile_picture_url", Text),
    Column("preferred_language", String(16)),
    Column("timezone", String(64)),
    Column("is_email_verified", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_login_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("tenant_id", "username", name="uq_users_tenant_username"),
    UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
)

roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(100), nullable=False, index=True),
    Column("name", String(50), nullable=False),
    Column("description", String(255)),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("tenant_id", "name", name="uq_roles_tenant_name"),
)

permissions = Table(
    "permissions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("tenant_id", String(100), nullable=False, index=True),
    Column("name", String(100), nullable=False),
    Column("description", String(255)),
    Column("resource", String(50), nullable=False),
    Column("action", String(50), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("tenant_id", "name", name="uq_permissions_tenant_name"),
)

# Join collections carry tenant_id on every row; RBACStore checks that both
# parents share it before inserting.
role_permissions = Table(
    "role_permissions",
    metadata,
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("permission_id", Integer, ForeignKey("permissions.id"), primary_key=True),
    Column("tenant_id", String(100), nullable=False),
)

user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
    Column("tenant_id", String(100), nullable=False),
)

refresh_tokens = Table(
    "refresh_tokens",
    metadata,
    Column("token_id", String(64), primary_key=True),  # JWT jti
    Column("user_id", Integer, nullable=False, index=True),
    Column("tenant_id", String(100), nullable=False),
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(32)),
    Column("replaced_by", String(64)),
    Column("created_at", String(32), nullable=False),
)

one_time_tokens = Table(
    "one_time_tokens",
    metadata,
    Column("token_hash", String(64), primary_key=True),  # HMAC-SHA256 hex
    Column("purpose", String(32), nullable=False),
    Column("user_id", Integer, nullable=False, index=True),
    Column("tenant_id", String(100), nullable=False),
    Column("expires_at", Float, nullable=False),  # epoch seconds
    Column("used_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def create_store_engine(db_url: str) -> Engine:
    """Build the shared Engine and create any missing tables."""
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_wal_mode)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        engine = create_store_engine("sqlite:///:memory:")
        store = UserStore(engine)
        uid = store.create_user(User(tenant_id="acme", username="ana", email="ana@acme.io", hashed_password=h))
        user = store.get_by_username("acme", "ana")
    """

    # Columns update_user() accepts. Anything else is a programming error.
    _MUTABLE_FIELDS: set = {
        "email",
        "hashed_password",
        "first_name",
        "last_name",
        "phone_number",
        "profile_picture_url",
        "preferred_language",
        "timezone",
        "is_email_verified",
        "is_active",
    }

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email is
        already registered in the same tenant.
        """
        stamp = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                users.insert().values(
                    tenant_id=user.tenant_id,
                    username=user.username,
                    email=user.email,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    phone_number=user.phone_number,
                    profile_picture_url=user.profile_picture_url,
                    preferred_language=user.preferred_language,
                    timezone=user.timezone,
                    is_email_verified=1 if user.is_email_verified else 0,
                    is_active=1 if user.is_active else 0,
                    created_at=stamp,
                    updated_at=stamp,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(users.select().where(users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, tenant_id: str, username: str) -> User | None:
        """Exact, case-sensitive username lookup within one tenant."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where((users.c.tenant_id == tenant_id) & (users.c.username == username))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, tenant_id: str, email: str) -> User | None:
        """Email lookup within one tenant. Emails are stored lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(
                users.select().where((users.c.tenant_id == tenant_id) & (users.c.email == email.lower()))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_login(self, tenant_id: str, identifier: str) -> User | None:
        """Resolve a login identifier that may be either a username or an email.

        A username match wins over an email match so a user whose username
        happens to look like someone else's email still logs in as themselves.
        """
        with self.engine.connect() as conn:
            rows = conn.execute(
                users.select().where(
                    (users.c.tenant_id == tenant_id)
                    & or_(users.c.username == identifier, users.c.email == identifier.lower())
                )
            ).fetchall()
        if not rows:
            return None
        for row in rows:
            if row.username == identifier:
                return _row_to_user(row)
        return _row_to_user(rows[0])

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Booleans are converted to int for SQLite. updated_at is always stamped.
        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - self._MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        for flag in ("is_active", "is_email_verified"):
            if flag in fields:
                fields[flag] = 1 if fields[flag] else 0
        fields["updated_at"] = now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(users.update().where(users.c.id == user_id).values(**fields))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login_at for the given user."""
        with self.engine.begin() as conn:
            conn.execute(users.update().where(users.c.id == user_id).values(last_login_at=now_iso()))


# ---------------------------------------------------------------------------
# Refresh-token revocation store
# ---------------------------------------------------------------------------


class RefreshTokenStore:
    """Authoritative record of which refresh tokens are still redeemable.

    The one piece of shared mutable state across concurrent requests. rotate()
    is the only path that retires a live token in exchange for a new one and
    it is a single compare-and-swap: exactly one concurrent caller sees
    rowcount == 1.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def add(self, record: RefreshTokenRecord) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                refresh_tokens.insert().values(
                    token_id=record.token_id,
                    user_id=record.user_id,
                    tenant_id=record.tenant_id,
                    expires_at=_to_epoch(record.expires_at),
                    revoked=0,
                    created_at=now_iso(),
                )
            )

    def get(self, token_id: str) -> RefreshTokenRecord | None:
        with self.engine.connect() as conn:
            row = conn.execute(refresh_tokens.select().where(refresh_tokens.c.token_id == token_id)).fetchone()
        return _row_to_refresh(row) if row is not None else None

    def rotate(self, old_token_id: str, new_record: RefreshTokenRecord, now: datetime) -> bool:
        """Atomically retire old_token_id and register new_record.

        The UPDATE only matches a row that is still live (not revoked, not
        expired). If it matches nothing, the transaction inserts nothing and
        False is returned; the caller decides which failure that was.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where(
                    (refresh_tokens.c.token_id == old_token_id)
                    & (refresh_tokens.c.revoked == 0)
                    & (refresh_tokens.c.expires_at > _to_epoch(now))
                )
                .values(revoked=1, revoked_at=now_iso(), replaced_by=new_record.token_id)
            )
            if result.rowcount != 1:
                return False
            conn.execute(
                refresh_tokens.insert().values(
                    token_id=new_record.token_id,
                    user_id=new_record.user_id,
                    tenant_id=new_record.tenant_id,
                    expires_at=_to_epoch(new_record.expires_at),
                    revoked=0,
                    created_at=now_iso(),
                )
            )
        return True

    def revoke(self, token_id: str) -> bool:
        """Mark one token revoked. Idempotent; returns True only on the first call."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.token_id == token_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso())
            )
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int) -> int:
        """Revoke every live token of a user. Returns how many were revoked."""
        with self.engine.begin() as conn:
            result = conn.execute(
                refresh_tokens.update()
                .where((refresh_tokens.c.user_id == user_id) & (refresh_tokens.c.revoked == 0))
                .values(revoked=1, revoked_at=now_iso())
            )
        return result.rowcount

    def purge_expired(self, now: datetime) -> int:
        """Delete rows past their natural expiry. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(refresh_tokens.delete().where(refresh_tokens.c.expires_at <= _to_epoch(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# One-time tokens (email verification, password reset)
# ---------------------------------------------------------------------------


class OneTimeTokenStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get(self, token_hash: str, purpose: str) -> OneTimeToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                one_time_tokens.select().where(
                    (one_time_tokens.c.token_hash == token_hash) & (one_time_tokens.c.purpose == purpose)
                )
            ).fetchone()
        return _row_to_one_time(row) if row is not None else None

    def consume(self, token_hash: str, purpose: str, now: datetime) -> bool:
        """Mark an unused, unexpired token as used. True only for the single winner."""
        with self.engine.begin() as conn:
            result = conn.execute(
                one_time_tokens.update()
                .where(
                    (one_time_tokens.c.token_hash == token_hash)
                    & (one_time_tokens.c.purpose == purpose)
                    & one_time_tokens.c.used_at.is_(None)
                    & (one_time_tokens.c.expires_at > _to_epoch(now))
                )
                .values(used_at=now_iso())
            )
        return result.rowcount == 1

    def replace(self, token: OneTimeToken) -> None:
        """Store token as the user's only unused token for its purpose.

        The DELETE and INSERT share one transaction. The DELETE is its first
        statement, so it takes the write lock and concurrent re-issues for
        the same user run one after another; the last to commit leaves the
        single live token.
        """
        with self.engine.begin() as conn:
            conn.execute(
                one_time_tokens.delete().where(
                    (one_time_tokens.c.user_id == token.user_id)
                    & (one_time_tokens.c.purpose == token.purpose)
                    & one_time_tokens.c.used_at.is_(None)
                )
            )
            conn.execute(
                one_time_tokens.insert().values(
                    token_hash=token.token_hash,
                    purpose=token.purpose,
                    user_id=token.user_id,
                    tenant_id=token.tenant_id,
                    expires_at=_to_epoch(token.expires_at),
                    created_at=now_iso(),
                )
            )

    def purge_expired(self, now: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(one_time_tokens.delete().where(one_time_tokens.c.expires_at <= _to_epoch(now)))
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        phone_number=row.phone_number,
        profile_picture_url=row.profile_picture_url,
        preferred_language=row.preferred_language,
        timezone=row.timezone,
        is_email_verified=bool(row.is_email_verified),
        is_active=bool(row.is_active),
        last_login_at=row.last_login_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_refresh(row) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        token_id=row.token_id,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        expires_at=_from_epoch(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=row.revoked_at,
        replaced_by=row.replaced_by,
        created_at=row.created_at,
    )


def _row_to_one_time(row) -> OneTimeToken:
    return OneTimeToken(
        token_hash=row.token_hash,
        purpose=row.purpose,
        user_id=row.user_id,
        tenant_id=row.tenant_id,
        expires_at=_from_epoch(row.expires_at),
        used_at=row.used_at,
        created_at=row.created_at,
    )
