"""
auth/store.py -- SQLAlchemy Core persistence layer for identities and their tokens.

Pattern: Repository + Data Mapper. UserStore is the repository; _row_to_user
and the _row_to_*_token functions are the mappers. Services and routes
never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

Concurrency:
  The mutation hotspots are single conditional UPDATEs inside one
  transaction, so the database (not application code) decides the winner:

  apply_role()         -- the WHERE clause only matches rows the new role may
                          legally replace. ORGANIZER is never overwritten
                          through this path, even by a racing request that
                          read a stale MEMBER.
  redeem_reset_token() -- "consumed_at IS NULL AND expires_at > now" is
                          checked and set in one statement. Exactly one of N
                          concurrent redemptions sees rowcount == 1; the
                          credential update commits with that claim or not
                          at all.
  redeem_verification_token() -- the same claim for email verification.

  Each of these transactions starts with its write, never with a read, so
  SQLite in WAL mode serializes them through the busy timeout instead of
  failing with a stale read snapshot.

DB path: auth/plannr_auth.db unless DATABASE_URL says otherwise.

Layer rule: may import from core/ and auth.models only.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import EmailVerificationToken, PasswordResetToken, Role, User, normalize_email, normalize_role
from core.config import get_settings

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),  # always lower-cased
    # NULL = not chosen yet. The CHECK keeps the closed Role set at the DB layer.
    Column("role", String(16), CheckConstraint("role IN ('MEMBER', 'ORGANIZER')", name="ck_users_role")),
    Column("hashed_password", Text),
    Column("name", String(255)),
    Column("created_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("email_verified_at", String(32)),  # NULL = address not proven yet
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),  # NULL = still redeemable
    Column("created_at", String(32), nullable=False),
)

_verification_tokens = Table(
    "email_verification_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(32), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # SHA-256 hex
    Column("expires_at", String(32), nullable=False),
    Column("consumed_at", String(32)),
    Column("created_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers never block on a writer.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def to_iso(moment: datetime) -> str:
    # Fixed width (always microseconds, always UTC) so ISO strings compare
    # correctly as text inside SQL WHERE clauses.
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users and their single-use tokens (reset and verification).

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="ada@example.com", hashed_password=hash_password("secret")))
        effective, changed = store.apply_role(uid, Role.ORGANIZER)
        store.close()
    """

    def __init__(self, db_url: str | None = None, timeout: float | None = None) -> None:
        settings = get_settings()
        db_url = db_url or settings.database_url
        timeout = timeout if timeout is not None else settings.store_timeout_seconds
        connect_args: dict = {}
        engine_kwargs: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            # Busy timeout: how long a writer waits for the write lock.
            connect_args["timeout"] = timeout
        else:
            engine_kwargs["pool_timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, **engine_kwargs)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        if db_url.startswith("sqlite"):
            self._ensure_email_verified_column()

    def _ensure_email_verified_column(self) -> None:
        """Add users.email_verified_at to databases created before it existed.

        Accounts that predate the column signed up without a verification
        step, so they are marked verified as of their creation time rather
        than locked out.
        """
        with self.engine.connect() as conn:
            existing_cols = {row[1] for row in conn.execute(text("PRAGMA table_info(users)")).fetchall()}
            if "email_verified_at" not in existing_cols:
                conn.execute(text("ALTER TABLE users ADD COLUMN email_verified_at TEXT"))
                conn.execute(text("UPDATE users SET email_verified_at = created_at"))
                conn.commit()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its assigned id.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        user_id = user.id or uuid.uuid4().hex
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    role=user.role.value if user.role is not None else None,
                    hashed_password=user.hashed_password,
                    name=user.name,
                    created_at=_now_iso(),
                    is_active=1 if user.is_active else 0,
                    email_verified_at=user.email_verified_at,
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email (normalized). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_role(self, user_id: str) -> Role | None:
        """Current stored role, or None if unset or the user does not exist."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_users.c.role).where(_users.c.id == user_id)).fetchone()
        return normalize_role(row.role) if row is not None else None

    def apply_role(self, user_id: str, desired: Role) -> tuple[Role, bool] | None:
        """Write desired as the user's role where the monotonic rule allows it.

        ORGANIZER may replace NULL or MEMBER; MEMBER may only replace NULL.
        Anything else leaves the row untouched. The UPDATE and the read-back
        share one transaction, so the returned role is the committed state.

        Returns (effective_role, changed), or None if user_id does not exist.
        """
        if desired is Role.ORGANIZER:
            allowed = or_(_users.c.role.is_(None), _users.c.role == Role.MEMBER.value)
        else:
            allowed = _users.c.role.is_(None)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where((_users.c.id == user_id) & allowed).values(role=desired.value)
            )
            stored = conn.execute(select(_users.c.role).where(_users.c.id == user_id)).fetchone()
        if stored is None:
            return None
        effective = normalize_role(stored.role)
        if effective is None:
            # Unreachable: the UPDATE above fills a NULL role.
            raise RuntimeError(f"user {user_id} has no role after apply_role")
        return effective, result.rowcount > 0

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_reset_token(self, record: PasswordResetToken) -> int:
        """Persist a reset token commitment and return its row id.

        Consumed and expired tokens for the same user are cleared first so the
        table only holds redeemable records plus the new one.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.delete().where(
                    (_reset_tokens.c.user_id == record.user_id)
                    & (_reset_tokens.c.consumed_at.is_not(None) | (_reset_tokens.c.expires_at <= now))
                )
            )
            result = conn.execute(
                _reset_tokens.insert().values(
                    user_id=record.user_id,
                    token_hash=record.token_hash,
                    expires_at=record.expires_at,
                    consumed_at=None,
                    created_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        """Look up a reset token by commitment. O(1) via the UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def redeem_reset_token(self, token_hash: str, new_hashed_password: str, now: datetime) -> str | None:
        """Atomically consume a reset token and set the owner's password.

        Returns the user id on success. Returns None (and changes nothing) if
        the token is unknown, expired, or already consumed -- including when a
        concurrent redemption claimed it first.
        """
        now_iso = to_iso(now)
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _reset_tokens.update()
                .where(
                    (_reset_tokens.c.token_hash == token_hash)
                    & _reset_tokens.c.consumed_at.is_(None)
                    & (_reset_tokens.c.expires_at > now_iso)
                )
                .values(consumed_at=now_iso)
            )
            if claimed.rowcount != 1:
                return None
            row = conn.execute(
                select(_reset_tokens.c.user_id).where(_reset_tokens.c.token_hash == token_hash)
            ).fetchone()
            user_id = row.user_id
            conn.execute(_users.update().where(_users.c.id == user_id).values(hashed_password=new_hashed_password))
            # Any other outstanding link for this user dies with this one.
            conn.execute(
                _reset_tokens.update()
                .where((_reset_tokens.c.user_id == user_id) & _reset_tokens.c.consumed_at.is_(None))
                .values(consumed_at=now_iso)
            )
        return user_id

    def purge_reset_tokens(self, now: datetime | None = None) -> int:
        """Delete consumed and expired reset tokens. Returns rows removed."""
        now_iso = to_iso(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(
                _reset_tokens.delete().where(
                    _reset_tokens.c.consumed_at.is_not(None) | (_reset_tokens.c.expires_at <= now_iso)
                )
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Email verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(self, record: EmailVerificationToken) -> int:
        """Persist a verification token commitment and return its row id.

        Earlier unexpired tokens for the user stay valid so an older email
        still works after a resend.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _verification_tokens.delete().where(
                    (_verification_tokens.c.user_id == record.user_id)
                    & (_verification_tokens.c.consumed_at.is_not(None) | (_verification_tokens.c.expires_at <= now))
                )
            )
            result = conn.execute(
                _verification_tokens.insert().values(
                    user_id=record.user_id,
                    token_hash=record.token_hash,
                    expires_at=record.expires_at,
                    consumed_at=None,
                    created_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def latest_verification_token(self, user_id: str) -> EmailVerificationToken | None:
        """Most recently issued verification token for user_id, if any."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _verification_tokens.select()
                .where(_verification_tokens.c.user_id == user_id)
                .order_by(_verification_tokens.c.created_at.desc(), _verification_tokens.c.id.desc())
                .limit(1)
            ).fetchone()
        return _row_to_verification_token(row) if row is not None else None

    def redeem_verification_token(self, token_hash: str, now: datetime) -> str | None:
        """Atomically consume a verification token and mark its owner verified.

        Same conditional claim as redeem_reset_token(). Returns the user id,
        or None if the token is unknown, expired or already used. A user who
        was verified earlier keeps the original timestamp.
        """
        now_iso = to_iso(now)
        with self.engine.begin() as conn:
            claimed = conn.execute(
                _verification_tokens.update()
                .where(
                    (_verification_tokens.c.token_hash == token_hash)
                    & _verification_tokens.c.consumed_at.is_(None)
                    & (_verification_tokens.c.expires_at > now_iso)
                )
                .values(consumed_at=now_iso)
            )
            if claimed.rowcount != 1:
                return None
            row = conn.execute(
                select(_verification_tokens.c.user_id).where(_verification_tokens.c.token_hash == token_hash)
            ).fetchone()
            user_id = row.user_id
            conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.email_verified_at.is_(None))
                .values(email_verified_at=now_iso)
            )
            conn.execute(
                _verification_tokens.update()
                .where((_verification_tokens.c.user_id == user_id) & _verification_tokens.c.consumed_at.is_(None))
                .values(consumed_at=now_iso)
            )
        return user_id

    def purge_verification_tokens(self, now: datetime | None = None) -> int:
        """Delete consumed and expired verification tokens. Returns rows removed."""
        now_iso = to_iso(now or datetime.now(timezone.utc))
        with self.engine.begin() as conn:
            result = conn.execute(
                _verification_tokens.delete().where(
                    _verification_tokens.c.consumed_at.is_not(None) | (_verification_tokens.c.expires_at <= now_iso)
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        role=normalize_role(row.role),
        hashed_password=row.hashed_password,
        name=row.name,
        created_at=row.created_at,
        is_active=bool(row.is_active),
        email_verified_at=row.email_verified_at,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
        created_at=row.created_at,
    )


def _row_to_verification_token(row) -> EmailVerificationToken:
    return EmailVerificationToken(
        id=row.id,
        user_id=row.user_id,
        token_hash=row.token_hash,
        expires_at=row.expires_at,
        consumed_at=row.consumed_at,
        created_at=row.created_at,
    )
