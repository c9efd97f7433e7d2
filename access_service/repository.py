"""Database repositories for local accounts, invites, access profiles and activity."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from .domain.account import AccessProfile, Account
from .domain.contracts import CreateAccountInput, CreateInviteInput, CreateProfileInput
from .domain.invite import ExpiryOffsets, Invite
from .errors import ConflictError

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS roles (
    role_id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

INSERT INTO roles (name, description, is_default)
SELECT 'Member', 'Default role for invited accounts', TRUE
WHERE NOT EXISTS (SELECT 1 FROM roles);

CREATE TABLE IF NOT EXISTS accounts (
    account_id BIGSERIAL PRIMARY KEY,
    username TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    remote_account_id TEXT,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE,
    disabled BOOLEAN NOT NULL DEFAULT FALSE,
    expires_at TIMESTAMPTZ,
    role_id BIGINT REFERENCES roles(role_id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE UNIQUE INDEX IF NOT EXISTS accounts_username_key ON accounts (lower(username));
CREATE UNIQUE INDEX IF NOT EXISTS accounts_remote_account_id_key
    ON accounts (remote_account_id) WHERE remote_account_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS accounts_expiry_idx
    ON accounts (expires_at) WHERE disabled = FALSE AND expires_at IS NOT NULL;

CREATE TABLE IF NOT EXISTS access_profiles (
    profile_id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    source_remote_account_id TEXT NOT NULL,
    library_folder_ids JSONB NOT NULL DEFAULT '[]',
    home_layout JSONB NOT NULL DEFAULT '{}',
    is_default BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS invites (
    invite_id BIGSERIAL PRIMARY KEY,
    code TEXT NOT NULL UNIQUE,
    label TEXT,
    profile_id BIGINT,
    role_id BIGINT REFERENCES roles(role_id) ON DELETE SET NULL,
    max_uses INTEGER CHECK (max_uses IS NULL OR max_uses >= 0),
    used_count INTEGER NOT NULL DEFAULT 0,
    pending_count INTEGER NOT NULL DEFAULT 0 CHECK (pending_count >= 0),
    expires_at TIMESTAMPTZ,
    account_expiry_enabled BOOLEAN NOT NULL DEFAULT FALSE,
    account_expiry_months INTEGER NOT NULL DEFAULT 0,
    account_expiry_days INTEGER NOT NULL DEFAULT 0,
    account_expiry_hours INTEGER NOT NULL DEFAULT 0,
    account_expiry_minutes INTEGER NOT NULL DEFAULT 0,
    created_by TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CHECK (max_uses IS NULL OR used_count <= max_uses)
);

CREATE TABLE IF NOT EXISTS activity_log (
    audit_id BIGSERIAL PRIMARY KEY,
    account_id BIGINT,
    username TEXT,
    remote_account_id TEXT,
    invite_code TEXT,
    event_type TEXT NOT NULL,
    actor TEXT,
    metadata JSONB NOT NULL DEFAULT '{}',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS activity_log_created_idx ON activity_log (created_at DESC, audit_id DESC);
"""

_ACCOUNT_COLUMNS = (
    "account_id, username, password_hash, remote_account_id, is_admin, disabled, "
    "expires_at, role_id, created_at, updated_at"
)
_INVITE_COLUMNS = (
    "invite_id, code, label, profile_id, role_id, max_uses, used_count, expires_at, "
    "account_expiry_enabled, account_expiry_months, account_expiry_days, "
    "account_expiry_hours, account_expiry_minutes, created_by, created_at, pending_count"
)
_PROFILE_COLUMNS = (
    "profile_id, name, source_remote_account_id, library_folder_ids, home_layout, is_default, created_at"
)

# An invite is terminal once expired or out of uses, but never while a
# redemption still holds a claimed use.
_INVITE_TERMINAL = (
    "(pending_count = 0 AND ((expires_at IS NOT NULL AND expires_at <= %(now)s) "
    "OR (max_uses IS NOT NULL AND used_count >= max_uses)))"
)


def init_schema(pool: ConnectionPool) -> None:
    """Create tables and indexes when missing."""
    with pool.connection() as conn:
        conn.execute(SCHEMA)
        conn.commit()
    logger.info("database schema ensured")


@dataclass(slots=True)
class AuditLogRecord:
    """Row projection for items in activity_log."""

    audit_id: int
    account_id: int | None
    username: str | None
    remote_account_id: str | None
    invite_code: str | None
    event_type: str
    actor: str | None
    metadata: dict[str, Any]
    created_at: datetime


class AccountRepository:
    """Postgres-backed Credential Store plus the activity log."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    def create_account(self, payload: CreateAccountInput) -> Account:
        """Insert an account, raising ``ConflictError`` when the username or remote id is taken."""
        now = datetime.now(timezone.utc)
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        f"""
                        INSERT INTO accounts (username, password_hash, remote_account_id, is_admin,
                                              disabled, expires_at, role_id, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                        RETURNING {_ACCOUNT_COLUMNS}
                        """,
                        (
                            payload.username,
                            payload.password_hash,
                            payload.remote_account_id,
                            payload.is_admin,
                            payload.disabled,
                            payload.expires_at,
                            payload.role_id,
                            now,
                            now,
                        ),
                    )
                    row = cur.fetchone()
                conn.commit()
        except pg_errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", "") or ""
            if "remote_account_id" in constraint:
                raise ConflictError("remote account is already linked") from exc
            raise ConflictError(f"username {payload.username!r} already exists") from exc
        return self._map_account(row)

    def get_account(self, account_id: int) -> Account | None:
        return self._fetch_one_account("account_id = %s", (account_id,))

    def get_by_username(self, username: str) -> Account | None:
        """Case-insensitive lookup by username."""
        return self._fetch_one_account("lower(username) = lower(%s)", (username,))

    def get_by_remote_id(self, remote_account_id: str) -> Account | None:
        return self._fetch_one_account("remote_account_id = %s", (remote_account_id,))

    def username_exists(self, username: str) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT 1 FROM accounts WHERE lower(username) = lower(%s)", (username,)
                )
                return cur.fetchone() is not None

    def list_accounts(self) -> list[Account]:
        return self._fetch_accounts("TRUE", ())

    def list_linked_accounts(self) -> list[Account]:
        return self._fetch_accounts("remote_account_id IS NOT NULL", ())

    def update_password_hash(self, account_id: int, password_hash: str) -> None:
        self._execute(
            "UPDATE accounts SET password_hash = %s, updated_at = %s WHERE account_id = %s",
            (password_hash, datetime.now(timezone.utc), account_id),
        )

    def set_disabled(self, account_id: int, disabled: bool) -> Account | None:
        return self._update_returning(
            "SET disabled = %s, updated_at = %s WHERE account_id = %s",
            (disabled, datetime.now(timezone.utc), account_id),
        )

    def enable_permanently(self, account_id: int) -> Account | None:
        """Clear the disabled flag and drop any expiry."""
        return self._update_returning(
            "SET disabled = FALSE, expires_at = NULL, updated_at = %s WHERE account_id = %s",
            (datetime.now(timezone.utc), account_id),
        )

    def clear_disabled_if_set(self, account_id: int) -> Account | None:
        """Flip ``disabled`` to false only when it is currently true; ``None`` means nothing changed."""
        return self._update_returning(
            "SET disabled = FALSE, updated_at = %s WHERE account_id = %s AND disabled = TRUE",
            (datetime.now(timezone.utc), account_id),
        )

    def mark_expired_accounts_disabled(self, now: datetime) -> list[Account]:
        """Select and disable every expired, still-active account in one statement."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE accounts
                    SET disabled = TRUE, updated_at = %s
                    WHERE disabled = FALSE AND expires_at IS NOT NULL AND expires_at <= %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (now, now),
                )
                rows = cur.fetchall()
            conn.commit()
        return [self._map_account(row) for row in rows]

    def delete_account(self, account_id: int) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM accounts WHERE account_id = %s", (account_id,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def get_default_role_id(self) -> int | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    "SELECT role_id FROM roles WHERE is_default = TRUE ORDER BY role_id LIMIT 1"
                )
                row = cur.fetchone()
        return row[0] if row else None

    def role_exists(self, role_id: int) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute("SELECT 1 FROM roles WHERE role_id = %s", (role_id,))
                return cur.fetchone() is not None

    def write_audit_event(
        self,
        *,
        event_type: str,
        actor: str | None,
        account_id: int | None = None,
        username: str | None = None,
        remote_account_id: str | None = None,
        invite_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an activity entry describing an account or invite lifecycle event."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO activity_log (account_id, username, remote_account_id, invite_code,
                                              event_type, actor, metadata)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        account_id,
                        username,
                        remote_account_id,
                        invite_code,
                        event_type,
                        actor,
                        Jsonb(metadata or {}),
                    ),
                )
                conn.commit()

    def list_audit_events(
        self,
        *,
        account_id: int | None = None,
        event_type: str | None = None,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
        limit: int = 50,
        cursor: Tuple[datetime, int] | None = None,
    ) -> tuple[list[AuditLogRecord], Optional[Tuple[datetime, int]]]:
        """Return activity entries newest first with optional filters and cursor pagination."""
        limit = max(1, min(limit, 100))
        clauses = ["TRUE"]
        params: list[Any] = []

        if account_id is not None:
            clauses.append("account_id = %s")
            params.append(account_id)
        if event_type:
            clauses.append("event_type = %s")
            params.append(event_type)
        if created_after:
            clauses.append("created_at >= %s")
            params.append(created_after)
        if created_before:
            clauses.append("created_at <= %s")
            params.append(created_before)
        if cursor:
            clauses.append("(created_at, audit_id) < (%s, %s)")
            params.extend(cursor)

        where_sql = " AND ".join(clauses)
        query = f"""
            SELECT audit_id, account_id, username, remote_account_id, invite_code,
                   event_type, actor, metadata, created_at
            FROM activity_log
            WHERE {where_sql}
            ORDER BY created_at DESC, audit_id DESC
            LIMIT %s
        """
        params.append(limit)

        records: list[AuditLogRecord] = []
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                for row in cur.fetchall():
                    records.append(
                        AuditLogRecord(
                            audit_id=row[0],
                            account_id=row[1],
                            username=row[2],
                            remote_account_id=row[3],
                            invite_code=row[4],
                            event_type=row[5],
                            actor=row[6],
                            metadata=row[7] or {},
                            created_at=row[8],
                        )
                    )

        next_cursor: Tuple[datetime, int] | None = None
        if len(records) == limit:
            last = records[-1]
            next_cursor = (last.created_at, last.audit_id)
        return records, next_cursor

    def _fetch_one_account(self, where: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where}", params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_account(row)

    def _fetch_accounts(self, where: str, params: tuple) -> list[Account]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE {where} ORDER BY lower(username)",
                    params,
                )
                rows = cur.fetchall()
        return [self._map_account(row) for row in rows]

    def _update_returning(self, clause: str, params: tuple) -> Account | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"UPDATE accounts {clause} RETURNING {_ACCOUNT_COLUMNS}", params)
                row = cur.fetchone()
            conn.commit()
        return self._map_account(row) if row else None

    def _execute(self, sql: str, params: tuple) -> None:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            conn.commit()

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            username=row[1],
            password_hash=row[2],
            remote_account_id=row[3],
            is_admin=row[4],
            disabled=row[5],
            expires_at=row[6],
            role_id=row[7],
            created_at=row[8],
            updated_at=row[9],
        )


class InviteRepository:
    """Invite Ledger persistence.

    Usage counting and deletion are conditional statements so concurrent
    redemptions cannot push ``used_count`` past ``max_uses``.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def insert_invite(
        self,
        *,
        code: str,
        label: str | None,
        payload: CreateInviteInput,
        expires_at: datetime | None,
        created_by: str | None,
    ) -> Invite | None:
        """Insert an invite; ``None`` means the code is already taken."""
        offsets = payload.account_expiry
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    INSERT INTO invites (code, label, profile_id, role_id, max_uses, used_count,
                                         expires_at, account_expiry_enabled, account_expiry_months,
                                         account_expiry_days, account_expiry_hours,
                                         account_expiry_minutes, created_by, created_at)
                    VALUES (%s, %s, %s, %s, %s, 0, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (code) DO NOTHING
                    RETURNING {_INVITE_COLUMNS}
                    """,
                    (
                        code,
                        label,
                        payload.profile_id,
                        payload.role_id,
                        payload.max_uses,
                        expires_at,
                        payload.account_expiry_enabled,
                        offsets.months,
                        offsets.days,
                        offsets.hours,
                        offsets.minutes,
                        created_by,
                        datetime.now(timezone.utc),
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_invite(row) if row else None

    def get_by_code(self, code: str) -> Invite | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_INVITE_COLUMNS} FROM invites WHERE code = %s", (code,))
                row = cur.fetchone()
        return self._map_invite(row) if row else None

    def list_invites(self) -> list[Invite]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_INVITE_COLUMNS} FROM invites ORDER BY created_at DESC, invite_id DESC"
                )
                rows = cur.fetchall()
        return [self._map_invite(row) for row in rows]

    def claim_use(self, code: str, now: datetime) -> Invite | None:
        """Reserve one use of a live invite.

        The increment only matches while the invite is unexpired and below its
        limit, so concurrent claims never overshoot ``max_uses``. The claim
        stays pending, and the row is never deleted here, until the
        redemption calls ``complete_use`` or ``release_use``. Returns the
        invite as it stood after the increment, or ``None`` when nothing
        could be claimed.
        """
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"""
                    UPDATE invites
                    SET used_count = used_count + 1, pending_count = pending_count + 1
                    WHERE code = %(code)s
                      AND (expires_at IS NULL OR expires_at > %(now)s)
                      AND (max_uses IS NULL OR used_count < max_uses)
                    RETURNING {_INVITE_COLUMNS}
                    """,
                    {"code": code, "now": now},
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_invite(row) if row else None

    def complete_use(self, code: str, now: datetime) -> bool:
        """Settle a pending claim and delete the invite if that made it terminal.

        Returns whether the invite was deleted.
        """
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE invites SET pending_count = pending_count - 1 "
                    "WHERE code = %s AND pending_count > 0",
                    (code,),
                )
                cur.execute(
                    f"DELETE FROM invites WHERE code = %(code)s AND {_INVITE_TERMINAL}",
                    {"code": code, "now": now},
                )
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def release_use(self, code: str) -> bool:
        """Give back a pending claim when provisioning failed; false when the invite is gone."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE invites SET used_count = used_count - 1, pending_count = pending_count - 1 "
                    "WHERE code = %s AND pending_count > 0",
                    (code,),
                )
                released = cur.rowcount > 0
            conn.commit()
        return released

    def delete_if_terminal(self, code: str, now: datetime) -> bool:
        """Compare-and-delete a single invite that is expired or exhausted."""
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    f"DELETE FROM invites WHERE code = %(code)s AND {_INVITE_TERMINAL}",
                    {"code": code, "now": now},
                )
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def delete_terminal(self, now: datetime) -> list[Invite]:
        """Delete every expired or exhausted invite and return what was removed."""
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"DELETE FROM invites WHERE {_INVITE_TERMINAL} RETURNING {_INVITE_COLUMNS}",
                    {"now": now},
                )
                rows = cur.fetchall()
            conn.commit()
        return [self._map_invite(row) for row in rows]

    def delete_invite(self, code: str) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM invites WHERE code = %s", (code,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def _map_invite(self, row: tuple) -> Invite:
        return Invite(
            invite_id=row[0],
            code=row[1],
            label=row[2],
            profile_id=row[3],
            role_id=row[4],
            max_uses=row[5],
            used_count=row[6],
            expires_at=row[7],
            account_expiry_enabled=row[8],
            account_expiry=ExpiryOffsets(
                months=row[9], days=row[10], hours=row[11], minutes=row[12]
            ),
            created_by=row[13],
            created_at=row[14],
            pending_count=row[15],
        )


class ProfileRepository:
    """Stored access profiles used as redemption templates."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    def create_profile(
        self,
        payload: CreateProfileInput,
        library_folder_ids: list[str],
        home_layout: dict[str, Any],
    ) -> AccessProfile:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                if payload.is_default:
                    cur.execute("UPDATE access_profiles SET is_default = FALSE WHERE is_default = TRUE")
                cur.execute(
                    f"""
                    INSERT INTO access_profiles (name, source_remote_account_id, library_folder_ids,
                                                 home_layout, is_default, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_PROFILE_COLUMNS}
                    """,
                    (
                        payload.name,
                        payload.source_remote_account_id,
                        Jsonb(library_folder_ids),
                        Jsonb(home_layout),
                        payload.is_default,
                        datetime.now(timezone.utc),
                    ),
                )
                row = cur.fetchone()
            conn.commit()
        return self._map_profile(row)

    def get_profile(self, profile_id: int) -> AccessProfile | None:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(
                    f"SELECT {_PROFILE_COLUMNS} FROM access_profiles WHERE profile_id = %s",
                    (profile_id,),
                )
                row = cur.fetchone()
        return self._map_profile(row) if row else None

    def list_profiles(self) -> list[AccessProfile]:
        with self._pool.connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(f"SELECT {_PROFILE_COLUMNS} FROM access_profiles ORDER BY name")
                rows = cur.fetchall()
        return [self._map_profile(row) for row in rows]

    def delete_profile(self, profile_id: int) -> bool:
        with self._pool.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("DELETE FROM access_profiles WHERE profile_id = %s", (profile_id,))
                deleted = cur.rowcount > 0
            conn.commit()
        return deleted

    def _map_profile(self, row: tuple) -> AccessProfile:
        return AccessProfile(
            profile_id=row[0],
            name=row[1],
            source_remote_account_id=row[2],
            library_folder_ids=list(row[3] or []),
            home_layout=dict(row[4] or {}),
            is_default=row[5],
            created_at=row[6],
        )
