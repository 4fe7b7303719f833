from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authlane.logging import get_logger
from authlane.storage.errors import ConstraintViolation, StoreUnavailable
from authlane.storage.models import OAuthProvider, RefreshTokenRecord, User, utcnow

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS users_email_lower_idx ON users (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        device_info TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_tokens_user_idx ON refresh_tokens (user_id)",
    "CREATE INDEX IF NOT EXISTS refresh_tokens_expires_idx ON refresh_tokens (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS oauth_providers (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_user_id TEXT NOT NULL,
        email TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (provider, provider_user_id)
    )
    """,
)


class PostgresStore:
    """Postgres-backed credential store for users, refresh tokens and OAuth links."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, int(timeout_seconds)),
            },
            open=True,
        )
        if ensure_schema:
            self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, op: str) -> Iterator[None]:
        """Translate driver failures into storage errors."""
        try:
            yield
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                f"{op}: duplicate value", {"constraint": exc.diag.constraint_name}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                f"{op}: referenced row missing", {"constraint": exc.diag.constraint_name}
            ) from exc
        except (psycopg.Error, PoolTimeout) as exc:
            self.logger.error("postgres_operation_failed", op=op, error=str(exc))
            raise StoreUnavailable(f"{op} failed", {"op": op}) from exc

    def ensure_schema(self) -> None:
        """Create the credential tables and indexes if they are missing."""

        with self._guard("ensure_schema"), self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            is_active=row.get("is_active", True),
            is_email_verified=row.get("is_email_verified", False),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
            device_info=row.get("device_info"),
            ip_address=row.get("ip_address"),
        )

    @staticmethod
    def _oauth_from_row(row: Dict[str, Any]) -> OAuthProvider:
        return OAuthProvider(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            provider=row["provider"],
            provider_user_id=row["provider_user_id"],
            email=row.get("email"),
            created_at=row.get("created_at") or utcnow(),
        )

    # users
    def create_user(self, user: User) -> User:
        with self._guard("create_user"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (
                    id, email, password_hash, is_active, is_email_verified,
                    created_at, updated_at, last_login_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.email,
                    user.password_hash,
                    user.is_active,
                    user.is_email_verified,
                    user.created_at,
                    user.updated_at,
                    user.last_login_at,
                ),
            )
        return user

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._guard("get_user_by_email"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._guard("get_user"), self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def update_last_login(self, user_id: str, at: Optional[datetime] = None) -> bool:
        stamp = at or utcnow()
        with self._guard("update_last_login"), self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET last_login_at = %s, updated_at = %s WHERE id = %s",
                (stamp, stamp, user_id),
            )
            return result.rowcount > 0

    def set_user_active(self, user_id: str, is_active: bool) -> bool:
        with self._guard("set_user_active"), self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
                (is_active, user_id),
            )
            return result.rowcount > 0

    # refresh tokens
    def create_refresh_token(self, record: RefreshTokenRecord) -> RefreshTokenRecord:
        with self._guard("create_refresh_token"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO refresh_tokens (
                    id, user_id, token_hash, expires_at, created_at, device_info, ip_address
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.token_hash,
                    record.expires_at,
                    record.created_at,
                    record.device_info,
                    record.ip_address,
                ),
            )
        return record

    def get_refresh_token_by_digest(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._guard("get_refresh_token"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def list_refresh_tokens_for_user(self, user_id: str) -> List[RefreshTokenRecord]:
        with self._guard("list_refresh_tokens"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_tokens WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._refresh_from_row(row) for row in rows]

    def delete_refresh_token_by_digest(self, token_hash: str) -> bool:
        # Row-level delete: of two concurrent callers only one sees rowcount 1
        with self._guard("delete_refresh_token"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE token_hash = %s", (token_hash,)
            )
            return result.rowcount > 0

    def delete_expired_refresh_tokens(self, now: Optional[datetime] = None) -> int:
        cutoff = now or utcnow()
        with self._guard("delete_expired_refresh_tokens"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_tokens WHERE expires_at < %s", (cutoff,)
            )
            return max(0, result.rowcount)

    # oauth providers
    def create_oauth_provider(
        self,
        user_id: str,
        provider: str,
        provider_user_id: str,
        email: Optional[str] = None,
    ) -> OAuthProvider:
        link = OAuthProvider(
            id=str(uuid.uuid4()),
            user_id=user_id,
            provider=provider,
            provider_user_id=provider_user_id,
            email=email,
        )
        with self._guard("create_oauth_provider"), self._connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_providers (id, user_id, provider, provider_user_id, email, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    link.id,
                    link.user_id,
                    link.provider,
                    link.provider_user_id,
                    link.email,
                    link.created_at,
                ),
            )
        return link

    def get_oauth_provider(
        self, provider: str, provider_user_id: str
    ) -> Optional[OAuthProvider]:
        with self._guard("get_oauth_provider"), self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM oauth_providers WHERE provider = %s AND provider_user_id = %s",
                (provider, provider_user_id),
            ).fetchone()
        return self._oauth_from_row(row) if row else None

    def list_oauth_providers_for_user(self, user_id: str) -> List[OAuthProvider]:
        with self._guard("list_oauth_providers"), self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM oauth_providers WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [self._oauth_from_row(row) for row in rows]

    def delete_oauth_provider(self, provider_id: str) -> bool:
        with self._guard("delete_oauth_provider"), self._connect() as conn:
            result = conn.execute(
                "DELETE FROM oauth_providers WHERE id = %s", (provider_id,)
            )
            return result.rowcount > 0

    # lifecycle
    def ping(self) -> None:
        with self._guard("ping"), self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
