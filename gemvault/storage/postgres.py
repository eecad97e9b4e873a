from __future__ import annotations

import json
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
import uuid
from typing import Any, Iterable, Iterator, List, Optional

import psycopg
from cryptography.fernet import InvalidToken
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gemvault.logging import get_logger
from gemvault.storage.common import (
    build_secret_cipher,
    ensure_utc,
    generate_uuid,
    normalize_email,
)
from gemvault.storage.errors import ConstraintViolation, TransactionFailure
from gemvault.storage.models import (
    Account,
    AccountStatus,
    AuditEvent,
    Permission,
    Role,
    TokenPurpose,
    VerificationToken,
    utcnow,
)

REQUIRED_TABLES = (
    "account",
    "role",
    "permission",
    "account_role",
    "role_permission",
    "verification_token",
    "audit_log",
    "schema_migrations",
)

_ACCOUNT_UPDATABLE = frozenset(
    {"first_name", "last_name", "phone", "email_verified", "status", "email"}
)

# Connection bound by transaction(); nested store calls reuse it
_tx_conn: ContextVar[Optional[psycopg.Connection]] = ContextVar(
    "gemvault_tx_conn", default=None
)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
        diag = getattr(exc, "diag", None)
        detail = {"constraint": getattr(diag, "constraint_name", None)}
        raise ConstraintViolation("constraint violated", detail) from exc
    except psycopg.Error as exc:
        raise TransactionFailure(
            "database operation failed", {"sqlstate": getattr(exc, "sqlstate", None)}
        ) from exc


def _account_key(account_id: Any) -> Optional[str]:
    """Canonical UUID text for ``account_id``, or None when it cannot match a row."""
    try:
        return str(uuid.UUID(str(account_id)))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed credential store.

    The schema is owned by ``sql/`` migrations; startup only checks that the
    expected tables exist.
    """

    def __init__(self, dsn: str, fs_root: str, *, mfa_encryption_key: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.logger = get_logger(__name__)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        bound = _tx_conn.get()
        if bound is not None:
            with _translate_errors():
                yield bound
            return
        with _translate_errors(), self.pool.connection() as conn:
            yield conn

    @contextmanager
    def transaction(self) -> Iterator["PostgresStore"]:
        if _tx_conn.get() is not None:
            yield self
            return
        with _translate_errors(), self.pool.connection() as conn:
            token = _tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield self
            finally:
                _tx_conn.reset(token)

    def _verify_required_schema(self) -> None:
        """Refuse to start against a database that has not been migrated."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/migrate.py first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------

    def _encrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        return self._mfa_cipher.encrypt(secret.encode()).decode()

    def _decrypt_mfa_secret(self, secret: Optional[str]) -> Optional[str]:
        if not secret:
            return None
        try:
            return self._mfa_cipher.decrypt(secret.encode()).decode()
        except InvalidToken:
            self.logger.warning("mfa_secret_decrypt_failed")
            return None

    def _account_from_row(self, row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            status=AccountStatus(row.get("status", "pending")),
            email_verified=bool(row.get("email_verified", False)),
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            mfa_secret=self._decrypt_mfa_secret(row.get("mfa_secret")),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            refresh_token=row.get("refresh_token"),
            password_reset_token=row.get("password_reset_token"),
            password_reset_expires=ensure_utc(row.get("password_reset_expires")),
            last_login_at=ensure_utc(row.get("last_login_at")),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
            updated_at=ensure_utc(row.get("updated_at")) or utcnow(),
        )

    @staticmethod
    def _role_from_row(row: dict) -> Role:
        return Role(
            id=int(row["id"]),
            name=row["name"],
            description=row.get("description"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _permission_from_row(row: dict) -> Permission:
        return Permission(
            id=int(row["id"]),
            resource=row["resource"],
            action=row["action"],
            description=row.get("description"),
        )

    @staticmethod
    def _token_from_row(row: dict) -> VerificationToken:
        return VerificationToken(
            id=int(row["id"]),
            account_id=str(row["account_id"]),
            token=row["token"],
            purpose=TokenPurpose(row["purpose"]),
            expires_at=ensure_utc(row["expires_at"]),
            used=bool(row.get("used", False)),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------

    def create_account(
        self,
        email: str,
        password_hash: str,
        *,
        status: AccountStatus = AccountStatus.PENDING,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Account:
        account_id = generate_uuid()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, password_hash, status, first_name, last_name, phone)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account_id,
                        normalize_email(email),
                        password_hash,
                        AccountStatus(status).value,
                        first_name,
                        last_name,
                        phone,
                    ),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        key = _account_key(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM account WHERE id = %s", (key,)).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, *, offset: int = 0, limit: int = 20) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM account ORDER BY created_at DESC, id LIMIT %s OFFSET %s",
                (limit, offset),
            ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def count_accounts(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT count(*) AS total FROM account").fetchone()
        return int(row["total"]) if row else 0

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        key = _account_key(account_id)
        if key is None:
            return None
        if "email" in fields:
            fields["email"] = normalize_email(fields["email"])
        if "status" in fields:
            fields["status"] = AccountStatus(fields["status"]).value
        if not fields:
            return self.get_account(key)
        # column names come from the allow-list above, values are parameters
        assignments = ", ".join(f"{column} = %s" for column in fields)
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE account SET {assignments}, updated_at = now() WHERE id = %s RETURNING *",
                (*fields.values(), key),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def set_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE account
                SET status = %s,
                    email_verified = COALESCE(%s, email_verified),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (AccountStatus(status).value, email_verified, account_id),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_login(self, account_id: str, at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET last_login_at = %s WHERE id = %s",
                (at or utcnow(), account_id),
            )

    def delete_account(self, account_id: str) -> bool:
        key = _account_key(account_id)
        if key is None:
            return False
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM account WHERE id = %s", (key,))
            return cur.rowcount > 0

    def lock_account(self, account_id: str) -> None:
        """Row-lock the account until the enclosing transaction ends."""
        key = _account_key(account_id)
        if key is None:
            return
        with self._connect() as conn:
            conn.execute("SELECT id FROM account WHERE id = %s FOR UPDATE", (key,))

    # refresh token -------------------------------------------------------

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE account SET refresh_token = %s, updated_at = now() WHERE id = %s",
                (token, account_id),
            )

    def rotate_refresh_token(self, account_id: str, expected: str, new: str) -> bool:
        """Replace the stored refresh token only if it still equals ``expected``."""
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account
                SET refresh_token = %s, updated_at = now()
                WHERE id = %s AND refresh_token = %s
                """,
                (new, account_id, expected),
            )
            return cur.rowcount == 1

    # password ------------------------------------------------------------

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        clear_reset: bool = True,
        clear_refresh: bool = True,
    ) -> bool:
        assignments = ["password_hash = %s", "updated_at = now()"]
        if clear_reset:
            assignments += ["password_reset_token = NULL", "password_reset_expires = NULL"]
        if clear_refresh:
            assignments.append("refresh_token = NULL")
        with self._connect() as conn:
            cur = conn.execute(
                f"UPDATE account SET {', '.join(assignments)} WHERE id = %s",
                (password_hash, account_id),
            )
            return cur.rowcount > 0

    def set_password_reset(
        self, account_id: str, digest: Optional[str], expires: Optional[datetime]
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE account
                SET password_reset_token = %s, password_reset_expires = %s, updated_at = now()
                WHERE id = %s
                """,
                (digest, expires, account_id),
            )

    # mfa -----------------------------------------------------------------

    def set_mfa(self, account_id: str, secret: Optional[str], enabled: bool) -> None:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account SET mfa_secret = %s, mfa_enabled = %s, updated_at = now()
                WHERE id = %s
                """,
                (self._encrypt_mfa_secret(secret), enabled, account_id),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "account not found for mfa", {"account_id": account_id}
                )

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO role (name, description) VALUES (%s, %s) RETURNING *",
                    (name, description),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("role already exists", {"field": "name"}) from exc
        return self._role_from_row(row)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._role_from_row(row) if row else None

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY name").fetchall()
        return [self._role_from_row(row) for row in rows]

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    UPDATE role
                    SET name = COALESCE(%s, name), description = COALESCE(%s, description)
                    WHERE id = %s
                    RETURNING *
                    """,
                    (name, description, role_id),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("role already exists", {"field": "name"}) from exc
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return cur.rowcount > 0

    def assign_role(self, account_id: str, role_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_role (account_id, role_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                """,
                (account_id, role_id),
            )

    def revoke_role(self, account_id: str, role_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM account_role WHERE account_id = %s AND role_id = %s",
                (account_id, role_id),
            )
            return cur.rowcount > 0

    def list_account_roles(self, account_id: str) -> List[Role]:
        key = _account_key(account_id)
        if key is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM role r
                JOIN account_role ar ON ar.role_id = r.id
                WHERE ar.account_id = %s
                ORDER BY r.name
                """,
                (key,),
            ).fetchall()
        return [self._role_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # permissions
    # ------------------------------------------------------------------

    def create_permission(
        self, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO permission (resource, action, description)
                    VALUES (%s, %s, %s) RETURNING *
                    """,
                    (resource, action, description),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation(
                "permission already exists", {"resource": resource, "action": action}
            ) from exc
        return self._permission_from_row(row)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE id = %s", (permission_id,)
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def find_permission(self, resource: str, action: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM permission WHERE resource = %s AND action = %s",
                (resource, action),
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def list_permissions(self) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM permission ORDER BY resource, action"
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def add_role_permission(self, role_id: int, permission_id: int) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)
                ON CONFLICT DO NOTHING
                """,
                (role_id, permission_id),
            )

    def remove_role_permission(self, role_id: int, permission_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM role_permission WHERE role_id = %s AND permission_id = %s",
                (role_id, permission_id),
            )
            return cur.rowcount > 0

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        ids = sorted(set(permission_ids))
        with self.transaction(), self._connect() as conn:
            conn.execute("DELETE FROM role_permission WHERE role_id = %s", (role_id,))
            for permission_id in ids:
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, permission_id),
                )

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT p.* FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s
                ORDER BY p.resource, p.action
                """,
                (role_id,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    def list_account_permissions(self, account_id: str) -> List[Permission]:
        key = _account_key(account_id)
        if key is None:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT p.* FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                JOIN account_role ar ON ar.role_id = rp.role_id
                WHERE ar.account_id = %s
                ORDER BY p.resource, p.action
                """,
                (key,),
            ).fetchall()
        return [self._permission_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # verification tokens
    # ------------------------------------------------------------------

    def create_verification_token(
        self,
        account_id: str,
        token: str,
        purpose: TokenPurpose,
        expires_at: datetime,
    ) -> VerificationToken:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO verification_token (account_id, token, purpose, expires_at)
                VALUES (%s, %s, %s, %s)
                RETURNING *
                """,
                (account_id, token, TokenPurpose(purpose).value, expires_at),
            ).fetchone()
        return self._token_from_row(row)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM verification_token WHERE token = %s", (token,)
            ).fetchone()
        return self._token_from_row(row) if row else None

    def find_live_verification_token(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM verification_token
                WHERE account_id = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (account_id, TokenPurpose(purpose).value, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def invalidate_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE verification_token SET used = TRUE
                WHERE account_id = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                """,
                (account_id, TokenPurpose(purpose).value, now),
            )
            return cur.rowcount

    def consume_verification_token(
        self, token: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE verification_token SET used = TRUE
                WHERE token = %s AND purpose = %s AND used = FALSE AND expires_at > %s
                RETURNING *
                """,
                (token, TokenPurpose(purpose).value, now),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def count_recent_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, since: datetime
    ) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS count FROM verification_token
                WHERE account_id = %s AND purpose = %s AND created_at >= %s
                """,
                (account_id, TokenPurpose(purpose).value, since),
            ).fetchone()
        return int(row["count"]) if row else 0

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM verification_token WHERE expires_at <= %s", (now,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

    @staticmethod
    def _audit_from_row(row: dict) -> AuditEvent:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=int(row["id"]),
            action=row["action"],
            entity_type=row["entity_type"],
            account_id=str(row["account_id"]) if row.get("account_id") else None,
            entity_id=row.get("entity_id"),
            details=details,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            request_id=row.get("request_id"),
            created_at=ensure_utc(row.get("created_at")) or utcnow(),
        )

    def record_audit_event(
        self,
        action: str,
        entity_type: str,
        *,
        account_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AuditEvent:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO audit_log
                    (account_id, action, entity_type, entity_id, details,
                     ip_address, user_agent, request_id)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    _account_key(account_id) if account_id else None,
                    action,
                    entity_type,
                    entity_id,
                    json.dumps(details or {}),
                    ip_address,
                    user_agent,
                    request_id,
                ),
            ).fetchone()
        return self._audit_from_row(row)

    def list_audit_events(
        self, *, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if account_id is not None:
                key = _account_key(account_id)
                if key is None:
                    return []
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE account_id = %s ORDER BY id DESC LIMIT %s",
                    (key, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY id DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._audit_from_row(row) for row in rows]


__all__ = ["PostgresStore", "REQUIRED_TABLES"]
