from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, Set

from cryptography.fernet import InvalidToken

from gemvault.logging import get_logger
from gemvault.storage.common import (
    DEFAULT_GRANTS,
    DEFAULT_PERMISSIONS,
    DEFAULT_ROLES,
    build_secret_cipher,
    generate_uuid,
    normalize_email,
    permission_description,
)
from gemvault.storage.errors import ConstraintViolation
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

_ACCOUNT_UPDATABLE = frozenset(
    {"first_name", "last_name", "phone", "email_verified", "status", "email"}
)

_STATE_ATTRS = (
    "accounts",
    "roles",
    "permissions",
    "account_roles",
    "role_permissions",
    "verification_tokens",
    "audit_events",
    "_seq",
)


class MemoryStore:
    """In-process credential store for tests and single-node development.

    All state sits behind one RLock. ``transaction()`` holds that lock for its
    whole body, so a transaction is serialized against every other caller and
    can be rolled back by restoring a snapshot.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/gemvault",
        *,
        mfa_encryption_key: str,
        persist: bool = False,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.roles: Dict[int, Role] = {}
        self.permissions: Dict[int, Permission] = {}
        self.account_roles: Dict[str, Set[int]] = {}
        self.role_permissions: Dict[int, Set[int]] = {}
        self.verification_tokens: Dict[str, VerificationToken] = {}
        self.audit_events: List[AuditEvent] = []
        self._seq: Dict[str, int] = {"role": 0, "permission": 0, "token": 0, "audit": 0}
        # RLock so store methods can be called from inside transaction()
        self._data_lock = threading.RLock()
        self._tx_depth = 0
        self.persist = persist
        self.fs_root = Path(fs_root)
        self._mfa_cipher = build_secret_cipher(mfa_encryption_key)

        if not (persist and self._load_state()):
            with self.transaction():
                self._seed_defaults()

    # ------------------------------------------------------------------
    # transactions and persistence
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["MemoryStore"]:
        with self._data_lock:
            outermost = self._tx_depth == 0
            snapshot = self._snapshot() if outermost else None
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._restore(snapshot)
                    self.logger.info("memory_transaction_rolled_back")
                raise
            finally:
                self._tx_depth -= 1
            if outermost:
                self._commit()

    def _snapshot(self) -> dict:
        return {attr: copy.deepcopy(getattr(self, attr)) for attr in _STATE_ATTRS}

    def _restore(self, snapshot: Optional[dict]) -> None:
        if snapshot is None:
            return
        for attr, value in snapshot.items():
            setattr(self, attr, value)

    def _commit(self) -> None:
        if self._tx_depth == 0 and self.persist:
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "roles": [
                {"id": r.id, "name": r.name, "description": r.description,
                 "created_at": r.created_at.isoformat()}
                for r in self.roles.values()
            ],
            "permissions": [
                {"id": p.id, "resource": p.resource, "action": p.action,
                 "description": p.description}
                for p in self.permissions.values()
            ],
            "account_roles": {k: sorted(v) for k, v in self.account_roles.items()},
            "role_permissions": {
                str(k): sorted(v) for k, v in self.role_permissions.items()
            },
            "verification_tokens": [
                {"id": t.id, "account_id": t.account_id, "token": t.token,
                 "purpose": t.purpose.value, "expires_at": t.expires_at.isoformat(),
                 "used": t.used, "created_at": t.created_at.isoformat()}
                for t in self.verification_tokens.values()
            ],
            "audit_events": [
                {"id": e.id, "action": e.action, "entity_type": e.entity_type,
                 "account_id": e.account_id, "entity_id": e.entity_id,
                 "details": e.details, "ip_address": e.ip_address,
                 "user_agent": e.user_agent, "request_id": e.request_id,
                 "created_at": e.created_at.isoformat()}
                for e in self.audit_events
            ],
            "seq": self._seq,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.roles = {
            int(r["id"]): Role(
                id=int(r["id"]),
                name=r["name"],
                description=r.get("description"),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in data.get("roles", [])
        }
        self.permissions = {
            int(p["id"]): Permission(
                id=int(p["id"]),
                resource=p["resource"],
                action=p["action"],
                description=p.get("description"),
            )
            for p in data.get("permissions", [])
        }
        self.account_roles = {
            k: set(v) for k, v in data.get("account_roles", {}).items()
        }
        self.role_permissions = {
            int(k): set(v) for k, v in data.get("role_permissions", {}).items()
        }
        self.verification_tokens = {
            t["token"]: VerificationToken(
                id=int(t["id"]),
                account_id=t["account_id"],
                token=t["token"],
                purpose=TokenPurpose(t["purpose"]),
                expires_at=datetime.fromisoformat(t["expires_at"]),
                used=bool(t.get("used")),
                created_at=datetime.fromisoformat(t["created_at"]),
            )
            for t in data.get("verification_tokens", [])
        }
        self.audit_events = [
            AuditEvent(
                id=int(e["id"]),
                action=e["action"],
                entity_type=e["entity_type"],
                account_id=e.get("account_id"),
                entity_id=e.get("entity_id"),
                details=e.get("details") or {},
                ip_address=e.get("ip_address"),
                user_agent=e.get("user_agent"),
                request_id=e.get("request_id"),
                created_at=datetime.fromisoformat(e["created_at"]),
            )
            for e in data.get("audit_events", [])
        ]
        self._seq.update(data.get("seq", {}))
        return True

    @staticmethod
    def _serialize_account(account: Account) -> dict:
        def _ts(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": account.id,
            "email": account.email,
            "password_hash": account.password_hash,
            "status": account.status.value,
            "email_verified": account.email_verified,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "phone": account.phone,
            "mfa_secret": account.mfa_secret,
            "mfa_enabled": account.mfa_enabled,
            "refresh_token": account.refresh_token,
            "password_reset_token": account.password_reset_token,
            "password_reset_expires": _ts(account.password_reset_expires),
            "last_login_at": _ts(account.last_login_at),
            "created_at": _ts(account.created_at),
            "updated_at": _ts(account.updated_at),
        }

    @staticmethod
    def _deserialize_account(data: dict) -> Account:
        def _ts(raw: Optional[str]) -> Optional[datetime]:
            return datetime.fromisoformat(raw) if raw else None

        return Account(
            id=data["id"],
            email=data["email"],
            password_hash=data["password_hash"],
            status=AccountStatus(data.get("status", "pending")),
            email_verified=bool(data.get("email_verified")),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            phone=data.get("phone"),
            mfa_secret=data.get("mfa_secret"),
            mfa_enabled=bool(data.get("mfa_enabled")),
            refresh_token=data.get("refresh_token"),
            password_reset_token=data.get("password_reset_token"),
            password_reset_expires=_ts(data.get("password_reset_expires")),
            last_login_at=_ts(data.get("last_login_at")),
            created_at=_ts(data.get("created_at")) or utcnow(),
            updated_at=_ts(data.get("updated_at")) or utcnow(),
        )

    def _next_id(self, name: str) -> int:
        self._seq[name] += 1
        return self._seq[name]

    def _seed_defaults(self) -> None:
        for name, description in DEFAULT_ROLES:
            self.create_role(name, description)
        for resource, action in DEFAULT_PERMISSIONS:
            self.create_permission(resource, action, permission_description(resource, action))
        for role_name, grants in DEFAULT_GRANTS.items():
            role = self.get_role_by_name(role_name)
            for resource, action in grants:
                perm = self.find_permission(resource, action)
                if role and perm:
                    self.add_role_permission(role.id, perm.id)

    # ------------------------------------------------------------------
    # MFA secret encryption
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

    def _public(self, account: Account) -> Account:
        return replace(account, mfa_secret=self._decrypt_mfa_secret(account.mfa_secret))

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
        email = normalize_email(email)
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account(
                id=generate_uuid(),
                email=email,
                password_hash=password_hash,
                status=status,
                first_name=first_name,
                last_name=last_name,
                phone=phone,
            )
            self.accounts[account.id] = account
            self._commit()
            return self._public(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._public(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        email = normalize_email(email)
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == email:
                    return self._public(account)
            return None

    def list_accounts(self, *, offset: int = 0, limit: int = 20) -> List[Account]:
        with self._data_lock:
            ordered = sorted(
                self.accounts.values(), key=lambda a: (a.created_at, a.id), reverse=True
            )
            return [self._public(a) for a in ordered[offset : offset + limit]]

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def update_account(self, account_id: str, **fields) -> Optional[Account]:
        unknown = set(fields) - _ACCOUNT_UPDATABLE
        if unknown:
            raise ValueError(f"unsupported account fields: {sorted(unknown)}")
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if "email" in fields:
                fields["email"] = normalize_email(fields["email"])
                if any(
                    other.email == fields["email"] and other.id != account_id
                    for other in self.accounts.values()
                ):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(account, key, value)
            account.updated_at = utcnow()
            self._commit()
            return self._public(account)

    def set_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = status
            if email_verified is not None:
                account.email_verified = email_verified
            account.updated_at = utcnow()
            self._commit()
            return self._public(account)

    def record_login(self, account_id: str, at: Optional[datetime] = None) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login_at = at or utcnow()
                self._commit()

    def delete_account(self, account_id: str) -> bool:
        with self._data_lock:
            if self.accounts.pop(account_id, None) is None:
                return False
            self.account_roles.pop(account_id, None)
            self.verification_tokens = {
                key: tok
                for key, tok in self.verification_tokens.items()
                if tok.account_id != account_id
            }
            self._commit()
            return True

    def lock_account(self, account_id: str) -> None:
        """No-op: transaction() already holds the store lock."""
        return None

    # refresh token -------------------------------------------------------

    def set_refresh_token(self, account_id: str, token: Optional[str]) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.refresh_token = token
                account.updated_at = utcnow()
                self._commit()

    def rotate_refresh_token(self, account_id: str, expected: str, new: str) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account or account.refresh_token is None:
                return False
            if account.refresh_token != expected:
                return False
            account.refresh_token = new
            account.updated_at = utcnow()
            self._commit()
            return True

    # password ------------------------------------------------------------

    def set_password(
        self,
        account_id: str,
        password_hash: str,
        *,
        clear_reset: bool = True,
        clear_refresh: bool = True,
    ) -> bool:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return False
            account.password_hash = password_hash
            if clear_reset:
                account.password_reset_token = None
                account.password_reset_expires = None
            if clear_refresh:
                account.refresh_token = None
            account.updated_at = utcnow()
            self._commit()
            return True

    def set_password_reset(
        self, account_id: str, digest: Optional[str], expires: Optional[datetime]
    ) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account:
                account.password_reset_token = digest
                account.password_reset_expires = expires
                account.updated_at = utcnow()
                self._commit()

    # mfa -----------------------------------------------------------------

    def set_mfa(self, account_id: str, secret: Optional[str], enabled: bool) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found for mfa", {"account_id": account_id})
            account.mfa_secret = self._encrypt_mfa_secret(secret)
            account.mfa_enabled = enabled
            account.updated_at = utcnow()
            self._commit()

    # ------------------------------------------------------------------
    # roles
    # ------------------------------------------------------------------

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        with self._data_lock:
            if any(role.name == name for role in self.roles.values()):
                raise ConstraintViolation("role already exists", {"field": "name"})
            role = Role(id=self._next_id("role"), name=name, description=description)
            self.roles[role.id] = role
            self._commit()
            return replace(role)

    def get_role(self, role_id: int) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            return replace(role) if role else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._data_lock:
            for role in self.roles.values():
                if role.name == name:
                    return replace(role)
            return None

    def list_roles(self) -> List[Role]:
        with self._data_lock:
            return [replace(r) for r in sorted(self.roles.values(), key=lambda r: r.name)]

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Optional[Role]:
        with self._data_lock:
            role = self.roles.get(role_id)
            if not role:
                return None
            if name is not None and name != role.name:
                if any(other.name == name for other in self.roles.values()):
                    raise ConstraintViolation("role already exists", {"field": "name"})
                role.name = name
            if description is not None:
                role.description = description
            self._commit()
            return replace(role)

    def delete_role(self, role_id: int) -> bool:
        with self._data_lock:
            if self.roles.pop(role_id, None) is None:
                return False
            self.role_permissions.pop(role_id, None)
            for role_ids in self.account_roles.values():
                role_ids.discard(role_id)
            self._commit()
            return True

    def assign_role(self, account_id: str, role_id: int) -> None:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            self.account_roles.setdefault(account_id, set()).add(role_id)
            self._commit()

    def revoke_role(self, account_id: str, role_id: int) -> bool:
        with self._data_lock:
            role_ids = self.account_roles.get(account_id)
            if not role_ids or role_id not in role_ids:
                return False
            role_ids.discard(role_id)
            self._commit()
            return True

    def list_account_roles(self, account_id: str) -> List[Role]:
        with self._data_lock:
            role_ids = self.account_roles.get(account_id, set())
            roles = [self.roles[rid] for rid in role_ids if rid in self.roles]
            return [replace(r) for r in sorted(roles, key=lambda r: r.name)]

    # ------------------------------------------------------------------
    # permissions
    # ------------------------------------------------------------------

    def create_permission(
        self, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        with self._data_lock:
            if self.find_permission(resource, action):
                raise ConstraintViolation(
                    "permission already exists", {"resource": resource, "action": action}
                )
            perm = Permission(
                id=self._next_id("permission"),
                resource=resource,
                action=action,
                description=description,
            )
            self.permissions[perm.id] = perm
            self._commit()
            return replace(perm)

    def get_permission(self, permission_id: int) -> Optional[Permission]:
        with self._data_lock:
            perm = self.permissions.get(permission_id)
            return replace(perm) if perm else None

    def find_permission(self, resource: str, action: str) -> Optional[Permission]:
        with self._data_lock:
            for perm in self.permissions.values():
                if perm.resource == resource and perm.action == action:
                    return replace(perm)
            return None

    def list_permissions(self) -> List[Permission]:
        with self._data_lock:
            return self._sorted_permissions(self.permissions.values())

    @staticmethod
    def _sorted_permissions(perms: Iterable[Permission]) -> List[Permission]:
        return [replace(p) for p in sorted(perms, key=lambda p: (p.resource, p.action))]

    def add_role_permission(self, role_id: int, permission_id: int) -> None:
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            if permission_id not in self.permissions:
                raise ConstraintViolation(
                    "permission not found", {"permission_id": permission_id}
                )
            self.role_permissions.setdefault(role_id, set()).add(permission_id)
            self._commit()

    def remove_role_permission(self, role_id: int, permission_id: int) -> bool:
        with self._data_lock:
            perm_ids = self.role_permissions.get(role_id)
            if not perm_ids or permission_id not in perm_ids:
                return False
            perm_ids.discard(permission_id)
            self._commit()
            return True

    def set_role_permissions(self, role_id: int, permission_ids: Iterable[int]) -> None:
        ids = set(permission_ids)
        with self._data_lock:
            if role_id not in self.roles:
                raise ConstraintViolation("role not found", {"role_id": role_id})
            missing = ids - set(self.permissions)
            if missing:
                raise ConstraintViolation(
                    "permission not found", {"permission_ids": sorted(missing)}
                )
            self.role_permissions[role_id] = ids
            self._commit()

    def list_role_permissions(self, role_id: int) -> List[Permission]:
        with self._data_lock:
            perm_ids = self.role_permissions.get(role_id, set())
            return self._sorted_permissions(
                self.permissions[pid] for pid in perm_ids if pid in self.permissions
            )

    def list_account_permissions(self, account_id: str) -> List[Permission]:
        with self._data_lock:
            perm_ids: Set[int] = set()
            for role_id in self.account_roles.get(account_id, set()):
                perm_ids |= self.role_permissions.get(role_id, set())
            return self._sorted_permissions(
                self.permissions[pid] for pid in perm_ids if pid in self.permissions
            )

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
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            if token in self.verification_tokens:
                raise ConstraintViolation("token already exists", {"field": "token"})
            record = VerificationToken(
                id=self._next_id("token"),
                account_id=account_id,
                token=token,
                purpose=TokenPurpose(purpose),
                expires_at=expires_at,
            )
            self.verification_tokens[token] = record
            self._commit()
            return replace(record)

    def get_verification_token(self, token: str) -> Optional[VerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            return replace(record) if record else None

    def find_live_verification_token(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            live = [
                tok
                for tok in self.verification_tokens.values()
                if tok.account_id == account_id and tok.purpose == purpose and tok.is_live(now)
            ]
            if not live:
                return None
            return replace(max(live, key=lambda tok: (tok.created_at, tok.id)))

    def invalidate_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, now: datetime
    ) -> int:
        with self._data_lock:
            count = 0
            for tok in self.verification_tokens.values():
                if tok.account_id == account_id and tok.purpose == purpose and tok.is_live(now):
                    tok.used = True
                    count += 1
            if count:
                self._commit()
            return count

    def consume_verification_token(
        self, token: str, purpose: TokenPurpose, now: datetime
    ) -> Optional[VerificationToken]:
        with self._data_lock:
            record = self.verification_tokens.get(token)
            if not record or record.purpose != purpose or not record.is_live(now):
                return None
            record.used = True
            self._commit()
            return replace(record)

    def count_recent_verification_tokens(
        self, account_id: str, purpose: TokenPurpose, since: datetime
    ) -> int:
        with self._data_lock:
            return sum(
                1
                for tok in self.verification_tokens.values()
                if tok.account_id == account_id
                and tok.purpose == purpose
                and tok.created_at >= since
            )

    def delete_expired_verification_tokens(self, now: datetime) -> int:
        with self._data_lock:
            expired = [
                key for key, tok in self.verification_tokens.items() if tok.expires_at <= now
            ]
            for key in expired:
                del self.verification_tokens[key]
            if expired:
                self._commit()
            return len(expired)

    # ------------------------------------------------------------------
    # audit trail
    # ------------------------------------------------------------------

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
        with self._data_lock:
            event = AuditEvent(
                id=self._next_id("audit"),
                action=action,
                entity_type=entity_type,
                account_id=account_id,
                entity_id=entity_id,
                details=copy.deepcopy(details or {}),
                ip_address=ip_address,
                user_agent=user_agent,
                request_id=request_id,
            )
            self.audit_events.append(event)
            self._commit()
            return replace(event)

    def list_audit_events(
        self, *, account_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [
                e for e in self.audit_events if account_id is None or e.account_id == account_id
            ]
            return [replace(e) for e in sorted(events, key=lambda e: e.id, reverse=True)[:limit]]

    def verify_connection(self) -> None:
        """The memory store is always reachable; present for health-check parity."""
        return None


__all__ = ["MemoryStore"]
