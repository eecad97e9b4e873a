from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from gemvault.logging import get_logger
from gemvault.service.audit import AuditAction, AuditTrail
from gemvault.service.errors import ConflictError, NotFoundError, ValidationError
from gemvault.storage.errors import ConstraintViolation
from gemvault.storage.models import Permission, Role

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


class RBACResolver:
    """Read-only authorization queries over role membership.

    This is the only place the admin bypass is applied: an ``admin`` member
    satisfies every role and permission check.
    """

    def __init__(self, store) -> None:
        self.store = store

    def resolve_roles(self, account_id: str) -> List[Role]:
        return self.store.list_account_roles(account_id)

    def role_names(self, account_id: str) -> List[str]:
        return [role.name for role in self.resolve_roles(account_id)]

    def resolve_permissions(self, account_id: str) -> List[Permission]:
        seen: Dict[tuple, Permission] = {}
        for perm in self.store.list_account_permissions(account_id):
            seen.setdefault((perm.resource, perm.action), perm)
        return list(seen.values())

    def is_admin(self, account_id: str) -> bool:
        return ADMIN_ROLE in self.role_names(account_id)

    def has_role(self, account_id: str, role_names: Iterable[str]) -> bool:
        held = set(self.role_names(account_id))
        if ADMIN_ROLE in held:
            return True
        return bool(held.intersection(role_names))

    def has_permission(self, account_id: str, resource: str, action: str) -> bool:
        if self.is_admin(account_id):
            return True
        return any(
            perm.resource == resource and perm.action == action
            for perm in self.store.list_account_permissions(account_id)
        )


class RoleManager:
    """Role and permission administration."""

    def __init__(self, store, *, default_role: str = "customer", audit=None) -> None:
        self.store = store
        self.default_role = default_role
        self.audit = audit or AuditTrail(store)

    def _require_role(self, role_id: int) -> Role:
        role = self.store.get_role(role_id)
        if not role:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return role

    def _require_role_by_name(self, name: str) -> Role:
        role = self.store.get_role_by_name(name)
        if not role:
            raise NotFoundError("role not found", detail={"role": name})
        return role

    def _require_account(self, account_id: str) -> None:
        if not self.store.get_account(account_id):
            raise NotFoundError("account not found", detail={"account_id": account_id})

    def create_role(self, name: str, description: Optional[str] = None) -> Role:
        try:
            role = self.store.create_role(name, description)
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail={"name": name}) from exc
        logger.info("role_created", role_id=role.id, role=name)
        return role

    def get_role(self, role_id: int) -> Role:
        return self._require_role(role_id)

    def get_role_with_permissions(self, role_id: int) -> tuple[Role, List[Permission]]:
        role = self._require_role(role_id)
        return role, self.store.list_role_permissions(role_id)

    def list_roles(self) -> List[Role]:
        return self.store.list_roles()

    def update_role(
        self,
        role_id: int,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Role:
        role = self._require_role(role_id)
        if name is not None and name != role.name and role.name in (ADMIN_ROLE, self.default_role):
            raise ValidationError("built-in roles cannot be renamed", detail={"role": role.name})
        try:
            updated = self.store.update_role(role_id, name=name, description=description)
        except ConstraintViolation as exc:
            raise ConflictError("role already exists", detail={"name": name}) from exc
        if not updated:
            raise NotFoundError("role not found", detail={"role_id": role_id})
        return updated

    def delete_role(self, role_id: int) -> None:
        role = self._require_role(role_id)
        if role.name in (ADMIN_ROLE, self.default_role):
            raise ValidationError("built-in roles cannot be deleted", detail={"role": role.name})
        self.store.delete_role(role_id)
        logger.info("role_deleted", role_id=role_id, role=role.name)

    def create_permission(
        self, resource: str, action: str, description: Optional[str] = None
    ) -> Permission:
        try:
            return self.store.create_permission(resource, action, description)
        except ConstraintViolation as exc:
            raise ConflictError(
                "permission already exists",
                detail={"resource": resource, "action": action},
            ) from exc

    def list_permissions(self) -> List[Permission]:
        return self.store.list_permissions()

    def _require_permission(self, permission_id: int) -> Permission:
        perm = self.store.get_permission(permission_id)
        if not perm:
            raise NotFoundError("permission not found", detail={"permission_id": permission_id})
        return perm

    def grant_permission(self, role_id: int, permission_id: int) -> None:
        self._require_role(role_id)
        self._require_permission(permission_id)
        self.store.add_role_permission(role_id, permission_id)

    def revoke_permission(self, role_id: int, permission_id: int) -> bool:
        self._require_role(role_id)
        return self.store.remove_role_permission(role_id, permission_id)

    def set_permissions(self, role_id: int, permission_ids: Iterable[int]) -> List[Permission]:
        ids = list(dict.fromkeys(permission_ids))
        self._require_role(role_id)
        with self.store.transaction():
            for permission_id in ids:
                self._require_permission(permission_id)
            self.store.set_role_permissions(role_id, ids)
        logger.info("role_permissions_replaced", role_id=role_id, count=len(ids))
        return self.store.list_role_permissions(role_id)

    def assign_role(
        self, account_id: str, role_name: str, *, actor_id: Optional[str] = None
    ) -> Role:
        self._require_account(account_id)
        role = self._require_role_by_name(role_name)
        self.store.assign_role(account_id, role.id)
        logger.info("role_assigned", account_id=account_id, role=role_name)
        self.audit.record(
            AuditAction.ROLE_ASSIGN,
            account_id=actor_id or account_id,
            entity_id=account_id,
            details={"role": role_name},
        )
        return role

    def revoke_role(
        self, account_id: str, role_name: str, *, actor_id: Optional[str] = None
    ) -> bool:
        self._require_account(account_id)
        role = self._require_role_by_name(role_name)
        removed = self.store.revoke_role(account_id, role.id)
        if removed:
            logger.info("role_revoked", account_id=account_id, role=role_name)
            self.audit.record(
                AuditAction.ROLE_REVOKE,
                account_id=actor_id or account_id,
                entity_id=account_id,
                details={"role": role_name},
            )
        return removed


__all__ = ["ADMIN_ROLE", "RBACResolver", "RoleManager"]
