"""
Role management and role assignment.

Every write path enforces non-escalation: a requester can only put into a
role (or hand out through an assignment) permission codes that their own
held set resolves. Removing codes never requires holding them.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from erp_authz.db.base import is_unique_violation, utcnow
from erp_authz.errors import (
    ASSIGNMENT_EXISTS,
    ASSIGNMENT_NOT_FOUND,
    INVALID_BRANCH,
    INVALID_PERMISSION,
    PRIVILEGE_ESCALATION,
    ROLE_ALREADY_EXISTS,
    ROLE_IN_USE,
    ROLE_NOT_FOUND,
    SYSTEM_ROLE_IMMUTABLE,
    USER_NOT_FOUND,
    ConflictError,
    InvariantViolation,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from erp_authz.models.security import Role, RoleAssignment
from erp_authz.permissions import Permission, PermissionMatcher, PermissionRegistry
from erp_authz.repositories.roles import ROLE_SORT_FIELDS, RoleRepository
from erp_authz.schemas.paging import MAX_PAGE
from erp_authz.schemas.security import RoleUpdate

logger = logging.getLogger(__name__)

DELETE_ROLE_PERMISSION = "role:delete:tenant"


def role_code_from_name(name: str) -> str:
    """`"Fee Clerk (Night)"` -> `"FEE_CLERK_NIGHT"`."""
    return re.sub(r"[^A-Z0-9]+", "_", name.upper()).strip("_")


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


class RoleService:
    def __init__(self, db: Session, registry: PermissionRegistry, repository: RoleRepository | None = None) -> None:
        self.db = db
        self.registry = registry
        self.repository = repository or RoleRepository(db)

    # ---- Catalog -----------------------------------------------------------------------

    def list_permissions(self) -> list[Permission]:
        return self.registry.permissions()

    # ---- Reads -------------------------------------------------------------------------

    def get_role(self, role_id: str, *, tenant_id: str) -> Role:
        role = self.repository.get(role_id, tenant_id)
        if role is None:
            raise NotFoundError("Role not found", code=ROLE_NOT_FOUND)
        return role

    def list_roles(
        self,
        tenant_id: str,
        *,
        page: int = 1,
        limit: int = 50,
        search: str | None = None,
        is_system: bool | None = None,
        sort_by: str = "name",
        sort_order: str = "asc",
    ) -> tuple[list[Role], int]:
        if not 1 <= page <= MAX_PAGE:
            raise ValidationError("page is out of range", details={"page": page, "max": MAX_PAGE})
        if sort_by not in ROLE_SORT_FIELDS or sort_order not in ("asc", "desc"):
            raise ValidationError("Unsupported sort", details={"sort_by": sort_by, "sort_order": sort_order})

        return self.repository.list_roles(
            tenant_id,
            offset=(page - 1) * limit,
            limit=limit,
            search=search,
            is_system=is_system,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def compute_effective_permissions(self, user_id: str, tenant_id: str, branch_id: str | None = None) -> frozenset[str]:
        """
        Union of the role codes of the user's live assignments.

        Read fresh from the database on every call.
        """

        codes = frozenset(self.repository.effective_codes(user_id, tenant_id, branch_id, utcnow()))
        logger.debug(
            "Effective permissions user=%s tenant=%s branch=%s count=%d",
            user_id,
            tenant_id,
            branch_id,
            len(codes),
        )
        return codes

    # ---- Role writes -------------------------------------------------------------------

    def create_role(
        self,
        tenant_id: str,
        name: str,
        description: str | None,
        permission_codes: Iterable[str],
        requesting_permissions: Iterable[str],
        *,
        code: str | None = None,
        created_by: str | None = None,
    ) -> Role:
        codes = self._dedupe(permission_codes)
        self._check_grantable(codes)
        self._check_not_escalating(codes, requesting_permissions)

        role_code = code or role_code_from_name(name)
        if not role_code:
            raise ValidationError("Role name must contain letters or digits", details={"name": name})
        self._check_no_conflict(tenant_id, code=role_code, name=name)

        role = Role(tenant_id=tenant_id, code=role_code, name=name, description=description, is_system=False)
        role.set_permission_codes(set(codes))
        try:
            self.repository.add(role)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc):
                raise
            raise ConflictError("Role with this code already exists", code=ROLE_ALREADY_EXISTS) from exc

        logger.info("Role created role=%s tenant=%s by=%s permissions=%d", role.id, tenant_id, created_by, len(codes))
        return role

    def update_role(
        self,
        role_id: str,
        patch: RoleUpdate,
        requesting_permissions: Iterable[str],
        *,
        tenant_id: str,
        updated_by: str | None = None,
    ) -> Role:
        role = self.repository.get_for_update(role_id, tenant_id)
        if role is None:
            raise NotFoundError("Role not found", code=ROLE_NOT_FOUND)
        if role.is_system:
            raise InvariantViolation("System roles cannot be modified", code=SYSTEM_ROLE_IMMUTABLE)

        fields = patch.model_fields_set

        added: list[str] = []
        new_codes: list[str] | None = None
        if "permissions" in fields and patch.permissions is not None:
            new_codes = self._dedupe(patch.permissions)
            self._check_grantable(new_codes)
            # Only the codes this update adds need to be held by the requester.
            current = role.permission_codes
            added = [c for c in new_codes if c not in current]
            self._check_not_escalating(added, requesting_permissions)

        if "name" in fields and patch.name is not None and patch.name != role.name:
            self._check_no_conflict(tenant_id, code=None, name=patch.name, exclude_id=role.id)
            role.name = patch.name
        if "description" in fields:
            role.description = patch.description
        if new_codes is not None:
            role.set_permission_codes(set(new_codes))
        role.updated_at = utcnow()

        try:
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc):
                raise
            raise ConflictError("Role with this name already exists", code=ROLE_ALREADY_EXISTS) from exc

        logger.info("Role updated role=%s tenant=%s by=%s added=%d", role.id, tenant_id, updated_by, len(added))
        return role

    def delete_role(
        self,
        role_id: str,
        requesting_permissions: Iterable[str],
        *,
        tenant_id: str,
        deleted_by: str | None = None,
    ) -> None:
        if not PermissionMatcher(requesting_permissions).allows(DELETE_ROLE_PERMISSION):
            raise PermissionDenied("Not allowed to delete roles", details={"required": DELETE_ROLE_PERMISSION})

        role = self.repository.get(role_id, tenant_id)
        if role is None:
            raise NotFoundError("Role not found", code=ROLE_NOT_FOUND)
        if role.is_system:
            raise InvariantViolation("System roles cannot be deleted", code=SYSTEM_ROLE_IMMUTABLE)

        try:
            deleted = self.repository.delete_if_unused(role_id, tenant_id)
        except IntegrityError as exc:
            # An assignment committed between the NOT EXISTS check and the delete.
            self.db.rollback()
            raise InvariantViolation("Role is assigned to users", code=ROLE_IN_USE) from exc

        if not deleted:
            raise InvariantViolation("Role is assigned to users", code=ROLE_IN_USE)

        self.db.expunge(role)
        self.db.commit()
        logger.info("Role deleted role=%s tenant=%s by=%s", role_id, tenant_id, deleted_by)

    # ---- Assignments -------------------------------------------------------------------

    def list_user_roles(self, user_id: str, *, tenant_id: str) -> list[RoleAssignment]:
        if self.repository.get_user(user_id, tenant_id) is None:
            raise NotFoundError("User not found", code=USER_NOT_FOUND)
        return self.repository.list_assignments(user_id, tenant_id)

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        requesting_permissions: Iterable[str],
        *,
        tenant_id: str,
        branch_id: str | None = None,
        expires_at: datetime | None = None,
        assigned_by: str | None = None,
    ) -> RoleAssignment:
        if self.repository.get_user(user_id, tenant_id) is None:
            raise NotFoundError("User not found", code=USER_NOT_FOUND)

        role = self.repository.get(role_id, tenant_id)
        if role is None:
            raise NotFoundError("Role not found", code=ROLE_NOT_FOUND)

        if branch_id is not None and self.repository.get_branch(branch_id, tenant_id) is None:
            raise ValidationError("Branch does not belong to this tenant", code=INVALID_BRANCH)

        if expires_at is not None:
            expires_at = _as_utc(expires_at)
            if expires_at <= utcnow():
                raise ValidationError("expires_at must be in the future", details={"expires_at": expires_at.isoformat()})

        # Handing out a role is the same as granting its codes.
        self._check_not_escalating(sorted(role.permission_codes), requesting_permissions)

        if self.repository.find_assignment(user_id, role_id, tenant_id, branch_id) is not None:
            raise ConflictError("Role already assigned", code=ASSIGNMENT_EXISTS)

        assignment = RoleAssignment(
            user_id=user_id,
            role_id=role.id,
            tenant_id=tenant_id,
            branch_id=branch_id,
            assigned_by_id=assigned_by,
            expires_at=expires_at,
        )
        try:
            self.repository.add_assignment(assignment)
            self.db.commit()
        except IntegrityError as exc:
            self.db.rollback()
            if not is_unique_violation(exc):
                raise
            raise ConflictError("Role already assigned", code=ASSIGNMENT_EXISTS) from exc

        logger.info(
            "Role assigned user=%s role=%s tenant=%s branch=%s by=%s",
            user_id,
            role.id,
            tenant_id,
            branch_id,
            assigned_by,
        )
        return assignment

    def unassign_role(self, user_id: str, assignment_id: str, *, tenant_id: str, removed_by: str | None = None) -> None:
        assignment = self.repository.get_assignment(assignment_id, user_id, tenant_id)
        if assignment is None:
            raise NotFoundError("Role assignment not found", code=ASSIGNMENT_NOT_FOUND)

        self.repository.remove_assignment(assignment)
        self.db.commit()
        logger.info(
            "Role unassigned user=%s assignment=%s tenant=%s by=%s",
            user_id,
            assignment_id,
            tenant_id,
            removed_by,
        )

    # ---- Checks ------------------------------------------------------------------------

    @staticmethod
    def _dedupe(codes: Iterable[str]) -> list[str]:
        return list(dict.fromkeys(codes))

    def _check_grantable(self, codes: Iterable[str]) -> None:
        invalid = [c for c in codes if not self.registry.is_grantable(c)]
        if invalid:
            raise ValidationError("Unknown permission codes", code=INVALID_PERMISSION, details={"invalid": invalid})

    def _check_not_escalating(self, codes: Iterable[str], requesting_permissions: Iterable[str]) -> None:
        unauthorized = PermissionMatcher(requesting_permissions).unauthorized(codes)
        if unauthorized:
            logger.info("Privilege escalation rejected unauthorized=%s", unauthorized)
            raise InvariantViolation(
                "Cannot grant permissions you do not hold",
                code=PRIVILEGE_ESCALATION,
                details={"unauthorized": unauthorized},
            )

    def _check_no_conflict(self, tenant_id: str, *, code: str | None, name: str | None, exclude_id: str | None = None) -> None:
        existing = self.repository.find_conflicting(tenant_id, code=code, name=name, exclude_id=exclude_id)
        if existing is not None:
            raise ConflictError(
                "Role with this code or name already exists",
                code=ROLE_ALREADY_EXISTS,
                details={"existing_role_id": existing.id},
            )
