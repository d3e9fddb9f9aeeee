from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, exists, func, or_, select
from sqlalchemy.orm import Session

from erp_authz.models.security import Branch, Role, RoleAssignment, RolePermission, User


ROLE_SORT_FIELDS = ("name", "code", "createdAt")

_SORT_COLUMNS = {
    "name": Role.name,
    "code": Role.code,
    "createdAt": Role.created_at,
}


def _visible_to(tenant_id: str):
    return or_(Role.tenant_id == tenant_id, Role.is_system.is_(True))


class RoleRepository:
    """
    Persistence for roles and role assignments.

    Roles are visible to a tenant when they belong to it or are system roles;
    assignments and users are always tenant-owned.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    # ---- Roles -----------------------------------------------------------------------

    def get(self, role_id: str, tenant_id: str) -> Role | None:
        stmt = select(Role).where(Role.id == role_id, _visible_to(tenant_id))
        return self.db.scalars(stmt).first()

    def get_for_update(self, role_id: str, tenant_id: str) -> Role | None:
        # Row lock so concurrent permission edits serialize (no-op on SQLite).
        stmt = (
            select(Role)
            .where(Role.id == role_id, _visible_to(tenant_id))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).first()

    def find_conflicting(self, tenant_id: str, *, code: str | None, name: str | None, exclude_id: str | None = None) -> Role | None:
        clauses = []
        if code:
            clauses.append(Role.code == code)
        if name:
            clauses.append(func.lower(Role.name) == name.lower())
        if not clauses:
            return None

        stmt = select(Role).where(_visible_to(tenant_id), or_(*clauses))
        if exclude_id is not None:
            stmt = stmt.where(Role.id != exclude_id)
        return self.db.scalars(stmt.limit(1)).first()

    def list_roles(
        self,
        tenant_id: str,
        *,
        offset: int,
        limit: int,
        search: str | None = None,
        is_system: bool | None = None,
        sort_by: str = "name",
        sort_order: str = "asc",
    ) -> tuple[list[Role], int]:
        conditions = [_visible_to(tenant_id)]
        if search:
            pattern = f"%{search.lower()}%"
            conditions.append(or_(func.lower(Role.name).like(pattern), func.lower(Role.code).like(pattern)))
        if is_system is not None:
            conditions.append(Role.is_system.is_(is_system))

        total = self.db.scalar(select(func.count()).select_from(Role).where(*conditions)) or 0
        column = _SORT_COLUMNS[sort_by]
        if sort_order == "desc":
            order = (column.desc(), Role.id.desc())
        else:
            order = (column.asc(), Role.id.asc())

        stmt = select(Role).where(*conditions).order_by(*order).offset(offset).limit(limit)
        return list(self.db.scalars(stmt).all()), total

    def add(self, role: Role) -> Role:
        self.db.add(role)
        self.db.flush()
        return role

    def delete_if_unused(self, role_id: str, tenant_id: str) -> bool:
        """
        Delete a tenant role in one statement, only when no assignment references it.

        The `RESTRICT` FK on `role_assignments.role_id` backs this up if an
        assignment lands between the check and the delete.
        """

        in_use = exists().where(RoleAssignment.role_id == Role.id)
        stmt = (
            delete(Role)
            .where(Role.id == role_id, Role.tenant_id == tenant_id, Role.is_system.is_(False), ~in_use)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    # ---- Users / branches --------------------------------------------------------------

    def get_user(self, user_id: str, tenant_id: str) -> User | None:
        return self.db.scalars(select(User).where(User.id == user_id, User.tenant_id == tenant_id)).first()

    def get_branch(self, branch_id: str, tenant_id: str) -> Branch | None:
        return self.db.scalars(select(Branch).where(Branch.id == branch_id, Branch.tenant_id == tenant_id)).first()

    # ---- Assignments -------------------------------------------------------------------

    def list_assignments(self, user_id: str, tenant_id: str) -> list[RoleAssignment]:
        stmt = (
            select(RoleAssignment)
            .where(RoleAssignment.user_id == user_id, RoleAssignment.tenant_id == tenant_id)
            .order_by(RoleAssignment.assigned_at, RoleAssignment.id)
        )
        return list(self.db.scalars(stmt).unique().all())

    def get_assignment(self, assignment_id: str, user_id: str, tenant_id: str) -> RoleAssignment | None:
        stmt = select(RoleAssignment).where(
            RoleAssignment.id == assignment_id,
            RoleAssignment.user_id == user_id,
            RoleAssignment.tenant_id == tenant_id,
        )
        return self.db.scalars(stmt).unique().first()

    def find_assignment(self, user_id: str, role_id: str, tenant_id: str, branch_id: str | None) -> RoleAssignment | None:
        stmt = select(RoleAssignment).where(
            RoleAssignment.user_id == user_id,
            RoleAssignment.role_id == role_id,
            RoleAssignment.tenant_id == tenant_id,
            RoleAssignment.branch_id.is_(None) if branch_id is None else RoleAssignment.branch_id == branch_id,
        )
        return self.db.scalars(stmt).unique().first()

    def add_assignment(self, assignment: RoleAssignment) -> RoleAssignment:
        self.db.add(assignment)
        self.db.flush()
        return assignment

    def remove_assignment(self, assignment: RoleAssignment) -> None:
        self.db.delete(assignment)
        self.db.flush()

    def effective_codes(self, user_id: str, tenant_id: str, branch_id: str | None, now: datetime) -> set[str]:
        """
        Permission codes from the user's live assignments in the tenant.

        Tenant-wide assignments always count; branch assignments only for
        `branch_id`.
        """

        branch_clause = (
            RoleAssignment.branch_id.is_(None)
            if branch_id is None
            else or_(RoleAssignment.branch_id.is_(None), RoleAssignment.branch_id == branch_id)
        )
        stmt = (
            select(RolePermission.permission_code)
            .join(RoleAssignment, RoleAssignment.role_id == RolePermission.role_id)
            .where(
                RoleAssignment.user_id == user_id,
                RoleAssignment.tenant_id == tenant_id,
                branch_clause,
                or_(RoleAssignment.expires_at.is_(None), RoleAssignment.expires_at > now),
            )
            .distinct()
        )
        return set(self.db.scalars(stmt).all())
