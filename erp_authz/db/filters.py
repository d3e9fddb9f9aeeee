from __future__ import annotations

from sqlalchemy import event, or_
from sqlalchemy.orm import Session, with_loader_criteria


@event.listens_for(Session, "do_orm_execute")
def _apply_tenant_filters(execute_state) -> None:
    """
    Transparent tenant scoping.

    Repositories already pass the tenant explicitly; this hook is the second
    layer, so a forgotten predicate still cannot leak another tenant's rows:
        db.scalars(select(AuditLog)).all()
    only returns the current tenant's entries once `Session.info["authz"]`
    is set by `get_db`. Branch narrowing stays with the repositories.
    """

    if not execute_state.is_select:
        return

    authz = execute_state.session.info.get("authz")
    if authz is None:
        return

    # Local import to avoid cycles.
    from erp_authz.models.audit import AuditLog  # noqa: WPS433 (local import)
    from erp_authz.models.security import Branch, Role, RoleAssignment, User  # noqa: WPS433

    tenant_id = authz.tenant_id

    execute_state.statement = execute_state.statement.options(
        with_loader_criteria(AuditLog, lambda cls: cls.tenant_id == tenant_id, include_aliases=True),
        with_loader_criteria(User, lambda cls: cls.tenant_id == tenant_id, include_aliases=True),
        with_loader_criteria(Branch, lambda cls: cls.tenant_id == tenant_id, include_aliases=True),
        with_loader_criteria(RoleAssignment, lambda cls: cls.tenant_id == tenant_id, include_aliases=True),
        # System roles are shared by every tenant.
        with_loader_criteria(
            Role,
            lambda cls: or_(cls.tenant_id == tenant_id, cls.is_system.is_(True)),
            include_aliases=True,
        ),
    )
