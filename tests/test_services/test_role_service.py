"""
Tests for role management and assignment.

Uses db_session fixture: in-memory SQLite, rolled back after each test.
"""
from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from erp_authz.db.init_db import seed_system_roles
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
from erp_authz.models.security import Role, RoleAssignment, RolePermission
from erp_authz.permissions import resolve
from erp_authz.schemas.paging import MAX_PAGE
from erp_authz.schemas.security import RoleUpdate
from erp_authz.services.roles import RoleService, role_code_from_name

ADMIN = frozenset({"role:*", "student:*", "fee:*", "audit:read:tenant"})


@pytest.fixture
def service(db_session, registry):
    return RoleService(db_session, registry)


@pytest.fixture
def tenant(make_tenant):
    tenant, _ = make_tenant("T1", ("MAIN", "NORTH"))
    return tenant


@pytest.fixture
def branches(db_session, tenant):
    from erp_authz.models.security import Branch

    rows = db_session.scalars(select(Branch).where(Branch.tenant_id == tenant.id).order_by(Branch.code)).all()
    return {b.code: b for b in rows}


# ---- Non-escalation --------------------------------------------------------------------


def test_create_role_rejects_permission_requester_does_not_hold(service, tenant):
    requester = {"student:read:branch"}

    with pytest.raises(InvariantViolation) as exc_info:
        service.create_role(
            tenant.id,
            "Reader Plus",
            None,
            ["student:read:branch", "student:delete:branch"],
            requester,
        )

    assert exc_info.value.code == PRIVILEGE_ESCALATION
    assert exc_info.value.details["unauthorized"] == ["student:delete:branch"]


def test_escalation_error_names_every_unauthorized_code(service, tenant):
    with pytest.raises(InvariantViolation) as exc_info:
        service.create_role(
            tenant.id,
            "Wide",
            None,
            ["fee:collect:branch", "student:read:own", "exam:publish:branch", "fee:*"],
            {"student:read:branch"},
        )

    assert exc_info.value.details["unauthorized"] == ["fee:collect:branch", "exam:publish:branch", "fee:*"]


GRID_CODES = ["student:read:own", "student:read:branch", "student:read:tenant", "student:delete:branch", "student:*", "fee:*"]


@pytest.mark.parametrize(("held", "requested"), list(itertools.product(GRID_CODES, GRID_CODES)))
def test_non_escalation_grid(service, tenant, held, requested):
    if resolve({held}, requested):
        role = service.create_role(tenant.id, "Grid Role", None, [requested], {held})
        assert role.permission_codes == frozenset({requested})
    else:
        with pytest.raises(InvariantViolation) as exc_info:
            service.create_role(tenant.id, "Grid Role", None, [requested], {held})
        assert exc_info.value.details["unauthorized"] == [requested]


def test_scope_broader_held_can_grant_narrower(service, tenant):
    role = service.create_role(tenant.id, "Branch Reader", None, ["student:read:branch"], {"student:read:tenant"})
    assert role.permission_codes == frozenset({"student:read:branch"})


def test_unknown_permission_is_invalid(service, tenant):
    with pytest.raises(ValidationError) as exc_info:
        service.create_role(tenant.id, "Bad", None, ["student:fly:branch", "nonsense"], ADMIN)

    assert exc_info.value.code == INVALID_PERMISSION
    assert exc_info.value.details["invalid"] == ["student:fly:branch", "nonsense"]


# ---- Create ----------------------------------------------------------------------------


def test_create_role_persists_codes_and_derives_code(service, db_session, tenant):
    role = service.create_role(
        tenant.id,
        "Fee Clerk (Night)",
        "Evening counter",
        ["fee:collect:branch", "fee:read:branch", "fee:collect:branch"],
        ADMIN,
        created_by="someone",
    )

    stored = db_session.scalars(select(RolePermission.permission_code).where(RolePermission.role_id == role.id)).all()
    assert sorted(stored) == ["fee:collect:branch", "fee:read:branch"]
    assert role.code == "FEE_CLERK_NIGHT"
    assert role.tenant_id == tenant.id
    assert role.is_system is False


def test_role_code_from_name():
    assert role_code_from_name("  Class teacher / 2nd shift ") == "CLASS_TEACHER_2ND_SHIFT"
    assert role_code_from_name("!!!") == ""


def test_duplicate_code_or_name_conflicts(service, tenant):
    service.create_role(tenant.id, "Librarian", None, [], ADMIN)

    with pytest.raises(ConflictError) as by_name:
        service.create_role(tenant.id, "librarian", None, [], ADMIN, code="LIB2")
    with pytest.raises(ConflictError) as by_code:
        service.create_role(tenant.id, "Book Keeper", None, [], ADMIN, code="LIBRARIAN")

    assert by_name.value.code == by_code.value.code == ROLE_ALREADY_EXISTS


def test_name_of_system_role_is_taken(service, db_session, registry, tenant):
    seed_system_roles(db_session, registry)

    with pytest.raises(ConflictError):
        service.create_role(tenant.id, "Teacher", None, [], ADMIN)


def test_same_name_in_another_tenant_is_fine(service, make_tenant, tenant):
    other, _ = make_tenant("T2")
    service.create_role(tenant.id, "Coach", None, [], ADMIN)
    assert service.create_role(other.id, "Coach", None, [], ADMIN).tenant_id == other.id


# ---- Update ----------------------------------------------------------------------------


def test_update_checks_only_added_codes(service, make_role, tenant):
    role = make_role(tenant, "MIXED", {"student:delete:branch", "fee:collect:branch"})
    requester = {"fee:collect:branch", "fee:read:branch"}

    updated = service.update_role(
        role.id,
        RoleUpdate(permissions=["fee:collect:branch", "fee:read:branch"]),
        requester,
        tenant_id=tenant.id,
    )

    # student:delete:branch was removed without the requester holding it.
    assert updated.permission_codes == frozenset({"fee:collect:branch", "fee:read:branch"})


def test_update_rejects_added_code_not_held(service, make_role, tenant):
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})

    with pytest.raises(InvariantViolation) as exc_info:
        service.update_role(
            role.id,
            RoleUpdate(permissions=["fee:collect:branch", "student:delete:branch"]),
            {"fee:collect:branch"},
            tenant_id=tenant.id,
        )

    assert exc_info.value.details["unauthorized"] == ["student:delete:branch"]
    assert service.get_role(role.id, tenant_id=tenant.id).permission_codes == frozenset({"fee:collect:branch"})


def test_update_name_and_description_without_permissions(service, make_role, tenant):
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})

    updated = service.update_role(
        role.id,
        RoleUpdate(name="Senior Clerk", description="Handles refunds"),
        set(),
        tenant_id=tenant.id,
    )

    assert updated.name == "Senior Clerk"
    assert updated.description == "Handles refunds"
    assert updated.permission_codes == frozenset({"fee:collect:branch"})


def test_update_system_role_is_rejected(service, db_session, registry, tenant):
    roles = seed_system_roles(db_session, registry)
    teacher = next(r for r in roles if r.code == "TEACHER")

    with pytest.raises(InvariantViolation) as exc_info:
        service.update_role(teacher.id, RoleUpdate(name="Tutor"), ADMIN, tenant_id=tenant.id)

    assert exc_info.value.code == SYSTEM_ROLE_IMMUTABLE


def test_update_role_of_other_tenant_is_not_found(service, make_tenant, make_role, tenant):
    other, _ = make_tenant("T2")
    foreign = make_role(other, "FOREIGN", set())

    with pytest.raises(NotFoundError) as exc_info:
        service.update_role(foreign.id, RoleUpdate(name="Mine now"), ADMIN, tenant_id=tenant.id)

    assert exc_info.value.code == ROLE_NOT_FOUND


# ---- Delete ----------------------------------------------------------------------------


def test_delete_unused_role(service, db_session, make_role, tenant):
    role = make_role(tenant, "TEMP", {"fee:read:branch"})
    role_id = role.id

    service.delete_role(role_id, ADMIN, tenant_id=tenant.id)

    assert db_session.scalars(select(Role).where(Role.id == role_id)).first() is None
    assert db_session.scalars(select(RolePermission).where(RolePermission.role_id == role_id)).all() == []


def test_delete_role_in_use_is_rejected(service, db_session, make_role, make_user, assign, tenant):
    role = make_role(tenant, "USED", {"fee:read:branch"})
    assign(make_user(tenant, "holder@t1.example"), role)

    with pytest.raises(InvariantViolation) as exc_info:
        service.delete_role(role.id, ADMIN, tenant_id=tenant.id)

    assert exc_info.value.code == ROLE_IN_USE
    assert db_session.scalars(select(Role).where(Role.id == role.id)).first() is not None


def test_delete_racing_an_assignment_is_in_use(service, db_session, make_role, make_user, tenant):
    role = make_role(tenant, "RACED", {"fee:read:branch"})
    user = make_user(tenant, "late@t1.example")
    role_id, user_id, tenant_id = role.id, user.id, tenant.id
    db_session.commit()

    def assign_then_delete(target_role_id, target_tenant_id):
        # The assignment lands after the in-use check, so only the foreign key can stop the delete.
        db_session.add(RoleAssignment(user_id=user_id, role_id=target_role_id, tenant_id=target_tenant_id))
        db_session.flush()
        db_session.execute(
            delete(Role).where(Role.id == target_role_id).execution_options(synchronize_session=False)
        )
        return True

    with patch.object(service.repository, "delete_if_unused", side_effect=assign_then_delete):
        with pytest.raises(InvariantViolation) as exc_info:
            service.delete_role(role_id, ADMIN, tenant_id=tenant_id)

    assert exc_info.value.code == ROLE_IN_USE
    assert db_session.scalars(select(Role).where(Role.id == role_id)).first() is not None
    assert db_session.scalars(select(RolePermission).where(RolePermission.role_id == role_id)).all() != []


def test_delete_system_role_is_rejected(service, db_session, registry, tenant):
    roles = seed_system_roles(db_session, registry)

    with pytest.raises(InvariantViolation) as exc_info:
        service.delete_role(roles[0].id, ADMIN, tenant_id=tenant.id)

    assert exc_info.value.code == SYSTEM_ROLE_IMMUTABLE


def test_delete_requires_delete_permission(service, make_role, tenant):
    role = make_role(tenant, "TEMP", set())

    with pytest.raises(PermissionDenied):
        service.delete_role(role.id, {"role:read:tenant"}, tenant_id=tenant.id)


# ---- Effective permissions -------------------------------------------------------------


def test_effective_permissions_union_of_live_assignments(service, make_role, make_user, assign, tenant, branches):
    user = make_user(tenant, "multi@t1.example", branch=branches["MAIN"])
    now = datetime.now(timezone.utc)
    assign(user, make_role(tenant, "A", {"student:read:branch"}))
    assign(user, make_role(tenant, "B", {"fee:*"}), expires_at=now + timedelta(days=1))
    assign(user, make_role(tenant, "EXPIRED", {"exam:publish:branch"}), expires_at=now - timedelta(minutes=1))
    assign(user, make_role(tenant, "MAIN_ONLY", {"library:issue:branch"}), branch=branches["MAIN"])
    assign(user, make_role(tenant, "NORTH_ONLY", {"transport:manage:branch"}), branch=branches["NORTH"])

    tenant_wide = service.compute_effective_permissions(user.id, tenant.id)
    at_main = service.compute_effective_permissions(user.id, tenant.id, branches["MAIN"].id)

    assert tenant_wide == frozenset({"student:read:branch", "fee:*"})
    assert at_main == frozenset({"student:read:branch", "fee:*", "library:issue:branch"})


def test_effective_permissions_ignore_other_tenants(service, make_tenant, make_role, make_user, assign, tenant):
    other, _ = make_tenant("T2")
    user = make_user(tenant, "u@t1.example")
    assign(user, make_role(tenant, "MINE", {"student:read:branch"}))

    assert service.compute_effective_permissions(user.id, other.id) == frozenset()


def test_effective_permissions_are_read_fresh(service, db_session, make_role, make_user, assign, tenant):
    user = make_user(tenant, "u@t1.example")
    assignment = assign(user, make_role(tenant, "TEMP", {"student:read:branch"}))
    assert service.compute_effective_permissions(user.id, tenant.id) == frozenset({"student:read:branch"})

    db_session.delete(assignment)
    db_session.flush()

    assert service.compute_effective_permissions(user.id, tenant.id) == frozenset()


# ---- Assignments -----------------------------------------------------------------------


def test_assign_and_unassign_role(service, make_role, make_user, tenant, branches):
    admin = make_user(tenant, "admin@t1.example")
    user = make_user(tenant, "new@t1.example")
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})

    assignment = service.assign_role(
        user.id,
        role.id,
        ADMIN,
        tenant_id=tenant.id,
        branch_id=branches["NORTH"].id,
        assigned_by=admin.id,
    )

    assert assignment.assigned_by_id == admin.id

    assert [a.id for a in service.list_user_roles(user.id, tenant_id=tenant.id)] == [assignment.id]
    assert service.compute_effective_permissions(user.id, tenant.id, branches["NORTH"].id) == frozenset(
        {"fee:collect:branch"}
    )

    service.unassign_role(user.id, assignment.id, tenant_id=tenant.id)
    assert service.list_user_roles(user.id, tenant_id=tenant.id) == []


def test_assign_with_unknown_assigner_is_not_a_duplicate(service, make_role, make_user, tenant):
    user = make_user(tenant, "new@t1.example")
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})

    with pytest.raises(IntegrityError):
        service.assign_role(user.id, role.id, ADMIN, tenant_id=tenant.id, assigned_by="no-such-user")


def test_create_role_for_unknown_tenant_is_not_a_duplicate(service):
    with pytest.raises(IntegrityError):
        service.create_role("no-such-tenant", "Ghost", None, [], ADMIN)


def test_assign_role_requires_holding_its_codes(service, make_role, make_user, tenant):
    user = make_user(tenant, "new@t1.example")
    role = make_role(tenant, "POWER", {"fee:*", "student:delete:branch"})

    with pytest.raises(InvariantViolation) as exc_info:
        service.assign_role(user.id, role.id, {"fee:collect:branch", "student:*"}, tenant_id=tenant.id)

    assert exc_info.value.details["unauthorized"] == ["fee:*"]


def test_assign_twice_conflicts(service, make_role, make_user, tenant):
    user = make_user(tenant, "new@t1.example")
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})
    service.assign_role(user.id, role.id, ADMIN, tenant_id=tenant.id)

    with pytest.raises(ConflictError) as exc_info:
        service.assign_role(user.id, role.id, ADMIN, tenant_id=tenant.id)

    assert exc_info.value.code == ASSIGNMENT_EXISTS


def test_assign_validates_user_branch_and_expiry(service, make_tenant, make_role, make_user, tenant):
    other, (other_branch,) = make_tenant("T2", ("MAIN",))
    user = make_user(tenant, "new@t1.example")
    foreign_user = make_user(other, "x@t2.example")
    role = make_role(tenant, "CLERK", {"fee:collect:branch"})

    with pytest.raises(NotFoundError) as no_user:
        service.assign_role(foreign_user.id, role.id, ADMIN, tenant_id=tenant.id)
    with pytest.raises(ValidationError) as bad_branch:
        service.assign_role(user.id, role.id, ADMIN, tenant_id=tenant.id, branch_id=other_branch.id)
    with pytest.raises(ValidationError):
        service.assign_role(
            user.id,
            role.id,
            ADMIN,
            tenant_id=tenant.id,
            expires_at=datetime.now(timezone.utc) - timedelta(days=1),
        )

    assert no_user.value.code == USER_NOT_FOUND
    assert bad_branch.value.code == INVALID_BRANCH


def test_unassign_unknown_assignment(service, make_user, tenant):
    user = make_user(tenant, "new@t1.example")

    with pytest.raises(NotFoundError) as exc_info:
        service.unassign_role(user.id, "missing", tenant_id=tenant.id)

    assert exc_info.value.code == ASSIGNMENT_NOT_FOUND


def test_list_roles_includes_system_and_own_tenant_only(service, db_session, registry, make_tenant, make_role, tenant):
    seed_system_roles(db_session, registry)
    other, _ = make_tenant("T2")
    make_role(tenant, "MINE", set())
    make_role(other, "THEIRS", set())

    roles, total = service.list_roles(tenant.id, limit=100)
    codes = {r.code for r in roles}

    assert "MINE" in codes
    assert "THEIRS" not in codes
    assert set(registry.system_roles) <= codes
    assert total == len(registry.system_roles) + 1

    custom, custom_total = service.list_roles(tenant.id, is_system=False)
    assert [r.code for r in custom] == ["MINE"]
    assert custom_total == 1

    searched, _ = service.list_roles(tenant.id, search="mine")
    assert [r.code for r in searched] == ["MINE"]


def test_list_roles_sort_and_page_bounds(service, make_role, tenant):
    make_role(tenant, "BETA", set(), name="Alpha")
    make_role(tenant, "ALPHA", set(), name="Beta")

    by_name, _ = service.list_roles(tenant.id)
    by_code_desc, _ = service.list_roles(tenant.id, sort_by="code", sort_order="desc")

    assert [r.code for r in by_name] == ["BETA", "ALPHA"]
    assert [r.code for r in by_code_desc] == ["BETA", "ALPHA"]
    assert [r.code for r in service.list_roles(tenant.id, sort_by="code")[0]] == ["ALPHA", "BETA"]

    with pytest.raises(ValidationError):
        service.list_roles(tenant.id, page=MAX_PAGE + 1)
    with pytest.raises(ValidationError):
        service.list_roles(tenant.id, sort_by="id")
