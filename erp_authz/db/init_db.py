from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_authz.contracts import AuditAppender, AuditLogDraft
from erp_authz.db.base import Base
from erp_authz.db.session import SessionLocal, engine
from erp_authz.models.audit import AuditLog
from erp_authz.models.security import Branch, Role, RoleAssignment, Tenant, User
from erp_authz.permissions import PermissionRegistry

logger = logging.getLogger(__name__)

# Fixed ids so the demo bearer tokens are predictable.
DEMO_TENANT_ADMIN_ID = "00000000-0000-0000-0000-000000000001"
DEMO_BRANCH_ADMIN_ID = "00000000-0000-0000-0000-000000000002"
DEMO_ACCOUNTANT_ID = "00000000-0000-0000-0000-000000000003"
DEMO_TEACHER_ID = "00000000-0000-0000-0000-000000000004"


class _SeedAuditAppender:
    """The only AuditAppender in this package: writes seed entries directly."""

    def __init__(self, db: Session) -> None:
        self.db = db

    def append(self, entry: AuditLogDraft) -> None:
        data = entry.model_dump()
        meta = data.pop("metadata")
        self.db.add(AuditLog(**data, meta=meta))


def init_db(registry: PermissionRegistry) -> None:
    """
    Create tables, seed system roles, then seed demo data once.

    Small and deterministic so the authorization behavior can be tried
    without additional setup.
    """

    Base.metadata.create_all(bind=engine)

    with SessionLocal() as db:
        seed_system_roles(db, registry)
        if not _has_seed_data(db):
            _seed(db)
        db.commit()


def seed_system_roles(db: Session, registry: PermissionRegistry) -> list[Role]:
    """Insert catalog system roles that are not in the database yet. Existing ones are left untouched."""

    existing = {
        r.code: r for r in db.scalars(select(Role).where(Role.is_system.is_(True), Role.tenant_id.is_(None))).all()
    }
    roles: list[Role] = []
    for definition in registry.system_roles.values():
        role = existing.get(definition.code)
        if role is None:
            role = Role(
                tenant_id=None,
                code=definition.code,
                name=definition.name,
                description=definition.description,
                is_system=True,
            )
            role.set_permission_codes(set(definition.permissions))
            db.add(role)
            logger.info("Seeded system role code=%s permissions=%d", definition.code, len(definition.permissions))
        roles.append(role)
    db.flush()
    return roles


def _has_seed_data(db: Session) -> bool:
    return db.execute(select(Tenant.id).limit(1)).first() is not None


def _seed(db: Session) -> None:
    system = {r.code: r for r in db.scalars(select(Role).where(Role.is_system.is_(True))).all()}

    tenant = Tenant(code="DEMO", name="Demo Public School")
    db.add(tenant)
    db.flush()

    main = Branch(tenant_id=tenant.id, code="MAIN", name="Main Campus")
    north = Branch(tenant_id=tenant.id, code="NORTH", name="North Campus")
    db.add_all([main, north])
    db.flush()

    # Users
    admin = User(
        id=DEMO_TENANT_ADMIN_ID,
        tenant_id=tenant.id,
        email="asha.admin@example.com",
        first_name="Asha",
        last_name="Admin",
    )
    branch_admin = User(
        id=DEMO_BRANCH_ADMIN_ID,
        tenant_id=tenant.id,
        branch_id=main.id,
        email="bala.branch@example.com",
        first_name="Bala",
        last_name="Branch",
    )
    accountant = User(
        id=DEMO_ACCOUNTANT_ID,
        tenant_id=tenant.id,
        branch_id=main.id,
        email="chitra.accounts@example.com",
        first_name="Chitra",
        last_name="Accounts",
    )
    teacher = User(
        id=DEMO_TEACHER_ID,
        tenant_id=tenant.id,
        branch_id=north.id,
        email="dev.teacher@example.com",
        first_name="Dev",
        last_name="Teacher",
    )
    db.add_all([admin, branch_admin, accountant, teacher])
    db.flush()

    # Assignments: tenant admin is tenant-wide, everyone else is branch-bound.
    db.add_all(
        [
            RoleAssignment(user_id=admin.id, role_id=system["TENANT_ADMIN"].id, tenant_id=tenant.id),
            RoleAssignment(
                user_id=branch_admin.id,
                role_id=system["BRANCH_ADMIN"].id,
                tenant_id=tenant.id,
                branch_id=main.id,
                assigned_by_id=admin.id,
            ),
            RoleAssignment(
                user_id=accountant.id,
                role_id=system["ACCOUNTANT"].id,
                tenant_id=tenant.id,
                branch_id=main.id,
                assigned_by_id=admin.id,
            ),
            RoleAssignment(
                user_id=teacher.id,
                role_id=system["TEACHER"].id,
                tenant_id=tenant.id,
                branch_id=north.id,
                assigned_by_id=admin.id,
            ),
        ]
    )
    db.flush()

    # Audit entries, written the way a business module would.
    appender: AuditAppender = _SeedAuditAppender(db)
    appender.append(
        AuditLogDraft(
            module="users",
            entity="User",
            entity_id=accountant.id,
            action="CREATE",
            user_id=admin.id,
            ip_address="10.0.0.5",
            changes={"email": accountant.email, "password": "initial-Pa55"},
            tenant_id=tenant.id,
            branch_id=main.id,
        )
    )
    appender.append(
        AuditLogDraft(
            module="fees",
            entity="FeePayment",
            entity_id="RCPT-0001",
            action="COLLECT",
            user_id=accountant.id,
            ip_address="10.0.0.17",
            user_agent="Mozilla/5.0",
            changes={"amount": 12500, "mode": "card", "payment": {"creditCardNumber": "4111111111111111", "cvv": "123"}},
            metadata={"receipt": "RCPT-0001", "gatewayToken": "tok_demo"},
            tenant_id=tenant.id,
            branch_id=main.id,
        )
    )
    appender.append(
        AuditLogDraft(
            module="attendance",
            entity="StudentAttendance",
            entity_id="ATT-2024-06-03",
            action="MARK",
            user_id=teacher.id,
            changes={"present": 31, "absent": 2},
            tenant_id=tenant.id,
            branch_id=north.id,
        )
    )
    appender.append(
        AuditLogDraft(
            module="roles",
            entity="Role",
            action="UPDATE",
            user_id=admin.id,
            changes={"added": ["fee:report:branch"]},
            metadata={"apiKey": "demo-key"},
            tenant_id=tenant.id,
        )
    )
