"""
Pytest fixtures for the test suite.

Data-layer tests use an in-memory SQLite engine and a session that rolls back
after each test, so tests do not affect each other. Services commit freely:
the session joins the outer transaction through savepoints.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from erp_authz.db.session import install_sqlite_pragmas
from erp_authz.permissions import load_permission_registry


TEST_DB_URL = "sqlite:///:memory:"
REPO_ROOT = Path(__file__).resolve().parents[1]


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine (FKs enforced) for each test."""
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        echo=False,
    )
    install_sqlite_pragmas(engine)
    return engine


@pytest.fixture
def tables(engine):
    """Create all ORM tables on the test engine."""
    from erp_authz.db.base import Base
    import erp_authz.models.audit  # noqa: F401
    import erp_authz.models.security  # noqa: F401

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db_session(tables):
    """
    Provide a Session bound to the test DB; roll back after each test.

    `create_savepoint` keeps commits/rollbacks issued by services inside the
    outer transaction, which is rolled back at teardown.
    """
    connection = tables.connect()
    transaction = connection.begin()
    TestSession = sessionmaker(
        bind=connection,
        autocommit=False,
        autoflush=False,
        class_=Session,
        join_transaction_mode="create_savepoint",
    )
    session = TestSession()
    yield session
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture(scope="session")
def registry():
    """The shipped permission catalog."""
    return load_permission_registry(REPO_ROOT / "config" / "permissions.yaml")


# ---- Data helpers ----------------------------------------------------------------------


@pytest.fixture
def make_tenant(db_session):
    from erp_authz.models.security import Branch, Tenant

    def _make(code: str = "T1", branches: tuple[str, ...] = ("MAIN",)):
        tenant = Tenant(code=code, name=f"Tenant {code}")
        db_session.add(tenant)
        db_session.flush()
        made = []
        for branch_code in branches:
            branch = Branch(tenant_id=tenant.id, code=branch_code, name=f"{code} {branch_code}")
            db_session.add(branch)
            made.append(branch)
        db_session.flush()
        return tenant, made

    return _make


@pytest.fixture
def make_user(db_session):
    from erp_authz.models.security import User

    def _make(tenant, email: str, *, branch=None, is_active: bool = True, first_name: str = "Test", last_name: str = "User"):
        user = User(
            tenant_id=tenant.id,
            branch_id=branch.id if branch is not None else None,
            email=email,
            first_name=first_name,
            last_name=last_name,
            is_active=is_active,
        )
        db_session.add(user)
        db_session.flush()
        return user

    return _make


@pytest.fixture
def make_role(db_session):
    from erp_authz.models.security import Role

    def _make(tenant, code: str, permissions: set[str], *, is_system: bool = False, name: str | None = None):
        role = Role(
            tenant_id=None if is_system else tenant.id,
            code=code,
            name=name or code.replace("_", " ").title(),
            is_system=is_system,
        )
        role.set_permission_codes(permissions)
        db_session.add(role)
        db_session.flush()
        return role

    return _make


@pytest.fixture
def assign(db_session):
    from erp_authz.models.security import RoleAssignment

    def _assign(user, role, *, branch=None, expires_at: datetime | None = None):
        assignment = RoleAssignment(
            user_id=user.id,
            role_id=role.id,
            tenant_id=user.tenant_id,
            branch_id=branch.id if branch is not None else None,
            expires_at=expires_at,
        )
        db_session.add(assignment)
        db_session.flush()
        return assignment

    return _assign


@pytest.fixture
def make_audit_log(db_session):
    from erp_authz.models.audit import AuditLog

    base = datetime(2024, 6, 1, 9, 0, tzinfo=timezone.utc)

    def _make(
        user,
        *,
        branch=None,
        module: str = "users",
        entity: str = "User",
        action: str = "CREATE",
        minutes: int = 0,
        created_at: datetime | None = None,
        changes=None,
        meta=None,
        log_id: str | None = None,
    ):
        log = AuditLog(
            module=module,
            entity=entity,
            action=action,
            user_id=user.id,
            tenant_id=user.tenant_id,
            branch_id=branch.id if branch is not None else None,
            created_at=created_at or base + timedelta(minutes=minutes),
            changes=changes,
            meta=meta,
        )
        if log_id is not None:
            log.id = log_id
        db_session.add(log)
        db_session.flush()
        return log

    return _make


# ---- HTTP ------------------------------------------------------------------------------


@pytest.fixture
def client(db_session, registry):
    """
    TestClient over the real app, sharing `db_session`.

    Lifespan is not run (no `with`), so config and registry are attached here
    and the file database is never touched.
    """
    from erp_authz.db.session import get_db
    from erp_authz.main import create_app
    from erp_authz.security.config import load_security_config

    app = create_app()
    app.state.security_config = load_security_config(REPO_ROOT / "config" / "security_config.yaml")
    app.state.permission_registry = registry

    def _get_db(request: Request):
        db_session.info.pop("authz", None)
        authz = getattr(request.state, "authz", None)
        if authz is not None:
            db_session.info["authz"] = authz
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield TestClient(app)
    db_session.info.pop("authz", None)
    app.dependency_overrides.clear()
