from __future__ import annotations

from collections.abc import Generator

from fastapi import Request
from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from erp_authz.settings import get_settings


def install_sqlite_pragmas(engine: Engine) -> None:
    """Turn on FK enforcement for SQLite; the role-in-use check relies on it."""

    if engine.dialect.name != "sqlite":
        return

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


_settings = get_settings()

engine = create_engine(
    _settings.resolved_db_url(),
    connect_args={"check_same_thread": False} if _settings.resolved_db_url().startswith("sqlite") else {},
)
install_sqlite_pragmas(engine)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, class_=Session)


def get_db(request: Request) -> Generator[Session, None, None]:
    """
    Main DB dependency.

    The request's AuthzContext (set by `enforce_security`) is copied into
    `Session.info["authz"]` so the `do_orm_execute` hook in
    `erp_authz/db/filters.py` can add tenant/branch criteria to every SELECT.
    """

    db = SessionLocal()
    try:
        authz = getattr(getattr(request, "state", None), "authz", None)
        if authz is not None:
            db.info["authz"] = authz
        yield db
    finally:
        db.close()
