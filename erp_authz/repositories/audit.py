"""
Read-only persistence boundary for audit entries.

Exactly three public methods; none of them writes. Every query carries the
tenant predicate, and the branch predicate when a branch is given.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from erp_authz.models.audit import AuditLog

# Columns exposed through `distinct_values`.
_DISTINCT_COLUMNS = {
    "module": AuditLog.module,
    "entity": AuditLog.entity,
    "action": AuditLog.action,
}


@dataclass(frozen=True)
class AuditLogQuery:
    """Resolved list query: filters already validated, window already clamped."""

    offset: int
    limit: int
    module: str | None = None
    entity: str | None = None
    action: str | None = None
    user_id: str | None = None
    created_from: datetime | None = None
    # Exclusive upper bound.
    created_before: datetime | None = None


class AuditRepository:
    def __init__(self, db: Session) -> None:
        self.db = db

    def find_by_id(self, log_id: str, tenant_id: str, branch_id: str | None = None) -> AuditLog | None:
        # One predicate: "absent" and "someone else's" are indistinguishable.
        stmt = select(AuditLog).where(AuditLog.id == log_id, AuditLog.tenant_id == tenant_id)
        if branch_id is not None:
            stmt = stmt.where(AuditLog.branch_id == branch_id)
        return self.db.scalars(stmt).first()

    def find_many(
        self,
        tenant_id: str,
        branch_id: str | None,
        query: AuditLogQuery,
    ) -> tuple[list[AuditLog], int]:
        conditions = [AuditLog.tenant_id == tenant_id]
        if branch_id is not None:
            conditions.append(AuditLog.branch_id == branch_id)
        if query.module:
            conditions.append(AuditLog.module == query.module)
        if query.entity:
            conditions.append(AuditLog.entity == query.entity)
        if query.action:
            conditions.append(AuditLog.action == query.action)
        if query.user_id:
            conditions.append(AuditLog.user_id == query.user_id)
        if query.created_from is not None:
            conditions.append(AuditLog.created_at >= query.created_from)
        if query.created_before is not None:
            conditions.append(AuditLog.created_at < query.created_before)

        total = self.db.scalar(select(func.count()).select_from(AuditLog).where(*conditions)) or 0

        stmt = (
            select(AuditLog)
            .where(*conditions)
            # id breaks ties between entries written in the same instant.
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(query.offset)
            .limit(query.limit)
        )
        rows = list(self.db.scalars(stmt).all())
        return rows, total

    def distinct_values(self, tenant_id: str, column: str) -> list[str]:
        try:
            col = _DISTINCT_COLUMNS[column]
        except KeyError:
            raise ValueError(f"distinct_values not supported for column {column!r}") from None

        stmt = select(col).where(AuditLog.tenant_id == tenant_id).distinct().order_by(col)
        return [value for value in self.db.scalars(stmt).all() if value is not None]
