from __future__ import annotations

import logging
import math
from datetime import date, datetime, time, timedelta, timezone

from erp_authz.errors import (
    AUDIT_LOG_NOT_FOUND,
    BRANCH_REQUIRED,
    INVALID_DATE_RANGE,
    NotFoundError,
    PermissionDenied,
    ValidationError,
)
from erp_authz.models.audit import AuditLog
from erp_authz.permissions import PermissionMatcher
from erp_authz.repositories.audit import AuditLogQuery, AuditRepository
from erp_authz.schemas.audit import AuditFilterOptions, AuditFilters, AuditLogOut, AuditLogPage, Pagination
from erp_authz.security.context import AuthzContext
from erp_authz.services.masking import mask_payload
from erp_authz.settings import Settings

logger = logging.getLogger(__name__)

TENANT_AUDIT_PERMISSION = "audit:read:tenant"


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def to_audit_log_out(log: AuditLog) -> AuditLogOut:
    """Response shape for one entry. Both payloads are masked here."""

    user = log.user
    return AuditLogOut(
        id=log.id,
        module=log.module,
        entity=log.entity,
        entity_id=log.entity_id,
        action=log.action,
        user_id=log.user_id,
        user_name=user.full_name if user is not None else "",
        user_email=user.email if user is not None else "",
        ip_address=log.ip_address,
        user_agent=log.user_agent,
        changes=mask_payload(log.changes),
        metadata=mask_payload(log.meta),
        tenant_id=log.tenant_id,
        branch_id=log.branch_id,
        created_at=log.created_at,
    )


class AuditQueryService:
    """
    Read-only audit API.

    Tenant and branch always come from the caller's `AuthzContext`; nothing
    here appends, edits or deletes entries.
    """

    def __init__(self, repository: AuditRepository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    def _require_branch_scope(self, context: AuthzContext) -> None:
        # Without an active branch the repository reads tenant-wide.
        if context.branch_id is not None:
            return
        if not PermissionMatcher(context.held_permissions).allows(TENANT_AUDIT_PERMISSION):
            logger.info("Audit read without branch rejected user=%s tenant=%s", context.user_id, context.tenant_id)
            raise PermissionDenied("Select a branch to read its audit trail", code=BRANCH_REQUIRED)

    def get_by_id(self, log_id: str, context: AuthzContext) -> AuditLogOut:
        self._require_branch_scope(context)
        log = self.repository.find_by_id(log_id, context.tenant_id, context.branch_id)
        if log is None:
            raise NotFoundError("Audit log not found", code=AUDIT_LOG_NOT_FOUND)
        return to_audit_log_out(log)

    def list(self, filters: AuditFilters, context: AuthzContext) -> AuditLogPage:
        self._require_branch_scope(context)
        if filters.start_date and filters.end_date and filters.start_date > filters.end_date:
            raise ValidationError(
                "Start date must be before or equal to end date",
                code=INVALID_DATE_RANGE,
                details={"start_date": filters.start_date.isoformat(), "end_date": filters.end_date.isoformat()},
            )

        page = filters.page
        limit = min(filters.limit or self.settings.audit_default_limit, self.settings.audit_max_limit)

        query = AuditLogQuery(
            offset=(page - 1) * limit,
            limit=limit,
            module=filters.module,
            entity=filters.entity,
            action=filters.action,
            user_id=filters.user_id,
            created_from=_start_of_day(filters.start_date) if filters.start_date else None,
            # End date covers the whole day.
            created_before=_start_of_day(filters.end_date + timedelta(days=1)) if filters.end_date else None,
        )
        rows, total = self.repository.find_many(context.tenant_id, context.branch_id, query)

        logger.debug(
            "Audit list tenant=%s branch=%s page=%d limit=%d total=%d",
            context.tenant_id,
            context.branch_id,
            page,
            limit,
            total,
        )

        return AuditLogPage(
            logs=[to_audit_log_out(row) for row in rows],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit) if total else 0,
            ),
        )

    def get_filter_options(self, context: AuthzContext) -> AuditFilterOptions:
        return AuditFilterOptions(
            modules=self.repository.distinct_values(context.tenant_id, "module"),
            entities=self.repository.distinct_values(context.tenant_id, "entity"),
            actions=self.repository.distinct_values(context.tenant_id, "action"),
        )
