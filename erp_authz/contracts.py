"""
Write-side contract for audit producers.

Business modules emit audit events through an ``AuditAppender``. This
package only defines the shape; it ships no production implementation and
its own audit read path has no write method at any layer.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class AuditLogDraft(BaseModel):
    """One audit event as handed to `AuditAppender.append`. Payloads are stored unmasked."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    module: str = Field(min_length=1, max_length=50)
    entity: str = Field(min_length=1, max_length=100)
    entity_id: str | None = None
    action: str = Field(min_length=1, max_length=50)
    user_id: str
    ip_address: str | None = None
    user_agent: str | None = None
    changes: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    tenant_id: str
    branch_id: str | None = None


@runtime_checkable
class AuditAppender(Protocol):
    def append(self, entry: AuditLogDraft) -> None:
        ...
