from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class AuthzContext:
    """
    Per-request authorization context.

    Built once by `enforce_security` and never mutated afterwards. It is
    attached to:
    - request.state (FastAPI request lifetime)
    - Session.info (SQLAlchemy session lifetime)
    """

    tenant_id: str
    user_id: str
    held_permissions: frozenset[str]
    # None = tenant-wide view.
    branch_id: str | None = None
