from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from erp_authz.errors import BRANCH_ACCESS_DENIED, PermissionDenied
from erp_authz.models.security import Branch, User
from erp_authz.security.config import SecurityConfig

logger = logging.getLogger(__name__)


def extract_user_id(request: Request, config: SecurityConfig) -> str | None:
    """
    Demo auth: extract bearer token and treat it as a user id.

    - Input: `Authorization: Bearer <token>`
    - Demo behavior: `<token>` is the user's id
    - Production behavior (documented only): an upstream identity provider
      validates the token; this package only consumes the resulting user id
    """

    header_name = config.auth.authorization_header
    bearer_prefix = config.auth.bearer_prefix

    raw = request.headers.get(header_name)
    if not raw:
        logger.info("Missing Authorization header (auth required) path=%s method=%s", request.url.path, request.method)
        return None

    prefix = f"{bearer_prefix} "
    if not raw.startswith(prefix):
        logger.warning("Invalid Authorization header format path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header_name}. Expected '{bearer_prefix} <token>'.",
        )

    token = raw[len(prefix) :].strip()
    if not token:
        logger.warning("Empty bearer token path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {header_name}. Missing token after '{bearer_prefix}'.",
        )

    return token


def load_user(db: Session, user_id: str) -> User:
    user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()

    if user is None or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or inactive user")

    return user


def resolve_branch(request: Request, config: SecurityConfig, db: Session, user: User) -> str | None:
    """
    Active branch for this request.

    The branch header wins; it must name a branch of the user's tenant.
    Without it, the user's home branch (None for tenant-level staff).
    """

    requested = request.headers.get(config.auth.branch_header)
    if not requested:
        return user.branch_id

    branch = db.execute(
        select(Branch).where(Branch.id == requested, Branch.tenant_id == user.tenant_id)
    ).scalar_one_or_none()
    if branch is None:
        logger.info("Branch outside tenant rejected user=%s tenant=%s", user.id, user.tenant_id)
        raise PermissionDenied("Branch not accessible", code=BRANCH_ACCESS_DENIED)

    return branch.id
