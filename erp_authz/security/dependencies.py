from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from erp_authz.db.session import get_db
from erp_authz.errors import PermissionDenied
from erp_authz.models.security import User
from erp_authz.permissions import PermissionMatcher, PermissionRegistry
from erp_authz.security.auth import extract_user_id, load_user, resolve_branch
from erp_authz.security.config import SecurityConfig
from erp_authz.security.context import AuthzContext
from erp_authz.services.roles import RoleService

logger = logging.getLogger(__name__)


def get_security_config(request: Request) -> SecurityConfig:
    config = getattr(request.app.state, "security_config", None)
    if config is None:
        raise RuntimeError("Security config not loaded. Did app startup run?")
    return config


def get_permission_registry(request: Request) -> PermissionRegistry:
    registry = getattr(request.app.state, "permission_registry", None)
    if registry is None:
        raise RuntimeError("Permission registry not loaded. Did app startup run?")
    return registry


def get_current_user(request: Request) -> User:
    user = getattr(request.state, "user", None)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return user


def get_authz_context(request: Request) -> AuthzContext:
    authz = getattr(request.state, "authz", None)
    if authz is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
    return authz


def enforce_security(
    request: Request,
    config: SecurityConfig = Depends(get_security_config),
    registry: PermissionRegistry = Depends(get_permission_registry),
    db: Session = Depends(get_db, use_cache=False),
) -> None:
    """
    Global security dependency (PRIMARY, configuration-driven).

    Pipeline: match rule -> identify user -> resolve branch -> effective
    permissions (fresh from the DB) -> required-permission check ->
    `request.state.authz`.

    Runs after routing, so decorator metadata on the endpoint is merged with
    the YAML rule.
    """

    path = request.url.path
    method = request.method.upper()

    rule = config.match(path, method)

    # Optional decorator metadata (alternative example).
    endpoint = request.scope.get("endpoint")
    decorator_permissions = set(getattr(endpoint, "__security_required_permissions__", set())) if endpoint else set()

    auth_required = rule.auth_required or bool(decorator_permissions)
    if not auth_required:
        return

    user_id = extract_user_id(request, config)
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing user id")

    user = load_user(db, user_id)
    request.state.user = user

    branch_id = resolve_branch(request, config, db, user)
    held = RoleService(db, registry).compute_effective_permissions(user.id, user.tenant_id, branch_id)

    required = set(rule.required_permissions) | decorator_permissions
    if required and not PermissionMatcher(held).allows_any(required):
        logger.info(
            "Permission denied user=%s tenant=%s path=%s method=%s required=%s",
            user.id,
            user.tenant_id,
            path,
            method,
            sorted(required),
        )
        raise PermissionDenied("Insufficient permissions", details={"required_any_of": sorted(required)})

    request.state.authz = AuthzContext(
        tenant_id=user.tenant_id,
        user_id=user.id,
        held_permissions=held,
        branch_id=branch_id,
    )
