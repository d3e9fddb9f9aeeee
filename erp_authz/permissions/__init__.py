"""
Permission model: codes, scopes, the static catalog and the resolver.

This package has no dependency on other erp_authz packages (db, security,
services). Use ``resolve(held, required)`` for a single decision or
``PermissionMatcher`` to reuse one parsed held set.
"""

from .codes import Grant, Permission, PermissionCodeError, build_permission_code, parse_grant
from .registry import PermissionRegistry, RegistryError, SystemRoleDef, load_permission_registry
from .resolver import PermissionMatcher, resolve, resolve_all, resolve_any
from .scopes import Scope

__all__ = [
    "Grant",
    "Permission",
    "PermissionCodeError",
    "PermissionMatcher",
    "PermissionRegistry",
    "RegistryError",
    "Scope",
    "SystemRoleDef",
    "build_permission_code",
    "load_permission_registry",
    "parse_grant",
    "resolve",
    "resolve_all",
    "resolve_any",
]
