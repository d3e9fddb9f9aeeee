"""
Permission catalog and YAML loader.

The catalog is static data: every grantable ``resource:action:scope`` code
plus the seeded system roles. It is loaded and validated once at startup and
never mutated afterwards.

Expected shape:

    resources:
      student:
        create: [branch]
        read: [tenant, branch, own]

    system_roles:
      TENANT_ADMIN:
        name: Tenant Admin
        description: Full access within one tenant
        permissions: ["student:*", "audit:read:tenant"]

Any malformed code is rejected here with ``RegistryError``; the resolver
never has to deal with a bad catalog.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping

import yaml

from .codes import Grant, Permission, PermissionCodeError, build_permission_code, parse_grant

logger = logging.getLogger(__name__)


# ---- Data structures -----------------------------------------------------------------


@dataclass(frozen=True)
class SystemRoleDef:
    """System role definition (seeded, immutable)."""

    code: str
    name: str
    permissions: frozenset[str]
    description: str | None = None


class RegistryError(ValueError):
    """Raised when the permission catalog is invalid."""


class PermissionRegistry:
    """
    Immutable catalog of permissions and system roles.

    Usage:
        registry = load_permission_registry(Path("config/permissions.yaml"))
        registry.is_grantable("fee:*")  # True when `fee` is catalogued
    """

    def __init__(
        self,
        permissions: Iterable[Permission],
        system_roles: Iterable[SystemRoleDef] = (),
    ) -> None:
        by_code: dict[str, Permission] = {}
        for perm in permissions:
            by_code[perm.code] = perm
        self._permissions: Mapping[str, Permission] = MappingProxyType(dict(sorted(by_code.items())))

        self._resource_actions: frozenset[tuple[str, str]] = frozenset(
            (p.resource, p.action) for p in by_code.values()
        )
        self._resources: frozenset[str] = frozenset(p.resource for p in by_code.values())

        roles: dict[str, SystemRoleDef] = {}
        for role in system_roles:
            if role.code in roles:
                raise RegistryError(f"duplicate system role {role.code!r}")
            unknown = sorted(code for code in role.permissions if not self.is_grantable(code))
            if unknown:
                raise RegistryError(f"system role {role.code!r} references unknown permissions: {unknown}")
            roles[role.code] = role
        self._system_roles: Mapping[str, SystemRoleDef] = MappingProxyType(roles)

    # ---- Lookups ---------------------------------------------------------------------

    def __contains__(self, code: object) -> bool:
        return code in self._permissions

    def __len__(self) -> int:
        return len(self._permissions)

    @property
    def codes(self) -> frozenset[str]:
        return frozenset(self._permissions)

    @property
    def system_roles(self) -> Mapping[str, SystemRoleDef]:
        return self._system_roles

    def get(self, code: str) -> Permission | None:
        return self._permissions.get(code)

    def permissions(self) -> list[Permission]:
        return list(self._permissions.values())

    def for_resource(self, resource: str) -> list[Permission]:
        return [p for p in self._permissions.values() if p.resource == resource]

    def is_grantable(self, code: str) -> bool:
        """
        True for a catalogued code, or a wildcard over a catalogued
        resource (``r:*``) or resource/action (``r:a:*``).
        """

        try:
            grant = parse_grant(code)
        except PermissionCodeError:
            return False
        if not grant.is_wildcard:
            return grant.code in self._permissions
        if grant.action is None:
            return grant.resource in self._resources
        return (grant.resource, grant.action) in self._resource_actions

    def expand(self, code: str) -> list[str]:
        """Catalogued codes covered by a (possibly wildcard) grant."""

        try:
            grant = parse_grant(code)
        except PermissionCodeError:
            return []
        return [c for c, p in self._permissions.items() if grant.covers(Grant.of(p))]


# ---- Loader --------------------------------------------------------------------------


def _parse_permissions(resources_raw: Mapping) -> list[Permission]:
    permissions: list[Permission] = []
    for resource, actions in resources_raw.items():
        if not isinstance(actions, dict) or not actions:
            raise RegistryError(f"resource {resource!r} must map actions to scope lists")
        for action, scopes in actions.items():
            if not isinstance(scopes, list) or not scopes:
                raise RegistryError(f"resource {resource!r}.{action} must have a non-empty scopes list")
            for scope in scopes:
                try:
                    code = build_permission_code(str(resource), str(action), str(scope))
                except PermissionCodeError as exc:
                    raise RegistryError(str(exc)) from exc
                permissions.append(Permission.parse(code))
    return permissions


def _parse_system_roles(roles_raw: Mapping) -> list[SystemRoleDef]:
    roles: list[SystemRoleDef] = []
    for role_code, role_val in roles_raw.items():
        if not isinstance(role_val, dict):
            raise RegistryError(f"system role {role_code!r} must be a mapping")
        perms_list = role_val.get("permissions") or []
        if not isinstance(perms_list, list):
            raise RegistryError(f"system role {role_code!r}.permissions must be a list")
        name = role_val.get("name") or role_code
        description = role_val.get("description")
        roles.append(
            SystemRoleDef(
                code=str(role_code),
                name=str(name),
                permissions=frozenset(str(p) for p in perms_list),
                description=str(description) if description is not None else None,
            )
        )
    return roles


def build_permission_registry(raw: Mapping) -> PermissionRegistry:
    """Validate an already-parsed catalog mapping."""

    resources_raw = raw.get("resources") or {}
    roles_raw = raw.get("system_roles") or {}

    if not isinstance(resources_raw, dict):
        raise RegistryError("resources must be a mapping")
    if not isinstance(roles_raw, dict):
        raise RegistryError("system_roles must be a mapping when present")

    registry = PermissionRegistry(_parse_permissions(resources_raw), _parse_system_roles(roles_raw))
    logger.debug(
        "Permission registry built permissions=%d system_roles=%d",
        len(registry),
        len(registry.system_roles),
    )
    return registry


def load_permission_registry(path: Path) -> PermissionRegistry:
    """Load and validate the permission catalog YAML from disk."""

    raw_text = path.read_text(encoding="utf-8")
    raw = yaml.safe_load(raw_text) or {}
    if not isinstance(raw, dict):
        raise RegistryError(f"permission catalog must be a mapping: {path}")
    return build_permission_registry(raw)
