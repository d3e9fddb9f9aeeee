"""
Parsed permission codes.

Wire format (bit-exact): ``<resource>:<action>:<scope>``, lowercase
snake_case segments, scope one of ``all|tenant|branch|own``. Role grants may
also use ``<resource>:*`` (every action, every scope) or
``<resource>:<action>:*`` (every scope of one action).

Raw strings are parsed once at the boundary into ``Permission`` / ``Grant``
values; nothing downstream inspects the string again.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .scopes import Scope

SEPARATOR = ":"
WILDCARD = "*"

_SEGMENT_RE = re.compile(r"^[a-z][a-z0-9_]*$")


class PermissionCodeError(ValueError):
    """Raised when a permission code does not follow the wire format."""


def _check_segment(code: str, label: str, value: str) -> str:
    if not value:
        raise PermissionCodeError(f"permission code {code!r}: empty {label}")
    if not _SEGMENT_RE.match(value):
        raise PermissionCodeError(f"permission code {code!r}: {label} {value!r} is not lowercase snake_case")
    return value


def _parse_scope(code: str, value: str) -> Scope:
    try:
        return Scope(value)
    except ValueError:
        raise PermissionCodeError(
            f"permission code {code!r}: unknown scope {value!r} (expected one of {[s.value for s in Scope]})"
        ) from None


@dataclass(frozen=True)
class Permission:
    """A single grantable capability: resource, action and scope."""

    resource: str
    action: str
    scope: Scope

    @property
    def code(self) -> str:
        return SEPARATOR.join((self.resource, self.action, self.scope.value))

    @classmethod
    def parse(cls, code: str) -> Permission:
        if not isinstance(code, str):
            raise PermissionCodeError(f"permission code must be a string, got {type(code).__name__}")
        parts = code.split(SEPARATOR)
        if len(parts) != 3:
            raise PermissionCodeError(f"permission code {code!r}: expected resource:action:scope")
        resource, action, scope = parts
        return cls(
            resource=_check_segment(code, "resource", resource),
            action=_check_segment(code, "action", action),
            scope=_parse_scope(code, scope),
        )

    def __str__(self) -> str:
        return self.code


@dataclass(frozen=True)
class Grant:
    """
    A held permission pattern.

    ``action is None`` means every action (``resource:*``); ``scope is None``
    means every scope (``resource:action:*``). An exact grant carries both.
    """

    resource: str
    action: str | None = None
    scope: Scope | None = None

    @property
    def is_wildcard(self) -> bool:
        return self.action is None or self.scope is None

    @property
    def code(self) -> str:
        if self.action is None:
            return SEPARATOR.join((self.resource, WILDCARD))
        if self.scope is None:
            return SEPARATOR.join((self.resource, self.action, WILDCARD))
        return SEPARATOR.join((self.resource, self.action, self.scope.value))

    @classmethod
    def of(cls, permission: Permission) -> Grant:
        return cls(resource=permission.resource, action=permission.action, scope=permission.scope)

    def covers(self, other: Grant) -> bool:
        """
        True when holding `self` implies holding `other`.

        Wildcards match by prefix on the non-wildcarded segments; exact
        scopes compare by breadth. A wildcard in `other` is only covered by an
        equal or broader wildcard.
        """

        if self.resource != other.resource:
            return False
        if self.action is None:
            return True
        if other.action is None or self.action != other.action:
            return False
        if self.scope is None:
            return True
        if other.scope is None:
            return False
        return self.scope.covers(other.scope)

    def __str__(self) -> str:
        return self.code


def parse_grant(code: str) -> Grant:
    """Parse an exact or wildcard permission code."""

    if not isinstance(code, str):
        raise PermissionCodeError(f"permission code must be a string, got {type(code).__name__}")
    parts = code.split(SEPARATOR)
    if len(parts) == 2 and parts[1] == WILDCARD:
        return Grant(resource=_check_segment(code, "resource", parts[0]))
    if len(parts) == 3 and parts[2] == WILDCARD:
        return Grant(
            resource=_check_segment(code, "resource", parts[0]),
            action=_check_segment(code, "action", parts[1]),
        )
    return Grant.of(Permission.parse(code))


def build_permission_code(resource: str, action: str, scope: Scope | str) -> str:
    """Build and validate a code from its parts."""

    scope_value = scope.value if isinstance(scope, Scope) else scope
    return Permission.parse(SEPARATOR.join((resource, action, scope_value))).code
