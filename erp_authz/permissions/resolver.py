"""
Scope resolver: decides whether a held permission set grants a required code.

Pure functions over their inputs. ``resolve`` never raises; malformed held
codes are ignored and a malformed required code is simply not granted.
There are no negative permissions: absence of a matching grant is the only
form of denial.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Iterable

from .codes import Grant, PermissionCodeError, parse_grant

logger = logging.getLogger(__name__)


@lru_cache(maxsize=4096)
def _parse_or_none(code: str) -> Grant | None:
    try:
        return parse_grant(code)
    except (PermissionCodeError, TypeError):
        return None


class PermissionMatcher:
    """
    A held permission set, parsed once.

    Build one per request (or per decision) and ask it as many questions as
    needed; it holds no other state.
    """

    def __init__(self, held: Iterable[str]) -> None:
        grants: list[Grant] = []
        for code in held:
            grant = _parse_or_none(code) if isinstance(code, str) else None
            if grant is None:
                logger.debug("Ignoring malformed held permission code=%r", code)
                continue
            grants.append(grant)
        self._grants = tuple(grants)
        self._exact = frozenset(g.code for g in grants)

    def allows(self, required: str) -> bool:
        if not isinstance(required, str):
            return False
        if required in self._exact:
            return True
        wanted = _parse_or_none(required)
        if wanted is None:
            logger.debug("Malformed required permission code=%r", required)
            return False
        return any(g.covers(wanted) for g in self._grants)

    def allows_all(self, required: Iterable[str]) -> bool:
        return all(self.allows(code) for code in required)

    def allows_any(self, required: Iterable[str]) -> bool:
        return any(self.allows(code) for code in required)

    def unauthorized(self, requested: Iterable[str]) -> list[str]:
        """Requested codes not granted by this set, in input order, deduplicated."""

        missing: list[str] = []
        for code in requested:
            if code not in missing and not self.allows(code):
                missing.append(code)
        return missing


def resolve(held: Iterable[str], required: str) -> bool:
    """Grant/deny `required` against the `held` permission codes."""

    allowed = PermissionMatcher(held).allows(required)
    logger.debug("Permission %s required=%s", "granted" if allowed else "denied", required)
    return allowed


def resolve_all(held: Iterable[str], required: Iterable[str]) -> bool:
    return PermissionMatcher(held).allows_all(required)


def resolve_any(held: Iterable[str], required: Iterable[str]) -> bool:
    return PermissionMatcher(held).allows_any(required)
