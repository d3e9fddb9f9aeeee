"""Permission scopes and their containment order."""

from __future__ import annotations

from enum import Enum


class Scope(str, Enum):
    """
    Breadth of data a permission applies to.

    The order is total: ALL > TENANT > BRANCH > OWN. A broader scope grants
    every narrower one for the same resource/action.
    """

    ALL = "all"
    TENANT = "tenant"
    BRANCH = "branch"
    OWN = "own"

    @property
    def breadth(self) -> int:
        return _BREADTH[self]

    def covers(self, other: Scope) -> bool:
        """True when holding `self` implies holding `other`."""
        return self.breadth >= other.breadth

    def narrower(self) -> tuple[Scope, ...]:
        """Scopes this one grants, itself included, broadest first."""
        return tuple(s for s in _ORDERED if self.covers(s))


_BREADTH: dict[Scope, int] = {
    Scope.ALL: 3,
    Scope.TENANT: 2,
    Scope.BRANCH: 1,
    Scope.OWN: 0,
}

_ORDERED: tuple[Scope, ...] = tuple(sorted(Scope, key=lambda s: _BREADTH[s], reverse=True))
