from __future__ import annotations

from collections.abc import Callable


def require_permissions(codes: list[str]) -> Callable:
    """
    Decorator-style API (alternative to the YAML route rules).

    Implementation detail:
    - This decorator does NOT perform the check itself.
    - It attaches metadata that the global security dependency reads
      *after* routing (during dependency resolution).
    - Codes are any-of, like `required_permissions` in the YAML.
    """

    def decorator(fn: Callable) -> Callable:
        existing = set(getattr(fn, "__security_required_permissions__", set()))
        setattr(fn, "__security_required_permissions__", existing | set(codes))
        return fn

    return decorator
