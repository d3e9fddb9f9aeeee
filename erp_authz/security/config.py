from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from erp_authz.permissions import PermissionCodeError, parse_grant


class AuthConfig(BaseModel):
    provider: str = "dummy"
    authorization_header: str = "Authorization"
    bearer_prefix: str = "Bearer"
    branch_header: str = "X-Branch-Id"


def _check_codes(codes: list[str]) -> list[str]:
    for code in codes:
        try:
            parse_grant(code)
        except PermissionCodeError as exc:
            raise ValueError(str(exc)) from exc
    return codes


class DefaultRule(BaseModel):
    auth_required: bool = True
    required_permissions: list[str] = Field(default_factory=list)

    @field_validator("required_permissions")
    @classmethod
    def validate_codes(cls, value: list[str]) -> list[str]:
        return _check_codes(value)


class RouteRule(BaseModel):
    path: str
    methods: list[str] = Field(default_factory=lambda: ["GET"])

    auth_required: bool | None = None
    # Any-of: holding (or resolving) one of these is enough.
    required_permissions: list[str] = Field(default_factory=list)

    @field_validator("required_permissions")
    @classmethod
    def validate_codes(cls, value: list[str]) -> list[str]:
        return _check_codes(value)

    def normalized_methods(self) -> set[str]:
        return {m.upper() for m in self.methods}


class SecurityConfigModel(BaseModel):
    auth: AuthConfig = Field(default_factory=AuthConfig)
    default: DefaultRule = Field(default_factory=DefaultRule)
    routes: list[RouteRule] = Field(default_factory=list)


@dataclass(frozen=True)
class EffectiveRule:
    """
    Fully-resolved rule (defaults applied) for a particular request.
    """

    auth_required: bool
    required_permissions: frozenset[str]


def _path_template_to_regex(path_template: str) -> re.Pattern[str]:
    # Convert "/roles/{id}" -> r"^/roles/[^/]+$"
    regex = re.sub(r"\{[^/]+\}", r"[^/]+", path_template)
    return re.compile(rf"^{regex}$")


class SecurityConfig:
    """
    Runtime helper around validated config + route matching.
    """

    def __init__(self, model: SecurityConfigModel):
        self.model = model

        self._compiled_rules: list[tuple[re.Pattern[str], RouteRule]] = [
            (_path_template_to_regex(rule.path), rule) for rule in self.model.routes
        ]

        # Prefer exact matches over templates.
        self._exact_rules: dict[str, list[RouteRule]] = {}
        for r in self.model.routes:
            self._exact_rules.setdefault(r.path, []).append(r)

    @property
    def auth(self) -> AuthConfig:
        return self.model.auth

    def match(self, path: str, method: str) -> EffectiveRule:
        """
        Find the best matching rule for (path, method), then apply defaults.

        `/roles/permissions` is listed before `/roles/{id}` in the YAML, but
        the exact-match pass makes the order irrelevant.
        """

        method = method.upper()
        default = self.model.default

        # 1) exact path match
        for candidate in self._exact_rules.get(path, []):
            if method in candidate.normalized_methods():
                return _effective(candidate, default)

        # 2) template match
        for regex, candidate in self._compiled_rules:
            if method not in candidate.normalized_methods():
                continue
            if regex.match(path):
                return _effective(candidate, default)

        # 3) no match -> defaults
        return EffectiveRule(
            auth_required=default.auth_required,
            required_permissions=frozenset(default.required_permissions),
        )


def _effective(rule: RouteRule, default: DefaultRule) -> EffectiveRule:
    # A rule with permission requirements is auth-required even if the global
    # default is "public".
    inferred_auth_required = default.auth_required or bool(rule.required_permissions)

    return EffectiveRule(
        auth_required=inferred_auth_required if rule.auth_required is None else rule.auth_required,
        required_permissions=frozenset(rule.required_permissions or default.required_permissions),
    )


def load_security_config(path: Path) -> SecurityConfig:
    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "security" not in raw:
        raise ValueError(f"Missing top-level 'security' key in config: {path}")

    model = SecurityConfigModel.model_validate(raw["security"])
    return SecurityConfig(model)
