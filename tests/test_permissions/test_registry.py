"""Tests for the permission catalog loader."""
from __future__ import annotations

import pytest

from erp_authz.permissions import RegistryError, load_permission_registry
from erp_authz.permissions.registry import build_permission_registry


CATALOG = {
    "resources": {
        "student": {"read": ["tenant", "branch", "own"], "delete": ["branch"]},
        "fee": {"collect": ["branch"]},
    },
    "system_roles": {
        "CLERK": {"name": "Clerk", "permissions": ["fee:*", "student:read:branch"]},
    },
}


def test_builds_codes_and_system_roles():
    registry = build_permission_registry(CATALOG)

    assert len(registry) == 5
    assert "student:read:own" in registry
    assert "student:read:all" not in registry
    assert [p.code for p in registry.for_resource("fee")] == ["fee:collect:branch"]

    clerk = registry.system_roles["CLERK"]
    assert clerk.name == "Clerk"
    assert clerk.permissions == frozenset({"fee:*", "student:read:branch"})


def test_is_grantable_covers_catalog_codes_and_wildcards():
    registry = build_permission_registry(CATALOG)

    assert registry.is_grantable("student:delete:branch")
    assert registry.is_grantable("student:*")
    assert registry.is_grantable("student:read:*")
    assert not registry.is_grantable("student:read:all")
    assert not registry.is_grantable("library:*")
    assert not registry.is_grantable("student:enroll:*")
    assert not registry.is_grantable("not a code")


def test_expand_lists_covered_catalog_codes():
    registry = build_permission_registry(CATALOG)

    assert registry.expand("student:read:*") == ["student:read:branch", "student:read:own", "student:read:tenant"]
    assert registry.expand("student:read:branch") == ["student:read:branch", "student:read:own"]
    assert registry.expand("garbage") == []


@pytest.mark.parametrize(
    "raw",
    [
        {"resources": {"student": {"read": ["campus"]}}},
        {"resources": {"Student": {"read": ["branch"]}}},
        {"resources": {"student": {"read": []}}},
        {"resources": {"student": ["read"]}},
        {"resources": {"student": {"read": ["branch"]}}, "system_roles": {"X": {"permissions": ["fee:*"]}}},
        {"resources": {"student": {"read": ["branch"]}}, "system_roles": {"X": {"permissions": ["student:read:all"]}}},
        {"resources": {"student": {"read": ["branch"]}}, "system_roles": {"X": {"permissions": "student:*"}}},
    ],
)
def test_invalid_catalog_fails_at_load_time(raw):
    with pytest.raises(RegistryError):
        build_permission_registry(raw)


def test_shipped_catalog_loads(registry):
    assert "audit:read:tenant" in registry
    assert "audit:read:branch" in registry
    assert {"TENANT_ADMIN", "BRANCH_ADMIN", "ACCOUNTANT", "TEACHER"} <= set(registry.system_roles)


def test_load_from_yaml_file(tmp_path):
    path = tmp_path / "permissions.yaml"
    path.write_text(
        "resources:\n"
        "  exam:\n"
        "    publish: [branch]\n"
        "system_roles:\n"
        "  EXAMINER:\n"
        "    name: Examiner\n"
        "    permissions: ['exam:publish:branch']\n",
        encoding="utf-8",
    )

    registry = load_permission_registry(path)

    assert registry.codes == frozenset({"exam:publish:branch"})
    assert registry.system_roles["EXAMINER"].permissions == frozenset({"exam:publish:branch"})


def test_non_mapping_yaml_is_rejected(tmp_path):
    path = tmp_path / "permissions.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(RegistryError):
        load_permission_registry(path)
