from __future__ import annotations

import pytest

from platformcore.core.errors import InsufficientScope
from platformcore.services.auth.api_keys import normalize_scopes, scopes_for_new_key
from platformcore.services.auth.roles import Role, parse_role, permissions_for, scopes_for_role
from platformcore.services.auth.scopes import check_scopes


def test_wildcard_grants_everything() -> None:
    result = check_scopes(["*"], ["workflows:write", "transactions:read"])
    assert result.allowed
    assert result.missing_scopes == []


def test_missing_scopes_are_reported_in_request_order() -> None:
    result = check_scopes(["workflows:read"], ["transactions:read", "workflows:read", "workflows:write"])
    assert not result.allowed
    assert result.missing_scopes == ["transactions:read", "workflows:write"]


def test_empty_requirement_is_allowed() -> None:
    assert check_scopes([], []).allowed


def test_role_tiers_are_nested() -> None:
    order = [Role.VIEWER, Role.MEMBER, Role.EDITOR, Role.MANAGER, Role.ADMIN, Role.OWNER]
    for lower, higher in zip(order, order[1:]):
        assert permissions_for(lower) <= permissions_for(higher)


def test_manage_permission_grants_read_and_write() -> None:
    scopes = scopes_for_role(Role.MANAGER)
    assert "workflows:read" in scopes
    assert "workflows:write" in scopes
    assert "transactions:write" in scopes
    assert "organization:write" not in scopes


def test_viewer_is_read_only() -> None:
    scopes = scopes_for_role(Role.VIEWER)
    assert "workflows:read" in scopes
    assert not any(scope.endswith(":write") for scope in scopes)
    assert "transactions:read" not in scopes


def test_unknown_role_names_collapse_to_viewer() -> None:
    assert parse_role("superuser") is Role.VIEWER
    assert parse_role(None) is Role.VIEWER
    assert parse_role(" Org_Owner ") is Role.OWNER


def test_api_key_scopes_default_to_wildcard_and_dedupe() -> None:
    assert normalize_scopes(None) == ["*"]
    assert normalize_scopes([" ", ""]) == ["*"]
    assert normalize_scopes(["workflows:read", " workflows:read", "transactions:read"]) == [
        "workflows:read",
        "transactions:read",
    ]


def test_new_keys_default_to_the_creator_role() -> None:
    assert scopes_for_new_key(Role.OWNER, None) == ["*"]
    assert scopes_for_new_key(Role.ADMIN, []) == scopes_for_role(Role.ADMIN)
    assert scopes_for_new_key(Role.VIEWER, ["  "]) == scopes_for_role(Role.VIEWER)
    assert "*" not in scopes_for_new_key(Role.ADMIN, None)


def test_new_keys_cannot_exceed_the_creator_role() -> None:
    assert scopes_for_new_key(Role.ADMIN, ["workflows:write", "workflows:write"]) == ["workflows:write"]
    assert scopes_for_new_key(Role.OWNER, ["*"]) == ["*"]
    with pytest.raises(InsufficientScope) as excinfo:
        scopes_for_new_key(Role.ADMIN, ["workflows:read", "organization:write", "*"])
    assert excinfo.value.missing_scopes == ["organization:write", "*"]
