from __future__ import annotations

from enum import Enum


class Role(str, Enum):
    OWNER = "org_owner"
    ADMIN = "admin"
    MANAGER = "business_manager"
    EDITOR = "editor"
    MEMBER = "employee"
    VIEWER = "viewer"


# Feature areas that scopes are derived for; scope strings read "<area>:<read|write>".
FEATURE_AREAS: tuple[str, ...] = (
    "organization",
    "users",
    "roles",
    "financials",
    "operations",
    "integrations",
    "workflows",
    "transactions",
    "contacts",
    "products",
    "events",
    "tickets",
    "forms",
    "invoices",
    "publishing",
    "reports",
)

_VIEWER: frozenset[str] = frozenset(
    {
        "view_organization",
        "view_users",
        "view_roles",
        "view_operations",
        "view_financials",
        "view_reports",
        "view_forms",
        "view_workflows",
    }
)

# Members extend the viewer set with day-to-day content work.
_MEMBER: frozenset[str] = _VIEWER | {
    "view_contacts",
    "view_products",
    "view_events",
    "view_tickets",
    "view_transactions",
    "manage_forms",
    "manage_tickets",
}

_EDITOR: frozenset[str] = _MEMBER | {
    "view_publishing",
    "view_invoices",
    "manage_publishing",
    "manage_contacts",
    "manage_products",
    "manage_events",
}

_MANAGER: frozenset[str] = _EDITOR | {
    "view_integrations",
    "manage_users",
    "manage_operations",
    "manage_workflows",
    "manage_invoices",
    "manage_transactions",
}

_ADMIN: frozenset[str] = _MANAGER | {
    "manage_roles",
    "manage_financials",
    "manage_integrations",
    "manage_reports",
}

_OWNER: frozenset[str] = _ADMIN | {"manage_organization"}


def parse_role(name: str | None) -> Role:
    # Unknown or missing role names collapse to the most restrictive tier.
    if not name:
        return Role.VIEWER
    try:
        return Role(name.strip().lower())
    except ValueError:
        return Role.VIEWER


def permissions_for(role: Role) -> frozenset[str]:
    match role:
        case Role.OWNER:
            return _OWNER
        case Role.ADMIN:
            return _ADMIN
        case Role.MANAGER:
            return _MANAGER
        case Role.EDITOR:
            return _EDITOR
        case Role.MEMBER:
            return _MEMBER
        case Role.VIEWER:
            return _VIEWER
    raise AssertionError(f"Unmapped role: {role!r}")


def scopes_for_permissions(permissions: frozenset[str]) -> list[str]:
    # view_<area> grants <area>:read; manage_<area> grants read and write.
    scopes: set[str] = set()
    for permission in permissions:
        action, _, area = permission.partition("_")
        if area not in FEATURE_AREAS:
            continue
        if action == "view":
            scopes.add(f"{area}:read")
        elif action == "manage":
            scopes.add(f"{area}:read")
            scopes.add(f"{area}:write")
    return sorted(scopes)


def scopes_for_role(role: Role) -> list[str]:
    return scopes_for_permissions(permissions_for(role))
