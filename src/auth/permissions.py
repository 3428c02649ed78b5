from __future__ import annotations

from typing import Final

LEGACY_ROLE_ALIASES: Final[dict[str, str]] = {
    "Admin": "org_admin",
    "admin": "org_admin",
    "User": "org_member",
    "user": "org_member",
    "Partner": "partner",
}

CANONICAL_ROLES: Final[set[str]] = {"org_admin", "org_member", "partner"}

RELEASES_READ: Final[str] = "releases.read"
ANALYTICS_READ: Final[str] = "analytics.read"

ROLE_PERMISSION_BUNDLES: Final[dict[str, set[str]]] = {
    "org_admin": {
        RELEASES_READ,
        ANALYTICS_READ,
    },
    "org_member": {
        RELEASES_READ,
        ANALYTICS_READ,
    },
    "partner": set(),
}


def normalize_role(role: str) -> str:
    raw = (role or "").strip()
    normalized = LEGACY_ROLE_ALIASES.get(raw, raw)
    if normalized not in CANONICAL_ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def permissions_for_role(role: str) -> set[str]:
    normalized = normalize_role(role)
    return set(ROLE_PERMISSION_BUNDLES[normalized])


def role_has_permission(role: str, permission_key: str) -> bool:
    return permission_key in permissions_for_role(role)
