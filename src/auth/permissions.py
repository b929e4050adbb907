from __future__ import annotations

from typing import Final

LEGACY_ROLE_ALIASES: Final[dict[str, str]] = {
    "org_admin": "admin",
    "company_admin": "admin",
    "user": "member",
    "company_member": "member",
}

CANONICAL_ROLES: Final[set[str]] = {"owner", "admin", "member"}

BILLING_READ: Final[str] = "billing.read"
BILLING_MANAGE: Final[str] = "billing.manage"

ROLE_PERMISSION_BUNDLES: Final[dict[str, set[str]]] = {
    "owner": {BILLING_READ, BILLING_MANAGE},
    "admin": {BILLING_READ, BILLING_MANAGE},
    "member": {BILLING_READ},
}


def normalize_role(role: str) -> str:
    raw = (role or "").strip().lower()
    normalized = LEGACY_ROLE_ALIASES.get(raw, raw)
    if normalized not in CANONICAL_ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def permissions_for_role(role: str) -> set[str]:
    return set(ROLE_PERMISSION_BUNDLES[normalize_role(role)])


def role_has_permission(role: str, permission_key: str) -> bool:
    return permission_key in permissions_for_role(role)
