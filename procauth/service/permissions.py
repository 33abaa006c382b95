from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable, List

from procauth.logging import get_logger

logger = get_logger(__name__)

WILDCARD = "*"
ACCOUNT_MANAGE = "account:manage"


class Role(str, Enum):
    ADMIN = "admin"
    PROCUREMENT_MANAGER = "procurement_manager"
    PROCUREMENT_OFFICER = "procurement_officer"
    FINANCE_MANAGER = "finance_manager"
    USER = "user"


ROLE_PERMISSIONS: Dict[Role, FrozenSet[str]] = {
    Role.ADMIN: frozenset({WILDCARD}),
    Role.PROCUREMENT_MANAGER: frozenset(
        {
            "procurement:read",
            "procurement:write",
            "procurement:approve",
            "contract:read",
            "contract:write",
            "contract:approve",
            "supplier:read",
            "supplier:write",
            "audit:read",
            "report:read",
        }
    ),
    Role.PROCUREMENT_OFFICER: frozenset(
        {
            "procurement:read",
            "procurement:write",
            "contract:read",
            "contract:write",
            "supplier:read",
            "supplier:write",
        }
    ),
    Role.FINANCE_MANAGER: frozenset(
        {
            "procurement:read",
            "contract:read",
            "approval:approve",
            "audit:read",
            "report:read",
        }
    ),
    Role.USER: frozenset({"procurement:read", "contract:read", "profile:write"}),
}


def parse_roles(raw_roles: Iterable[str]) -> List[Role]:
    """Map stored role names to ``Role``; unknown names are skipped."""
    roles: List[Role] = []
    for name in raw_roles:
        try:
            roles.append(Role(name))
        except ValueError:
            logger.warning("unknown_role_ignored", role=name)
    return roles


def effective_permissions(raw_roles: Iterable[str]) -> List[str]:
    permissions: set[str] = set()
    for role in parse_roles(raw_roles):
        permissions |= ROLE_PERMISSIONS[role]
    return sorted(permissions)


def has_permission(raw_roles: Iterable[str], permission: str) -> bool:
    granted = effective_permissions(raw_roles)
    return WILDCARD in granted or permission in granted
