from procauth.service.permissions import (
    ACCOUNT_MANAGE,
    WILDCARD,
    Role,
    effective_permissions,
    has_permission,
    parse_roles,
)


def test_admin_holds_wildcard():
    assert effective_permissions(["admin"]) == [WILDCARD]
    assert has_permission(["admin"], ACCOUNT_MANAGE) is True
    assert has_permission(["admin"], "anything:at-all") is True


def test_roles_union_their_permissions():
    granted = effective_permissions(["procurement_officer", "finance_manager"])

    assert "approval:approve" in granted
    assert "supplier:write" in granted
    assert granted == sorted(set(granted))


def test_user_cannot_manage_accounts():
    assert has_permission(["user"], "contract:read") is True
    assert has_permission(["user"], ACCOUNT_MANAGE) is False


def test_unknown_roles_are_ignored():
    assert parse_roles(["user", "wizard"]) == [Role.USER]
    assert effective_permissions(["wizard"]) == []
    assert has_permission([], "contract:read") is False
