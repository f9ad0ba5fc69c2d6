import pytest

from storefront_auth.service.permissions import (
    PERMISSION_SCHEMA,
    Principal,
    can_access_route,
    effective_permissions,
    get_default_permissions,
    get_super_admin_permissions,
    has_permission,
    normalize_permissions,
    resolve_route,
)
from storefront_auth.storage.models import SUPER_ADMIN_ID, Account, Role


def _account(role: Role, permissions=None) -> Account:
    return Account(
        id="acct-1",
        email="staff@example.com",
        first_name="Sam",
        last_name="Staff",
        role=role,
        permissions=permissions,
    )


def _principal(role: Role, permissions=None) -> Principal:
    return Principal.from_account(_account(role, permissions))


def test_default_matrices_cover_the_whole_schema():
    for role in Role:
        matrix = get_default_permissions(role)
        assert set(matrix) == set(PERMISSION_SCHEMA)
        for resource, actions in PERMISSION_SCHEMA.items():
            assert set(matrix[resource]) == set(actions)


def test_fresh_admin_cannot_manage_admins_but_sees_products():
    admin = _principal(Role.ADMIN, get_default_permissions(Role.ADMIN))
    assert has_permission(admin, "admins", "view") is False
    assert has_permission(admin, "admins", "delete") is False
    assert has_permission(admin, "products", "view") is True
    assert has_permission(admin, "stats", "export") is True


def test_staff_defaults():
    staff = _principal(Role.STAFF, get_default_permissions(Role.STAFF))
    assert has_permission(staff, "orders", "update")
    assert has_permission(staff, "messages", "view")
    assert not has_permission(staff, "products", "delete")
    assert not has_permission(staff, "users", "view")


def test_customer_is_denied_everything():
    customer = _principal(Role.CUSTOMER)
    for resource, actions in PERMISSION_SCHEMA.items():
        for action in actions:
            assert not has_permission(customer, resource, action)


def test_customer_with_stored_grants_is_still_denied():
    customer = _principal(Role.CUSTOMER, get_super_admin_permissions())
    assert not has_permission(customer, "products", "view")


def test_missing_stored_matrix_falls_back_to_role_default():
    assert effective_permissions(_account(Role.ADMIN)) == get_default_permissions(Role.ADMIN)


def test_unknown_resource_or_action_is_denied():
    admin = _principal(Role.ADMIN, get_default_permissions(Role.ADMIN))
    assert not has_permission(admin, "warehouse", "view")
    assert not has_permission(admin, "products", "approve")


def test_super_admin_passes_every_check():
    root = Principal.super_admin("root@storefront.test")
    assert root.subject_id == SUPER_ADMIN_ID
    for resource, actions in PERMISSION_SCHEMA.items():
        for action in actions:
            assert has_permission(root, resource, action)
    assert has_permission(root, "anything", "at_all")
    assert can_access_route(root, "/admin/not-a-page")


def test_super_admin_role_without_the_fixed_identity_gets_nothing():
    impostor = Principal(subject_id="acct-9", email="x@example.com", role=Role.SUPER_ADMIN)
    assert not impostor.is_super_admin
    assert not has_permission(impostor, "products", "view")


def test_normalize_fills_missing_entries_with_false():
    matrix = normalize_permissions({"products": {"view": True}})
    assert matrix["products"] == {
        "view": True,
        "create": False,
        "update": False,
        "delete": False,
        "export": False,
    }
    assert not any(matrix["admins"].values())


@pytest.mark.parametrize(
    "raw",
    [
        {"warehouse": {"view": True}},
        {"products": {"approve": True}},
        {"products": {"view": "yes"}},
        {"products": ["view"]},
    ],
)
def test_normalize_rejects_off_schema_input(raw):
    with pytest.raises(ValueError):
        normalize_permissions(raw)


@pytest.mark.parametrize(
    "path,expected",
    [
        ("/admin", ("dashboard", "view")),
        ("/admin/", ("dashboard", "view")),
        ("/admin/products", ("products", "view")),
        ("/admin/products/42/edit", ("products", "view")),
        ("/admin/promo-codes?page=2", ("promo_codes", "view")),
        ("/admin/admins/new", ("admins", "view")),
        ("/admin/unknown", None),
        ("/administrator", None),
    ],
)
def test_resolve_route(path, expected):
    assert resolve_route(path) == expected


def test_route_access_for_regular_admin():
    admin = _principal(Role.ADMIN, get_default_permissions(Role.ADMIN))
    assert can_access_route(admin, "/admin")
    assert can_access_route(admin, "/admin/orders/17")
    assert not can_access_route(admin, "/admin/admins")
    assert not can_access_route(admin, "/admin/reports")


def test_route_access_for_customer():
    customer = _principal(Role.CUSTOMER)
    assert can_access_route(customer, "/shop/cart")
    assert not can_access_route(customer, "/admin")


def test_route_access_follows_custom_matrix():
    staff = _principal(Role.STAFF, normalize_permissions({"dashboard": {"view": True}}))
    assert can_access_route(staff, "/admin")
    assert not can_access_route(staff, "/admin/orders")
