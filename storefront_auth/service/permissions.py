"""Role and permission evaluation for the administrative surface.

A permission matrix maps ``resource -> action -> bool`` over the fixed
``PERMISSION_SCHEMA``. Anything absent from a matrix is denied. The
configuration-derived super admin passes every check without consulting a
matrix.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from storefront_auth.storage.models import SUPER_ADMIN_ID, Account, Role

PermissionMatrix = Dict[str, Dict[str, bool]]

PERMISSION_SCHEMA: Dict[str, Tuple[str, ...]] = {
    "dashboard": ("view",),
    "users": ("view", "create", "update", "delete", "export"),
    "products": ("view", "create", "update", "delete", "export"),
    "categories": ("view", "create", "update", "delete"),
    "orders": ("view", "update", "delete", "export"),
    "promo_codes": ("view", "create", "update", "delete"),
    "subscriptions": ("view", "update", "export"),
    "messages": ("view", "update", "delete"),
    "admins": ("view", "create", "update", "delete"),
    "stats": ("view", "export"),
}

# Admin UI areas and the grant needed to open them. "/admin" itself is an
# exact match; the rest also cover their sub-paths.
ROUTE_PERMISSIONS: Dict[str, Tuple[str, str]] = {
    "/admin": ("dashboard", "view"),
    "/admin/users": ("users", "view"),
    "/admin/products": ("products", "view"),
    "/admin/categories": ("categories", "view"),
    "/admin/orders": ("orders", "view"),
    "/admin/promo-codes": ("promo_codes", "view"),
    "/admin/subscriptions": ("subscriptions", "view"),
    "/admin/messages": ("messages", "view"),
    "/admin/admins": ("admins", "view"),
    "/admin/stats": ("stats", "view"),
}

_STAFF_GRANTS = {
    ("dashboard", "view"),
    ("products", "view"),
    ("categories", "view"),
    ("orders", "view"),
    ("orders", "update"),
    ("messages", "view"),
    ("messages", "update"),
}


@dataclass(frozen=True)
class Principal:
    """Resolved caller identity for an authenticated request."""

    subject_id: str
    email: str
    role: Role
    permissions: PermissionMatrix = field(default_factory=dict)
    first_name: Optional[str] = None
    last_name: Optional[str] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN and self.subject_id == SUPER_ADMIN_ID

    @property
    def is_administrative(self) -> bool:
        return self.role.is_administrative

    @classmethod
    def from_account(cls, account: Account) -> "Principal":
        return cls(
            subject_id=account.id,
            email=account.email,
            role=account.role,
            permissions=effective_permissions(account),
            first_name=account.first_name,
            last_name=account.last_name,
        )

    @classmethod
    def super_admin(cls, email: str) -> "Principal":
        return cls(
            subject_id=SUPER_ADMIN_ID,
            email=email,
            role=Role.SUPER_ADMIN,
            permissions=get_super_admin_permissions(),
            first_name="Super",
            last_name="Admin",
        )


Subject = Union[Principal, Account]


def _build(grant) -> PermissionMatrix:
    return {
        resource: {action: bool(grant(resource, action)) for action in actions}
        for resource, actions in PERMISSION_SCHEMA.items()
    }


def get_super_admin_permissions() -> PermissionMatrix:
    return _build(lambda resource, action: True)


def get_default_permissions(role: Role) -> PermissionMatrix:
    """Starting matrix for a newly created account of ``role``.

    Only the super admin ever receives ``admins`` grants.
    """
    role = Role(role)
    if role == Role.SUPER_ADMIN:
        return get_super_admin_permissions()
    if role == Role.ADMIN:
        return _build(lambda resource, action: resource != "admins")
    if role == Role.STAFF:
        return _build(lambda resource, action: (resource, action) in _STAFF_GRANTS)
    if role == Role.CUSTOMER:
        return _build(lambda resource, action: False)
    raise ValueError(f"unhandled role {role!r}")


def normalize_permissions(raw: Mapping[str, Any]) -> PermissionMatrix:
    """Expand a submitted matrix to the full schema.

    Unknown resources or actions and non-boolean values raise ``ValueError``;
    omitted entries become ``False``.
    """
    if not isinstance(raw, Mapping):
        raise ValueError("permissions must be an object")
    for resource, actions in raw.items():
        allowed = PERMISSION_SCHEMA.get(resource)
        if allowed is None:
            raise ValueError(f"unknown permission resource: {resource}")
        if not isinstance(actions, Mapping):
            raise ValueError(f"permissions for {resource} must be an object")
        for action, value in actions.items():
            if action not in allowed:
                raise ValueError(f"unknown action {action} for {resource}")
            if not isinstance(value, bool):
                raise ValueError(f"{resource}.{action} must be a boolean")
    return _build(lambda resource, action: raw.get(resource, {}).get(action, False))


def _is_super_admin(subject: Subject) -> bool:
    if isinstance(subject, Principal):
        return subject.is_super_admin
    # Stored accounts never carry the super admin identity
    return False


def effective_permissions(subject: Subject) -> PermissionMatrix:
    if _is_super_admin(subject):
        return get_super_admin_permissions()
    role = Role(subject.role)
    if not role.is_administrative or role == Role.SUPER_ADMIN:
        return get_default_permissions(Role.CUSTOMER)
    if subject.permissions is None:
        return get_default_permissions(role)
    return subject.permissions


def has_permission(subject: Subject, resource: str, action: str) -> bool:
    if _is_super_admin(subject):
        return True
    matrix = effective_permissions(subject)
    return bool(matrix.get(resource, {}).get(action, False))


def resolve_route(path: str) -> Optional[Tuple[str, str]]:
    """Return the grant guarding an admin UI path, or None if unmapped."""
    clean = path.split("?", 1)[0].split("#", 1)[0]
    if len(clean) > 1:
        clean = clean.rstrip("/")
    if clean in ROUTE_PERMISSIONS:
        return ROUTE_PERMISSIONS[clean]
    best: Optional[str] = None
    for prefix in ROUTE_PERMISSIONS:
        if prefix == "/admin":
            continue
        if clean.startswith(prefix + "/") and (best is None or len(prefix) > len(best)):
            best = prefix
    return ROUTE_PERMISSIONS[best] if best else None


def is_admin_path(path: str) -> bool:
    clean = path.split("?", 1)[0]
    return clean == "/admin" or clean.startswith("/admin/")


def can_access_route(subject: Subject, path: str) -> bool:
    if _is_super_admin(subject):
        return True
    if not is_admin_path(path):
        return True
    if not Role(subject.role).is_administrative:
        return False
    required = resolve_route(path)
    if required is None:
        return False
    return has_permission(subject, *required)


__all__ = [
    "PERMISSION_SCHEMA",
    "ROUTE_PERMISSIONS",
    "PermissionMatrix",
    "Principal",
    "can_access_route",
    "effective_permissions",
    "get_default_permissions",
    "get_super_admin_permissions",
    "has_permission",
    "normalize_permissions",
    "resolve_route",
]
