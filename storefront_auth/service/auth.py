from __future__ import annotations

import hmac
import re
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from storefront_auth.config import Settings
from storefront_auth.logging import get_logger, hash_email
from storefront_auth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ServiceError,
    ValidationError,
)
from storefront_auth.service.passwords import CredentialHasher
from storefront_auth.service.permissions import (
    Principal,
    get_default_permissions,
    has_permission,
    normalize_permissions,
)
from storefront_auth.service.tokens import TokenCodec
from storefront_auth.storage.errors import ConstraintViolation
from storefront_auth.storage.models import (
    SUPER_ADMIN_ID,
    Account,
    AccountStatus,
    Role,
)

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
INACTIVE_ACCOUNT = "Account is not active. Please contact support."
ADMIN_PORTAL_ONLY = "Admin accounts must use the admin login portal"
INVALID_REFRESH = "Invalid or expired refresh token"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_ADMIN_ROLES = (Role.STAFF, Role.ADMIN)


class AccountStore(Protocol):
    def create_account(
        self,
        email: str,
        *,
        first_name: str,
        last_name: str,
        role: Role = Role.CUSTOMER,
        status: AccountStatus = AccountStatus.ACTIVE,
        phone: Optional[str] = None,
        permissions: Optional[Dict[str, Dict[str, bool]]] = None,
        created_by: Optional[str] = None,
        is_email_verified: bool = False,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def list_accounts(
        self,
        *,
        roles: Optional[Iterable[Role]] = None,
        search: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Account]: ...

    def count_accounts(
        self, *, roles: Optional[Iterable[Role]] = None, search: Optional[str] = None
    ) -> int: ...

    def update_account_status(self, account_id: str, status: AccountStatus) -> Optional[Account]: ...

    def update_account_permissions(
        self, account_id: str, permissions: Dict[str, Dict[str, bool]]
    ) -> Optional[Account]: ...

    def record_login(self, account_id: str) -> None: ...

    def delete_account(self, account_id: str) -> bool: ...

    def save_password(self, account_id: str, password_hash: str, password_algo: str) -> None: ...

    def get_password_record(self, account_id: str) -> Optional[tuple[str, str]]: ...


@dataclass
class SignupData:
    email: str
    password: str
    first_name: str
    last_name: str
    phone: Optional[str] = None


@dataclass
class AuthResult:
    """Outcome of a session or account operation.

    Expected failures are reported through ``error`` instead of being raised;
    the API layer calls :meth:`raise_for_error` to map them onto HTTP.
    """

    success: bool
    message: str
    account: Optional[Account] = None
    principal: Optional[Principal] = None
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    error: Optional[ServiceError] = None

    def raise_for_error(self) -> "AuthResult":
        if self.error is not None:
            raise self.error
        return self


def _fail(error: ServiceError) -> AuthResult:
    return AuthResult(success=False, message=error.message, error=error)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email))


class AuthService:
    """Signup, signin, refresh and administrator management."""

    def __init__(
        self,
        store: AccountStore,
        hasher: CredentialHasher,
        codec: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.codec = codec
        self.settings = settings
        self.logger = logger
        self._decoy_hash: Optional[str] = None

    # Helpers -------------------------------------------------------------

    def _issue(self, principal: Principal) -> Tuple[str, str]:
        access = self.codec.issue_access_token(principal.subject_id, principal.email, principal.role)
        refresh = self.codec.issue_refresh_token(principal.subject_id, principal.email, principal.role)
        return access, refresh

    def _success(self, message: str, account: Optional[Account], principal: Principal) -> AuthResult:
        access, refresh = self._issue(principal)
        return AuthResult(
            success=True,
            message=message,
            account=account,
            principal=principal,
            access_token=access,
            refresh_token=refresh,
        )

    def verify_password(self, account_id: str, password: str) -> bool:
        record = self.store.get_password_record(account_id)
        if not record:
            self.logger.warning("password_record_missing", account_id=account_id)
            return False
        stored_hash, algo = record
        if algo != self.hasher.algorithm:
            self.logger.warning("password_algo_mismatch", account_id=account_id, algo=algo)
            return False
        if not self.hasher.compare(password, stored_hash):
            self.logger.info("password_verification_failed", account_id=account_id)
            return False
        if self.hasher.needs_rehash(stored_hash):
            self.store.save_password(account_id, self.hasher.hash(password), self.hasher.algorithm)
            self.logger.info("password_rehashed", account_id=account_id)
        return True

    def _set_password(self, account_id: str, password: str) -> None:
        self.store.save_password(account_id, self.hasher.hash(password), self.hasher.algorithm)

    def _verify_decoy(self, password: str) -> None:
        """Spend one argon2 verification when there is no account to check against."""
        if self._decoy_hash is None:
            self._decoy_hash = self.hasher.hash(secrets.token_urlsafe(24))
        self.hasher.compare(password, self._decoy_hash)

    def _store_initial_password(self, account: Account, password: str) -> None:
        try:
            self._set_password(account.id, password)
        except Exception:
            # Drop the half-created account so the email stays free
            self.logger.error("initial_password_store_failed", account_id=account.id)
            self.store.delete_account(account.id)
            raise

    def _is_super_admin_login(self, email: str, password: str) -> bool:
        if not self.settings.super_admin_configured:
            return False
        if not hmac.compare_digest(email.encode(), self.settings.super_admin_email.encode()):
            return False
        configured = self.settings.super_admin_password or ""
        if configured.startswith("$argon2"):
            return self.hasher.compare(password, configured)
        return hmac.compare_digest(password.encode(), configured.encode())

    def _check_new_password(self, password: str) -> Optional[ServiceError]:
        check = self.hasher.validate(password)
        if not check.valid:
            return ValidationError(check.message or "Invalid password", detail={"field": "password"})
        return None

    @staticmethod
    def _require_super_admin(actor: Principal, message: str) -> Optional[ServiceError]:
        if not actor.is_super_admin:
            return ForbiddenError(message)
        return None

    # Customer sessions --------------------------------------------------

    async def signup(self, data: SignupData) -> AuthResult:
        if not self.settings.allow_signup:
            return _fail(ForbiddenError("Signup is currently disabled"))
        email = normalize_email(data.email)
        if not email or not is_valid_email(email):
            return _fail(ValidationError("Please provide a valid email address", detail={"field": "email"}))
        if not (data.first_name or "").strip() or not (data.last_name or "").strip():
            return _fail(ValidationError("First name and last name are required"))
        weak = self._check_new_password(data.password)
        if weak is not None:
            return _fail(weak)
        if self.settings.super_admin_email and email == self.settings.super_admin_email:
            return _fail(ConflictError("An account with this email already exists"))
        try:
            account = self.store.create_account(
                email,
                first_name=data.first_name.strip(),
                last_name=data.last_name.strip(),
                phone=data.phone,
            )
        except ConstraintViolation:
            self.logger.info("signup_duplicate_email", email_hash=hash_email(email))
            return _fail(ConflictError("An account with this email already exists", detail={"field": "email"}))
        self._store_initial_password(account, data.password)
        self.logger.info("account_created", account_id=account.id, role=account.role.value)
        return self._success("Account created successfully", account, Principal.from_account(account))

    async def signin(self, email: str, password: str) -> AuthResult:
        normalized = normalize_email(email)
        if self._is_super_admin_login(normalized, password or ""):
            return _fail(ForbiddenError(ADMIN_PORTAL_ONLY))
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None:
            self._verify_decoy(password or "")
        if account is None or not self.verify_password(account.id, password or ""):
            self.logger.info("signin_failed", email_hash=hash_email(normalized))
            return _fail(AuthenticationError(INVALID_CREDENTIALS))
        if not account.is_active:
            self.logger.info("signin_inactive_account", account_id=account.id, status=account.status.value)
            return _fail(ForbiddenError(INACTIVE_ACCOUNT))
        if account.role.is_administrative:
            return _fail(ForbiddenError(ADMIN_PORTAL_ONLY))
        self.store.record_login(account.id)
        self.logger.info("signin_succeeded", account_id=account.id)
        return self._success("Login successful", account, Principal.from_account(account))

    async def refresh_token(self, refresh_token: Optional[str]) -> AuthResult:
        result = self.codec.decode_refresh_token(refresh_token)
        if not result.ok:
            self.logger.info("refresh_rejected", reason=result.error.value if result.error else None)
            return _fail(AuthenticationError(INVALID_REFRESH))
        claims = result.claims
        if claims.subject_id == SUPER_ADMIN_ID:
            if (
                claims.role != Role.SUPER_ADMIN
                or not self.settings.super_admin_configured
                or claims.email != self.settings.super_admin_email
            ):
                return _fail(AuthenticationError(INVALID_REFRESH))
            principal = Principal.super_admin(claims.email)
            return self._success("Token refreshed successfully", None, principal)
        account = self.store.get_account(claims.subject_id)
        if account is None or not account.is_active:
            self.logger.info("refresh_subject_unavailable", account_id=claims.subject_id)
            return _fail(AuthenticationError(INVALID_REFRESH))
        return self._success("Token refreshed successfully", account, Principal.from_account(account))

    async def signout(self, principal: Optional[Principal]) -> AuthResult:
        # Tokens are stateless; clients drop their copies
        self.logger.info("signout", subject_id=principal.subject_id if principal else None)
        return AuthResult(success=True, message="Logged out successfully", principal=principal)

    async def change_password(
        self, principal: Principal, current_password: str, new_password: str
    ) -> AuthResult:
        if principal.is_super_admin:
            return _fail(ForbiddenError("Super admin credentials are managed by configuration"))
        account = self.store.get_account(principal.subject_id)
        if account is None:
            return _fail(NotFoundError("Account not found"))
        if not self.verify_password(account.id, current_password or ""):
            return _fail(AuthenticationError("Current password is incorrect"))
        weak = self._check_new_password(new_password)
        if weak is not None:
            return _fail(weak)
        self._set_password(account.id, new_password)
        self.logger.info("password_changed", account_id=account.id)
        return AuthResult(success=True, message="Password changed successfully", account=account)

    def get_profile(self, principal: Principal) -> Optional[Account]:
        if principal.is_super_admin:
            return None
        return self.store.get_account(principal.subject_id)

    # Administrative sessions --------------------------------------------

    async def admin_signin(self, email: str, password: str) -> AuthResult:
        normalized = normalize_email(email)
        if self._is_super_admin_login(normalized, password or ""):
            self.logger.info("super_admin_signin")
            return self._success(
                "Super admin login successful", None, Principal.super_admin(normalized)
            )
        account = self.store.get_account_by_email(normalized) if normalized else None
        if account is None or account.role not in _ADMIN_ROLES:
            self._verify_decoy(password or "")
        if (
            account is None
            or account.role not in _ADMIN_ROLES
            or not self.verify_password(account.id, password or "")
        ):
            self.logger.info("admin_signin_failed", email_hash=hash_email(normalized))
            return _fail(AuthenticationError(INVALID_CREDENTIALS))
        if not account.is_active:
            return _fail(ForbiddenError(INACTIVE_ACCOUNT))
        self.store.record_login(account.id)
        self.logger.info("admin_signin", account_id=account.id, role=account.role.value)
        return self._success("Admin login successful", account, Principal.from_account(account))

    async def create_admin(
        self,
        actor: Principal,
        *,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        role: Role = Role.ADMIN,
        permissions: Optional[Dict[str, Any]] = None,
    ) -> AuthResult:
        denied = self._require_super_admin(actor, "Only super admin can create admin accounts")
        if denied is not None:
            return _fail(denied)
        role = Role(role)
        if role not in _ADMIN_ROLES:
            return _fail(ValidationError("Role must be staff or admin", detail={"field": "role"}))
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return _fail(ValidationError("Please provide a valid email address", detail={"field": "email"}))
        weak = self._check_new_password(password)
        if weak is not None:
            return _fail(weak)
        if permissions is None:
            matrix = get_default_permissions(role)
        else:
            matrix, invalid = self._validated_matrix(permissions)
            if invalid is not None:
                return _fail(invalid)
        if self.settings.super_admin_email and normalized == self.settings.super_admin_email:
            return _fail(ConflictError("Admin with this email already exists"))
        try:
            account = self.store.create_account(
                normalized,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                role=role,
                permissions=matrix,
                created_by=actor.subject_id,
                is_email_verified=True,
            )
        except ConstraintViolation:
            return _fail(ConflictError("Admin with this email already exists", detail={"field": "email"}))
        self._store_initial_password(account, password)
        self.logger.info("admin_created", account_id=account.id, role=role.value, created_by=actor.subject_id)
        return AuthResult(success=True, message="Admin created successfully", account=account)

    @staticmethod
    def _validated_matrix(raw: Dict[str, Any]) -> Tuple[Dict[str, Dict[str, bool]], Optional[ServiceError]]:
        try:
            matrix = normalize_permissions(raw)
        except ValueError as exc:
            return {}, ValidationError(str(exc), detail={"field": "permissions"})
        if any(matrix["admins"].values()):
            return {}, ValidationError(
                "The admins resource is reserved for the super admin",
                detail={"field": "permissions"},
            )
        return matrix, None

    def _get_admin(self, admin_id: str) -> Optional[Account]:
        account = self.store.get_account(admin_id)
        if account is None or account.role not in _ADMIN_ROLES:
            return None
        return account

    async def update_permissions(
        self, actor: Principal, admin_id: str, new_matrix: Dict[str, Any]
    ) -> AuthResult:
        denied = self._require_super_admin(actor, "Only super admin can update admin permissions")
        if denied is not None:
            return _fail(denied)
        if admin_id == SUPER_ADMIN_ID:
            return _fail(ForbiddenError("Cannot modify super admin permissions"))
        if self._get_admin(admin_id) is None:
            return _fail(NotFoundError("Admin not found"))
        matrix, invalid = self._validated_matrix(new_matrix)
        if invalid is not None:
            return _fail(invalid)
        updated = self.store.update_account_permissions(admin_id, matrix)
        if updated is None:
            return _fail(NotFoundError("Admin not found"))
        self.logger.info("admin_permissions_updated", account_id=admin_id)
        return AuthResult(success=True, message="Permissions updated successfully", account=updated)

    async def reset_admin_password(
        self, actor: Principal, admin_id: str, new_password: str
    ) -> AuthResult:
        denied = self._require_super_admin(actor, "Only super admin can reset admin passwords")
        if denied is not None:
            return _fail(denied)
        if admin_id == SUPER_ADMIN_ID:
            return _fail(ForbiddenError("Super admin credentials are managed by configuration"))
        account = self._get_admin(admin_id)
        if account is None:
            return _fail(NotFoundError("Admin not found"))
        weak = self._check_new_password(new_password)
        if weak is not None:
            return _fail(weak)
        self._set_password(account.id, new_password)
        self.logger.info("admin_password_reset", account_id=account.id)
        return AuthResult(success=True, message="Password reset successfully", account=account)

    # Account management -------------------------------------------------

    def list_accounts(
        self,
        *,
        administrative: bool,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Account], int]:
        roles = _ADMIN_ROLES if administrative else (Role.CUSTOMER,)
        accounts = self.store.list_accounts(roles=roles, search=search, limit=limit, offset=offset)
        return accounts, self.store.count_accounts(roles=roles, search=search)

    def _guard_target(
        self, actor: Principal, account_id: str, action: str, verb: str
    ) -> Tuple[Optional[Account], Optional[ServiceError]]:
        if account_id == actor.subject_id:
            return None, ForbiddenError(f"You cannot {verb} your own account")
        if account_id == SUPER_ADMIN_ID:
            return None, ForbiddenError(f"Super admin cannot be {verb}d")
        account = self.store.get_account(account_id)
        if account is None:
            return None, NotFoundError("Account not found")
        resource = "admins" if account.role.is_administrative else "users"
        if not has_permission(actor, resource, action):
            return None, ForbiddenError("Insufficient permissions")
        return account, None

    async def set_account_status(
        self, actor: Principal, account_id: str, status: AccountStatus
    ) -> AuthResult:
        account, error = self._guard_target(actor, account_id, "update", "update")
        if error is not None:
            return _fail(error)
        updated = self.store.update_account_status(account.id, AccountStatus(status))
        if updated is None:
            return _fail(NotFoundError("Account not found"))
        self.logger.info(
            "account_status_changed", account_id=account.id, status=updated.status.value
        )
        return AuthResult(success=True, message="Account status updated", account=updated)

    async def delete_account(self, actor: Principal, account_id: str) -> AuthResult:
        account, error = self._guard_target(actor, account_id, "delete", "delete")
        if error is not None:
            return _fail(error)
        if not self.store.delete_account(account.id):
            return _fail(NotFoundError("Account not found"))
        self.logger.info("account_deleted", account_id=account.id, deleted_by=actor.subject_id)
        return AuthResult(success=True, message="Account deleted successfully", account=account)
