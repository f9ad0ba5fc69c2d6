from __future__ import annotations

import asyncio
from typing import Callable, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Path, Query, Response

from storefront_auth.api.error_handling import error_response
from storefront_auth.api.schemas import (
    AccountListResponse,
    AccountResponse,
    AdminCreateRequest,
    AdminPasswordResetRequest,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    ForgotPasswordRequest,
    PrincipalResponse,
    RefreshRequest,
    ResendVerificationRequest,
    ResetPasswordRequest,
    RouteAccessResponse,
    SigninRequest,
    SignupRequest,
    UpdatePermissionsRequest,
    UpdateStatusRequest,
    VerifyEmailRequest,
    VerifyPasswordResetRequest,
)
from storefront_auth.config import Settings
from storefront_auth.logging import get_logger
from storefront_auth.service.auth import AuthResult, SignupData
from storefront_auth.service.errors import NotFoundError
from storefront_auth.service.gate import ACCESS_COOKIE, REFRESH_COOKIE
from storefront_auth.service.permissions import Principal
from storefront_auth.service.runtime import get_runtime
from storefront_auth.storage.models import SUPER_ADMIN_ID

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ID_PATTERN = r"^[A-Za-z0-9-]{1,64}$"


# Dependencies ---------------------------------------------------------------


async def get_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Principal:
    runtime = get_runtime()
    return runtime.gate.authenticate(authorization, access_token).unwrap()


async def get_admin_principal(
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
) -> Principal:
    runtime = get_runtime()
    return runtime.gate.verify_admin_token(authorization, access_token).unwrap()


def require_permission(resource: str, action: str) -> Callable:
    """Dependency factory: an administrator holding ``resource.action``."""

    async def _dependency(principal: Principal = Depends(get_admin_principal)) -> Principal:
        return get_runtime().gate.require_permission(principal, resource, action)

    return _dependency


# Helpers --------------------------------------------------------------------


def _set_session_cookies(response: Response, settings: Settings, result: AuthResult) -> None:
    runtime = get_runtime()
    cookie_args = dict(
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        path="/",
    )
    if result.access_token:
        response.set_cookie(
            ACCESS_COOKIE,
            result.access_token,
            max_age=runtime.codec.access_ttl_seconds,
            **cookie_args,
        )
    if result.refresh_token:
        response.set_cookie(
            REFRESH_COOKIE,
            result.refresh_token,
            max_age=runtime.codec.refresh_ttl_seconds,
            **cookie_args,
        )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )


def _session_payload(result: AuthResult, *, admin: bool = False) -> dict:
    payload = AuthResponse(
        message=result.message,
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=get_runtime().codec.access_ttl_seconds,
    )
    if admin and result.principal is not None:
        payload.admin = PrincipalResponse.from_principal(result.principal)
    elif result.account is not None:
        payload.user = AccountResponse.from_account(result.account)
    elif result.principal is not None:
        payload.admin = PrincipalResponse.from_principal(result.principal)
    return payload.model_dump(mode="json", exclude_none=True)


async def _deliver(send: Callable[[str, str], bool], to_email: str, token: str) -> None:
    # smtplib blocks; keep it off the event loop
    delivered = await asyncio.to_thread(send, to_email, token)
    if not delivered:
        logger.warning("email_delivery_failed", kind=send.__name__)


# Customer authentication ----------------------------------------------------


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Create a customer account and start a session.

    Sets the access and refresh cookies and mails an email verification link.
    """
    runtime = get_runtime()
    result = await runtime.auth.signup(
        SignupData(
            email=body.email,
            password=body.password,
            first_name=body.first_name,
            last_name=body.last_name,
            phone=body.phone,
        )
    )
    result.raise_for_error()
    token = await runtime.tickets.create_verification(result.account)
    if token:
        await _deliver(runtime.email.send_email_verification, result.account.email, token)
    _set_session_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.post("/auth/signin", response_model=Envelope, tags=["auth"])
async def signin(body: SigninRequest, response: Response):
    runtime = get_runtime()
    result = (await runtime.auth.signin(body.email, body.password)).raise_for_error()
    _set_session_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    response: Response,
    body: Optional[RefreshRequest] = None,
    refresh_cookie: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
):
    """Exchange a refresh token for a new access token.

    The refresh cookie is preferred over a token in the body. A rejected
    token clears both session cookies.
    """
    runtime = get_runtime()
    token = refresh_cookie or (body.refresh_token if body else None)
    result = await runtime.auth.refresh_token(token)
    if result.error is not None:
        failure = error_response(
            result.error.status_code,
            result.error.message,
            result.error.detail,
            code=result.error.error_code,
        )
        _clear_session_cookies(failure, runtime.settings)
        return failure
    _set_session_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_session_payload(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None, alias=ACCESS_COOKIE),
):
    runtime = get_runtime()
    gate_result = runtime.gate.authenticate(authorization, access_token)
    result = await runtime.auth.signout(gate_result.principal)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": result.message})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    if principal.is_super_admin:
        return Envelope(status="ok", data=PrincipalResponse.from_principal(principal).model_dump(mode="json"))
    account = runtime.auth.get_profile(principal)
    if account is None:
        raise NotFoundError("Account not found")
    return Envelope(status="ok", data=AccountResponse.from_account(account).model_dump(mode="json"))


@router.post("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        principal, body.current_password, body.new_password
    )
    result.raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


# Password reset and email verification -------------------------------------


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest):
    """Request a reset link.

    The response is identical whether or not the address has an account.
    """
    runtime = get_runtime()
    result = await runtime.tickets.create_reset(body.email)
    if result.token and result.email:
        await _deliver(runtime.email.send_password_reset, result.email, result.token)
    return Envelope(status="ok", data={"message": result.message})


@router.get("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def verify_reset_token(token: str = Query(..., max_length=256)):
    runtime = get_runtime()
    result = (await runtime.tickets.verify_reset_token(token)).raise_for_error()
    return Envelope(status="ok", data={"message": result.message, "email": result.email})


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest):
    runtime = get_runtime()
    result = await runtime.tickets.reset_password(body.token, body.new_password)
    result.raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


@router.post("/auth/verify-password-reset", response_model=Envelope, tags=["auth"])
async def verify_password_reset(body: VerifyPasswordResetRequest):
    """Complete a reset with the code from the reset email."""
    runtime = get_runtime()
    result = await runtime.tickets.reset_password(body.code, body.new_password)
    result.raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest):
    runtime = get_runtime()
    result = (await runtime.tickets.verify_email(body.token)).raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(body: ResendVerificationRequest):
    runtime = get_runtime()
    result = await runtime.tickets.resend_verification(body.email)
    if result.token and result.email:
        await _deliver(runtime.email.send_email_verification, result.email, result.token)
    return Envelope(status="ok", data={"message": result.message})


# Administrative authentication ----------------------------------------------


@router.post("/admin/auth/signin", response_model=Envelope, tags=["admin"])
async def admin_signin(body: SigninRequest, response: Response):
    runtime = get_runtime()
    result = (await runtime.auth.admin_signin(body.email, body.password)).raise_for_error()
    _set_session_cookies(response, runtime.settings, result)
    return Envelope(status="ok", data=_session_payload(result, admin=True))


@router.get("/admin/auth/me", response_model=Envelope, tags=["admin"])
async def admin_me(principal: Principal = Depends(get_admin_principal)):
    return Envelope(status="ok", data=PrincipalResponse.from_principal(principal).model_dump(mode="json"))


@router.get("/admin/access", response_model=Envelope, tags=["admin"])
async def admin_route_access(
    path: str = Query(..., min_length=1, max_length=512),
    principal: Principal = Depends(get_admin_principal),
):
    allowed = get_runtime().gate.authorize_route(principal, path)
    return Envelope(status="ok", data=RouteAccessResponse(path=path, allowed=allowed).model_dump())


# Administrator management ---------------------------------------------------


def _account_list(accounts, total: int, limit: int, offset: int, *, include_permissions: bool) -> dict:
    return AccountListResponse(
        items=[
            AccountResponse.from_account(account, include_permissions=include_permissions)
            for account in accounts
        ],
        total=total,
        limit=limit,
        offset=offset,
    ).model_dump(mode="json")


@router.get("/admin/admins", response_model=Envelope, tags=["admin"])
async def list_admins(
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(require_permission("admins", "view")),
):
    accounts, total = get_runtime().auth.list_accounts(
        administrative=True, search=search, limit=limit, offset=offset
    )
    return Envelope(
        status="ok", data=_account_list(accounts, total, limit, offset, include_permissions=True)
    )


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def create_admin(
    body: AdminCreateRequest, principal: Principal = Depends(get_admin_principal)
):
    runtime = get_runtime()
    result = await runtime.auth.create_admin(
        principal,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
        permissions=body.permissions,
    )
    result.raise_for_error()
    return Envelope(
        status="ok",
        data={
            "message": result.message,
            "admin": AccountResponse.from_account(result.account, include_permissions=True).model_dump(mode="json"),
        },
    )


@router.put("/admin/admins/{admin_id}/permissions", response_model=Envelope, tags=["admin"])
async def update_admin_permissions(
    body: UpdatePermissionsRequest,
    admin_id: str = Path(..., pattern=_ID_PATTERN),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.update_permissions(principal, admin_id, body.permissions)
    result.raise_for_error()
    return Envelope(
        status="ok",
        data={
            "message": result.message,
            "admin": AccountResponse.from_account(result.account, include_permissions=True).model_dump(mode="json"),
        },
    )


@router.post("/admin/admins/{admin_id}/reset-password", response_model=Envelope, tags=["admin"])
async def reset_admin_password(
    body: AdminPasswordResetRequest,
    admin_id: str = Path(..., pattern=_ID_PATTERN),
    principal: Principal = Depends(get_admin_principal),
):
    runtime = get_runtime()
    result = await runtime.auth.reset_admin_password(principal, admin_id, body.new_password)
    result.raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


@router.delete("/admin/admins/{admin_id}", response_model=Envelope, tags=["admin"])
async def delete_admin(
    admin_id: str = Path(..., pattern=_ID_PATTERN),
    principal: Principal = Depends(require_permission("admins", "delete")),
):
    runtime = get_runtime()
    if admin_id not in (SUPER_ADMIN_ID, principal.subject_id):
        target = runtime.store.get_account(admin_id)
        if target is None or not target.role.is_administrative:
            raise NotFoundError("Admin not found")
    result = (await runtime.auth.delete_account(principal, admin_id)).raise_for_error()
    return Envelope(status="ok", data={"message": result.message})


# Customer management --------------------------------------------------------


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def list_users(
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(require_permission("users", "view")),
):
    accounts, total = get_runtime().auth.list_accounts(
        administrative=False, search=search, limit=limit, offset=offset
    )
    return Envelope(
        status="ok", data=_account_list(accounts, total, limit, offset, include_permissions=False)
    )


@router.patch("/admin/users/{user_id}/status", response_model=Envelope, tags=["admin"])
async def update_user_status(
    body: UpdateStatusRequest,
    user_id: str = Path(..., pattern=_ID_PATTERN),
    principal: Principal = Depends(require_permission("users", "update")),
):
    runtime = get_runtime()
    result = await runtime.auth.set_account_status(principal, user_id, body.status)
    result.raise_for_error()
    return Envelope(
        status="ok",
        data={
            "message": result.message,
            "user": AccountResponse.from_account(result.account).model_dump(mode="json"),
        },
    )


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def delete_user(
    user_id: str = Path(..., pattern=_ID_PATTERN),
    principal: Principal = Depends(require_permission("users", "delete")),
):
    runtime = get_runtime()
    result = (await runtime.auth.delete_account(principal, user_id)).raise_for_error()
    return Envelope(status="ok", data={"message": result.message})
