from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from couponauth.api.schemas import (
    AuthResponse,
    Envelope,
    LockoutStatusResponse,
    LoginRequest,
    LogoutRequest,
    LogoutResponse,
    TokenRefreshRequest,
    UnlockResponse,
    UserInfo,
    _validate_email,
)
from couponauth.logging import get_correlation_id, get_logger
from couponauth.service.auth import AuthResult, PrincipalInfo
from couponauth.service.runtime import get_runtime
from couponauth.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _ok(data) -> Envelope:
    request_id = get_correlation_id()
    if request_id:
        return Envelope(status="ok", data=data, request_id=request_id)
    return Envelope(status="ok", data=data)


def _timestamp(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _user_info(principal: PrincipalInfo) -> UserInfo:
    return UserInfo(**principal.to_dict())


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(**result.to_dict())


def _path_email(email: str) -> str:
    try:
        return _validate_email(email)
    except ValueError as exc:
        raise _http_error("validation_error", str(exc), status_code=400)


async def get_user(authorization: Optional[str] = Header(None)) -> PrincipalInfo:
    runtime = get_runtime()
    principal = runtime.auth.authenticate(authorization)
    if not principal:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return principal


async def get_admin_user(authorization: Optional[str] = Header(None)) -> PrincipalInfo:
    principal = await get_user(authorization)
    if principal.role is not Role.ADMIN:
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


# Authentication


@router.post("/auth/login", response_model=Envelope)
async def login(body: LoginRequest):
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password, body.client_type)
    return _ok(_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope)
async def refresh_tokens(body: TokenRefreshRequest):
    runtime = get_runtime()
    result = await runtime.auth.refresh(body.refresh_token)
    return _ok(_auth_response(result))


@router.post("/auth/logout", response_model=Envelope)
async def logout(body: LogoutRequest):
    """Retire a single refresh token. Unknown tokens are not an error."""
    runtime = get_runtime()
    revoked = await runtime.auth.logout(body.refresh_token)
    return _ok(LogoutResponse(revoked=1 if revoked else 0))


@router.post("/auth/logout-all", response_model=Envelope)
async def logout_everywhere(principal: PrincipalInfo = Depends(get_user)):
    runtime = get_runtime()
    revoked = await runtime.auth.logout_all(principal.email)
    return _ok(LogoutResponse(revoked=revoked))


@router.get("/auth/me", response_model=Envelope)
async def current_user(principal: PrincipalInfo = Depends(get_user)):
    return _ok(_user_info(principal))


# Administration


async def _unlock(email: str, role: Role, admin: PrincipalInfo) -> Envelope:
    runtime = get_runtime()
    email = _path_email(email)
    unlocked = await runtime.auth.unlock(email, role.value)
    logger.info(
        "admin_unlock_requested",
        email=email,
        role=role.value,
        admin_user_id=admin.user_id,
        unlocked=unlocked,
    )
    return _ok(UnlockResponse(email=email, client_type=role.value, unlocked=unlocked))


async def _lockout_status(email: str, role: Role) -> Envelope:
    runtime = get_runtime()
    status = await runtime.auth.lockout_status(_path_email(email), role.value)
    return _ok(
        LockoutStatusResponse(
            email=status.email,
            client_type=status.role.value,
            locked=status.locked,
            failed_attempts=status.failed_attempts,
            locked_until=_timestamp(status.locked_until),
            last_failed_at=_timestamp(status.last_failed_at),
        )
    )


@router.post("/admin/companies/{email}/unlock", response_model=Envelope)
async def unlock_company(email: str, admin: PrincipalInfo = Depends(get_admin_user)):
    return await _unlock(email, Role.COMPANY, admin)


@router.post("/admin/customers/{email}/unlock", response_model=Envelope)
async def unlock_customer(email: str, admin: PrincipalInfo = Depends(get_admin_user)):
    return await _unlock(email, Role.CUSTOMER, admin)


@router.get("/admin/companies/{email}/lockout", response_model=Envelope)
async def company_lockout_status(email: str, admin: PrincipalInfo = Depends(get_admin_user)):
    return await _lockout_status(email, Role.COMPANY)


@router.get("/admin/customers/{email}/lockout", response_model=Envelope)
async def customer_lockout_status(email: str, admin: PrincipalInfo = Depends(get_admin_user)):
    return await _lockout_status(email, Role.CUSTOMER)
