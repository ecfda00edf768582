from typing import Any, Optional, Type

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response

from accountgate.api.schemas import (
    AdminRegisterRequest,
    ChangePasswordRequest,
    EmailBody,
    Envelope,
    LoginRequest,
    LogoutRequest,
    OtpRequest,
    PasswordResetCompleteRequest,
    ProvisionAccountRequest,
    TokenRefreshRequest,
    UserRegisterRequest,
    VendorApprovalRequest,
    VendorRegisterRequest,
)
from accountgate.config import get_settings
from accountgate.logging import get_logger
from accountgate.service.errors import ForbiddenError, RateLimitedError
from accountgate.service.gates import AuthContext
from accountgate.service.runtime import check_rate_limit, get_runtime
from accountgate.service.tokens import TokenBundle
from accountgate.storage.models import Account, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket.

    Raises:
        RateLimitedError: when the bucket is empty.
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": info.reset_seconds}
        )
    return info


def _session_payload(account: Account, tokens: TokenBundle) -> dict[str, Any]:
    data = tokens.to_response()
    data[account.role.value] = account.to_public()
    return data


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def get_principal(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authorize(authorization)


async def get_admin(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authorize(authorization, [Role.ADMIN])


async def get_vendor(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().auth.authorize(authorization, [Role.VENDOR])


async def get_approved_vendor(ctx: AuthContext = Depends(get_vendor)) -> AuthContext:
    get_runtime().auth.require_approved_vendor(ctx)
    return ctx


async def require_admin_csrf(
    response: Response,
    ctx: AuthContext = Depends(get_admin),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> AuthContext:
    """Admin write guard: the presented CSRF token is consumed and replaced."""
    fresh = await get_runtime().auth.rotate_csrf(ctx, x_csrf_token)
    response.headers["X-CSRF-Token"] = fresh
    return ctx


def _actor_router(role: Role, prefix: str, register_model: Type[EmailBody]) -> APIRouter:
    """Registration, login and password routes for one actor kind."""
    actor = APIRouter(prefix=prefix, tags=[role.value])

    @actor.post("/register", response_model=Envelope, status_code=201)
    async def register(body: register_model, response: Response):  # type: ignore[valid-type]
        settings = get_settings()
        if not settings.allow_signup or (role == Role.ADMIN and not settings.allow_admin_signup):
            raise ForbiddenError("signup disabled")
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"register:{role.value}:{body.email}",
            runtime.settings.signup_rate_limit_per_minute,
            60,
            response=response,
        )
        email = await runtime.auth.register(role, body.email, body.password, body.profile())
        return Envelope(
            status="ok",
            data={"message": "verification code sent", "email": email},
        )

    @actor.post("/verify-otp", response_model=Envelope)
    async def verify_otp(body: OtpRequest):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"otp:{role.value}:{body.email}",
            runtime.settings.otp_rate_limit_per_minute,
            60,
        )
        account, tokens = await runtime.auth.verify_otp(role, body.email, body.otp)
        return Envelope(status="ok", data=_session_payload(account, tokens))

    @actor.post("/resend-otp", response_model=Envelope)
    async def resend_otp(body: EmailBody):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"otp:{role.value}:{body.email}",
            runtime.settings.otp_rate_limit_per_minute,
            60,
        )
        await runtime.auth.resend_otp(role, body.email)
        return Envelope(status="ok", data={"message": "verification code resent"})

    @actor.post("/login", response_model=Envelope)
    async def login(body: LoginRequest, request: Request, response: Response):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"login:{role.value}:{body.email}",
            runtime.settings.login_rate_limit_per_minute,
            60,
            response=response,
        )
        account, tokens = await runtime.auth.login(
            role,
            body.email,
            body.password,
            ip=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
        )
        return Envelope(status="ok", data=_session_payload(account, tokens))

    @actor.post("/forgot-password", response_model=Envelope)
    async def forgot_password(body: EmailBody):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"reset:{role.value}:{body.email}",
            runtime.settings.reset_rate_limit_per_minute,
            60,
        )
        await runtime.auth.request_password_reset(role, body.email)
        return Envelope(status="ok", data={"message": "password reset code sent"})

    @actor.post("/verify-reset-otp", response_model=Envelope)
    async def verify_reset_otp(body: OtpRequest):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"otp:reset:{role.value}:{body.email}",
            runtime.settings.otp_rate_limit_per_minute,
            60,
        )
        await runtime.auth.verify_password_reset(role, body.email, body.otp)
        return Envelope(status="ok", data={"message": "code verified"})

    @actor.post("/reset-password", response_model=Envelope)
    async def reset_password(body: PasswordResetCompleteRequest):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"otp:reset:{role.value}:{body.email}",
            runtime.settings.otp_rate_limit_per_minute,
            60,
        )
        await runtime.auth.reset_password(role, body.email, body.otp, body.new_password)
        return Envelope(status="ok", data={"message": "password updated"})

    async def get_actor(authorization: Optional[str] = Header(None)) -> AuthContext:
        return await get_runtime().auth.authorize(authorization, [role])

    @actor.put("/update-password", response_model=Envelope)
    async def update_password(
        body: ChangePasswordRequest, ctx: AuthContext = Depends(get_actor)
    ):
        runtime = get_runtime()
        await _enforce_rate_limit(
            runtime,
            f"password:change:{role.value}:{ctx.account_id}",
            runtime.settings.login_rate_limit_per_minute,
            60,
        )
        await runtime.auth.change_password(ctx, body.current_password, body.new_password)
        return Envelope(status="ok", data={"message": "password updated"})

    return actor


router.include_router(_actor_router(Role.USER, "/users", UserRegisterRequest))
router.include_router(_actor_router(Role.VENDOR, "/vendors", VendorRegisterRequest))
router.include_router(_actor_router(Role.ADMIN, "/admins", AdminRegisterRequest))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: TokenRefreshRequest):
    """Exchange a refresh token for a new pair; the presented token is spent."""
    runtime = get_runtime()
    account, tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_session_payload(account, tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(authorization, body.refresh_token if body else None)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def get_me(ctx: AuthContext = Depends(get_principal)):
    return Envelope(status="ok", data={ctx.role.value: ctx.account.to_public()})


@router.get("/vendors/me/storefront", response_model=Envelope, tags=["vendor"])
async def vendor_storefront(ctx: AuthContext = Depends(get_approved_vendor)):
    profile = ctx.account.profile
    return Envelope(
        status="ok",
        data={
            "vendor": ctx.account.to_public(),
            "storefront": {
                "business_name": profile.get("business_name"),
                "vendor_type": profile.get("vendor_type"),
                "status": ctx.account.status,
            },
        },
    )


@router.get("/admin/vendors/pending", response_model=Envelope, tags=["admin"])
async def admin_list_pending_vendors(
    limit: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(get_admin),
):
    vendors = get_runtime().auth.list_pending_vendors(limit=limit)
    return Envelope(status="ok", data={"vendors": [v.to_public() for v in vendors]})


@router.patch("/admin/vendors/{vendor_id}/approval", response_model=Envelope, tags=["admin"])
async def admin_set_vendor_approval(
    body: VendorApprovalRequest,
    vendor_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_admin_csrf),
):
    vendor = await get_runtime().auth.set_vendor_approval(vendor_id, body.approved)
    logger.info("admin_vendor_approval", admin_id=ctx.account_id, vendor_id=vendor.id)
    return Envelope(status="ok", data={"vendor": vendor.to_public()})


@router.post("/admin/accounts", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_account(
    body: ProvisionAccountRequest,
    ctx: AuthContext = Depends(require_admin_csrf),
):
    role = Role(body.role)
    account = await get_runtime().auth.provision_account(
        role, body.email, body.password, body.profile(), approved=body.approved
    )
    logger.info("admin_account_created", admin_id=ctx.account_id, role=role.value, account_id=account.id)
    return Envelope(status="ok", data={role.value: account.to_public()})


@router.delete("/admin/accounts/{role}/{account_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_account(
    role: Role,
    account_id: str = Path(..., max_length=64),
    ctx: AuthContext = Depends(require_admin_csrf),
):
    if role == Role.ADMIN and account_id == ctx.account_id:
        raise ForbiddenError("admins cannot delete their own account")
    get_runtime().auth.delete_account(role, account_id)
    return Envelope(status="ok", data={"message": "account deleted", "id": account_id})
