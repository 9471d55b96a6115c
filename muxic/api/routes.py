from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from muxic.api.error_handling import error_response
from muxic.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    OtpResendResponse,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    SessionResponse,
    TokenRefreshResponse,
    UserResponse,
    VerifyOtpRequest,
)
from muxic.config import Settings
from muxic.logging import get_logger
from muxic.service.auth import UnverifiedAccountError
from muxic.service.oauth import OAUTH_STATE_COOKIE, OAUTH_STATE_TTL_SECONDS
from muxic.service.runtime import Runtime, check_rate_limit, get_runtime
from muxic.service.tokens import TokenPair, profile_claims
from muxic.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

TOKEN_COOKIE = "token"
REFRESH_COOKIE = "refreshToken"

REGISTER_MESSAGE = "Registration successful. Please check your email for verification code."
VERIFY_MESSAGE = "Email verified successfully! Welcome to our platform."
FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent."
RESET_PASSWORD_MESSAGE = "Password reset successful. You can now login with your new password."


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict[str, str]] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


async def _enforce_rate_limit(
    runtime: Runtime, scope: str, request: Request, limit: int, window_seconds: int
) -> None:
    """Consume one token from the per-IP bucket for ``scope``; 429 when empty."""
    allowed, _, retry_after = await check_rate_limit(
        runtime, scope, _client_ip(request), limit, window_seconds
    )
    if not allowed:
        logger.warning("rate_limited", scope=scope, retry_after=retry_after)
        raise _http_error(
            "rate_limited",
            "Too many requests, please try again later.",
            status_code=429,
            headers={"Retry-After": str(retry_after)},
        )


# cookies
def _set_session_cookies(response: Response, settings: Settings, pair: TokenPair) -> None:
    response.set_cookie(
        TOKEN_COOKIE,
        pair.access_token,
        max_age=settings.access_token_ttl_minutes * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        pair.refresh_token,
        max_age=settings.refresh_token_ttl_minutes * 60,
        httponly=True,
        secure=settings.is_production,
        samesite="strict",
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (TOKEN_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.is_production,
            httponly=True,
            samesite="strict",
        )


def _access_token_from(request: Request) -> Optional[str]:
    token = request.cookies.get(TOKEN_COOKIE)
    if token:
        return token
    header = request.headers.get("Authorization") or ""
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


async def get_current_user(request: Request) -> User:
    runtime = get_runtime()
    return runtime.auth.resolve_access_token(_access_token_from(request))


def _session_payload(user: User, pair: TokenPair, message: str) -> dict:
    data = SessionResponse(
        user=UserResponse.from_user(user),
        token=pair.access_token,
        refresh_token=pair.refresh_token,
    ).to_json()
    return {"message": message, **data}


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest, background_tasks: BackgroundTasks):
    """Create an unverified account and email its verification code.

    Raises:
        400: If a field fails validation
        409: If the email or username is already taken
    """
    runtime = get_runtime()
    user, code = await run_in_threadpool(
        runtime.auth.register, body.email, body.password, body.username, body.full_name
    )
    background_tasks.add_task(
        runtime.notifier.send_verification, user.email, code, user.username
    )
    summary = RegisterResponse(
        user_id=user.id,
        email=user.email,
        username=user.username,
        is_verified=user.is_verified,
    ).to_json()
    return Envelope(status="ok", data={"message": REGISTER_MESSAGE, **summary})


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email or username and issue a session.

    Unverified accounts are refused with 403 ``unverified``; a fresh code is
    emailed after the response is sent.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "login", request, settings.login_rate_limit, settings.login_rate_window_seconds
    )
    try:
        user = await run_in_threadpool(
            runtime.auth.authenticate, body.identifier, body.password
        )
    except UnverifiedAccountError as exc:
        logger.warning("login_unverified", user_id=exc.user.id)
        rejected = error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code
        )
        # BackgroundTasks are dropped when a route raises
        rejected.background = BackgroundTask(
            runtime.notifier.send_verification,
            exc.user.email,
            exc.otp_code,
            exc.user.username,
        )
        return rejected
    pair = runtime.auth.issue_session(user, profile_claims(user))
    _set_session_cookies(response, settings, pair)
    return Envelope(status="ok", data=_session_payload(user, pair, "Login successful"))


@router.get("/otp", response_model=Envelope)
async def resend_otp(
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: str = Query(..., alias="userId", min_length=1, max_length=64),
):
    """Issue a new verification code for an unverified account.

    No access token is required, since unverified users cannot log in. A
    token that is presented must belong to ``userId``.
    """
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "otp", request, settings.otp_rate_limit, settings.otp_rate_window_seconds
    )
    presented = _access_token_from(request)
    if presented:
        payload = runtime.tokens.decode_access_token(presented)
        if payload and payload.get("sub") != user_id:
            raise _http_error(
                "unauthorized", "Token does not match the requested user", status_code=401
            )
    user, code, expires_at = runtime.auth.resend_otp(user_id)
    background_tasks.add_task(
        runtime.notifier.send_verification, user.email, code, user.username
    )
    data = OtpResendResponse(user_id=user.id, otp_expires_at=expires_at).to_json()
    return Envelope(
        status="ok",
        data={"message": "A new verification code has been sent to your email.", **data},
    )


@router.post("/verify", response_model=Envelope)
async def verify_otp(
    body: VerifyOtpRequest,
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "otp", request, settings.otp_rate_limit, settings.otp_rate_window_seconds
    )
    user = runtime.auth.verify_otp(body.user_id, body.otp)
    pair = runtime.auth.issue_session(user, profile_claims(user))
    _set_session_cookies(response, settings, pair)
    background_tasks.add_task(runtime.notifier.send_welcome, user.email, user.username)
    return Envelope(status="ok", data=_session_payload(user, pair, VERIFY_MESSAGE))


@router.put("/forgot-password", response_model=Envelope)
async def forgot_password(
    body: ForgotPasswordRequest, request: Request, background_tasks: BackgroundTasks
):
    """Always answers 200 so the response does not reveal whether the email exists."""
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "reset", request, settings.reset_rate_limit, settings.reset_rate_window_seconds
    )
    issued = runtime.auth.request_password_reset(body.email)
    if issued:
        user, token = issued
        background_tasks.add_task(runtime.notifier.send_password_reset, user.email, token)
    return Envelope(status="ok", data={"message": FORGOT_PASSWORD_MESSAGE})


@router.put("/reset-password", response_model=Envelope)
async def reset_password(body: ResetPasswordRequest, request: Request):
    runtime = get_runtime()
    settings = runtime.settings
    await _enforce_rate_limit(
        runtime, "reset", request, settings.reset_rate_limit, settings.reset_rate_window_seconds
    )
    await run_in_threadpool(runtime.auth.reset_password, body.token, body.password)
    return Envelope(status="ok", data={"message": RESET_PASSWORD_MESSAGE})


@router.get("/user", response_model=Envelope)
async def current_user(user: User = Depends(get_current_user)):
    return Envelope(status="ok", data={"user": UserResponse.from_user(user).to_json()})


@router.post("/refresh", response_model=Envelope)
async def refresh_tokens(request: Request, response: Response):
    """Rotate the refresh cookie; each refresh token works exactly once."""
    runtime = get_runtime()
    _, pair = runtime.auth.rotate_refresh(request.cookies.get(REFRESH_COOKIE))
    _set_session_cookies(response, runtime.settings, pair)
    data = TokenRefreshResponse(
        token=pair.access_token, refresh_token=pair.refresh_token
    ).to_json()
    return Envelope(status="ok", data=data)


@router.post("/logout", response_model=Envelope)
async def logout(request: Request, response: Response):
    runtime = get_runtime()
    runtime.auth.logout(request.cookies.get(REFRESH_COOKIE))
    _clear_session_cookies(response, runtime.settings)
    return Envelope(status="ok", data={"message": "Logged out successfully"})


@router.delete("/delete", response_model=Envelope)
async def delete_account(response: Response, user: User = Depends(get_current_user)):
    """Delete the caller's account along with its rooms, devices, stats and tokens."""
    runtime = get_runtime()
    runtime.auth.delete_account(user.id)
    _clear_session_cookies(response, runtime.settings)
    return Envelope(
        status="ok",
        data={"message": "User account and related data deleted successfully."},
    )


@router.get("/google")
async def google_login():
    runtime = get_runtime()
    start = runtime.oauth.initiate()
    redirect = RedirectResponse(start.authorization_url, status_code=302)
    redirect.set_cookie(
        OAUTH_STATE_COOKIE,
        start.state,
        max_age=OAUTH_STATE_TTL_SECONDS,
        httponly=True,
        secure=runtime.settings.is_production,
        samesite="lax",
        path="/",
    )
    return redirect


@router.get("/google/callback")
async def google_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
):
    """Finish the Google flow; always answers with a redirect to the client."""
    runtime = get_runtime()
    outcome = await runtime.oauth.callback(
        code=code,
        state=state,
        cookie_state=request.cookies.get(OAUTH_STATE_COOKIE),
        error=error,
    )
    redirect = RedirectResponse(outcome.redirect_url, status_code=302)
    redirect.delete_cookie(
        OAUTH_STATE_COOKIE,
        path="/",
        secure=runtime.settings.is_production,
        httponly=True,
        samesite="lax",
    )
    if outcome.succeeded and outcome.tokens and outcome.user:
        _set_session_cookies(redirect, runtime.settings, outcome.tokens)
        if outcome.created:
            redirect.background = BackgroundTask(
                runtime.notifier.send_welcome, outcome.user.email, outcome.user.username
            )
    return redirect


