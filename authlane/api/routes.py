from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import JSONResponse

from authlane.api.schemas import (
    AuthResponse,
    HealthResponse,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RegisterRequest,
    UserResponse,
)
from authlane.config import Settings
from authlane.logging import get_logger, sanitize_error_message
from authlane.service.auth import AuthResult
from authlane.service.errors import AuthenticationError, ValidationError
from authlane.service.rate_limit import RateLimitDecision
from authlane.service.runtime import Runtime, get_runtime
from authlane.service.tokens import AccessClaims

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1/auth", tags=["auth"])
health_router = APIRouter(tags=["health"])

REFRESH_COOKIE_NAME = "refresh_token"
MAX_USER_AGENT_LENGTH = 255


def _client_ip(request: Request) -> str:
    """First X-Forwarded-For hop when behind a proxy, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


def _device_info(request: Request) -> Optional[str]:
    user_agent = request.headers.get("User-Agent")
    return user_agent[:MAX_USER_AGENT_LENGTH] if user_agent else None


def _apply_refresh_cookie(response: Response, settings: Settings, result: AuthResult) -> None:
    response.set_cookie(
        REFRESH_COOKIE_NAME,
        result.refresh_token,
        max_age=result.refresh_expires_in,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        REFRESH_COOKIE_NAME,
        path=settings.refresh_cookie_path,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="strict",
    )


async def _enforce_rate_limit(
    runtime: Runtime, key: str, response: Response
) -> RateLimitDecision:
    """Admit the request or raise RateLimitedError; sets X-RateLimit-* headers."""
    limit = runtime.settings.rate_limit_requests
    decision = await runtime.rate_limiter.enforce(
        key, limit, runtime.settings.rate_limit_window_seconds
    )
    if limit > 0:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    return decision


async def get_current_claims(authorization: Optional[str] = Header(None)) -> AccessClaims:
    if not authorization:
        raise AuthenticationError("authorization header is required")
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        raise AuthenticationError("invalid authorization header format")
    runtime = get_runtime()
    return await runtime.auth.validate_access(parts[1])


@router.post("/register", response_model=AuthResponse, status_code=201)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account and return a token pair; the refresh token goes in a cookie.

    Raises:
        400: If the email or password fails validation
        409: If the email is already registered
        429: If this client IP exceeded the rate limit
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(runtime, f"register:{client_ip}", response)
    result = await runtime.auth.register(
        body.email,
        body.password,
        device_info=_device_info(request),
        ip_address=client_ip,
    )
    _apply_refresh_cookie(response, runtime.settings, result)
    return result.to_response()


@router.post("/login", response_model=AuthResponse)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid or the account is inactive
        429: If this client IP exceeded the rate limit
    """
    runtime = get_runtime()
    client_ip = _client_ip(request)
    await _enforce_rate_limit(runtime, f"login:{client_ip}", response)
    result = await runtime.auth.login(
        body.email,
        body.password,
        device_info=_device_info(request),
        ip_address=client_ip,
    )
    _apply_refresh_cookie(response, runtime.settings, result)
    return result.to_response()


@router.post("/refresh", response_model=AuthResponse)
async def refresh(request: Request, response: Response):
    """Rotate the refresh token carried in the ``refresh_token`` cookie."""
    raw_refresh = request.cookies.get(REFRESH_COOKIE_NAME)
    if not raw_refresh:
        raise ValidationError("refresh token cookie is required")
    runtime = get_runtime()
    result = await runtime.auth.refresh_rotate(
        raw_refresh,
        device_info=_device_info(request),
        ip_address=_client_ip(request),
    )
    _apply_refresh_cookie(response, runtime.settings, result)
    return result.to_response()


@router.post("/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    claims: AccessClaims = Depends(get_current_claims),
):
    """Revoke the caller's refresh token and clear the cookie.

    The token is read from the cookie, or from the body when the cookie path
    does not cover this route.
    """
    runtime = get_runtime()
    raw_refresh = request.cookies.get(REFRESH_COOKIE_NAME) or (
        body.refresh_token if body else None
    )
    await runtime.auth.logout(claims.subject_id, raw_refresh)
    _clear_refresh_cookie(response, runtime.settings)
    return MessageResponse(message="logged out successfully")


@router.get("/me", response_model=UserResponse)
async def me(claims: AccessClaims = Depends(get_current_claims)):
    runtime = get_runtime()
    profile = await runtime.auth.get_profile(claims.subject_id)
    return UserResponse.from_profile(profile)


@health_router.get("/health", response_model=HealthResponse, response_model_exclude_none=True)
async def health():
    result = await get_runtime().health()
    if result["status"] != "pass":
        errors = {
            name: sanitize_error_message(message)
            for name, message in result.get("errors", {}).items()
        }
        return JSONResponse(status_code=503, content={"status": "fail", "errors": errors})
    return HealthResponse(status="pass")
