from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException

from realtyauth.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    MessageResponse,
    RefreshTokenRequest,
    RegisterRequest,
    RevokeTokenRequest,
    TokenValidationResponse,
    UserProfileResponse,
    ValidateTokenRequest,
)
from realtyauth.service.auth import AuthResult, UserProfile
from realtyauth.service.errors import TokenInvalidError
from realtyauth.service.runtime import get_runtime
from realtyauth.service.tokens import TokenClaims

router = APIRouter(prefix="/api/auth")


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


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _profile_response(profile: UserProfile) -> UserProfileResponse:
    return UserProfileResponse(
        id=profile.id,
        email=profile.email,
        first_name=profile.first_name,
        last_name=profile.last_name,
        full_name=profile.full_name,
        role=profile.role,
        permissions=list(profile.permissions),
        is_active=profile.is_active,
        is_email_verified=profile.is_email_verified,
        last_login=profile.last_login,
        created_at=profile.created_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_at=result.expires_at,
        refresh_token_expires_at=result.refresh_token_expires_at,
        user=_profile_response(result.user),
    )


async def get_current_principal(
    authorization: Optional[str] = Header(None),
) -> TokenClaims:
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    try:
        return get_runtime().tokens.validate_access_token(token)
    except TokenInvalidError:
        raise _http_error("unauthorized", "invalid token", status_code=401)


@router.post("/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    """Authenticate with email and password.

    Returns a fresh access token and a rotated refresh token. A remember-me
    login gets the long refresh window.

    Raises:
        401: If credentials are invalid or the account is locked
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        email=body.email, password=body.password, remember_me=body.remember_me
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest):
    """Create an account and sign it in.

    Raises:
        409: If an account already uses the email
        422: If the payload fails validation
    """
    runtime = get_runtime()
    result = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        role=body.role,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshTokenRequest):
    """Exchange a refresh token for a new token pair.

    The presented refresh token stops working once this call succeeds.

    Raises:
        401: If the refresh token is unknown or expired
    """
    runtime = get_runtime()
    result = await runtime.auth.refresh_token(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/revoke", response_model=Envelope, tags=["auth"])
async def revoke(body: RevokeTokenRequest):
    runtime = get_runtime()
    if not await runtime.auth.revoke_token(body.refresh_token):
        raise _http_error("validation_error", "failed to revoke token", status_code=400)
    return Envelope(status="ok", data=MessageResponse(message="token revoked successfully"))


@router.get("/profile", response_model=Envelope, tags=["auth"])
async def profile(principal: TokenClaims = Depends(get_current_principal)):
    """Return the profile of the account named by the bearer token.

    Raises:
        401: If the token is invalid or the account is gone or inactive
    """
    runtime = get_runtime()
    current = await runtime.auth.get_current_user(principal.subject)
    if not current:
        raise _http_error("unauthorized", "user not found", status_code=401)
    return Envelope(status="ok", data=_profile_response(current))


@router.post("/validate", response_model=Envelope, tags=["auth"])
async def validate(body: ValidateTokenRequest):
    runtime = get_runtime()
    if not await runtime.auth.validate_token(body.token):
        raise _http_error("validation_error", "invalid token", status_code=400)
    return Envelope(
        status="ok",
        data=TokenValidationResponse(message="token is valid", is_valid=True),
    )
