from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from gatehouse.api.schemas import (
    AccessTokenResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    RegisterResponse,
    TokenPairResponse,
    UpdateUserRequest,
    UserListResponse,
    UserResponse,
)
from gatehouse.api.session import ACCESS_COOKIE, REFRESH_COOKIE, require_identity
from gatehouse.config import get_settings
from gatehouse.service.errors import BadRequestError
from gatehouse.service.runtime import get_runtime
from gatehouse.service.tokens import Identity, IssuedToken

router = APIRouter(prefix="/api/auth", tags=["auth"])


def _set_token_cookie(response: Response, name: str, issued: IssuedToken) -> None:
    response.set_cookie(
        name,
        issued.token,
        httponly=True,
        secure=get_settings().cookie_secure,
        samesite="strict",
        max_age=issued.ttl_seconds,
        path="/",
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_settings().cookie_secure
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, path="/", secure=secure, httponly=True, samesite="strict")


def _refresh_token_from(request: Request, body: Optional[RefreshRequest | LogoutRequest]) -> Optional[str]:
    cookie_token = request.cookies.get(REFRESH_COOKIE)
    if cookie_token:
        return cookie_token
    if body is not None and body.refresh_token:
        return body.refresh_token
    return None


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create an unverified account and queue its verification email.

    The verification token is also returned in the body so clients without
    mail delivery (local development, tests) can complete the flow.

    Raises:
        409: If the email is already registered
        503: If the verification ticket could not be stored
    """
    runtime = get_runtime()
    registration = await runtime.auth.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        phone_number=body.phone_number,
    )
    payload = RegisterResponse(
        message="registration successful, verification email sent",
        user_id=registration.user.id,
        token=registration.verification_token,
    )
    return Envelope(status="ok", data=payload.model_dump())


@router.get("/verify/{token}", response_model=Envelope)
async def verify_email(token: str = Path(..., max_length=4096)):
    runtime = get_runtime()
    await runtime.auth.verify_email(token)
    return Envelope(status="ok", data=MessageResponse(message="email verified").model_dump())


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, response: Response):
    """Exchange credentials for an access/refresh token pair.

    Tokens are set as httpOnly cookies and mirrored in the body.

    Raises:
        401: Unknown email or wrong password (indistinguishable)
        403: Account unverified or deactivated
        429: Too many attempts for this email
        504: Password check exceeded its time bound
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    pair = result.tokens
    _set_token_cookie(response, ACCESS_COOKIE, pair.access)
    _set_token_cookie(response, REFRESH_COOKIE, pair.refresh)
    payload = TokenPairResponse(
        user_id=result.user.id,
        access_token=pair.access.token,
        refresh_token=pair.refresh.token,
        access_token_expires_at=pair.access.expires_at_utc,
        refresh_token_expires_at=pair.refresh.expires_at_utc,
    )
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/refresh-token", response_model=Envelope)
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = None,
):
    token = _refresh_token_from(request, body)
    if not token:
        raise BadRequestError("refresh token required", detail={"field": "refresh_token"})
    runtime = get_runtime()
    access = await runtime.auth.refresh(token)
    _set_token_cookie(response, ACCESS_COOKIE, access)
    payload = AccessTokenResponse(access_token=access.token, expires_at=access.expires_at_utc)
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
):
    runtime = get_runtime()
    await runtime.auth.logout(_refresh_token_from(request, body))
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="logged out").model_dump())


@router.get("/users", response_model=Envelope)
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    identity: Identity = Depends(require_identity),
):
    runtime = get_runtime()
    users = runtime.auth.list_users(limit=limit)
    items = [UserResponse.from_user(user) for user in users]
    payload = UserListResponse(items=items, count=len(items))
    return Envelope(status="ok", data=payload.model_dump(mode="json"))


@router.get("/users/{user_id}", response_model=Envelope)
async def get_user(
    user_id: str = Path(..., max_length=255),
    identity: Identity = Depends(require_identity),
):
    runtime = get_runtime()
    user = runtime.auth.get_user(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))


@router.put("/users/{user_id}", response_model=Envelope)
async def update_user(
    body: UpdateUserRequest,
    user_id: str = Path(..., max_length=255),
    identity: Identity = Depends(require_identity),
):
    runtime = get_runtime()
    user = runtime.auth.update_user(user_id, body.changes())
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    user_id: str = Path(..., max_length=255),
    identity: Identity = Depends(require_identity),
):
    runtime = get_runtime()
    runtime.auth.delete_user(user_id)
    return Response(status_code=204)
