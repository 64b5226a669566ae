from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from storefront.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    MessageResponse,
    RevokeTokensRequest,
    SignInRequest,
    SignUpRequest,
    TokensResponse,
    UpdatePasswordRequest,
    UserListResponse,
    UserResponse,
)
from storefront.logging import get_logger
from storefront.service.auth import AuthResult, AuthService
from storefront.service.errors import NotFoundError
from storefront.service.permissions import ensure_authorized
from storefront.service.runtime import get_runtime
from storefront.service.tokens import ACCESS_TOKEN, TokenClaims, TokenPair
from storefront.storage.models import Registration, Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def get_bearer_token(authorization: Optional[str] = Header(None)) -> str:
    token = AuthService.extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing or malformed bearer token", status_code=401)
    return token


async def get_claims(authorization: Optional[str] = Header(None)) -> TokenClaims:
    return await get_runtime().auth.authenticate(authorization)


def require_operation(operation: str):
    """Route dependency: a valid access token whose role may call ``operation``."""

    async def _dependency(claims: TokenClaims = Depends(get_claims)) -> TokenClaims:
        ensure_authorized(operation, claims.role)
        return claims

    return _dependency


def _tokens_response(pair: TokenPair) -> dict:
    return TokensResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_expires_at=pair.access_claims.expires_at,
        refresh_expires_at=pair.refresh_claims.expires_at,
    ).model_dump()


def _auth_response(result: AuthResult) -> dict:
    pair = result.tokens
    return AuthResponse(
        user=UserResponse.from_user(result.user),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        access_expires_at=pair.access_claims.expires_at,
        refresh_expires_at=pair.refresh_claims.expires_at,
    ).model_dump(mode="json")


@router.post("/auth/sign-in", response_model=Envelope)
async def sign_in(body: SignInRequest):
    result = await get_runtime().auth.sign_in(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/sign-up", response_model=Envelope, status_code=201)
async def sign_up(body: SignUpRequest):
    registration = Registration(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        gender=body.gender,
        phone_number=body.phone_number,
        date_of_birth=body.date_of_birth,
    )
    result = await get_runtime().auth.sign_up(registration)
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/auth/sign-out", response_model=Envelope)
async def sign_out(token: str = Depends(get_bearer_token)):
    runtime = get_runtime()
    # Signature, expiry and type only; the service reports an already denylisted token
    claims = runtime.tokens.decode_unexpired(token)
    if claims.token_type != ACCESS_TOKEN:
        raise _http_error("unauthorized", f"expected {ACCESS_TOKEN} token", status_code=401)
    ensure_authorized("auth.sign_out", claims.role)
    await runtime.auth.sign_out(token)
    return Envelope(status="ok", data=MessageResponse(message="User signed out").model_dump())


@router.post("/auth/revoke-tokens", response_model=Envelope)
async def revoke_tokens(
    body: RevokeTokensRequest,
    token: str = Depends(get_bearer_token),
    claims: TokenClaims = Depends(require_operation("auth.revoke_tokens")),
):
    pair = await get_runtime().auth.revoke_tokens(claims, token, body.refresh_token)
    return Envelope(status="ok", data=_tokens_response(pair))


@router.patch("/auth/update-password", response_model=Envelope)
async def update_password(
    body: UpdatePasswordRequest,
    claims: TokenClaims = Depends(require_operation("auth.update_password")),
):
    await get_runtime().auth.change_password(
        claims.subject_id, body.email, body.current_password, body.new_password
    )
    return Envelope(
        status="ok", data=MessageResponse(message="Password updated").model_dump()
    )


@router.post("/auth/forgot-password", response_model=Envelope)
async def forgot_password(body: ForgotPasswordRequest):
    try:
        await get_runtime().auth.forgot_password(body.email)
    except NotFoundError:
        # Unknown addresses get the same answer
        logger.info("forgot_password_unknown_email")
    return Envelope(status="ok", data={"status": "sent"})


@router.get("/users/me", response_model=Envelope)
async def get_me(claims: TokenClaims = Depends(require_operation("users.me"))):
    user = get_runtime().users.get(claims.subject_id)
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))


@router.get("/users", response_model=Envelope)
async def list_users(
    role: Optional[Role] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    claims: TokenClaims = Depends(require_operation("users.list")),
):
    users = get_runtime().users.list_users(role=role, limit=limit)
    items = [UserResponse.from_user(u) for u in users]
    return Envelope(status="ok", data=UserListResponse(items=items).model_dump(mode="json"))


@router.get("/users/{user_id}", response_model=Envelope)
async def get_user_by_id(
    user_id: str,
    claims: TokenClaims = Depends(require_operation("users.get")),
):
    user = get_runtime().users.get(user_id)
    return Envelope(status="ok", data=UserResponse.from_user(user).model_dump(mode="json"))
