from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from storefront.storage.models import Gender, Role, User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after dropping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9]{7,15}$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


def _validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s().-]", "", value)
    if not _PHONE_PATTERN.match(compact):
        raise ValueError("invalid phone number")
    return compact


class SignInRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_sign_in_email(cls, value: str) -> str:
        return _validate_email(value)


class SignUpRequest(BaseModel):
    email: str
    password: str
    first_name: str = Field(..., min_length=3, max_length=50)
    last_name: str = Field(..., min_length=3, max_length=50)
    gender: Optional[Gender] = None
    phone_number: Optional[str] = Field(default=None, max_length=32)
    date_of_birth: Optional[date] = None
    role: Optional[Role] = None

    @field_validator("email")
    @classmethod
    def _validate_sign_up_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        return _normalize_unicode(value.strip())

    @field_validator("phone_number")
    @classmethod
    def _validate_phone_number(cls, value: Optional[str]) -> Optional[str]:
        return _validate_phone(value)

    @field_validator("date_of_birth")
    @classmethod
    def _reject_future_birth_date(cls, value: Optional[date]) -> Optional[date]:
        if value is not None and value > date.today():
            raise ValueError("date_of_birth cannot be in the future")
        return value

    @model_validator(mode="after")
    def _restrict_role(self):
        # Staff accounts are provisioned by an administrator, never self-registered
        if self.role not in (None, Role.CUSTOMER):
            raise ValueError("only CUSTOMER accounts can be self-registered")
        self.role = None
        return self


class RevokeTokensRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class UpdatePasswordRequest(BaseModel):
    email: str
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class UserResponse(BaseModel):
    id: str
    email: str
    first_name: str
    last_name: str
    gender: Optional[Gender] = None
    phone_number: Optional[str] = None
    date_of_birth: Optional[date] = None
    role: Role
    is_active: bool = True
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            gender=user.gender,
            phone_number=user.phone_number,
            date_of_birth=user.date_of_birth,
            role=user.role,
            is_active=user.is_active,
            created_at=user.created_at,
        )


class UserListResponse(BaseModel):
    items: List[UserResponse]


class TokensResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: Optional[int] = None
    refresh_expires_at: Optional[int] = None


class AuthResponse(TokensResponse):
    user: UserResponse


class MessageResponse(BaseModel):
    message: str
