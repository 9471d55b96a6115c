from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from muxic.service.auth import PASSWORD_MIN_LENGTH
from muxic.service.usernames import (
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
    USERNAME_PATTERN,
)
from muxic.storage.models import User

PASSWORD_MAX_LENGTH = 128


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "unverified",
    "not_found",
    "conflict",
    "expired",
    "rate_limited",
    "validation_error",
    "server_error",
    "upstream_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can branch on."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """JSON bodies use camelCase; Python code uses snake_case."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


_EMAIL_LOCAL_PART = re.compile(r"[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+")
_EMAIL_DOMAIN_LABEL = re.compile(r"[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("Please provide a valid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.fullmatch(local):
        raise ValueError("Please provide a valid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Please provide a valid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.fullmatch(label):
            raise ValueError("Please provide a valid email address")
    return normalized


def _validate_password_strength(value: str) -> str:
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters long")
    return value


class RegisterRequest(_CamelModel):
    email: str
    password: str
    username: str
    full_name: str

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        value = value.strip()
        if not USERNAME_MIN_LENGTH <= len(value) <= USERNAME_MAX_LENGTH:
            raise ValueError(
                f"Username must be between {USERNAME_MIN_LENGTH} and {USERNAME_MAX_LENGTH} characters"
            )
        if not USERNAME_PATTERN.fullmatch(value):
            raise ValueError("Username can only contain letters, numbers, and underscores")
        return value

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        if not 1 <= len(value) <= 50:
            raise ValueError("Full name must be between 1 and 50 characters")
        return value


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=PASSWORD_MAX_LENGTH)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        value = _normalize_unicode(value).strip()
        # emails are stored lowercased; usernames match exactly
        return value.lower() if "@" in value else value


class VerifyOtpRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    otp: str = Field(..., pattern=r"^\d{6}$")


class ForgotPasswordRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_forgot_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=10, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PrivacyResponse(_CamelModel):
    profile_visibility: str = "public"
    show_online_status: bool = True


class UserResponse(_CamelModel):
    """Client view of a user; secrets and moderation fields never appear."""

    id: str
    email: str
    username: str
    full_name: str
    avatar: Optional[str] = None
    bio: str = ""
    verified: bool = False
    privacy: PrivacyResponse = Field(default_factory=PrivacyResponse)
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            full_name=user.full_name,
            avatar=user.avatar,
            bio=user.bio,
            verified=user.is_verified,
            privacy=PrivacyResponse(
                profile_visibility=user.privacy.profile_visibility,
                show_online_status=user.privacy.show_online_status,
            ),
            last_login=user.last_login,
        )


class RegisterResponse(_CamelModel):
    user_id: str
    email: str
    username: str
    is_verified: bool


class SessionResponse(_CamelModel):
    user: UserResponse
    token: str
    refresh_token: str


class TokenRefreshResponse(_CamelModel):
    token: str
    refresh_token: str


class OtpResendResponse(_CamelModel):
    user_id: str
    otp_expires_at: datetime
