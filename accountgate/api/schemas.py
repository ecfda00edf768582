from __future__ import annotations

import re
import unicodedata
from typing import Any, Dict, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

MAX_JSON_DEPTH = 8
MAX_PROFILE_KEYS = 32

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
    "duplicate_identity",
    "invalid_or_expired_challenge",
    "invalid_credentials",
    "not_verified",
    "already_verified",
    "invalid_or_revoked_token",
    "not_approved",
    "csrf_invalid",
    "email_delivery_failed",
    "request_timeout",
})


class ErrorBody(BaseModel):
    """Error part of the response envelope; ``code`` is a stable value clients branch on."""

    code: str
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
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")
    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = '\u200b\u200c\u200d\ufeff'
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = ''.join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize('NFKC', cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_PHONE_PATTERN = re.compile(r"^\+?[0-9][0-9 ().-]{5,19}$")


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


def _validate_phone(value: str) -> str:
    cleaned = value.strip()
    if not _PHONE_PATTERN.match(cleaned):
        raise ValueError("invalid phone number")
    return cleaned


def _validate_display_text(value: str) -> str:
    cleaned = _normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("must not be blank")
    return cleaned


class EmailBody(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_body_email(cls, value: str) -> str:
        return _validate_email(value)


class _RegisterBase(EmailBody):
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    def profile(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"email", "password"})


class UserRegisterRequest(_RegisterBase):
    name: str = Field(..., max_length=128)
    phone: str = Field(..., max_length=32)

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        return _validate_display_text(value)

    @field_validator("phone")
    @classmethod
    def _clean_phone(cls, value: str) -> str:
        return _validate_phone(value)


class VendorRegisterRequest(_RegisterBase):
    business_name: str = Field(..., max_length=160)
    vendor_type: str = Field(..., max_length=64)
    contact_name: str = Field(..., max_length=128)
    phone: str = Field(..., max_length=32)

    @field_validator("business_name", "vendor_type", "contact_name")
    @classmethod
    def _clean_text(cls, value: str) -> str:
        return _validate_display_text(value)

    @field_validator("phone")
    @classmethod
    def _clean_phone(cls, value: str) -> str:
        return _validate_phone(value)


class AdminRegisterRequest(_RegisterBase):
    name: str = Field(..., max_length=128)

    @field_validator("name")
    @classmethod
    def _clean_name(cls, value: str) -> str:
        return _validate_display_text(value)


class OtpRequest(EmailBody):
    otp: str = Field(..., max_length=16)

    @field_validator("otp", mode="before")
    @classmethod
    def _stringify_otp(cls, value: Any) -> Any:
        # Clients send the code as a number as often as a string
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value


class LoginRequest(EmailBody):
    password: str = Field(..., max_length=128)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(
        ...,
        max_length=2048,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=2048,
        validation_alias=AliasChoices("refresh_token", "refreshToken"),
    )


class PasswordResetCompleteRequest(OtpRequest):
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class ChangePasswordRequest(BaseModel):
    current_password: str = Field(
        ..., max_length=128, validation_alias=AliasChoices("current_password", "currentPassword")
    )
    new_password: str = Field(
        ..., validation_alias=AliasChoices("new_password", "newPassword")
    )

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class VendorApprovalRequest(BaseModel):
    approved: bool


class ProvisionAccountRequest(_RegisterBase):
    """Admin-only direct account creation; no passcode round trip."""

    role: Literal["user", "vendor", "admin"]
    profile_fields: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("profile", "profile_fields")
    )
    approved: Optional[bool] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("profile_fields")
    @classmethod
    def _validate_profile(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if len(value) > MAX_PROFILE_KEYS:
            raise ValueError(f"profile may have at most {MAX_PROFILE_KEYS} fields")
        _validate_json_depth(value)
        reserved = {
            "id",
            "email",
            "role",
            "is_verified",
            "is_approved",
            "status",
            "is_active",
            "created_at",
            "updated_at",
            "last_login_at",
            "password",
        }
        clash = reserved.intersection(value)
        if clash:
            raise ValueError(f"profile cannot set {', '.join(sorted(clash))}")
        return value

    def profile(self) -> Dict[str, Any]:
        return dict(self.profile_fields)
