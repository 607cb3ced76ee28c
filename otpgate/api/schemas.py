from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from otpgate.config import get_settings
from otpgate.logging import get_correlation_id
from otpgate.storage.models import Identity

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "token_expired",
    "forbidden",
    "not_found",
    "validation_error",
    "otp_not_found",
    "otp_expired",
    "otp_invalid",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code {value!r}")
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(
        c for c in value if c not in zero_width and c not in bidi_overrides
    )
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: Optional[str]) -> Optional[str]:
    """Normalize and check an address; blank input is left for the service to reject."""
    if value is None:
        return None
    normalized = _normalize_unicode(value.strip().lower())
    if not normalized:
        return None
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class LoginRequest(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=120)
    role: Optional[str] = Field(default=None, max_length=32)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)


class VerifyRequest(BaseModel):
    email: Optional[str] = None
    otp: Optional[str] = Field(default=None, max_length=16)

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value)

    @field_validator("otp", mode="before")
    @classmethod
    def _coerce_numeric_otp(cls, value: Any) -> Any:
        # clients sometimes post the code as a JSON number, losing leading zeros
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value).zfill(get_settings().otp_length)
        return value


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = Field(
        default=None,
        max_length=4096,
        validation_alias=AliasChoices("refreshToken", "refresh_token"),
    )


class RoleUpdateRequest(BaseModel):
    role: Optional[str] = Field(default=None, max_length=32)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginResponse(_CamelModel):
    email: str


class IdentityResponse(_CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    role: str
    is_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_identity(cls, identity: Identity) -> "IdentityResponse":
        return cls(**identity.public_view())


class VerifyResponse(IdentityResponse):
    access_token: str
    refresh_token: str


class AccessTokenResponse(_CamelModel):
    access_token: str
