from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from authkernel.logging import get_correlation_id

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

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


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


def _normalize_unicode(value: str) -> str:
    # Strip zero-width and bidi override characters before NFKC
    zero_width = "​‌‍﻿"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
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


class GeoPointModel(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)


class LoginRequest(BaseModel):
    email: str
    password: str = Field(..., min_length=1, max_length=1024)
    location: Optional[GeoPointModel] = None

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenResponse(BaseModel):
    user_id: str
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"
    mfa_required: bool = False
    new_device: bool = False


class MfaSetupResponse(BaseModel):
    secret: str
    otpauth_uri: str
    qr_code: Optional[str] = None


class MfaEnableRequest(BaseModel):
    code: str = Field(..., max_length=10)
    secret: str = Field(..., min_length=16, max_length=128)


class MfaValidateRequest(BaseModel):
    user_id: str = Field(..., max_length=128)
    code: str = Field(..., max_length=10)


class MfaDisableRequest(BaseModel):
    code: str = Field(..., max_length=10, description="Current TOTP code to verify identity")


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_active: datetime
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionLogResponse(BaseModel):
    id: str
    device_info: str
    ip_address: Optional[str] = None
    location: Optional[str] = None
    is_active: bool
    login_at: datetime
    logout_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaginatedSessionLogs(BaseModel):
    logs: List[SessionLogResponse]
    pagination: Pagination


class SessionLogStats(BaseModel):
    active: int
    total: int


class DeviceResponse(BaseModel):
    id: str
    name: str
    last_used: datetime
    created_at: datetime


class PasskeyOptionsResponse(BaseModel):
    challenge_id: str
    options: Dict[str, Any]


class PasskeyRegisterFinishRequest(BaseModel):
    challenge_id: str = Field(..., max_length=128)
    credential: Dict[str, Any]
    name: Optional[str] = Field(None, max_length=100)


class PasskeyLoginStartRequest(BaseModel):
    email: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_passkey_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value else None


class PasskeyLoginFinishRequest(BaseModel):
    challenge_id: str = Field(..., max_length=128)
    credential: Dict[str, Any]
    location: Optional[GeoPointModel] = None


class PasskeyResponse(BaseModel):
    id: str
    name: str
    device_type: Optional[str] = None
    backed_up: bool = False
    created_at: datetime
    last_used: Optional[datetime] = None
