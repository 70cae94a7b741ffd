from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"


class AuditAction(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILURE = "LOGIN_FAILURE"
    LOGOUT = "LOGOUT"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_UNLOCKED = "ACCOUNT_UNLOCKED"
    MFA_ENABLED = "MFA_ENABLED"
    MFA_DISABLED = "MFA_DISABLED"
    SESSION_REVOKED = "SESSION_REVOKED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    SESSION_EVICTED = "SESSION_EVICTED"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    NEW_DEVICE = "NEW_DEVICE"
    PASSKEY_REGISTERED = "PASSKEY_REGISTERED"
    PASSKEY_REMOVED = "PASSKEY_REMOVED"


class ChallengePurpose(str, Enum):
    REGISTRATION = "registration"
    AUTHENTICATION = "authentication"


@dataclass
class User:
    id: str
    email: str
    password_hash: Optional[str] = None
    status: AccountStatus = AccountStatus.ACTIVE
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    max_sessions: Optional[int] = 5
    mfa_enabled: bool = False
    mfa_secret: Optional[str] = None
    tenant_id: str = "public"
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE


@dataclass
class RefreshTokenSession:
    """One row per live refresh token; only the token hash is stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    last_active: datetime = field(default_factory=utcnow)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class SessionLog:
    """Human-auditable history row paired with a refresh session by token hash."""

    id: str
    user_id: str
    session_token: Optional[str]
    device_info: str
    ip_address: Optional[str] = None
    location: Optional[str] = None
    is_active: bool = True
    login_at: datetime = field(default_factory=utcnow)
    logout_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[str] = None


@dataclass
class TrustedDevice:
    id: str
    user_id: str
    fingerprint: str
    name: str
    last_used: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    id: str
    action: AuditAction
    user_id: Optional[str] = None
    metadata: Dict | None = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class PasskeyCredential:
    """A registered WebAuthn authenticator. Binary values are base64url text."""

    id: str
    user_id: str
    credential_id: str
    public_key: str
    sign_count: int = 0
    transports: List[str] = field(default_factory=list)
    name: str = "Passkey"
    device_type: Optional[str] = None
    backed_up: bool = False
    created_at: datetime = field(default_factory=utcnow)
    last_used: Optional[datetime] = None


@dataclass
class PasskeyChallenge:
    """A single-use WebAuthn challenge awaiting its ceremony response."""

    id: str
    challenge: str
    purpose: ChallengePurpose
    expires_at: datetime
    user_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
