from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import ClassVar, Optional


class AuthErrorKind(str, Enum):
    """Closed set of failures the auth core reports to its callers.

    Transport mapping (status codes, headers) lives in the API layer only.
    """

    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_DISABLED = "account_disabled"
    ACCOUNT_LOCKED = "account_locked"
    INVALID_REFRESH_TOKEN = "invalid_refresh_token"
    INVALID_OTP = "invalid_otp"


class AuthError(Exception):
    """Base class for tagged auth failures."""

    kind: ClassVar[AuthErrorKind]
    default_message: ClassVar[str] = "authentication failed"

    def __init__(self, message: Optional[str] = None, *, detail: Optional[dict] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        self.detail = detail or {}


class InvalidCredentials(AuthError):
    kind = AuthErrorKind.INVALID_CREDENTIALS
    default_message = "invalid credentials"


class AccountDisabled(AuthError):
    kind = AuthErrorKind.ACCOUNT_DISABLED
    default_message = "account disabled"


class AccountLocked(AuthError):
    """Raised while a lockout window is open; carries the remaining time."""

    kind = AuthErrorKind.ACCOUNT_LOCKED
    default_message = "account temporarily locked"

    def __init__(
        self,
        lockout_until: datetime,
        now: datetime,
        message: Optional[str] = None,
    ) -> None:
        self.lockout_until = lockout_until
        self.retry_after_seconds = max(
            1, math.ceil((lockout_until - now).total_seconds())
        )
        super().__init__(
            message,
            detail={
                "retry_after_seconds": self.retry_after_seconds,
                "lockout_until": lockout_until.isoformat(),
            },
        )


class InvalidRefreshToken(AuthError):
    kind = AuthErrorKind.INVALID_REFRESH_TOKEN
    default_message = "invalid refresh token"


class InvalidOtp(AuthError):
    kind = AuthErrorKind.INVALID_OTP
    default_message = "invalid one-time code"


__all__ = [
    "AuthErrorKind",
    "AuthError",
    "InvalidCredentials",
    "AccountDisabled",
    "AccountLocked",
    "InvalidRefreshToken",
    "InvalidOtp",
]
