from __future__ import annotations

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from io import BytesIO
from typing import Callable, Optional
from urllib.parse import quote, urlencode

import qrcode

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.errors import InvalidCredentials, InvalidOtp
from authkernel.service.store import CredentialStore
from authkernel.storage.models import AuditAction, User, utcnow

logger = get_logger(__name__)

TOTP_INTERVAL = 30
TOTP_DIGITS = 6
MAX_TOTP_WINDOW = 1


class MfaState(str, Enum):
    DISABLED = "disabled"
    PENDING_SETUP = "pending_setup"
    ENABLED = "enabled"


@dataclass(frozen=True)
class MfaEnrollment:
    secret: str
    otpauth_uri: str
    qr_code: Optional[str]


def generate_secret() -> str:
    return base64.b32encode(os.urandom(20)).decode("ascii").rstrip("=")


def generate_code(
    secret: str, at: datetime, *, interval: int = TOTP_INTERVAL, digits: int = TOTP_DIGITS
) -> str:
    """RFC 6238 code for ``at``; empty string when the secret is not base32."""
    padded = secret.upper() + "=" * ((8 - len(secret) % 8) % 8)
    try:
        key = base64.b32decode(padded, True)
    except ValueError:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(at.timestamp() // interval).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**digits
    )
    return str(code_int).zfill(digits)


def _qr_data_url(payload: str) -> Optional[str]:
    try:
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_L,
            box_size=10,
            border=4,
        )
        qr.add_data(payload)
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white")
        buffer = BytesIO()
        img.save(buffer, format="PNG")
    except Exception as exc:
        logger.warning("mfa_qr_render_failed", error=str(exc))
        return None
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


class MfaManager:
    """TOTP enrollment and verification.

    Setup hands a candidate secret back to the client without storing it;
    only a successful ``enable_mfa`` persists the secret (encrypted by the
    store) and flips the user to enabled.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        audit: Optional[AuditLogger] = None,
        issuer: str = "AuthKernel",
        window: int = 1,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.issuer = issuer
        self.window = max(0, min(window, MAX_TOTP_WINDOW))
        self._clock = clock

    @staticmethod
    def mfa_state(user: User) -> MfaState:
        if user.mfa_enabled and user.mfa_secret:
            return MfaState.ENABLED
        return MfaState.DISABLED

    def setup_mfa(self, user_id: str) -> MfaEnrollment:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentials()
        secret = generate_secret()
        label = quote(f"{self.issuer}:{user.email}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": TOTP_DIGITS,
                "period": TOTP_INTERVAL,
            }
        )
        uri = f"otpauth://totp/{label}?{query}"
        logger.info("mfa_setup_started", user_id=user_id)
        return MfaEnrollment(secret=secret, otpauth_uri=uri, qr_code=_qr_data_url(uri))

    def generate_code(self, secret: str, at: Optional[datetime] = None) -> str:
        return generate_code(secret, at or self._clock())

    def verify_code(self, secret: Optional[str], code: Optional[str]) -> bool:
        if not secret or not code:
            return False
        code = code.strip()
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = self._clock()
        for step in range(-self.window, self.window + 1):
            at = datetime.fromtimestamp(
                now.timestamp() + step * TOTP_INTERVAL, tz=now.tzinfo
            )
            generated = generate_code(secret, at)
            if generated and hmac.compare_digest(generated, code):
                return True
        return False

    async def enable_mfa(self, user_id: str, code: str, secret: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentials()
        if not self.verify_code(secret, code):
            logger.info("mfa_enable_rejected", user_id=user_id)
            raise InvalidOtp()
        self.store.set_mfa(user_id, enabled=True, secret=secret)
        if self.audit:
            self.audit.record(AuditAction.MFA_ENABLED, user_id=user_id)

    async def validate_mfa(self, user_id: str, code: str) -> bool:
        user = self.store.get_user(user_id)
        if user is None or self.mfa_state(user) != MfaState.ENABLED:
            return False
        return self.verify_code(user.mfa_secret, code)

    async def disable_mfa(self, user_id: str, code: str) -> None:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentials()
        if self.mfa_state(user) != MfaState.ENABLED:
            return
        if not self.verify_code(user.mfa_secret, code):
            raise InvalidOtp()
        self.store.set_mfa(user_id, enabled=False, secret=None)
        if self.audit:
            self.audit.record(AuditAction.MFA_DISABLED, user_id=user_id)
