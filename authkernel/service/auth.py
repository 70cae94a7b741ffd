from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.devices import DeviceTracker
from authkernel.service.errors import AccountDisabled, AccountLocked, InvalidCredentials
from authkernel.service.geo import GeoPoint
from authkernel.service.hashing import SecretHasher
from authkernel.service.lockout import AttemptOutcome, LockoutPolicy
from authkernel.service.passkeys import PasskeyManager
from authkernel.service.sessions import SessionManager, TokenPair
from authkernel.service.store import CredentialStore
from authkernel.storage.common import normalize_email
from authkernel.storage.models import AccountStatus, AuditAction, User, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    session_id: Optional[str]
    email: str
    mfa_enabled: bool = False


@dataclass(frozen=True)
class LoginResult:
    user_id: str
    tokens: TokenPair
    mfa_required: bool = False
    new_device: bool = False


class AuthService:
    """Password login, logout and bearer authentication.

    The lockout pre-check runs before the password hash is touched so a
    locked account answers ``AccountLocked`` even for the right password.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        sessions: SessionManager,
        *,
        lockout: Optional[LockoutPolicy] = None,
        devices: Optional[DeviceTracker] = None,
        passkeys: Optional[PasskeyManager] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.sessions = sessions
        self.lockout = lockout or LockoutPolicy()
        self.devices = devices
        self.passkeys = passkeys
        self.audit = audit
        self._clock = clock

    def _audit(self, action: AuditAction, **kwargs) -> None:
        if self.audit:
            self.audit.record(action, **kwargs)

    async def login(
        self,
        email: str,
        password: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> LoginResult:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None or not user.password_hash:
            logger.info("login_unknown_user")
            self._audit(
                AuditAction.LOGIN_FAILURE,
                metadata={"reason": "invalid_credentials"},
                ip=ip,
                user_agent=user_agent,
            )
            raise InvalidCredentials()

        if user.status == AccountStatus.DISABLED:
            self._audit(
                AuditAction.LOGIN_FAILURE,
                user_id=user.id,
                metadata={"reason": "account_disabled"},
                ip=ip,
                user_agent=user_agent,
            )
            raise AccountDisabled()

        now = self._clock()
        pending = self.lockout.evaluate(user, AttemptOutcome.PENDING, now)
        if pending.locked:
            self._audit(
                AuditAction.LOGIN_FAILURE,
                user_id=user.id,
                metadata={"reason": "account_locked"},
                ip=ip,
                user_agent=user_agent,
            )
            raise AccountLocked(pending.lockout_until, now)

        if not await self.hasher.verify(password, user.password_hash):
            decision = self.lockout.evaluate(user, AttemptOutcome.FAILURE, now)
            self.store.record_login_failure(
                user.id, decision.failed_attempts, decision.lockout_until
            )
            self._audit(
                AuditAction.LOGIN_FAILURE,
                user_id=user.id,
                metadata={
                    "reason": "invalid_credentials",
                    "failed_attempts": decision.failed_attempts,
                },
                ip=ip,
                user_agent=user_agent,
            )
            if decision.newly_locked:
                logger.warning(
                    "account_locked",
                    user_id=user.id,
                    lockout_until=decision.lockout_until.isoformat(),
                )
                self._audit(
                    AuditAction.ACCOUNT_LOCKED,
                    user_id=user.id,
                    metadata={"lockout_until": decision.lockout_until.isoformat()},
                    ip=ip,
                    user_agent=user_agent,
                )
            raise InvalidCredentials()

        if user.failed_login_attempts or user.lockout_until:
            self.store.reset_login_failures(user.id)
        if self.hasher.needs_rehash(user.password_hash):
            self.store.set_password_hash(user.id, await self.hasher.hash(password))

        return await self._complete_login(
            user, ip=ip, user_agent=user_agent, location=location, method="password"
        )

    async def login_with_passkey(
        self,
        challenge_id: str,
        credential: Dict[str, Any],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> LoginResult:
        """Passwordless login from a verified WebAuthn assertion.

        Disabled accounts and open lockout windows are refused exactly as for
        password login; a rejected assertion does not count toward lockout.
        """
        if self.passkeys is None:
            raise InvalidCredentials("passkey login is not configured")
        try:
            passkey = self.passkeys.verify_authentication(challenge_id, credential)
        except InvalidCredentials:
            self._audit(
                AuditAction.LOGIN_FAILURE,
                metadata={"reason": "passkey_rejected"},
                ip=ip,
                user_agent=user_agent,
            )
            raise

        user = self.store.get_user(passkey.user_id)
        if user is None:
            raise InvalidCredentials()
        if user.status == AccountStatus.DISABLED:
            self._audit(
                AuditAction.LOGIN_FAILURE,
                user_id=user.id,
                metadata={"reason": "account_disabled", "method": "passkey"},
                ip=ip,
                user_agent=user_agent,
            )
            raise AccountDisabled()
        now = self._clock()
        pending = self.lockout.evaluate(user, AttemptOutcome.PENDING, now)
        if pending.locked:
            self._audit(
                AuditAction.LOGIN_FAILURE,
                user_id=user.id,
                metadata={"reason": "account_locked", "method": "passkey"},
                ip=ip,
                user_agent=user_agent,
            )
            raise AccountLocked(pending.lockout_until, now)
        if user.failed_login_attempts or user.lockout_until:
            self.store.reset_login_failures(user.id)
        return await self._complete_login(
            user,
            ip=ip,
            user_agent=user_agent,
            location=location,
            method="passkey",
            mfa_required=False,
        )

    async def _complete_login(
        self,
        user: User,
        *,
        ip: Optional[str],
        user_agent: Optional[str],
        location: Optional[GeoPoint],
        method: str,
        mfa_required: Optional[bool] = None,
    ) -> LoginResult:
        if mfa_required is None:
            mfa_required = bool(user.mfa_enabled)
        new_device = False
        if self.devices is not None:
            new_device = await self.devices.record_login(user.id, ip, user_agent)
            if new_device:
                self._audit(
                    AuditAction.NEW_DEVICE,
                    user_id=user.id,
                    ip=ip,
                    user_agent=user_agent,
                )

        tokens = await self.sessions.create_session(user.id, ip, user_agent, location)
        self._audit(
            AuditAction.LOGIN_SUCCESS,
            user_id=user.id,
            metadata={
                "session_id": tokens.session_id,
                "new_device": new_device,
                "mfa_required": mfa_required,
                "method": method,
            },
            ip=ip,
            user_agent=user_agent,
        )
        logger.info(
            "login_succeeded", user_id=user.id, session_id=tokens.session_id, method=method
        )
        return LoginResult(
            user_id=user.id,
            tokens=tokens,
            mfa_required=mfa_required,
            new_device=new_device,
        )

    async def logout(
        self,
        refresh_token: Optional[str],
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """End the session behind ``refresh_token``; never raises for bad tokens."""
        if not refresh_token:
            return False
        ended = await self.sessions.end_session(refresh_token)
        if ended is None:
            return False
        self._audit(
            AuditAction.LOGOUT,
            user_id=ended.user_id,
            metadata={"session_id": ended.id},
            ip=ip,
            user_agent=user_agent,
        )
        return True

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        claims = self.sessions.access_signer.verify(token.strip())
        if not claims:
            return None
        user = self.store.get_user(claims["sub"])
        if user is None or not user.is_active:
            return None
        session_id = claims.get("sid")
        if session_id:
            row = self.store.get_refresh_session(session_id)
            if row is None or row.user_id != user.id or row.expires_at <= self._clock():
                return None
            self.sessions.touch(session_id)
        return AuthContext(
            user_id=user.id,
            session_id=session_id,
            email=user.email,
            mfa_enabled=user.mfa_enabled,
        )

    def unlock_account(self, email: str) -> bool:
        user = self.store.get_user_by_email(normalize_email(email))
        if user is None:
            return False
        self.store.reset_login_failures(user.id)
        self._audit(
            AuditAction.ACCOUNT_UNLOCKED,
            user_id=user.id,
            metadata={"previous_failed_attempts": user.failed_login_attempts},
        )
        return True
