from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Tuple

from authkernel.storage.models import (
    AccountStatus,
    AuditLogEntry,
    PasskeyChallenge,
    PasskeyCredential,
    RefreshTokenSession,
    SessionLog,
    TrustedDevice,
    User,
)


class CredentialStore(Protocol):
    """Persistence boundary shared by every auth component.

    Implemented by ``MemoryStore`` and ``PostgresStore``. All methods are
    synchronous; services call them from coroutines the same way the request
    handlers do.
    """

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        max_sessions: Optional[int] = 5,
        tenant_id: str = "public",
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_password_hash(self, user_id: str, password_hash: str) -> None: ...

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]: ...

    def record_login_failure(
        self, user_id: str, failed_attempts: int, lockout_until: Optional[datetime]
    ) -> None: ...

    def reset_login_failures(self, user_id: str) -> None: ...

    def set_mfa(self, user_id: str, *, enabled: bool, secret: Optional[str]) -> None: ...

    def add_refresh_session(self, session: RefreshTokenSession) -> RefreshTokenSession: ...

    def get_refresh_session(self, session_id: str) -> Optional[RefreshTokenSession]: ...

    def list_refresh_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[RefreshTokenSession]: ...

    def delete_refresh_session(self, session_id: str) -> bool: ...

    def delete_refresh_sessions(
        self, session_ids: Iterable[str]
    ) -> List[RefreshTokenSession]: ...

    def delete_refresh_sessions_by_token_hash(self, token_hash: str) -> int: ...

    def touch_refresh_session(self, session_id: str, at: datetime) -> bool: ...

    def list_idle_refresh_sessions(self, cutoff: datetime) -> List[RefreshTokenSession]: ...

    def create_session_log(self, log: SessionLog) -> SessionLog: ...

    def get_session_log(self, log_id: str) -> Optional[SessionLog]: ...

    def find_session_log_by_token(self, token_hash: str) -> Optional[SessionLog]: ...

    def rekey_session_log(self, old_token_hash: str, new_token_hash: str) -> bool: ...

    def close_session_logs(self, token_hashes: Iterable[str], at: datetime) -> int: ...

    def revoke_session_log(
        self, log_id: str, at: datetime, revoked_by: Optional[str]
    ) -> Optional[SessionLog]: ...

    def list_session_logs(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> List[SessionLog]: ...

    def count_session_logs(self, user_id: str, *, active_only: bool = False) -> int: ...

    def upsert_trusted_device(
        self, user_id: str, fingerprint: str, name: str, at: datetime
    ) -> Tuple[TrustedDevice, bool]: ...

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]: ...

    def add_passkey(self, credential: PasskeyCredential) -> PasskeyCredential: ...

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]: ...

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]: ...

    def update_passkey_usage(self, credential_id: str, sign_count: int, at: datetime) -> bool: ...

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool: ...

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge: ...

    def consume_passkey_challenge(
        self, challenge_id: str, at: datetime
    ) -> Optional[PasskeyChallenge]:
        """Remove and return the challenge; None when unknown or expired."""
        ...

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]: ...

    def delete_audit_logs_before(self, cutoff: datetime) -> int: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...
