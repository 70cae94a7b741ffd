from __future__ import annotations

import json
import secrets
import threading
from dataclasses import asdict, fields, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.storage.common import MfaSecretCipher, normalize_email
from authkernel.storage.errors import ConstraintViolation
from authkernel.storage.models import (
    AccountStatus,
    AuditAction,
    AuditLogEntry,
    ChallengePurpose,
    PasskeyChallenge,
    PasskeyCredential,
    RefreshTokenSession,
    SessionLog,
    TrustedDevice,
    User,
    new_id,
)

_ENUM_FIELDS: Dict[type, Dict[str, type]] = {
    User: {"status": AccountStatus},
    AuditLogEntry: {"action": AuditAction},
    PasskeyChallenge: {"purpose": ChallengePurpose},
}


class MemoryStore:
    """In-process credential store used for development and tests.

    State lives in plain dicts guarded by one re-entrant lock. When
    ``state_path`` is given every mutation is flushed to a JSON file and
    reloaded on start. Reads hand out copies so callers never alias the
    stored rows.
    """

    def __init__(
        self,
        state_path: str | None = None,
        *,
        mfa_encryption_key: str | None = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_sessions: Dict[str, RefreshTokenSession] = {}
        self.session_logs: Dict[str, SessionLog] = {}
        self.devices: Dict[str, TrustedDevice] = {}
        self.passkeys: Dict[str, PasskeyCredential] = {}
        self.passkey_challenges: Dict[str, PasskeyChallenge] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_path = Path(state_path) if state_path else None
        if not mfa_encryption_key:
            self.logger.warning("mfa_encryption_key_ephemeral")
            mfa_encryption_key = secrets.token_urlsafe(32)
        self._mfa_cipher = MfaSecretCipher(mfa_encryption_key)
        self._load_state()

    # -- users -------------------------------------------------------------

    def _public_user(self, user: User) -> User:
        return replace(user, mfa_secret=self._mfa_cipher.decrypt(user.mfa_secret))

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        max_sessions: Optional[int] = 5,
        tenant_id: str = "public",
    ) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if any(existing.email == normalized for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=normalized,
                password_hash=password_hash,
                status=status,
                max_sessions=max_sessions,
                tenant_id=tenant_id,
            )
            self.users[user.id] = user
            self._persist_state()
            return self._public_user(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return self._public_user(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return self._public_user(user) if user else None

    def _require_user(self, user_id: str) -> User:
        user = self.users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            self._require_user(user_id).password_hash = password_hash
            self._persist_state()

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = status
            self._persist_state()
            return self._public_user(user)

    def record_login_failure(
        self, user_id: str, failed_attempts: int, lockout_until: Optional[datetime]
    ) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = failed_attempts
            user.lockout_until = lockout_until
            self._persist_state()

    def reset_login_failures(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.failed_login_attempts = 0
            user.lockout_until = None
            self._persist_state()

    def set_mfa(self, user_id: str, *, enabled: bool, secret: Optional[str]) -> None:
        with self._data_lock:
            user = self._require_user(user_id)
            user.mfa_enabled = enabled
            user.mfa_secret = self._mfa_cipher.encrypt(secret)
            self._persist_state()

    # -- refresh sessions ------------------------------------------------

    def add_refresh_session(self, session: RefreshTokenSession) -> RefreshTokenSession:
        with self._data_lock:
            self._require_user(session.user_id)
            self.refresh_sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_refresh_session(self, session_id: str) -> Optional[RefreshTokenSession]:
        with self._data_lock:
            row = self.refresh_sessions.get(session_id)
            return replace(row) if row else None

    def list_refresh_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[RefreshTokenSession]:
        with self._data_lock:
            rows = [
                replace(row)
                for row in self.refresh_sessions.values()
                if row.user_id == user_id
                and (active_at is None or row.expires_at > active_at)
            ]
        # Stable sort keeps insertion order for rows created in the same instant
        rows.sort(key=lambda row: row.created_at)
        return rows

    def delete_refresh_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.refresh_sessions.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_refresh_sessions(
        self, session_ids: Iterable[str]
    ) -> List[RefreshTokenSession]:
        with self._data_lock:
            removed = [
                row
                for row in (self.refresh_sessions.pop(sid, None) for sid in session_ids)
                if row is not None
            ]
            if removed:
                self._persist_state()
            return removed

    def delete_refresh_sessions_by_token_hash(self, token_hash: str) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, row in self.refresh_sessions.items()
                if row.token_hash == token_hash
            ]
            for sid in stale:
                self.refresh_sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def touch_refresh_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            row = self.refresh_sessions.get(session_id)
            if not row:
                return False
            row.last_active = at
            self._persist_state()
            return True

    def list_idle_refresh_sessions(self, cutoff: datetime) -> List[RefreshTokenSession]:
        with self._data_lock:
            return [
                replace(row)
                for row in self.refresh_sessions.values()
                if row.last_active < cutoff
            ]

    # -- session logs ----------------------------------------------------

    def create_session_log(self, log: SessionLog) -> SessionLog:
        with self._data_lock:
            self._require_user(log.user_id)
            self.session_logs[log.id] = replace(log)
            self._persist_state()
            return replace(log)

    def get_session_log(self, log_id: str) -> Optional[SessionLog]:
        with self._data_lock:
            log = self.session_logs.get(log_id)
            return replace(log) if log else None

    def find_session_log_by_token(self, token_hash: str) -> Optional[SessionLog]:
        with self._data_lock:
            for log in self.session_logs.values():
                if log.is_active and log.session_token == token_hash:
                    return replace(log)
        return None

    def rekey_session_log(self, old_token_hash: str, new_token_hash: str) -> bool:
        with self._data_lock:
            for log in self.session_logs.values():
                if log.session_token == old_token_hash and log.is_active:
                    log.session_token = new_token_hash
                    self._persist_state()
                    return True
            return False

    def close_session_logs(self, token_hashes: Iterable[str], at: datetime) -> int:
        wanted = set(token_hashes)
        if not wanted:
            return 0
        with self._data_lock:
            closed = 0
            for log in self.session_logs.values():
                if log.is_active and log.session_token in wanted:
                    log.is_active = False
                    log.logout_at = at
                    closed += 1
            if closed:
                self._persist_state()
            return closed

    def revoke_session_log(
        self, log_id: str, at: datetime, revoked_by: Optional[str]
    ) -> Optional[SessionLog]:
        with self._data_lock:
            log = self.session_logs.get(log_id)
            if not log:
                return None
            log.is_active = False
            log.revoked_at = at
            log.revoked_by = revoked_by
            log.logout_at = log.logout_at or at
            self._persist_state()
            return replace(log)

    def list_session_logs(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> List[SessionLog]:
        with self._data_lock:
            logs = [replace(log) for log in self.session_logs.values() if log.user_id == user_id]
        logs.sort(key=lambda log: log.login_at, reverse=True)
        return logs[offset : offset + limit]

    def count_session_logs(self, user_id: str, *, active_only: bool = False) -> int:
        with self._data_lock:
            return sum(
                1
                for log in self.session_logs.values()
                if log.user_id == user_id and (log.is_active or not active_only)
            )

    # -- trusted devices -------------------------------------------------

    def upsert_trusted_device(
        self, user_id: str, fingerprint: str, name: str, at: datetime
    ) -> Tuple[TrustedDevice, bool]:
        with self._data_lock:
            self._require_user(user_id)
            for device in self.devices.values():
                if device.user_id == user_id and device.fingerprint == fingerprint:
                    device.name = name
                    device.last_used = at
                    self._persist_state()
                    return replace(device), False
            device = TrustedDevice(
                id=new_id(),
                user_id=user_id,
                fingerprint=fingerprint,
                name=name,
                last_used=at,
                created_at=at,
            )
            self.devices[device.id] = device
            self._persist_state()
            return replace(device), True

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._data_lock:
            devices = [replace(d) for d in self.devices.values() if d.user_id == user_id]
        devices.sort(key=lambda d: d.last_used, reverse=True)
        return devices

    # -- passkeys --------------------------------------------------------

    def add_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        with self._data_lock:
            self._require_user(credential.user_id)
            if any(
                p.credential_id == credential.credential_id for p in self.passkeys.values()
            ):
                raise ConstraintViolation(
                    "passkey already registered", {"field": "credential_id"}
                )
            self.passkeys[credential.id] = replace(credential)
            self._persist_state()
            return replace(credential)

    def _find_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        return next(
            (p for p in self.passkeys.values() if p.credential_id == credential_id), None
        )

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._data_lock:
            passkey = self._find_passkey(credential_id)
            return replace(passkey) if passkey else None

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._data_lock:
            passkeys = [replace(p) for p in self.passkeys.values() if p.user_id == user_id]
        passkeys.sort(key=lambda p: p.created_at)
        return passkeys

    def update_passkey_usage(self, credential_id: str, sign_count: int, at: datetime) -> bool:
        with self._data_lock:
            passkey = self._find_passkey(credential_id)
            if not passkey:
                return False
            passkey.sign_count = sign_count
            passkey.last_used = at
            self._persist_state()
            return True

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        with self._data_lock:
            passkey = self.passkeys.get(passkey_id)
            if not passkey or passkey.user_id != user_id:
                return False
            del self.passkeys[passkey_id]
            self._persist_state()
            return True

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge:
        with self._data_lock:
            # Expired challenges are pruned on every save
            self.passkey_challenges = {
                cid: c
                for cid, c in self.passkey_challenges.items()
                if c.expires_at > challenge.created_at
            }
            self.passkey_challenges[challenge.id] = replace(challenge)
            self._persist_state()
            return replace(challenge)

    def consume_passkey_challenge(
        self, challenge_id: str, at: datetime
    ) -> Optional[PasskeyChallenge]:
        with self._data_lock:
            challenge = self.passkey_challenges.pop(challenge_id, None)
            if challenge is None:
                return None
            self._persist_state()
            return replace(challenge) if challenge.expires_at > at else None

    # -- audit -----------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_log.append(replace(entry))
            self._persist_state()
            return entry

    def list_audit_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            entries = [
                replace(e)
                for e in self.audit_log
                if user_id is None or e.user_id == user_id
            ]
        entries.reverse()
        return entries[:limit]

    def delete_audit_logs_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_log if e.created_at >= cutoff]
            removed = len(self.audit_log) - len(kept)
            if removed:
                self.audit_log = kept
                self._persist_state()
            return removed

    # -- lifecycle -------------------------------------------------------

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None

    # -- persistence -----------------------------------------------------

    @staticmethod
    def _serialize(obj: Any) -> dict:
        data = asdict(obj)
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
            elif isinstance(value, Enum):
                data[key] = value.value
        return data

    @staticmethod
    def _deserialize(cls: type, data: dict) -> Any:
        enum_fields = _ENUM_FIELDS.get(cls, {})
        values: Dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in data:
                continue
            raw = data[f.name]
            if f.name in enum_fields and raw is not None:
                raw = enum_fields[f.name](raw)
            elif isinstance(raw, str) and "datetime" in str(f.type):
                raw = datetime.fromisoformat(raw)
            values[f.name] = raw
        return cls(**values)

    def _persist_state(self) -> None:
        if self.state_path is None:
            return
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "refresh_sessions": [
                self._serialize(s) for s in self.refresh_sessions.values()
            ],
            "session_logs": [self._serialize(s) for s in self.session_logs.values()],
            "devices": [self._serialize(d) for d in self.devices.values()],
            "passkeys": [self._serialize(p) for p in self.passkeys.values()],
            "passkey_challenges": [
                self._serialize(c) for c in self.passkey_challenges.values()
            ],
            "audit_log": [self._serialize(e) for e in self.audit_log],
        }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.state_path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(self.state_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        if self.state_path is None:
            return False
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            u["id"]: self._deserialize(User, u) for u in data.get("users", [])
        }
        self.refresh_sessions = {
            s["id"]: self._deserialize(RefreshTokenSession, s)
            for s in data.get("refresh_sessions", [])
        }
        self.session_logs = {
            s["id"]: self._deserialize(SessionLog, s)
            for s in data.get("session_logs", [])
        }
        self.devices = {
            d["id"]: self._deserialize(TrustedDevice, d) for d in data.get("devices", [])
        }
        self.passkeys = {
            p["id"]: self._deserialize(PasskeyCredential, p)
            for p in data.get("passkeys", [])
        }
        self.passkey_challenges = {
            c["id"]: self._deserialize(PasskeyChallenge, c)
            for c in data.get("passkey_challenges", [])
        }
        self.audit_log = [
            self._deserialize(AuditLogEntry, e) for e in data.get("audit_log", [])
        ]
        self.logger.info("memory_state_loaded", users=len(self.users))
        return True
