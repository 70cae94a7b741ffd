from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authkernel.logging import get_logger
from authkernel.storage.common import (
    MfaSecretCipher,
    ensure_aware,
    normalize_email,
    parse_json_meta,
)
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
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        lockout_until TIMESTAMPTZ,
        max_sessions INTEGER DEFAULT 5,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_secret TEXT,
        tenant_id TEXT NOT NULL DEFAULT 'public',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_active TIMESTAMPTZ NOT NULL DEFAULT now(),
        ip_address TEXT,
        user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_session_user_idx ON refresh_token_session (user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idle_idx ON refresh_token_session (last_active)",
    """
    CREATE TABLE IF NOT EXISTS session_log (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        session_token TEXT,
        device_info TEXT NOT NULL,
        ip_address TEXT,
        location TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        login_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        logout_at TIMESTAMPTZ,
        revoked_at TIMESTAMPTZ,
        revoked_by TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_log_token_idx ON session_log (session_token)",
    "CREATE INDEX IF NOT EXISTS session_log_user_idx ON session_log (user_id, login_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS trusted_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        fingerprint TEXT NOT NULL,
        name TEXT NOT NULL,
        last_used TIMESTAMPTZ NOT NULL DEFAULT now(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS passkey_credential (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        credential_id TEXT NOT NULL UNIQUE,
        public_key TEXT NOT NULL,
        sign_count BIGINT NOT NULL DEFAULT 0,
        transports JSONB,
        name TEXT NOT NULL,
        device_type TEXT,
        backed_up BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_used TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS passkey_challenge (
        id TEXT PRIMARY KEY,
        challenge TEXT NOT NULL,
        purpose TEXT NOT NULL,
        user_id TEXT REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS passkey_challenge_expiry_idx ON passkey_challenge (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        user_id TEXT,
        metadata JSONB,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at)",
)


class PostgresStore:
    """Postgres-backed credential store on a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        mfa_encryption_key: str,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self._mfa_cipher = MfaSecretCipher(mfa_encryption_key)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping -----------------------------------------------------

    def _row_to_user(self, row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row.get("password_hash"),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            lockout_until=ensure_aware(row.get("lockout_until")),
            max_sessions=row.get("max_sessions"),
            mfa_enabled=bool(row.get("mfa_enabled", False)),
            mfa_secret=self._mfa_cipher.decrypt(row.get("mfa_secret")),
            tenant_id=row.get("tenant_id") or "public",
            created_at=ensure_aware(row.get("created_at")) or utcnow(),
        )

    @staticmethod
    def _row_to_refresh_session(row: dict) -> RefreshTokenSession:
        return RefreshTokenSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token_hash=row["token_hash"],
            expires_at=ensure_aware(row["expires_at"]),
            created_at=ensure_aware(row["created_at"]),
            last_active=ensure_aware(row["last_active"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
        )

    @staticmethod
    def _row_to_session_log(row: dict) -> SessionLog:
        return SessionLog(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            session_token=row.get("session_token"),
            device_info=row.get("device_info") or "Unknown device",
            ip_address=row.get("ip_address"),
            location=row.get("location"),
            is_active=bool(row.get("is_active", False)),
            login_at=ensure_aware(row["login_at"]),
            logout_at=ensure_aware(row.get("logout_at")),
            revoked_at=ensure_aware(row.get("revoked_at")),
            revoked_by=row.get("revoked_by"),
        )

    @staticmethod
    def _row_to_device(row: dict) -> TrustedDevice:
        return TrustedDevice(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            fingerprint=row["fingerprint"],
            name=row["name"],
            last_used=ensure_aware(row["last_used"]),
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _row_to_passkey(row: dict) -> PasskeyCredential:
        transports = row.get("transports") or []
        if isinstance(transports, str):
            transports = json.loads(transports)
        return PasskeyCredential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            credential_id=row["credential_id"],
            public_key=row["public_key"],
            sign_count=int(row.get("sign_count") or 0),
            transports=list(transports),
            name=row.get("name") or "Passkey",
            device_type=row.get("device_type"),
            backed_up=bool(row.get("backed_up", False)),
            created_at=ensure_aware(row["created_at"]),
            last_used=ensure_aware(row.get("last_used")),
        )

    @staticmethod
    def _row_to_challenge(row: dict) -> PasskeyChallenge:
        return PasskeyChallenge(
            id=str(row["id"]),
            challenge=row["challenge"],
            purpose=ChallengePurpose(row["purpose"]),
            expires_at=ensure_aware(row["expires_at"]),
            user_id=row.get("user_id"),
            created_at=ensure_aware(row["created_at"]),
        )

    @staticmethod
    def _row_to_audit_entry(row: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=str(row["id"]),
            action=AuditAction(row["action"]),
            user_id=row.get("user_id"),
            metadata=parse_json_meta(row.get("metadata")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=ensure_aware(row["created_at"]),
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        status: AccountStatus = AccountStatus.ACTIVE,
        max_sessions: Optional[int] = 5,
        tenant_id: str = "public",
    ) -> User:
        user = User(
            id=new_id(),
            email=normalize_email(email),
            password_hash=password_hash,
            status=status,
            max_sessions=max_sessions,
            tenant_id=tenant_id,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, status, max_sessions, tenant_id, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.email,
                        password_hash,
                        status.value,
                        max_sessions,
                        tenant_id,
                        user.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )

    def set_user_status(self, user_id: str, status: AccountStatus) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET status = %s WHERE id = %s RETURNING *",
                (status.value, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def record_login_failure(
        self, user_id: str, failed_attempts: int, lockout_until: Optional[datetime]
    ) -> None:
        # Writes the value computed by the lockout policy; racing failures may undercount
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_attempts = %s, lockout_until = %s WHERE id = %s",
                (failed_attempts, lockout_until, user_id),
            )

    def reset_login_failures(self, user_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET failed_login_attempts = 0, lockout_until = NULL WHERE id = %s",
                (user_id,),
            )

    def set_mfa(self, user_id: str, *, enabled: bool, secret: Optional[str]) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET mfa_enabled = %s, mfa_secret = %s WHERE id = %s",
                (enabled, self._mfa_cipher.encrypt(secret), user_id),
            )

    # -- refresh sessions ------------------------------------------------

    def add_refresh_session(self, session: RefreshTokenSession) -> RefreshTokenSession:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token_session (id, user_id, token_hash, expires_at, created_at, last_active, ip_address, user_agent)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_hash,
                        session.expires_at,
                        session.created_at,
                        session.last_active,
                        session.ip_address,
                        session.user_agent,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_refresh_session(self, session_id: str) -> Optional[RefreshTokenSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_refresh_session(row) if row else None

    def list_refresh_sessions(
        self, user_id: str, *, active_at: Optional[datetime] = None
    ) -> List[RefreshTokenSession]:
        query = "SELECT * FROM refresh_token_session WHERE user_id = %s"
        params: list[Any] = [user_id]
        if active_at is not None:
            query += " AND expires_at > %s"
            params.append(active_at)
        query += " ORDER BY created_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_refresh_session(row) for row in rows]

    def delete_refresh_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token_session WHERE id = %s", (session_id,)
            )
            return cur.rowcount > 0

    def delete_refresh_sessions(
        self, session_ids: Iterable[str]
    ) -> List[RefreshTokenSession]:
        ids = list(session_ids)
        if not ids:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "DELETE FROM refresh_token_session WHERE id = ANY(%s) RETURNING *",
                (ids,),
            ).fetchall()
        return [self._row_to_refresh_session(row) for row in rows]

    def delete_refresh_sessions_by_token_hash(self, token_hash: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token_session WHERE token_hash = %s", (token_hash,)
            )
            return cur.rowcount

    def touch_refresh_session(self, session_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE refresh_token_session SET last_active = %s WHERE id = %s",
                (at, session_id),
            )
            return cur.rowcount > 0

    def list_idle_refresh_sessions(self, cutoff: datetime) -> List[RefreshTokenSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token_session WHERE last_active < %s",
                (cutoff,),
            ).fetchall()
        return [self._row_to_refresh_session(row) for row in rows]

    # -- session logs ----------------------------------------------------

    def create_session_log(self, log: SessionLog) -> SessionLog:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO session_log (id, user_id, session_token, device_info, ip_address, location, is_active, login_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    log.id,
                    log.user_id,
                    log.session_token,
                    log.device_info,
                    log.ip_address,
                    log.location,
                    log.is_active,
                    log.login_at,
                ),
            )
        return log

    def get_session_log(self, log_id: str) -> Optional[SessionLog]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_log WHERE id = %s", (log_id,)
            ).fetchone()
        return self._row_to_session_log(row) if row else None

    def find_session_log_by_token(self, token_hash: str) -> Optional[SessionLog]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_log WHERE session_token = %s AND is_active LIMIT 1",
                (token_hash,),
            ).fetchone()
        return self._row_to_session_log(row) if row else None

    def rekey_session_log(self, old_token_hash: str, new_token_hash: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE session_log SET session_token = %s WHERE session_token = %s AND is_active",
                (new_token_hash, old_token_hash),
            )
            return cur.rowcount > 0

    def close_session_logs(self, token_hashes: Iterable[str], at: datetime) -> int:
        hashes = list(token_hashes)
        if not hashes:
            return 0
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE session_log SET is_active = FALSE, logout_at = %s
                WHERE is_active AND session_token = ANY(%s)
                """,
                (at, hashes),
            )
            return cur.rowcount

    def revoke_session_log(
        self, log_id: str, at: datetime, revoked_by: Optional[str]
    ) -> Optional[SessionLog]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE session_log
                SET is_active = FALSE, revoked_at = %s, revoked_by = %s,
                    logout_at = COALESCE(logout_at, %s)
                WHERE id = %s
                RETURNING *
                """,
                (at, revoked_by, at, log_id),
            ).fetchone()
        return self._row_to_session_log(row) if row else None

    def list_session_logs(
        self, user_id: str, *, limit: int = 20, offset: int = 0
    ) -> List[SessionLog]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM session_log WHERE user_id = %s ORDER BY login_at DESC LIMIT %s OFFSET %s",
                (user_id, limit, offset),
            ).fetchall()
        return [self._row_to_session_log(row) for row in rows]

    def count_session_logs(self, user_id: str, *, active_only: bool = False) -> int:
        query = "SELECT COUNT(*) AS total FROM session_log WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        with self._connect() as conn:
            row = conn.execute(query, (user_id,)).fetchone()
        return int(row["total"]) if row else 0

    # -- trusted devices -------------------------------------------------

    def upsert_trusted_device(
        self, user_id: str, fingerprint: str, name: str, at: datetime
    ) -> Tuple[TrustedDevice, bool]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO trusted_device (id, user_id, fingerprint, name, last_used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, fingerprint) DO UPDATE
                    SET name = EXCLUDED.name, last_used = EXCLUDED.last_used
                    RETURNING *, (xmax = 0) AS inserted
                    """,
                    (new_id(), user_id, fingerprint, name, at, at),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("device user missing", {"user_id": user_id})
        return self._row_to_device(row), bool(row.get("inserted"))

    def list_trusted_devices(self, user_id: str) -> List[TrustedDevice]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM trusted_device WHERE user_id = %s ORDER BY last_used DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_device(row) for row in rows]

    # -- passkeys --------------------------------------------------------

    def add_passkey(self, credential: PasskeyCredential) -> PasskeyCredential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO passkey_credential (id, user_id, credential_id, public_key, sign_count, transports, name, device_type, backed_up, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        credential.credential_id,
                        credential.public_key,
                        credential.sign_count,
                        json.dumps(credential.transports),
                        credential.name,
                        credential.device_type,
                        credential.backed_up,
                        credential.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("passkey already registered", {"field": "credential_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("passkey user missing", {"user_id": credential.user_id})
        return credential

    def get_passkey(self, credential_id: str) -> Optional[PasskeyCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM passkey_credential WHERE credential_id = %s", (credential_id,)
            ).fetchone()
        return self._row_to_passkey(row) if row else None

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM passkey_credential WHERE user_id = %s ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [self._row_to_passkey(row) for row in rows]

    def update_passkey_usage(self, credential_id: str, sign_count: int, at: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE passkey_credential SET sign_count = %s, last_used = %s WHERE credential_id = %s",
                (sign_count, at, credential_id),
            )
            return cur.rowcount > 0

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM passkey_credential WHERE id = %s AND user_id = %s",
                (passkey_id, user_id),
            )
            return cur.rowcount > 0

    def save_passkey_challenge(self, challenge: PasskeyChallenge) -> PasskeyChallenge:
        with self._connect() as conn:
            conn.execute(
                "DELETE FROM passkey_challenge WHERE expires_at <= %s",
                (challenge.created_at,),
            )
            conn.execute(
                """
                INSERT INTO passkey_challenge (id, challenge, purpose, user_id, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (
                    challenge.id,
                    challenge.challenge,
                    challenge.purpose.value,
                    challenge.user_id,
                    challenge.expires_at,
                    challenge.created_at,
                ),
            )
        return challenge

    def consume_passkey_challenge(
        self, challenge_id: str, at: datetime
    ) -> Optional[PasskeyChallenge]:
        # Single use: the row is deleted before its expiry is checked
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM passkey_challenge WHERE id = %s RETURNING *", (challenge_id,)
            ).fetchone()
        if row is None:
            return None
        challenge = self._row_to_challenge(row)
        return challenge if challenge.expires_at > at else None

    # -- audit -----------------------------------------------------------

    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, action, user_id, metadata, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.user_id,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.ip_address,
                    entry.user_agent,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        query = "SELECT * FROM audit_log"
        params: list[Any] = []
        if user_id is not None:
            query += " WHERE user_id = %s"
            params.append(user_id)
        query += " ORDER BY created_at DESC LIMIT %s"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_audit_entry(row) for row in rows]

    def delete_audit_logs_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_log WHERE created_at < %s", (cutoff,))
            return cur.rowcount
