from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.devices import describe_user_agent
from authkernel.service.errors import InvalidCredentials
from authkernel.service.geo import GeoLocator, GeoPoint
from authkernel.service.hashing import SecretHasher
from authkernel.service.store import CredentialStore
from authkernel.service.tokens import TokenSigner
from authkernel.storage.models import (
    AuditAction,
    RefreshTokenSession,
    SessionLog,
    new_id,
    utcnow,
)

logger = get_logger(__name__)

MAX_LOG_PAGE_SIZE = 100


@dataclass(frozen=True)
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    session_id: str


class SessionManager:
    """Creates, lists and ends refresh-token sessions.

    Each live refresh token has exactly one ``RefreshTokenSession`` row holding
    its argon2 hash. A ``SessionLog`` row shares that hash and records the
    human-readable history; it is advisory, so its writes never fail the
    caller.
    """

    def __init__(
        self,
        store: CredentialStore,
        hasher: SecretHasher,
        access_signer: TokenSigner,
        refresh_signer: TokenSigner,
        *,
        geo: Optional[GeoLocator] = None,
        audit: Optional[AuditLogger] = None,
        default_max_sessions: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.access_signer = access_signer
        self.refresh_signer = refresh_signer
        self.geo = geo
        self.audit = audit
        self.default_max_sessions = default_max_sessions
        self._clock = clock

    # -- creation ----------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        location: Optional[GeoPoint] = None,
    ) -> TokenPair:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentials()
        limit = max(1, user.max_sessions or self.default_max_sessions)

        pair, row = await self.mint(user_id, ip=ip, user_agent=user_agent)
        # Trim after the insert: concurrent logins each count their own row
        self._enforce_limit(user_id, limit, keep=row.id)
        await self._open_session_log(row, location)
        if self.store.get_refresh_session(row.id) is None:
            # A concurrent login evicted this row before its log was opened
            self._close_logs([row.token_hash])
        return pair

    def _enforce_limit(self, user_id: str, limit: int, keep: str) -> None:
        rows = self.store.list_refresh_sessions(user_id)
        excess = len(rows) - limit
        if excess <= 0:
            return
        oldest = [row for row in rows if row.id != keep][:excess]
        self._evict(user_id, oldest)

    def _evict(self, user_id: str, rows: List[RefreshTokenSession]) -> None:
        removed = self.store.delete_refresh_sessions([row.id for row in rows])
        if not removed:
            return
        self._close_logs(row.token_hash for row in removed)
        logger.info("sessions_evicted", user_id=user_id, count=len(removed))
        if self.audit:
            self.audit.record(
                AuditAction.SESSION_EVICTED,
                user_id=user_id,
                metadata={"session_ids": [row.id for row in removed]},
            )

    async def mint(
        self,
        user_id: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[TokenPair, RefreshTokenSession]:
        """Issue a token pair and persist the hashed refresh row."""
        now = self._clock()
        session_id = new_id()
        refresh = self.refresh_signer.issue(user_id, session_id=session_id)
        access = self.access_signer.issue(user_id, session_id=session_id)
        token_hash = await self.hasher.hash(refresh.token)
        row = self.store.add_refresh_session(
            RefreshTokenSession(
                id=session_id,
                user_id=user_id,
                token_hash=token_hash,
                expires_at=refresh.expires_at,
                created_at=now,
                last_active=now,
                ip_address=ip,
                user_agent=user_agent,
            )
        )
        pair = TokenPair(
            user_id=user_id,
            access_token=access.token,
            refresh_token=refresh.token,
            access_expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            session_id=session_id,
        )
        return pair, row

    async def _open_session_log(
        self, row: RefreshTokenSession, point: Optional[GeoPoint]
    ) -> Optional[SessionLog]:
        try:
            location = None
            if self.geo is not None:
                location = await self.geo.locate(row.ip_address, point)
            elif point is not None:
                location = point.label()
            return self.store.create_session_log(
                SessionLog(
                    id=new_id(),
                    user_id=row.user_id,
                    session_token=row.token_hash,
                    device_info=describe_user_agent(row.user_agent),
                    ip_address=row.ip_address,
                    location=location,
                    login_at=row.created_at,
                )
            )
        except Exception as exc:
            logger.warning(
                "session_log_create_failed", user_id=row.user_id, error=str(exc)
            )
            return None

    # -- lookup and termination -------------------------------------------

    async def find_matching_session(
        self, user_id: str, refresh_token: str, claims: Dict[str, Any]
    ) -> Optional[RefreshTokenSession]:
        """Locate the live row whose hash matches ``refresh_token``.

        Tokens carrying ``sid`` need one lookup and one hash check; older
        tokens without it fall back to scanning every unexpired row.
        """
        now = self._clock()
        sid = claims.get("sid")
        if sid:
            row = self.store.get_refresh_session(sid)
            candidates = (
                [row] if row and row.user_id == user_id and row.expires_at > now else []
            )
        else:
            candidates = self.store.list_refresh_sessions(user_id, active_at=now)
        for row in candidates:
            if await self.hasher.verify(refresh_token, row.token_hash):
                return row
        return None

    async def end_session(self, refresh_token: Optional[str]) -> Optional[RefreshTokenSession]:
        """Logout. Returns the ended row, or None when nothing matched."""
        claims = self.refresh_signer.verify(refresh_token)
        if not claims:
            return None
        row = await self.find_matching_session(claims["sub"], refresh_token, claims)
        if row is None:
            return None
        if not self.store.delete_refresh_session(row.id):
            return None
        self._close_logs([row.token_hash])
        return row

    def _close_logs(self, token_hashes: Iterable[str]) -> int:
        try:
            return self.store.close_session_logs(list(token_hashes), self._clock())
        except Exception as exc:
            logger.warning("session_log_close_failed", error=str(exc))
            return 0

    def rekey_log(self, old_token_hash: str, new_token_hash: str) -> bool:
        try:
            return self.store.rekey_session_log(old_token_hash, new_token_hash)
        except Exception as exc:
            logger.warning("session_log_rekey_failed", error=str(exc))
            return False

    def touch(self, session_id: str) -> bool:
        try:
            return self.store.touch_refresh_session(session_id, self._clock())
        except Exception as exc:
            logger.warning("session_touch_failed", session_id=session_id, error=str(exc))
            return False

    def list_sessions(self, user_id: str) -> List[RefreshTokenSession]:
        rows = self.store.list_refresh_sessions(user_id, active_at=self._clock())
        rows.sort(key=lambda row: row.last_active, reverse=True)
        return rows

    def revoke_session(
        self, user_id: str, session_id: str, revoked_by: Optional[str] = None
    ) -> bool:
        """Delete one of the user's own sessions; False if unknown or not owned."""
        row = self.store.get_refresh_session(session_id)
        if row is None or row.user_id != user_id:
            return False
        if not self.store.delete_refresh_session(row.id):
            return False
        now = self._clock()
        try:
            log = self.store.find_session_log_by_token(row.token_hash)
            if log is not None:
                self.store.revoke_session_log(log.id, now, revoked_by or user_id)
        except Exception as exc:
            logger.warning("session_log_revoke_failed", session_id=session_id, error=str(exc))
        if self.audit:
            self.audit.record(
                AuditAction.SESSION_REVOKED,
                user_id=user_id,
                metadata={"session_id": session_id},
            )
        return True

    # -- session logs ------------------------------------------------------

    def list_session_logs(
        self, user_id: str, page: int = 1, limit: int = 20
    ) -> Tuple[List[SessionLog], int]:
        page = max(1, page)
        limit = min(max(1, limit), MAX_LOG_PAGE_SIZE)
        logs = self.store.list_session_logs(
            user_id, limit=limit, offset=(page - 1) * limit
        )
        return logs, self.store.count_session_logs(user_id)

    def get_session_log(self, user_id: str, log_id: str) -> Optional[SessionLog]:
        """Return the log, None when unknown; PermissionError when not owned."""
        log = self.store.get_session_log(log_id)
        if log is None:
            return None
        if log.user_id != user_id:
            raise PermissionError("session log belongs to another user")
        return log

    def revoke_session_log(
        self, user_id: str, log_id: str, revoked_by: Optional[str] = None
    ) -> Optional[SessionLog]:
        log = self.get_session_log(user_id, log_id)
        if log is None:
            return None
        if log.is_active and log.session_token:
            self.store.delete_refresh_sessions_by_token_hash(log.session_token)
        revoked = self.store.revoke_session_log(
            log_id, self._clock(), revoked_by or user_id
        )
        if self.audit:
            self.audit.record(
                AuditAction.SESSION_REVOKED,
                user_id=user_id,
                metadata={"session_log_id": log_id},
            )
        return revoked

    def session_log_stats(self, user_id: str) -> Dict[str, int]:
        return {
            "active": self.store.count_session_logs(user_id, active_only=True),
            "total": self.store.count_session_logs(user_id),
        }

    # -- idle expiry -------------------------------------------------------

    def expire_idle_sessions(self, cutoff: datetime) -> List[RefreshTokenSession]:
        """Bulk-delete rows idle since before ``cutoff`` and close their logs."""
        idle = self.store.list_idle_refresh_sessions(cutoff)
        if not idle:
            return []
        # Logs first: if this raises, the rows survive and the next sweep retries
        self.store.close_session_logs([row.token_hash for row in idle], self._clock())
        return self.store.delete_refresh_sessions([row.id for row in idle])
