from __future__ import annotations

from typing import Optional

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.errors import InvalidRefreshToken
from authkernel.service.sessions import SessionManager, TokenPair
from authkernel.storage.models import AuditAction

logger = get_logger(__name__)


class TokenRotator:
    """Single-use refresh-token exchange.

    The matched row is deleted before the replacement is minted and the
    delete only succeeds for one caller, so a token can be redeemed at most
    once even when two requests race with it.
    """

    def __init__(self, sessions: SessionManager, audit: Optional[AuditLogger] = None) -> None:
        self.sessions = sessions
        self.store = sessions.store
        self.audit = audit

    async def refresh(
        self,
        refresh_token: Optional[str],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> TokenPair:
        claims = self.sessions.refresh_signer.verify(refresh_token)
        if not claims:
            raise InvalidRefreshToken()
        user_id = claims["sub"]

        user = self.store.get_user(user_id)
        if user is None or not user.is_active:
            raise InvalidRefreshToken()

        row = await self.sessions.find_matching_session(user_id, refresh_token, claims)
        if row is None:
            logger.info("refresh_token_not_found", user_id=user_id)
            raise InvalidRefreshToken()

        if not self.store.delete_refresh_session(row.id):
            logger.warning("refresh_token_reuse_detected", user_id=user_id, session_id=row.id)
            raise InvalidRefreshToken()

        pair, new_row = await self.sessions.mint(
            user_id,
            ip=ip or row.ip_address,
            user_agent=user_agent or row.user_agent,
        )
        self.sessions.rekey_log(row.token_hash, new_row.token_hash)
        if self.audit:
            self.audit.record(
                AuditAction.TOKEN_REFRESHED,
                user_id=user_id,
                metadata={"previous_session_id": row.id, "session_id": new_row.id},
                ip=ip,
                user_agent=user_agent,
            )
        return pair
