from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.sessions import SessionManager
from authkernel.storage.models import AuditAction, utcnow

logger = get_logger(__name__)


class IdleReaper:
    """Periodic sweep that expires refresh sessions nobody has used lately."""

    def __init__(
        self,
        sessions: SessionManager,
        audit: Optional[AuditLogger] = None,
        *,
        idle_after: timedelta = timedelta(minutes=8),
        interval_seconds: float = 60.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.audit = audit
        self.idle_after = idle_after
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    def run_once(self) -> int:
        cutoff = self._clock() - self.idle_after
        removed = self.sessions.expire_idle_sessions(cutoff)
        for row in removed:
            if self.audit:
                self.audit.record(
                    AuditAction.SESSION_EXPIRED,
                    user_id=row.user_id,
                    metadata={"session_id": row.id, "reason": "idle"},
                )
        if removed:
            logger.info("idle_sessions_reaped", count=len(removed), cutoff=cutoff.isoformat())
        return len(removed)

    async def run_forever(self) -> None:
        while True:
            try:
                await asyncio.to_thread(self.run_once)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("idle_reaper_failed", error=str(exc))
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self.run_forever())
            logger.info("idle_reaper_started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("idle_reaper_stopped")
