from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from authkernel.logging import get_logger
from authkernel.service.store import CredentialStore
from authkernel.storage.models import AuditAction, AuditLogEntry, new_id, utcnow

logger = get_logger(__name__)


class AuditLogger:
    """Append-only recorder of security events.

    A failed write is logged and dropped; the calling security decision has
    already been made and must not be undone by the audit sink.
    """

    def __init__(
        self, store: CredentialStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def record(
        self,
        action: AuditAction,
        *,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[AuditLogEntry]:
        entry = AuditLogEntry(
            id=new_id(),
            action=action,
            user_id=user_id,
            metadata=metadata or None,
            ip_address=ip,
            user_agent=user_agent,
            created_at=self._clock(),
        )
        try:
            self.store.append_audit_log(entry)
        except Exception as exc:
            logger.error(
                "audit_log_write_failed",
                action=action.value,
                user_id=user_id,
                error=str(exc),
            )
            return None
        logger.info("audit_event", action=action.value, user_id=user_id)
        return entry

    def list_entries(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> List[AuditLogEntry]:
        return self.store.list_audit_logs(user_id=user_id, limit=limit)

    def prune(self, retention_days: int) -> int:
        """Delete entries older than the retention window."""
        cutoff = self._clock() - timedelta(days=retention_days)
        removed = self.store.delete_audit_logs_before(cutoff)
        logger.info("audit_log_pruned", removed=removed, cutoff=cutoff.isoformat())
        return removed
