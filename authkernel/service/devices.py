"""Device recognition for login activity.

The fingerprint is a heuristic derived from the user-agent string and the
client IP. Shared NAT, proxy rotation or a browser update all change or
collide it, so it is used to recognise returning devices and flag new ones,
never to authorize anything.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from typing import Callable, List, Optional

from user_agents import parse as parse_user_agent

from authkernel.logging import get_logger
from authkernel.service.store import CredentialStore
from authkernel.storage.models import TrustedDevice, utcnow

logger = get_logger(__name__)

_MAX_NAME_LENGTH = 120


def fingerprint(user_agent: Optional[str], ip: Optional[str]) -> str:
    raw = f"{user_agent or ''}|{ip or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def _version_label(family: str, version: tuple) -> str:
    version_str = ".".join(str(v) for v in version[:2] if v is not None)
    return f"{family} {version_str}" if version_str else family


def describe_user_agent(user_agent: Optional[str]) -> str:
    """Human-readable device summary such as ``Chrome 120 on Windows 10``."""
    if not user_agent:
        return "Unknown device"
    try:
        parsed = parse_user_agent(user_agent)
        browser = _version_label(parsed.browser.family, parsed.browser.version)
        os_name = _version_label(parsed.os.family, parsed.os.version)
        summary = f"{browser} on {os_name}"
        if parsed.is_mobile and parsed.device.family not in ("Other", "Generic Smartphone"):
            summary = f"{summary} ({parsed.device.family})"
        return summary[:_MAX_NAME_LENGTH]
    except Exception as exc:
        logger.warning("user_agent_parse_failed", error=str(exc))
        return user_agent[:_MAX_NAME_LENGTH]


class DeviceTracker:
    def __init__(
        self, store: CredentialStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def fingerprint(self, user_agent: Optional[str], ip: Optional[str]) -> str:
        return fingerprint(user_agent, ip)

    def record_activity(self, user_id: str, device_id: str, display_name: str) -> bool:
        """Upsert the trusted device; returns True when the device is new."""
        device, created = self.store.upsert_trusted_device(
            user_id, device_id, display_name, self._clock()
        )
        if created:
            logger.info(
                "new_device_detected",
                user_id=user_id,
                device_id=device.id,
                device_name=display_name,
            )
        return created

    async def record_login(
        self, user_id: str, ip: Optional[str], user_agent: Optional[str]
    ) -> bool:
        """Record the device behind a successful login.

        Skipped without a user-agent. Failures are logged and reported as
        "not new" so the login itself is never affected.
        """
        if not user_agent:
            return False
        try:
            return self.record_activity(
                user_id,
                self.fingerprint(user_agent, ip),
                describe_user_agent(user_agent),
            )
        except Exception as exc:
            logger.warning("device_tracking_failed", user_id=user_id, error=str(exc))
            return False

    def list_devices(self, user_id: str) -> List[TrustedDevice]:
        return self.store.list_trusted_devices(user_id)
