from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from authkernel.config import Settings, get_settings
from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.auth import AuthService
from authkernel.service.devices import DeviceTracker
from authkernel.service.geo import GeoLocator
from authkernel.service.hashing import SecretHasher
from authkernel.service.lockout import LockoutPolicy
from authkernel.service.mfa import MfaManager
from authkernel.service.passkeys import PasskeyManager
from authkernel.service.reaper import IdleReaper
from authkernel.service.rotation import TokenRotator
from authkernel.service.sessions import SessionManager
from authkernel.service.store import CredentialStore
from authkernel.service.tokens import TokenSigner
from authkernel.storage.memory import MemoryStore
from authkernel.storage.models import utcnow

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_store(settings: Settings) -> CredentialStore:
    mfa_key = settings.mfa_encryption_key or settings.jwt_access_secret
    if settings.use_memory_store:
        return MemoryStore(settings.memory_state_path, mfa_encryption_key=mfa_key)
    # Imported lazily so memory-only deployments do not need libpq
    from authkernel.storage.postgres import PostgresStore

    logger.info("postgres_store_connecting", dsn=_mask_url_password(settings.database_url))
    return PostgresStore(settings.database_url, mfa_encryption_key=mfa_key)


class Runtime:
    """Explicitly constructed service graph shared by the request handlers.

    One instance is created per app; its store is closed on shutdown.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[CredentialStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
        geo: Optional[GeoLocator] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.clock = clock or utcnow
        s = self.settings
        logger.info(
            "runtime_init_started",
            app_env=s.app_env.value,
            use_memory_store=s.use_memory_store,
        )
        self.store = store if store is not None else build_store(s)

        leeway = timedelta(seconds=s.clock_skew_leeway_seconds)
        self.access_signer = TokenSigner(
            s.jwt_access_secret,
            token_type="access",
            ttl=timedelta(minutes=s.access_token_ttl_minutes),
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            leeway=leeway,
            clock=self.clock,
        )
        self.refresh_signer = TokenSigner(
            s.jwt_refresh_secret,
            token_type="refresh",
            ttl=timedelta(days=s.refresh_token_ttl_days),
            issuer=s.jwt_issuer,
            audience=s.jwt_audience,
            leeway=leeway,
            clock=self.clock,
        )
        self.hasher = SecretHasher(
            timeout_seconds=s.hash_timeout_seconds,
            time_cost=s.password_hash_time_cost,
            memory_cost=s.password_hash_memory_cost,
            parallelism=s.password_hash_parallelism,
        )
        self.geo = geo or GeoLocator(
            ip_lookup_url=s.geo_ip_lookup_url,
            reverse_lookup_url=s.geo_reverse_lookup_url,
            timeout_seconds=s.geo_timeout_seconds,
            enabled=s.geolocation_enabled,
        )
        self.audit = AuditLogger(self.store, clock=self.clock)
        self.devices = DeviceTracker(self.store, clock=self.clock)
        self.sessions = SessionManager(
            self.store,
            self.hasher,
            self.access_signer,
            self.refresh_signer,
            geo=self.geo,
            audit=self.audit,
            default_max_sessions=s.default_max_sessions,
            clock=self.clock,
        )
        self.rotator = TokenRotator(self.sessions, self.audit)
        self.mfa = MfaManager(
            self.store,
            audit=self.audit,
            issuer=s.mfa_issuer,
            window=s.totp_window,
            clock=self.clock,
        )
        self.passkeys = PasskeyManager(
            self.store,
            rp_id=s.webauthn_rp_id,
            rp_name=s.webauthn_rp_name,
            origin=s.webauthn_origin,
            challenge_ttl_seconds=s.webauthn_challenge_ttl_seconds,
            audit=self.audit,
            clock=self.clock,
        )
        self.auth = AuthService(
            self.store,
            self.hasher,
            self.sessions,
            lockout=LockoutPolicy(
                threshold=s.lockout_threshold,
                duration=timedelta(minutes=s.lockout_duration_minutes),
            ),
            devices=self.devices,
            passkeys=self.passkeys,
            audit=self.audit,
            clock=self.clock,
        )
        self.reaper = IdleReaper(
            self.sessions,
            self.audit,
            idle_after=timedelta(minutes=s.idle_session_minutes),
            interval_seconds=s.idle_reaper_interval_seconds,
            clock=self.clock,
        )
        logger.info("runtime_init_completed")

    async def close(self) -> None:
        await self.reaper.stop()
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("store_close_failed", error=str(exc))
