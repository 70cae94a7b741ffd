from __future__ import annotations

import asyncio
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from authkernel.logging import get_logger

logger = get_logger(__name__)


class SecretHasher:
    """argon2id hashing for passwords and refresh-token secrets.

    The primitive is CPU bound, so both operations run in a worker thread and
    are bounded by ``timeout_seconds``. A timeout propagates to the caller as
    ``asyncio.TimeoutError``.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._hasher = hasher or PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    def hash_sync(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify_sync(self, secret: str, digest: Optional[str]) -> bool:
        if not digest:
            return False
        try:
            return self._hasher.verify(digest, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("secret_hash_invalid")
            return False

    async def hash(self, secret: str) -> str:
        return await self._bounded(self.hash_sync, secret)

    async def verify(self, secret: str, digest: Optional[str]) -> bool:
        return await self._bounded(self.verify_sync, secret, digest)

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True

    async def _bounded(self, func, *args):
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args), self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("secret_hash_timeout", timeout=self.timeout_seconds)
            raise
