from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from webauthn import (
    generate_authentication_options,
    generate_registration_options,
    options_to_json,
    verify_authentication_response,
    verify_registration_response,
)
from webauthn.helpers import base64url_to_bytes, bytes_to_base64url
from webauthn.helpers.structs import (
    AuthenticatorSelectionCriteria,
    AuthenticatorTransport,
    PublicKeyCredentialDescriptor,
    ResidentKeyRequirement,
    UserVerificationRequirement,
)

from authkernel.logging import get_logger
from authkernel.service.audit import AuditLogger
from authkernel.service.errors import InvalidCredentials
from authkernel.service.store import CredentialStore
from authkernel.storage.common import normalize_email
from authkernel.storage.models import (
    AuditAction,
    ChallengePurpose,
    PasskeyChallenge,
    PasskeyCredential,
    new_id,
    utcnow,
)

logger = get_logger(__name__)


def _descriptor(passkey: PasskeyCredential) -> PublicKeyCredentialDescriptor:
    transports: List[AuthenticatorTransport] = []
    for value in passkey.transports:
        try:
            transports.append(AuthenticatorTransport(value))
        except ValueError:
            continue
    return PublicKeyCredentialDescriptor(
        id=base64url_to_bytes(passkey.credential_id),
        transports=transports or None,
    )


def _credential_id(credential: Dict[str, Any]) -> Optional[str]:
    if not isinstance(credential, dict):
        return None
    value = credential.get("rawId") or credential.get("id")
    return value if isinstance(value, str) and value else None


def _transports(credential: Dict[str, Any]) -> List[str]:
    response = credential.get("response")
    if not isinstance(response, dict):
        return []
    values = response.get("transports") or []
    return [str(value) for value in values if isinstance(value, str)]


class PasskeyManager:
    """WebAuthn passkey registration and assertion checks.

    Every ceremony starts by storing a single-use challenge with a TTL; the
    client echoes its ``challenge_id`` back on finish and the challenge is
    consumed whether or not verification succeeds.
    """

    def __init__(
        self,
        store: CredentialStore,
        *,
        rp_id: str = "localhost",
        rp_name: str = "AuthKernel",
        origin: str = "http://localhost:5173",
        challenge_ttl_seconds: int = 300,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.rp_id = rp_id
        self.rp_name = rp_name
        self.origin = origin
        self.challenge_ttl = timedelta(seconds=challenge_ttl_seconds)
        self.audit = audit
        self._clock = clock

    def _save_challenge(
        self, challenge: bytes, purpose: ChallengePurpose, user_id: Optional[str]
    ) -> str:
        now = self._clock()
        row = self.store.save_passkey_challenge(
            PasskeyChallenge(
                id=new_id(),
                challenge=bytes_to_base64url(challenge),
                purpose=purpose,
                user_id=user_id,
                expires_at=now + self.challenge_ttl,
                created_at=now,
            )
        )
        return row.id

    def _take_challenge(
        self, challenge_id: str, purpose: ChallengePurpose
    ) -> PasskeyChallenge:
        challenge = self.store.consume_passkey_challenge(challenge_id, self._clock())
        if challenge is None or challenge.purpose != purpose:
            logger.info("passkey_challenge_rejected", purpose=purpose.value)
            raise InvalidCredentials("passkey challenge expired or unknown")
        return challenge

    @property
    def _timeout_ms(self) -> int:
        return int(self.challenge_ttl.total_seconds() * 1000)

    # -- registration ------------------------------------------------------

    def start_registration(self, user_id: str) -> Tuple[str, Dict[str, Any]]:
        user = self.store.get_user(user_id)
        if user is None:
            raise InvalidCredentials()
        options = generate_registration_options(
            rp_id=self.rp_id,
            rp_name=self.rp_name,
            user_id=user.id.encode("utf-8"),
            user_name=user.email,
            timeout=self._timeout_ms,
            authenticator_selection=AuthenticatorSelectionCriteria(
                resident_key=ResidentKeyRequirement.PREFERRED,
                user_verification=UserVerificationRequirement.PREFERRED,
            ),
            exclude_credentials=[_descriptor(p) for p in self.store.list_passkeys(user.id)],
        )
        challenge_id = self._save_challenge(
            options.challenge, ChallengePurpose.REGISTRATION, user.id
        )
        logger.info("passkey_registration_started", user_id=user.id)
        return challenge_id, json.loads(options_to_json(options))

    def finish_registration(
        self,
        user_id: str,
        challenge_id: str,
        credential: Dict[str, Any],
        name: Optional[str] = None,
    ) -> PasskeyCredential:
        challenge = self._take_challenge(challenge_id, ChallengePurpose.REGISTRATION)
        if challenge.user_id != user_id:
            raise InvalidCredentials("passkey challenge belongs to another user")
        try:
            verified = verify_registration_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge.challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
            )
        except Exception as exc:
            logger.info("passkey_registration_rejected", user_id=user_id, error=str(exc))
            raise InvalidCredentials("passkey registration could not be verified")

        device_type = getattr(
            verified.credential_device_type, "value", verified.credential_device_type
        )
        passkey = self.store.add_passkey(
            PasskeyCredential(
                id=new_id(),
                user_id=user_id,
                credential_id=bytes_to_base64url(verified.credential_id),
                public_key=bytes_to_base64url(verified.credential_public_key),
                sign_count=verified.sign_count,
                transports=_transports(credential),
                name=(name or "").strip() or "Passkey",
                device_type=device_type,
                backed_up=bool(verified.credential_backed_up),
                created_at=self._clock(),
            )
        )
        if self.audit:
            self.audit.record(
                AuditAction.PASSKEY_REGISTERED,
                user_id=user_id,
                metadata={"passkey_id": passkey.id, "device_type": device_type},
            )
        return passkey

    # -- authentication ----------------------------------------------------

    def start_authentication(
        self, email: Optional[str] = None
    ) -> Tuple[str, Dict[str, Any]]:
        """Issue assertion options.

        With an email, the allow-list is narrowed to that user's passkeys;
        an unknown email gets an empty list so the answer does not reveal
        which accounts exist.
        """
        user = self.store.get_user_by_email(normalize_email(email)) if email else None
        allowed = self.store.list_passkeys(user.id) if user else []
        options = generate_authentication_options(
            rp_id=self.rp_id,
            timeout=self._timeout_ms,
            allow_credentials=[_descriptor(p) for p in allowed],
            user_verification=UserVerificationRequirement.PREFERRED,
        )
        challenge_id = self._save_challenge(
            options.challenge,
            ChallengePurpose.AUTHENTICATION,
            user.id if user else None,
        )
        return challenge_id, json.loads(options_to_json(options))

    def verify_authentication(
        self, challenge_id: str, credential: Dict[str, Any]
    ) -> PasskeyCredential:
        challenge = self._take_challenge(challenge_id, ChallengePurpose.AUTHENTICATION)
        credential_id = _credential_id(credential)
        passkey = self.store.get_passkey(credential_id) if credential_id else None
        if passkey is None:
            raise InvalidCredentials("unknown passkey")
        if challenge.user_id and challenge.user_id != passkey.user_id:
            raise InvalidCredentials("passkey does not belong to the requested account")
        try:
            verified = verify_authentication_response(
                credential=credential,
                expected_challenge=base64url_to_bytes(challenge.challenge),
                expected_rp_id=self.rp_id,
                expected_origin=self.origin,
                credential_public_key=base64url_to_bytes(passkey.public_key),
                credential_current_sign_count=passkey.sign_count,
            )
        except Exception as exc:
            logger.info(
                "passkey_assertion_rejected", user_id=passkey.user_id, error=str(exc)
            )
            raise InvalidCredentials("passkey assertion could not be verified")

        now = self._clock()
        self.store.update_passkey_usage(passkey.credential_id, verified.new_sign_count, now)
        return self.store.get_passkey(passkey.credential_id) or passkey

    # -- management --------------------------------------------------------

    def list_passkeys(self, user_id: str) -> List[PasskeyCredential]:
        return self.store.list_passkeys(user_id)

    def delete_passkey(self, user_id: str, passkey_id: str) -> bool:
        if not self.store.delete_passkey(user_id, passkey_id):
            return False
        if self.audit:
            self.audit.record(
                AuditAction.PASSKEY_REMOVED,
                user_id=user_id,
                metadata={"passkey_id": passkey_id},
            )
        return True
