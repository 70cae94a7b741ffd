from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Query, Request, Response

from authkernel.api.schemas import (
    DeviceResponse,
    Envelope,
    LoginRequest,
    MfaDisableRequest,
    MfaEnableRequest,
    MfaSetupResponse,
    MfaValidateRequest,
    PaginatedSessionLogs,
    PasskeyLoginFinishRequest,
    PasskeyLoginStartRequest,
    PasskeyOptionsResponse,
    PasskeyRegisterFinishRequest,
    PasskeyResponse,
    Pagination,
    SessionLogResponse,
    SessionLogStats,
    SessionResponse,
    TokenResponse,
)
from authkernel.logging import get_logger
from authkernel.service.auth import AuthContext
from authkernel.service.errors import InvalidOtp, InvalidRefreshToken
from authkernel.service.geo import GeoPoint
from authkernel.service.runtime import Runtime
from authkernel.service.sessions import TokenPair
from authkernel.storage.models import PasskeyCredential, SessionLog

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/auth"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_principal(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    ctx = runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid or expired access token", status_code=401)
    return ctx


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _set_refresh_cookie(
    response: Response, runtime: Runtime, tokens: TokenPair, now: datetime
) -> None:
    max_age = max(0, math.floor((tokens.refresh_expires_at - now).total_seconds()))
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=bool(runtime.settings.cookie_secure),
        samesite="lax",
        max_age=max_age,
        expires=tokens.refresh_expires_at,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_refresh_cookie(response: Response, runtime: Runtime) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        path=REFRESH_COOKIE_PATH,
        secure=bool(runtime.settings.cookie_secure),
        httponly=True,
        samesite="lax",
    )


def _token_body(user_id: str, tokens: TokenPair, **extra) -> TokenResponse:
    return TokenResponse(
        user_id=user_id,
        session_id=tokens.session_id,
        access_token=tokens.access_token,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        **extra,
    )


def _log_body(log: SessionLog) -> SessionLogResponse:
    return SessionLogResponse(
        id=log.id,
        device_info=log.device_info,
        ip_address=log.ip_address,
        location=log.location,
        is_active=log.is_active,
        login_at=log.login_at,
        logout_at=log.logout_at,
        revoked_at=log.revoked_at,
        revoked_by=log.revoked_by,
    )


# -- login / refresh / logout ----------------------------------------------


@router.post("/login", response_model=Envelope)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Password login.

    Returns the access token in the body and sets the refresh token as an
    httpOnly cookie scoped to ``/auth``. Locked accounts answer 403 with a
    ``Retry-After`` header.
    """
    point = (
        GeoPoint(body.location.latitude, body.location.longitude)
        if body.location
        else None
    )
    result = await runtime.auth.login(
        body.email,
        body.password,
        ip=_client_ip(request),
        user_agent=user_agent,
        location=point,
    )
    _set_refresh_cookie(response, runtime, result.tokens, runtime.clock())
    return Envelope(
        status="ok",
        data=_token_body(
            result.user_id,
            result.tokens,
            mfa_required=result.mfa_required,
            new_device=result.new_device,
        ),
    )


@router.post("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    if not refresh_token:
        raise InvalidRefreshToken("missing refresh token")
    tokens = await runtime.rotator.refresh(
        refresh_token, ip=_client_ip(request), user_agent=user_agent
    )
    _set_refresh_cookie(response, runtime, tokens, runtime.clock())
    return Envelope(status="ok", data=_token_body(tokens.user_id, tokens))


@router.post("/logout", response_model=Envelope)
async def logout(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None),
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Always succeeds; an unknown or stale cookie is simply cleared."""
    ended = False
    try:
        ended = await runtime.auth.logout(
            refresh_token, ip=_client_ip(request), user_agent=user_agent
        )
    except Exception as exc:
        logger.warning("logout_failed", error=str(exc))
    _clear_refresh_cookie(response, runtime)
    return Envelope(status="ok", data={"message": "logged out", "session_ended": ended})


# -- MFA --------------------------------------------------------------------


@router.post("/mfa/setup", response_model=Envelope)
async def mfa_setup(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    enrollment = runtime.mfa.setup_mfa(principal.user_id)
    return Envelope(
        status="ok",
        data=MfaSetupResponse(
            secret=enrollment.secret,
            otpauth_uri=enrollment.otpauth_uri,
            qr_code=enrollment.qr_code,
        ),
    )


@router.post("/mfa/enable", response_model=Envelope)
async def mfa_enable(
    body: MfaEnableRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.mfa.enable_mfa(principal.user_id, body.code, body.secret)
    return Envelope(status="ok", data={"mfa_enabled": True})


@router.post("/mfa/validate", response_model=Envelope)
async def mfa_validate(
    body: MfaValidateRequest,
    runtime: Runtime = Depends(get_runtime),
):
    if not await runtime.mfa.validate_mfa(body.user_id, body.code):
        raise _http_error("unauthorized", InvalidOtp.default_message, status_code=401)
    return Envelope(status="ok", data={"valid": True})


@router.post("/mfa/disable", response_model=Envelope)
async def mfa_disable(
    body: MfaDisableRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.mfa.disable_mfa(principal.user_id, body.code)
    return Envelope(status="ok", data={"mfa_enabled": False})


# -- passkeys ---------------------------------------------------------------


def _passkey_body(passkey: PasskeyCredential) -> PasskeyResponse:
    return PasskeyResponse(
        id=passkey.id,
        name=passkey.name,
        device_type=passkey.device_type,
        backed_up=passkey.backed_up,
        created_at=passkey.created_at,
        last_used=passkey.last_used,
    )


@router.post("/webauthn/register/start", response_model=Envelope)
async def passkey_register_start(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    challenge_id, options = runtime.passkeys.start_registration(principal.user_id)
    return Envelope(
        status="ok", data=PasskeyOptionsResponse(challenge_id=challenge_id, options=options)
    )


@router.post("/webauthn/register/finish", response_model=Envelope)
async def passkey_register_finish(
    body: PasskeyRegisterFinishRequest,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    passkey = runtime.passkeys.finish_registration(
        principal.user_id, body.challenge_id, body.credential, body.name
    )
    return Envelope(status="ok", data=_passkey_body(passkey))


@router.post("/webauthn/login/start", response_model=Envelope)
async def passkey_login_start(
    body: PasskeyLoginStartRequest,
    runtime: Runtime = Depends(get_runtime),
):
    challenge_id, options = runtime.passkeys.start_authentication(body.email)
    return Envelope(
        status="ok", data=PasskeyOptionsResponse(challenge_id=challenge_id, options=options)
    )


@router.post("/webauthn/login/finish", response_model=Envelope)
async def passkey_login_finish(
    body: PasskeyLoginFinishRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    """Passkey login; issues tokens the same way as password login."""
    point = (
        GeoPoint(body.location.latitude, body.location.longitude)
        if body.location
        else None
    )
    result = await runtime.auth.login_with_passkey(
        body.challenge_id,
        body.credential,
        ip=_client_ip(request),
        user_agent=user_agent,
        location=point,
    )
    _set_refresh_cookie(response, runtime, result.tokens, runtime.clock())
    return Envelope(
        status="ok",
        data=_token_body(result.user_id, result.tokens, new_device=result.new_device),
    )


@router.get("/webauthn/credentials", response_model=Envelope)
async def list_passkeys(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    passkeys = runtime.passkeys.list_passkeys(principal.user_id)
    return Envelope(status="ok", data=[_passkey_body(p) for p in passkeys])


@router.delete("/webauthn/credentials/{passkey_id}", response_model=Envelope)
async def delete_passkey(
    passkey_id: str,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.passkeys.delete_passkey(principal.user_id, passkey_id):
        raise _http_error("not_found", "passkey not found", status_code=404)
    return Envelope(status="ok", data={"deleted": passkey_id})


# -- sessions ---------------------------------------------------------------


@router.get("/sessions", response_model=Envelope)
async def list_sessions(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    rows = runtime.sessions.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            SessionResponse(
                id=row.id,
                created_at=row.created_at,
                last_active=row.last_active,
                expires_at=row.expires_at,
                ip_address=row.ip_address,
                user_agent=row.user_agent,
                current=row.id == principal.session_id,
            )
            for row in rows
        ],
    )


@router.delete("/sessions/{session_id}", response_model=Envelope)
async def revoke_session(
    session_id: str,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    if not runtime.sessions.revoke_session(principal.user_id, session_id):
        raise _http_error("forbidden", "session not found for this user", status_code=403)
    return Envelope(status="ok", data={"revoked": session_id})


@router.get("/session-logs", response_model=Envelope)
async def list_session_logs(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    logs, total = runtime.sessions.list_session_logs(principal.user_id, page, limit)
    return Envelope(
        status="ok",
        data=PaginatedSessionLogs(
            logs=[_log_body(log) for log in logs],
            pagination=Pagination(
                page=page, limit=limit, total=total, pages=math.ceil(total / limit)
            ),
        ),
    )


@router.get("/session-logs/stats/active", response_model=Envelope)
async def session_log_stats(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(
        status="ok",
        data=SessionLogStats(**runtime.sessions.session_log_stats(principal.user_id)),
    )


def _owned_log(runtime: Runtime, principal: AuthContext, log_id: str) -> SessionLog:
    try:
        log = runtime.sessions.get_session_log(principal.user_id, log_id)
    except PermissionError:
        raise _http_error("forbidden", "session log belongs to another user", status_code=403)
    if log is None:
        raise _http_error("not_found", "session log not found", status_code=404)
    return log


@router.get("/session-logs/{log_id}", response_model=Envelope)
async def get_session_log(
    log_id: str,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return Envelope(status="ok", data=_log_body(_owned_log(runtime, principal, log_id)))


@router.delete("/session-logs/{log_id}", response_model=Envelope)
async def revoke_session_log(
    log_id: str,
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    _owned_log(runtime, principal, log_id)
    revoked = runtime.sessions.revoke_session_log(principal.user_id, log_id)
    return Envelope(status="ok", data=_log_body(revoked) if revoked else None)


@router.get("/devices", response_model=Envelope)
async def list_devices(
    principal: AuthContext = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    devices = runtime.devices.list_devices(principal.user_id)
    return Envelope(
        status="ok",
        data=[
            DeviceResponse(
                id=d.id, name=d.name, last_used=d.last_used, created_at=d.created_at
            )
            for d in devices
        ],
    )
