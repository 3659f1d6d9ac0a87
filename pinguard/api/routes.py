from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request

from pinguard.api.schemas import (
    AuditEventResponse,
    AuditSearchRequest,
    BiometricChallengeRequest,
    BiometricChallengeResponse,
    BiometricEnrollRequest,
    BiometricLoginRequest,
    DeviceResponse,
    DeviceRevokeRequest,
    Envelope,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    PinChangeRequest,
    PinCheckRequest,
    PinCheckResponse,
    RefreshRequest,
    RefreshResponse,
    SessionSummary,
    SessionValidationResponse,
    UnlockRequest,
    UserSummary,
)
from pinguard.logging import get_logger
from pinguard.service.auth import AuthContext, LoginAttempt, LoginResult
from pinguard.service.biometric import BiometricType, PlatformReport
from pinguard.service.errors import (
    BiometricUnavailableError,
    NotFoundError,
    SessionInvalidError,
)
from pinguard.service.runtime import get_runtime
from pinguard.service.tokens import RequestContext
from pinguard.storage.models import (
    AuditQuery,
    DeviceRecord,
    MobileSession,
    ShiftWindow,
    TimeWindow,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _login_attempt(
    body: LoginRequest | BiometricLoginRequest, request: Request, *, pin: Optional[str] = None
) -> LoginAttempt:
    """Collect what the client reported into a ``LoginAttempt``."""
    location = body.location
    network = body.network
    shift = None
    if body.shift:
        shift = ShiftWindow(
            start=body.shift.start,
            end=body.shift.end,
            breaks=[TimeWindow(b.start, b.end) for b in body.shift.breaks],
            shift_id=body.shift.shift_id,
        )
    return LoginAttempt(
        identifier=body.identifier,
        pin=pin,
        device_fingerprint=body.device_fingerprint,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        session_type=body.session_type,
        restaurant_id=location.restaurant_id if location else None,
        latitude=location.latitude if location else None,
        longitude=location.longitude if location else None,
        workstation_id=location.workstation_id if location else None,
        wifi_ssid=location.wifi_ssid if location else None,
        connection_type=network.connection_type if network else "wifi",
        network_secure=network.is_secure if network else True,
        vpn_active=network.vpn_active if network else False,
        os_type=body.os_type,
        app_version=body.app_version,
        shift=shift,
    )


async def _principal(
    request: Request,
    authorization: Optional[str],
    fingerprint: Optional[str],
    *,
    required_scope: Optional[str] = None,
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(
        authorization,
        device_fingerprint=fingerprint,
        ip_address=_client_ip(request),
        required_scope=required_scope,
    )


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
) -> AuthContext:
    return await _principal(request, authorization, x_device_fingerprint, required_scope="read")


async def get_writer(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
) -> AuthContext:
    return await _principal(request, authorization, x_device_fingerprint, required_scope="write")


async def get_manager(principal: AuthContext = Depends(get_user)) -> AuthContext:
    get_runtime().auth.require_manager(principal)
    return principal


async def get_manager_writer(principal: AuthContext = Depends(get_writer)) -> AuthContext:
    get_runtime().auth.require_manager(principal)
    return principal


def _device_response(device: DeviceRecord) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        user_id=device.user_id,
        trust_state=device.trust_state.value,
        name=device.name,
        device_type=device.device_type,
        registered_at=device.registered_at,
        last_seen_at=device.last_seen_at,
        trusted_by=device.trusted_by,
    )


def _session_summary(session: MobileSession) -> SessionSummary:
    return SessionSummary(
        id=session.id,
        session_type=session.session_type.value,
        security_level=session.security_level.value,
        state=session.state.value,
        device_id=session.context.device.device_id,
        created_at=session.created_at,
        expires_at=session.expires_at,
        last_activity_at=session.last_activity_at,
        read_only=session.policy.read_only,
    )


def _login_response(result: LoginResult) -> LoginResponse:
    return LoginResponse(
        session_id=result.session_id,
        session_token=result.session_token,
        refresh_token=result.refresh_token,
        expires_at=result.expires_at,
        session_expires_at=result.session_expires_at,
        security_level=result.security_level,
        pin_change_required=result.pin_change_required,
        user=UserSummary(**result.user),
    )


def _managed_device(runtime, device_id: str, principal: AuthContext) -> DeviceRecord:
    """Managers only see devices of staff in their own restaurant."""
    device = runtime.devices.get_device(device_id)
    owner = runtime.store.get_user(device.user_id)
    if principal.role != "admin" and (owner is None or owner.restaurant_id != principal.restaurant_id):
        raise NotFoundError("device not found", detail={"device_id": device_id})
    return device


def _owned_session(runtime, session_id: str, principal: AuthContext) -> MobileSession:
    session = runtime.store.get_session(session_id)
    if session is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    if session.user_id != principal.user_id:
        if not principal.is_manager or (
            principal.role != "admin" and session.restaurant_id != principal.restaurant_id
        ):
            raise NotFoundError("session not found", detail={"session_id": session_id})
    return session


# ---------------------------------------------------------------------------
# Authentication entry points
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """PIN login from a trusted device.

    Raises:
        400: PIN is not four digits
        401: Invalid credentials
        403: Device not trusted for this account
        429: Lockout active; ``Retry-After`` is set
    """
    runtime = get_runtime()
    result = await runtime.auth.login(_login_attempt(body, request, pin=body.pin))
    return Envelope(status="ok", data=_login_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(
    body: RefreshRequest,
    request: Request,
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    """Exchange a refresh token for a new access token; failures require a full login."""
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(
        body.session_id,
        body.refresh_token,
        device_fingerprint=x_device_fingerprint,
        ip_address=_client_ip(request),
    )
    return Envelope(status="ok", data=RefreshResponse(**tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = body.session_token if body and body.session_token else runtime.auth.extract_bearer(authorization)
    if not token:
        raise SessionInvalidError("missing session token")
    ended = await runtime.auth.logout(token, ip_address=_client_ip(request))
    return Envelope(status="ok", data={"logged_out": True, "session_ended": ended})


@router.post("/auth/pin/check", response_model=Envelope, tags=["pin"])
async def check_pin(body: PinCheckRequest, principal: AuthContext = Depends(get_user)):
    """Score a candidate PIN against the policy without storing anything."""
    validation = get_runtime().pins.validate(body.pin)
    return Envelope(
        status="ok",
        data=PinCheckResponse(
            is_valid=validation.is_valid,
            strength=validation.strength.value if validation.strength else None,
            errors=validation.errors,
            suggestions=validation.suggestions,
        ),
    )


@router.post("/auth/pin/change", response_model=Envelope, tags=["pin"])
async def change_pin(body: PinChangeRequest, principal: AuthContext = Depends(get_writer)):
    runtime = get_runtime()
    credential = await runtime.auth.change_pin(
        principal, body.current_pin, body.new_pin, body.confirm_pin
    )
    return Envelope(
        status="ok",
        data={"changed_at": credential.changed_at.isoformat(), "strength": credential.strength},
    )


# ---------------------------------------------------------------------------
# Biometrics
# ---------------------------------------------------------------------------


@router.post("/auth/biometric/challenge", response_model=Envelope, tags=["biometric"])
async def biometric_challenge(
    body: BiometricChallengeRequest,
    request: Request,
    authorization: Optional[str] = Header(None),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    """Issue a single-use challenge; enrollment needs a session, login needs identifier and device."""
    runtime = get_runtime()
    if body.purpose == "enroll":
        principal = await _principal(
            request, authorization, x_device_fingerprint, required_scope="write"
        )
        challenge = await runtime.biometrics.begin(principal.user_id, principal.device_id, "enroll")
    else:
        if not body.identifier or not body.device_fingerprint:
            raise BiometricUnavailableError("identifier and device are required")
        challenge = await runtime.auth.begin_biometric(
            body.identifier, body.device_fingerprint, "authenticate"
        )
    return Envelope(
        status="ok",
        data=BiometricChallengeResponse(
            challenge=challenge.challenge,
            expires_at=challenge.expires_at,
            purpose=challenge.purpose,
        ),
    )


@router.post("/auth/biometric/enroll", response_model=Envelope, tags=["biometric"])
async def biometric_enroll(
    body: BiometricEnrollRequest, principal: AuthContext = Depends(get_writer)
):
    runtime = get_runtime()
    platform = None
    if body.platform:
        platform = PlatformReport(
            hardware_supported=body.platform.hardware_supported,
            permissions_granted=body.platform.permissions_granted,
            supported_types=[BiometricType(t) for t in body.platform.supported_types],
        )
    result = await runtime.auth.enroll_biometric(
        principal,
        pin=body.pin,
        challenge=body.challenge,
        credential_id=body.credential_id,
        public_key_pem=body.public_key_pem,
        signature=body.signature,
        biometric_type=body.biometric_type,
        platform=platform,
    )
    return Envelope(
        status="ok",
        data={
            "enrollment_id": result.enrollment_id,
            "biometric_type": result.biometric_type.value,
            "device_id": result.device_id,
        },
    )


@router.post("/auth/biometric/login", response_model=Envelope, tags=["biometric"])
async def biometric_login(body: BiometricLoginRequest, request: Request):
    """Biometric login; any failure answers ``biometric_failed`` with ``fallback_to_pin``."""
    runtime = get_runtime()
    result = await runtime.auth.biometric_login(
        _login_attempt(body, request),
        challenge=body.challenge,
        credential_id=body.credential_id,
        signature=body.signature,
        confidence=body.confidence,
    )
    return Envelope(status="ok", data=_login_response(result))


@router.delete("/auth/biometric", response_model=Envelope, tags=["biometric"])
async def biometric_disable(principal: AuthContext = Depends(get_writer)):
    removed = await get_runtime().biometrics.disable(
        principal.user_id, principal.device_id, actor_id=principal.user_id
    )
    return Envelope(status="ok", data={"removed": removed})


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    sessions = get_runtime().sessions.list_user_sessions(principal.user_id)
    return Envelope(status="ok", data=[_session_summary(s) for s in sessions])


@router.post("/sessions/{session_id}/validate", response_model=Envelope, tags=["sessions"])
async def validate_session(
    request: Request,
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
    x_device_fingerprint: Optional[str] = Header(None, alias="X-Device-Fingerprint"),
):
    runtime = get_runtime()
    session = _owned_session(runtime, session_id, principal)
    request_ctx = None
    if session.user_id == principal.user_id:
        # Only the owner's own request says anything about the session's device
        request_ctx = RequestContext(
            device_id=principal.device_id,
            fingerprint=x_device_fingerprint,
            ip_address=_client_ip(request),
        )
    validation = await runtime.sessions.validate_session(session_id, request_ctx)
    return Envelope(
        status="ok",
        data=SessionValidationResponse(
            valid=validation.valid,
            session_id=validation.session_id,
            security_score=validation.security_score,
            risk_factors=validation.risk_factors,
            recommendations=validation.recommendations,
            actions=validation.actions,
            compliance={
                "passed": validation.compliance.passed,
                "violations": validation.compliance.violations,
                "warnings": validation.compliance.warnings,
            },
            terminated=validation.terminated,
        ),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def terminate_session(
    session_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    _owned_session(runtime, session_id, principal)
    reason = "user_terminated" if session_id == principal.session_id else "manager_terminated"
    ended = await runtime.sessions.terminate(session_id, reason, actor_id=principal.user_id)
    return Envelope(status="ok", data={"terminated": ended})


# ---------------------------------------------------------------------------
# Devices (operator)
# ---------------------------------------------------------------------------


@router.get("/devices", response_model=Envelope, tags=["devices"])
async def list_my_devices(principal: AuthContext = Depends(get_user)):
    devices = get_runtime().devices.list_user_devices(principal.user_id)
    return Envelope(status="ok", data=[_device_response(d) for d in devices])


@router.get("/users/{user_id}/devices", response_model=Envelope, tags=["devices"])
async def list_user_devices(
    user_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_manager),
):
    runtime = get_runtime()
    owner = runtime.store.get_user(user_id)
    if owner is None or (principal.role != "admin" and owner.restaurant_id != principal.restaurant_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    devices = runtime.devices.list_user_devices(user_id)
    return Envelope(status="ok", data=[_device_response(d) for d in devices])


@router.post("/devices/{device_id}/trust", response_model=Envelope, tags=["devices"])
async def trust_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_manager_writer),
):
    runtime = get_runtime()
    _managed_device(runtime, device_id, principal)
    device = await runtime.devices.trust_device(device_id, principal.user_id)
    return Envelope(status="ok", data=_device_response(device))


@router.post("/devices/{device_id}/revoke", response_model=Envelope, tags=["devices"])
async def revoke_device(
    body: DeviceRevokeRequest,
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_manager_writer),
):
    """Revoke trust and end every session currently running on the device."""
    runtime = get_runtime()
    _managed_device(runtime, device_id, principal)
    device = await runtime.devices.revoke_device(device_id, principal.user_id, body.reason)
    ended = await runtime.sessions.terminate_device_sessions(device_id, "device_revoked")
    return Envelope(status="ok", data={"device": _device_response(device), "sessions_ended": ended})


@router.delete("/devices/{device_id}", response_model=Envelope, tags=["devices"])
async def forget_device(
    device_id: str = Path(..., max_length=128),
    principal: AuthContext = Depends(get_manager_writer),
):
    runtime = get_runtime()
    _managed_device(runtime, device_id, principal)
    await runtime.sessions.terminate_device_sessions(device_id, "device_removed")
    removed = await runtime.devices.forget_device(device_id, principal.user_id)
    return Envelope(status="ok", data={"removed": removed})


# ---------------------------------------------------------------------------
# Lockouts and audit (operator)
# ---------------------------------------------------------------------------


@router.post("/admin/lockouts/unlock", response_model=Envelope, tags=["admin"])
async def unlock(body: UnlockRequest, principal: AuthContext = Depends(get_manager_writer)):
    runtime = get_runtime()
    key = runtime.lockout.key_for(body.identifier, body.device_fingerprint)
    cleared = await runtime.lockout.unlock(key, principal.user_id, body.reason)
    return Envelope(status="ok", data={"unlocked": cleared})


@router.post("/audit/search", response_model=Envelope, tags=["audit"])
async def search_audit(body: AuditSearchRequest, principal: AuthContext = Depends(get_manager)):
    runtime = get_runtime()
    await runtime.audit.flush()
    events = runtime.audit.search(
        AuditQuery(
            restaurant_id=principal.restaurant_id,
            user_id=body.user_id,
            event_types=body.event_types,
            severities=list(body.severities),
            resource_type=body.resource_type,
            resource_id=body.resource_id,
            date_from=body.date_from,
            date_to=body.date_to,
            limit=body.limit,
            offset=body.offset,
        )
    )
    return Envelope(
        status="ok",
        data=[
            AuditEventResponse(
                id=e.id,
                event_type=e.event_type,
                severity=e.severity,
                restaurant_id=e.restaurant_id,
                user_id=e.user_id,
                session_id=e.session_id,
                device_id=e.device_id,
                resource_type=e.resource_type,
                resource_id=e.resource_id,
                ip_address=e.ip_address,
                metadata=e.metadata,
                created_at=e.created_at,
            )
            for e in events
        ],
    )


@router.get("/audit/stats", response_model=Envelope, tags=["audit"])
async def audit_stats(
    days: int = Query(30, ge=1, le=365),
    principal: AuthContext = Depends(get_manager),
):
    runtime = get_runtime()
    await runtime.audit.flush()
    return Envelope(status="ok", data=runtime.audit.get_stats(principal.restaurant_id, days))
