from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from ipaddress import ip_address, ip_network
from typing import Any, Dict, List, Optional, Protocol

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.biometric import BiometricService, PlatformReport
from pinguard.service.devices import DeviceRegistry
from pinguard.service.errors import (
    AuthenticationFailedError,
    BiometricFailedError,
    BiometricUnavailableError,
    DeviceNotAuthorizedError,
    ForbiddenError,
    InternalServiceError,
    InvalidCredentialError,
    InvalidCredentialFormatError,
    NotFoundError,
    RateLimitExceededError,
    ServiceError,
    SessionExpiredError,
    SessionInvalidError,
)
from pinguard.service.lockout import LockoutTracker
from pinguard.service.pin import PIN_ALGO, PinPolicy
from pinguard.service.sessions import SENSITIVE_ROLES, SessionOrchestrator
from pinguard.service.tokens import RequestContext, TokenEngine
from pinguard.storage.models import (
    BiometricState,
    DeviceInfo,
    DeviceRecord,
    LocationInfo,
    MobileContext,
    MobileSession,
    NetworkInfo,
    PinCredential,
    SessionType,
    ShiftWindow,
    TokenType,
    User,
)

logger = get_logger(__name__)


class AccountStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def get_pin_credential(self, user_id: str) -> Optional[PinCredential]: ...

    def save_pin_credential(
        self, user_id: str, pin_hash: str, *, algo: str, strength: str, changed_at: datetime
    ) -> PinCredential: ...

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None: ...

    def get_device(self, device_id: str) -> Optional[DeviceRecord]: ...

    def get_device_by_fingerprint(self, user_id: str, fingerprint: str) -> Optional[DeviceRecord]: ...

    def get_session(self, session_id: str) -> Optional[MobileSession]: ...


@dataclass
class LoginAttempt:
    """Everything the client reports alongside a PIN or biometric login."""

    identifier: str
    device_fingerprint: str
    pin: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_type: SessionType = SessionType.STANDARD
    restaurant_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    workstation_id: Optional[str] = None
    wifi_ssid: Optional[str] = None
    connection_type: str = "wifi"
    network_secure: bool = True
    vpn_active: bool = False
    os_type: str = "other"
    app_version: Optional[str] = None
    shift: Optional[ShiftWindow] = None


@dataclass
class LoginResult:
    session_id: str
    session_token: str
    refresh_token: str
    expires_at: datetime
    session_expires_at: datetime
    user: Dict[str, Any]
    security_level: str
    pin_change_required: bool = False
    tokens: Dict[str, str] = field(default_factory=dict)


@dataclass
class AuthContext:
    user_id: str
    role: str
    restaurant_id: str
    session_id: str
    token_id: str
    device_id: Optional[str] = None
    scope: List[str] = field(default_factory=list)
    read_only: bool = False

    @property
    def is_manager(self) -> bool:
        return self.role in SENSITIVE_ROLES


class AuthService:
    """Entry points for PIN login, refresh, logout and request authentication.

    Failures are recorded to the audit sink before they reach the caller and
    anything unexpected is converted to a generic ``internal_error``.
    """

    def __init__(
        self,
        store: AccountStore,
        settings: Settings,
        *,
        pins: PinPolicy,
        lockout: LockoutTracker,
        devices: DeviceRegistry,
        tokens: TokenEngine,
        sessions: SessionOrchestrator,
        biometrics: BiometricService,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.pins = pins
        self.lockout = lockout
        self.devices = devices
        self.tokens = tokens
        self.sessions = sessions
        self.biometrics = biometrics
        self.audit = audit

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _audit(self, event_type: AuditEventType, metadata: dict, **kwargs) -> None:
        if self.audit:
            await self.audit.log(event_type, metadata, **kwargs)

    @contextlib.asynccontextmanager
    async def _entry_point(self, operation: str, **audit_ctx):
        try:
            yield
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception("auth_entry_point_failed", operation=operation, error=str(exc))
            await self._audit(
                AuditEventType.PIN_AUTH_ERROR,
                {"operation": operation, "error_type": type(exc).__name__},
                **audit_ctx,
            )
            raise InternalServiceError("authentication service unavailable") from exc

    # context assembly ---------------------------------------------------

    def _network_trust(self, attempt: LoginAttempt) -> int:
        if attempt.ip_address and self.settings.trusted_networks:
            try:
                addr = ip_address(attempt.ip_address)
                if any(addr in ip_network(net, strict=False) for net in self.settings.trusted_networks):
                    return 100
            except ValueError:
                return 0
        score = 80
        if not attempt.network_secure:
            score -= 40
        if attempt.vpn_active:
            score -= 10
        if attempt.connection_type == "cellular":
            score -= 10
        return max(0, score)

    def build_context(self, user: User, attempt: LoginAttempt, device_id: str) -> MobileContext:
        restaurant_id = attempt.restaurant_id or user.restaurant_id
        # Location counts as verified only for the staff member's own site
        # and only when the client reports an on-premises signal
        verified = restaurant_id == user.restaurant_id and bool(
            attempt.wifi_ssid
            or attempt.workstation_id
            or (attempt.latitude is not None and attempt.longitude is not None)
        )
        return MobileContext(
            device=DeviceInfo(
                device_id=device_id,
                fingerprint=attempt.device_fingerprint,
                os_type=attempt.os_type,
                app_version=attempt.app_version,
                trusted=True,
            ),
            location=LocationInfo(
                restaurant_id=restaurant_id,
                verified=verified,
                latitude=attempt.latitude,
                longitude=attempt.longitude,
                workstation_id=attempt.workstation_id,
                wifi_ssid=attempt.wifi_ssid,
            ),
            shift=attempt.shift,
            network=NetworkInfo(
                connection_type=attempt.connection_type,
                is_secure=attempt.network_secure,
                vpn_active=attempt.vpn_active,
                trust_score=self._network_trust(attempt),
                ip_address=attempt.ip_address,
            ),
            user_agent=attempt.user_agent,
        )

    @staticmethod
    def _user_payload(user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "role": user.role,
            "restaurant_id": user.restaurant_id,
            "display_name": user.display_name,
        }

    # login --------------------------------------------------------------

    async def _check_lockout(self, key: str, attempt: LoginAttempt) -> None:
        status = await self.lockout.check(key)
        if status.allowed:
            return
        await self._audit(
            AuditEventType.PIN_RATE_LIMIT_EXCEEDED,
            {"failed_attempts": status.attempts, "retry_after": status.retry_after},
            ip_address=attempt.ip_address,
            user_agent=attempt.user_agent,
        )
        raise RateLimitExceededError(
            "too many failed attempts", retry_after=status.retry_after
        )

    async def _require_trusted_device(self, user: User, attempt: LoginAttempt) -> str:
        validation = await self.devices.validate_or_register(
            user.id,
            attempt.device_fingerprint,
            user_agent=attempt.user_agent,
            ip_address=attempt.ip_address,
            restaurant_id=user.restaurant_id,
        )
        if not validation.trusted:
            raise DeviceNotAuthorizedError(
                "device is not trusted for this account",
                detail={"device_id": validation.device_id, "reason": validation.reason},
            )
        return validation.device_id

    async def _open_session(
        self,
        user: User,
        attempt: LoginAttempt,
        device_id: str,
        *,
        login_method: str,
        biometric: Optional[BiometricState] = None,
    ) -> LoginResult:
        context = self.build_context(user, attempt, device_id)
        if biometric is not None:
            context.biometric = biometric
        grant = await self.sessions.create_session(
            user.id,
            context.location.restaurant_id,
            user.role,
            attempt.session_type,
            context,
            login_method=login_method,
        )
        self.store.update_last_login(user.id, self._now())
        access = grant.tokens[TokenType.ACCESS.value]
        refresh = grant.tokens[TokenType.REFRESH.value]
        return LoginResult(
            session_id=grant.session.id,
            session_token=access.value,
            refresh_token=refresh.value,
            expires_at=access.expires_at,
            session_expires_at=grant.session.expires_at,
            user=self._user_payload(user),
            security_level=grant.session.security_level.value,
            tokens={kind: token.value for kind, token in grant.tokens.items()},
        )

    async def login(self, attempt: LoginAttempt) -> LoginResult:
        """PIN login.

        Order matters: lockout is checked before any hashing, the account and
        PIN are checked before the device so an unknown device never learns
        whether the PIN was right, and the failure counter is only reset once
        a session is about to be issued.
        """

        audit_ctx = {"ip_address": attempt.ip_address, "user_agent": attempt.user_agent}
        async with self._entry_point("login", **audit_ctx):
            key = self.lockout.key_for(attempt.identifier, attempt.device_fingerprint)
            await self._check_lockout(key, attempt)
            if not self.pins.is_well_formed(attempt.pin):
                raise InvalidCredentialFormatError("PIN must be exactly 4 digits")

            user = self.store.get_user_by_identifier(attempt.identifier)
            credential = self.store.get_pin_credential(user.id) if user and user.is_active else None
            if credential is None:
                self.pins.dummy_verify()
                verified = False
            else:
                verified = self.pins.verify(attempt.pin, credential.pin_hash)
            if not verified:
                status = await self.lockout.record_failure(
                    key,
                    ip=attempt.ip_address,
                    user_agent=attempt.user_agent,
                    user_id=user.id if user else None,
                    restaurant_id=user.restaurant_id if user else None,
                )
                await self._audit(
                    AuditEventType.PIN_AUTH_FAILURE,
                    {
                        "failed_attempts": status.attempts,
                        "remaining_attempts": status.remaining_attempts,
                    },
                    user_id=user.id if user else None,
                    restaurant_id=user.restaurant_id if user else None,
                    **audit_ctx,
                )
                raise AuthenticationFailedError("invalid credentials")

            device_id = await self._require_trusted_device(user, attempt)
            await self.lockout.record_success(key)
            if self.pins.needs_rehash(credential.pin_hash):
                self.store.save_pin_credential(
                    user.id,
                    self.pins.hash(attempt.pin),
                    algo=PIN_ALGO,
                    strength=credential.strength,
                    changed_at=credential.changed_at,
                )
            result = await self._open_session(user, attempt, device_id, login_method="pin")
            result.pin_change_required = self.pins.is_expired(credential.changed_at)
            logger.info("pin_login_succeeded", user_id=user.id, session_id=result.session_id)
            await self._audit(
                AuditEventType.PIN_AUTH_SUCCESS,
                {"session_type": attempt.session_type.value},
                user_id=user.id,
                restaurant_id=user.restaurant_id,
                session_id=result.session_id,
                device_id=device_id,
                **audit_ctx,
            )
            return result

    # biometric login ----------------------------------------------------

    async def begin_biometric(
        self, identifier: str, device_fingerprint: str, purpose: str = "authenticate"
    ):
        user = self.store.get_user_by_identifier(identifier)
        device = (
            self.store.get_device_by_fingerprint(user.id, device_fingerprint) if user else None
        )
        if device is None or not device.is_trusted:
            raise BiometricUnavailableError("biometric login is not available on this device")
        return await self.biometrics.begin(user.id, device.id, purpose)

    async def biometric_login(
        self,
        attempt: LoginAttempt,
        *,
        challenge: str,
        credential_id: str,
        signature: str,
        confidence: float = 1.0,
    ) -> LoginResult:
        audit_ctx = {"ip_address": attempt.ip_address, "user_agent": attempt.user_agent}
        async with self._entry_point("biometric_login", **audit_ctx):
            key = self.lockout.key_for(attempt.identifier, attempt.device_fingerprint)
            await self._check_lockout(key, attempt)
            # Challenges are single-use; refuse an unusable request before spending one
            self.sessions.require_shift(attempt.session_type, attempt.shift, self._now())
            user = self.store.get_user_by_identifier(attempt.identifier)
            if user is None or not user.is_active:
                raise BiometricFailedError(
                    "biometric login failed", detail={"fallback_to_pin": True}
                )
            device_id = await self._require_trusted_device(user, attempt)
            outcome = await self.biometrics.authenticate(
                user.id,
                device_id,
                challenge=challenge,
                credential_id=credential_id,
                signature=signature,
                confidence=confidence,
                restaurant_id=user.restaurant_id,
                ip_address=attempt.ip_address,
            )
            if not outcome.success:
                raise BiometricFailedError(
                    "biometric login failed",
                    detail={"fallback_to_pin": True, "reason": outcome.error},
                )
            state = BiometricState(
                enabled=True,
                last_auth_at=outcome.timestamp,
                method=outcome.biometric_type.value,
                confidence=outcome.confidence,
            )
            result = await self._open_session(
                user, attempt, device_id, login_method="biometric", biometric=state
            )
            logger.info("biometric_login_succeeded", user_id=user.id, session_id=result.session_id)
            return result

    async def enroll_biometric(
        self,
        ctx: AuthContext,
        *,
        pin: str,
        challenge: str,
        credential_id: str,
        public_key_pem: str,
        signature: str,
        biometric_type: str,
        platform: Optional[PlatformReport] = None,
    ):
        """Enroll the session's device after re-confirming the PIN."""

        await self._confirm_pin(ctx, pin, "biometric_enrollment")
        return await self.biometrics.enroll(
            ctx.user_id,
            ctx.device_id,
            challenge=challenge,
            credential_id=credential_id,
            public_key_pem=public_key_pem,
            signature=signature,
            biometric_type=biometric_type,
            pin_verified_at=self._now(),
            platform=platform,
            restaurant_id=ctx.restaurant_id,
        )

    # session entry points -----------------------------------------------

    async def refresh(
        self,
        session_id: str,
        refresh_token: str,
        *,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Dict[str, Optional[str]]:
        async with self._entry_point("refresh", session_id=session_id, ip_address=ip_address):
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionInvalidError("session is not active")
            request = RequestContext(
                device_id=self._device_id_for(session.user_id, device_fingerprint),
                fingerprint=device_fingerprint,
                ip_address=ip_address,
            )
            result = await self.sessions.refresh(session_id, refresh_token, request)
            return {
                "access_token": result.access_token.value,
                "refresh_token": result.refresh_token.value if result.refresh_token else None,
                "expires_at": result.access_token.expires_at.isoformat(),
            }

    async def logout(self, session_token: str, *, ip_address: Optional[str] = None) -> bool:
        """End the session a token belongs to; an unknown token is a no-op."""

        async with self._entry_point("logout", ip_address=ip_address):
            claims = self.tokens.decode(session_token)
            if not claims:
                return False
            session = self.store.get_session(claims["sid"])
            ended = await self.sessions.terminate(claims["sid"], "logout", actor_id=claims["sub"])
            if ended and session:
                await self._audit(
                    AuditEventType.USER_LOGOUT,
                    {"session_type": session.session_type.value},
                    user_id=session.user_id,
                    restaurant_id=session.restaurant_id,
                    session_id=session.id,
                    device_id=session.context.device.device_id,
                    ip_address=ip_address,
                )
            return ended

    def _device_id_for(self, user_id: str, fingerprint: Optional[str]) -> Optional[str]:
        if not fingerprint:
            return None
        device = self.store.get_device_by_fingerprint(user_id, fingerprint)
        return device.id if device else None

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        device_fingerprint: Optional[str] = None,
        ip_address: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        required_scope: Optional[str] = None,
        required_role: Optional[str] = None,
    ) -> AuthContext:
        """Resolve a bearer access token into an :class:`AuthContext` or raise."""

        token_value = self.extract_bearer(authorization)
        if not token_value:
            raise SessionInvalidError("missing bearer token")
        async with self._entry_point("authenticate", ip_address=ip_address):
            claims = self.tokens.decode(token_value)
            if not claims:
                raise SessionInvalidError("invalid token")
            session = self.store.get_session(claims["sid"])
            if session is None or not session.is_active:
                raise SessionInvalidError("session is not active")
            reason = self.sessions.expiry_reason(session, self._now())
            if reason:
                await self.sessions.terminate(session.id, reason)
                raise SessionExpiredError("session expired", detail={"reason": reason})
            if session.policy.read_only and required_scope == "write":
                raise ForbiddenError("session is restricted to read-only access")
            request = self.sessions.request_context(
                session,
                RequestContext(
                    device_id=self._device_id_for(session.user_id, device_fingerprint),
                    fingerprint=device_fingerprint,
                    ip_address=ip_address,
                    latitude=latitude,
                    longitude=longitude,
                    required_scope=required_scope,
                ),
            )
            validation = await self.tokens.validate(
                token_value, request, expected_type=TokenType.ACCESS
            )
            validation.raise_for_failure()
            if required_role and session.role != required_role and session.role != "admin":
                raise ForbiddenError("insufficient role")
            await self.sessions.record_activity(session.id)
            token = validation.token
            return AuthContext(
                user_id=session.user_id,
                role=session.role,
                restaurant_id=session.restaurant_id,
                session_id=session.id,
                token_id=token.id,
                device_id=session.context.device.device_id,
                scope=list(token.scope),
                read_only=session.policy.read_only,
            )

    @staticmethod
    def extract_bearer(authorization: Optional[str]) -> Optional[str]:
        if not authorization:
            return None
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() != "bearer" or not value.strip():
            return None
        return value.strip()

    # credential management ----------------------------------------------

    async def _confirm_pin(self, ctx: AuthContext, pin: str, operation: str) -> PinCredential:
        """Re-check the caller's PIN under the same lockout key as login."""

        user = self.store.get_user(ctx.user_id)
        device = self.store.get_device(ctx.device_id) if ctx.device_id else None
        if user is None or device is None:
            raise SessionInvalidError("session no longer maps to an account device")
        key = self.lockout.key_for(user.identifier, device.fingerprint)
        status = await self.lockout.check(key)
        if not status.allowed:
            await self._audit(
                AuditEventType.PIN_RATE_LIMIT_EXCEEDED,
                {
                    "operation": operation,
                    "failed_attempts": status.attempts,
                    "retry_after": status.retry_after,
                },
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                restaurant_id=ctx.restaurant_id,
            )
            raise RateLimitExceededError("too many failed attempts", retry_after=status.retry_after)

        credential = self.store.get_pin_credential(ctx.user_id)
        if credential is None or not self.pins.verify(pin, credential.pin_hash):
            status = await self.lockout.record_failure(
                key, user_id=ctx.user_id, restaurant_id=ctx.restaurant_id
            )
            await self._audit(
                AuditEventType.PIN_AUTH_FAILURE,
                {
                    "operation": operation,
                    "failed_attempts": status.attempts,
                    "remaining_attempts": status.remaining_attempts,
                },
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                restaurant_id=ctx.restaurant_id,
            )
            raise AuthenticationFailedError("invalid credentials")
        await self.lockout.record_success(key)
        return credential

    async def change_pin(
        self, ctx: AuthContext, current_pin: str, new_pin: str, confirm_pin: str
    ) -> PinCredential:
        await self._confirm_pin(ctx, current_pin, "pin_change")
        validation = self.pins.validate_change(current_pin, new_pin, confirm_pin)
        if not validation.is_valid:
            raise InvalidCredentialError(
                "new PIN rejected",
                detail={"errors": validation.errors, "suggestions": validation.suggestions},
            )
        updated = self.store.save_pin_credential(
            ctx.user_id,
            self.pins.hash(new_pin),
            algo=PIN_ALGO,
            strength=validation.strength.value,
            changed_at=self._now(),
        )
        logger.info("pin_changed", user_id=ctx.user_id)
        await self._audit(
            AuditEventType.PIN_CHANGED,
            {"strength": validation.strength.value},
            user_id=ctx.user_id,
            session_id=ctx.session_id,
            restaurant_id=ctx.restaurant_id,
        )
        return updated

    async def set_pin(self, user_id: str, pin: str, *, actor_id: Optional[str] = None) -> PinCredential:
        """Administrative PIN assignment; the policy still applies."""

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        validation = self.pins.validate(pin)
        digest = self.pins.hash(pin)
        credential = self.store.save_pin_credential(
            user_id,
            digest,
            algo=PIN_ALGO,
            strength=validation.strength.value,
            changed_at=self._now(),
        )
        await self._audit(
            AuditEventType.PIN_CHANGED,
            {"strength": validation.strength.value, "actor_id": actor_id or user_id},
            user_id=user_id,
            restaurant_id=user.restaurant_id,
        )
        return credential

    @staticmethod
    def require_manager(ctx: AuthContext) -> None:
        if not ctx.is_manager:
            raise ForbiddenError("manager role required")
