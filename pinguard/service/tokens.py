from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from ipaddress import ip_address, ip_network
from typing import Any, Dict, List, Optional

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.errors import (
    SessionExpiredError,
    SessionInvalidError,
    TokenRevokedError,
    UsageExhaustedError,
    ValidationError,
)
from pinguard.service.locks import AsyncKeyedLock
from pinguard.storage.models import (
    BiometricBinding,
    DeviceBinding,
    LocationBinding,
    MobileSession,
    MobileToken,
    SecurityLevel,
    SessionType,
    TokenRestrictions,
    TokenState,
    TokenType,
    new_id,
)

logger = get_logger(__name__)

# Expired token rows are kept this long for forensics before deletion
EXPIRED_TOKEN_GRACE = timedelta(hours=24)

_EARTH_RADIUS_METERS = 6_371_000

_DEFAULT_SCOPES = {
    TokenType.ACCESS: ["read", "write"],
    TokenType.REFRESH: ["refresh"],
    TokenType.DEVICE: ["device"],
    TokenType.LOCATION: ["location"],
    TokenType.BIOMETRIC: ["biometric"],
    TokenType.SHIFT: ["shift"],
}

_CHECK_PENALTIES = {
    "device_binding": 30,
    "location_binding": 25,
    "biometric_binding": 20,
    "time_window": 15,
    "ip_restriction": 25,
    "scope": 20,
}

_MITIGATIONS = {
    "device_binding": "reauthenticate_from_bound_device",
    "location_binding": "verify_location",
    "biometric_binding": "biometric_step_up",
    "time_window": "retry_within_allowed_window",
    "ip_restriction": "connect_from_trusted_network",
    "scope": "request_additional_scope",
}


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * _EARTH_RADIUS_METERS * math.asin(math.sqrt(a))


@dataclass
class RequestContext:
    """What the current request claims about its origin."""

    device_id: Optional[str] = None
    fingerprint: Optional[str] = None
    ip_address: Optional[str] = None
    restaurant_id: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    biometric_at: Optional[datetime] = None
    required_scope: Optional[str] = None
    role: Optional[str] = None


@dataclass
class TokenRisk:
    score: int = 0
    factors: List[str] = field(default_factory=list)
    mitigation: List[str] = field(default_factory=list)


@dataclass
class TokenValidation:
    valid: bool
    token: Optional[MobileToken] = None
    remaining_seconds: int = 0
    usage_remaining: Optional[int] = None
    checks: Dict[str, bool] = field(default_factory=dict)
    risk: TokenRisk = field(default_factory=TokenRisk)
    error: Optional[str] = None

    def raise_for_failure(self) -> None:
        """Map a failed validation onto the caller-facing error taxonomy."""

        if self.valid:
            return
        if self.error == "expired":
            raise SessionExpiredError("token expired")
        if self.error == "revoked":
            raise TokenRevokedError("token revoked")
        if self.error == "usage_exhausted":
            raise UsageExhaustedError("token usage cap reached")
        raise SessionInvalidError(
            "token failed validation", detail={"reason": self.error, "checks": self.checks}
        )


@dataclass
class RefreshResult:
    access_token: MobileToken
    refresh_token: Optional[MobileToken] = None


class TokenEngine:
    """Mints, validates and revokes the per-session token family.

    Each token value is an HS256 JWS over the full claim set; the server keeps
    a matching record keyed by ``jti`` holding state, usage and bindings.
    Signature verification guards the claims, the record guards lifecycle.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        cache=None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.cache = cache
        self.audit = audit
        self._session_locks = AsyncKeyedLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # signing ------------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, value: str) -> Optional[Dict[str, Any]]:
        """Verify signature, algorithm, issuer and audience; expiry is checked on the record."""

        try:
            header_b64, payload_b64, sig_b64 = value.split(".")
        except (AttributeError, ValueError):
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("token_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("token_invalid_algorithm")
            return None
        expected = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        if payload.get("aud") != self.settings.jwt_audience:
            return None
        if not payload.get("jti"):
            return None
        return payload

    # minting ------------------------------------------------------------

    def _lifetime(self, token_type: TokenType, session: MobileSession, now: datetime) -> timedelta:
        if token_type == TokenType.SHIFT:
            return session.context.shift.end - now
        seconds = {
            TokenType.ACCESS: self.settings.access_token_ttl_seconds,
            TokenType.REFRESH: self.settings.refresh_token_ttl_seconds,
            TokenType.DEVICE: self.settings.device_token_ttl_seconds,
            TokenType.LOCATION: self.settings.location_token_ttl_seconds,
            TokenType.BIOMETRIC: self.settings.biometric_token_ttl_seconds,
        }[token_type]
        return timedelta(seconds=seconds)

    @staticmethod
    def initial_risk(session: MobileSession) -> TokenRisk:
        """Risk carried by the context a token is minted into (0 is clean)."""

        context = session.context
        risk = TokenRisk()
        signals = [
            (not context.device.trusted, 30, "untrusted_device"),
            (not context.network.is_secure, 25, "insecure_network"),
            (context.network.trust_score < 50, 20, "low_network_trust"),
            (not context.location.verified, 15, "unverified_location"),
            (context.network.vpn_active, 10, "vpn_active"),
        ]
        for present, weight, name in signals:
            if present:
                risk.score += weight
                risk.factors.append(name)
        risk.score = max(0, min(100, risk.score))
        return risk

    def can_mint(self, token_type: TokenType, session: MobileSession, now: Optional[datetime] = None) -> bool:
        context = session.context
        now = now or self._now()
        if token_type == TokenType.LOCATION:
            return context.location.verified
        if token_type == TokenType.BIOMETRIC:
            return context.biometric.enabled
        if token_type == TokenType.SHIFT:
            shift = context.shift
            return (
                session.session_type == SessionType.SHIFT_BASED
                and shift is not None
                and shift.active
                and shift.end > now
            )
        return True

    def mint(
        self,
        token_type: TokenType,
        session: MobileSession,
        *,
        scope: Optional[List[str]] = None,
        max_usage: Optional[int] = None,
    ) -> MobileToken:
        now = self._now()
        if not self.can_mint(token_type, session, now):
            raise ValidationError(
                "session context lacks the binding this token requires",
                detail={"token_type": token_type.value},
            )
        context = session.context
        expires_at = now + self._lifetime(token_type, session, now)
        if token_type == TokenType.REFRESH and max_usage is None:
            max_usage = self.settings.max_refresh_count

        location_binding = None
        if context.location.verified:
            location_binding = LocationBinding(
                restaurant_id=context.location.restaurant_id,
                radius_meters=self.settings.location_radius_meters,
                latitude=context.location.latitude,
                longitude=context.location.longitude,
            )
        biometric_binding = None
        if context.biometric.enabled:
            biometric_binding = BiometricBinding(
                required=session.policy.biometric_required,
                method=context.biometric.method or "fingerprint",
                last_auth_at=context.biometric.last_auth_at or now,
                confidence=context.biometric.confidence or 0.0,
            )
        restrictions = TokenRestrictions(
            ip_allowlist=(
                list(self.settings.trusted_networks)
                if session.security_level.rank >= SecurityLevel.HIGH.rank
                else []
            ),
            time_windows=list(session.policy.time_restrictions),
            feature_flags=["read_only"] if session.policy.read_only else [],
            role_gates=[session.role],
        )
        risk = self.initial_risk(session)
        token_id = new_id()
        token_scope = list(scope or _DEFAULT_SCOPES[token_type])
        claims = {
            "jti": token_id,
            "sub": session.user_id,
            "sid": session.id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
            "typ": token_type.value,
            "scope": token_scope,
            "did": context.device.device_id,
            "dfp": context.device.fingerprint,
            "rid": session.restaurant_id,
            "stype": session.session_type.value,
            "lvl": session.security_level.value,
        }
        token = MobileToken(
            id=token_id,
            token_type=token_type,
            value=self._encode_jwt(claims),
            session_id=session.id,
            subject=session.user_id,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            security_level=session.security_level,
            issued_at=now,
            expires_at=expires_at,
            device_binding=DeviceBinding(
                device_id=context.device.device_id,
                fingerprint=context.device.fingerprint,
                hardware_attestation=context.device.hardware_attestation,
            ),
            scope=token_scope,
            max_usage=max_usage,
            location_binding=location_binding,
            biometric_binding=biometric_binding,
            restrictions=restrictions,
            risk_score=risk.score,
            meta={"risk_factors": risk.factors},
        )
        self.store.save_token(token)
        return token

    def mint_session_tokens(self, session: MobileSession) -> Dict[str, MobileToken]:
        """Mint every token type the session context supports."""

        scope = ["read"] if session.policy.read_only else None
        tokens: Dict[str, MobileToken] = {}
        now = self._now()
        for token_type in TokenType:
            if not self.can_mint(token_type, session, now):
                continue
            token_scope = scope if token_type == TokenType.ACCESS else None
            tokens[token_type.value] = self.mint(token_type, session, scope=token_scope)
        return tokens

    # validation ---------------------------------------------------------

    async def _is_denylisted(self, jti: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_revoked(jti)
        except Exception as exc:
            # Unknown revocation status is treated as revoked
            logger.warning("token_denylist_check_failed", error=str(exc))
            return True

    def _run_checks(
        self, token: MobileToken, context: RequestContext, now: datetime
    ) -> Dict[str, bool]:
        binding = token.device_binding
        checks = {
            "device_binding": bool(
                context.device_id == binding.device_id
                and context.fingerprint
                and hmac.compare_digest(context.fingerprint.encode(), binding.fingerprint.encode())
            ),
            "location_binding": True,
            "biometric_binding": True,
            "time_window": True,
            "ip_restriction": True,
            "scope": True,
        }
        location = token.location_binding
        if location:
            within = context.restaurant_id == location.restaurant_id
            if within and location.latitude is not None and location.longitude is not None:
                within = (
                    context.latitude is not None
                    and context.longitude is not None
                    and haversine_meters(
                        location.latitude, location.longitude, context.latitude, context.longitude
                    )
                    <= location.radius_meters
                )
            checks["location_binding"] = within
        biometric = token.biometric_binding
        if biometric and biometric.required:
            last_auth = max(filter(None, [context.biometric_at, biometric.last_auth_at]))
            checks["biometric_binding"] = now - last_auth <= timedelta(
                seconds=self.settings.biometric_token_ttl_seconds
            )
        windows = token.restrictions.time_windows
        if windows:
            checks["time_window"] = any(window.contains(now) for window in windows)
        allowlist = token.restrictions.ip_allowlist
        if allowlist:
            allowed = False
            if context.ip_address:
                try:
                    addr = ip_address(context.ip_address)
                    allowed = any(addr in ip_network(net, strict=False) for net in allowlist)
                except ValueError:
                    allowed = False
            checks["ip_restriction"] = allowed
        if context.required_scope:
            checks["scope"] = context.required_scope in token.scope
        if token.restrictions.role_gates and context.role:
            checks["scope"] = checks["scope"] and context.role in token.restrictions.role_gates
        return checks

    async def validate(
        self,
        value: str,
        context: RequestContext,
        *,
        consume: bool = True,
        expected_type: Optional[TokenType] = None,
    ) -> TokenValidation:
        claims = self.decode(value)
        if claims is None:
            return TokenValidation(valid=False, error="invalid_signature")
        token = self.store.get_token(claims["jti"])
        if token is None or not hmac.compare_digest(token.value.encode(), value.encode()):
            return TokenValidation(valid=False, error="unknown_token")
        if expected_type and token.token_type != expected_type:
            return TokenValidation(valid=False, token=token, error="wrong_token_type")

        now = self._now()
        if token.state == TokenState.REVOKED or await self._is_denylisted(token.id):
            return TokenValidation(valid=False, token=token, error="revoked")
        if token.state == TokenState.EXPIRED or token.expires_at <= now:
            self.store.set_token_state(token.id, TokenState.EXPIRED)
            return TokenValidation(valid=False, token=token, error="expired")
        if token.state == TokenState.USAGE_EXHAUSTED or token.usage_remaining() == 0:
            self.store.set_token_state(token.id, TokenState.USAGE_EXHAUSTED)
            return TokenValidation(valid=False, token=token, error="usage_exhausted")

        checks = self._run_checks(token, context, now)
        risk = TokenRisk(score=100)
        for name, passed in checks.items():
            if not passed:
                risk.score -= _CHECK_PENALTIES[name]
                risk.factors.append(f"{name}_failed")
                risk.mitigation.append(_MITIGATIONS[name])
        risk.score = max(0, min(100, risk.score))
        valid = all(checks.values()) and risk.score >= self.settings.session_validity_threshold

        result = TokenValidation(
            valid=valid,
            token=token,
            remaining_seconds=max(0, int((token.expires_at - now).total_seconds())),
            usage_remaining=token.usage_remaining(),
            checks=checks,
            risk=risk,
            error=None if valid else "binding_check_failed",
        )
        if valid and consume:
            updated = self.store.consume_token_use(token.id, now)
            if updated is None:
                # Lost a race for the final use
                return TokenValidation(valid=False, token=token, error="usage_exhausted")
            if updated.usage_remaining() == 0:
                self.store.set_token_state(updated.id, TokenState.USAGE_EXHAUSTED)
            result.token = updated
            result.usage_remaining = updated.usage_remaining()
        if not valid:
            logger.info(
                "token_validation_failed",
                token_type=token.token_type.value,
                session_id=token.session_id,
                factors=risk.factors,
            )
        return result

    # refresh / revoke ---------------------------------------------------

    async def refresh(
        self, session: MobileSession, refresh_value: str, context: RequestContext
    ) -> RefreshResult:
        """Mint a new access token; critical sessions also rotate the refresh token."""

        async with self._session_locks.hold(session.id):
            validation = await self.validate(
                refresh_value, context, expected_type=TokenType.REFRESH
            )
            validation.raise_for_failure()
            old_refresh = validation.token
            if old_refresh.session_id != session.id:
                raise SessionInvalidError("refresh token belongs to another session")
            access = self.mint(
                TokenType.ACCESS,
                session,
                scope=["read"] if session.policy.read_only else None,
            )
            rotated = None
            if session.security_level == SecurityLevel.CRITICAL:
                rotated = self.mint(TokenType.REFRESH, session)
                await self.revoke(old_refresh.id, reason="rotated")
        if self.audit:
            await self.audit.log(
                AuditEventType.TOKEN_REFRESHED,
                {"rotated": rotated is not None, "security_level": session.security_level.value},
                restaurant_id=session.restaurant_id,
                user_id=session.user_id,
                session_id=session.id,
                device_id=session.context.device.device_id,
            )
        return RefreshResult(access_token=access, refresh_token=rotated)

    async def revoke(self, token_id: str, reason: Optional[str] = None) -> bool:
        """Revoke permanently; returns False when already terminal or unknown."""

        token = self.store.get_token(token_id)
        if token is None:
            return False
        changed = self.store.set_token_state(token_id, TokenState.REVOKED)
        remaining = int((token.expires_at - self._now()).total_seconds())
        if self.cache and remaining > 0:
            try:
                await self.cache.mark_token_revoked(token_id, remaining)
            except Exception as exc:
                logger.warning("token_denylist_write_failed", token_id=token_id, error=str(exc))
        if changed:
            logger.info(
                "token_revoked", token_id=token_id, token_type=token.token_type.value, reason=reason
            )
        return changed

    async def revoke_session_tokens(self, session_id: str, reason: Optional[str] = None) -> int:
        revoked = 0
        for token in self.store.list_session_tokens(session_id):
            if await self.revoke(token.id, reason=reason):
                revoked += 1
        if revoked and self.audit:
            await self.audit.log(
                AuditEventType.TOKEN_REVOKED,
                {"revoked": revoked, "reason": reason},
                session_id=session_id,
            )
        return revoked

    def cleanup_expired_tokens(self) -> int:
        removed = self.store.delete_tokens_expired_before(self._now() - EXPIRED_TOKEN_GRACE)
        if removed:
            logger.info("tokens_purged", removed=removed)
        return removed
