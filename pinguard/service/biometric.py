from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import secrets
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.errors import (
    BiometricFailedError,
    BiometricUnavailableError,
    DeviceNotAuthorizedError,
    ForbiddenError,
)
from pinguard.storage.models import BiometricChallenge, BiometricEnrollment, new_id

logger = get_logger(__name__)

# PIN must have been verified this recently for an enrollment to proceed
ENROLL_PIN_MAX_AGE = timedelta(minutes=5)


class BiometricType(str, Enum):
    FINGERPRINT = "fingerprint"
    FACE_ID = "face-id"
    VOICE = "voice"
    IRIS = "iris"


_TYPE_SECURITY = {
    BiometricType.IRIS: "high",
    BiometricType.FACE_ID: "high",
    BiometricType.FINGERPRINT: "medium",
    BiometricType.VOICE: "medium",
}
_SECURITY_RANK = {"low": 0, "medium": 1, "high": 2}


@dataclass
class PlatformReport:
    """Biometric support as reported by the client platform."""

    hardware_supported: bool = False
    permissions_granted: bool = False
    supported_types: List[BiometricType] = field(default_factory=list)


@dataclass
class BiometricCapabilities:
    is_available: bool
    supported_types: List[BiometricType]
    is_enrolled: bool
    security_level: str
    hardware_supported: bool
    permissions_granted: bool


@dataclass
class BiometricEnrollmentResult:
    enrollment_id: str
    biometric_type: BiometricType
    device_id: str


@dataclass
class BiometricAuthResult:
    success: bool
    fallback_to_pin: bool
    biometric_type: Optional[BiometricType] = None
    confidence: Optional[float] = None
    device_id: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class BiometricAuthenticator(Protocol):
    """Platform capability surface; alternative negotiation backends implement this."""

    def capabilities(
        self, user_id: str, device_id: str, platform: Optional[PlatformReport] = None
    ) -> BiometricCapabilities: ...

    async def begin(self, user_id: str, device_id: str, purpose: str) -> BiometricChallenge: ...

    async def enroll(self, user_id: str, device_id: str, **kwargs) -> BiometricEnrollmentResult: ...

    async def authenticate(self, user_id: str, device_id: str, **kwargs) -> BiometricAuthResult: ...


def _b64decode(value: str) -> bytes:
    padding = "=" * (-len(value) % 4)
    return base64.urlsafe_b64decode(value + padding)


class BiometricService:
    """Challenge/response biometric factor bound to a trusted device.

    The device holds a P-256 key pair unlocked by the platform biometric
    prompt. Enrollment stores the public key (Fernet-encrypted) after the
    device proves possession by signing a server challenge; authentication
    repeats the signature check against a fresh single-use challenge.
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
        self._cipher = Fernet(
            self._derive_cipher_key(settings.biometric_encryption_key or settings.jwt_secret)
        )
        self._challenges: Dict[str, BiometricChallenge] = {}
        self._state_lock = threading.Lock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _timeout(self, purpose: str) -> int:
        if purpose == "enroll":
            return self.settings.biometric_enroll_timeout_seconds
        return self.settings.biometric_auth_timeout_seconds

    # capability ---------------------------------------------------------

    def capabilities(
        self, user_id: str, device_id: str, platform: Optional[PlatformReport] = None
    ) -> BiometricCapabilities:
        platform = platform or PlatformReport()
        types = list(platform.supported_types)
        available = platform.hardware_supported and bool(types)
        enrolled = bool(self.store.list_biometric_enrollments(user_id, device_id))
        level = max(
            (_TYPE_SECURITY[t] for t in types), key=_SECURITY_RANK.__getitem__, default="low"
        )
        return BiometricCapabilities(
            is_available=available,
            supported_types=types,
            is_enrolled=available and enrolled,
            security_level=level,
            hardware_supported=platform.hardware_supported,
            permissions_granted=platform.permissions_granted,
        )

    def should_offer(
        self, user_id: str, device_id: str, platform: Optional[PlatformReport] = None
    ) -> bool:
        caps = self.capabilities(user_id, device_id, platform)
        return caps.is_available and caps.permissions_granted and caps.is_enrolled

    # challenges ---------------------------------------------------------

    async def begin(self, user_id: str, device_id: str, purpose: str) -> BiometricChallenge:
        if purpose not in {"enroll", "authenticate"}:
            raise ValueError(f"unknown biometric purpose: {purpose}")
        ttl = self._timeout(purpose)
        challenge = BiometricChallenge(
            challenge=secrets.token_urlsafe(32),
            user_id=user_id,
            device_id=device_id,
            purpose=purpose,
            expires_at=self._now() + timedelta(seconds=ttl),
        )
        if self.cache:
            await self.cache.set_biometric_challenge(
                challenge.challenge,
                {
                    "user_id": user_id,
                    "device_id": device_id,
                    "purpose": purpose,
                    "expires_at": challenge.expires_at.isoformat(),
                },
                ttl,
            )
        else:
            with self._state_lock:
                self._challenges[challenge.challenge] = challenge
        return challenge

    async def _consume_challenge(
        self, challenge: str, user_id: str, device_id: str, purpose: str
    ) -> bool:
        if self.cache:
            payload = await self.cache.pop_biometric_challenge(challenge)
            if not payload:
                return False
            stored = BiometricChallenge(
                challenge=challenge,
                user_id=payload.get("user_id", ""),
                device_id=payload.get("device_id", ""),
                purpose=payload.get("purpose", ""),
                expires_at=datetime.fromisoformat(payload["expires_at"]),
            )
        else:
            with self._state_lock:
                stored = self._challenges.pop(challenge, None)
            if stored is None:
                return False
        return (
            stored.user_id == user_id
            and stored.device_id == device_id
            and stored.purpose == purpose
            and stored.expires_at > self._now()
        )

    def cleanup_expired_challenges(self) -> int:
        now = self._now()
        with self._state_lock:
            expired = [c for c, stored in self._challenges.items() if stored.expires_at <= now]
            for challenge in expired:
                self._challenges.pop(challenge, None)
        return len(expired)

    # templates ----------------------------------------------------------

    def _encrypt_template(self, credential_id: str, public_key_pem: str) -> str:
        payload = json.dumps({"credential_id": credential_id, "public_key": public_key_pem})
        return self._cipher.encrypt(payload.encode()).decode()

    def _decrypt_template(self, encrypted: str) -> Optional[dict]:
        try:
            return json.loads(self._cipher.decrypt(encrypted.encode()))
        except (InvalidToken, json.JSONDecodeError):
            logger.warning("biometric_template_unreadable")
            return None

    @staticmethod
    def _load_public_key(public_key_pem: str) -> ec.EllipticCurvePublicKey:
        key = serialization.load_pem_public_key(public_key_pem.encode())
        if not isinstance(key, ec.EllipticCurvePublicKey) or not isinstance(
            key.curve, ec.SECP256R1
        ):
            raise BiometricFailedError("credential must be an ECDSA P-256 public key")
        return key

    @staticmethod
    def _verify_signature(key: ec.EllipticCurvePublicKey, challenge: str, signature: str) -> bool:
        try:
            key.verify(_b64decode(signature), challenge.encode(), ec.ECDSA(hashes.SHA256()))
            return True
        except (InvalidSignature, ValueError):
            return False

    def _require_trusted_device(self, user_id: str, device_id: str) -> None:
        device = self.store.get_device(device_id)
        if not device or device.user_id != user_id or not device.is_trusted:
            raise DeviceNotAuthorizedError(
                "biometric factor requires a trusted device", detail={"device_id": device_id}
            )

    # enrollment ---------------------------------------------------------

    async def enroll(
        self,
        user_id: str,
        device_id: str,
        *,
        challenge: str,
        credential_id: str,
        public_key_pem: str,
        signature: str,
        biometric_type: BiometricType | str = BiometricType.FINGERPRINT,
        pin_verified_at: Optional[datetime] = None,
        platform: Optional[PlatformReport] = None,
        restaurant_id: Optional[str] = None,
    ) -> BiometricEnrollmentResult:
        """Register the device's biometric-unlocked key for ``user_id``."""

        if pin_verified_at is None or self._now() - pin_verified_at > ENROLL_PIN_MAX_AGE:
            raise ForbiddenError("biometric enrollment requires a fresh PIN verification")
        self._require_trusted_device(user_id, device_id)
        kind = BiometricType(biometric_type)
        if platform is not None:
            caps = self.capabilities(user_id, device_id, platform)
            if not caps.is_available or not caps.permissions_granted:
                raise BiometricUnavailableError("platform biometric support not available")
            if kind not in caps.supported_types:
                kind = caps.supported_types[0]

        async def _complete() -> BiometricEnrollmentResult:
            if not await self._consume_challenge(challenge, user_id, device_id, "enroll"):
                raise BiometricFailedError("enrollment challenge invalid or expired")
            key = self._load_public_key(public_key_pem)
            if not self._verify_signature(key, challenge, signature):
                raise BiometricFailedError("enrollment signature did not verify")
            enrollment = self.store.save_biometric_enrollment(
                BiometricEnrollment(
                    id=new_id(),
                    user_id=user_id,
                    device_id=device_id,
                    biometric_type=kind.value,
                    encrypted_template=self._encrypt_template(credential_id, public_key_pem),
                    created_at=self._now(),
                )
            )
            return BiometricEnrollmentResult(
                enrollment_id=enrollment.id, biometric_type=kind, device_id=device_id
            )

        try:
            result = await asyncio.wait_for(
                _complete(), timeout=self.settings.biometric_enroll_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise BiometricFailedError("biometric enrollment timed out") from exc
        except ValueError as exc:
            raise BiometricFailedError("credential could not be parsed") from exc
        logger.info("biometric_enrolled", user_id=user_id, device_id=device_id, type=kind.value)
        if self.audit:
            await self.audit.log(
                AuditEventType.BIOMETRIC_ENROLLED,
                {"biometric_type": kind.value, "enrollment_id": result.enrollment_id},
                user_id=user_id,
                device_id=device_id,
                restaurant_id=restaurant_id,
            )
        return result

    # authentication -----------------------------------------------------

    async def _match(
        self,
        user_id: str,
        device_id: str,
        challenge: str,
        credential_id: str,
        signature: str,
        confidence: float,
    ) -> BiometricAuthResult:
        enrollments = self.store.list_biometric_enrollments(user_id, device_id)
        if not enrollments:
            raise BiometricUnavailableError("no biometric enrollment for this device")
        self._require_trusted_device(user_id, device_id)
        if not await self._consume_challenge(challenge, user_id, device_id, "authenticate"):
            raise BiometricFailedError("challenge invalid or expired")
        for enrollment in enrollments:
            template = self._decrypt_template(enrollment.encrypted_template)
            if not template or template.get("credential_id") != credential_id:
                continue
            key = self._load_public_key(template["public_key"])
            if not self._verify_signature(key, challenge, signature):
                raise BiometricFailedError("signature did not verify")
            if confidence < self.settings.biometric_min_confidence:
                raise BiometricFailedError("match confidence below threshold")
            self.store.touch_biometric_enrollment(enrollment.id, self._now())
            return BiometricAuthResult(
                success=True,
                fallback_to_pin=False,
                biometric_type=BiometricType(enrollment.biometric_type),
                confidence=confidence,
                device_id=device_id,
            )
        raise BiometricFailedError("unknown credential")

    async def authenticate(
        self,
        user_id: str,
        device_id: str,
        *,
        challenge: str,
        credential_id: str,
        signature: str,
        confidence: float = 1.0,
        restaurant_id: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> BiometricAuthResult:
        """Verify an assertion; every failure degrades to ``fallback_to_pin``."""

        audit_ctx = {
            "user_id": user_id,
            "device_id": device_id,
            "restaurant_id": restaurant_id,
            "ip_address": ip_address,
        }
        try:
            result = await asyncio.wait_for(
                self._match(user_id, device_id, challenge, credential_id, signature, confidence),
                timeout=self.settings.biometric_auth_timeout_seconds,
            )
        except asyncio.TimeoutError:
            result = BiometricAuthResult(
                success=False, fallback_to_pin=True, device_id=device_id, error="timeout"
            )
        except BiometricUnavailableError as exc:
            if self.audit:
                await self.audit.log(
                    AuditEventType.BIOMETRIC_UNAVAILABLE, {"reason": exc.message}, **audit_ctx
                )
            return BiometricAuthResult(
                success=False, fallback_to_pin=True, device_id=device_id, error=exc.error_code
            )
        except (BiometricFailedError, DeviceNotAuthorizedError) as exc:
            result = BiometricAuthResult(
                success=False,
                fallback_to_pin=True,
                device_id=device_id,
                error=exc.error_code,
            )
            logger.info("biometric_auth_rejected", user_id=user_id, reason=exc.message)
        except Exception as exc:
            # Platform faults never surface to the caller; PIN entry stays available
            logger.warning("biometric_auth_error", user_id=user_id, error=str(exc))
            result = BiometricAuthResult(
                success=False, fallback_to_pin=True, device_id=device_id, error="internal"
            )

        if self.audit:
            if result.success:
                await self.audit.log(
                    AuditEventType.BIOMETRIC_AUTH_SUCCESS,
                    {"biometric_type": result.biometric_type.value, "confidence": result.confidence},
                    **audit_ctx,
                )
            else:
                await self.audit.log(
                    AuditEventType.BIOMETRIC_AUTH_FAILURE, {"reason": result.error}, **audit_ctx
                )
        return result

    async def disable(
        self, user_id: str, device_id: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> int:
        removed = self.store.delete_biometric_enrollments(user_id, device_id)
        logger.info("biometric_disabled", user_id=user_id, device_id=device_id, removed=removed)
        if self.audit:
            await self.audit.log(
                AuditEventType.BIOMETRIC_DISABLED,
                {"removed": removed, "actor_id": actor_id or user_id},
                user_id=user_id,
                device_id=device_id,
            )
        return removed
