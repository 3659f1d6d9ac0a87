from __future__ import annotations

import hashlib
import json
import re
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timedelta, timezone
from difflib import SequenceMatcher
from typing import List, Optional

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.errors import ConflictError, NotFoundError
from pinguard.service.locks import AsyncKeyedLock
from pinguard.storage.models import DeviceRecord, DeviceTrust, new_id

logger = get_logger(__name__)

_TABLET_UA = re.compile(r"tablet|ipad", re.IGNORECASE)
_MOBILE_UA = re.compile(r"mobile|phone", re.IGNORECASE)


@dataclass
class ClientSignals:
    """Hardware and software signals reported by the client app."""

    screen_resolution: Optional[str] = None
    color_depth: Optional[int] = None
    timezone: Optional[str] = None
    language: Optional[str] = None
    platform: Optional[str] = None
    user_agent: Optional[str] = None
    canvas: Optional[str] = None
    webgl: Optional[str] = None
    touch_support: Optional[bool] = None
    connection_type: Optional[str] = None


def fingerprint(signals: ClientSignals) -> str:
    """Stable SHA-256 identifier over the client signals."""

    payload = json.dumps(asdict(signals), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def compare_signals(first: ClientSignals, second: ClientSignals) -> float:
    """Fraction of matching signals, with a fuzzy user-agent comparison."""

    fields = ("screen_resolution", "color_depth", "timezone", "language", "platform")
    matches = sum(1 for name in fields if getattr(first, name) == getattr(second, name))
    if first.user_agent and second.user_agent:
        if SequenceMatcher(None, first.user_agent, second.user_agent).ratio() > 0.8:
            matches += 1
    return matches / (len(fields) + 1)


def describe_user_agent(user_agent: Optional[str], *, today: Optional[datetime] = None) -> tuple[str, str]:
    """Return ``(display name, device type)`` derived from a user agent."""

    ua = user_agent or ""
    if _TABLET_UA.search(ua):
        device_type = "tablet"
    elif _MOBILE_UA.search(ua):
        device_type = "mobile"
    else:
        device_type = "desktop"
    lowered = ua.lower()
    if "chrome" in lowered:
        browser = "Chrome"
    elif "safari" in lowered:
        browser = "Safari"
    elif "firefox" in lowered:
        browser = "Firefox"
    else:
        browser = "Browser"
    stamp = (today or datetime.now(timezone.utc)).date().isoformat()
    return f"{device_type.capitalize()} {browser} ({stamp})", device_type


@dataclass
class DeviceValidation:
    trusted: bool
    device_id: Optional[str] = None
    trust_state: Optional[DeviceTrust] = None
    is_new: bool = False
    reason: Optional[str] = None


class DeviceRegistry:
    """Trust registry for the devices each staff account signs in from.

    A fingerprint seen for the first time is recorded as ``pending`` and
    refused until a manager trusts it. Revoked devices stay refused until the
    record is forgotten and the device registers again.
    """

    def __init__(self, store, settings: Settings, audit: Optional[AuditLogger] = None) -> None:
        self.store = store
        self.settings = settings
        self.audit = audit
        self._locks = AsyncKeyedLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _audit(self, event_type: AuditEventType, metadata: dict, **kwargs) -> None:
        if self.audit:
            await self.audit.log(event_type, metadata, **kwargs)

    async def validate_or_register(
        self,
        user_id: str,
        device_fingerprint: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
        restaurant_id: Optional[str] = None,
    ) -> DeviceValidation:
        now = self._now()
        audit_ctx = {
            "user_id": user_id,
            "restaurant_id": restaurant_id,
            "ip_address": ip_address,
            "user_agent": user_agent,
        }
        async with self._locks.hold(f"{user_id}|{device_fingerprint}"):
            existing = self.store.get_device_by_fingerprint(user_id, device_fingerprint)
            if existing:
                if existing.trust_state == DeviceTrust.REVOKED:
                    await self._audit(
                        AuditEventType.DEVICE_REGISTRATION_FAILED,
                        {"reason": "device_revoked"},
                        device_id=existing.id,
                        **audit_ctx,
                    )
                    return DeviceValidation(
                        trusted=False,
                        device_id=existing.id,
                        trust_state=existing.trust_state,
                        reason="device_revoked",
                    )
                existing = self.store.save_device(replace(existing, last_seen_at=now))
                if existing.is_trusted:
                    return DeviceValidation(
                        trusted=True, device_id=existing.id, trust_state=existing.trust_state
                    )
                await self._audit(
                    AuditEventType.DEVICE_REGISTRATION_FAILED,
                    {"reason": "awaiting_trust"},
                    device_id=existing.id,
                    **audit_ctx,
                )
                return DeviceValidation(
                    trusted=False,
                    device_id=existing.id,
                    trust_state=existing.trust_state,
                    reason="awaiting_trust",
                )

            devices = self.store.list_devices(user_id)
            if len(devices) >= self.settings.max_devices_per_user:
                evicted = self._oldest_inactive(devices, now)
                if evicted is None:
                    await self._audit(
                        AuditEventType.DEVICE_REGISTRATION_FAILED,
                        {"reason": "device_limit", "device_count": len(devices)},
                        **audit_ctx,
                    )
                    return DeviceValidation(trusted=False, reason="device_limit")
                self.store.delete_device(evicted.id)
                logger.info("device_evicted", user_id=user_id, device_id=evicted.id)

            name, device_type = describe_user_agent(user_agent, today=now)
            device = self.store.save_device(
                DeviceRecord(
                    id=new_id(),
                    user_id=user_id,
                    fingerprint=device_fingerprint,
                    trust_state=DeviceTrust.PENDING,
                    name=name,
                    device_type=device_type,
                    registered_at=now,
                    last_seen_at=now,
                    meta={"ip_address": ip_address, "user_agent": user_agent},
                )
            )
        logger.info("device_registered_pending", user_id=user_id, device_id=device.id)
        await self._audit(
            AuditEventType.DEVICE_REGISTRATION_FAILED,
            {"reason": "new_device_pending_trust", "device_type": device_type},
            device_id=device.id,
            **audit_ctx,
        )
        return DeviceValidation(
            trusted=False,
            device_id=device.id,
            trust_state=DeviceTrust.PENDING,
            is_new=True,
            reason="awaiting_trust",
        )

    def _oldest_inactive(
        self, devices: List[DeviceRecord], now: datetime
    ) -> Optional[DeviceRecord]:
        cutoff = now - timedelta(days=self.settings.device_expiry_days)
        inactive = [d for d in devices if d.last_seen_at < cutoff]
        return min(inactive, key=lambda d: d.last_seen_at) if inactive else None

    def get_device(self, device_id: str) -> DeviceRecord:
        device = self.store.get_device(device_id)
        if not device:
            raise NotFoundError("device not found", detail={"device_id": device_id})
        return device

    def list_user_devices(self, user_id: str) -> List[DeviceRecord]:
        return self.store.list_devices(user_id)

    async def trust_device(self, device_id: str, actor_id: str) -> DeviceRecord:
        device = self.get_device(device_id)
        if device.trust_state == DeviceTrust.REVOKED:
            raise ConflictError(
                "revoked devices must be removed and re-registered",
                detail={"device_id": device_id},
            )
        if not device.is_trusted:
            device = self.store.save_device(
                replace(device, trust_state=DeviceTrust.TRUSTED, trusted_by=actor_id)
            )
            logger.info("device_trusted", device_id=device_id, actor_id=actor_id)
            await self._audit(
                AuditEventType.DEVICE_TRUST_GRANTED,
                {"actor_id": actor_id},
                user_id=device.user_id,
                device_id=device_id,
                resource_type="device",
                resource_id=device_id,
            )
        return device

    async def revoke_device(
        self, device_id: str, actor_id: str, reason: Optional[str] = None
    ) -> DeviceRecord:
        """Revoke trust immediately; biometric enrollments on the device go with it."""

        device = self.get_device(device_id)
        if device.trust_state != DeviceTrust.REVOKED:
            device = self.store.save_device(replace(device, trust_state=DeviceTrust.REVOKED))
            removed = self.store.delete_biometric_enrollments(device.user_id, device_id)
            logger.info(
                "device_revoked", device_id=device_id, actor_id=actor_id, biometrics=removed
            )
            await self._audit(
                AuditEventType.DEVICE_TRUST_REVOKED,
                {"actor_id": actor_id, "reason": reason, "biometrics_removed": removed},
                user_id=device.user_id,
                device_id=device_id,
                resource_type="device",
                resource_id=device_id,
            )
        return device

    async def forget_device(self, device_id: str, actor_id: str) -> bool:
        """Delete the record so the device can register from scratch."""

        device = self.store.get_device(device_id)
        if not device:
            return False
        self.store.delete_device(device_id)
        await self._audit(
            AuditEventType.DEVICE_REMOVED,
            {"actor_id": actor_id, "trust_state": device.trust_state.value},
            user_id=device.user_id,
            device_id=device_id,
            resource_type="device",
            resource_id=device_id,
        )
        return True

    def cleanup_expired_devices(self) -> int:
        cutoff = self._now() - timedelta(days=self.settings.device_expiry_days)
        removed = self.store.delete_devices_inactive_since(cutoff)
        if removed:
            logger.info("devices_expired", removed=removed)
        return removed
