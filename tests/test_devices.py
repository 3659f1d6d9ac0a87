"""Tests for device fingerprinting and the trust registry."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from pinguard.service.audit import AuditLogger
from pinguard.service.devices import (
    ClientSignals,
    DeviceRegistry,
    compare_signals,
    describe_user_agent,
    fingerprint,
)
from pinguard.service.errors import ConflictError, NotFoundError
from pinguard.storage.models import AuditQuery, BiometricEnrollment, DeviceTrust

FP = "a1" * 32


@pytest.fixture
def user(store):
    return store.create_user("cook-17", role="staff", restaurant_id="store-1")


@pytest.fixture
def audit(store, settings):
    return AuditLogger(store, settings)


@pytest.fixture
def registry(store, settings, audit):
    return DeviceRegistry(store, settings, audit=audit)


class TestFingerprint:
    def test_stable_and_sensitive(self):
        signals = ClientSignals(screen_resolution="1280x800", timezone="UTC", platform="android")
        assert fingerprint(signals) == fingerprint(replace(signals))
        assert len(fingerprint(signals)) == 64
        assert fingerprint(signals) != fingerprint(replace(signals, timezone="EST"))

    def test_compare_signals(self):
        first = ClientSignals(
            screen_resolution="1280x800",
            color_depth=24,
            timezone="UTC",
            language="en",
            platform="android",
            user_agent="PinGuard/2.1 (Android 14; Tablet)",
        )
        assert compare_signals(first, first) == 1.0
        moved = replace(first, timezone="EST", user_agent="PinGuard/2.2 (Android 14; Tablet)")
        assert compare_signals(first, moved) == pytest.approx(5 / 6)

    def test_describe_user_agent(self):
        today = datetime(2026, 4, 1, tzinfo=timezone.utc)
        assert describe_user_agent("Mozilla/5.0 (iPad) Safari", today=today) == (
            "Tablet Safari (2026-04-01)",
            "tablet",
        )
        assert describe_user_agent("Chrome Mobile", today=today)[1] == "mobile"
        assert describe_user_agent(None, today=today)[1] == "desktop"


class TestRegistration:
    async def test_new_device_is_pending(self, registry, user, store, audit):
        result = await registry.validate_or_register(user.id, FP, user_agent="tablet")
        assert result.trusted is False
        assert result.is_new is True
        assert result.trust_state == DeviceTrust.PENDING
        assert result.reason == "awaiting_trust"
        await audit.flush()
        failed = store.search_audit_events(AuditQuery(event_types=["device_registration_failed"]))
        assert failed[0].metadata["reason"] == "new_device_pending_trust"

    async def test_second_attempt_still_pending(self, registry, user):
        first = await registry.validate_or_register(user.id, FP)
        second = await registry.validate_or_register(user.id, FP)
        assert second.device_id == first.device_id
        assert second.is_new is False
        assert second.trusted is False

    async def test_trusted_device_passes(self, registry, user):
        pending = await registry.validate_or_register(user.id, FP)
        await registry.trust_device(pending.device_id, "mgr-1")
        result = await registry.validate_or_register(user.id, FP)
        assert result.trusted is True
        assert registry.get_device(pending.device_id).trusted_by == "mgr-1"

    async def test_revoked_device_refused(self, registry, user):
        pending = await registry.validate_or_register(user.id, FP)
        await registry.trust_device(pending.device_id, "mgr-1")
        await registry.revoke_device(pending.device_id, "mgr-1", "lost tablet")
        result = await registry.validate_or_register(user.id, FP)
        assert result.trusted is False
        assert result.reason == "device_revoked"
        with pytest.raises(ConflictError):
            await registry.trust_device(pending.device_id, "mgr-1")

    async def test_forget_allows_fresh_registration(self, registry, user):
        pending = await registry.validate_or_register(user.id, FP)
        await registry.revoke_device(pending.device_id, "mgr-1")
        assert await registry.forget_device(pending.device_id, "mgr-1") is True
        assert await registry.forget_device(pending.device_id, "mgr-1") is False
        again = await registry.validate_or_register(user.id, FP)
        assert again.is_new is True
        assert again.device_id != pending.device_id

    async def test_revoke_drops_biometrics(self, registry, user, store):
        pending = await registry.validate_or_register(user.id, FP)
        store.save_biometric_enrollment(
            BiometricEnrollment(
                id="enr-1",
                user_id=user.id,
                device_id=pending.device_id,
                biometric_type="fingerprint",
                encrypted_template="x",
            )
        )
        await registry.revoke_device(pending.device_id, "mgr-1")
        assert store.list_biometric_enrollments(user.id) == []

    def test_unknown_device(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_device("missing")


class TestDeviceLimit:
    async def test_limit_without_inactive_devices(self, registry, user, settings):
        for index in range(settings.max_devices_per_user):
            await registry.validate_or_register(user.id, f"{index:064d}")
        result = await registry.validate_or_register(user.id, FP)
        assert result.trusted is False
        assert result.reason == "device_limit"
        assert result.device_id is None

    async def test_oldest_inactive_device_evicted(self, registry, user, settings, store):
        ids = []
        for index in range(settings.max_devices_per_user):
            ids.append((await registry.validate_or_register(user.id, f"{index:064d}")).device_id)
        stale = store.get_device(ids[2])
        store.save_device(
            replace(stale, last_seen_at=stale.last_seen_at - timedelta(days=45))
        )
        result = await registry.validate_or_register(user.id, FP)
        assert result.is_new is True
        assert store.get_device(ids[2]) is None
        assert len(registry.list_user_devices(user.id)) == settings.max_devices_per_user

    async def test_cleanup_expired_devices(self, registry, user, store):
        pending = await registry.validate_or_register(user.id, FP)
        record = store.get_device(pending.device_id)
        store.save_device(replace(record, last_seen_at=record.last_seen_at - timedelta(days=31)))
        assert registry.cleanup_expired_devices() == 1
        assert registry.list_user_devices(user.id) == []
