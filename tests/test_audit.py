"""Tests for audit severity rules, metadata sanitising and the batching sink."""

from datetime import timedelta

import pytest

from pinguard.service.audit import (
    AuditEventType,
    AuditLogger,
    AuditSeverity,
    classify_severity,
    sanitize_metadata,
)
from pinguard.storage.models import AuditEvent, AuditQuery, utcnow


class FlakyStore:
    """Wraps a store and fails the next ``failures`` batch inserts."""

    def __init__(self, inner, failures: int = 1):
        self.inner = inner
        self.failures = failures

    def insert_audit_events(self, events):
        if self.failures:
            self.failures -= 1
            raise ConnectionError("audit table unavailable")
        return self.inner.insert_audit_events(events)

    def __getattr__(self, name):
        return getattr(self.inner, name)


class TestSeverity:
    def test_event_type_classes(self):
        assert classify_severity("brute_force_detected") == AuditSeverity.CRITICAL
        assert classify_severity("pin_auth_error") == AuditSeverity.CRITICAL
        assert classify_severity("account_locked") == AuditSeverity.HIGH
        assert classify_severity("device_registration_failed") == AuditSeverity.HIGH
        assert classify_severity("pin_auth_failure") == AuditSeverity.MEDIUM
        assert classify_severity("pin_auth_success") == AuditSeverity.LOW
        assert classify_severity("something_unknown") == AuditSeverity.LOW

    def test_metadata_escalates(self):
        assert classify_severity("pin_auth_failure", {"failed_attempts": 4}) == AuditSeverity.HIGH
        assert classify_severity("session_created", {"risk_score": 71}) == AuditSeverity.HIGH
        assert classify_severity("session_created", {"risk_score": 70}) == AuditSeverity.LOW


class TestSanitize:
    def test_sensitive_fields_redacted(self):
        cleaned = sanitize_metadata(
            {"pin": "7392", "New_Pin": "8163", "detail": {"refresh_token": "abc"}, "ok": 1}
        )
        assert cleaned["pin"] == "[REDACTED]"
        assert cleaned["New_Pin"] == "[REDACTED]"
        assert cleaned["detail"]["refresh_token"] == "[REDACTED]"
        assert cleaned["ok"] == 1

    def test_long_strings_truncated(self):
        cleaned = sanitize_metadata({"note": "x" * 1500})
        assert cleaned["note"].endswith("...[TRUNCATED]")
        assert len(cleaned["note"]) == 1000 + len("...[TRUNCATED]")

    def test_enums_flattened(self):
        assert sanitize_metadata({"kind": AuditSeverity.HIGH}) == {"kind": "high"}


class TestAuditLogger:
    async def test_low_severity_waits_for_flush(self, store, settings):
        audit = AuditLogger(store, settings)
        await audit.log(AuditEventType.SESSION_CREATED, {"session_type": "standard"})
        assert audit.pending == 1
        assert store.audit_events == []
        assert await audit.flush() == 1
        assert audit.pending == 0
        assert len(store.audit_events) == 1

    async def test_high_severity_flushes_immediately(self, store, settings):
        audit = AuditLogger(store, settings)
        await audit.log(AuditEventType.SESSION_CREATED, {})
        await audit.log(AuditEventType.ACCOUNT_LOCKED, {"failed_attempts": 5})
        assert audit.pending == 0
        assert [e.event_type for e in store.audit_events] == ["session_created", "account_locked"]

    async def test_batch_threshold_flushes(self, store, settings):
        audit = AuditLogger(store, settings.model_copy(update={"audit_batch_size": 3}))
        for _ in range(3):
            await audit.log(AuditEventType.TOKEN_REFRESHED, {})
        assert audit.pending == 0
        assert len(store.audit_events) == 3

    async def test_failed_flush_requeues(self, store, settings):
        audit = AuditLogger(FlakyStore(store), settings)
        await audit.log(AuditEventType.SESSION_CREATED, {"n": 1})
        await audit.log(AuditEventType.SESSION_CREATED, {"n": 2})
        assert await audit.flush() == 0
        assert audit.pending == 2
        assert await audit.flush() == 2
        assert [e.metadata["n"] for e in store.audit_events] == [1, 2]

    async def test_log_never_raises(self, store, settings):
        audit = AuditLogger(store, settings)
        assert await audit.log(AuditEventType.SESSION_CREATED, {}, severity="bogus") is None

    async def test_metadata_is_sanitized(self, store, settings):
        audit = AuditLogger(store, settings)
        event = await audit.log(AuditEventType.PIN_CHANGED, {"new_pin": "8163"})
        assert event.metadata == {"new_pin": "[REDACTED]"}
        assert event.severity == "medium"


class TestReadSide:
    @pytest.fixture
    def seeded(self, store, settings):
        now = utcnow()
        store.insert_audit_events(
            [
                AuditEvent("pin_auth_failure", "medium", "store-1", user_id="u1", created_at=now),
                AuditEvent("pin_auth_failure", "medium", "store-1", user_id="u1", created_at=now),
                AuditEvent("account_locked", "high", "store-1", user_id="u1", created_at=now),
                AuditEvent("pin_auth_success", "low", "store-2", user_id="u2", created_at=now),
                AuditEvent(
                    "pin_auth_success", "low", "store-1", user_id="u3",
                    created_at=now - timedelta(days=120),
                ),
            ]
        )
        return AuditLogger(store, settings)

    def test_search_filters(self, seeded):
        found = seeded.search(AuditQuery(restaurant_id="store-1", severities=["high"]))
        assert [e.event_type for e in found] == ["account_locked"]
        assert len(seeded.search(AuditQuery(restaurant_id="store-1"))) == 4
        assert len(seeded.search(AuditQuery(restaurant_id="store-1", limit=2))) == 2

    def test_stats(self, seeded):
        stats = seeded.get_stats("store-1", days=30)
        assert stats["total_events"] == 3
        assert stats["events_by_type"] == {"pin_auth_failure": 2, "account_locked": 1}
        assert stats["top_users"] == [{"user_id": "u1", "event_count": 3}]

    async def test_retention_cleanup(self, seeded, store):
        removed = await seeded.cleanup_old_logs()
        assert removed == 1
        await seeded.flush()
        assert store.audit_events[-1].event_type == "data_retention_cleanup"
