"""Tests for mobile session lifecycle, policy derivation and security scoring."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from pinguard.service.audit import AuditLogger
from pinguard.service.errors import (
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    SessionInvalidError,
    ValidationError,
)
from pinguard.service.lockout import LockoutTracker
from pinguard.service.sessions import SessionOrchestrator, actions_for_score
from pinguard.service.tokens import RequestContext, TokenEngine
from pinguard.storage.models import (
    AuditQuery,
    CompliancePolicy,
    DeviceInfo,
    DeviceRecord,
    DeviceTrust,
    LocationInfo,
    MobileContext,
    MobileSession,
    NetworkInfo,
    PerformanceSnapshot,
    SecurityLevel,
    SessionPolicy,
    SessionState,
    SessionType,
    ShiftWindow,
    TimeWindow,
    TokenState,
)

FP = "5e" * 32
LAT, LON = 45.5017, -73.5673


def make_context(
    *,
    trust=80,
    verified=False,
    device_id="dev-1",
    fingerprint=FP,
    secure=True,
    shift=None,
    ip="10.0.0.7",
):
    return MobileContext(
        device=DeviceInfo(device_id=device_id, fingerprint=fingerprint, trusted=True),
        location=LocationInfo(
            restaurant_id="store-1",
            verified=verified,
            latitude=LAT if verified else None,
            longitude=LON if verified else None,
        ),
        shift=shift,
        network=NetworkInfo(is_secure=secure, trust_score=trust, ip_address=ip),
    )


@pytest.fixture
def audit(store, settings):
    return AuditLogger(store, settings)


@pytest.fixture
def lockout(settings):
    return LockoutTracker(settings)


@pytest.fixture
def tokens(store, settings, audit):
    return TokenEngine(store, settings, audit=audit)


@pytest.fixture
def orchestrator(store, settings, tokens, audit, lockout):
    return SessionOrchestrator(store, settings, tokens, audit=audit, lockout=lockout)


@pytest.fixture
def staff(store):
    user = store.create_user("cook-17", restaurant_id="store-1")
    for device_id, fingerprint in (("dev-1", FP), ("dev-2", "6f" * 32)):
        store.save_device(
            DeviceRecord(
                id=device_id,
                user_id=user.id,
                fingerprint=fingerprint,
                trust_state=DeviceTrust.TRUSTED,
            )
        )
    return user


async def _open(orchestrator, user, context=None, session_type=SessionType.STANDARD, role="staff"):
    grant = await orchestrator.create_session(
        user.id, "store-1", role, session_type, context or make_context()
    )
    return grant


class TestPolicyDerivation:
    def test_security_levels(self):
        level = SessionOrchestrator.security_level_for
        clean = make_context(verified=True)
        assert level(clean, "staff", SessionType.STANDARD) == SecurityLevel.BASIC
        assert level(clean, "manager", SessionType.STANDARD) == SecurityLevel.HIGH
        assert level(make_context(), "staff", SessionType.STANDARD) == SecurityLevel.ENHANCED
        risky = make_context(trust=20, secure=False)
        assert level(risky, "staff", SessionType.STANDARD) == SecurityLevel.CRITICAL
        assert level(clean, "staff", SessionType.AUDIT) == SecurityLevel.HIGH
        assert level(clean, "manager", SessionType.MANAGER_OVERRIDE) == SecurityLevel.CRITICAL

    def test_policies(self, orchestrator, settings):
        now = datetime.now(timezone.utc)
        shift = ShiftWindow(start=now, end=now + timedelta(hours=4))
        shift_policy = orchestrator.policy_for(
            SessionType.SHIFT_BASED, SecurityLevel.BASIC, make_context(shift=shift)
        )
        assert shift_policy.time_restrictions == [TimeWindow(shift.start, shift.end)]
        override = orchestrator.policy_for(
            SessionType.MANAGER_OVERRIDE, SecurityLevel.CRITICAL, make_context()
        )
        assert override.max_concurrent_sessions == settings.manager_override_max_sessions
        assert override.biometric_required is True
        audit_policy = orchestrator.policy_for(SessionType.AUDIT, SecurityLevel.HIGH, make_context())
        assert audit_policy.read_only is True
        assert orchestrator.compliance_for("manager").classification == "restricted"
        assert orchestrator.compliance_for("staff").classification == "confidential"

    def test_actions_for_score(self):
        assert actions_for_score(29)["immediate"] == ["terminate_session"]
        assert actions_for_score(45) == {
            "immediate": ["restrict_access"],
            "scheduled": ["security_review"],
            "preventive": [],
        }
        assert actions_for_score(60)["preventive"] == ["enhanced_monitoring"]
        assert actions_for_score(70) == {"immediate": [], "scheduled": [], "preventive": []}


class TestCreate:
    async def test_standard_session(self, orchestrator, staff, store, settings):
        grant = await _open(orchestrator, staff)
        session = grant.session
        assert session.state == SessionState.ACTIVE
        assert session.security_level == SecurityLevel.ENHANCED
        assert set(grant.tokens) == {"access_token", "refresh_token", "device_token"}
        assert session.token_ids["access_token"] == grant.tokens["access_token"].id
        stored = store.get_session(session.id)
        assert stored.expires_at - stored.created_at == timedelta(
            minutes=settings.session_duration_minutes
        )

    def test_new_session_uses_one_clock(self):
        now = datetime(2026, 4, 1, 7, 0, tzinfo=timezone.utc)
        session = MobileSession.new(
            "user-1",
            "store-1",
            "staff",
            SessionType.STANDARD,
            make_context(),
            security_level=SecurityLevel.BASIC,
            policy=SessionPolicy(),
            compliance=CompliancePolicy(),
            ttl_minutes=480,
            now=now,
        )
        assert session.created_at == now
        assert session.last_activity_at == now
        assert session.expires_at == now + timedelta(minutes=480)

    async def test_shift_session_needs_active_shift(self, orchestrator, staff):
        with pytest.raises(ValidationError):
            await _open(orchestrator, staff, session_type=SessionType.SHIFT_BASED)
        now = datetime.now(timezone.utc)
        ended = ShiftWindow(start=now - timedelta(hours=5), end=now - timedelta(hours=1))
        with pytest.raises(ValidationError):
            await _open(
                orchestrator, staff, make_context(shift=ended), session_type=SessionType.SHIFT_BASED
            )

    async def test_shift_session_expires_with_shift(self, orchestrator, staff):
        now = datetime.now(timezone.utc)
        shift = ShiftWindow(start=now - timedelta(hours=1), end=now + timedelta(hours=3))
        grant = await _open(
            orchestrator, staff, make_context(shift=shift), session_type=SessionType.SHIFT_BASED
        )
        assert grant.session.expires_at == shift.end
        assert "shift_token" in grant.tokens

    async def test_override_requires_manager(self, orchestrator, staff):
        with pytest.raises(ForbiddenError):
            await _open(orchestrator, staff, session_type=SessionType.MANAGER_OVERRIDE)

    async def test_override_session(self, orchestrator, staff, settings):
        grant = await _open(
            orchestrator, staff, session_type=SessionType.MANAGER_OVERRIDE, role="manager"
        )
        session = grant.session
        assert session.security_level == SecurityLevel.CRITICAL
        assert session.policy.biometric_required is True
        assert session.expires_at - session.created_at <= timedelta(
            minutes=settings.manager_override_duration_minutes
        )
        assert session.compliance.classification == "restricted"


class TestConcurrency:
    async def test_new_session_supersedes_same_device(self, orchestrator, staff, store):
        first = await _open(orchestrator, staff)
        second = await _open(orchestrator, staff)
        old = store.get_session(first.session.id)
        assert old.state == SessionState.TERMINATED
        assert old.termination_reason == "superseded"
        assert store.get_token(first.tokens["access_token"].id).state == TokenState.REVOKED
        assert [s.id for s in orchestrator.list_user_sessions(staff.id)] == [second.session.id]

    async def test_other_device_unaffected(self, orchestrator, staff):
        await _open(orchestrator, staff)
        await _open(orchestrator, staff, make_context(device_id="dev-2", fingerprint="6f" * 32))
        assert len(orchestrator.list_user_sessions(staff.id)) == 2

    async def test_manager_override_allowance(self, orchestrator, staff, audit, store):
        for _ in range(4):
            await _open(
                orchestrator, staff, session_type=SessionType.MANAGER_OVERRIDE, role="manager"
            )
        assert len(orchestrator.list_user_sessions(staff.id)) == 3
        await audit.flush()
        granted = store.search_audit_events(AuditQuery(event_types=["manager_override_granted"]))
        assert len(granted) == 3


class TestValidation:
    async def test_clean_session_scores_full(self, orchestrator, staff):
        grant = await _open(orchestrator, staff, make_context(verified=True))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.valid is True
        assert result.security_score == 100
        assert result.risk_factors == []
        assert result.compliance.passed is True

    async def test_unverified_location_penalty(self, orchestrator, staff):
        grant = await _open(orchestrator, staff, make_context(trust=55))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.security_score == 80
        assert result.valid is True
        assert "location_binding_failed" in result.risk_factors
        assert result.actions == {"immediate": [], "scheduled": [], "preventive": []}

    async def test_low_score_restricts(self, orchestrator, staff, store, audit):
        grant = await _open(orchestrator, staff, make_context(trust=20))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.security_score == 45
        assert result.valid is False
        assert result.actions["immediate"] == ["restrict_access"]
        assert result.actions["scheduled"] == ["security_review"]
        session = store.get_session(grant.session.id)
        assert session.policy.read_only is True
        assert session.state == SessionState.ACTIVE
        await audit.flush()
        assert store.search_audit_events(AuditQuery(event_types=["session_restricted"]))

    async def test_very_low_score_terminates(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff, make_context(trust=0))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.security_score == 25
        assert result.terminated is True
        assert store.get_session(grant.session.id).state == SessionState.TERMINATED

    async def test_foreign_device_request(self, orchestrator, staff):
        grant = await _open(orchestrator, staff, make_context(verified=True))
        result = await orchestrator.validate_session(
            grant.session.id,
            RequestContext(device_id="dev-2", fingerprint="6f" * 32, restaurant_id="store-1"),
        )
        assert result.valid is False
        assert "device_binding_failed" in result.risk_factors
        assert "invalid_access_token" in result.risk_factors

    async def test_revoked_device_record(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff, make_context(verified=True, trust=50))
        device = store.get_device("dev-1")
        store.save_device(replace(device, trust_state=DeviceTrust.REVOKED))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.security_score == 70
        assert "device_binding_failed" in result.risk_factors

    async def test_unknown_session_blocked(self, orchestrator):
        result = await orchestrator.validate_session("missing")
        assert result.valid is False
        assert result.security_score == 0
        assert result.actions["immediate"] == ["block"]

    async def test_idle_session_terminated(self, orchestrator, staff, store, audit, monkeypatch):
        grant = await _open(orchestrator, staff, make_context(verified=True))
        later = datetime.now(timezone.utc) + timedelta(minutes=31)
        monkeypatch.setattr(orchestrator, "_now", lambda: later)
        result = await orchestrator.validate_session(grant.session.id)
        assert result.valid is False
        assert "idle_timeout" in result.risk_factors
        assert result.terminated is True
        await audit.flush()
        expired = store.search_audit_events(AuditQuery(event_types=["session_expired"]))
        assert expired[0].metadata["reason"] == "idle_timeout"

    async def test_biometric_reauthentication_recommended(self, orchestrator, staff):
        grant = await _open(
            orchestrator,
            staff,
            make_context(verified=True),
            session_type=SessionType.MANAGER_OVERRIDE,
            role="manager",
        )
        result = await orchestrator.validate_session(grant.session.id)
        assert "biometric_reauthentication_required" in result.risk_factors
        assert "Perform biometric authentication" in result.recommendations
        await orchestrator.record_biometric(grant.session.id, "face-id", 0.97)
        again = await orchestrator.validate_session(grant.session.id)
        assert "biometric_reauthentication_required" not in again.risk_factors

    async def test_poor_connection_recommendation(self, orchestrator, staff):
        grant = await _open(orchestrator, staff, make_context(verified=True))
        await orchestrator.record_activity(
            grant.session.id, PerformanceSnapshot(connection_quality="poor")
        )
        result = await orchestrator.validate_session(grant.session.id)
        assert "Improve network connection" in result.recommendations

    async def test_origin_threat_lowers_score(self, orchestrator, staff, lockout):
        grant = await _open(orchestrator, staff, make_context(verified=True, trust=50))
        for agent in ("curl/8", "python-requests", "okhttp"):
            lockout.detect_brute_force("10.0.0.7", agent, 1)
        result = await orchestrator.validate_session(grant.session.id)
        assert result.security_score == 75
        assert "origin_threat_signals" in result.risk_factors

    async def test_missing_audit_sink_fails_compliance(self, store, settings, tokens, staff):
        orchestrator = SessionOrchestrator(store, settings, tokens)
        grant = await _open(orchestrator, staff, make_context(verified=True))
        result = await orchestrator.validate_session(grant.session.id)
        assert result.compliance.passed is False
        assert "audit_sink_unavailable" in result.compliance.violations
        assert result.valid is False


class TestLifecycle:
    async def test_get_session(self, orchestrator, staff):
        grant = await _open(orchestrator, staff)
        assert (await orchestrator.get_session(grant.session.id)).id == grant.session.id
        with pytest.raises(NotFoundError):
            await orchestrator.get_session("missing")

    async def test_refresh(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff)
        result = await orchestrator.refresh(
            grant.session.id, grant.tokens["refresh_token"].value
        )
        session = store.get_session(grant.session.id)
        assert session.refresh_count == 1
        assert session.state == SessionState.ACTIVE
        assert session.token_ids["access_token"] == result.access_token.id

    async def test_refresh_from_foreign_device(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff)
        with pytest.raises(SessionInvalidError):
            await orchestrator.refresh(
                grant.session.id,
                grant.tokens["refresh_token"].value,
                RequestContext(device_id="dev-2", fingerprint="6f" * 32),
            )
        assert store.get_session(grant.session.id).state == SessionState.ACTIVE

    async def test_refresh_after_expiry(self, orchestrator, staff, store, monkeypatch):
        grant = await _open(orchestrator, staff)
        later = datetime.now(timezone.utc) + timedelta(hours=9)
        monkeypatch.setattr(orchestrator, "_now", lambda: later)
        with pytest.raises(SessionExpiredError):
            await orchestrator.refresh(grant.session.id, grant.tokens["refresh_token"].value)
        assert store.get_session(grant.session.id).termination_reason == "absolute_expiry"

    async def test_refresh_terminated_session(self, orchestrator, staff):
        grant = await _open(orchestrator, staff)
        await orchestrator.terminate(grant.session.id, "logout")
        with pytest.raises(SessionInvalidError):
            await orchestrator.refresh(grant.session.id, grant.tokens["refresh_token"].value)

    async def test_terminate_is_idempotent(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff)
        assert await orchestrator.terminate(grant.session.id, "logout", actor_id=staff.id) is True
        assert await orchestrator.terminate(grant.session.id, "logout") is False
        for token_id in grant.session.token_ids.values():
            assert store.get_token(token_id).state == TokenState.REVOKED

    async def test_terminate_device_sessions(self, orchestrator, staff):
        await _open(orchestrator, staff)
        await _open(orchestrator, staff, make_context(device_id="dev-2", fingerprint="6f" * 32))
        assert await orchestrator.terminate_device_sessions("dev-1", "device_revoked") == 1
        remaining = orchestrator.list_user_sessions(staff.id)
        assert [s.context.device.device_id for s in remaining] == ["dev-2"]

    async def test_record_biometric_replaces_token(self, orchestrator, staff, store):
        grant = await _open(orchestrator, staff)
        first = await orchestrator.record_biometric(grant.session.id, "fingerprint", 0.9)
        second = await orchestrator.record_biometric(grant.session.id, "fingerprint", 0.92)
        old_id = first.token_ids["biometric_token"]
        assert second.token_ids["biometric_token"] != old_id
        assert store.get_token(old_id).state == TokenState.REVOKED
        assert store.get_session(grant.session.id).context.biometric.confidence == 0.92

    async def test_break_idle_timeout(self, orchestrator, staff, settings):
        now = datetime.now(timezone.utc)
        shift = ShiftWindow(
            start=now - timedelta(hours=2),
            end=now + timedelta(hours=4),
            breaks=[TimeWindow(now + timedelta(minutes=30), now + timedelta(minutes=90))],
        )
        grant = await _open(
            orchestrator, staff, make_context(shift=shift), session_type=SessionType.BREAK_EXTENDED
        )
        session = grant.session
        in_break = now + timedelta(minutes=60)
        assert orchestrator.idle_timeout(session, in_break) == timedelta(
            minutes=settings.break_idle_timeout_minutes
        )
        assert orchestrator.idle_timeout(session, now) == timedelta(
            minutes=settings.session_idle_timeout_minutes
        )
        assert orchestrator.expiry_reason(session, in_break) is None

    async def test_sweep(self, orchestrator, staff, monkeypatch):
        await _open(orchestrator, staff)
        await _open(orchestrator, staff, make_context(device_id="dev-2", fingerprint="6f" * 32))
        later = datetime.now(timezone.utc) + timedelta(hours=9)
        monkeypatch.setattr(orchestrator, "_now", lambda: later)
        assert await orchestrator.sweep() == (0, 2)
        assert orchestrator.list_user_sessions(staff.id) == []
