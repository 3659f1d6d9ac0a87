"""Tests for token minting, validation checks, usage caps, refresh and revocation."""

from datetime import datetime, timedelta, timezone

import pytest

from pinguard.service.errors import (
    SessionExpiredError,
    SessionInvalidError,
    TokenRevokedError,
    UsageExhaustedError,
    ValidationError,
)
from pinguard.service.tokens import (
    RequestContext,
    TokenEngine,
    TokenValidation,
    haversine_meters,
)
from pinguard.storage.models import (
    BiometricState,
    CompliancePolicy,
    DeviceInfo,
    LocationInfo,
    MobileContext,
    MobileSession,
    NetworkInfo,
    SecurityLevel,
    SessionPolicy,
    SessionType,
    ShiftWindow,
    TokenState,
    TokenType,
)

FP = "9f" * 32
LAT, LON = 45.5017, -73.5673


def make_session(
    *,
    session_type=SessionType.STANDARD,
    level=SecurityLevel.BASIC,
    verified=True,
    shift=None,
    biometric=None,
    read_only=False,
):
    context = MobileContext(
        device=DeviceInfo(device_id="dev-1", fingerprint=FP, trusted=True),
        location=LocationInfo(
            restaurant_id="store-1", verified=verified, latitude=LAT, longitude=LON
        ),
        shift=shift,
        biometric=biometric or BiometricState(),
        network=NetworkInfo(ip_address="10.1.2.3"),
    )
    policy = SessionPolicy(
        read_only=read_only, biometric_required=level == SecurityLevel.CRITICAL
    )
    return MobileSession.new(
        "user-1",
        "store-1",
        "staff",
        session_type,
        context,
        security_level=level,
        policy=policy,
        compliance=CompliancePolicy(),
        ttl_minutes=480,
    )


def good_request(**overrides) -> RequestContext:
    values = dict(
        device_id="dev-1",
        fingerprint=FP,
        ip_address="10.1.2.3",
        restaurant_id="store-1",
        latitude=LAT,
        longitude=LON,
        role="staff",
    )
    values.update(overrides)
    return RequestContext(**values)


@pytest.fixture
def engine(store, settings):
    return TokenEngine(store, settings)


class TestMinting:
    def test_session_token_family(self, engine, settings):
        tokens = engine.mint_session_tokens(make_session())
        assert set(tokens) == {"access_token", "refresh_token", "device_token", "location_token"}
        access = tokens["access_token"]
        assert access.scope == ["read", "write"]
        assert access.device_binding.fingerprint == FP
        assert access.location_binding.radius_meters == settings.location_radius_meters
        lifetime = access.expires_at - access.issued_at
        assert lifetime == timedelta(seconds=3600)
        refresh = tokens["refresh_token"]
        assert refresh.expires_at - refresh.issued_at == timedelta(hours=8)
        assert refresh.max_usage == settings.max_refresh_count

    def test_unverified_location_skips_location_token(self, engine):
        tokens = engine.mint_session_tokens(make_session(verified=False))
        assert "location_token" not in tokens
        assert tokens["access_token"].location_binding is None
        assert "unverified_location" in tokens["access_token"].meta["risk_factors"]

    def test_location_token_requires_verification(self, engine):
        with pytest.raises(ValidationError):
            engine.mint(TokenType.LOCATION, make_session(verified=False))

    def test_biometric_token_when_enabled(self, engine):
        state = BiometricState(
            enabled=True, last_auth_at=datetime.now(timezone.utc), method="face-id", confidence=0.95
        )
        tokens = engine.mint_session_tokens(make_session(biometric=state))
        assert tokens["biometric_token"].biometric_binding.method == "face-id"

    def test_shift_token_ends_with_shift(self, engine):
        now = datetime.now(timezone.utc)
        shift = ShiftWindow(start=now - timedelta(hours=1), end=now + timedelta(hours=3))
        tokens = engine.mint_session_tokens(
            make_session(session_type=SessionType.SHIFT_BASED, shift=shift)
        )
        assert tokens["shift_token"].expires_at == shift.end
        standard = engine.mint_session_tokens(make_session(shift=shift))
        assert "shift_token" not in standard

    def test_read_only_session_gets_read_scope(self, engine):
        tokens = engine.mint_session_tokens(make_session(read_only=True))
        assert tokens["access_token"].scope == ["read"]
        assert tokens["access_token"].restrictions.feature_flags == ["read_only"]

    def test_high_level_tokens_carry_allowlist(self, store, settings):
        engine = TokenEngine(
            store, settings.model_copy(update={"trusted_networks": ["10.0.0.0/8"]})
        )
        high = engine.mint(TokenType.ACCESS, make_session(level=SecurityLevel.HIGH))
        basic = engine.mint(TokenType.ACCESS, make_session())
        assert high.restrictions.ip_allowlist == ["10.0.0.0/8"]
        assert basic.restrictions.ip_allowlist == []


class TestDecode:
    def test_round_trip_claims(self, engine):
        session = make_session()
        token = engine.mint(TokenType.ACCESS, session)
        claims = engine.decode(token.value)
        assert claims["jti"] == token.id
        assert claims["sid"] == session.id
        assert claims["typ"] == "access_token"
        assert claims["dfp"] == FP

    def test_tampered_payload(self, engine):
        token = engine.mint(TokenType.ACCESS, make_session())
        header, payload, signature = token.value.split(".")
        forged = f"{header}.{payload[:-2]}AA.{signature}"
        assert engine.decode(forged) is None

    def test_foreign_secret(self, engine, store, settings):
        token = engine.mint(TokenType.ACCESS, make_session())
        other = TokenEngine(store, settings.model_copy(update={"jwt_secret": "x" * 48}))
        assert other.decode(token.value) is None

    def test_algorithm_none_rejected(self, engine):
        token = engine.mint(TokenType.ACCESS, make_session())
        _, payload, _ = token.value.split(".")
        header = engine._encode_segment(b'{"alg":"none","typ":"JWT"}')
        assert engine.decode(f"{header}.{payload}.") is None

    @pytest.mark.parametrize("value", ["", "abc", "a.b", "a.b.c.d"])
    def test_garbage(self, engine, value):
        assert engine.decode(value) is None


class TestValidation:
    async def test_valid_from_bound_device(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(tokens["access_token"].value, good_request())
        assert result.valid is True
        assert all(result.checks.values())
        assert result.risk.score == 100
        assert 3590 <= result.remaining_seconds <= 3600
        assert result.token.state == TokenState.ACTIVE
        assert result.token.usage_count == 1

    async def test_fingerprint_mismatch(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(
            tokens["access_token"].value, good_request(fingerprint="00" * 32)
        )
        assert result.valid is False
        assert result.error == "binding_check_failed"
        assert result.checks["device_binding"] is False
        assert "device_binding_failed" in result.risk.factors
        assert "reauthenticate_from_bound_device" in result.risk.mitigation

    async def test_missing_fingerprint_fails_closed(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(tokens["access_token"].value, good_request(fingerprint=None))
        assert result.checks["device_binding"] is False

    async def test_outside_location_radius(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(
            tokens["access_token"].value, good_request(latitude=LAT + 0.01)
        )
        assert result.valid is False
        assert result.checks["location_binding"] is False

    async def test_other_restaurant(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(
            tokens["access_token"].value, good_request(restaurant_id="store-2")
        )
        assert result.checks["location_binding"] is False

    async def test_ip_allowlist(self, store, settings):
        engine = TokenEngine(
            store, settings.model_copy(update={"trusted_networks": ["10.0.0.0/8"]})
        )
        token = engine.mint(TokenType.ACCESS, make_session(level=SecurityLevel.HIGH))
        inside = await engine.validate(token.value, good_request(), consume=False)
        outside = await engine.validate(
            token.value, good_request(ip_address="192.168.1.5"), consume=False
        )
        assert inside.valid is True
        assert outside.checks["ip_restriction"] is False

    async def test_scope(self, engine):
        tokens = engine.mint_session_tokens(make_session(read_only=True))
        result = await engine.validate(
            tokens["access_token"].value, good_request(required_scope="write")
        )
        assert result.checks["scope"] is False

    async def test_wrong_type(self, engine):
        tokens = engine.mint_session_tokens(make_session())
        result = await engine.validate(
            tokens["refresh_token"].value, good_request(), expected_type=TokenType.ACCESS
        )
        assert result.error == "wrong_token_type"

    async def test_unknown_record(self, engine, store):
        token = engine.mint(TokenType.ACCESS, make_session())
        store.tokens.pop(token.id)
        result = await engine.validate(token.value, good_request())
        assert result.error == "unknown_token"

    async def test_expiry(self, engine, store, monkeypatch):
        token = engine.mint(TokenType.ACCESS, make_session())
        later = token.expires_at + timedelta(seconds=1)
        monkeypatch.setattr(engine, "_now", lambda: later)
        result = await engine.validate(token.value, good_request())
        assert result.error == "expired"
        assert store.get_token(token.id).state == TokenState.EXPIRED

    async def test_valid_one_second_before_expiry(self, engine, store, monkeypatch):
        token = engine.mint(TokenType.ACCESS, make_session())
        almost = token.expires_at - timedelta(seconds=1)
        monkeypatch.setattr(engine, "_now", lambda: almost)
        result = await engine.validate(token.value, good_request())
        assert result.valid is True
        assert result.remaining_seconds == 1
        assert store.get_token(token.id).state != TokenState.EXPIRED

    async def test_refresh_usage_cap(self, engine, store):
        token = engine.mint(TokenType.REFRESH, make_session())
        for remaining in (2, 1, 0):
            result = await engine.validate(token.value, good_request())
            assert result.valid is True
            assert result.usage_remaining == remaining
        exhausted = await engine.validate(token.value, good_request())
        assert exhausted.error == "usage_exhausted"
        assert store.get_token(token.id).state == TokenState.USAGE_EXHAUSTED

    async def test_dry_run_does_not_consume(self, engine):
        token = engine.mint(TokenType.REFRESH, make_session())
        for _ in range(5):
            assert (await engine.validate(token.value, good_request(), consume=False)).valid
        assert (await engine.validate(token.value, good_request())).usage_remaining == 2


class TestRaiseForFailure:
    @pytest.mark.parametrize(
        "error, exc_type",
        [
            ("expired", SessionExpiredError),
            ("revoked", TokenRevokedError),
            ("usage_exhausted", UsageExhaustedError),
            ("binding_check_failed", SessionInvalidError),
            ("invalid_signature", SessionInvalidError),
        ],
    )
    def test_mapping(self, error, exc_type):
        with pytest.raises(exc_type):
            TokenValidation(valid=False, error=error).raise_for_failure()

    def test_valid_is_silent(self):
        TokenValidation(valid=True).raise_for_failure()


class TestRefreshAndRevoke:
    async def test_refresh_mints_access_only(self, engine):
        session = make_session()
        tokens = engine.mint_session_tokens(session)
        result = await engine.refresh(session, tokens["refresh_token"].value, good_request())
        assert result.refresh_token is None
        assert result.access_token.id != tokens["access_token"].id
        assert (await engine.validate(result.access_token.value, good_request())).valid

    async def test_critical_session_rotates(self, engine):
        session = make_session(level=SecurityLevel.CRITICAL)
        tokens = engine.mint_session_tokens(session)
        result = await engine.refresh(session, tokens["refresh_token"].value, good_request())
        assert result.refresh_token is not None
        stale = await engine.validate(tokens["refresh_token"].value, good_request())
        assert stale.error == "revoked"

    async def test_refresh_from_other_session(self, engine):
        first, second = make_session(), make_session()
        tokens = engine.mint_session_tokens(first)
        with pytest.raises(SessionInvalidError):
            await engine.refresh(second, tokens["refresh_token"].value, good_request())

    async def test_access_token_cannot_refresh(self, engine):
        session = make_session()
        tokens = engine.mint_session_tokens(session)
        with pytest.raises(SessionInvalidError):
            await engine.refresh(session, tokens["access_token"].value, good_request())

    async def test_revoke_is_terminal(self, engine, store):
        token = engine.mint(TokenType.ACCESS, make_session())
        assert await engine.revoke(token.id, reason="logout") is True
        assert await engine.revoke(token.id) is False
        assert await engine.revoke("missing") is False
        assert (await engine.validate(token.value, good_request())).error == "revoked"

    async def test_revoke_session_tokens(self, engine):
        session = make_session()
        tokens = engine.mint_session_tokens(session)
        assert await engine.revoke_session_tokens(session.id, "logout") == len(tokens)
        assert await engine.revoke_session_tokens(session.id, "logout") == 0

    def test_cleanup_expired(self, engine, monkeypatch):
        tokens = engine.mint_session_tokens(make_session())
        later = datetime.now(timezone.utc) + timedelta(days=3)
        monkeypatch.setattr(engine, "_now", lambda: later)
        assert engine.cleanup_expired_tokens() == len(tokens)


def test_haversine():
    assert haversine_meters(LAT, LON, LAT, LON) == 0
    one_km = haversine_meters(LAT, LON, LAT + 0.009, LON)
    assert 990 < one_km < 1010
