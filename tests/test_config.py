import pytest
from pydantic import ValidationError

from pinguard.config import PinStrength, Settings, get_settings, reset_settings_cache

TEST_SECRET = "config-test-secret-0123456789-abcdefghijklmnopq"


class TestDefaults:
    def test_security_defaults(self):
        settings = Settings(jwt_secret=TEST_SECRET)
        assert settings.pin_max_attempts == 5
        assert settings.lockout_base_minutes == 15
        assert settings.lockout_max_multiplier == 64
        assert settings.session_duration_minutes == 480
        assert settings.session_idle_timeout_minutes == 30
        assert settings.access_token_ttl_seconds == 3600
        assert settings.refresh_token_ttl_seconds == 28800
        assert settings.max_refresh_count == 3
        assert settings.pin_min_strength == PinStrength.MEDIUM
        assert settings.trusted_networks == []

    def test_strength_rank(self):
        assert PinStrength.WEAK.rank < PinStrength.MEDIUM.rank < PinStrength.STRONG.rank


class TestValidation:
    def test_short_secret_rejected(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret="too-short")

    def test_lockout_multiplier_power_of_two(self):
        assert Settings(jwt_secret=TEST_SECRET, lockout_max_multiplier=32).lockout_max_multiplier == 32
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, lockout_max_multiplier=48)

    def test_positive_integers(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, pin_max_attempts=0)
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, access_token_ttl_seconds=-1)

    def test_operating_hours_range(self):
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, operating_hours_end=24)

    def test_trusted_networks(self):
        settings = Settings(jwt_secret=TEST_SECRET, trusted_networks="10.0.0.0/8, 192.168.1.0/24")
        assert settings.trusted_networks == ["10.0.0.0/8", "192.168.1.0/24"]
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, trusted_networks="10.0.0.0/33")

    def test_min_strength_normalized(self):
        assert Settings(jwt_secret=TEST_SECRET, pin_min_strength=" Strong ").pin_min_strength == (
            PinStrength.STRONG
        )
        with pytest.raises(ValidationError):
            Settings(jwt_secret=TEST_SECRET, pin_min_strength="extreme")


class TestEnvironment:
    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("PIN_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("TRUSTED_NETWORKS", "172.16.0.0/12")
        settings = Settings.from_env()
        assert settings.pin_max_attempts == 7
        assert settings.trusted_networks == ["172.16.0.0/12"]

    def test_dotenv_fallback(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        (tmp_path / ".env").write_text("SESSION_DURATION_MINUTES=240\nPIN_MAX_ATTEMPTS=9\n")
        monkeypatch.setenv("PIN_MAX_ATTEMPTS", "6")
        settings = Settings.from_env()
        assert settings.session_duration_minutes == 240
        assert settings.pin_max_attempts == 6

    def test_cached_settings(self, monkeypatch):
        first = get_settings()
        assert get_settings() is first
        monkeypatch.setenv("MAX_REFRESH_COUNT", "5")
        assert get_settings().max_refresh_count == first.max_refresh_count
        reset_settings_cache()
        assert get_settings().max_refresh_count == 5
        reset_settings_cache()
