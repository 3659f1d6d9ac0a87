from __future__ import annotations

import os
from enum import Enum
from ipaddress import ip_network
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class PinStrength(str, Enum):
    """Strength buckets produced by the PIN policy engine."""

    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"

    @property
    def rank(self) -> int:
        return _STRENGTH_ORDER[self]


_STRENGTH_ORDER = {PinStrength.WEAK: 0, PinStrength.MEDIUM: 1, PinStrength.STRONG: 2}


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_POSITIVE_INT_FIELDS = (
    "pin_hash_time_cost",
    "pin_hash_memory_cost",
    "pin_hash_parallelism",
    "pin_expiry_days",
    "pin_generation_max_attempts",
    "pin_max_attempts",
    "lockout_base_minutes",
    "lockout_max_multiplier",
    "lockout_window_minutes",
    "attempt_retention_hours",
    "brute_force_attempt_threshold",
    "brute_force_risk_threshold",
    "session_duration_minutes",
    "session_idle_timeout_minutes",
    "break_idle_timeout_minutes",
    "manager_override_duration_minutes",
    "max_concurrent_sessions",
    "manager_override_max_sessions",
    "session_validity_threshold",
    "access_token_ttl_seconds",
    "refresh_token_ttl_seconds",
    "device_token_ttl_seconds",
    "location_token_ttl_seconds",
    "biometric_token_ttl_seconds",
    "max_refresh_count",
    "location_radius_meters",
    "max_devices_per_user",
    "device_expiry_days",
    "biometric_enroll_timeout_seconds",
    "biometric_auth_timeout_seconds",
    "audit_retention_days",
    "audit_batch_size",
    "audit_flush_interval_seconds",
    "cleanup_interval_seconds",
)


class Settings(BaseModel):
    """Runtime settings for the PIN authentication and mobile session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/pinguard", "DATABASE_URL"
    )
    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviours; permits running without Redis.",
    )
    build_sha: str | None = env_field(None, "BUILD_SHA")

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("pinguard", "JWT_ISSUER")
    jwt_audience: str = env_field("mobile-app", "JWT_AUDIENCE")

    # PIN policy
    pin_hash_time_cost: int = env_field(
        3, "PIN_HASH_TIME_COST", description="argon2id iterations per PIN hash"
    )
    pin_hash_memory_cost: int = env_field(
        65536, "PIN_HASH_MEMORY_COST", description="argon2id memory cost in KiB"
    )
    pin_hash_parallelism: int = env_field(4, "PIN_HASH_PARALLELISM")
    pin_min_strength: PinStrength = env_field(PinStrength.MEDIUM, "PIN_MIN_STRENGTH")
    pin_expiry_days: int = env_field(90, "PIN_EXPIRY_DAYS")
    pin_generation_max_attempts: int = env_field(100, "PIN_GENERATION_MAX_ATTEMPTS")

    # Lockout
    pin_max_attempts: int = env_field(5, "PIN_MAX_ATTEMPTS")
    lockout_base_minutes: int = env_field(15, "LOCKOUT_BASE_MINUTES")
    lockout_max_multiplier: int = env_field(
        64,
        "LOCKOUT_MAX_MULTIPLIER",
        description="Cap on the exponential lockout multiplier; must be a power of two",
    )
    lockout_window_minutes: int = env_field(60, "LOCKOUT_WINDOW_MINUTES")
    attempt_retention_hours: int = env_field(24, "ATTEMPT_RETENTION_HOURS")
    brute_force_attempt_threshold: int = env_field(5, "BRUTE_FORCE_ATTEMPT_THRESHOLD")
    brute_force_risk_threshold: int = env_field(50, "BRUTE_FORCE_RISK_THRESHOLD")
    operating_hours_start: int = env_field(6, "OPERATING_HOURS_START")
    operating_hours_end: int = env_field(22, "OPERATING_HOURS_END")

    # Sessions
    session_duration_minutes: int = env_field(8 * 60, "SESSION_DURATION_MINUTES")
    session_idle_timeout_minutes: int = env_field(30, "SESSION_IDLE_TIMEOUT_MINUTES")
    break_idle_timeout_minutes: int = env_field(
        90,
        "BREAK_IDLE_TIMEOUT_MINUTES",
        description="Idle timeout applied to break_extended sessions inside a break window",
    )
    manager_override_duration_minutes: int = env_field(
        60, "MANAGER_OVERRIDE_DURATION_MINUTES"
    )
    max_concurrent_sessions: int = env_field(1, "MAX_CONCURRENT_SESSIONS")
    manager_override_max_sessions: int = env_field(3, "MANAGER_OVERRIDE_MAX_SESSIONS")
    session_validity_threshold: int = env_field(50, "SESSION_VALIDITY_THRESHOLD")

    # Tokens
    access_token_ttl_seconds: int = env_field(3600, "ACCESS_TOKEN_TTL_SECONDS")
    refresh_token_ttl_seconds: int = env_field(8 * 3600, "REFRESH_TOKEN_TTL_SECONDS")
    device_token_ttl_seconds: int = env_field(24 * 3600, "DEVICE_TOKEN_TTL_SECONDS")
    location_token_ttl_seconds: int = env_field(2 * 3600, "LOCATION_TOKEN_TTL_SECONDS")
    biometric_token_ttl_seconds: int = env_field(1800, "BIOMETRIC_TOKEN_TTL_SECONDS")
    max_refresh_count: int = env_field(
        3, "MAX_REFRESH_COUNT", description="Usage cap applied to refresh tokens"
    )
    location_radius_meters: int = env_field(100, "LOCATION_RADIUS_METERS")
    trusted_networks: list[str] = env_field(
        [],
        "TRUSTED_NETWORKS",
        description="CIDR allowlist applied to high and critical tokens; empty disables it",
    )

    # Devices
    max_devices_per_user: int = env_field(5, "MAX_DEVICES_PER_USER")
    device_expiry_days: int = env_field(30, "DEVICE_EXPIRY_DAYS")

    # Biometrics
    biometric_enroll_timeout_seconds: int = env_field(60, "BIOMETRIC_ENROLL_TIMEOUT_SECONDS")
    biometric_auth_timeout_seconds: int = env_field(30, "BIOMETRIC_AUTH_TIMEOUT_SECONDS")
    biometric_min_confidence: float = env_field(0.8, "BIOMETRIC_MIN_CONFIDENCE")
    biometric_encryption_key: str | None = env_field(None, "BIOMETRIC_ENCRYPTION_KEY")

    # Audit
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS")
    audit_batch_size: int = env_field(50, "AUDIT_BATCH_SIZE")
    audit_flush_interval_seconds: int = env_field(5, "AUDIT_FLUSH_INTERVAL_SECONDS")

    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("pin_min_strength", mode="before")
    @classmethod
    def _validate_min_strength(cls, value: Any) -> PinStrength:
        if isinstance(value, str):
            value = value.strip().lower()
        return PinStrength(value)

    @field_validator("trusted_networks", mode="before")
    @classmethod
    def _parse_trusted_networks(cls, value: Any) -> list[str]:
        if value is None or value == "":
            return []
        if isinstance(value, str):
            value = [part.strip() for part in value.split(",") if part.strip()]
        for entry in value:
            # Raises ValueError on malformed CIDRs
            ip_network(entry, strict=False)
        return list(value)

    @field_validator("jwt_secret")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if not value:
            raise ValueError("JWT_SECRET must be set")
        if len(value) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters")
        return value

    @field_validator("biometric_min_confidence")
    @classmethod
    def _validate_confidence(cls, value: float) -> float:
        if not 0.0 < value <= 1.0:
            raise ValueError("BIOMETRIC_MIN_CONFIDENCE must be within (0, 1]")
        return value

    @field_validator("operating_hours_start", "operating_hours_end")
    @classmethod
    def _validate_hour(cls, value: int) -> int:
        if not 0 <= value <= 23:
            raise ValueError("operating hours must be within 0..23")
        return value

    @model_validator(mode="after")
    def _validate_positive(self) -> "Settings":
        for name in _POSITIVE_INT_FIELDS:
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer")
        multiplier = self.lockout_max_multiplier
        if multiplier & (multiplier - 1):
            raise ValueError("LOCKOUT_MAX_MULTIPLIER must be a power of two")
        if self.session_validity_threshold > 100:
            raise ValueError("SESSION_VALIDITY_THRESHOLD must be at most 100")
        return self


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
