from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Accounts and credentials
# ---------------------------------------------------------------------------


@dataclass
class User:
    id: str
    identifier: str
    display_name: Optional[str] = None
    role: str = "staff"
    restaurant_id: str = "default"
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None
    meta: Dict | None = None


@dataclass
class PinCredential:
    user_id: str
    pin_hash: str
    algo: str = "argon2id"
    strength: str = "medium"
    changed_at: Optional[datetime] = field(default_factory=utcnow)


@dataclass
class AttemptRecord:
    """Failed-attempt counter for one credential+origin key."""

    key: str
    count: int = 0
    window_start: datetime = field(default_factory=utcnow)
    last_attempt: datetime = field(default_factory=utcnow)
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


# ---------------------------------------------------------------------------
# Devices and biometrics
# ---------------------------------------------------------------------------


class DeviceTrust(str, Enum):
    UNTRUSTED = "untrusted"
    PENDING = "pending"
    TRUSTED = "trusted"
    REVOKED = "revoked"


@dataclass
class DeviceRecord:
    id: str
    user_id: str
    fingerprint: str
    trust_state: DeviceTrust = DeviceTrust.PENDING
    name: Optional[str] = None
    device_type: str = "desktop"
    registered_at: datetime = field(default_factory=utcnow)
    last_seen_at: datetime = field(default_factory=utcnow)
    trusted_by: Optional[str] = None
    meta: Dict | None = None

    @property
    def is_trusted(self) -> bool:
        return self.trust_state == DeviceTrust.TRUSTED


@dataclass
class BiometricEnrollment:
    id: str
    user_id: str
    device_id: str
    biometric_type: str
    encrypted_template: str
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: Optional[datetime] = None


@dataclass
class BiometricChallenge:
    challenge: str
    user_id: str
    device_id: str
    purpose: str
    expires_at: datetime
    biometric_type: Optional[str] = None


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


@dataclass
class AuditEvent:
    event_type: str
    severity: str
    restaurant_id: str = ""
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)


@dataclass
class AuditQuery:
    restaurant_id: Optional[str] = None
    user_id: Optional[str] = None
    event_types: List[str] = field(default_factory=list)
    severities: List[str] = field(default_factory=list)
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = 50
    offset: int = 0

    def matches(self, event: AuditEvent) -> bool:
        if self.restaurant_id and event.restaurant_id != self.restaurant_id:
            return False
        if self.user_id and event.user_id != self.user_id:
            return False
        if self.event_types and event.event_type not in self.event_types:
            return False
        if self.severities and event.severity not in self.severities:
            return False
        if self.resource_type and event.resource_type != self.resource_type:
            return False
        if self.resource_id and event.resource_id != self.resource_id:
            return False
        if self.date_from and event.created_at < self.date_from:
            return False
        if self.date_to and event.created_at > self.date_to:
            return False
        return True


# ---------------------------------------------------------------------------
# Tokens
# ---------------------------------------------------------------------------


class TokenType(str, Enum):
    ACCESS = "access_token"
    REFRESH = "refresh_token"
    DEVICE = "device_token"
    LOCATION = "location_token"
    BIOMETRIC = "biometric_token"
    SHIFT = "shift_token"


class SecurityLevel(str, Enum):
    BASIC = "basic"
    ENHANCED = "enhanced"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _LEVEL_ORDER.index(self)

    def raised(self, steps: int = 1) -> "SecurityLevel":
        return _LEVEL_ORDER[min(len(_LEVEL_ORDER) - 1, self.rank + steps)]


_LEVEL_ORDER = [
    SecurityLevel.BASIC,
    SecurityLevel.ENHANCED,
    SecurityLevel.HIGH,
    SecurityLevel.CRITICAL,
]


class TokenState(str, Enum):
    ISSUED = "issued"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"
    USAGE_EXHAUSTED = "usage_exhausted"

    @property
    def is_terminal(self) -> bool:
        return self in (TokenState.EXPIRED, TokenState.REVOKED, TokenState.USAGE_EXHAUSTED)


@dataclass
class DeviceBinding:
    device_id: str
    fingerprint: str
    hardware_attestation: Optional[str] = None


@dataclass
class LocationBinding:
    restaurant_id: str
    radius_meters: int
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass
class BiometricBinding:
    required: bool
    method: str
    last_auth_at: datetime
    confidence: float


@dataclass
class TimeWindow:
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass
class TokenRestrictions:
    ip_allowlist: List[str] = field(default_factory=list)
    time_windows: List[TimeWindow] = field(default_factory=list)
    feature_flags: List[str] = field(default_factory=list)
    role_gates: List[str] = field(default_factory=list)


@dataclass
class MobileToken:
    id: str
    token_type: TokenType
    value: str
    session_id: str
    subject: str
    issuer: str
    audience: str
    security_level: SecurityLevel
    issued_at: datetime
    expires_at: datetime
    device_binding: DeviceBinding
    scope: List[str] = field(default_factory=list)
    usage_count: int = 0
    max_usage: Optional[int] = None
    last_used_at: Optional[datetime] = None
    state: TokenState = TokenState.ISSUED
    location_binding: Optional[LocationBinding] = None
    biometric_binding: Optional[BiometricBinding] = None
    restrictions: TokenRestrictions = field(default_factory=TokenRestrictions)
    risk_score: int = 0
    algorithm: str = "HS256"
    meta: Dict | None = None

    def usage_remaining(self) -> Optional[int]:
        if self.max_usage is None:
            return None
        return max(0, self.max_usage - self.usage_count)


# ---------------------------------------------------------------------------
# Mobile sessions
# ---------------------------------------------------------------------------


class SessionType(str, Enum):
    STANDARD = "standard"
    SHIFT_BASED = "shift_based"
    BREAK_EXTENDED = "break_extended"
    MANAGER_OVERRIDE = "manager_override"
    TRAINING = "training_mode"
    AUDIT = "audit_session"


class SessionState(str, Enum):
    ACTIVE = "active"
    REFRESHING = "refreshing"
    TERMINATED = "terminated"


@dataclass
class DeviceInfo:
    device_id: str
    fingerprint: str
    device_type: str = "tablet"
    os_type: str = "other"
    app_version: Optional[str] = None
    trusted: bool = False
    hardware_attestation: Optional[str] = None


@dataclass
class LocationInfo:
    restaurant_id: str
    verified: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    workstation_id: Optional[str] = None
    wifi_ssid: Optional[str] = None


@dataclass
class ShiftWindow:
    start: datetime
    end: datetime
    breaks: List[TimeWindow] = field(default_factory=list)
    active: bool = True
    shift_id: Optional[str] = None

    def in_break(self, moment: datetime) -> bool:
        return any(window.contains(moment) for window in self.breaks)


@dataclass
class BiometricState:
    enabled: bool = False
    last_auth_at: Optional[datetime] = None
    method: Optional[str] = None
    confidence: Optional[float] = None


@dataclass
class NetworkInfo:
    connection_type: str = "wifi"
    is_secure: bool = True
    vpn_active: bool = False
    trust_score: int = 80
    ip_address: Optional[str] = None


@dataclass
class MobileContext:
    device: DeviceInfo
    location: LocationInfo
    shift: Optional[ShiftWindow] = None
    biometric: BiometricState = field(default_factory=BiometricState)
    network: NetworkInfo = field(default_factory=NetworkInfo)
    user_agent: Optional[str] = None


@dataclass
class SessionPolicy:
    location_binding: bool = True
    biometric_required: bool = False
    network_restrictions: List[str] = field(default_factory=list)
    time_restrictions: List[TimeWindow] = field(default_factory=list)
    max_concurrent_sessions: int = 1
    idle_timeout_minutes: int = 30
    read_only: bool = False


@dataclass
class CompliancePolicy:
    retention_days: int = 90
    audit_required: bool = True
    classification: str = "confidential"
    backup_policy: str = "encrypted"


@dataclass
class PerformanceSnapshot:
    connection_quality: str = "good"
    latency_ms: int = 50
    bandwidth_kbps: int = 1000
    battery_level: Optional[int] = None


@dataclass
class MobileSession:
    id: str
    user_id: str
    restaurant_id: str
    role: str
    session_type: SessionType
    context: MobileContext
    security_level: SecurityLevel
    policy: SessionPolicy
    compliance: CompliancePolicy
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    token_ids: Dict[str, str] = field(default_factory=dict)
    performance: PerformanceSnapshot = field(default_factory=PerformanceSnapshot)
    state: SessionState = SessionState.ACTIVE
    login_method: str = "pin"
    refresh_count: int = 0
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[str] = None
    meta: Dict | None = None

    @classmethod
    def new(
        cls,
        user_id: str,
        restaurant_id: str,
        role: str,
        session_type: SessionType,
        context: MobileContext,
        *,
        security_level: SecurityLevel,
        policy: SessionPolicy,
        compliance: CompliancePolicy,
        ttl_minutes: int,
        login_method: str = "pin",
        expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> "MobileSession":
        now = now or utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            restaurant_id=restaurant_id,
            role=role,
            session_type=session_type,
            context=context,
            security_level=security_level,
            policy=policy,
            compliance=compliance,
            created_at=now,
            expires_at=expires_at or now + timedelta(minutes=ttl_minutes),
            last_activity_at=now,
            login_method=login_method,
        )

    @property
    def is_active(self) -> bool:
        return self.state != SessionState.TERMINATED
