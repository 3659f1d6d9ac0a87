from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from pinguard.logging import get_correlation_id
from pinguard.service.errors import ERROR_CODES
from pinguard.storage.models import SessionType


class ErrorBody(BaseModel):
    """Error envelope body; ``message`` is always the localized user-facing text."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in ERROR_CODES:
            return "server_error"
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


def _as_utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class BreakWindow(BaseModel):
    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)


class ShiftInfo(BaseModel):
    shift_id: Optional[str] = Field(default=None, max_length=128)
    start: datetime
    end: datetime
    breaks: List[BreakWindow] = Field(default_factory=list, max_length=10)

    @field_validator("start", "end")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _check_order(self):
        if self.end <= self.start:
            raise ValueError("shift end must be after its start")
        return self


class LocationReport(BaseModel):
    restaurant_id: Optional[str] = Field(default=None, max_length=128)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    workstation_id: Optional[str] = Field(default=None, max_length=128)
    wifi_ssid: Optional[str] = Field(default=None, max_length=64)


class NetworkReport(BaseModel):
    connection_type: Literal["wifi", "cellular", "ethernet", "other"] = "wifi"
    is_secure: bool = True
    vpn_active: bool = False


class LoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=128)
    # Format is checked by the service after the lockout gate
    pin: str = Field(..., max_length=16)
    device_fingerprint: str = Field(..., min_length=16, max_length=128)
    session_type: SessionType = SessionType.STANDARD
    os_type: str = Field(default="other", max_length=16)
    app_version: Optional[str] = Field(default=None, max_length=32)
    location: Optional[LocationReport] = None
    network: Optional[NetworkReport] = None
    shift: Optional[ShiftInfo] = None


class UserSummary(BaseModel):
    id: str
    role: str
    restaurant_id: str
    display_name: Optional[str] = None


class LoginResponse(BaseModel):
    session_id: str
    session_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_at: datetime
    session_expires_at: datetime
    security_level: str
    pin_change_required: bool = False
    user: UserSummary


class RefreshRequest(BaseModel):
    session_id: str = Field(..., max_length=128)
    refresh_token: str = Field(..., max_length=4096)


class RefreshResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: datetime


class LogoutRequest(BaseModel):
    session_token: Optional[str] = Field(default=None, max_length=4096)


class PinChangeRequest(BaseModel):
    current_pin: str = Field(..., max_length=16)
    new_pin: str = Field(..., max_length=16)
    confirm_pin: str = Field(..., max_length=16)


class PinCheckRequest(BaseModel):
    pin: str = Field(..., max_length=16)


class PinCheckResponse(BaseModel):
    is_valid: bool
    strength: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class DeviceResponse(BaseModel):
    id: str
    user_id: str
    trust_state: str
    name: Optional[str] = None
    device_type: str
    registered_at: datetime
    last_seen_at: datetime
    trusted_by: Optional[str] = None


class DeviceRevokeRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=256)


class UnlockRequest(BaseModel):
    identifier: str = Field(..., max_length=128)
    device_fingerprint: str = Field(..., max_length=128)
    reason: Optional[str] = Field(default=None, max_length=256)


class PlatformInfo(BaseModel):
    hardware_supported: bool = False
    permissions_granted: bool = False
    supported_types: List[Literal["fingerprint", "face-id", "voice", "iris"]] = Field(
        default_factory=list
    )


class BiometricChallengeRequest(BaseModel):
    purpose: Literal["enroll", "authenticate"] = "authenticate"
    identifier: Optional[str] = Field(default=None, max_length=128)
    device_fingerprint: Optional[str] = Field(default=None, max_length=128)


class BiometricChallengeResponse(BaseModel):
    challenge: str
    expires_at: datetime
    purpose: str


class BiometricEnrollRequest(BaseModel):
    pin: str = Field(..., max_length=16)
    challenge: str = Field(..., max_length=256)
    credential_id: str = Field(..., max_length=256)
    public_key_pem: str = Field(..., max_length=4096)
    signature: str = Field(..., max_length=512)
    biometric_type: Literal["fingerprint", "face-id", "voice", "iris"] = "fingerprint"
    platform: Optional[PlatformInfo] = None


class BiometricLoginRequest(BaseModel):
    identifier: str = Field(..., min_length=1, max_length=128)
    device_fingerprint: str = Field(..., min_length=16, max_length=128)
    challenge: str = Field(..., max_length=256)
    credential_id: str = Field(..., max_length=256)
    signature: str = Field(..., max_length=512)
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    session_type: SessionType = SessionType.STANDARD
    os_type: str = Field(default="other", max_length=16)
    app_version: Optional[str] = Field(default=None, max_length=32)
    location: Optional[LocationReport] = None
    network: Optional[NetworkReport] = None
    shift: Optional[ShiftInfo] = None


class SessionValidationResponse(BaseModel):
    valid: bool
    session_id: str
    security_score: int
    risk_factors: List[str]
    recommendations: List[str]
    actions: Dict[str, List[str]]
    compliance: Dict[str, Any]
    terminated: bool = False


class SessionSummary(BaseModel):
    id: str
    session_type: str
    security_level: str
    state: str
    device_id: str
    created_at: datetime
    expires_at: datetime
    last_activity_at: datetime
    read_only: bool = False


class AuditSearchRequest(BaseModel):
    user_id: Optional[str] = Field(default=None, max_length=128)
    event_types: List[str] = Field(default_factory=list, max_length=50)
    severities: List[Literal["low", "medium", "high", "critical"]] = Field(default_factory=list)
    resource_type: Optional[str] = Field(default=None, max_length=64)
    resource_id: Optional[str] = Field(default=None, max_length=128)
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class AuditEventResponse(BaseModel):
    id: str
    event_type: str
    severity: str
    restaurant_id: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    ip_address: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
