"""Common storage utilities shared between memory and postgres implementations.

Nested session and token structures are persisted as JSON documents; the
helpers here turn the dataclass models into JSON-safe dicts and back so both
backends (and the Redis session pointer cache) agree on one wire shape.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from ipaddress import ip_address
from typing import Any, Dict, List, Optional

from pinguard.storage.models import (
    BiometricBinding,
    BiometricState,
    CompliancePolicy,
    DeviceBinding,
    DeviceInfo,
    LocationBinding,
    LocationInfo,
    MobileContext,
    MobileSession,
    MobileToken,
    NetworkInfo,
    PerformanceSnapshot,
    SecurityLevel,
    SessionPolicy,
    SessionState,
    SessionType,
    ShiftWindow,
    TimeWindow,
    TokenRestrictions,
    TokenState,
    TokenType,
)


# ============================================================================
# KEY HELPERS
# ============================================================================

def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


def attempt_key(identifier: str, fingerprint: str) -> str:
    """Collision-resistant lockout key for one credential+origin pair."""
    raw = f"{normalize_identifier(identifier)}|{fingerprint or ''}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def parse_ip_address(raw_ip: Any) -> Optional[Any]:
    """Parse an IP address, returning None for empty or malformed input."""
    if not raw_ip:
        return None
    try:
        return ip_address(str(raw_ip).strip())
    except ValueError:
        return None


# ============================================================================
# DATETIME HELPERS
# ============================================================================

def dt_to_str(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def str_to_dt(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _windows_to_list(windows: List[TimeWindow]) -> List[dict]:
    return [{"start": dt_to_str(w.start), "end": dt_to_str(w.end)} for w in windows]


def _windows_from_list(raw: Optional[List[dict]]) -> List[TimeWindow]:
    return [TimeWindow(start=str_to_dt(w["start"]), end=str_to_dt(w["end"])) for w in raw or []]


# ============================================================================
# TOKEN SERIALISATION
# ============================================================================

def token_to_dict(token: MobileToken) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "id": token.id,
        "token_type": token.token_type.value,
        "value": token.value,
        "session_id": token.session_id,
        "subject": token.subject,
        "issuer": token.issuer,
        "audience": token.audience,
        "security_level": token.security_level.value,
        "issued_at": dt_to_str(token.issued_at),
        "expires_at": dt_to_str(token.expires_at),
        "scope": list(token.scope),
        "usage_count": token.usage_count,
        "max_usage": token.max_usage,
        "last_used_at": dt_to_str(token.last_used_at),
        "state": token.state.value,
        "device_binding": {
            "device_id": token.device_binding.device_id,
            "fingerprint": token.device_binding.fingerprint,
            "hardware_attestation": token.device_binding.hardware_attestation,
        },
        "location_binding": None,
        "biometric_binding": None,
        "restrictions": {
            "ip_allowlist": list(token.restrictions.ip_allowlist),
            "time_windows": _windows_to_list(token.restrictions.time_windows),
            "feature_flags": list(token.restrictions.feature_flags),
            "role_gates": list(token.restrictions.role_gates),
        },
        "risk_score": token.risk_score,
        "algorithm": token.algorithm,
        "meta": token.meta,
    }
    if token.location_binding:
        lb = token.location_binding
        data["location_binding"] = {
            "restaurant_id": lb.restaurant_id,
            "radius_meters": lb.radius_meters,
            "latitude": lb.latitude,
            "longitude": lb.longitude,
        }
    if token.biometric_binding:
        bb = token.biometric_binding
        data["biometric_binding"] = {
            "required": bb.required,
            "method": bb.method,
            "last_auth_at": dt_to_str(bb.last_auth_at),
            "confidence": bb.confidence,
        }
    return data


def token_from_dict(data: Dict[str, Any]) -> MobileToken:
    restrictions = data.get("restrictions") or {}
    location = data.get("location_binding")
    biometric = data.get("biometric_binding")
    return MobileToken(
        id=data["id"],
        token_type=TokenType(data["token_type"]),
        value=data["value"],
        session_id=data["session_id"],
        subject=data["subject"],
        issuer=data["issuer"],
        audience=data["audience"],
        security_level=SecurityLevel(data["security_level"]),
        issued_at=str_to_dt(data["issued_at"]),
        expires_at=str_to_dt(data["expires_at"]),
        device_binding=DeviceBinding(**data["device_binding"]),
        scope=list(data.get("scope") or []),
        usage_count=int(data.get("usage_count") or 0),
        max_usage=data.get("max_usage"),
        last_used_at=str_to_dt(data.get("last_used_at")),
        state=TokenState(data.get("state") or TokenState.ISSUED.value),
        location_binding=LocationBinding(**location) if location else None,
        biometric_binding=(
            BiometricBinding(
                required=biometric["required"],
                method=biometric["method"],
                last_auth_at=str_to_dt(biometric["last_auth_at"]),
                confidence=biometric["confidence"],
            )
            if biometric
            else None
        ),
        restrictions=TokenRestrictions(
            ip_allowlist=list(restrictions.get("ip_allowlist") or []),
            time_windows=_windows_from_list(restrictions.get("time_windows")),
            feature_flags=list(restrictions.get("feature_flags") or []),
            role_gates=list(restrictions.get("role_gates") or []),
        ),
        risk_score=int(data.get("risk_score") or 0),
        algorithm=data.get("algorithm") or "HS256",
        meta=data.get("meta"),
    )


# ============================================================================
# SESSION SERIALISATION
# ============================================================================

def context_to_dict(context: MobileContext) -> Dict[str, Any]:
    shift = context.shift
    return {
        "device": dict(vars(context.device)),
        "location": dict(vars(context.location)),
        "shift": (
            {
                "start": dt_to_str(shift.start),
                "end": dt_to_str(shift.end),
                "breaks": _windows_to_list(shift.breaks),
                "active": shift.active,
                "shift_id": shift.shift_id,
            }
            if shift
            else None
        ),
        "biometric": {
            "enabled": context.biometric.enabled,
            "last_auth_at": dt_to_str(context.biometric.last_auth_at),
            "method": context.biometric.method,
            "confidence": context.biometric.confidence,
        },
        "network": dict(vars(context.network)),
        "user_agent": context.user_agent,
    }


def context_from_dict(data: Dict[str, Any]) -> MobileContext:
    shift = data.get("shift")
    biometric = data.get("biometric") or {}
    return MobileContext(
        device=DeviceInfo(**data["device"]),
        location=LocationInfo(**data["location"]),
        shift=(
            ShiftWindow(
                start=str_to_dt(shift["start"]),
                end=str_to_dt(shift["end"]),
                breaks=_windows_from_list(shift.get("breaks")),
                active=shift.get("active", True),
                shift_id=shift.get("shift_id"),
            )
            if shift
            else None
        ),
        biometric=BiometricState(
            enabled=biometric.get("enabled", False),
            last_auth_at=str_to_dt(biometric.get("last_auth_at")),
            method=biometric.get("method"),
            confidence=biometric.get("confidence"),
        ),
        network=NetworkInfo(**(data.get("network") or {})),
        user_agent=data.get("user_agent"),
    )


def session_to_dict(session: MobileSession) -> Dict[str, Any]:
    policy = session.policy
    return {
        "id": session.id,
        "user_id": session.user_id,
        "restaurant_id": session.restaurant_id,
        "role": session.role,
        "session_type": session.session_type.value,
        "context": context_to_dict(session.context),
        "security_level": session.security_level.value,
        "policy": {
            "location_binding": policy.location_binding,
            "biometric_required": policy.biometric_required,
            "network_restrictions": list(policy.network_restrictions),
            "time_restrictions": _windows_to_list(policy.time_restrictions),
            "max_concurrent_sessions": policy.max_concurrent_sessions,
            "idle_timeout_minutes": policy.idle_timeout_minutes,
            "read_only": policy.read_only,
        },
        "compliance": dict(vars(session.compliance)),
        "performance": dict(vars(session.performance)),
        "created_at": dt_to_str(session.created_at),
        "expires_at": dt_to_str(session.expires_at),
        "last_activity_at": dt_to_str(session.last_activity_at),
        "token_ids": dict(session.token_ids),
        "state": session.state.value,
        "login_method": session.login_method,
        "refresh_count": session.refresh_count,
        "terminated_at": dt_to_str(session.terminated_at),
        "termination_reason": session.termination_reason,
        "meta": session.meta,
    }


def session_from_dict(data: Dict[str, Any]) -> MobileSession:
    policy = data.get("policy") or {}
    return MobileSession(
        id=data["id"],
        user_id=data["user_id"],
        restaurant_id=data["restaurant_id"],
        role=data["role"],
        session_type=SessionType(data["session_type"]),
        context=context_from_dict(data["context"]),
        security_level=SecurityLevel(data["security_level"]),
        policy=SessionPolicy(
            location_binding=policy.get("location_binding", True),
            biometric_required=policy.get("biometric_required", False),
            network_restrictions=list(policy.get("network_restrictions") or []),
            time_restrictions=_windows_from_list(policy.get("time_restrictions")),
            max_concurrent_sessions=policy.get("max_concurrent_sessions", 1),
            idle_timeout_minutes=policy.get("idle_timeout_minutes", 30),
            read_only=policy.get("read_only", False),
        ),
        compliance=CompliancePolicy(**(data.get("compliance") or {})),
        performance=PerformanceSnapshot(**(data.get("performance") or {})),
        created_at=str_to_dt(data["created_at"]),
        expires_at=str_to_dt(data["expires_at"]),
        last_activity_at=str_to_dt(data["last_activity_at"]),
        token_ids=dict(data.get("token_ids") or {}),
        state=SessionState(data.get("state") or SessionState.ACTIVE.value),
        login_method=data.get("login_method") or "pin",
        refresh_count=int(data.get("refresh_count") or 0),
        terminated_at=str_to_dt(data.get("terminated_at")),
        termination_reason=data.get("termination_reason"),
        meta=data.get("meta"),
    )


def parse_json_meta(raw_meta: Any) -> Optional[Dict]:
    """Parse a JSON column that may arrive as a string or an already-decoded dict."""
    if raw_meta is None:
        return None
    if isinstance(raw_meta, dict):
        return raw_meta
    try:
        parsed = json.loads(raw_meta)
    except (json.JSONDecodeError, TypeError):
        return None
    return parsed if isinstance(parsed, dict) else None
