from __future__ import annotations

import asyncio
import threading
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.storage.models import AuditEvent, AuditQuery

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    PIN_AUTH_SUCCESS = "pin_auth_success"
    PIN_AUTH_FAILURE = "pin_auth_failure"
    PIN_RATE_LIMIT_EXCEEDED = "pin_rate_limit_exceeded"
    PIN_AUTH_ERROR = "pin_auth_error"
    PIN_CHANGED = "pin_changed"
    USER_LOGOUT = "user_logout"
    SESSION_CREATED = "session_created"
    SESSION_VALIDATED = "session_validated"
    SESSION_EXPIRED = "session_expired"
    SESSION_RESTRICTED = "session_restricted"
    SESSION_TERMINATED = "session_terminated"
    MANAGER_OVERRIDE_GRANTED = "manager_override_granted"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REVOKED = "token_revoked"
    DEVICE_REGISTRATION_SUCCESS = "device_registration_success"
    DEVICE_REGISTRATION_FAILED = "device_registration_failed"
    DEVICE_TRUST_GRANTED = "device_trust_granted"
    DEVICE_TRUST_REVOKED = "device_trust_revoked"
    DEVICE_REMOVED = "device_removed"
    BIOMETRIC_ENROLLED = "biometric_enrolled"
    BIOMETRIC_AUTH_SUCCESS = "biometric_auth_success"
    BIOMETRIC_AUTH_FAILURE = "biometric_auth_failure"
    BIOMETRIC_UNAVAILABLE = "biometric_unavailable"
    BIOMETRIC_DISABLED = "biometric_disabled"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    USER_PROFILE_UPDATED = "user_profile_updated"
    SOP_DOCUMENT_DELETED = "sop_document_deleted"
    SECURITY_VIOLATION = "security_violation"
    BRUTE_FORCE_DETECTED = "brute_force_detected"
    UNAUTHORIZED_ACCESS_ATTEMPT = "unauthorized_access_attempt"
    SYSTEM_CONFIGURATION_CHANGED = "system_configuration_changed"
    ADMIN_ACTION_PERFORMED = "admin_action_performed"
    DATA_RETENTION_CLEANUP = "data_retention_cleanup"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_CRITICAL_EVENTS = frozenset(
    {
        AuditEventType.BRUTE_FORCE_DETECTED,
        AuditEventType.UNAUTHORIZED_ACCESS_ATTEMPT,
        AuditEventType.SYSTEM_CONFIGURATION_CHANGED,
        AuditEventType.PIN_AUTH_ERROR,
    }
)
_HIGH_EVENTS = frozenset(
    {
        AuditEventType.PIN_RATE_LIMIT_EXCEEDED,
        AuditEventType.ACCOUNT_LOCKED,
        AuditEventType.SECURITY_VIOLATION,
        AuditEventType.DEVICE_REGISTRATION_FAILED,
        AuditEventType.SOP_DOCUMENT_DELETED,
        AuditEventType.MANAGER_OVERRIDE_GRANTED,
    }
)
_MEDIUM_EVENTS = frozenset(
    {
        AuditEventType.PIN_AUTH_FAILURE,
        AuditEventType.SESSION_EXPIRED,
        AuditEventType.SESSION_RESTRICTED,
        AuditEventType.DEVICE_TRUST_REVOKED,
        AuditEventType.USER_PROFILE_UPDATED,
        AuditEventType.ADMIN_ACTION_PERFORMED,
        AuditEventType.BIOMETRIC_AUTH_FAILURE,
        AuditEventType.PIN_CHANGED,
    }
)

SENSITIVE_FIELDS = frozenset(
    {
        "pin",
        "new_pin",
        "current_pin",
        "confirm_pin",
        "pin_hash",
        "password",
        "secret",
        "token",
        "access_token",
        "refresh_token",
        "authorization",
        "signature",
        "template",
        "public_key",
    }
)
MAX_METADATA_STRING = 1000


def classify_severity(event_type: str, metadata: Optional[Dict[str, Any]] = None) -> AuditSeverity:
    """Map an event type (plus risk hints in its metadata) to a severity."""

    try:
        kind = AuditEventType(event_type)
    except ValueError:
        kind = None
    if kind in _CRITICAL_EVENTS:
        return AuditSeverity.CRITICAL
    if kind in _HIGH_EVENTS:
        return AuditSeverity.HIGH
    metadata = metadata or {}
    failed = metadata.get("failed_attempts")
    risk = metadata.get("risk_score")
    if (isinstance(failed, (int, float)) and failed > 3) or (
        isinstance(risk, (int, float)) and risk > 70
    ):
        return AuditSeverity.HIGH
    if kind in _MEDIUM_EVENTS:
        return AuditSeverity.MEDIUM
    return AuditSeverity.LOW


def sanitize_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    sanitized: Dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        if str(key).lower() in SENSITIVE_FIELDS:
            sanitized[key] = "[REDACTED]"
        elif isinstance(value, dict):
            sanitized[key] = sanitize_metadata(value)
        elif isinstance(value, str) and len(value) > MAX_METADATA_STRING:
            sanitized[key] = value[:MAX_METADATA_STRING] + "...[TRUNCATED]"
        elif isinstance(value, Enum):
            sanitized[key] = value.value
        else:
            sanitized[key] = value
    return sanitized


class AuditLogger:
    """Queue-and-batch sink for security events.

    ``log`` never raises. High and critical events trigger an immediate
    flush; everything else waits for the batch threshold or the periodic
    flush driven by the application lifespan. A failed flush puts the batch
    back at the head of the queue so delivery stays at-least-once.
    """

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._queue: Deque[AuditEvent] = deque()
        self._queue_lock = threading.Lock()
        self._processing = False

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def pending(self) -> int:
        with self._queue_lock:
            return len(self._queue)

    async def log(
        self,
        event_type: AuditEventType | str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        restaurant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        device_id: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        severity: Optional[AuditSeverity | str] = None,
    ) -> Optional[AuditEvent]:
        try:
            kind = event_type.value if isinstance(event_type, AuditEventType) else str(event_type)
            level = AuditSeverity(severity) if severity else classify_severity(kind, metadata)
            event = AuditEvent(
                event_type=kind,
                severity=level.value,
                restaurant_id=restaurant_id or "",
                user_id=user_id,
                session_id=session_id,
                device_id=device_id,
                resource_type=resource_type,
                resource_id=resource_id,
                ip_address=ip_address,
                user_agent=user_agent,
                metadata=sanitize_metadata(metadata),
                created_at=self._now(),
            )
            with self._queue_lock:
                self._queue.append(event)
                queued = len(self._queue)
            if level in (AuditSeverity.HIGH, AuditSeverity.CRITICAL) or queued >= self.settings.audit_batch_size:
                await self.flush()
            return event
        except Exception as exc:
            logger.error("audit_log_failed", event_type=str(event_type), error=str(exc))
            return None

    async def flush(self) -> int:
        """Drain the queue in batches; returns how many events were persisted."""

        with self._queue_lock:
            if self._processing or not self._queue:
                return 0
            self._processing = True
        flushed = 0
        try:
            while True:
                with self._queue_lock:
                    size = min(self.settings.audit_batch_size, len(self._queue))
                    batch = [self._queue.popleft() for _ in range(size)]
                if not batch:
                    break
                try:
                    await asyncio.to_thread(self.store.insert_audit_events, batch)
                except Exception as exc:
                    with self._queue_lock:
                        self._queue.extendleft(reversed(batch))
                    logger.warning(
                        "audit_flush_failed", batch_size=len(batch), error=str(exc)
                    )
                    break
                flushed += len(batch)
        finally:
            with self._queue_lock:
                self._processing = False
        if flushed:
            logger.debug("audit_flushed", events=flushed)
        return flushed

    async def shutdown(self) -> int:
        """Best-effort final flush at process shutdown."""

        flushed = await self.flush()
        remaining = self.pending
        if remaining:
            logger.warning("audit_events_unflushed_at_shutdown", remaining=remaining)
        return flushed

    # read side ----------------------------------------------------------

    def search(self, query: AuditQuery) -> List[AuditEvent]:
        return self.store.search_audit_events(query)

    def get_stats(self, restaurant_id: Optional[str], days: int = 30) -> Dict[str, Any]:
        since = self._now() - timedelta(days=days)
        events = self.store.audit_events_since(restaurant_id, since)
        by_type = Counter(e.event_type for e in events)
        by_severity = Counter(e.severity for e in events)
        by_user = Counter(e.user_id for e in events if e.user_id)
        return {
            "total_events": len(events),
            "events_by_type": dict(by_type),
            "events_by_severity": dict(by_severity),
            "top_users": [
                {"user_id": user_id, "event_count": count}
                for user_id, count in by_user.most_common(10)
            ],
        }

    async def cleanup_old_logs(self, retention_days: Optional[int] = None) -> int:
        days = retention_days or self.settings.audit_retention_days
        cutoff = self._now() - timedelta(days=days)
        removed = await asyncio.to_thread(self.store.delete_audit_events_before, cutoff)
        if removed:
            await self.log(
                AuditEventType.DATA_RETENTION_CLEANUP,
                {"removed": removed, "retention_days": days},
            )
        logger.info("audit_retention_cleanup", removed=removed, retention_days=days)
        return removed
