from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from pinguard.logging import get_logger
from pinguard.storage.common import (
    normalize_identifier,
    session_from_dict,
    session_to_dict,
    token_from_dict,
    token_to_dict,
)
from pinguard.storage.errors import ConstraintViolation
from pinguard.storage.models import (
    AuditEvent,
    AuditQuery,
    BiometricEnrollment,
    DeviceRecord,
    MobileSession,
    MobileToken,
    PinCredential,
    SessionState,
    TokenState,
    User,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments.

    Tokens and sessions are held in their serialised form so callers never
    share mutable objects with the store; every mutation is applied under
    ``_data_lock`` which makes read-modify-write operations atomic per key.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, PinCredential] = {}
        self.devices: Dict[str, DeviceRecord] = {}
        self.biometrics: Dict[str, BiometricEnrollment] = {}
        self.audit_events: List[AuditEvent] = []
        self.tokens: Dict[str, dict] = {}
        self.sessions: Dict[str, dict] = {}
        # RLock so helpers can nest acquisitions within one thread
        self._data_lock = threading.RLock()

    # ------------------------------------------------------------------
    # accounts
    # ------------------------------------------------------------------

    def create_user(
        self,
        identifier: str,
        display_name: Optional[str] = None,
        *,
        role: str = "staff",
        restaurant_id: str = "default",
        is_active: bool = True,
        meta: Optional[Dict] = None,
    ) -> User:
        normalized = normalize_identifier(identifier)
        with self._data_lock:
            if any(u.identifier == normalized for u in self.users.values()):
                raise ConstraintViolation(
                    "identifier already exists", {"field": "identifier"}
                )
            user = User(
                id=new_id(),
                identifier=normalized,
                display_name=display_name,
                role=role,
                restaurant_id=restaurant_id,
                is_active=is_active,
                meta=dict(meta or {}),
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        normalized = normalize_identifier(identifier)
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.identifier == normalized), None
            )
            return replace(user) if user else None

    def list_users(
        self, restaurant_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if not restaurant_id or u.restaurant_id == restaurant_id
            ]
        return sorted(results, key=lambda u: u.created_at, reverse=True)[:limit]

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if user:
                user.last_login_at = when or utcnow()

    def save_pin_credential(
        self,
        user_id: str,
        pin_hash: str,
        *,
        algo: str = "argon2id",
        strength: str = "medium",
        changed_at: Optional[datetime] = None,
    ) -> PinCredential:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"field": "user_id"})
            credential = PinCredential(
                user_id=user_id,
                pin_hash=pin_hash,
                algo=algo,
                strength=strength,
                changed_at=changed_at or utcnow(),
            )
            self.credentials[user_id] = credential
            return replace(credential)

    def get_pin_credential(self, user_id: str) -> Optional[PinCredential]:
        with self._data_lock:
            credential = self.credentials.get(user_id)
            return replace(credential) if credential else None

    # ------------------------------------------------------------------
    # devices
    # ------------------------------------------------------------------

    def save_device(self, device: DeviceRecord) -> DeviceRecord:
        with self._data_lock:
            clash = next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == device.user_id
                    and d.fingerprint == device.fingerprint
                    and d.id != device.id
                ),
                None,
            )
            if clash:
                raise ConstraintViolation(
                    "device already registered", {"field": "fingerprint"}
                )
            self.devices[device.id] = replace(device)
            return replace(device)

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._data_lock:
            device = self.devices.get(device_id)
            return replace(device) if device else None

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[DeviceRecord]:
        with self._data_lock:
            device = next(
                (
                    d
                    for d in self.devices.values()
                    if d.user_id == user_id and d.fingerprint == fingerprint
                ),
                None,
            )
            return replace(device) if device else None

    def list_devices(self, user_id: str) -> List[DeviceRecord]:
        with self._data_lock:
            devices = [replace(d) for d in self.devices.values() if d.user_id == user_id]
        return sorted(devices, key=lambda d: d.last_seen_at, reverse=True)

    def delete_device(self, device_id: str) -> bool:
        with self._data_lock:
            removed = self.devices.pop(device_id, None)
            if removed:
                for key in [
                    k for k, e in self.biometrics.items() if e.device_id == device_id
                ]:
                    self.biometrics.pop(key, None)
            return removed is not None

    def delete_devices_inactive_since(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [d.id for d in self.devices.values() if d.last_seen_at < cutoff]
            for device_id in stale:
                self.delete_device(device_id)
            return len(stale)

    # ------------------------------------------------------------------
    # biometrics
    # ------------------------------------------------------------------

    def save_biometric_enrollment(
        self, enrollment: BiometricEnrollment
    ) -> BiometricEnrollment:
        with self._data_lock:
            for key in [
                k
                for k, e in self.biometrics.items()
                if e.user_id == enrollment.user_id
                and e.device_id == enrollment.device_id
                and e.biometric_type == enrollment.biometric_type
            ]:
                self.biometrics.pop(key, None)
            self.biometrics[enrollment.id] = replace(enrollment)
            return replace(enrollment)

    def list_biometric_enrollments(
        self, user_id: str, device_id: Optional[str] = None
    ) -> List[BiometricEnrollment]:
        with self._data_lock:
            found = [
                replace(e)
                for e in self.biometrics.values()
                if e.user_id == user_id and (device_id is None or e.device_id == device_id)
            ]
        return sorted(found, key=lambda e: e.created_at, reverse=True)

    def touch_biometric_enrollment(self, enrollment_id: str, when: datetime) -> None:
        with self._data_lock:
            enrollment = self.biometrics.get(enrollment_id)
            if enrollment:
                enrollment.last_used_at = when

    def delete_biometric_enrollments(
        self, user_id: str, device_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            keys = [
                k
                for k, e in self.biometrics.items()
                if e.user_id == user_id and (device_id is None or e.device_id == device_id)
            ]
            for key in keys:
                self.biometrics.pop(key, None)
            return len(keys)

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def insert_audit_events(self, events: List[AuditEvent]) -> int:
        with self._data_lock:
            known = {e.id for e in self.audit_events}
            fresh = [replace(e) for e in events if e.id not in known]
            self.audit_events.extend(fresh)
            return len(fresh)

    def search_audit_events(self, query: AuditQuery) -> List[AuditEvent]:
        with self._data_lock:
            matched = [replace(e) for e in self.audit_events if query.matches(e)]
        matched.sort(key=lambda e: e.created_at, reverse=True)
        return matched[query.offset : query.offset + query.limit]

    def audit_events_since(
        self, restaurant_id: Optional[str], since: datetime
    ) -> List[AuditEvent]:
        with self._data_lock:
            return [
                replace(e)
                for e in self.audit_events
                if e.created_at >= since
                and (not restaurant_id or e.restaurant_id == restaurant_id)
            ]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            before = len(self.audit_events)
            self.audit_events = [e for e in self.audit_events if e.created_at >= cutoff]
            return before - len(self.audit_events)

    # ------------------------------------------------------------------
    # tokens
    # ------------------------------------------------------------------

    def save_token(self, token: MobileToken) -> None:
        with self._data_lock:
            self.tokens[token.id] = token_to_dict(token)

    def get_token(self, token_id: str) -> Optional[MobileToken]:
        with self._data_lock:
            raw = self.tokens.get(token_id)
            return token_from_dict(raw) if raw else None

    def list_session_tokens(self, session_id: str) -> List[MobileToken]:
        with self._data_lock:
            return [
                token_from_dict(raw)
                for raw in self.tokens.values()
                if raw["session_id"] == session_id
            ]

    def consume_token_use(self, token_id: str, when: datetime) -> Optional[MobileToken]:
        """Atomically bump the usage counter unless the cap is reached.

        Returns the updated token, or ``None`` when the token is missing,
        terminal, or already at its usage cap.
        """
        with self._data_lock:
            raw = self.tokens.get(token_id)
            if not raw or TokenState(raw["state"]).is_terminal:
                return None
            max_usage = raw.get("max_usage")
            if max_usage is not None and raw["usage_count"] >= max_usage:
                return None
            raw["usage_count"] += 1
            raw["last_used_at"] = when.isoformat()
            raw["state"] = TokenState.ACTIVE.value
            return token_from_dict(raw)

    def set_token_state(self, token_id: str, state: TokenState) -> bool:
        """Move a token into ``state``; terminal states are never left."""
        with self._data_lock:
            raw = self.tokens.get(token_id)
            if not raw:
                return False
            current = TokenState(raw["state"])
            if current.is_terminal:
                return False
            raw["state"] = state.value
            return True

    def delete_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                token_id
                for token_id, raw in self.tokens.items()
                if token_from_dict(raw).expires_at < cutoff
            ]
            for token_id in stale:
                self.tokens.pop(token_id, None)
            return len(stale)

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def save_session(self, session: MobileSession) -> None:
        with self._data_lock:
            self.sessions[session.id] = session_to_dict(session)

    def get_session(self, session_id: str) -> Optional[MobileSession]:
        with self._data_lock:
            raw = self.sessions.get(session_id)
            return session_from_dict(raw) if raw else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[MobileSession]:
        with self._data_lock:
            sessions = [
                session_from_dict(raw)
                for raw in self.sessions.values()
                if raw["user_id"] == user_id
                and (not active_only or raw["state"] != SessionState.TERMINATED.value)
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    def list_active_sessions(self) -> List[MobileSession]:
        with self._data_lock:
            return [
                session_from_dict(raw)
                for raw in self.sessions.values()
                if raw["state"] != SessionState.TERMINATED.value
            ]
