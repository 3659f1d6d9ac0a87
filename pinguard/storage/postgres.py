from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from pinguard.logging import get_logger
from pinguard.storage.common import (
    dt_to_str,
    normalize_identifier,
    parse_json_meta,
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
    DeviceTrust,
    MobileSession,
    MobileToken,
    PinCredential,
    SessionState,
    TokenState,
    User,
    new_id,
    utcnow,
)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS staff_user (
        id TEXT PRIMARY KEY,
        identifier TEXT NOT NULL UNIQUE,
        display_name TEXT,
        role TEXT NOT NULL DEFAULT 'staff',
        restaurant_id TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        meta JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS pin_credential (
        user_id TEXT PRIMARY KEY REFERENCES staff_user(id) ON DELETE CASCADE,
        pin_hash TEXT NOT NULL,
        algo TEXT NOT NULL,
        strength TEXT NOT NULL,
        changed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS staff_device (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES staff_user(id) ON DELETE CASCADE,
        fingerprint TEXT NOT NULL,
        trust_state TEXT NOT NULL,
        name TEXT,
        device_type TEXT NOT NULL,
        registered_at TIMESTAMPTZ NOT NULL,
        last_seen_at TIMESTAMPTZ NOT NULL,
        trusted_by TEXT,
        meta JSONB,
        UNIQUE (user_id, fingerprint)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS biometric_enrollment (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES staff_user(id) ON DELETE CASCADE,
        device_id TEXT NOT NULL REFERENCES staff_device(id) ON DELETE CASCADE,
        biometric_type TEXT NOT NULL,
        encrypted_template TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        last_used_at TIMESTAMPTZ,
        UNIQUE (user_id, device_id, biometric_type)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS security_audit_event (
        id TEXT PRIMARY KEY,
        event_type TEXT NOT NULL,
        severity TEXT NOT NULL,
        restaurant_id TEXT NOT NULL DEFAULT '',
        user_id TEXT,
        session_id TEXT,
        device_id TEXT,
        resource_type TEXT,
        resource_id TEXT,
        ip_address TEXT,
        user_agent TEXT,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS security_audit_event_restaurant_created_idx
        ON security_audit_event (restaurant_id, created_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS mobile_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        state TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        body JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS mobile_token (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL,
        token_type TEXT NOT NULL,
        state TEXT NOT NULL,
        usage_count INTEGER NOT NULL DEFAULT 0,
        max_usage INTEGER,
        last_used_at TIMESTAMPTZ,
        expires_at TIMESTAMPTZ NOT NULL,
        body JSONB NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS mobile_token_session_idx ON mobile_token (session_id)",
)

_LIVE_TOKEN_STATES = (TokenState.ISSUED.value, TokenState.ACTIVE.value)


class PostgresStore:
    """Postgres-backed store for accounts, devices, tokens, sessions and audit events."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create tables and indexes idempotently."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready", tables=6)

    def close(self) -> None:
        self.pool.close()

    # ------------------------------------------------------------------
    # row mappers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            identifier=row["identifier"],
            display_name=row.get("display_name"),
            role=row["role"],
            restaurant_id=row["restaurant_id"],
            is_active=row["is_active"],
            created_at=row["created_at"],
            last_login_at=row.get("last_login_at"),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _row_to_device(row: Dict[str, Any]) -> DeviceRecord:
        return DeviceRecord(
            id=row["id"],
            user_id=row["user_id"],
            fingerprint=row["fingerprint"],
            trust_state=DeviceTrust(row["trust_state"]),
            name=row.get("name"),
            device_type=row["device_type"],
            registered_at=row["registered_at"],
            last_seen_at=row["last_seen_at"],
            trusted_by=row.get("trusted_by"),
            meta=parse_json_meta(row.get("meta")),
        )

    @staticmethod
    def _row_to_enrollment(row: Dict[str, Any]) -> BiometricEnrollment:
        return BiometricEnrollment(
            id=row["id"],
            user_id=row["user_id"],
            device_id=row["device_id"],
            biometric_type=row["biometric_type"],
            encrypted_template=row["encrypted_template"],
            created_at=row["created_at"],
            last_used_at=row.get("last_used_at"),
        )

    @staticmethod
    def _row_to_audit(row: Dict[str, Any]) -> AuditEvent:
        return AuditEvent(
            id=row["id"],
            event_type=row["event_type"],
            severity=row["severity"],
            restaurant_id=row["restaurant_id"],
            user_id=row.get("user_id"),
            session_id=row.get("session_id"),
            device_id=row.get("device_id"),
            resource_type=row.get("resource_type"),
            resource_id=row.get("resource_id"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            metadata=parse_json_meta(row.get("metadata")) or {},
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_token(row: Dict[str, Any]) -> MobileToken:
        body = dict(parse_json_meta(row["body"]) or {})
        # Counter columns are authoritative over the JSON body
        body["usage_count"] = row["usage_count"]
        body["state"] = row["state"]
        body["last_used_at"] = dt_to_str(row.get("last_used_at"))
        return token_from_dict(body)

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> MobileSession:
        return session_from_dict(parse_json_meta(row["body"]) or {})

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
        meta: Optional[dict] = None,
    ) -> User:
        user = User(
            id=new_id(),
            identifier=normalize_identifier(identifier),
            display_name=display_name,
            role=role,
            restaurant_id=restaurant_id,
            is_active=is_active,
            meta=dict(meta or {}),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO staff_user (id, identifier, display_name, role, restaurant_id, is_active, created_at, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.identifier,
                        display_name,
                        role,
                        restaurant_id,
                        is_active,
                        user.created_at,
                        json.dumps(user.meta),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("identifier already exists", {"field": "identifier"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_identifier(self, identifier: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_user WHERE identifier = %s",
                (normalize_identifier(identifier),),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def list_users(
        self, restaurant_id: Optional[str] = None, limit: int = 100
    ) -> List[User]:
        with self._connect() as conn:
            if restaurant_id:
                rows = conn.execute(
                    "SELECT * FROM staff_user WHERE restaurant_id = %s ORDER BY created_at DESC LIMIT %s",
                    (restaurant_id, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM staff_user ORDER BY created_at DESC LIMIT %s", (limit,)
                ).fetchall()
        return [self._row_to_user(r) for r in rows]

    def update_last_login(self, user_id: str, when: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE staff_user SET last_login_at = %s WHERE id = %s",
                (when or utcnow(), user_id),
            )

    def save_pin_credential(
        self,
        user_id: str,
        pin_hash: str,
        *,
        algo: str = "argon2id",
        strength: str = "medium",
        changed_at: Optional[datetime] = None,
    ) -> PinCredential:
        credential = PinCredential(
            user_id=user_id,
            pin_hash=pin_hash,
            algo=algo,
            strength=strength,
            changed_at=changed_at or utcnow(),
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO pin_credential (user_id, pin_hash, algo, strength, changed_at)
                    VALUES (%s, %s, %s, %s, %s)
                    ON CONFLICT (user_id) DO UPDATE
                    SET pin_hash = EXCLUDED.pin_hash, algo = EXCLUDED.algo,
                        strength = EXCLUDED.strength, changed_at = EXCLUDED.changed_at
                    """,
                    (user_id, pin_hash, algo, strength, credential.changed_at),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"field": "user_id"})
        return credential

    def get_pin_credential(self, user_id: str) -> Optional[PinCredential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM pin_credential WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return PinCredential(
            user_id=row["user_id"],
            pin_hash=row["pin_hash"],
            algo=row["algo"],
            strength=row["strength"],
            changed_at=row.get("changed_at"),
        )

    # ------------------------------------------------------------------
    # devices
    # ------------------------------------------------------------------

    def save_device(self, device: DeviceRecord) -> DeviceRecord:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO staff_device (id, user_id, fingerprint, trust_state, name, device_type,
                                              registered_at, last_seen_at, trusted_by, meta)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET trust_state = EXCLUDED.trust_state, name = EXCLUDED.name,
                        device_type = EXCLUDED.device_type, last_seen_at = EXCLUDED.last_seen_at,
                        trusted_by = EXCLUDED.trusted_by, meta = EXCLUDED.meta
                    """,
                    (
                        device.id,
                        device.user_id,
                        device.fingerprint,
                        device.trust_state.value,
                        device.name,
                        device.device_type,
                        device.registered_at,
                        device.last_seen_at,
                        device.trusted_by,
                        json.dumps(device.meta) if device.meta else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("device already registered", {"field": "fingerprint"})
        return device

    def get_device(self, device_id: str) -> Optional[DeviceRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_device WHERE id = %s", (device_id,)
            ).fetchone()
        return self._row_to_device(row) if row else None

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[DeviceRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM staff_device WHERE user_id = %s AND fingerprint = %s",
                (user_id, fingerprint),
            ).fetchone()
        return self._row_to_device(row) if row else None

    def list_devices(self, user_id: str) -> List[DeviceRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM staff_device WHERE user_id = %s ORDER BY last_seen_at DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_device(r) for r in rows]

    def delete_device(self, device_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM staff_device WHERE id = %s", (device_id,))
            return cur.rowcount > 0

    def delete_devices_inactive_since(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM staff_device WHERE last_seen_at < %s", (cutoff,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # biometrics
    # ------------------------------------------------------------------

    def save_biometric_enrollment(
        self, enrollment: BiometricEnrollment
    ) -> BiometricEnrollment:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO biometric_enrollment (id, user_id, device_id, biometric_type, encrypted_template, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id, device_id, biometric_type) DO UPDATE
                SET id = EXCLUDED.id, encrypted_template = EXCLUDED.encrypted_template,
                    created_at = EXCLUDED.created_at, last_used_at = NULL
                """,
                (
                    enrollment.id,
                    enrollment.user_id,
                    enrollment.device_id,
                    enrollment.biometric_type,
                    enrollment.encrypted_template,
                    enrollment.created_at,
                ),
            )
        return enrollment

    def list_biometric_enrollments(
        self, user_id: str, device_id: Optional[str] = None
    ) -> List[BiometricEnrollment]:
        with self._connect() as conn:
            if device_id:
                rows = conn.execute(
                    "SELECT * FROM biometric_enrollment WHERE user_id = %s AND device_id = %s ORDER BY created_at DESC",
                    (user_id, device_id),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM biometric_enrollment WHERE user_id = %s ORDER BY created_at DESC",
                    (user_id,),
                ).fetchall()
        return [self._row_to_enrollment(r) for r in rows]

    def touch_biometric_enrollment(self, enrollment_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE biometric_enrollment SET last_used_at = %s WHERE id = %s",
                (when, enrollment_id),
            )

    def delete_biometric_enrollments(
        self, user_id: str, device_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if device_id:
                cur = conn.execute(
                    "DELETE FROM biometric_enrollment WHERE user_id = %s AND device_id = %s",
                    (user_id, device_id),
                )
            else:
                cur = conn.execute(
                    "DELETE FROM biometric_enrollment WHERE user_id = %s", (user_id,)
                )
            return cur.rowcount

    # ------------------------------------------------------------------
    # audit
    # ------------------------------------------------------------------

    def insert_audit_events(self, events: List[AuditEvent]) -> int:
        if not events:
            return 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO security_audit_event (id, event_type, severity, restaurant_id, user_id, session_id,
                                                      device_id, resource_type, resource_id, ip_address, user_agent,
                                                      metadata, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO NOTHING
                    """,
                    [
                        (
                            e.id,
                            e.event_type,
                            e.severity,
                            e.restaurant_id or "",
                            e.user_id,
                            e.session_id,
                            e.device_id,
                            e.resource_type,
                            e.resource_id,
                            e.ip_address,
                            e.user_agent,
                            json.dumps(e.metadata or {}, default=str),
                            e.created_at,
                        )
                        for e in events
                    ],
                )
        return len(events)

    def search_audit_events(self, query: AuditQuery) -> List[AuditEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if query.restaurant_id:
            clauses.append("restaurant_id = %s")
            params.append(query.restaurant_id)
        if query.user_id:
            clauses.append("user_id = %s")
            params.append(query.user_id)
        if query.event_types:
            clauses.append("event_type = ANY(%s)")
            params.append(list(query.event_types))
        if query.severities:
            clauses.append("severity = ANY(%s)")
            params.append(list(query.severities))
        if query.resource_type:
            clauses.append("resource_type = %s")
            params.append(query.resource_type)
        if query.resource_id:
            clauses.append("resource_id = %s")
            params.append(query.resource_id)
        if query.date_from:
            clauses.append("created_at >= %s")
            params.append(query.date_from)
        if query.date_to:
            clauses.append("created_at <= %s")
            params.append(query.date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([query.limit, query.offset])
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM security_audit_event {where} ORDER BY created_at DESC LIMIT %s OFFSET %s",
                params,
            ).fetchall()
        return [self._row_to_audit(r) for r in rows]

    def audit_events_since(
        self, restaurant_id: Optional[str], since: datetime
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if restaurant_id:
                rows = conn.execute(
                    "SELECT * FROM security_audit_event WHERE restaurant_id = %s AND created_at >= %s",
                    (restaurant_id, since),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM security_audit_event WHERE created_at >= %s", (since,)
                ).fetchall()
        return [self._row_to_audit(r) for r in rows]

    def delete_audit_events_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM security_audit_event WHERE created_at < %s", (cutoff,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # tokens
    # ------------------------------------------------------------------

    def save_token(self, token: MobileToken) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mobile_token (id, session_id, token_type, state, usage_count, max_usage,
                                          last_used_at, expires_at, body)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET state = EXCLUDED.state, usage_count = EXCLUDED.usage_count,
                    last_used_at = EXCLUDED.last_used_at, body = EXCLUDED.body
                """,
                (
                    token.id,
                    token.session_id,
                    token.token_type.value,
                    token.state.value,
                    token.usage_count,
                    token.max_usage,
                    token.last_used_at,
                    token.expires_at,
                    json.dumps(token_to_dict(token)),
                ),
            )

    def get_token(self, token_id: str) -> Optional[MobileToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM mobile_token WHERE id = %s", (token_id,)
            ).fetchone()
        return self._row_to_token(row) if row else None

    def list_session_tokens(self, session_id: str) -> List[MobileToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM mobile_token WHERE session_id = %s", (session_id,)
            ).fetchall()
        return [self._row_to_token(r) for r in rows]

    def consume_token_use(self, token_id: str, when: datetime) -> Optional[MobileToken]:
        """Bump the usage counter with a conditional UPDATE so the cap is atomic."""

        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE mobile_token
                SET usage_count = usage_count + 1, last_used_at = %s, state = %s
                WHERE id = %s
                  AND state = ANY(%s)
                  AND (max_usage IS NULL OR usage_count < max_usage)
                RETURNING *
                """,
                (when, TokenState.ACTIVE.value, token_id, list(_LIVE_TOKEN_STATES)),
            ).fetchone()
        return self._row_to_token(row) if row else None

    def set_token_state(self, token_id: str, state: TokenState) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE mobile_token SET state = %s WHERE id = %s AND state = ANY(%s)",
                (state.value, token_id, list(_LIVE_TOKEN_STATES)),
            )
            return cur.rowcount > 0

    def delete_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM mobile_token WHERE expires_at < %s", (cutoff,)
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------

    def save_session(self, session: MobileSession) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO mobile_session (id, user_id, state, expires_at, body)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET state = EXCLUDED.state, expires_at = EXCLUDED.expires_at, body = EXCLUDED.body
                """,
                (
                    session.id,
                    session.user_id,
                    session.state.value,
                    session.expires_at,
                    json.dumps(session_to_dict(session)),
                ),
            )

    def get_session(self, session_id: str) -> Optional[MobileSession]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT body FROM mobile_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[MobileSession]:
        sql = "SELECT body FROM mobile_session WHERE user_id = %s"
        params: List[Any] = [user_id]
        if active_only:
            sql += " AND state <> %s"
            params.append(SessionState.TERMINATED.value)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        sessions = [self._row_to_session(r) for r in rows]
        return sorted(sessions, key=lambda s: s.created_at)

    def list_active_sessions(self) -> List[MobileSession]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT body FROM mobile_session WHERE state <> %s",
                (SessionState.TERMINATED.value,),
            ).fetchall()
        return [self._row_to_session(r) for r in rows]
