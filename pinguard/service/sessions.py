from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.errors import (
    ForbiddenError,
    NotFoundError,
    SessionExpiredError,
    SessionInvalidError,
    ValidationError,
)
from pinguard.service.locks import AsyncKeyedLock
from pinguard.service.tokens import (
    RefreshResult,
    RequestContext,
    TokenEngine,
    haversine_meters,
)
from pinguard.storage.models import (
    CompliancePolicy,
    MobileContext,
    MobileSession,
    MobileToken,
    PerformanceSnapshot,
    SecurityLevel,
    SessionPolicy,
    SessionState,
    SessionType,
    ShiftWindow,
    TimeWindow,
    TokenType,
)

logger = get_logger(__name__)

SENSITIVE_ROLES = frozenset({"manager", "admin"})

_EXPIRY_REASONS = frozenset({"absolute_expiry", "idle_timeout"})

_CONNECTION_SCORES = {"excellent": 100, "good": 80, "fair": 60, "poor": 30}


@dataclass
class SessionGrant:
    session: MobileSession
    tokens: Dict[str, MobileToken]


@dataclass
class ComplianceStatus:
    passed: bool = True
    violations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class SessionValidation:
    valid: bool
    session_id: str
    security_score: int = 0
    risk_factors: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    actions: Dict[str, List[str]] = field(
        default_factory=lambda: {"immediate": [], "scheduled": [], "preventive": []}
    )
    compliance: ComplianceStatus = field(default_factory=ComplianceStatus)
    terminated: bool = False


def actions_for_score(score: int) -> Dict[str, List[str]]:
    """Map a 0..100 security score onto the response action bands."""

    actions: Dict[str, List[str]] = {"immediate": [], "scheduled": [], "preventive": []}
    if score < 30:
        actions["immediate"].append("terminate_session")
    elif score < 50:
        actions["immediate"].append("restrict_access")
        actions["scheduled"].append("security_review")
    elif score < 70:
        actions["preventive"].append("enhanced_monitoring")
    return actions


class SessionOrchestrator:
    """Mobile session lifecycle: create, validate, refresh and terminate.

    Sessions are persisted through the store; the optional Redis cache keeps
    a pointer per live session so other processes can drop it on logout.
    Mutations of one session are serialised with a per-session lock.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        tokens: TokenEngine,
        *,
        cache=None,
        audit: Optional[AuditLogger] = None,
        lockout=None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.cache = cache
        self.audit = audit
        self.lockout = lockout
        self._locks = AsyncKeyedLock()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def _audit(self, event_type: AuditEventType, session: MobileSession, metadata: dict, **kwargs) -> None:
        if not self.audit:
            return
        await self.audit.log(
            event_type,
            metadata,
            restaurant_id=session.restaurant_id,
            user_id=session.user_id,
            session_id=session.id,
            device_id=session.context.device.device_id,
            ip_address=session.context.network.ip_address,
            user_agent=session.context.user_agent,
            **kwargs,
        )

    # policy derivation --------------------------------------------------

    @staticmethod
    def security_level_for(
        context: MobileContext, role: str, session_type: SessionType
    ) -> SecurityLevel:
        if session_type == SessionType.MANAGER_OVERRIDE:
            return SecurityLevel.CRITICAL
        level = SecurityLevel.HIGH if role in SENSITIVE_ROLES else SecurityLevel.BASIC
        bumps = sum(
            [
                not context.network.is_secure,
                context.network.trust_score < 50,
                not context.location.verified,
            ]
        )
        level = level.raised(bumps)
        if session_type == SessionType.AUDIT and level.rank < SecurityLevel.HIGH.rank:
            level = SecurityLevel.HIGH
        return level

    def policy_for(
        self, session_type: SessionType, level: SecurityLevel, context: MobileContext
    ) -> SessionPolicy:
        policy = SessionPolicy(
            location_binding=True,
            biometric_required=level == SecurityLevel.CRITICAL,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            idle_timeout_minutes=self.settings.session_idle_timeout_minutes,
        )
        if session_type == SessionType.SHIFT_BASED and context.shift:
            policy.time_restrictions = [TimeWindow(context.shift.start, context.shift.end)]
        elif session_type == SessionType.MANAGER_OVERRIDE:
            policy.max_concurrent_sessions = self.settings.manager_override_max_sessions
            policy.biometric_required = True
        elif session_type == SessionType.AUDIT:
            policy.read_only = True
        return policy

    def compliance_for(self, role: str) -> CompliancePolicy:
        return CompliancePolicy(
            retention_days=self.settings.audit_retention_days,
            audit_required=True,
            classification="restricted" if role in SENSITIVE_ROLES else "confidential",
            backup_policy="encrypted",
        )

    def _expires_at(
        self, session_type: SessionType, context: MobileContext, now: datetime
    ) -> datetime:
        if session_type == SessionType.SHIFT_BASED:
            return context.shift.end
        if session_type == SessionType.MANAGER_OVERRIDE:
            return now + timedelta(minutes=self.settings.manager_override_duration_minutes)
        return now + timedelta(minutes=self.settings.session_duration_minutes)

    @staticmethod
    def require_shift(
        session_type: SessionType, shift: Optional[ShiftWindow], now: datetime
    ) -> None:
        if session_type != SessionType.SHIFT_BASED:
            return
        if shift is None or not shift.active or shift.end <= now:
            raise ValidationError("shift-based sessions need an active shift window")

    def idle_timeout(self, session: MobileSession, now: datetime) -> timedelta:
        shift = session.context.shift
        if session.session_type == SessionType.BREAK_EXTENDED and shift and shift.in_break(now):
            return timedelta(minutes=self.settings.break_idle_timeout_minutes)
        return timedelta(minutes=session.policy.idle_timeout_minutes)

    def expiry_reason(self, session: MobileSession, now: datetime) -> Optional[str]:
        """Which of the two independent clocks, if any, has run out."""

        if now >= session.expires_at:
            return "absolute_expiry"
        if now - session.last_activity_at > self.idle_timeout(session, now):
            return "idle_timeout"
        return None

    @staticmethod
    def request_context(
        session: MobileSession, request: Optional[RequestContext] = None
    ) -> RequestContext:
        """Session-derived request context, overridden by what the request reports.

        Device identity is never inherited from the session: a request that
        reports no fingerprint fails the device checks.
        """

        context = session.context
        base = RequestContext(
            device_id=context.device.device_id,
            fingerprint=context.device.fingerprint,
            ip_address=context.network.ip_address,
            restaurant_id=context.location.restaurant_id,
            latitude=context.location.latitude,
            longitude=context.location.longitude,
            biometric_at=context.biometric.last_auth_at,
            role=session.role,
        )
        if request is None:
            return base
        return RequestContext(
            device_id=request.device_id,
            fingerprint=request.fingerprint,
            ip_address=request.ip_address or base.ip_address,
            restaurant_id=request.restaurant_id or base.restaurant_id,
            latitude=request.latitude if request.latitude is not None else base.latitude,
            longitude=request.longitude if request.longitude is not None else base.longitude,
            biometric_at=request.biometric_at or base.biometric_at,
            required_scope=request.required_scope,
            role=request.role or base.role,
        )

    # lifecycle ----------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        restaurant_id: str,
        role: str,
        session_type: SessionType,
        context: MobileContext,
        *,
        login_method: str = "pin",
        security_level: Optional[SecurityLevel] = None,
    ) -> SessionGrant:
        now = self._now()
        self.require_shift(session_type, context.shift, now)
        if session_type == SessionType.MANAGER_OVERRIDE and role not in SENSITIVE_ROLES:
            raise ForbiddenError("manager override requires a manager role")

        level = security_level or self.security_level_for(context, role, session_type)
        policy = self.policy_for(session_type, level, context)
        session = MobileSession.new(
            user_id,
            restaurant_id,
            role,
            session_type,
            context,
            security_level=level,
            policy=policy,
            compliance=self.compliance_for(role),
            ttl_minutes=self.settings.session_duration_minutes,
            login_method=login_method,
            expires_at=self._expires_at(session_type, context, now),
            now=now,
        )

        async with self._locks.hold(f"{user_id}|{context.device.device_id}"):
            await self._enforce_concurrency(session)
            tokens = self.tokens.mint_session_tokens(session)
            session.token_ids = {kind: token.id for kind, token in tokens.items()}
            self.store.save_session(session)

        if self.cache:
            try:
                await self.cache.cache_session(session.id, user_id, session.expires_at)
            except Exception as exc:
                logger.warning("session_cache_write_failed", session_id=session.id, error=str(exc))
        logger.info(
            "mobile_session_created",
            session_id=session.id,
            user_id=user_id,
            session_type=session_type.value,
            security_level=level.value,
        )
        await self._audit(
            AuditEventType.SESSION_CREATED,
            session,
            {
                "session_type": session_type.value,
                "security_level": level.value,
                "login_method": login_method,
                "tokens": sorted(tokens),
            },
        )
        return SessionGrant(session=session, tokens=tokens)

    async def _enforce_concurrency(self, session: MobileSession) -> None:
        device_id = session.context.device.device_id
        existing = [
            s
            for s in self.store.list_user_sessions(session.user_id)
            if s.context.device.device_id == device_id
        ]
        limit = session.policy.max_concurrent_sessions
        if session.session_type == SessionType.MANAGER_OVERRIDE and existing:
            await self._audit(
                AuditEventType.MANAGER_OVERRIDE_GRANTED,
                session,
                {"concurrent_sessions": len(existing) + 1, "allowance": limit},
            )
        # Oldest first; make room for the new session
        overflow = len(existing) - limit + 1
        for older in existing[: max(0, overflow)]:
            await self._terminate_unlocked(older.id, "superseded")

    async def get_session(self, session_id: str) -> MobileSession:
        session = self.store.get_session(session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        return session

    def list_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[MobileSession]:
        return self.store.list_user_sessions(user_id, active_only=active_only)

    async def refresh(
        self, session_id: str, refresh_value: str, request: Optional[RequestContext] = None
    ) -> RefreshResult:
        async with self._locks.hold(session_id):
            session = self.store.get_session(session_id)
            if session is None or not session.is_active:
                raise SessionInvalidError("session is not active")
            now = self._now()
            reason = self.expiry_reason(session, now)
            if reason:
                await self._terminate_unlocked(session_id, reason)
                raise SessionExpiredError("session expired", detail={"reason": reason})
            self.store.save_session(replace(session, state=SessionState.REFRESHING))
            try:
                result = await self.tokens.refresh(
                    session, refresh_value, self.request_context(session, request)
                )
            except Exception:
                self.store.save_session(replace(session, state=SessionState.ACTIVE))
                raise
            token_ids = dict(session.token_ids)
            token_ids[TokenType.ACCESS.value] = result.access_token.id
            if result.refresh_token:
                token_ids[TokenType.REFRESH.value] = result.refresh_token.id
            self.store.save_session(
                replace(
                    session,
                    state=SessionState.ACTIVE,
                    token_ids=token_ids,
                    refresh_count=session.refresh_count + 1,
                    last_activity_at=now,
                )
            )
        logger.info(
            "mobile_session_refreshed", session_id=session_id, rotated=bool(result.refresh_token)
        )
        return result

    async def terminate(
        self, session_id: str, reason: Optional[str] = None, *, actor_id: Optional[str] = None
    ) -> bool:
        """Revoke every token and end the session; False if already terminated."""

        async with self._locks.hold(session_id):
            return await self._terminate_unlocked(session_id, reason, actor_id=actor_id)

    async def _terminate_unlocked(
        self, session_id: str, reason: Optional[str], *, actor_id: Optional[str] = None
    ) -> bool:
        session = self.store.get_session(session_id)
        if session is None or not session.is_active:
            return False
        revoked = await self.tokens.revoke_session_tokens(session_id, reason=reason)
        terminated = replace(
            session,
            state=SessionState.TERMINATED,
            terminated_at=self._now(),
            termination_reason=reason or "terminated",
        )
        self.store.save_session(terminated)
        if self.cache:
            try:
                await self.cache.revoke_session(session_id, session.user_id)
            except Exception as exc:
                logger.warning("session_cache_revoke_failed", session_id=session_id, error=str(exc))
        logger.info(
            "mobile_session_terminated", session_id=session_id, reason=reason, tokens=revoked
        )
        event = (
            AuditEventType.SESSION_EXPIRED
            if reason in _EXPIRY_REASONS
            else AuditEventType.SESSION_TERMINATED
        )
        await self._audit(
            event, terminated, {"reason": reason, "tokens_revoked": revoked, "actor_id": actor_id}
        )
        return True

    async def terminate_device_sessions(self, device_id: str, reason: str) -> int:
        ended = 0
        for session in self.store.list_active_sessions():
            if session.context.device.device_id == device_id:
                if await self.terminate(session.id, reason):
                    ended += 1
        return ended

    async def record_activity(
        self, session_id: str, performance: Optional[PerformanceSnapshot] = None
    ) -> None:
        async with self._locks.hold(session_id):
            session = self.store.get_session(session_id)
            if session is None or not session.is_active:
                return
            self.store.save_session(
                replace(
                    session,
                    last_activity_at=self._now(),
                    performance=performance or session.performance,
                )
            )

    async def record_biometric(
        self, session_id: str, method: str, confidence: float
    ) -> MobileSession:
        """Stamp a biometric step-up on the session and bind a biometric token."""

        async with self._locks.hold(session_id):
            session = self.store.get_session(session_id)
            if session is None or not session.is_active:
                raise SessionInvalidError("session is not active")
            now = self._now()
            context = session.context
            biometric = replace(
                context.biometric,
                enabled=True,
                last_auth_at=now,
                method=method,
                confidence=confidence,
            )
            session = replace(
                session,
                context=replace(context, biometric=biometric),
                last_activity_at=now,
            )
            old_id = session.token_ids.get(TokenType.BIOMETRIC.value)
            token = self.tokens.mint(TokenType.BIOMETRIC, session)
            session.token_ids = {**session.token_ids, TokenType.BIOMETRIC.value: token.id}
            self.store.save_session(session)
        if old_id:
            await self.tokens.revoke(old_id, reason="biometric_step_up")
        return session

    # validation ---------------------------------------------------------

    def _device_valid(self, session: MobileSession, ctx: RequestContext) -> bool:
        device = session.context.device
        if ctx.fingerprint != device.fingerprint or ctx.device_id != device.device_id:
            return False
        record = self.store.get_device(device.device_id)
        return record is not None and record.is_trusted

    def _location_valid(self, session: MobileSession, ctx: RequestContext) -> bool:
        location = session.context.location
        if not location.verified or ctx.restaurant_id != session.restaurant_id:
            return False
        if None in (location.latitude, location.longitude, ctx.latitude, ctx.longitude):
            return True
        distance = haversine_meters(location.latitude, location.longitude, ctx.latitude, ctx.longitude)
        return distance <= self.settings.location_radius_meters

    def _biometric_fresh(self, session: MobileSession, now: datetime) -> bool:
        last_auth = session.context.biometric.last_auth_at
        return last_auth is not None and now - last_auth <= timedelta(
            seconds=self.settings.biometric_token_ttl_seconds
        )

    def _check_compliance(self, session: MobileSession) -> ComplianceStatus:
        status = ComplianceStatus()
        compliance = session.compliance
        if compliance.audit_required and self.audit is None:
            status.violations.append("audit_sink_unavailable")
        if compliance.classification in {"confidential", "restricted"} and compliance.backup_policy != "encrypted":
            status.violations.append("unencrypted_backup_policy")
        if compliance.retention_days < self.settings.audit_retention_days:
            status.warnings.append("retention_below_policy")
        status.passed = not status.violations
        return status

    def _threat_score(self, session: MobileSession, ctx: RequestContext) -> int:
        if not self.lockout:
            return 100
        return 100 - self.lockout.origin_risk(ctx.ip_address, session.context.user_agent)

    async def validate_session(
        self, session_id: str, request: Optional[RequestContext] = None
    ) -> SessionValidation:
        session = self.store.get_session(session_id)
        if session is None or not session.is_active:
            return SessionValidation(
                valid=False,
                session_id=session_id,
                risk_factors=["session_not_found" if session is None else "session_terminated"],
                recommendations=["Re-authenticate"],
                actions={"immediate": ["block"], "scheduled": [], "preventive": []},
                compliance=ComplianceStatus(passed=False, violations=["session_not_active"]),
            )

        now = self._now()
        ctx = self.request_context(session, request)
        result = SessionValidation(valid=True, session_id=session_id)
        score = 100

        expiry = self.expiry_reason(session, now)
        if expiry:
            score -= 50
            result.risk_factors.append(expiry)

        for kind, token_id in session.token_ids.items():
            token = self.store.get_token(token_id)
            if token is None:
                score -= 20
                result.risk_factors.append(f"missing_{kind}")
                continue
            check = await self.tokens.validate(token.value, ctx, consume=False)
            if not check.valid:
                score -= 20
                result.risk_factors.append(f"invalid_{kind}")

        if not self._device_valid(session, ctx):
            score -= 30
            result.risk_factors.append("device_binding_failed")
        if session.policy.location_binding and not self._location_valid(session, ctx):
            score -= 25
            result.risk_factors.append("location_binding_failed")
        if session.policy.biometric_required and not self._biometric_fresh(session, now):
            score -= 15
            result.risk_factors.append("biometric_reauthentication_required")
            result.recommendations.append("Perform biometric authentication")

        network_score = max(0, min(100, session.context.network.trust_score))
        score += network_score - 50

        windows = session.policy.time_restrictions
        if windows and not any(window.contains(now) for window in windows):
            score -= 40
            result.risk_factors.append("outside_allowed_time_window")

        same_device = [
            s
            for s in self.store.list_user_sessions(session.user_id)
            if s.context.device.device_id == session.context.device.device_id
        ]
        if len(same_device) > session.policy.max_concurrent_sessions:
            score -= 10
            result.risk_factors.append("too_many_concurrent_sessions")
            result.recommendations.append("Close other sessions")

        quality = _CONNECTION_SCORES.get(session.performance.connection_quality, 60)
        if quality < 50:
            result.recommendations.append("Improve network connection")

        threat = self._threat_score(session, ctx)
        score -= 100 - threat
        if threat < 100:
            result.risk_factors.append("origin_threat_signals")

        result.compliance = self._check_compliance(session)
        if not result.compliance.passed:
            score -= 20

        result.security_score = max(0, min(100, score))
        result.actions = actions_for_score(result.security_score)
        result.valid = result.security_score >= 50 and result.compliance.passed and not expiry

        if expiry:
            result.terminated = await self.terminate(session_id, expiry)
        elif "terminate_session" in result.actions["immediate"]:
            result.terminated = await self.terminate(session_id, "security_score")
        elif "restrict_access" in result.actions["immediate"]:
            await self._restrict(session_id, result)
        logger.info(
            "mobile_session_validated",
            session_id=session_id,
            score=result.security_score,
            valid=result.valid,
        )
        return result

    async def _restrict(self, session_id: str, validation: SessionValidation) -> None:
        async with self._locks.hold(session_id):
            session = self.store.get_session(session_id)
            if session is None or not session.is_active or session.policy.read_only:
                return
            session = replace(session, policy=replace(session.policy, read_only=True))
            self.store.save_session(session)
        await self._audit(
            AuditEventType.SESSION_RESTRICTED,
            session,
            {
                "security_score": validation.security_score,
                "risk_factors": validation.risk_factors,
                "scheduled": validation.actions["scheduled"],
            },
        )

    # maintenance --------------------------------------------------------

    async def sweep(self) -> Tuple[int, int]:
        """Terminate idle or expired sessions; returns ``(idle, expired)`` counts."""

        now = self._now()
        idle = expired = 0
        for session in self.store.list_active_sessions():
            reason = self.expiry_reason(session, now)
            if reason and await self.terminate(session.id, reason):
                if reason == "idle_timeout":
                    idle += 1
                else:
                    expired += 1
        if idle or expired:
            logger.info("mobile_sessions_swept", idle=idle, expired=expired)
        return idle, expired
