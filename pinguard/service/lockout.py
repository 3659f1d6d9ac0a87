from __future__ import annotations

import math
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Deque, Dict, List, Optional

from pinguard.config import Settings
from pinguard.logging import get_logger
from pinguard.service.audit import AuditEventType, AuditLogger
from pinguard.service.locks import KeyedLock
from pinguard.storage.common import attempt_key
from pinguard.storage.models import AttemptRecord

logger = get_logger(__name__)

RAPID_GAP_SECONDS = 5
RAPID_GAP_COUNT = 3
_RECENT_ATTEMPTS = 10


@dataclass
class LockoutStatus:
    allowed: bool
    attempts: int = 0
    remaining_attempts: int = 0
    retry_after: int = 0
    locked_until: Optional[datetime] = None


@dataclass
class BruteForceAssessment:
    score: int
    suspicious: bool
    signals: List[str] = field(default_factory=list)


class LockoutTracker:
    """Per-key failed-attempt counter with progressive lockout.

    Keys combine the account identifier and the device fingerprint. When a
    Redis cache is configured the increment-then-check runs as one Lua script;
    otherwise the same transition is applied to an in-memory record under a
    per-key lock. The brute-force heuristic only scores and reports; blocking
    is left to the lockout state.
    """

    def __init__(
        self,
        settings: Settings,
        cache=None,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.settings = settings
        self.cache = cache
        self.audit = audit
        self._records: Dict[str, AttemptRecord] = {}
        self._record_locks = KeyedLock()
        self._records_guard = threading.Lock()
        self._state_lock = threading.Lock()
        self._agents_by_ip: Dict[str, Dict[str, datetime]] = {}
        self._ips_by_agent: Dict[str, Dict[str, datetime]] = {}
        self._recent: Dict[str, Deque[datetime]] = {}
        self._last_scores: Dict[str, int] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def key_for(identifier: str, fingerprint: str) -> str:
        return attempt_key(identifier, fingerprint)

    @property
    def _window(self) -> timedelta:
        return timedelta(minutes=self.settings.lockout_window_minutes)

    @property
    def _retention(self) -> timedelta:
        return timedelta(hours=self.settings.attempt_retention_hours)

    def lock_duration(self, count: int) -> timedelta:
        """Lock length once ``count`` failures have accumulated; zero below the limit."""

        excess = count - self.settings.pin_max_attempts + 1
        if excess <= 0:
            return timedelta(0)
        multiplier = min(2 ** (excess - 1), self.settings.lockout_max_multiplier)
        return timedelta(minutes=self.settings.lockout_base_minutes * multiplier)

    # attempt records ----------------------------------------------------

    async def _load(self, key: str) -> Optional[AttemptRecord]:
        if self.cache:
            raw = await self.cache.get_pin_attempts(key)
            if not raw:
                return None
            return AttemptRecord(
                key=key,
                count=int(raw["count"]),
                window_start=datetime.fromtimestamp(raw["window_start"], tz=timezone.utc),
                last_attempt=datetime.fromtimestamp(raw["last_attempt"], tz=timezone.utc),
                locked_until=(
                    datetime.fromtimestamp(raw["locked_until"], tz=timezone.utc)
                    if raw["locked_until"]
                    else None
                ),
            )
        with self._records_guard:
            record = self._records.get(key)
            return replace(record) if record else None

    def _status(self, record: Optional[AttemptRecord], now: datetime) -> LockoutStatus:
        limit = self.settings.pin_max_attempts
        if record is None:
            return LockoutStatus(allowed=True, remaining_attempts=limit)
        if record.is_locked(now):
            retry_after = max(1, math.ceil((record.locked_until - now).total_seconds()))
            return LockoutStatus(
                allowed=False,
                attempts=record.count,
                retry_after=retry_after,
                locked_until=record.locked_until,
            )
        count = record.count
        if now - record.window_start >= self._window:
            # Window elapsed with no active lock; the next failure starts fresh
            count = 0
        return LockoutStatus(
            allowed=True, attempts=count, remaining_attempts=max(0, limit - count)
        )

    async def check(self, key: str) -> LockoutStatus:
        return self._status(await self._load(key), self._now())

    def _apply_failure(self, key: str, now: datetime) -> AttemptRecord:
        with self._record_locks.hold(key):
            with self._records_guard:
                current = self._records.get(key)
            record = replace(current) if current else AttemptRecord(key=key, window_start=now)
            if not record.is_locked(now) and now - record.window_start >= self._window:
                record.count = 0
                record.window_start = now
            record.count += 1
            record.last_attempt = now
            duration = self.lock_duration(record.count)
            if duration:
                record.locked_until = now + duration
            with self._records_guard:
                self._records[key] = record
            return replace(record)

    async def record_failure(
        self,
        key: str,
        *,
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        user_id: Optional[str] = None,
        restaurant_id: Optional[str] = None,
    ) -> LockoutStatus:
        """Count one failed attempt; the increment happens before the limit check."""

        now = self._now()
        if self.cache:
            count, window_start, locked_until = await self.cache.atomic_pin_failure(
                key,
                now=now.timestamp(),
                max_attempts=self.settings.pin_max_attempts,
                window_seconds=int(self._window.total_seconds()),
                base_lock_seconds=self.settings.lockout_base_minutes * 60,
                max_multiplier=self.settings.lockout_max_multiplier,
                retention_seconds=int(self._retention.total_seconds()),
            )
            record = AttemptRecord(
                key=key,
                count=count,
                window_start=datetime.fromtimestamp(window_start, tz=timezone.utc),
                last_attempt=now,
                locked_until=(
                    datetime.fromtimestamp(locked_until, tz=timezone.utc)
                    if locked_until
                    else None
                ),
            )
        else:
            record = self._apply_failure(key, now)

        status = self._status(record, now)
        assessment = self.detect_brute_force(ip, user_agent, record.count, key=key)
        if not status.allowed:
            logger.warning(
                "pin_lockout_triggered",
                key_hash=key[:12],
                attempts=record.count,
                retry_after=status.retry_after,
            )
            if self.audit:
                await self.audit.log(
                    AuditEventType.ACCOUNT_LOCKED,
                    {
                        "failed_attempts": record.count,
                        "lock_seconds": status.retry_after,
                        "risk_score": assessment.score,
                    },
                    restaurant_id=restaurant_id,
                    user_id=user_id,
                    ip_address=ip,
                    user_agent=user_agent,
                )
        if assessment.suspicious:
            logger.warning(
                "brute_force_suspected",
                key_hash=key[:12],
                score=assessment.score,
                signals=assessment.signals,
            )
            if self.audit:
                await self.audit.log(
                    AuditEventType.BRUTE_FORCE_DETECTED,
                    {
                        "risk_score": assessment.score,
                        "signals": assessment.signals,
                        "failed_attempts": record.count,
                    },
                    restaurant_id=restaurant_id,
                    user_id=user_id,
                    ip_address=ip,
                    user_agent=user_agent,
                )
        return status

    async def record_success(self, key: str) -> None:
        if self.cache:
            await self.cache.clear_pin_attempts(key)
        else:
            with self._record_locks.hold(key):
                with self._records_guard:
                    self._records.pop(key, None)
        with self._state_lock:
            self._recent.pop(key, None)
            self._last_scores.pop(key, None)

    async def unlock(self, key: str, actor_id: str, reason: Optional[str] = None) -> bool:
        """Manager override: clear the attempt record for ``key``."""

        existing = await self._load(key)
        await self.record_success(key)
        logger.info("pin_lockout_cleared", key_hash=key[:12], actor_id=actor_id)
        if self.audit:
            await self.audit.log(
                AuditEventType.ADMIN_ACTION_PERFORMED,
                {
                    "action": "unlock_pin_attempts",
                    "key_hash": key[:12],
                    "had_record": existing is not None,
                    "reason": reason,
                },
                user_id=actor_id,
                resource_type="pin_lockout",
                resource_id=key,
            )
        return existing is not None

    # brute-force heuristic ----------------------------------------------

    def _outside_operating_hours(self, moment: datetime) -> bool:
        start = self.settings.operating_hours_start
        end = self.settings.operating_hours_end
        hour = moment.astimezone(timezone.utc).hour
        if start <= end:
            return not start <= hour <= end
        # Overnight range such as 18..04
        return end < hour < start

    def _score_signals(
        self,
        ip: Optional[str],
        user_agent: Optional[str],
        attempt_count: int,
        key: Optional[str],
        now: datetime,
    ) -> BruteForceAssessment:
        score = 0
        signals: List[str] = []
        if attempt_count >= self.settings.brute_force_attempt_threshold:
            score += 30
            signals.append("attempt_volume")
        if ip and len(self._agents_by_ip.get(ip, {})) > 2:
            score += 25
            signals.append("user_agent_variability")
        if user_agent and len(self._ips_by_agent.get(user_agent, {})) > 2:
            score += 20
            signals.append("distributed_user_agent")
        if self._outside_operating_hours(now):
            score += 15
            signals.append("outside_operating_hours")
        recent = list(self._recent.get(key, ())) if key else []
        rapid = sum(
            1
            for earlier, later in zip(recent, recent[1:])
            if (later - earlier).total_seconds() < RAPID_GAP_SECONDS
        )
        if rapid >= RAPID_GAP_COUNT:
            score += 35
            signals.append("rapid_attempts")
        score = min(100, score)
        return BruteForceAssessment(
            score=score,
            suspicious=score >= self.settings.brute_force_risk_threshold,
            signals=signals,
        )

    def detect_brute_force(
        self,
        ip: Optional[str],
        user_agent: Optional[str],
        attempt_count: int,
        key: Optional[str] = None,
    ) -> BruteForceAssessment:
        """Record one observation and score the origin's recent behaviour."""

        now = self._now()
        with self._state_lock:
            if ip and user_agent:
                self._agents_by_ip.setdefault(ip, {})[user_agent] = now
                self._ips_by_agent.setdefault(user_agent, {})[ip] = now
            if key:
                self._recent.setdefault(key, deque(maxlen=_RECENT_ATTEMPTS)).append(now)
            assessment = self._score_signals(ip, user_agent, attempt_count, key, now)
            if key:
                self._last_scores[key] = assessment.score
        return assessment

    def origin_risk(self, ip: Optional[str], user_agent: Optional[str]) -> int:
        """Score an origin from signals already observed, without recording."""

        with self._state_lock:
            return self._score_signals(ip, user_agent, 0, None, self._now()).score

    async def risk_level(self, key: str) -> str:
        record = await self._load(key)
        failures = record.count if record else 0
        with self._state_lock:
            score = self._last_scores.get(key, 0)
        if score >= 80 or failures >= 10:
            return "critical"
        if score >= 60 or failures >= 7:
            return "high"
        if score >= 30 or failures >= 4:
            return "medium"
        return "low"

    # maintenance --------------------------------------------------------

    def cleanup(self) -> int:
        """Purge attempt records and origin signals idle beyond the retention period."""

        now = self._now()
        threshold = now - self._retention
        removed = 0
        with self._records_guard:
            stale = [
                key
                for key, record in self._records.items()
                if record.last_attempt <= threshold and not record.is_locked(now)
            ]
            for key in stale:
                self._records.pop(key, None)
            removed += len(stale)
        with self._state_lock:
            for mapping in (self._agents_by_ip, self._ips_by_agent):
                for outer in list(mapping):
                    seen = mapping[outer]
                    for inner in [k for k, when in seen.items() if when <= threshold]:
                        seen.pop(inner, None)
                    if not seen:
                        mapping.pop(outer, None)
            for key in [k for k, q in self._recent.items() if not q or q[-1] <= threshold]:
                self._recent.pop(key, None)
                self._last_scores.pop(key, None)
        if removed:
            logger.info("pin_attempts_cleaned", removed=removed)
        return removed
