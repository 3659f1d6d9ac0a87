from __future__ import annotations

import asyncio
import threading
from typing import Dict, Optional
from urllib.parse import urlparse, urlunparse

from pinguard.config import get_settings, reset_settings_cache
from pinguard.logging import get_logger
from pinguard.service.audit import AuditLogger
from pinguard.service.auth import AuthService
from pinguard.service.biometric import BiometricService
from pinguard.service.devices import DeviceRegistry
from pinguard.service.lockout import LockoutTracker
from pinguard.service.pin import PinPolicy
from pinguard.service.sessions import SessionOrchestrator
from pinguard.service.tokens import TokenEngine
from pinguard.storage.memory import MemoryStore
from pinguard.storage.postgres import PostgresStore
from pinguard.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    user = parsed.username or ""
    netloc = f"{user}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds the explicitly wired service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to one event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for lockout counters, token revocation and biometric "
                    "challenges; start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true."
                ) from redis_error
            fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; lockout counters and "
                    "revocations are process-local."
                ),
                mode=fallback_mode,
            )

        self.audit = AuditLogger(self.store, self.settings)
        self.pins = PinPolicy(self.settings)
        self.lockout = LockoutTracker(self.settings, cache=self.cache, audit=self.audit)
        self.devices = DeviceRegistry(self.store, self.settings, audit=self.audit)
        self.biometrics = BiometricService(
            self.store, self.settings, cache=self.cache, audit=self.audit
        )
        self.tokens = TokenEngine(self.store, self.settings, cache=self.cache, audit=self.audit)
        self.sessions = SessionOrchestrator(
            self.store,
            self.settings,
            self.tokens,
            cache=self.cache,
            audit=self.audit,
            lockout=self.lockout,
        )
        self.auth = AuthService(
            self.store,
            self.settings,
            pins=self.pins,
            lockout=self.lockout,
            devices=self.devices,
            tokens=self.tokens,
            sessions=self.sessions,
            biometrics=self.biometrics,
            audit=self.audit,
        )
        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            build_sha=self.settings.build_sha,
        )

    async def run_maintenance(self) -> Dict[str, int]:
        """One pass of the periodic sweeps; each sweep failing is logged, not fatal."""

        results: Dict[str, int] = {}
        sweeps = {
            "attempts": lambda: asyncio.to_thread(self.lockout.cleanup),
            "devices": lambda: asyncio.to_thread(self.devices.cleanup_expired_devices),
            "tokens": lambda: asyncio.to_thread(self.tokens.cleanup_expired_tokens),
            "challenges": lambda: asyncio.to_thread(self.biometrics.cleanup_expired_challenges),
            "audit": self.audit.cleanup_old_logs,
        }
        for name, sweep in sweeps.items():
            try:
                results[name] = await sweep()
            except Exception as exc:
                logger.warning("maintenance_sweep_failed", sweep=name, error=str(exc))
        try:
            idle, expired = await self.sessions.sweep()
            results["sessions"] = idle + expired
        except Exception as exc:
            logger.warning("maintenance_sweep_failed", sweep="sessions", error=str(exc))
        return results

    async def close(self) -> None:
        await self.audit.shutdown()
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists; creation happens under the lock.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
