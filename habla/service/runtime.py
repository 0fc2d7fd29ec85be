from __future__ import annotations

import asyncio
import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from habla.config import get_settings, reset_settings_cache
from habla.logging import get_logger
from habla.service.audit import AuditLogger
from habla.service.auth import AuthService
from habla.service.conversations import ConversationService
from habla.service.gateway import ConversationGateway
from habla.service.rate_limit import MemoryRateLimitStore, RateLimitDecision, RateLimiter
from habla.service.tokens import TokenService
from habla.storage.memory import MemoryStore
from habla.storage.postgres import PostgresStore
from habla.storage.redis_cache import RedisCache

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
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            app_env=self.settings.app_env.value,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout=self.settings.db_pool_timeout,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(exc),
                    message="Rate limits fall back to per-process counters",
                )
        self.rate_limiter = RateLimiter(
            self.cache or MemoryRateLimitStore(max_keys=self.settings.rate_limit_max_keys)
        )

        self.audit = AuditLogger(
            self.store,
            max_queue_size=self.settings.audit_queue_size,
            debug_enabled=self.settings.is_development,
        )
        self.tokens = TokenService(
            self.settings.jwt_secret,
            issuer=self.settings.jwt_issuer,
            audience=self.settings.jwt_audience,
            ttl_seconds=self.settings.token_ttl_minutes * 60,
        )
        self.auth = AuthService(self.store, self.tokens, audit=self.audit)
        self.gateway = ConversationGateway(
            self.settings.n8n_webhook_url,
            api_key=self.settings.n8n_api_key,
            audit=self.audit,
        )
        self.conversations = ConversationService(self.store, self.gateway)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            gateway_configured=self.gateway.is_configured,
        )

    async def close(self) -> None:
        await self.audit.stop()
        await self.gateway.close()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
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
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        if runtime is not None and runtime.cache is not None:
            asyncio.run(runtime.cache.close())
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
) -> RateLimitDecision:
    """Run one sliding-window check through the runtime's limiter."""
    return await runtime.rate_limiter.check(key, limit, window_seconds)
