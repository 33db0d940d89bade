from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from civicauth.config import get_settings, reset_settings_cache
from civicauth.logging import get_logger
from civicauth.service.auth import AuthService
from civicauth.service.cleanup import CleanupScheduler
from civicauth.service.signing_keys import provision_signing_secrets
from civicauth.storage.ephemeral import MemoryTTLStore
from civicauth.storage.memory import MemoryStore
from civicauth.storage.postgres import PostgresStore
from civicauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
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
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # Raises SecretMisconfigured in production before anything else starts
        self.signing = provision_signing_secrets(self.settings)

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)

        self.cache = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc

        if self.cache is None:
            if self.settings.redis_url and self.settings.is_production:
                raise RuntimeError(
                    "Redis is configured but unreachable; sessions, trusted devices, "
                    "passkey challenges and OAuth state need it in production."
                ) from redis_error
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message="Ephemeral records are process-local and lost on restart.",
            )
            self.cache = MemoryTTLStore()

        self.auth = AuthService(self.store, self.cache, self.settings, self.signing)
        self.cleanup = CleanupScheduler(
            self.auth.ledger,
            self.cache,
            interval_seconds=self.settings.cleanup_interval_seconds,
        )
        logger.info(
            "runtime_initialized",
            redis_enabled=isinstance(self.cache, RedisCache),
            generated_secrets=self.signing.generated,
        )

    async def close(self) -> None:
        await self.cleanup.stop()
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton using double-checked locking."""
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
        runtime = Runtime()
        return runtime
