from __future__ import annotations

import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from tokenvault.config import Settings, StoreBackend, get_settings, reset_settings_cache
from tokenvault.logging import get_logger
from tokenvault.service.password_reset import PasswordResetManager
from tokenvault.service.tokens import SessionTokenManager
from tokenvault.storage.memory import MemoryStore
from tokenvault.storage.postgres import PostgresStore
from tokenvault.storage.redis_store import RedisStore

logger = get_logger(__name__)

Store = Union[MemoryStore, PostgresStore, RedisStore]


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


def build_store(settings: Settings) -> Store:
    backend = StoreBackend(settings.store_backend)
    if backend is StoreBackend.POSTGRES:
        target = _mask_url_password(settings.database_url)
        store: Store = PostgresStore(settings.database_url)
    elif backend is StoreBackend.REDIS:
        target = _mask_url_password(settings.redis_url)
        redis_store = RedisStore(settings.redis_url)
        redis_store.verify_connection()
        store = redis_store
    else:
        target = settings.state_dir
        store = MemoryStore(state_dir=settings.state_dir)
    logger.info("runtime_store_initialized", backend=backend.value, target=target)
    return store


class Runtime:
    """Holds the store and the token managers built from settings."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        try:
            self.store = build_store(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                backend=str(self.settings.store_backend),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.sessions = SessionTokenManager(self.store, self.store, self.settings)
        self.password_resets = PasswordResetManager(
            self.store, self.store, self.settings
        )


_runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    global _runtime
    if _runtime is None:
        with _runtime_lock:
            if _runtime is None:
                _runtime = Runtime()
    return _runtime


def reset_runtime_for_tests() -> None:
    """Drop the cached runtime and settings so the next call rebuilds them."""

    global _runtime
    with _runtime_lock:
        if _runtime is not None and isinstance(_runtime.store, (PostgresStore, RedisStore)):
            try:
                _runtime.store.close()
            except Exception as exc:
                # Connection may already be gone
                logger.warning("runtime_store_close_failed", error=str(exc))
        _runtime = None
    reset_settings_cache()
