from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from clinicauth.config import Settings, get_settings, reset_settings_cache
from clinicauth.logging import get_logger
from clinicauth.service.auth import AuthService
from clinicauth.service.lockout import LockoutGuard
from clinicauth.service.sessions import SessionManager
from clinicauth.storage.memory import MemoryStore
from clinicauth.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: postgresql://app:secret@db:5432/clinic -> postgresql://app:***@db:5432/clinic
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store and service singletons for the process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(
                    self.settings.state_root,
                    lock_timeout=self.settings.store_timeout_seconds,
                )
            else:
                self.store = PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.store_timeout_seconds,
                    min_size=self.settings.store_pool_min_size,
                    max_size=self.settings.store_pool_max_size,
                )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.lockout = LockoutGuard(self.store, self.settings)
        self.sessions = SessionManager(self.store, self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            lockout=self.lockout,
            sessions=self.sessions,
        )
        logger.info("runtime_init_completed", store_type=store_type)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent racing constructors
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()
