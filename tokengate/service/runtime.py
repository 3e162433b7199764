from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from tokengate.config import get_settings, reset_settings_cache
from tokengate.logging import get_logger
from tokengate.service.admins import AdminService
from tokengate.service.credentials import CredentialStore
from tokengate.service.email import EmailService
from tokengate.service.email_settings import EmailSettingsService
from tokengate.service.gate import AuthenticationGate
from tokengate.service.login_tokens import LoginTokenAuthority
from tokengate.service.sessions import SessionAuthority
from tokengate.service.tokens import TokenCodec
from tokengate.service.users import UserService
from tokengate.storage.memory import MemoryStore
from tokengate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with '***' for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the store and service singletons for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        settings = self.settings
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore()
                if settings.use_memory_store
                else PostgresStore(
                    settings.database_url,
                    min_size=settings.db_pool_min_size,
                    max_size=settings.db_pool_max_size,
                    max_idle=settings.db_pool_max_idle_seconds,
                    max_lifetime=settings.db_pool_max_lifetime_seconds,
                    timeout=settings.db_pool_timeout_seconds,
                    statement_timeout_ms=settings.db_statement_timeout_ms,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(settings.database_url),
                error=str(exc),
            )
            raise

        clock_skew = timedelta(seconds=settings.token_clock_skew_seconds)
        attempts = settings.id_generation_attempts

        self.codec = TokenCodec(
            settings.token_secret, clock_skew_seconds=settings.token_clock_skew_seconds
        )
        self.credentials = CredentialStore(self.store, id_attempts=attempts)
        self.email_settings = EmailSettingsService(self.store, settings)
        self.email = EmailService(
            self.email_settings.mail_config, base_url=settings.app_base_url
        )
        self.sessions = SessionAuthority(
            self.store,
            self.codec,
            ttl=timedelta(days=settings.session_ttl_days),
            grace=timedelta(days=settings.session_grace_days),
            clock_skew=clock_skew,
            require_fingerprint=settings.require_client_fingerprint,
            id_attempts=attempts,
        )
        self.login_tokens = LoginTokenAuthority(
            self.store,
            self.codec,
            self.credentials,
            self.sessions,
            mailer=self.email,
            ttl=timedelta(seconds=settings.login_token_ttl_seconds),
            max_active=settings.login_token_max_active,
            min_interval=timedelta(seconds=settings.login_token_min_interval_seconds),
            clock_skew=clock_skew,
            id_attempts=attempts,
        )
        self.gate = AuthenticationGate(
            self.codec, self.credentials, self.login_tokens, self.sessions
        )
        self.admins = AdminService(
            self.store,
            self.codec,
            self.credentials,
            token_ttl=timedelta(hours=settings.admin_token_ttl_hours),
            id_attempts=attempts,
        )
        self.users = UserService(self.credentials)
        logger.info("runtime_init_complete")

    def close(self) -> None:
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner."""
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
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        runtime = Runtime()
        return runtime
