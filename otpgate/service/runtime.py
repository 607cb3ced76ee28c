from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from otpgate.config import Settings, get_settings, reset_settings_cache
from otpgate.logging import get_logger
from otpgate.service.auth import AuthService
from otpgate.service.email import EmailService
from otpgate.service.otp import OtpChallengeManager
from otpgate.service.tokens import TokenCodec
from otpgate.storage.memory import MemoryStore
from otpgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging.

    postgresql://app:secret@db:5432/otp -> postgresql://app:***@db:5432/otp
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if port:
        netloc = f"{netloc}:{port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

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
                self.store = MemoryStore(state_dir=self.settings.state_dir)
            else:
                self.store = PostgresStore(self.settings.database_url)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url)
                if store_type == "postgres"
                else None,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            app_name=self.settings.app_name,
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.tokens = TokenCodec(self.settings)
        self.otp = OtpChallengeManager(self.store, self.email, self.settings)
        self.auth = AuthService(self.store, self.otp, self.tokens, self.settings)

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            email_configured=self.email.is_configured,
            access_token_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_token_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )

    def close(self) -> None:
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
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
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
