from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from istream.config import get_settings, reset_settings_cache
from istream.logging import get_logger
from istream.service.auth import AuthService
from istream.service.email import EmailService, smtp_socket_timeout
from istream.service.engagement import EngagementService
from istream.service.identity import IdentityLinker
from istream.service.media import LocalObjectStorage
from istream.service.oauth import GoogleOAuthClient
from istream.service.otp import OtpEngine
from istream.service.subscriptions import SubscriptionService
from istream.service.tokens import TokenAuthority
from istream.service.videos import VideoService
from istream.storage.memory import MemoryStore
from istream.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a DSN with ``***`` for logging."""
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
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
            logger.info(
                "runtime_store_initialized",
                store_type="memory" if self.settings.use_memory_store else "postgres",
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            otp_ttl_minutes=self.settings.otp_ttl_minutes,
            timeout=smtp_socket_timeout(self.settings.email_timeout_seconds),
        )
        if not self.email.is_configured:
            logger.warning("email_not_configured", mode="log_only")
        self.media = LocalObjectStorage(
            self.settings.shared_fs_root, self.settings.media_base_url
        )
        self.otp = OtpEngine(
            self.store,
            ttl_minutes=self.settings.otp_ttl_minutes,
            length=self.settings.otp_length,
        )
        self.tokens = TokenAuthority(
            self.store,
            access_secret=self.settings.access_token_secret,
            refresh_secret=self.settings.refresh_token_secret,
            issuer=self.settings.jwt_issuer,
            access_ttl_minutes=self.settings.access_token_ttl_minutes,
            refresh_ttl_minutes=self.settings.refresh_token_ttl_minutes,
        )
        self.identity = IdentityLinker(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            otp=self.otp,
            tokens=self.tokens,
            identity=self.identity,
            email=self.email,
            media=self.media,
        )
        self.subscriptions = SubscriptionService(
            self.store,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
        )
        self.engagement = EngagementService(
            self.store,
            default_page_size=self.settings.default_page_size,
            max_page_size=self.settings.max_page_size,
        )
        self.videos = VideoService(self.store, self.media, self.settings)
        self.oauth = GoogleOAuthClient(
            self.store,
            client_id=self.settings.oauth_google_client_id,
            client_secret=self.settings.oauth_google_client_secret,
            redirect_uri=self.settings.oauth_google_redirect_uri,
            timeout=self.settings.oauth_timeout_seconds,
        )
        logger.info("runtime_init_completed")

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close:
            close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path for an existing runtime,
    then a locked re-check so only one thread builds it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the runtime from a fresh environment read; TEST_MODE only."""

    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
