from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from walletgate.config import get_settings, reset_settings_cache
from walletgate.logging import get_logger
from walletgate.service.accounts import AccountResolver
from walletgate.service.nonce_store import NonceStore
from walletgate.service.tokens import TokenCodec
from walletgate.service.wallet_auth import WalletAuthService
from walletgate.storage.memory import MemoryStore
from walletgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for safe logging.

    Example: postgresql://app:hunter2@db:5432/wg -> postgresql://app:***@db:5432/wg
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
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
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


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            wallet_login_enabled=self.settings.wallet_login_enabled,
        )

        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, fs_root=self.settings.shared_fs_root
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                database_url=_mask_url_password(self.settings.database_url),
                error=str(exc),
            )
            raise

        if not self.settings.effective_wallet_jwt_secret:
            logger.warning("wallet_jwt_secret_missing")
        if self.settings.wallet_jwt_expire_hours is None:
            logger.warning("wallet_jwt_expire_hours_missing")

        self.nonces = NonceStore(
            ttl=timedelta(minutes=self.settings.wallet_nonce_ttl_minutes)
        )
        self.tokens = TokenCodec(
            self.settings.effective_wallet_jwt_secret,
            fallback_secrets=self.settings.wallet_jwt_fallback_secrets,
            expire_hours=self.settings.wallet_jwt_expire_hours,
        )
        self.accounts = AccountResolver(
            self.store,
            root_allowed_addresses=self.settings.wallet_root_allowed_addresses,
            auto_register=self.settings.wallet_auto_register_enabled,
        )
        self.wallet_auth = WalletAuthService(
            self.store,
            self.settings,
            nonces=self.nonces,
            tokens=self.tokens,
            accounts=self.accounts,
        )
        logger.info("runtime_init_complete")

    def close(self) -> None:
        pool = getattr(self.store, "pool", None)
        if pool is not None:
            pool.close()


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
        if runtime is not None:
            runtime.close()
        runtime = Runtime()
        return runtime
