from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from walletgate.api.error_handling import register_exception_handlers
from walletgate.api.routes import router
from walletgate.config import Settings
from walletgate.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3

_LOCAL_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

_settings = Settings.from_env()


def _allowed_origins(settings: Optional[Settings] = None) -> List[str]:
    # Never a wildcard: the session cookie is sent with credentials
    settings = settings or _settings
    return settings.cors_allow_origins or list(_LOCAL_DEV_ORIGINS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from walletgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info(
        "walletgate_started",
        version=__version__,
        wallet_login_enabled=runtime.settings.wallet_login_enabled,
    )
    yield
    try:
        get_runtime().close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))
    else:
        logger.info("runtime_cleanup_complete")


async def _check_store(store: Any) -> Tuple[bool, Dict[str, Any]]:
    verify = getattr(store, "verify_connection", None)
    if verify is None:
        return True, {"status": "healthy", "type": "memory"}
    try:
        await asyncio.wait_for(asyncio.to_thread(verify), HEALTH_CHECK_TIMEOUT_SECONDS)
    except asyncio.TimeoutError:
        logger.error(
            "health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS
        )
        return False, {"status": "unhealthy", "type": "postgres"}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        return False, {"status": "unhealthy", "type": "postgres"}
    return True, {"status": "healthy", "type": "postgres"}


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Assemble the wallet login API: middleware, error envelope and routes."""
    settings = settings or _settings
    application = FastAPI(title="walletgate", version=__version__, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "session_id", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @application.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Bind X-Request-ID (or a new UUID) into the log context and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @application.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        headers = response.headers
        headers.setdefault("X-Frame-Options", "DENY")
        headers.setdefault("X-Content-Type-Options", "nosniff")
        headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        headers.setdefault("API-Version", __version__)
        path = request.url.path
        # Tokens and session ids must never sit in a shared cache
        if path.startswith("/v1/") or path == "/healthz":
            headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
        if request.url.scheme == "https" and settings.enable_hsts:
            headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(application)
    application.include_router(router)

    @application.get("/healthz")
    async def health() -> Dict[str, Any]:
        from walletgate.service.runtime import get_runtime

        runtime = get_runtime()
        db_ok, database = await _check_store(runtime.store)
        return {
            "status": "healthy" if db_ok else "unhealthy",
            "checks": {
                "database": database,
                "wallet_login": {
                    "status": "enabled" if runtime.settings.wallet_login_enabled else "disabled",
                    "pending_challenges": len(runtime.nonces),
                },
            },
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return application


app = create_app()
