from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from muxic.api.error_handling import register_exception_handlers
from muxic.api.routes import router
from muxic.config import Settings, get_settings
from muxic.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "1.0.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3
BANNER = "Server running gracefully!!"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from muxic.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        purged = runtime.tokens.purge_expired()
        logger.info("startup_refresh_tokens_purged", count=purged)
    except Exception as exc:
        logger.error("startup_purge_failed", error_type=type(exc).__name__, error=str(exc))

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [settings.client_url]


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Muxic API", version=__version__, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag the request with ``X-Request-ID`` (or a fresh uuid) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/auth/") or request.url.path == "/healthz":
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.is_production:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/", response_class=PlainTextResponse)
    async def banner() -> str:
        return BANNER

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        """Report store, Redis and filesystem health."""
        from muxic.service.runtime import get_runtime

        checks: Dict[str, Dict[str, Any]] = {}

        async def _run_bounded(label: str, func: Callable[[], None]) -> bool:
            try:
                await asyncio.wait_for(
                    asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS
                )
                return True
            except asyncio.TimeoutError:
                logger.error(
                    "health_check_timeout",
                    component=label,
                    timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
                )
            except Exception as exc:
                logger.error("health_check_failed", component=label, error=str(exc))
            return False

        runtime = get_runtime()
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {
            "status": "healthy" if db_ok else "unhealthy",
            "type": "memory" if runtime.settings.use_memory_store else "postgres",
        }

        healthy = db_ok
        if runtime.cache is not None:
            redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
            checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
            healthy = healthy and redis_ok
        else:
            checks["redis"] = {"status": "not_configured"}

        fs_root = getattr(runtime.store, "fs_root", None)
        if fs_root:
            fs_path = Path(fs_root)

            def _fs_probe() -> None:
                probe = fs_path / ".health_check"
                probe.write_text(datetime.now(timezone.utc).isoformat())
                probe.read_text()
                probe.unlink(missing_ok=True)

            fs_ok = await _run_bounded("filesystem", _fs_probe)
            checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}
            healthy = healthy and fs_ok

        return {
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    return app


app = create_app()
