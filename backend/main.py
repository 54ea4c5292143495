from contextlib import asynccontextmanager
import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
import uvicorn

from config import get_settings, set_log_level, validate_startup_settings
from epg_cache import get_epg_cache
from errors import ConfigurationError, ProxyError
from log_utils import configure_logging
from middleware import (
    BodySizeLimitMiddleware,
    FixedWindowRateLimiter,
    RateLimitMiddleware,
    RateLimitRule,
    SecurityHeadersMiddleware,
)
from routers import auth, xtream
from session_store import get_session_store
from xtream_client import close_http_client

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_startup_settings()
    set_log_level(settings.log_level)

    session_store = get_session_store()
    epg_cache = get_epg_cache()
    await session_store.start()
    await epg_cache.start()
    logger.info("Xtream proxy started")
    try:
        yield
    finally:
        await epg_cache.stop()
        await session_store.stop()
        await close_http_client()
        logger.info("Xtream proxy stopped")


app = FastAPI(
    title="Xtream Session Proxy",
    description="Credential-holding proxy for Xtream Codes player_api.php",
    version="0.1.0",
    lifespan=lifespan,
)

# Rate limiting, per client address
login_limiter = FixedWindowRateLimiter(settings.rate_limit_login, settings.rate_limit_window)
api_limiter = FixedWindowRateLimiter(settings.rate_limit_api, settings.rate_limit_window)

app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_body_size)
app.add_middleware(
    RateLimitMiddleware,
    rules=[
        RateLimitRule("/api/auth/login", login_limiter, "Too many login attempts, please try again later"),
        RateLimitRule("/api/", api_limiter, "Too many requests, please try again later"),
    ],
    trust_proxy_headers=settings.trust_proxy_headers,
)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.allowed_origin] if settings.allowed_origin else [],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.message})


app.include_router(auth.router)
app.include_router(xtream.router)


# Health check
@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "xtream-session-proxy"}


# Serve the prebuilt frontend if configured
static_dir = settings.frontend_dir
if static_dir and os.path.isdir(static_dir):
    app.mount("/static", StaticFiles(directory=static_dir), name="static")

    @app.get("/{full_path:path}")
    async def serve_spa(full_path: str):
        if full_path.startswith("api/"):
            return JSONResponse(status_code=404, content={"error": "Not found"})
        # Serve real files, otherwise index.html for SPA routing
        candidate = os.path.realpath(os.path.join(static_dir, full_path))
        root = os.path.realpath(static_dir)
        if full_path and candidate.startswith(root + os.sep) and os.path.isfile(candidate):
            return FileResponse(candidate)
        index_path = os.path.join(static_dir, "index.html")
        if os.path.exists(index_path):
            return FileResponse(index_path)
        return JSONResponse(status_code=404, content={"error": "Frontend not built"})


def run() -> None:
    """Console entry point: validate config and serve with uvicorn."""
    configure_logging(settings.log_level)
    try:
        validate_startup_settings()
    except ConfigurationError as e:
        logger.critical("FATAL: %s", e)
        sys.exit(1)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        proxy_headers=settings.trust_proxy_headers,
        forwarded_allow_ips="*" if settings.trust_proxy_headers else None,
    )


if __name__ == "__main__":
    run()
