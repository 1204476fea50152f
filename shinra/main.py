"""FastAPI application entrypoint: lifespan, middleware, routes and error envelopes."""

import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from shinra.api.middleware import RequestLimitsMiddleware, RequestLogMiddleware
from shinra.api.service import VERSION, router as service_router
from shinra.config import settings
from shinra.errors import ProxyError, error_envelope
from shinra.proxy.fetcher import UpstreamFetcher
from shinra.proxy.routes import router as proxy_router
from shinra.workers.pool import WorkerPool

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("main")

# Error responses carry the CORS header too, so browsers can read them.
_CORS_ERROR_HEADERS = {"access-control-allow-origin": "*"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    from shinra.config import _resolve_env_file
    env_path = _resolve_env_file()
    logger.info(
        "Starting Shinra proxy %s (env_file=%s, exists=%s)",
        VERSION, env_path, env_path.exists(),
    )
    settings.warn_insecure_defaults()
    app.state.start_time = time.time()

    app.state.fetcher = UpstreamFetcher(settings)

    pool = WorkerPool(
        size=settings.pool_size,
        max_queue_depth=settings.worker_queue_max,
        mode=settings.worker_pool_mode,
        job_timeout=settings.worker_job_timeout_s,
    )
    await pool.start()
    app.state.worker_pool = pool

    logger.info("Server ready (proxy_base=%s, workers=%d)", settings.proxy_prefix, pool.size)
    yield

    # Shutdown
    logger.info("Shutting down")
    await pool.close(timeout=settings.worker_shutdown_timeout_s)
    await app.state.fetcher.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Shinra Proxy",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url=None,
)

# Middleware runs outermost-last: logging wraps limits wraps CORS.
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["GET", "HEAD", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "Content-Type"],
    max_age=86400,
)
app.add_middleware(
    RequestLimitsMiddleware,
    max_url_length=settings.max_url_length,
    max_body_bytes=settings.max_request_body_bytes,
)
app.add_middleware(RequestLogMiddleware)


# -- Error envelopes ---------------------------------------------------------

@app.exception_handler(ProxyError)
async def proxy_error_handler(request: Request, exc: ProxyError):
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    else:
        logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(exc.envelope(), status_code=exc.status_code, headers=_CORS_ERROR_HEADERS)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        body = error_envelope("NOT_FOUND", 404, "Not Found", path=request.url.path)
    else:
        body = error_envelope("HTTP_ERROR", exc.status_code, str(exc.detail))
    return JSONResponse(body, status_code=exc.status_code, headers=_CORS_ERROR_HEADERS)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        error_envelope("BAD_REQUEST", 400, "Invalid request parameters"),
        status_code=400,
        headers=_CORS_ERROR_HEADERS,
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        error_envelope("INTERNAL_ERROR", 500, "Internal Server Error"),
        status_code=500,
        headers=_CORS_ERROR_HEADERS,
    )


# Service routes first: <base>/status must win over the <base>/<target> catch-all.
app.include_router(service_router)
app.include_router(proxy_router)
