"""Service endpoints: usage document, proxy status and health check."""

import os
import resource
import sys
import time
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shinra.config import settings
from shinra.proxy.resolver import encode_target

router = APIRouter()

try:
    VERSION = version("shinra-proxy")
except PackageNotFoundError:
    VERSION = "0.2.0"


# -- Models ------------------------------------------------------------------

class WorkerStatsResponse(BaseModel):
    threads_total: int
    threads_available: int
    queue_depth: int
    jobs_completed: int
    jobs_failed: int


class MemoryResponse(BaseModel):
    max_rss_mb: float


class StatusResponse(BaseModel):
    status: str
    version: str
    uptime: float
    timestamp: str
    environment: str
    pid: int
    python: str
    memory: MemoryResponse
    workers: WorkerStatsResponse


class HealthChecks(BaseModel):
    workers: bool


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    uptime: float
    version: str
    checks: HealthChecks
    workers: WorkerStatsResponse


# -- Helpers -----------------------------------------------------------------

def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _max_rss_mb() -> float:
    # ru_maxrss is KiB on Linux, bytes on macOS
    rss = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    divisor = 1024 * 1024 if sys.platform == "darwin" else 1024
    return round(rss / divisor, 2)


def _worker_stats(request: Request) -> WorkerStatsResponse:
    stats = request.app.state.worker_pool.stats()
    return WorkerStatsResponse(
        threads_total=stats.threads_total,
        threads_available=stats.threads_available,
        queue_depth=stats.queue_depth,
        jobs_completed=stats.jobs_completed,
        jobs_failed=stats.jobs_failed,
    )


# -- Endpoints ---------------------------------------------------------------

@router.get("/")
async def root():
    base = settings.proxy_prefix
    return {
        "name": "Shinra Proxy",
        "version": VERSION,
        "description": "A CORS proxy for streaming media with HLS (m3u8) playlist rewriting",
        "usage": {
            "queryParam": f"{base}?url=https://example.com",
            "pathParam": f"{base}/https://example.com",
            "base64": f"{base}/base64/{encode_target('https://example.com')}",
        },
        "status": f"{base}/status",
    }


@router.get(f"{settings.proxy_prefix}/status", response_model=StatusResponse)
async def proxy_status(request: Request):
    return StatusResponse(
        status="ok",
        version=VERSION,
        uptime=time.time() - request.app.state.start_time,
        timestamp=_now(),
        environment=settings.environment,
        pid=os.getpid(),
        python=sys.version.split()[0],
        memory=MemoryResponse(max_rss_mb=_max_rss_mb()),
        workers=_worker_stats(request),
    )


@router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    """Report worker pool capacity.

    No free worker with jobs waiting means degraded capacity, as does a
    closed pool; both answer 503 so load balancers back off.
    """
    pool = request.app.state.worker_pool
    workers_ok = not pool.closed and not pool.stats().degraded
    body = HealthResponse(
        status="ok" if workers_ok else "degraded",
        timestamp=_now(),
        uptime=time.time() - request.app.state.start_time,
        version=VERSION,
        checks=HealthChecks(workers=workers_ok),
        workers=_worker_stats(request),
    )
    return JSONResponse(body.model_dump(), status_code=200 if workers_ok else 503)
