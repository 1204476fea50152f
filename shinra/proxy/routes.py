"""Proxy endpoints: resolve the target, fetch it, stream or rewrite it.

Three ways to address a target, all mounted under ``proxy_base_path``:

    GET <base>?url=<urlencoded target>
    GET <base>/base64/<base64 target>
    GET <base>/<raw target>

Non-playlist bodies are streamed straight through with the upstream
status.  Playlists are buffered, rewritten on the worker pool and returned
whole.  Every failure leaves this module as a ``ProxyError`` which the
application renders as a JSON error envelope.
"""

import asyncio
import logging
from urllib.parse import urlsplit

from fastapi import APIRouter, Request
from fastapi.responses import Response, StreamingResponse

from shinra.config import settings
from shinra.errors import InvalidTarget, RewriteFailed, UpstreamError, UpstreamTimeout
from shinra.proxy.fetcher import UpstreamFetcher, UpstreamResponse
from shinra.proxy.models import AddressingMode, BodyKind, ProxyRequest, ResolvedTarget, RewriteJob
from shinra.proxy.resolver import resolve
from shinra.proxy.rewriter import looks_like_playlist
from shinra.workers.pool import WorkerPool

logger = logging.getLogger("proxy.routes")

router = APIRouter(prefix=settings.proxy_prefix)

_METHODS = ["GET", "HEAD"]


# -- Helpers -----------------------------------------------------------------

def proxy_base_url(request: Request) -> str:
    """Externally visible proxy route used in rewritten playlists."""
    origin = settings.public_base_url.rstrip("/") or str(request.base_url).rstrip("/")
    return origin + settings.proxy_prefix


def _raw_path_target(request: Request, fallback: str) -> str:
    """Return the undecoded path remainder after ``<base>/``, plus the query.

    The target is taken verbatim from the request line so percent-escapes
    meant for the upstream survive.  The inbound query string belongs to
    the target as well.
    """
    raw_path = request.scope.get("raw_path")
    prefix = settings.proxy_prefix + "/"
    target = fallback
    if raw_path:
        path = raw_path.decode("latin-1").split("?", 1)[0]
        if path.startswith(prefix):
            target = path[len(prefix):]
    query = request.url.query
    return f"{target}?{query}" if query else target


def _check_not_self(target: ResolvedTarget, request: Request):
    """Refuse targets that address this proxy's own routes."""
    own_hosts = {request.url.netloc.lower()}
    if settings.public_base_url:
        own_hosts.add(urlsplit(settings.public_base_url).netloc.lower())
    parts = urlsplit(target.url)
    if parts.netloc.lower() in own_hosts and parts.path.startswith(settings.proxy_prefix):
        raise InvalidTarget("Target points back at this proxy")


def _build_request(request: Request, raw_target: str, mode: AddressingMode) -> ProxyRequest:
    return ProxyRequest(
        raw_target=raw_target,
        addressing_mode=mode,
        client_headers=dict(request.headers),
        method=request.method,
        extra_query=request.url.query if mode is AddressingMode.BASE64_PATH else "",
    )


# -- Dispatcher --------------------------------------------------------------

def _headers_only(upstream: UpstreamResponse) -> Response:
    """Bodyless response carrying the upstream headers as they are.

    Starlette would otherwise announce ``content-length: 0`` where the
    upstream length is unknown or no longer applies.
    """
    response = Response(status_code=upstream.status_code, headers=upstream.headers)
    if "content-length" not in upstream.headers and "content-length" in response.headers:
        del response.headers["content-length"]
    return response


async def _rewrite(upstream: UpstreamResponse, pool: WorkerPool, request: Request) -> Response:
    if upstream.status_code == 304:
        await upstream.aclose()
        return _headers_only(upstream)
    if not upstream.is_success:
        await upstream.aclose()
        raise UpstreamError(upstream.status_code)

    text = await upstream.read_text()
    if not looks_like_playlist(text):
        raise RewriteFailed("Upstream response is not an HLS playlist")

    rewritten = await pool.submit(
        RewriteJob(
            playlist_text=text,
            base_url=upstream.url,
            proxy_base_url=proxy_base_url(request),
        )
    )
    return Response(
        content=rewritten.encode("utf-8"),
        status_code=upstream.status_code,
        headers=upstream.headers,
    )


async def _forward(request: Request, proxy_request: ProxyRequest, target: ResolvedTarget) -> Response:
    fetcher: UpstreamFetcher = request.app.state.fetcher
    pool: WorkerPool = request.app.state.worker_pool

    upstream = await fetcher.fetch(target, proxy_request.client_headers, proxy_request.method)

    if proxy_request.method == "HEAD":
        await upstream.aclose()
        return _headers_only(upstream)

    if upstream.body_kind is BodyKind.BUFFERED:
        return await _rewrite(upstream, pool, request)

    return StreamingResponse(
        upstream.iter_bytes(),
        status_code=upstream.status_code,
        headers=upstream.headers,
    )


async def dispatch(request: Request, proxy_request: ProxyRequest) -> Response:
    """Resolve, fetch and (for playlists) rewrite, within ``request_timeout_s``.

    The deadline covers everything up to the first response byte: fetching
    headers, buffering a playlist and waiting for the worker pool.  A
    streamed body is bounded by the fetcher's own transfer limit instead.
    """
    target = resolve(proxy_request, settings)
    _check_not_self(target, request)

    try:
        return await asyncio.wait_for(
            _forward(request, proxy_request, target),
            timeout=settings.request_timeout_s,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Request for %s exceeded %.0fs deadline", target.url, settings.request_timeout_s,
        )
        raise UpstreamTimeout("Request exceeded the proxy deadline") from None


# -- Endpoints ---------------------------------------------------------------

@router.api_route("", methods=_METHODS)
async def proxy_query(request: Request, url: str = ""):
    """``<base>?url=<target>``"""
    return await dispatch(request, _build_request(request, url, AddressingMode.QUERY))


@router.api_route("/base64/{encoded:path}", methods=_METHODS)
async def proxy_base64(encoded: str, request: Request):
    """``<base>/base64/<base64 target>``"""
    return await dispatch(request, _build_request(request, encoded, AddressingMode.BASE64_PATH))


@router.api_route("/{target:path}", methods=_METHODS)
async def proxy_path(target: str, request: Request):
    """``<base>/<raw target>``, or ``<base>/?url=<target>``."""
    if not target and "url" in request.query_params:
        return await dispatch(
            request, _build_request(request, request.query_params["url"], AddressingMode.QUERY),
        )
    raw_target = _raw_path_target(request, target)
    return await dispatch(request, _build_request(request, raw_target, AddressingMode.PATH))
