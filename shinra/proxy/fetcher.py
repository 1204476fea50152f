"""Upstream fetch engine.

Sends the outbound request with ``httpx``, follows redirects itself (so
every hop goes through the SSRF checks), decides once per response whether
the body is streamed through or buffered for playlist rewriting, and
rewrites response headers for cross-origin playback.

Streaming is a plain async generator over ``aiter_raw()``: the next
upstream chunk is only read after the client has taken the previous one,
and the generator's ``finally`` closes the upstream response, so a client
disconnect (which cancels the generator) also cancels the upstream
transfer.
"""

import asyncio
import ipaddress
import logging
import socket
from collections.abc import AsyncIterator, Mapping
from urllib.parse import urljoin, urlsplit

import httpx

from shinra.errors import (
    InvalidTarget,
    PlaylistTooLarge,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from shinra.proxy.models import BodyKind, ResolvedTarget
from shinra.proxy.resolver import host_is_allowlisted, is_blocked_address, validate_url

logger = logging.getLogger("proxy.fetcher")

PLAYLIST_CONTENT_TYPES = frozenset({
    "application/vnd.apple.mpegurl",
    "application/x-mpegurl",
    "audio/mpegurl",
    "audio/x-mpegurl",
})
PLAYLIST_EXTENSIONS = (".m3u8", ".m3u")
PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"

# Client headers forwarded upstream.  Everything else (Host, Origin,
# Cookie, Referer, Authorization, ...) stays on this side of the proxy.
_FORWARD_REQUEST_HEADERS = (
    "range",
    "if-range",
    "accept",
    "accept-language",
    "if-none-match",
    "if-modified-since",
    "user-agent",
    "accept-encoding",
)

# Content codings httpx can always undo when a playlist is buffered.
_DECODABLE_ENCODINGS = frozenset({"gzip", "deflate", "identity"})

_HOP_BY_HOP = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})

# Upstream headers that would block playback or leak upstream state.
_BLOCKED_RESPONSE_HEADERS = frozenset({
    "set-cookie",
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
    "strict-transport-security",
})

# Headers that no longer describe the body once a playlist is rewritten.
_STALE_AFTER_REWRITE = frozenset({
    "content-length",
    "content-encoding",
    "content-range",
    "accept-ranges",
    "etag",
})

_EXPOSED_HEADERS = "Content-Length, Content-Range, Accept-Ranges, Content-Type"

_REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})


# -- Policy helpers ----------------------------------------------------------

def is_playlist(content_type: str | None, url: str) -> bool:
    """True for HLS playlist content types or a ``.m3u8``/``.m3u`` URL path."""
    media_type = (content_type or "").split(";", 1)[0].strip().lower()
    if media_type in PLAYLIST_CONTENT_TYPES:
        return True
    path = urlsplit(url).path.lower()
    return path.endswith(PLAYLIST_EXTENSIONS)


def classify_body(content_type: str | None, url: str) -> BodyKind:
    return BodyKind.BUFFERED if is_playlist(content_type, url) else BodyKind.STREAM


def _accepted_encodings(value: str) -> str:
    """Narrow a client Accept-Encoding to codings the buffered path can decode."""
    kept = [
        part.strip() for part in value.split(",")
        if part.split(";", 1)[0].strip().lower() in _DECODABLE_ENCODINGS
    ]
    return ", ".join(kept) or "identity"


def build_upstream_headers(client_headers: Mapping[str, str], user_agent: str) -> dict[str, str]:
    headers = {}
    lowered = {k.lower(): v for k, v in client_headers.items()}
    for name in _FORWARD_REQUEST_HEADERS:
        if name in lowered:
            headers[name] = lowered[name]
    headers.setdefault("user-agent", user_agent)
    # Streamed bodies are relayed raw, so the upstream may only use a coding
    # the client asked for.
    headers["accept-encoding"] = _accepted_encodings(headers.get("accept-encoding", ""))
    return headers


def rewrite_response_headers(upstream: httpx.Headers, body_kind: BodyKind) -> dict[str, str]:
    """Copy upstream response headers with CORS overrides applied."""
    headers: dict[str, str] = {}
    for key, value in upstream.multi_items():
        name = key.lower()
        if name in _HOP_BY_HOP or name in _BLOCKED_RESPONSE_HEADERS:
            continue
        if name.startswith("access-control-"):
            continue
        if body_kind is BodyKind.BUFFERED and name in _STALE_AFTER_REWRITE:
            continue
        if name in headers:
            headers[name] = f"{headers[name]}, {value}"
        else:
            headers[name] = value

    if body_kind is BodyKind.BUFFERED:
        media_type = headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if media_type not in PLAYLIST_CONTENT_TYPES:
            headers["content-type"] = PLAYLIST_MEDIA_TYPE

    headers["access-control-allow-origin"] = "*"
    headers["access-control-expose-headers"] = _EXPOSED_HEADERS
    return headers


# -- Upstream response -------------------------------------------------------

class UpstreamResponse:
    """An open upstream response, owned by exactly one proxied request."""

    def __init__(self, response: httpx.Response, body_kind: BodyKind, settings, deadline: float | None = None):
        self.status_code = response.status_code
        self.url = str(response.url)
        self.content_type = response.headers.get("content-type", "")
        self.body_kind = body_kind
        self.headers = rewrite_response_headers(response.headers, body_kind)
        self._response = response
        self._settings = settings
        # Loop time by which a buffered body must be complete.
        self._deadline = deadline

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300

    async def aclose(self):
        await self._response.aclose()

    async def _read_body(self, limit: int) -> bytes:
        declared = self._response.headers.get("content-length")
        if declared and declared.isdigit() and int(declared) > limit:
            raise PlaylistTooLarge(f"Upstream playlist is {declared} bytes (limit {limit})")

        chunks = []
        size = 0
        async for chunk in self._response.aiter_bytes():
            size += len(chunk)
            if size > limit:
                raise PlaylistTooLarge(f"Upstream playlist exceeds {limit} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def read_text(self) -> str:
        """Buffer a playlist body, bounded by ``max_playlist_bytes``.

        The whole body has to arrive before the deadline set when the fetch
        started (``fetch_timeout_s``), however slowly it trickles in.
        """
        limit = self._settings.max_playlist_bytes
        loop = asyncio.get_running_loop()
        if self._deadline is None:
            remaining = self._settings.fetch_timeout_s
        else:
            remaining = max(0.0, self._deadline - loop.time())
        try:
            body = await asyncio.wait_for(self._read_body(limit), timeout=remaining)
        except asyncio.TimeoutError:
            logger.warning("Playlist from %s not complete within %.1fs", self.url, self._settings.fetch_timeout_s)
            raise UpstreamTimeout(f"Timed out reading playlist from {self.url}") from None
        except httpx.TimeoutException:
            raise UpstreamTimeout(f"Timed out reading playlist from {self.url}") from None
        except httpx.HTTPError as e:
            raise UpstreamUnreachable(f"Failed reading playlist from {self.url}: {e}") from None
        finally:
            await self.aclose()

        encoding = self._response.charset_encoding or "utf-8"
        try:
            return body.decode(encoding, errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Relay the raw upstream body chunk by chunk.

        Headers are already committed when this runs, so failures end the
        stream with an exception and the server closes the connection.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._settings.stream_transfer_timeout_s
        sent = 0
        try:
            async for chunk in self._response.aiter_raw(self._settings.stream_chunk_bytes):
                if not chunk:
                    continue
                sent += len(chunk)
                yield chunk
                if loop.time() > deadline:
                    logger.warning(
                        "Stream from %s exceeded %.0fs transfer limit after %d bytes",
                        self.url, self._settings.stream_transfer_timeout_s, sent,
                    )
                    raise UpstreamTimeout("Upstream transfer time limit exceeded")
        except httpx.HTTPError as e:
            logger.warning("Stream from %s failed after %d bytes: %r", self.url, sent, e)
            raise
        finally:
            await self.aclose()
            logger.debug("Stream from %s finished (%d bytes)", self.url, sent)


# -- Fetcher -----------------------------------------------------------------

class UpstreamFetcher:
    """Owns the shared ``httpx.AsyncClient`` used for every upstream request."""

    def __init__(self, settings, transport: httpx.AsyncBaseTransport | None = None):
        self._settings = settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                timeout=httpx.Timeout(
                    self._settings.stream_read_timeout_s,
                    connect=self._settings.fetch_connect_timeout_s,
                ),
                follow_redirects=False,
            )
        return self._client

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _check_dns(self, target: ResolvedTarget):
        """Refuse hostnames that resolve into private or reserved ranges."""
        if not self._settings.upstream_dns_check or host_is_allowlisted(target.host, self._settings):
            return
        try:
            ipaddress.ip_address(target.host)
            return  # literal address, already checked by the resolver
        except ValueError:
            pass

        port = urlsplit(target.url).port or (443 if target.scheme == "https" else 80)
        loop = asyncio.get_running_loop()
        try:
            infos = await loop.getaddrinfo(target.host, port, type=socket.SOCK_STREAM)
        except socket.gaierror:
            raise UpstreamUnreachable(f"Could not resolve host '{target.host}'") from None

        for info in infos:
            address = info[4][0].split("%", 1)[0]
            if is_blocked_address(ipaddress.ip_address(address)):
                raise InvalidTarget(f"Target host '{target.host}' resolves to a private address")

    async def fetch(
        self,
        target: ResolvedTarget,
        client_headers: Mapping[str, str],
        method: str = "GET",
    ) -> UpstreamResponse:
        """Open the upstream response for ``target`` (headers only).

        Raises ``UpstreamTimeout`` if headers do not arrive within
        ``fetch_timeout_s``, ``UpstreamUnreachable`` on network failure and
        ``InvalidTarget`` if a redirect leads somewhere disallowed.
        The same deadline later bounds ``read_text()`` on the buffered path.
        """
        deadline = asyncio.get_running_loop().time() + self._settings.fetch_timeout_s
        try:
            return await asyncio.wait_for(
                self._open(target, client_headers, method, deadline),
                timeout=self._settings.fetch_timeout_s,
            )
        except asyncio.TimeoutError:
            raise UpstreamTimeout(f"No response from {target.host} within {self._settings.fetch_timeout_s:.0f}s") from None

    async def _open(
        self, target: ResolvedTarget, client_headers, method: str, deadline: float | None = None,
    ) -> UpstreamResponse:
        client = self._get_client()
        headers = build_upstream_headers(client_headers, self._settings.upstream_user_agent)
        current = target

        for _ in range(self._settings.max_redirects + 1):
            await self._check_dns(current)
            try:
                request = client.build_request(method, current.url, headers=headers)
                response = await client.send(request, stream=True)
            except httpx.TimeoutException:
                raise UpstreamTimeout(f"Timed out connecting to {current.host}") from None
            except httpx.InvalidURL:
                raise InvalidTarget("Malformed target URL") from None
            except httpx.HTTPError as e:
                logger.info("Upstream %s unreachable: %r", current.host, e)
                raise UpstreamUnreachable(f"Could not connect to {current.host}") from None

            location = response.headers.get("location")
            if response.status_code not in _REDIRECT_STATUSES or not location:
                body_kind = classify_body(response.headers.get("content-type"), str(response.url))
                logger.debug(
                    "%s %s -> %d (%s, %s)",
                    method, current.url, response.status_code,
                    response.headers.get("content-type", "?"), body_kind.value,
                )
                return UpstreamResponse(response, body_kind, self._settings, deadline)

            await response.aclose()
            current = validate_url(urljoin(current.url, location), self._settings)
            if response.status_code == 303 and method != "HEAD":
                method = "GET"
            logger.debug("Following redirect to %s", current.url)

        raise UpstreamUnreachable(f"Too many redirects (limit {self._settings.max_redirects})")
