"""Typed proxy errors.

Every failure the proxy can report to a client is one of these.  They are
raised where the problem is detected and rendered into the JSON error
envelope by the exception handler registered in ``shinra.main``.
"""

from datetime import datetime, timezone


class ProxyError(Exception):
    code = "PROXY_ERROR"
    status_code = 500
    default_message = "Proxy error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message

    def envelope(self) -> dict:
        return error_envelope(self.code, self.status_code, self.message)


class InvalidTarget(ProxyError):
    """Malformed, too long, disallowed-scheme or SSRF-blocked target URL."""

    code = "INVALID_TARGET"
    status_code = 400
    default_message = "Invalid target URL"


class UpstreamUnreachable(ProxyError):
    code = "UPSTREAM_UNREACHABLE"
    status_code = 502
    default_message = "Upstream server is unreachable"


class UpstreamTimeout(ProxyError):
    code = "UPSTREAM_TIMEOUT"
    status_code = 504
    default_message = "Upstream request timed out"


class UpstreamError(ProxyError):
    """Upstream answered a playlist request with a non-2xx status.

    The upstream status is reused when it is a client or server error;
    anything else (1xx, 3xx that could not be followed) becomes 502.
    """

    code = "UPSTREAM_ERROR"
    default_message = "Upstream returned an error"

    def __init__(self, upstream_status: int, message: str | None = None):
        super().__init__(message or f"Upstream returned HTTP {upstream_status}")
        self.upstream_status = upstream_status
        self.status_code = upstream_status if 400 <= upstream_status <= 599 else 502


class PlaylistTooLarge(ProxyError):
    code = "PLAYLIST_TOO_LARGE"
    status_code = 502
    default_message = "Upstream playlist exceeds the size limit"


class RewriteFailed(ProxyError):
    code = "REWRITE_FAILED"
    status_code = 502
    default_message = "Playlist could not be rewritten"


class PoolExhausted(ProxyError):
    code = "POOL_EXHAUSTED"
    status_code = 503
    default_message = "Rewrite workers are saturated, retry later"


def error_envelope(code: str, status: int, message: str, **extra) -> dict:
    """Build the JSON body returned for every failed request."""
    error = {"code": code, "status": status, "message": message}
    error.update(extra)
    return {
        "error": error,
        "success": False,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
