"""HLS playlist rewriting.

Every reference in a playlist (segment and variant URI lines, plus
URI-valued attributes of the tags listed in ``URI_ATTRIBUTES``) is resolved
against the playlist's own URL and re-emitted as
``<proxy_base_url>/base64/<encoded absolute url>`` so the player fetches it
through the proxy as well.  Nothing else on the line is touched.

This module is pure and runs inside pool workers (threads or processes),
so it must not depend on application state.
"""

import logging
import re
from urllib.parse import urljoin, urlsplit

from shinra.proxy.models import RewriteJob
from shinra.proxy.resolver import encode_target

logger = logging.getLogger("proxy.rewriter")

# Tags whose attribute lists carry URIs, and which attributes those are.
# EXT-X-STREAM-INF is absent on purpose: its variant URI is the next line.
URI_ATTRIBUTES: dict[str, frozenset[str]] = {
    "EXT-X-KEY": frozenset({"URI"}),
    "EXT-X-SESSION-KEY": frozenset({"URI"}),
    "EXT-X-MAP": frozenset({"URI"}),
    "EXT-X-MEDIA": frozenset({"URI"}),
    "EXT-X-I-FRAME-STREAM-INF": frozenset({"URI"}),
    "EXT-X-IMAGE-STREAM-INF": frozenset({"URI"}),
    "EXT-X-SESSION-DATA": frozenset({"URI"}),
    "EXT-X-PART": frozenset({"URI"}),
    "EXT-X-PRELOAD-HINT": frozenset({"URI"}),
    "EXT-X-RENDITION-REPORT": frozenset({"URI"}),
    "EXT-X-CONTENT-STEERING": frozenset({"SERVER-URI"}),
    "EXT-X-DATERANGE": frozenset({"X-ASSET-URI", "X-ASSET-LIST"}),
}

_TAG = re.compile(r"^#(EXT-X-[A-Z0-9-]+):")
_ATTRIBUTE = re.compile(r'(?P<prefix>[:,]\s*)(?P<name>[A-Z0-9-]+)="(?P<value>[^"]*)"')
_ABSOLUTE_HTTP = re.compile(r"^https?://", re.IGNORECASE)
_PROXIED_SCHEMES = ("http", "https")


def looks_like_playlist(text: str) -> bool:
    """True when the text starts with the ``#EXTM3U`` header."""
    return text.lstrip("\ufeff \t\r\n").startswith("#EXTM3U")


def proxy_reference(uri: str, base_url: str, proxy_base_url: str) -> str | None:
    """Return the proxied form of ``uri`` or None when it must stay as-is.

    Absolute http(s) URIs are encoded verbatim so they round-trip exactly;
    relative ones are resolved against ``base_url`` first.  Other schemes
    (``skd://`` FairPlay keys, ``data:`` URIs) are not fetchable through
    the proxy and are left alone.
    """
    if _ABSOLUTE_HTTP.match(uri):
        urlsplit(uri)  # ValueError on malformed authority
        absolute = uri
    else:
        absolute = urljoin(base_url, uri)
        if urlsplit(absolute).scheme.lower() not in _PROXIED_SCHEMES:
            return None
    return f"{proxy_base_url}/base64/{encode_target(absolute)}"


def _rewrite_tag(line: str, names: frozenset[str], base_url: str, proxy_base_url: str) -> str:
    def replace(match: re.Match) -> str:
        value = match.group("value")
        if match.group("name") not in names or not value.strip():
            return match.group(0)
        try:
            proxied = proxy_reference(value.strip(), base_url, proxy_base_url)
        except ValueError:
            logger.debug("Leaving unparseable attribute URI untouched: %r", value)
            return match.group(0)
        if proxied is None:
            return match.group(0)
        return f'{match.group("prefix")}{match.group("name")}="{proxied}"'

    return _ATTRIBUTE.sub(replace, line)


def _rewrite_line(line: str, base_url: str, proxy_base_url: str) -> str:
    stripped = line.lstrip("\ufeff").strip()
    if not stripped:
        return line

    if stripped.startswith("#"):
        tag = _TAG.match(stripped)
        if tag and tag.group(1) in URI_ATTRIBUTES:
            return _rewrite_tag(line, URI_ATTRIBUTES[tag.group(1)], base_url, proxy_base_url)
        return line

    try:
        proxied = proxy_reference(stripped, base_url, proxy_base_url)
    except ValueError:
        logger.debug("Leaving unparseable URI line untouched: %r", stripped)
        return line
    if proxied is None:
        return line
    start = line.index(stripped)
    return line[:start] + proxied + line[start + len(stripped):]


def rewrite_playlist(playlist_text: str, base_url: str, proxy_base_url: str) -> str:
    """Rewrite every reference in an HLS playlist to go through the proxy.

    ``base_url`` is the URL the playlist was actually fetched from (after
    redirects); ``proxy_base_url`` is the externally visible proxy route,
    e.g. ``https://proxy.example.com/proxy``.  Line endings, tags, comments
    and unparseable lines are preserved byte for byte.
    """
    proxy_base_url = proxy_base_url.rstrip("/")
    lines = playlist_text.split("\n")
    out = []
    for line in lines:
        if line.endswith("\r"):
            out.append(_rewrite_line(line[:-1], base_url, proxy_base_url) + "\r")
        else:
            out.append(_rewrite_line(line, base_url, proxy_base_url))
    return "\n".join(out)


def rewrite_job(job: RewriteJob) -> str:
    """Worker entry point: module-level so process pools can pickle it."""
    return rewrite_playlist(job.playlist_text, job.base_url, job.proxy_base_url)
