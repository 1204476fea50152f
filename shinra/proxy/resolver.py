"""Target URL resolution and validation.

Turns a ``ProxyRequest`` (query, raw path or base64 path addressing) into a
``ResolvedTarget``.  Everything here is pure string/ip parsing; hostnames
that only turn out to be private after a DNS lookup are caught by the
fetcher right before it connects, using ``is_blocked_address`` from here.
"""

import base64
import binascii
import ipaddress
import logging
import re
from urllib.parse import urlsplit, urlunsplit

from shinra.errors import InvalidTarget
from shinra.proxy.models import AddressingMode, ProxyRequest, ResolvedTarget

logger = logging.getLogger("proxy.resolver")

_ALLOWED_SCHEMES = frozenset({"http", "https"})

# Some intermediaries collapse "//" in paths, turning
# /proxy/https://host/x into /proxy/https:/host/x.
_COLLAPSED_SCHEME = re.compile(r"^(https?):/+", re.IGNORECASE)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


# -- Base64 addressing -------------------------------------------------------

def encode_target(url: str) -> str:
    """Encode an absolute URL as a path-safe base64 segment (no padding)."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def decode_target(segment: str) -> str:
    """Decode a base64 path segment.

    Accepts both the standard and the URL-safe alphabet, with or without
    ``=`` padding.  Raises ``InvalidTarget`` for anything that is not valid
    base64 of a UTF-8 string.
    """
    cleaned = segment.strip().rstrip("=").replace("-", "+").replace("_", "/")
    if not cleaned:
        raise InvalidTarget("Missing base64 target")
    cleaned += "=" * (-len(cleaned) % 4)
    try:
        raw = base64.b64decode(cleaned, validate=True)
        return raw.decode("utf-8")
    except (binascii.Error, ValueError):
        raise InvalidTarget("Target is not valid base64") from None


# -- Address classification --------------------------------------------------

def is_blocked_address(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    """True for loopback, private, link-local, multicast and reserved ranges."""
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    # is_global is False for loopback, private, link-local, reserved,
    # unspecified and shared (CGNAT) space; multicast can still be global.
    return not ip.is_global or ip.is_multicast


def host_is_allowlisted(host: str, settings) -> bool:
    return settings.allow_private_networks or host.lower().rstrip(".") in settings.private_hosts


def check_host(host: str, settings):
    """Reject hosts that name the local machine or a private network literally."""
    host = host.lower().rstrip(".")
    if host_is_allowlisted(host, settings):
        return
    if host == "localhost" or host.endswith(".localhost"):
        raise InvalidTarget(f"Target host '{host}' is not allowed")
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return  # DNS name, checked again at connect time
    if is_blocked_address(ip):
        raise InvalidTarget(f"Target address {host} is in a private or reserved range")


# -- Resolution --------------------------------------------------------------

def validate_url(url: str, settings) -> ResolvedTarget:
    """Validate an absolute URL and return it as a ``ResolvedTarget``."""
    url = url.strip()
    if not url:
        raise InvalidTarget("Missing target URL")
    if len(url) > settings.max_url_length:
        raise InvalidTarget(f"Target URL exceeds {settings.max_url_length} characters")
    if _CONTROL_CHARS.search(url):
        raise InvalidTarget("Target URL contains control characters")

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        raise InvalidTarget("Malformed target URL") from None

    scheme = parts.scheme.lower()
    if not scheme:
        raise InvalidTarget("Target URL must be absolute (http:// or https://)")
    if scheme not in _ALLOWED_SCHEMES:
        raise InvalidTarget(f"Unsupported scheme '{scheme}'")
    host = parts.hostname
    if not host:
        raise InvalidTarget("Target URL has no host")
    if parts.username is not None or parts.password is not None:
        raise InvalidTarget("Credentials in target URL are not allowed")
    if port == 0:
        raise InvalidTarget("Invalid target port")

    check_host(host, settings)

    normalized = urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))
    return ResolvedTarget(url=normalized, scheme=scheme, host=host)


def _merge_query(url: str, extra_query: str) -> str:
    """Append ``extra_query`` to the query of ``url``, ahead of any fragment."""
    try:
        parts = urlsplit(url)
    except ValueError:
        raise InvalidTarget("Malformed target URL") from None
    query = f"{parts.query}&{extra_query}" if parts.query else extra_query
    return urlunsplit(parts._replace(query=query))


def resolve(request: ProxyRequest, settings) -> ResolvedTarget:
    """Resolve an inbound request into a validated upstream target.

    Raises ``InvalidTarget`` when the target is empty, too long, not
    http(s), or points at a private network.
    """
    raw = request.raw_target or ""
    if request.addressing_mode is AddressingMode.BASE64_PATH:
        # Reject oversized input before spending time decoding it.
        if len(raw) > (settings.max_url_length * 4) // 3 + 4:
            raise InvalidTarget(f"Target URL exceeds {settings.max_url_length} characters")
        raw = decode_target(raw)
        if request.extra_query:
            raw = _merge_query(raw, request.extra_query)
    elif request.addressing_mode is AddressingMode.PATH:
        raw = _COLLAPSED_SCHEME.sub(lambda m: m.group(1) + "://", raw.strip(), count=1)

    target = validate_url(raw, settings)
    logger.debug("Resolved %s target -> %s", request.addressing_mode.value, target.url)
    return target
