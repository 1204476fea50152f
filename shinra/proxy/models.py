"""Per-request value types shared by the resolver, fetcher, rewriter and pool."""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Mapping


class AddressingMode(str, Enum):
    QUERY = "query"
    PATH = "path"
    BASE64_PATH = "base64"


class BodyKind(str, Enum):
    """How an upstream body is delivered: passed through or buffered for rewriting."""

    STREAM = "stream"
    BUFFERED = "buffered"


@dataclass(frozen=True)
class ProxyRequest:
    raw_target: str
    addressing_mode: AddressingMode
    client_headers: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    method: str = "GET"
    # Query string sent alongside a base64 target (e.g. LL-HLS _HLS_msn
    # directives a player appends to a playlist URL).
    extra_query: str = ""


@dataclass(frozen=True)
class ResolvedTarget:
    url: str
    scheme: str
    host: str

    def __str__(self) -> str:
        return self.url


@dataclass(frozen=True)
class RewriteJob:
    """Input for one playlist rewrite.  Must stay picklable for process workers."""

    playlist_text: str
    base_url: str
    proxy_base_url: str


@dataclass(frozen=True)
class WorkerPoolStats:
    threads_total: int
    threads_available: int
    queue_depth: int
    jobs_completed: int = 0
    jobs_failed: int = 0

    @property
    def degraded(self) -> bool:
        return self.threads_available == 0 and self.queue_depth > 0
