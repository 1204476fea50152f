"""Test configuration: thread-mode workers, no DNS lookups, fake upstreams."""

import os

# Must be set before any shinra imports so the settings singleton sees them.
os.environ["SHINRA_ENV_FILE"] = "tests/.env.does-not-exist"
os.environ["WORKER_POOL_MODE"] = "thread"
os.environ["WORKER_POOL_SIZE"] = "2"
os.environ["UPSTREAM_DNS_CHECK"] = "false"
os.environ["PUBLIC_BASE_URL"] = ""

import httpx  # noqa: E402
import pytest  # noqa: E402

from shinra.config import Settings  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def test_settings():
    return Settings(
        upstream_dns_check=False,
        worker_pool_mode="thread",
        worker_pool_size=2,
        public_base_url="",
    )


class FakeUpstream:
    """Routes outbound requests to canned responses and records them.

    ``routes`` maps a full URL (without query) to either an
    ``httpx.Response`` or a callable ``(request) -> httpx.Response`` (sync or
    async).  Unknown URLs answer 404.
    """

    def __init__(self):
        self.routes: dict[str, object] = {}
        self.requests: list[httpx.Request] = []

    def add(self, url: str, response):
        self.routes[url] = response

    def add_playlist(self, url: str, text: str, content_type="application/vnd.apple.mpegurl", status=200):
        self.routes[url] = lambda request: httpx.Response(
            status, text=text, headers={"content-type": content_type},
        )

    @property
    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]

    async def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = str(request.url).split("?", 1)[0]
        route = self.routes.get(key)
        if route is None:
            return self._fresh(httpx.Response(404, text="not found", headers={"content-type": "text/plain"}))
        if isinstance(route, httpx.Response):
            return self._fresh(route)
        result = route(request)
        if hasattr(result, "__await__"):
            result = await result
        return self._fresh(result)

    @staticmethod
    def _fresh(response: httpx.Response) -> httpx.Response:
        """Copy a pre-read response into a new, not-yet-consumed stream."""
        if not response.is_stream_consumed:
            return response
        return httpx.Response(
            response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(response.content),
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)


@pytest.fixture
def upstream():
    return FakeUpstream()
