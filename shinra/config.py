"""Configuration via Pydantic Settings, loaded from .env file."""

import logging
import os
from functools import cached_property
from pathlib import Path
from pydantic_settings import BaseSettings

_cfg_logger = logging.getLogger("config")

# Resolve .env path relative to the project root (parent of shinra/) so it
# works regardless of the working directory the process is launched from.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent


def _resolve_env_file() -> Path:
    """Return an absolute path to the .env file.

    If ``SHINRA_ENV_FILE`` is set, use it (resolved relative to the project
    root when not absolute).  Otherwise default to ``<project_root>/.env``.
    """
    raw = os.environ.get("SHINRA_ENV_FILE", "")
    if raw:
        p = Path(raw)
        return p if p.is_absolute() else _PROJECT_ROOT / p
    return _PROJECT_ROOT / ".env"


class Settings(BaseSettings):
    # Server
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    log_level: str = "INFO"
    cors_allowed_origins: str = "*"

    # Routing
    proxy_base_path: str = "/proxy"
    # Externally visible origin of this proxy (e.g. https://proxy.example.com).
    # Empty = derive from each inbound request.
    public_base_url: str = ""

    # Inbound limits
    max_request_body_bytes: int = 10 * 1024 * 1024
    max_url_length: int = 2048

    # SSRF guard
    allow_private_networks: bool = False
    private_host_allowlist: str = ""
    upstream_dns_check: bool = True

    # -- Upstream fetch -------------------------------------------------------

    upstream_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/126.0.0.0 Safari/537.36"
    )
    fetch_connect_timeout_s: float = 10.0
    fetch_timeout_s: float = 30.0
    stream_read_timeout_s: float = 30.0
    stream_transfer_timeout_s: float = 3600.0
    max_redirects: int = 5
    max_playlist_bytes: int = 5 * 1024 * 1024
    stream_chunk_bytes: int = 64 * 1024

    # Hard bound on fetch + buffer + rewrite for a single request
    request_timeout_s: float = 45.0

    # -- Worker pool ----------------------------------------------------------

    worker_pool_size: int = 0  # 0 = os.cpu_count()
    worker_pool_mode: str = "process"  # or "thread"
    worker_queue_max: int = 256
    worker_job_timeout_s: float = 10.0
    worker_shutdown_timeout_s: float = 10.0

    model_config = {
        "env_file": str(_resolve_env_file()),
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @cached_property
    def cors_origins(self) -> list[str]:
        origins = [origin.strip() for origin in self.cors_allowed_origins.split(",") if origin.strip()]
        return origins or ["*"]

    @cached_property
    def private_hosts(self) -> frozenset[str]:
        return frozenset(
            host.strip().lower() for host in self.private_host_allowlist.split(",") if host.strip()
        )

    @cached_property
    def proxy_prefix(self) -> str:
        """``proxy_base_path`` with exactly one leading and no trailing slash."""
        path = "/" + self.proxy_base_path.strip().strip("/")
        return path if path != "/" else "/proxy"

    @property
    def pool_size(self) -> int:
        if self.worker_pool_size > 0:
            return self.worker_pool_size
        return os.cpu_count() or 1

    def warn_insecure_defaults(self):
        """Log warnings about risky settings. Called once at startup."""
        if self.allow_private_networks:
            _cfg_logger.warning(
                "ALLOW_PRIVATE_NETWORKS is enabled; the proxy will fetch "
                "loopback and private-range targets. Do not expose it to the internet!"
            )
        if not self.upstream_dns_check:
            _cfg_logger.warning(
                "UPSTREAM_DNS_CHECK is disabled; hostnames resolving to private "
                "addresses will not be blocked."
            )
        if not self.public_base_url:
            _cfg_logger.info(
                "PUBLIC_BASE_URL is empty, so rewritten playlists will point at the "
                "host each request arrived on. Set PUBLIC_BASE_URL when running "
                "behind a reverse proxy (e.g. PUBLIC_BASE_URL=https://proxy.example.com)."
            )


settings = Settings()
