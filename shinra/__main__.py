"""Run the proxy with uvicorn: ``python -m shinra`` or the ``shinra`` script."""

import uvicorn

from shinra.config import settings


def main():
    uvicorn.run(
        "shinra.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        # Required for correct worker pool stats and in-process state.
        workers=1,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
