"""Main entry point for the API server."""

import logging

import uvicorn

from wealthsync.api.app import app
from wealthsync.config import get_settings


if __name__ == "__main__":
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    # HOST and PORT come from the environment or .env
    uvicorn.run(app, host=settings.host, port=settings.port)
