"""
Entry point for the perp autotrader backend.

Configures logging from LOG_LEVEL and serves the FastAPI app (server.app) with uvicorn.
"""

import logging
import os

from server import app


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(app, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))


if __name__ == "__main__":
    main()
