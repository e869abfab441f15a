"""Entry point: ``python -m runner_pool``.

Reads settings from the environment, configures logging and serves the
gateway with uvicorn. Exits 2 on invalid configuration and 1 when the
gateway never started (a runner did not become ready).
"""

import logging
import sys

import uvicorn

from runner_pool.config import Settings
from runner_pool.errors import ConfigError
from runner_pool.gateway import create_app

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

logger = logging.getLogger("runner_pool")


def main() -> int:
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        logging.basicConfig(level=logging.ERROR, format=LOG_FORMAT)
        logger.error(str(e))
        return 2

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    app = create_app(settings)
    config = uvicorn.Config(app, host=settings.host, port=settings.port, lifespan="on")
    server = uvicorn.Server(config)
    server.run()
    # A failed lifespan (readiness timeout) leaves the server unstarted.
    if not server.started:
        logger.error("Gateway did not start")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
