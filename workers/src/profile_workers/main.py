"""Entry point: health endpoint plus the profile workflow host."""

import asyncio
import logging

from . import handlers  # noqa: F401  (registers workflows and activities)
from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_activities, registered_types
from .worker import Worker

logger = logging.getLogger(__name__)


async def serve(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        await Worker(config).run()
    finally:
        health_server.close()
        await health_server.wait_closed()


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)

    logger.info(
        "Profile worker starting (log_format=%s, health_port=%d)",
        config.log_format,
        config.health_port,
    )
    logger.info("Workflows: %s", registered_types())
    logger.info("Activities: %s", registered_activities())

    asyncio.run(serve(config))


if __name__ == "__main__":
    main()
