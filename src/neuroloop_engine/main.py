"""NeuroLoop engine worker: processes recovery, completion and override jobs."""

import asyncio
import logging

from . import service
from .config import Config
from .health import start_health_server
from .logging import setup_logging
from .registry import registered_types
from .worker import Worker

# Import handlers to register them
from . import handlers  # noqa: F401


def main() -> None:
    config = Config.from_env()
    setup_logging(config.log_format)
    service.configure(
        recovery_decay=config.recovery_decay,
        max_generation_attempts=config.max_generation_attempts,
        default_timezone=config.default_timezone,
    )

    logger = logging.getLogger(__name__)
    logger.info("NeuroLoop engine starting")
    logger.info("Log format: %s", config.log_format)
    logger.info("Health port: %d", config.health_port)
    logger.info("Recovery decay: %s", config.recovery_decay)
    logger.info("Registered job types: %s", registered_types())

    asyncio.run(_run(config))


async def _run(config: Config) -> None:
    health_server = await start_health_server(config.health_port, config.database_url)
    try:
        worker = Worker(config)
        await worker.run()
    finally:
        health_server.close()
        await health_server.wait_closed()


if __name__ == "__main__":
    main()
