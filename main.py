"""
b1bridge entry point.
Checks the Service Layer connection and prints the client health.
"""

import asyncio
import json

from loguru import logger

from b1bridge.service_layer import ServiceLayerClient
from b1bridge.settings import Settings
from b1bridge.utils import configure_logging


async def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting b1bridge...")

    client = ServiceLayerClient(settings)
    try:
        await client.init()

        status = await client.test_connection()
        if status.reachable:
            logger.info(f"Service Layer reachable (HTTP {status.status_code})")
        else:
            logger.error(f"Service Layer unreachable: {status.error}")

        health = await client.get_health_status()
        print(json.dumps(health, indent=2, default=str))

    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down...")
    finally:
        await client.close()
        logger.info("b1bridge stopped")


if __name__ == "__main__":
    asyncio.run(main())
