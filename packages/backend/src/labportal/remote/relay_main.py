"""Relay entry point — run as a separate process.

Usage:
    python -m labportal.remote.relay_main

Or via the console script:
    labportal-relay
"""

import asyncio
import logging
import signal

from labportal.config import settings
from labportal.remote.relay import ChangeRelay, RelayConfig

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("labportal.relay")


async def run():
    """Run the relay until interrupted."""
    # asyncpg wants a plain postgresql:// URL, not the SQLAlchemy dialect form
    db_url = settings.database_url.replace("+asyncpg", "")

    relay = ChangeRelay(RelayConfig(database_url=db_url, redis_url=settings.redis_url))

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(relay.stop()))

    logger.info("Relay starting (DB: %s)", db_url.split("@")[1] if "@" in db_url else db_url)

    try:
        await relay.start()
    except asyncio.CancelledError:
        pass
    finally:
        logger.info("Relay stopped. Stats: %s", relay.get_stats())


def main():
    """CLI entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
