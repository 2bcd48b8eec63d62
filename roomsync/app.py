import asyncio

from roomsync.config.config_loader import load_config
from roomsync.core.http_server import SimpleHttpServer
from roomsync.services.logging import setup_logging

TAG = __name__


async def _serve() -> None:
    config = load_config()
    server = SimpleHttpServer(config)
    await server.start()


def main() -> None:
    logger = setup_logging()
    logger.bind(tag=TAG).info("Starting RoomSync alarm service")
    try:
        asyncio.run(_serve())
    except KeyboardInterrupt:
        logger.bind(tag=TAG).info("Shutting down")


if __name__ == "__main__":
    main()
