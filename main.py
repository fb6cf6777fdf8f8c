"""Entry point — run the export scheduler and workers without the HTTP API."""

import asyncio
import logging
import signal

from core.config import EngineSettings
from core.logging_config import setup_logging
from core.service import build_service
from integrations.builtin import StaticIdentityProvider

logger = logging.getLogger(__name__)


async def main():
    settings = EngineSettings.from_env()
    setup_logging(settings.log_level, settings.log_json)
    identity = (
        StaticIdentityProvider.from_yaml(settings.members_file)
        if settings.members_file else StaticIdentityProvider()
    )
    service = build_service(settings, identity)
    await service.init()
    await service.start()
    logger.info(
        "Export engine running",
        extra={"tick_seconds": settings.tick_seconds, "workers": settings.worker_count},
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:     # Windows
            pass
    try:
        await stop.wait()
    finally:
        await service.shutdown()
        logger.info("Export engine stopped")


if __name__ == "__main__":
    asyncio.run(main())
