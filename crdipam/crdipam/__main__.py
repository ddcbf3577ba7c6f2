import asyncio
import logging
import signal
from typing import Optional

from . import config
from .controller import Controller

logger = logging.getLogger(__name__)


class CrdIpamApp:
    """Main application class for the crdipam pool controller."""

    def __init__(self, settings: Optional[config.Settings] = None):
        self.settings = settings
        self.controller: Optional[Controller] = None

    def setup(self) -> None:
        """Reads settings from the environment and builds the controller."""
        if self.settings is None:
            self.settings = config.Settings.from_env()
        self.controller = Controller.from_settings(self.settings)
        logger.info(
            f"Pool settings: low watermark {self.settings.low_watermark}, "
            f"expand step {self.settings.expand_step}, bind mode '{self.settings.bind_mode}'"
        )

    def install_signal_handlers(self) -> None:
        """Cancels the running task on SIGTERM so shutdown runs the cleanup path."""
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        assert task is not None
        loop.add_signal_handler(signal.SIGTERM, task.cancel)

    async def run(self) -> None:
        """Runs the cache watchers and the queue workers until cancelled."""
        self.setup()
        assert self.controller is not None
        cache = self.controller.cache
        self.install_signal_handlers()

        try:
            logger.info("--- Waiting for cache sync ---")
            # Every synced object is queued, so the first pass covers all nodes and pods
            await cache.start()
            logger.info("--- Cache synced, starting workers ---")

            workers = self.controller.start()
            await asyncio.gather(*workers, *cache.tasks)
        finally:
            await self.controller.stop()
            await cache.stop()


def cli():
    """Main command-line entrypoint."""
    config.setup_logging()
    try:
        settings = config.Settings.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    app = CrdIpamApp(settings)
    try:
        asyncio.run(app.run())
    except asyncio.CancelledError:
        logger.info("Received SIGTERM, exiting.")
    except (KeyboardInterrupt, SystemExit) as e:
        if isinstance(e, SystemExit) and e.code == 0:
            logger.info("Exiting normally.")
        elif isinstance(e, SystemExit):
            logger.error(f"Exiting due to fatal error (code {e.code}).")
        else:
            logger.info("Exiting.")


if __name__ == "__main__":
    cli()
