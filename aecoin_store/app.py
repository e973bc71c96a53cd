import asyncio
import signal
import sys
from typing import Optional

from dotenv import load_dotenv

from .services.database import close_db, init_db
from .services.rankings import seed_sample_rankings
from .services.storefront import StorefrontServer
from .utils.logger import logger


class AecoinStoreApp:
    def __init__(self):
        self.storefront: Optional[StorefrontServer] = None
        self._stopped = asyncio.Event()

    async def setup(self) -> None:
        logger.info("Initializing AECOIN Store...")

        # 1. Database
        try:
            await init_db()
            logger.info("Database connection established.")
        except Exception as e:
            logger.critical(f"Database failed to initialize: {e}")
            raise

        # 2. HTTP storefront
        self.storefront = StorefrontServer()
        await self.storefront.start()

    async def run(self) -> None:
        await self.setup()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except NotImplementedError:
                pass
        try:
            await self._stopped.wait()
        finally:
            await self.close()

    def request_stop(self) -> None:
        self._stopped.set()

    async def close(self) -> None:
        if self.storefront is not None:
            await self.storefront.stop()
            self.storefront = None
        await close_db()


def run() -> None:
    load_dotenv()
    try:
        asyncio.run(AecoinStoreApp().run())
    except KeyboardInterrupt:
        logger.info("Shutting down.")
    except Exception:
        logger.exception("AECOIN Store stopped with an error")
        sys.exit(1)


async def _seed() -> int:
    await init_db()
    try:
        return await seed_sample_rankings()
    finally:
        await close_db()


def seed_rankings() -> None:
    load_dotenv()
    logger.info("Adding sample rankings for positions 4-10...")
    try:
        count = asyncio.run(_seed())
    except Exception as e:
        logger.error(f"Error adding sample rankings: {e}")
        sys.exit(1)
    logger.info(f"Sample rankings added successfully ({count} players). Visit /rankings to see the leaderboard.")


if __name__ == "__main__":
    run()
