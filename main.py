# main.py
import asyncio
import logging
from agrimarket.app import MarketplaceApp
from agrimarket.config import setup_logging

async def main():
    # Setup logging
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        app = MarketplaceApp()
        logger.info("Starting marketplace API...")
        await app.start()
    except Exception as e:
        logger.error(f"Error starting marketplace API: {e}", exc_info=True)
        raise

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
