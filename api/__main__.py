"""Command line interface for running the API server."""
import asyncio
import logging
import signal

import uvicorn

from config import settings_conf

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

server = None
should_exit = False

def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 5000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)

    async def run(self):
        """Run the server in a way that can be stopped."""
        # The app's lifespan opens and closes the database pool
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True
        if hasattr(self.server, 'force_exit'):
            self.server.force_exit = True

async def main():
    """Run the API server until a shutdown signal arrives."""
    global server, should_exit

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    server = UvicornServer(host=settings_conf['host'], port=settings_conf['port'])
    task = asyncio.create_task(server.run(), name="api")
    logger.info(f"TrustCircle API starting on {settings_conf['host']}:{settings_conf['port']} "
                f"({settings_conf['environment']})")

    try:
        while not should_exit and not task.done():
            await asyncio.sleep(1)

        if task.done() and not task.cancelled() and task.exception():
            logger.error(f"API server failed with error: {task.exception()}")
    finally:
        logger.info("Stopping API server...")
        await server.stop()
        if not task.done():
            await task
        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())
