import asyncio
import logging
import signal
import sys
import uvicorn
import time

from .config import settings
from .context import SyncContext
from .clients.notion_client import NotionClient
from .coordinator import ImportCoordinator
from .errors import RemoteError, SyncInProgressError
from .models import ImportStatus
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.notion = NotionClient.from_settings(settings)
        self.context = SyncContext.create(self.notion, settings)
        self.coordinator = ImportCoordinator(self.context)
        self.resources = [r for r in settings.SYNC_RESOURCES if settings.database_id(r)]

        # Link coordinator to server module
        server.coordinator = self.coordinator

    async def setup(self):
        await self.notion.initialize()
        for resource in self.resources:
            snap = self.coordinator.status(resource)
            logger.info(f"{resource}: {snap.status.value}" + (f" ({snap.message})" if snap.message else ""))

    async def sync_resource(self, resource: str):
        status = self.coordinator.status(resource).status
        if status == ImportStatus.ERROR:
            # Errors need user action; wait for a reset or a manual import
            logger.debug(f"Skipping {resource}: last import failed")
            return
        try:
            run = self.coordinator.sync(resource)
        except SyncInProgressError:
            logger.debug(f"{resource} import still running")
            return
        final = await run.wait()
        logger.info(f"{resource}: {final.status.value} - {final.message}")

    async def sync_loop(self):
        while self.running:
            start_time = time.time()
            # Resources have independent state, so they import side by side
            await asyncio.gather(*(self.sync_resource(r) for r in self.resources))

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            sleep_time = max(1, settings.SYNC_INTERVAL_SECONDS - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        if not self.resources:
            logger.error("No Notion databases configured, nothing to sync")
            return

        try:
            await self.setup()
        except RemoteError as e:
            logger.error(f"Cannot start sync: {e}")
            return

        tasks = [asyncio.create_task(self.sync_loop())]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.notion.close()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
