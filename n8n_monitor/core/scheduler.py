import asyncio
import logging

from n8n_monitor import config
from n8n_monitor.core.monitor import run_monitor_pass

logger = logging.getLogger(__name__)


class Scheduler:
    def __init__(self, services, interval: float | None = None):
        self.services = services
        self.interval = config.MONITOR_INTERVAL if interval is None else interval

    async def start(self):
        logger.info("Scheduler started (interval: %ss)", self.interval)
        while True:
            try:
                await self._tick()
            except Exception as e:
                logger.error("Scheduler tick error: %s", e)
            await asyncio.sleep(self.interval)

    async def _tick(self):
        services = self.services
        await run_monitor_pass(
            services.session_factory,
            services.monitor,
            services.locks,
            client_factory=services.client_factory,
        )
