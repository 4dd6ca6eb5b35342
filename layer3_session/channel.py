"""
Stage event channel.

Each stage run owns one channel. The stage emits exactly one terminal
ScanOutcome onto it; the orchestrator awaits it. Emits after the first are
dropped, so a late vision-engine response can never complete a stage twice.
"""
import asyncio
import logging

from .state import ScanOutcome

logger = logging.getLogger(__name__)


class StageChannel:
    def __init__(self, name: str):
        self.name = name
        self._future: asyncio.Future = asyncio.get_running_loop().create_future()

    @property
    def closed(self) -> bool:
        return self._future.done()

    def emit(self, outcome: ScanOutcome) -> bool:
        """Deliver the terminal outcome. Returns False if one was already delivered."""
        if self._future.done():
            logger.debug(f"[{self.name}] Dropping {outcome.status.value} outcome, stage already finished")
            return False
        self._future.set_result(outcome)
        return True

    async def wait(self) -> ScanOutcome:
        return await self._future

