"""
Teardown Scheduler

Closes each deployment once its paid duration has elapsed. Pending
teardowns are persisted through the StateManager and reconciled on
startup, so a restart does not leave deployments running.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict

from .errors import ExecError
from .executor_adapter import MarketplaceAdapter
from .models import DeploymentStatus, utcnow
from .state_manager import StateManager

logger = logging.getLogger(__name__)

# Longest lease we will hold open; keeps close_at inside datetime range
MAX_TEARDOWN_DELAY_SECONDS = 366 * 24 * 60 * 60


class TeardownScheduler:
    def __init__(
        self,
        marketplace: MarketplaceAdapter,
        state_manager: StateManager,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.marketplace = marketplace
        self.state_manager = state_manager
        self._sleep = sleep
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def schedule(self, session_id: str, owner: str, dseq: str, delay_seconds: float, **fields) -> None:
        """Persist the teardown obligation, then arm the in-process timer."""
        if delay_seconds > MAX_TEARDOWN_DELAY_SECONDS:
            logger.warning(f"Teardown delay for dseq {dseq} capped at {MAX_TEARDOWN_DELAY_SECONDS}s")
            delay_seconds = MAX_TEARDOWN_DELAY_SECONDS
        delay_seconds = max(0, delay_seconds)
        close_at = utcnow() + timedelta(seconds=delay_seconds)
        await self.state_manager.update_status(session_id, DeploymentStatus.ACTIVE, close_at=close_at, **fields)
        self._arm(session_id, owner, dseq, delay_seconds)
        logger.info(f"Teardown for dseq {dseq} scheduled in {delay_seconds:.0f}s")

    async def reconcile(self) -> int:
        """Re-arm teardowns persisted by a previous process. Returns how many."""
        now = utcnow()
        records = await self.state_manager.pending_teardowns()
        for record in records:
            if record.id in self._tasks:
                continue
            delay = max(0.0, (record.close_at - now).total_seconds())
            self._arm(record.id, record.owner, record.dseq, delay)
        if records:
            logger.info(f"Reconciled {len(records)} pending teardown(s)")
        return len(records)

    def _arm(self, session_id: str, owner: str, dseq: str, delay_seconds: float) -> None:
        task = asyncio.create_task(self._close_after(session_id, owner, dseq, delay_seconds))
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))

    async def _close_after(self, session_id: str, owner: str, dseq: str, delay_seconds: float) -> None:
        await self._sleep(delay_seconds)
        await self.close(session_id, owner, dseq)

    async def close(self, session_id: str, owner: str, dseq: str) -> bool:
        """Close a deployment. Failures are recorded and logged, never retried."""
        try:
            await self.marketplace.close_deployment(owner, dseq)
        except ExecError as e:
            logger.error(f"close_failed dseq={dseq}: {e}")
            await self.state_manager.update_status(session_id, DeploymentStatus.CLOSE_FAILED, error=str(e))
            return False

        logger.info(f"closed_deployment dseq={dseq}")
        await self.state_manager.update_status(session_id, DeploymentStatus.CLOSED, closed_at=utcnow())
        return True

    async def shutdown(self) -> None:
        """Cancel in-process timers; persisted records stay active for the next startup."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
