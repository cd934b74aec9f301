"""
Queue Worker

Recurring, non-overlapping task that moves at most one queued job per tick
into the orchestrator whenever the admission gate allows it.
"""
import asyncio
import logging
from typing import Optional

from .admission_gate import AdmissionGate
from .errors import DeployerError, QueueUnavailable
from .job_orchestrator import JobOrchestrator
from .queue_manager import JobQueue

logger = logging.getLogger(__name__)


class QueueWorker:
    def __init__(
        self,
        queue: JobQueue,
        gate: AdmissionGate,
        orchestrator: JobOrchestrator,
        enabled: bool,
        interval_seconds: float = 5.0,
    ):
        self.queue = queue
        self.gate = gate
        self.orchestrator = orchestrator
        self.enabled = enabled
        self.interval_seconds = interval_seconds
        self._in_flight = False
        self._shutdown_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    async def tick(self) -> bool:
        """
        Run one scheduling step. Returns True if a job was processed.

        The in-flight flag is claimed before the first await, so concurrent
        ticks can never start two orchestrations.
        """
        if not self.enabled or self._in_flight:
            return False

        self._in_flight = True
        try:
            if not await self.gate.is_available():
                return False

            try:
                job = await self.queue.dequeue()
            except QueueUnavailable as e:
                logger.warning(f"Queue store unavailable, skipping tick: {e}")
                return False
            if job is None:
                return False

            logger.info(f"Dequeued {job.product} job enqueued at {job.enqueued_at.isoformat()}")
            try:
                result = await self.orchestrator.run(job, idempotency_key=job.idempotency_key)
            except DeployerError as e:
                logger.error(f"Queued {job.product} job failed: {e.code}: {e}")
            except Exception as e:
                logger.error(f"Queued {job.product} job failed: {e}", exc_info=True)
            else:
                logger.info(f"Queued {job.product} job completed: {result.uri or '<no uri>'}")
            return True
        finally:
            self._in_flight = False

    async def run_forever(self) -> None:
        """Tick on a fixed interval until stopped."""
        logger.info(f"Queue worker started (interval {self.interval_seconds}s, enabled={self.enabled})")
        while not self._shutdown_event.is_set():
            await self.tick()
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Queue worker stopped")

    def stop(self) -> None:
        self._shutdown_event.set()

    def start(self) -> Optional[asyncio.Task]:
        """Spawn the tick loop on the running event loop, if queueing is enabled."""
        if not self.enabled:
            return None
        self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        """
        Stop ticking and wait for the loop to exit.

        A job already in flight runs to completion, which can take both
        polling budgets. With ``grace_seconds`` set, a job still running after
        that long is cancelled; the orchestrator marks its session failed and
        any deployment it created must be closed by hand.
        """
        self.stop()
        if self._task is None:
            return
        try:
            await asyncio.wait_for(self._task, timeout=grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Queued job still running after {grace_seconds}s; cancelled")
        finally:
            self._task = None
