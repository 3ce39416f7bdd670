"""
Queue Processor

Fixed-interval background loop that resumes jobs deferred by quota
exhaustion once a credential is available again.
"""
import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Dict, Optional

from .errors import ProvisioningError
from .queue_manager import QueueManager
from .request_router import RequestRouter, RouteContext

logger = logging.getLogger(__name__)


class QueueProcessor:
    def __init__(
        self,
        queue: QueueManager,
        router: RequestRouter,
        resume: Callable[[str], Awaitable[bool]],
        poll_interval: float = 60.0,
        batch_size: int = 10,
        stale_after: float = 1800.0,
        worker_id: Optional[str] = None,
    ):
        """
        Args:
            queue: Deferred request repository
            router: Router consulted before resuming anything
            resume: Coroutine resuming a job by id; returns False if the job no longer needs it
            poll_interval: Seconds between scans
            batch_size: Maximum entries handled per scan
            stale_after: Seconds after which a processing claim is considered abandoned
            worker_id: Identity recorded on claims
        """
        self.queue = queue
        self.router = router
        self.resume = resume
        self.poll_interval = poll_interval
        self.batch_size = batch_size
        self.stale_after = stale_after
        self.worker_id = worker_id or f"queue-worker-{uuid.uuid4().hex[:8]}"
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def process_once(self) -> Dict[str, int]:
        """Scan the queue once. Returns counters for the scan."""
        stats = {"claimed": 0, "resumed": 0, "rescheduled": 0, "failed": 0, "lost": 0}
        await self.queue.release_stale(self.stale_after)

        for entry in await self.queue.ready(self.batch_size):
            if not await self.queue.claim(entry.id, self.worker_id):
                stats["lost"] += 1
                continue
            stats["claimed"] += 1

            decision = self.router.route(entry.account_ref, RouteContext(user_id=entry.user_id))
            if not decision.proceed:
                delay = decision.requeue_after if decision.requeue_after is not None else self.poll_interval
                await self.queue.reschedule(entry.id, delay, decision.reason)
                stats["rescheduled"] += 1
                continue

            try:
                resumed = await self.resume(entry.job_id)
            except ProvisioningError as e:
                await self.queue.mark_failed(entry.id, str(e))
                stats["failed"] += 1
                continue

            await self.queue.mark_completed(entry.id)
            if resumed:
                stats["resumed"] += 1
                logger.info(f"Resumed job {entry.job_id} from queued request {entry.id}")

        return stats

    async def run(self) -> None:
        logger.info(f"Queue processor {self.worker_id} started (interval {self.poll_interval}s)")
        while not self._stop_event.is_set():
            try:
                await self.process_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Queue processor {self.worker_id} error: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                continue
        logger.info(f"Queue processor {self.worker_id} stopped")

    def start(self) -> asyncio.Task:
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
