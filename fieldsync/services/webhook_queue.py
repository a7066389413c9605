"""
Bounded in-process work queue between the webhook receiver and the processor.

The receiver submits event ids without waiting; a fixed pool of worker tasks
drains the queue. When the queue is full the submit is refused and the event
stays queued in the database, where the webhook sweeper picks it up on its
next pass. Nothing is lost on overflow or restart because the database row,
not the queue entry, is the source of truth.
"""
import asyncio
import logging

logger = logging.getLogger(__name__)


class WebhookQueue:
    def __init__(self, processor, worker_count: int = 4, maxsize: int = 1000):
        self.processor = processor
        self.worker_count = max(1, worker_count)
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []
        # ids handed off but not yet finished; the sweeper skips these
        self._pending: set[str] = set()
        self.submitted = 0
        self.duplicates = 0
        self.rejected = 0
        self.processed = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._workers)

    def start(self) -> None:
        if self.running:
            return
        self._workers = [
            asyncio.create_task(self._worker(n), name=f"webhook-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info("Webhook queue started with %d workers", self.worker_count)

    async def stop(self, timeout: float = 10.0) -> None:
        """Let in-flight work finish (up to timeout), then cancel the workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Webhook queue drain timed out with %d pending", self._queue.qsize())
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Webhook queue stopped")

    def is_pending(self, event_id) -> bool:
        return str(event_id) in self._pending

    def submit(self, event_id) -> bool:
        """
        Non-blocking handoff. False means the event was left for the sweeper.
        An id already waiting or in flight is not queued a second time.
        """
        key = str(event_id)
        if key in self._pending:
            self.duplicates += 1
            return True
        try:
            self._queue.put_nowait(event_id)
        except asyncio.QueueFull:
            self.rejected += 1
            logger.warning(
                "Webhook queue full (%d) - event %s left for sweeper",
                self._queue.maxsize, str(event_id)[:8],
            )
            return False
        self._pending.add(key)
        self.submitted += 1
        return True

    async def join(self) -> None:
        await self._queue.join()

    async def _worker(self, worker_number: int) -> None:
        while True:
            event_id = await self._queue.get()
            try:
                await self.processor.process_event(event_id)
                self.processed += 1
            except Exception as e:
                self.errors += 1
                logger.error(
                    "Webhook worker %d crashed on event %s: %s",
                    worker_number, str(event_id)[:8], str(e), exc_info=True,
                )
            finally:
                self._pending.discard(str(event_id))
                self._queue.task_done()

    def stats(self) -> dict:
        return {
            "size": self._queue.qsize(),
            "maxsize": self._queue.maxsize,
            "workers": len(self._workers),
            "running": self.running,
            "pending": len(self._pending),
            "submitted": self.submitted,
            "duplicates": self.duplicates,
            "rejected": self.rejected,
            "processed": self.processed,
            "errors": self.errors,
        }
