import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional

from autoresearch.models.job import ResearchJobResult
from autoresearch.queue import QueueEntry, ResearchQueue

logger = logging.getLogger(__name__)

Processor = Callable[[QueueEntry], Awaitable[ResearchJobResult]]


@dataclass
class RateLimiterStats:
    """Statistics for rate limiter operations."""
    acquired: int = 0
    throttled: int = 0
    total_wait_seconds: float = 0.0


class SlidingWindowRateLimiter:
    """Allows at most ``max_calls`` acquisitions in any ``period``-second window."""

    def __init__(
        self,
        max_calls: int = 10,
        period: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_calls = max_calls
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._calls: Deque[float] = deque()
        self._lock = asyncio.Lock()
        self.stats = RateLimiterStats()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = self._clock()
                while self._calls and self._calls[0] <= now - self.period:
                    self._calls.popleft()
                if len(self._calls) < self.max_calls:
                    self._calls.append(now)
                    self.stats.acquired += 1
                    return
                wait = self._calls[0] + self.period - now
                self.stats.throttled += 1
                self.stats.total_wait_seconds += wait
                logger.info(f"Rate limit reached, waiting {wait:.1f}s before starting the next job")
                await self._sleep(wait)


class ResearchWorker:
    """Fixed pool of consumers pulling entries from a ``ResearchQueue``."""

    def __init__(
        self,
        queue: ResearchQueue,
        processor: Processor,
        concurrency: int = 2,
        limiter: Optional[SlidingWindowRateLimiter] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.concurrency = concurrency
        self.limiter = limiter
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"research-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} research workers")

    async def close(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Research workers stopped")

    async def _run(self, index: int) -> None:
        while True:
            entry = await self.queue.next_entry()
            if entry is None:
                return
            await self._process(entry)

    async def _process(self, entry: QueueEntry) -> None:
        logger.info(f"Processing entry {entry.handle} (attempt {entry.attempts_made}/{entry.opts.attempts})")
        try:
            if self.limiter:
                await self.limiter.acquire()
            result = await self.processor(entry)
        except asyncio.CancelledError:
            # Shutdown mid-job: hand the entry back so the next start picks it up
            await asyncio.shield(self.queue.requeue(entry))
            raise
        except Exception as e:
            logger.error(f"Entry {entry.handle} failed: {e}", exc_info=True)
            self.queue.fail(entry, e)
        else:
            self.queue.complete(entry, result)
            logger.info(f"Entry {entry.handle} finished with status {result.status if result else None}")
