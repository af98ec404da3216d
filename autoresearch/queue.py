"""In-process job queue with retries, delayed backoff and bounded retention.

Entries are addressed by an opaque handle. A first run uses the research job id,
a clarification resume ``<job_id>-resume-<ms>`` and a post-restart recovery
``<job_id>-recover-<ms>``, so one research job can own several entries over its
lifetime. Finished entries are kept in ``TTLCache``s so duplicate submissions
are rejected and status stays queryable for a while.
"""
import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Set

from cachetools import TTLCache

from autoresearch.core.config import QUEUE_NAME
from autoresearch.errors import DuplicateJobError
from autoresearch.models.job import ResearchJobData, ResearchJobResult

logger = logging.getLogger(__name__)

RESEARCH_JOB_NAME = "research"


class EntryState(str, Enum):
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    def __str__(self):
        return self.value


@dataclass
class RetentionPolicy:
    age: float
    count: int


@dataclass
class JobOptions:
    attempts: int = 3
    backoff_type: str = "exponential"
    backoff_delay: float = 1.0
    remove_on_complete: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(24 * 3600, 100))
    remove_on_fail: RetentionPolicy = field(default_factory=lambda: RetentionPolicy(7 * 24 * 3600, 50))

    def backoff_for(self, attempts_made: int) -> float:
        """Delay before the next try after ``attempts_made`` failed attempts (1 s, 2 s, 4 s, ...)."""
        if self.backoff_type == "fixed":
            return self.backoff_delay
        return self.backoff_delay * (2 ** max(attempts_made - 1, 0))

    @classmethod
    def from_settings(cls, settings) -> "JobOptions":
        return cls(
            attempts=settings.QUEUE_ATTEMPTS,
            backoff_delay=settings.QUEUE_BACKOFF_DELAY,
            remove_on_complete=RetentionPolicy(settings.QUEUE_KEEP_COMPLETED_AGE, settings.QUEUE_KEEP_COMPLETED_COUNT),
            remove_on_fail=RetentionPolicy(settings.QUEUE_KEEP_FAILED_AGE, settings.QUEUE_KEEP_FAILED_COUNT),
        )


@dataclass
class QueueEntry:
    handle: str
    name: str
    data: ResearchJobData
    opts: JobOptions
    state: EntryState = EntryState.WAITING
    attempts_made: int = 0
    progress: int = 0
    result: Optional[ResearchJobResult] = None
    failed_reason: Optional[str] = None
    created_at: float = 0.0
    processed_at: Optional[float] = None
    finished_at: Optional[float] = None

    @property
    def job_id(self) -> str:
        return self.data.job_id

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.opts.attempts


def _timestamp_ms() -> int:
    return int(time.time() * 1000)


class ResearchQueue:
    def __init__(
        self,
        name: str = QUEUE_NAME,
        default_opts: Optional[JobOptions] = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.default_opts = default_opts or JobOptions()
        self._timer = timer
        # Waiting, delayed and active entries
        self._entries: Dict[str, QueueEntry] = {}
        self._waiting: Deque[str] = deque()
        self._delayed: Dict[str, asyncio.TimerHandle] = {}
        self._promotions: Set[asyncio.Task] = set()
        keep_completed = self.default_opts.remove_on_complete
        keep_failed = self.default_opts.remove_on_fail
        self._completed: TTLCache = TTLCache(maxsize=keep_completed.count, ttl=keep_completed.age, timer=timer)
        self._failed: TTLCache = TTLCache(maxsize=keep_failed.count, ttl=keep_failed.age, timer=timer)
        self._cond = asyncio.Condition()
        self._paused = False
        self._closed = False

    async def add(
        self,
        name: str,
        data: ResearchJobData,
        job_id: Optional[str] = None,
        opts: Optional[JobOptions] = None,
    ) -> QueueEntry:
        handle = job_id or f"{data.job_id}-{_timestamp_ms()}"
        if self.get_entry(handle) is not None:
            raise DuplicateJobError(handle)
        entry = QueueEntry(
            handle=handle,
            name=name,
            data=data,
            opts=opts or self.default_opts,
            created_at=self._timer(),
        )
        async with self._cond:
            self._entries[handle] = entry
            self._waiting.append(handle)
            self._cond.notify_all()
        logger.info(f"Queued {name} entry {handle} for job {data.job_id}")
        return entry

    async def add_research_job(self, data: ResearchJobData) -> str:
        entry = await self.add(RESEARCH_JOB_NAME, data, job_id=data.job_id)
        return entry.handle

    async def resume_research_job(self, data: ResearchJobData) -> str:
        entry = await self.add(RESEARCH_JOB_NAME, data, job_id=f"{data.job_id}-resume-{_timestamp_ms()}")
        return entry.handle

    async def recover_job(self, data: ResearchJobData) -> str:
        entry = await self.add(RESEARCH_JOB_NAME, data, job_id=f"{data.job_id}-recover-{_timestamp_ms()}")
        return entry.handle

    async def next_entry(self) -> Optional[QueueEntry]:
        """Wait for a runnable entry and mark it active. Returns None once the queue is closed."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._closed or (not self._paused and bool(self._waiting)))
            if self._closed:
                return None
            entry = self._entries[self._waiting.popleft()]
            entry.state = EntryState.ACTIVE
            entry.attempts_made += 1
            entry.processed_at = self._timer()
            return entry

    def complete(self, entry: QueueEntry, result: Optional[ResearchJobResult] = None) -> None:
        entry.state = EntryState.COMPLETED
        entry.result = result
        entry.progress = 100
        entry.finished_at = self._timer()
        self._entries.pop(entry.handle, None)
        self._completed[entry.handle] = entry

    def fail(self, entry: QueueEntry, error: BaseException) -> bool:
        """Record a failed attempt. Returns True when a retry was scheduled."""
        entry.failed_reason = str(error)
        if entry.attempts_made < entry.opts.attempts and self._closed:
            # No timer after close; the entry stays delayed like the ones close() cancelled
            entry.state = EntryState.DELAYED
            logger.warning(
                f"Entry {entry.handle} failed (attempt {entry.attempts_made}/{entry.opts.attempts}) "
                f"after the queue closed; retry dropped at shutdown"
            )
            return False
        if entry.attempts_made < entry.opts.attempts:
            delay = entry.opts.backoff_for(entry.attempts_made)
            entry.state = EntryState.DELAYED
            self._delayed[entry.handle] = asyncio.get_running_loop().call_later(
                delay, self._schedule_promotion, entry.handle
            )
            logger.info(
                f"Entry {entry.handle} failed (attempt {entry.attempts_made}/{entry.opts.attempts}), "
                f"retrying in {delay:.1f}s"
            )
            return True

        entry.state = EntryState.FAILED
        entry.finished_at = self._timer()
        self._entries.pop(entry.handle, None)
        self._failed[entry.handle] = entry
        logger.error(f"Entry {entry.handle} failed permanently after {entry.attempts_made} attempts: {error}")
        return False

    async def requeue(self, entry: QueueEntry) -> None:
        """Put an interrupted active entry back at the head of the queue without using up an attempt."""
        async with self._cond:
            if entry.handle not in self._entries:
                return
            entry.state = EntryState.WAITING
            entry.attempts_made = max(entry.attempts_made - 1, 0)
            self._waiting.appendleft(entry.handle)
            self._cond.notify_all()

    def _schedule_promotion(self, handle: str) -> None:
        task = asyncio.get_running_loop().create_task(self._promote(handle))
        self._promotions.add(task)
        task.add_done_callback(self._promotions.discard)

    async def _promote(self, handle: str) -> None:
        async with self._cond:
            self._delayed.pop(handle, None)
            entry = self._entries.get(handle)
            if entry is None or entry.state != EntryState.DELAYED:
                return
            entry.state = EntryState.WAITING
            self._waiting.append(handle)
            self._cond.notify_all()

    def get_entry(self, handle: str) -> Optional[QueueEntry]:
        return self._entries.get(handle) or self._completed.get(handle) or self._failed.get(handle)

    def get_job_status(self, handle: str) -> Optional[dict]:
        entry = self.get_entry(handle)
        if entry is None:
            return None
        return {
            "handle": entry.handle,
            "job_id": entry.job_id,
            "state": str(entry.state),
            "progress": entry.progress,
            "attempts_made": entry.attempts_made,
            "failed_reason": entry.failed_reason,
            "result": entry.result.model_dump(mode="json") if entry.result else None,
        }

    def cancel(self, handle: str) -> bool:
        """Drop a waiting or delayed entry. Active entries run to completion."""
        entry = self._entries.get(handle)
        if entry is None or entry.state not in (EntryState.WAITING, EntryState.DELAYED):
            return False
        if entry.state == EntryState.DELAYED:
            timer = self._delayed.pop(handle, None)
            if timer:
                timer.cancel()
        else:
            self._waiting.remove(handle)
        del self._entries[handle]
        logger.info(f"Cancelled queue entry {handle}")
        return True

    def entries_for_job(self, job_id: str) -> List[QueueEntry]:
        return [entry for entry in self._entries.values() if entry.job_id == job_id]

    def pending_retries(self) -> List[QueueEntry]:
        """Entries waiting out a retry backoff. After close these retries never run."""
        return [entry for entry in self._entries.values() if entry.state == EntryState.DELAYED]

    def get_active_for_user(self, user_id: str) -> List[QueueEntry]:
        """Unfinished entries (waiting, delayed or active) belonging to the user."""
        return [entry for entry in self._entries.values() if entry.data.user_id == user_id]

    def stats(self) -> Dict[str, int]:
        counts = {str(state): 0 for state in EntryState}
        for entry in self._entries.values():
            counts[str(entry.state)] += 1
        counts[str(EntryState.COMPLETED)] = len(self._completed)
        counts[str(EntryState.FAILED)] = len(self._failed)
        counts["paused"] = int(self._paused)
        return counts

    async def pause(self) -> None:
        async with self._cond:
            self._paused = True
        logger.info(f"Queue {self.name} paused")

    async def resume(self) -> None:
        async with self._cond:
            self._paused = False
            self._cond.notify_all()
        logger.info(f"Queue {self.name} resumed")

    def clean(self, grace: float, limit: Optional[int] = None, state: EntryState = EntryState.COMPLETED) -> List[str]:
        """Remove retained entries that finished more than ``grace`` seconds ago."""
        cache = self._completed if state == EntryState.COMPLETED else self._failed
        cutoff = self._timer() - grace
        removed = []
        for handle, entry in list(cache.items()):
            if limit is not None and len(removed) >= limit:
                break
            if entry.finished_at is not None and entry.finished_at <= cutoff:
                del cache[handle]
                removed.append(handle)
        if removed:
            logger.info(f"Cleaned {len(removed)} {state} entries from {self.name}")
        return removed

    def update_progress(self, handle: str, progress: int) -> None:
        entry = self._entries.get(handle)
        if entry is not None:
            entry.progress = max(0, min(100, progress))

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            for timer in self._delayed.values():
                timer.cancel()
            self._delayed.clear()
            self._cond.notify_all()
        logger.info(f"Queue {self.name} closed")
