"""Composition root: wires stores, queue, worker pool, gate and runner together
and exposes the operations used by the web API and chat handlers."""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional

from autoresearch.clarification import ClarificationGate
from autoresearch.config import Settings, settings
from autoresearch.errors import (
    AutomationNotConfiguredError,
    AutomationNotFoundError,
    JobNotFoundError,
    QuotaExceededError,
    TaskNotFoundError,
)
from autoresearch.job_store import ConversationStore, JobStore
from autoresearch.models.job import (
    IN_FLIGHT_STATUSES,
    JobStatus,
    ResearchJob,
    ResearchJobData,
    ResearchJobResult,
    ResearchStage,
)
from autoresearch.models.research import CategoryAutomation
from autoresearch.notifications import (
    NotificationSink,
    build_notification_sink,
    format_failure_message,
    format_started_message,
)
from autoresearch.providers import ResearchProviders, default_providers
from autoresearch.queue import JobOptions, QueueEntry, ResearchQueue
from autoresearch.quota import QuotaLedger
from autoresearch.repository import InMemoryRepository, Note, NoteRepository
from autoresearch.storage import snapshot_for
from autoresearch.worker import ResearchWorker, SlidingWindowRateLimiter
from autoresearch.workflow.runner import RUNNABLE_STATUSES, ResearchRunner

logger = logging.getLogger(__name__)

STAGE_PROGRESS = {
    ResearchStage.UNDERSTAND: 10,
    ResearchStage.CLARIFY: 20,
    ResearchStage.RESEARCH: 40,
    ResearchStage.SYNTHESIZE: 70,
    ResearchStage.NOTIFY: 90,
    ResearchStage.COMPLETE: 100,
}


class ResearchService:
    def __init__(
        self,
        job_store: JobStore,
        conversations: ConversationStore,
        quota: QuotaLedger,
        repository: NoteRepository,
        queue: ResearchQueue,
        notifier: NotificationSink,
        providers: ResearchProviders,
        config: Settings = settings,
    ):
        self.job_store = job_store
        self.conversations = conversations
        self.quota = quota
        self.repository = repository
        self.queue = queue
        self.notifier = notifier
        self.providers = providers
        self.config = config

        self.gate = ClarificationGate(
            job_store,
            conversations,
            notifier,
            enqueue_resume=queue.resume_research_job,
            policy=config.CLARIFICATION_TIMEOUT_POLICY,
        )
        self.runner = ResearchRunner(
            job_store,
            conversations,
            repository,
            providers,
            notifier,
            self.gate,
            clarification_timeout=timedelta(hours=config.CLARIFICATION_TIMEOUT_HOURS),
            short_clarification_timeout=timedelta(hours=config.CLARIFICATION_SHORT_TIMEOUT_HOURS),
        )
        self.worker = ResearchWorker(
            queue,
            self.process_entry,
            concurrency=config.WORKER_CONCURRENCY,
            limiter=SlidingWindowRateLimiter(config.RATE_LIMIT_MAX, config.RATE_LIMIT_DURATION),
        )
        self._sweeper: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        config: Settings = settings,
        repository: Optional[NoteRepository] = None,
        providers: Optional[ResearchProviders] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> "ResearchService":
        return cls(
            job_store=JobStore(snapshot_for(config.DATA_DIR, "jobs")),
            conversations=ConversationStore(snapshot_for(config.DATA_DIR, "conversations")),
            quota=QuotaLedger(config.MAX_JOBS_PER_DAY, snapshot_for(config.DATA_DIR, "quotas")),
            repository=repository or InMemoryRepository(),
            queue=ResearchQueue(default_opts=JobOptions.from_settings(config)),
            notifier=notifier or build_notification_sink(config),
            providers=providers or default_providers(config),
            config=config,
        )

    async def trigger_research(
        self,
        task_id: str,
        user_id: str,
        channel_id: Optional[str] = None,
        category_id: Optional[str] = None,
        require_automation: bool = True,
    ) -> ResearchJob:
        """Create a research job for a task and queue it.

        Raises ``TaskNotFoundError``, ``AutomationNotConfiguredError`` or
        ``QuotaExceededError`` before anything is written.
        """
        task = self.repository.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        category_id = category_id or task.category_id
        automation = self.repository.get_category_automation(category_id) if category_id else None
        if automation is None or automation.automation_type != "research":
            if require_automation:
                raise AutomationNotConfiguredError(f"No research automation for category {category_id}")
            automation = CategoryAutomation(user_id=user_id, category_id=category_id or "", ask_clarification=False)

        # No awaits between the check and the increment, so concurrent triggers can't overshoot the cap
        if not self.quota.can_start(user_id):
            raise QuotaExceededError(user_id)

        job = self.job_store.create_job(
            task_id=task_id,
            user_id=user_id,
            automation_id=automation.id or None,
            channel_id=channel_id,
            max_retries=self.queue.default_opts.attempts,
        )
        data = ResearchJobData(
            job_id=job.job_id,
            task_id=task_id,
            task_name=task.title,
            task_description=task.description,
            user_id=user_id,
            channel_id=channel_id,
            automation_config=automation,
        )
        self.job_store.update_job(job.job_id, job_data=data)
        self.quota.increment(user_id)

        if channel_id:
            await self.notifier.notify(channel_id, format_started_message(task.title))

        handle = await self.queue.add_research_job(data)
        self.job_store.add_log(job.job_id, f"Queued as {handle}")
        logger.info(f"Research job {job.job_id} started for task {task_id}")
        return self.job_store.update_job(job.job_id, queue_handle=handle)

    async def process_entry(self, entry: QueueEntry) -> ResearchJobResult:
        return await self.runner.run(
            entry.data,
            attempt=entry.attempts_made,
            max_attempts=entry.opts.attempts,
            queue_handle=entry.handle,
            progress=lambda stage: self.queue.update_progress(entry.handle, STAGE_PROGRESS[stage]),
        )

    async def handle_callback(self, channel_id: str, data: str) -> bool:
        return await self.gate.handle_callback(channel_id, data)

    async def handle_text(self, channel_id: str, text: str) -> bool:
        return await self.gate.handle_text(channel_id, text)

    def cancel_research(self, job_id: str) -> bool:
        """Cancel a job that has not finished. A running invocation stops at its next stage."""
        job = self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        cancelled = self.job_store.transition(job_id, RUNNABLE_STATUSES, status=JobStatus.CANCELLED)
        if cancelled is None:
            return False
        for entry in self.queue.entries_for_job(job_id):
            self.queue.cancel(entry.handle)
        if job.channel_id:
            self.conversations.close(job.channel_id, job_id)
        self.job_store.add_log(job_id, "Cancelled")
        logger.info(f"Research job {job_id} cancelled")
        return True

    async def recover_pending(self) -> List[str]:
        """Re-enqueue jobs that were in flight when the process stopped."""
        handles = []
        for job in self.job_store.list_jobs():
            if not self._needs_recovery(job):
                continue
            if self.queue.entries_for_job(job.job_id):
                continue
            if job.job_data is None:
                logger.warning(f"Job {job.job_id} has no stored payload and cannot be recovered")
                continue
            data = job.job_data.model_copy(update={
                "stage": job.current_stage,
                "clarification_response": job.clarification_response,
            })
            handle = await self.queue.recover_job(data)
            self.job_store.update_job(job.job_id, queue_handle=handle)
            self.job_store.add_log(job.job_id, f"Recovered as {handle}")
            handles.append(handle)
        if handles:
            logger.info(f"Recovered {len(handles)} research jobs")
        return handles

    @staticmethod
    def _needs_recovery(job: ResearchJob) -> bool:
        if job.status in IN_FLIGHT_STATUSES:
            return True
        if job.status == JobStatus.FAILED:
            # A runner failure with attempts left means a retry was pending
            return 0 < job.retry_count < job.max_retries
        if job.status == JobStatus.AWAITING_CLARIFICATION:
            # The question was never sent
            return job.clarification_sent_at is None
        return False

    async def start(self, recover: bool = True) -> None:
        if recover:
            await self.recover_pending()
        self.worker.start()
        if self._sweeper is None and self.config.CLARIFICATION_TIMEOUT_POLICY != "wait":
            self._sweeper = asyncio.create_task(self._sweep_loop())
        logger.info("Research service started")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self.worker.close()
        await self.queue.close()
        if not self.config.DATA_DIR:
            await self._report_dropped_retries()
        logger.info("Research service stopped")

    async def _report_dropped_retries(self) -> None:
        """Without a snapshot no restart recovers these jobs, so their last failure is final."""
        for entry in self.queue.pending_retries():
            data = entry.data
            job = self.job_store.get_job(data.job_id)
            if job is None or job.status != JobStatus.FAILED or not data.channel_id:
                continue
            logger.warning(f"Job {data.job_id} had a retry pending at shutdown; reporting it as failed")
            error = job.error_message or entry.failed_reason or "Research interrupted by shutdown"
            await self.notifier.notify(data.channel_id, format_failure_message(data.task_name, error))

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.CLARIFICATION_SWEEP_INTERVAL)
            try:
                expired = await self.gate.expire_stale()
                if expired:
                    logger.info(f"Resolved {expired} expired clarifications")
            except Exception:
                logger.error("Clarification sweep failed", exc_info=True)

    def get_job(self, job_id: str) -> ResearchJob:
        job = self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(self, user_id: str, limit: int = 20) -> List[ResearchJob]:
        return self.job_store.list_jobs(user_id=user_id, limit=limit)

    def get_quota(self, user_id: str) -> Dict:
        record = self.quota.get_quota(user_id)
        max_jobs = record.max_jobs_per_day if record else self.quota.max_jobs_per_day
        jobs_today = record.jobs_today if record else 0
        return {
            "user_id": user_id,
            "jobs_today": jobs_today,
            "max_jobs_per_day": max_jobs,
            "remaining": max(max_jobs - jobs_today, 0),
            "can_start": self.quota.can_start(user_id),
            "total_jobs_all_time": record.total_jobs_all_time if record else None,
        }

    def queue_stats(self) -> Dict[str, int]:
        return self.queue.stats()

    def list_automations(self, user_id: str) -> List[CategoryAutomation]:
        return self.repository.list_user_automations(user_id)

    def create_automation(self, user_id: str, category_id: str, **options) -> CategoryAutomation:
        automation = CategoryAutomation(user_id=user_id, category_id=category_id, **options)
        return self.repository.create_category_automation(automation)

    def update_automation(self, automation_id: str, user_id: str, **fields) -> CategoryAutomation:
        """Only the owner can change an automation; jobs already queued keep their copy."""
        self._owned_automation(automation_id, user_id)
        updated = self.repository.update_category_automation(automation_id, **fields)
        if updated is None:
            raise AutomationNotFoundError(automation_id)
        return updated

    def delete_automation(self, automation_id: str, user_id: str) -> None:
        self._owned_automation(automation_id, user_id)
        if not self.repository.delete_category_automation(automation_id):
            raise AutomationNotFoundError(automation_id)

    def _owned_automation(self, automation_id: str, user_id: str) -> CategoryAutomation:
        automation = self.repository.get_automation(automation_id)
        if automation is None or automation.user_id != user_id:
            raise AutomationNotFoundError(automation_id)
        return automation

    def get_task_notes(self, task_id: str) -> List[Note]:
        if self.repository.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        return self.repository.get_task_notes(task_id)

    def status(self) -> Dict:
        exa = bool(self.config.EXA_API_KEY)
        tavily = bool(self.config.TAVILY_API_KEY)
        return {
            "enabled": bool(self.config.OPENAI_API_KEY) and (exa or tavily),
            "llm_available": bool(self.config.OPENAI_API_KEY),
            "exa_available": exa,
            "tavily_available": tavily,
            "worker_running": self.worker.running,
            "queue": self.queue.name,
        }
