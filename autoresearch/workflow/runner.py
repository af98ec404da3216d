import logging
from datetime import timedelta
from typing import Callable, Optional, Tuple

from autoresearch.clarification import ClarificationGate
from autoresearch.core.config import DEFAULT_CLARIFICATION_QUESTION, MAX_FOCUS_OPTIONS
from autoresearch.core.logging import setup_job_logger
from autoresearch.errors import JobNotFoundError, NoteCreationError
from autoresearch.job_store import ConversationStore, JobStore
from autoresearch.models.job import (
    FINISHED_STATUSES,
    JobStatus,
    ResearchJob,
    ResearchJobData,
    ResearchJobResult,
    ResearchStage,
    status_for_stage,
    utcnow,
)
from autoresearch.models.research import (
    GeneratedNote,
    ResearchData,
    SourceReference,
    TaskUnderstanding,
)
from autoresearch.notifications import (
    NotificationSink,
    format_completion_message,
    format_failure_message,
)
from autoresearch.providers import ResearchProviders
from autoresearch.providers.synthesis import generate_note_summary
from autoresearch.repository import NoteRepository
from autoresearch.workflow.utils import log_stage_transition

logger = logging.getLogger(__name__)

# A job may be (re)entered from any state except these
RUNNABLE_STATUSES = frozenset(set(JobStatus) - FINISHED_STATUSES)

ProgressCallback = Callable[[ResearchStage], None]


class ResearchRunner:
    """Drives one research job through its stages for a single queue invocation.

    Every stage persists its results to the job store before the next one
    starts, so a later invocation (a retry, a clarification resume or a
    recovery after restart) can pick up at the last persisted stage. No job
    state is kept on the runner between invocations.
    """

    def __init__(
        self,
        job_store: JobStore,
        conversations: ConversationStore,
        repository: NoteRepository,
        providers: ResearchProviders,
        notifier: NotificationSink,
        gate: ClarificationGate,
        clarification_timeout: timedelta = timedelta(hours=24),
        short_clarification_timeout: timedelta = timedelta(hours=1),
    ):
        self.job_store = job_store
        self.conversations = conversations
        self.repository = repository
        self.providers = providers
        self.notifier = notifier
        self.gate = gate
        self.clarification_timeout = clarification_timeout
        self.short_clarification_timeout = short_clarification_timeout

    async def run(
        self,
        data: ResearchJobData,
        attempt: int = 1,
        max_attempts: int = 1,
        queue_handle: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ResearchJobResult:
        job_id = data.job_id
        job_logger = setup_job_logger(job_id)

        job = self.job_store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        # At-least-once delivery: a redelivered entry for a finished or still-suspended job is a no-op
        if job.status in FINISHED_STATUSES:
            job_logger.info(f"Job already {job.status}, nothing to do")
            return ResearchJobResult(status=job.status.value, note_id=job.generated_note_id, stage=job.current_stage)
        clarification = data.clarification_response or job.clarification_response
        if (
            job.status == JobStatus.AWAITING_CLARIFICATION
            and not data.clarification_response
            and job.clarification_sent_at is not None
        ):
            job_logger.info("Job is still waiting for clarification")
            return ResearchJobResult(status="awaiting_clarification", stage=ResearchStage.CLARIFY)

        stage = max(ResearchStage(data.stage or ResearchStage.UNDERSTAND), job.current_stage)
        if stage == ResearchStage.CLARIFY and clarification:
            stage = ResearchStage.RESEARCH

        self.job_store.update_job(job_id, started_at=job.started_at or utcnow(), queue_handle=queue_handle)
        job_logger.info(f"Running from stage {stage.name} (attempt {attempt}/{max_attempts})")

        understanding = data.understanding
        research_data = data.research_data
        note = data.generated_note
        note_id = data.note_id or job.generated_note_id

        try:
            while stage != ResearchStage.COMPLETE:
                before = self._enter_stage(job_id, stage)
                if before is None:
                    job_logger.info("Job was cancelled, stopping")
                    return ResearchJobResult(status="cancelled", stage=stage)
                if progress:
                    progress(stage)

                if stage == ResearchStage.UNDERSTAND:
                    understanding = await self._understand(data, job_logger)
                    wants_clarification = (
                        understanding.needs_clarification
                        and data.automation_config.ask_clarification
                        and bool(data.channel_id)
                    )
                    next_stage = ResearchStage.CLARIFY if wants_clarification else ResearchStage.RESEARCH

                elif stage == ResearchStage.CLARIFY:
                    understanding = understanding or self._stored_understanding(data, before)
                    await self._clarify(data, understanding, job_logger)
                    log_stage_transition(job_logger, stage.name, before, self.job_store.get_job(job_id))
                    return ResearchJobResult(status="awaiting_clarification", stage=ResearchStage.CLARIFY)

                elif stage == ResearchStage.RESEARCH:
                    understanding = understanding or self._stored_understanding(data, before)
                    research_data = await self._research(data, understanding, clarification, job_logger)
                    next_stage = ResearchStage.SYNTHESIZE

                elif stage == ResearchStage.SYNTHESIZE:
                    research_data = research_data or before.raw_research_data
                    if research_data is None:
                        raise ValueError("No research data to synthesize")
                    focus_areas = (understanding or self._stored_understanding(data, before)).suggested_focus_areas
                    note, note_id = await self._synthesize(data, research_data, focus_areas, note_id, job_logger)
                    next_stage = ResearchStage.NOTIFY

                else:
                    note = note or self._stored_note(note_id)
                    await self._notify(data, note, job_logger)
                    next_stage = ResearchStage.COMPLETE

                log_stage_transition(job_logger, stage.name, before, self.job_store.get_job(job_id))
                stage = next_stage

            return ResearchJobResult(status="completed", note_id=note_id, stage=ResearchStage.COMPLETE)

        except Exception as e:
            job_logger.error(f"Research failed at stage {stage.name}: {e}")
            failed = self.job_store.transition(
                job_id,
                RUNNABLE_STATUSES,
                status=JobStatus.FAILED,
                error_message=str(e),
                retry_count=attempt,
            )
            self.job_store.add_log(job_id, f"Error at {stage.name} (attempt {attempt}/{max_attempts}): {e}")
            # Retries stay silent; only the terminal failure reaches the user
            if failed is not None and attempt >= max_attempts and data.channel_id:
                await self.notifier.notify(data.channel_id, format_failure_message(data.task_name, str(e)))
            raise

    def _enter_stage(self, job_id: str, stage: ResearchStage) -> Optional[ResearchJob]:
        """Persist the stage and its status before running it. None if the job was cancelled meanwhile."""
        job = self.job_store.transition(
            job_id,
            RUNNABLE_STATUSES,
            status=status_for_stage(stage),
            current_stage=stage,
        )
        if job is not None:
            self.job_store.add_log(job_id, f"Entering stage {stage.name}")
        return job

    async def _understand(self, data: ResearchJobData, job_logger) -> TaskUnderstanding:
        understanding = await self.providers.understand(
            data.task_name, data.task_description, model=data.automation_config.llm_model
        )
        self.job_store.update_job(
            data.job_id,
            interpreted_topic=understanding.interpreted_topic,
            focus_areas=understanding.suggested_focus_areas,
            search_queries=understanding.search_queries,
        )
        job_logger.info(
            f"Understood as {understanding.interpreted_topic!r} "
            f"(needs clarification: {understanding.needs_clarification})"
        )
        return understanding

    async def _clarify(self, data: ResearchJobData, understanding: TaskUnderstanding, job_logger) -> None:
        question = understanding.clarification_question or DEFAULT_CLARIFICATION_QUESTION
        timeout = (
            self.clarification_timeout
            if data.automation_config.ask_clarification
            else self.short_clarification_timeout
        )
        sent_at = utcnow()
        await self.gate.open(
            data,
            question,
            understanding.suggested_focus_areas[:MAX_FOCUS_OPTIONS],
            sent_at + timeout,
        )
        # Recorded once the question is out, so a crash before sending re-asks on recovery
        self.job_store.update_job(
            data.job_id,
            clarification_question=question,
            clarification_sent_at=sent_at,
            clarification_timeout_at=sent_at + timeout,
        )
        job_logger.info(f"Waiting for clarification until {(sent_at + timeout).isoformat()}")

    async def _research(
        self,
        data: ResearchJobData,
        understanding: TaskUnderstanding,
        clarification: Optional[str],
        job_logger,
    ) -> ResearchData:
        if clarification:
            understanding = await self.providers.refine(
                data.task_name, understanding, clarification, model=data.automation_config.llm_model
            )
            self.job_store.update_job(
                data.job_id,
                clarification_response=clarification,
                search_queries=understanding.search_queries,
                focus_areas=understanding.suggested_focus_areas,
            )
            job_logger.info(f"Refined queries with clarification {clarification!r}")

        research_data = await self.providers.research(
            understanding.search_queries,
            data.automation_config.research_depth,
        )
        results = research_data.results[: data.automation_config.max_sources]
        research_data = research_data.model_copy(update={"results": results, "total_sources": len(results)})

        self.job_store.update_job(
            data.job_id,
            raw_research_data=research_data,
            sources_used=[SourceReference.from_result(r) for r in results],
            source_count=len(results),
        )
        job_logger.info(f"Collected {len(results)} sources")
        return research_data

    async def _synthesize(
        self,
        data: ResearchJobData,
        research_data: ResearchData,
        focus_areas,
        note_id: Optional[str],
        job_logger,
    ) -> Tuple[GeneratedNote, str]:
        if note_id:
            # A previous attempt already stored the note; only the link may be missing
            note = self._stored_note(note_id)
        else:
            note = await self.providers.synthesize(
                data.task_name, research_data, focus_areas, model=data.automation_config.llm_model
            )
            note_id = self.repository.create_note(
                user_id=data.user_id,
                title=note.title,
                content=note.content,
                research_job_id=data.job_id,
                sources=note.sources,
            )
            if not note_id:
                raise NoteCreationError("Failed to create research note")
            self.job_store.update_job(data.job_id, generated_note_id=note_id)

        self.repository.link_note_to_task(data.task_id, note_id)
        job_logger.info(f"Note {note_id} linked to task {data.task_id}")
        return note, note_id

    async def _notify(self, data: ResearchJobData, note: GeneratedNote, job_logger) -> None:
        if data.automation_config.notification_enabled and data.channel_id:
            message = format_completion_message(data.task_name, generate_note_summary(note), len(note.sources))
            await self.notifier.notify(data.channel_id, message)
        if data.channel_id:
            self.conversations.close(data.channel_id, data.job_id)
        self.job_store.update_job(
            data.job_id,
            status=JobStatus.COMPLETED,
            current_stage=ResearchStage.COMPLETE,
            completed_at=utcnow(),
            unset=("error_message",),
        )
        job_logger.info("Research complete")

    @staticmethod
    def _stored_understanding(data: ResearchJobData, job: ResearchJob) -> TaskUnderstanding:
        return TaskUnderstanding(
            interpreted_topic=job.interpreted_topic or data.task_name,
            search_queries=job.search_queries or [data.task_name],
            needs_clarification=False,
            clarification_question=job.clarification_question,
            suggested_focus_areas=job.focus_areas,
            confidence=0.9,
        )

    def _stored_note(self, note_id: Optional[str]) -> GeneratedNote:
        stored = self.repository.get_note(note_id) if note_id else None
        if stored is None:
            raise NoteCreationError(f"Research note {note_id} not found")
        return GeneratedNote(title=stored.title, content=stored.content, sources=stored.sources)
