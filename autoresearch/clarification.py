"""Human-in-the-loop clarification.

A job that needs disambiguation opens a conversation on its channel and
suspends. The user's answer (a button press or free text) resumes the job by
enqueuing a new unit of work that re-enters the pipeline at RESEARCH.

Button payloads use the wire format ``research_focus:<job_id>:<selection>``
where ``<selection>`` is a zero-based focus-area index, ``all`` or ``custom``.
Internally a selection is one of ``FocusIndex``, ``AllFocus`` or ``CustomFocus``.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from autoresearch.core.config import (
    ALL_FOCUS_AREAS_TEXT,
    CALLBACK_PREFIX,
    DEFAULT_FOCUS_TEXT,
    MAX_FOCUS_OPTIONS,
)
from autoresearch.job_store import ConversationStore, JobStore
from autoresearch.models.conversation import ClarificationConversation, ConversationState
from autoresearch.models.job import JobStatus, ResearchJob, ResearchJobData, ResearchStage
from autoresearch.models.research import CategoryAutomation, TaskUnderstanding
from autoresearch.notifications import (
    NotificationButton,
    NotificationOptions,
    NotificationSink,
    format_clarification_message,
    format_custom_prompt_message,
    format_failure_message,
    format_selection_message,
)

logger = logging.getLogger(__name__)

CLARIFICATION_TIMEOUT_ERROR = "Clarification timed out"


@dataclass(frozen=True)
class FocusIndex:
    index: int


@dataclass(frozen=True)
class AllFocus:
    pass


@dataclass(frozen=True)
class CustomFocus:
    pass


FocusSelection = Union[FocusIndex, AllFocus, CustomFocus]


def encode_selection(selection: FocusSelection) -> str:
    if isinstance(selection, AllFocus):
        return "all"
    if isinstance(selection, CustomFocus):
        return "custom"
    return str(selection.index)


def encode_callback_data(job_id: str, selection: FocusSelection) -> str:
    return f"{CALLBACK_PREFIX}:{job_id}:{encode_selection(selection)}"


def parse_callback_data(data: str) -> Optional[Tuple[str, FocusSelection]]:
    """Decode a button payload; None when it is not a clarification callback."""
    if not data:
        return None
    parts = data.split(":")
    if len(parts) != 3 or parts[0] != CALLBACK_PREFIX or not parts[1]:
        return None
    job_id, raw = parts[1], parts[2]
    if raw == "all":
        return job_id, AllFocus()
    if raw == "custom":
        return job_id, CustomFocus()
    try:
        return job_id, FocusIndex(int(raw))
    except ValueError:
        # Unreadable index resolves like an out-of-range one
        return job_id, FocusIndex(-1)


def resolve_selection(selection: FocusSelection, focus_areas: List[str]) -> Optional[str]:
    """The clarification text for a selection; None for ``CustomFocus`` (answer comes as text)."""
    if isinstance(selection, CustomFocus):
        return None
    if isinstance(selection, AllFocus):
        return ALL_FOCUS_AREAS_TEXT
    if 0 <= selection.index < len(focus_areas):
        return focus_areas[selection.index]
    return focus_areas[0] if focus_areas else DEFAULT_FOCUS_TEXT


def build_clarification_buttons(job_id: str, focus_areas: List[str]) -> List[List[NotificationButton]]:
    rows = [
        [NotificationButton(text=area, callback_data=encode_callback_data(job_id, FocusIndex(i)))]
        for i, area in enumerate(focus_areas[:MAX_FOCUS_OPTIONS])
    ]
    rows.append([NotificationButton(text="📋 All of the above", callback_data=encode_callback_data(job_id, AllFocus()))])
    rows.append([NotificationButton(text="✏️ Let me specify...", callback_data=encode_callback_data(job_id, CustomFocus()))])
    return rows


class ClarificationGate:
    """Opens clarification questions and turns answers into resumed jobs.

    ``enqueue_resume`` receives the resume payload and returns the new queue handle.
    """

    def __init__(
        self,
        job_store: JobStore,
        conversations: ConversationStore,
        notifier: NotificationSink,
        enqueue_resume: Callable[[ResearchJobData], Awaitable[str]],
        policy: str = "proceed",
    ):
        self.job_store = job_store
        self.conversations = conversations
        self.notifier = notifier
        self.enqueue_resume = enqueue_resume
        self.policy = policy
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    async def open(
        self,
        data: ResearchJobData,
        question: str,
        focus_areas: List[str],
        timeout_at: datetime,
    ) -> bool:
        """Record the open question on the job's channel and send it. Returns whether it was delivered."""
        focus_areas = focus_areas[:MAX_FOCUS_OPTIONS]
        self.conversations.open(
            data.channel_id,
            data.job_id,
            focus_areas,
            expires_at=timeout_at,
            user_id=data.user_id,
            task_name=data.task_name,
        )
        options = NotificationOptions(buttons=build_clarification_buttons(data.job_id, focus_areas))
        delivered = await self.notifier.notify(data.channel_id, format_clarification_message(question), options)
        if not delivered:
            logger.warning(f"Clarification question for job {data.job_id} was not delivered")
        return delivered

    async def handle_callback(self, channel_id: str, data: str) -> bool:
        """Returns False when ``data`` is not an answer to this channel's open question."""
        parsed = parse_callback_data(data)
        if parsed is None:
            return False
        job_id, selection = parsed
        return await self.answer(channel_id, selection, job_id=job_id)

    async def answer(self, channel_id: str, selection: FocusSelection, job_id: Optional[str] = None) -> bool:
        conversation = self.conversations.get_active(channel_id)
        if conversation is None:
            return False
        if job_id is not None and conversation.job_id != job_id:
            logger.info(f"Ignoring answer for job {job_id}; channel {channel_id} is waiting on {conversation.job_id}")
            return False

        if isinstance(selection, CustomFocus):
            self.conversations.set_state(channel_id, ConversationState.AWAITING_CUSTOM_INPUT)
            await self.notifier.notify(channel_id, format_custom_prompt_message())
            return True

        await self._resume(conversation, resolve_selection(selection, conversation.focus_areas))
        return True

    async def handle_text(self, channel_id: str, text: str) -> bool:
        """Free text counts as an answer only after the user picked "Let me specify..."."""
        conversation = self.conversations.get_active(channel_id)
        if conversation is None or conversation.state != ConversationState.AWAITING_CUSTOM_INPUT:
            return False
        text = text.strip()
        if not text:
            return False
        await self._resume(conversation, text)
        return True

    async def expire_stale(self, now: Optional[datetime] = None) -> int:
        """Apply the timeout policy to every conversation past its deadline."""
        if self.policy == "wait":
            return 0
        now = now or datetime.now(timezone.utc)
        expired = self.conversations.list_expired(now)
        for conversation in expired:
            logger.info(f"Clarification for job {conversation.job_id} timed out (policy: {self.policy})")
            if self.policy == "proceed":
                await self._resume(conversation, ALL_FOCUS_AREAS_TEXT)
            else:
                await self._fail(conversation)
        return len(expired)

    @asynccontextmanager
    async def _job_lock(self, job_id: str):
        """Serialize answers and timeouts for one job; the lock is dropped once nobody holds or waits on it."""
        lock = self._locks.setdefault(job_id, asyncio.Lock())
        self._lock_users[job_id] = self._lock_users.get(job_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[job_id] -= 1
            if not self._lock_users[job_id]:
                del self._lock_users[job_id]
                del self._locks[job_id]

    async def _resume(self, conversation: ClarificationConversation, response: str) -> Optional[str]:
        job_id = conversation.job_id
        channel_id = conversation.channel_id
        async with self._job_lock(job_id):
            job = self.job_store.transition(
                job_id,
                {JobStatus.AWAITING_CLARIFICATION},
                status=JobStatus.RESEARCHING,
                current_stage=ResearchStage.RESEARCH,
                clarification_response=response,
            )
            # The conversation is done either way; a duplicate answer finds it already closed
            self.conversations.close(channel_id, job_id)
            if job is None:
                logger.info(f"Job {job_id} is no longer awaiting clarification; answer ignored")
                return None

            self.job_store.add_log(job_id, f"Clarification received: {response}")
            await self.notifier.notify(channel_id, format_selection_message(response, conversation.task_name))
            handle = await self.enqueue_resume(self._resume_payload(job, response))
            self.job_store.update_job(job_id, queue_handle=handle)
        logger.info(f"Job {job_id} resumed with clarification {response!r} as {handle}")
        return handle

    async def _fail(self, conversation: ClarificationConversation) -> None:
        job_id = conversation.job_id
        async with self._job_lock(job_id):
            job = self.job_store.transition(
                job_id,
                {JobStatus.AWAITING_CLARIFICATION},
                status=JobStatus.FAILED,
                error_message=CLARIFICATION_TIMEOUT_ERROR,
            )
            self.conversations.close(conversation.channel_id, job_id)
        if job is not None:
            task_name = conversation.task_name or job.interpreted_topic or "Research"
            await self.notifier.notify(
                conversation.channel_id, format_failure_message(task_name, CLARIFICATION_TIMEOUT_ERROR)
            )

    @staticmethod
    def _resume_payload(job: ResearchJob, response: str) -> ResearchJobData:
        base = job.job_data or ResearchJobData(
            job_id=job.job_id,
            task_id=job.task_id,
            task_name=job.interpreted_topic or "Research",
            user_id=job.user_id,
            channel_id=job.channel_id,
            automation_config=CategoryAutomation(user_id=job.user_id),
        )
        understanding = TaskUnderstanding(
            interpreted_topic=job.interpreted_topic or base.task_name,
            search_queries=job.search_queries or [base.task_name],
            needs_clarification=False,
            suggested_focus_areas=job.focus_areas,
            confidence=0.9,
        )
        return base.model_copy(update={
            "stage": ResearchStage.RESEARCH,
            "clarification_response": response,
            "understanding": understanding,
            "research_data": None,
            "generated_note": None,
            "note_id": None,
        })
