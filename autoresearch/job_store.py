from typing import Dict, Iterable, List, Optional
from threading import Lock
import logging
import uuid
from datetime import datetime, timezone

from autoresearch.models.conversation import ClarificationConversation, ConversationState
from autoresearch.models.job import JobStatus, ResearchJob, ResearchStage
from autoresearch.storage import JsonSnapshot

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Thread-safe job store, optionally mirrored to a JSON snapshot."""
    def __init__(self, snapshot: Optional[JsonSnapshot] = None):
        self._jobs: Dict[str, ResearchJob] = {}
        self._lock = Lock()
        self._snapshot = snapshot
        if snapshot:
            for job_id, raw in snapshot.load().items():
                self._jobs[job_id] = ResearchJob.model_validate(raw)

    def create_job(
        self,
        task_id: str,
        user_id: str,
        automation_id: Optional[str] = None,
        channel_id: Optional[str] = None,
        max_retries: int = 3,
    ) -> ResearchJob:
        """Create a new job in the pending state."""
        job_id = str(uuid.uuid4())
        job = ResearchJob(
            job_id=job_id,
            task_id=task_id,
            user_id=user_id,
            automation_id=automation_id,
            channel_id=channel_id,
            status=JobStatus.PENDING,
            current_stage=ResearchStage.UNDERSTAND,
            max_retries=max_retries,
        )
        with self._lock:
            self._jobs[job_id] = job
            self._persist()
        return job.model_copy(deep=True)

    def get_job(self, job_id: str) -> Optional[ResearchJob]:
        """Get a copy of the job by ID."""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def update_job(self, job_id: str, unset: Iterable[str] = (), **fields) -> Optional[ResearchJob]:
        """Set the given fields. None values are skipped, so accumulated results are never cleared.

        Fields named in ``unset`` are reset to None explicitly.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            self._apply(job, fields)
            for key in unset:
                self._check_field(key)
                setattr(job, key, None)
            self._persist()
            return job.model_copy(deep=True)

    def transition(self, job_id: str, expected: Iterable[JobStatus], **fields) -> Optional[ResearchJob]:
        """Apply the update only if the job's status is one of ``expected``.

        Returns the updated job, or None when the job is missing or in another state.
        """
        expected = set(expected)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status not in expected:
                return None
            self._apply(job, fields)
            self._persist()
            return job.model_copy(deep=True)

    def add_log(self, job_id: str, message: str) -> None:
        """Add a log message to the job."""
        with self._lock:
            if job := self._jobs.get(job_id):
                job.logs.append(f"{_now().isoformat()} {message}")
                self._persist()

    def list_jobs(
        self,
        user_id: Optional[str] = None,
        statuses: Optional[Iterable[JobStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[ResearchJob]:
        """Jobs newest first, optionally filtered by owner and status."""
        statuses = set(statuses) if statuses is not None else None
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if (user_id is None or job.user_id == user_id)
                and (statuses is None or job.status in statuses)
            ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit] if limit else jobs

    def clear(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._persist()

    def _apply(self, job: ResearchJob, fields: dict) -> None:
        for key, value in fields.items():
            if value is None:
                continue
            self._check_field(key)
            setattr(job, key, value)
        job.updated_at = _now()

    @staticmethod
    def _check_field(key: str) -> None:
        if key not in ResearchJob.model_fields:
            raise AttributeError(f"ResearchJob has no field {key!r}")

    def _persist(self) -> None:
        if self._snapshot:
            self._snapshot.save({
                job_id: job.model_dump(mode="json") for job_id, job in self._jobs.items()
            })


class ConversationStore:
    """Per-channel clarification conversations; at most one open question per channel."""
    def __init__(self, snapshot: Optional[JsonSnapshot] = None):
        self._conversations: Dict[str, ClarificationConversation] = {}
        self._lock = Lock()
        self._snapshot = snapshot
        if snapshot:
            for channel_id, raw in snapshot.load().items():
                self._conversations[channel_id] = ClarificationConversation.model_validate(raw)

    def get(self, channel_id: str) -> Optional[ClarificationConversation]:
        with self._lock:
            conversation = self._conversations.get(channel_id)
            return conversation.model_copy(deep=True) if conversation else None

    def get_active(self, channel_id: str) -> Optional[ClarificationConversation]:
        """The channel's conversation if it is waiting on an answer."""
        conversation = self.get(channel_id)
        if conversation and conversation.is_open:
            return conversation
        return None

    def open(
        self,
        channel_id: str,
        job_id: str,
        focus_areas: List[str],
        expires_at: datetime,
        user_id: Optional[str] = None,
        task_name: Optional[str] = None,
    ) -> ClarificationConversation:
        with self._lock:
            existing = self._conversations.get(channel_id)
            if existing and existing.is_open and existing.job_id != job_id:
                logger.warning(
                    f"Channel {channel_id} had an open clarification for job {existing.job_id}; "
                    f"replacing it with job {job_id}"
                )
            conversation = ClarificationConversation(
                channel_id=channel_id,
                user_id=user_id,
                job_id=job_id,
                state=ConversationState.AWAITING_CLARIFICATION,
                focus_areas=list(focus_areas),
                task_name=task_name,
                expires_at=expires_at,
                created_at=existing.created_at if existing else _now(),
            )
            self._conversations[channel_id] = conversation
            self._persist()
            return conversation.model_copy(deep=True)

    def set_state(self, channel_id: str, state: ConversationState) -> Optional[ClarificationConversation]:
        with self._lock:
            conversation = self._conversations.get(channel_id)
            if conversation is None:
                return None
            conversation.state = state
            conversation.updated_at = _now()
            self._persist()
            return conversation.model_copy(deep=True)

    def close(self, channel_id: str, job_id: Optional[str] = None) -> bool:
        """Back to idle with the job detached. With ``job_id``, only if it still owns the channel."""
        with self._lock:
            conversation = self._conversations.get(channel_id)
            if conversation is None:
                return False
            if job_id is not None and conversation.job_id != job_id:
                return False
            conversation.state = ConversationState.IDLE
            conversation.job_id = None
            conversation.focus_areas = []
            conversation.task_name = None
            conversation.expires_at = None
            conversation.updated_at = _now()
            self._persist()
            return True

    def list_expired(self, now: datetime) -> List[ClarificationConversation]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._conversations.values()
                if c.is_open and c.expires_at is not None and c.expires_at <= now
            ]

    def _persist(self) -> None:
        if self._snapshot:
            self._snapshot.save({
                channel_id: c.model_dump(mode="json") for channel_id, c in self._conversations.items()
            })
