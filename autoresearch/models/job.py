from enum import Enum, IntEnum
from datetime import datetime, timezone
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from autoresearch.models.research import (
    CategoryAutomation,
    GeneratedNote,
    ResearchData,
    SourceReference,
    TaskUnderstanding,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    UNDERSTANDING = "understanding"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    RESEARCHING = "researching"
    SYNTHESIZING = "synthesizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


class ResearchStage(IntEnum):
    UNDERSTAND = 1
    CLARIFY = 2
    RESEARCH = 3
    SYNTHESIZE = 4
    NOTIFY = 5
    COMPLETE = 6


# NOTIFY reports synthesizing: a job is only "completed" once NOTIFY has finished.
STAGE_STATUS = {
    ResearchStage.UNDERSTAND: JobStatus.UNDERSTANDING,
    ResearchStage.CLARIFY: JobStatus.AWAITING_CLARIFICATION,
    ResearchStage.RESEARCH: JobStatus.RESEARCHING,
    ResearchStage.SYNTHESIZE: JobStatus.SYNTHESIZING,
    ResearchStage.NOTIFY: JobStatus.SYNTHESIZING,
    ResearchStage.COMPLETE: JobStatus.COMPLETED,
}

FINISHED_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.CANCELLED})
IN_FLIGHT_STATUSES = frozenset({
    JobStatus.PENDING,
    JobStatus.UNDERSTANDING,
    JobStatus.RESEARCHING,
    JobStatus.SYNTHESIZING,
})


def status_for_stage(stage: ResearchStage, failed: bool = False, cancelled: bool = False) -> JobStatus:
    """Derive the human-facing status from the stage and the terminal flags."""
    if cancelled:
        return JobStatus.CANCELLED
    if failed:
        return JobStatus.FAILED
    return STAGE_STATUS.get(ResearchStage(stage), JobStatus.PENDING)


class ResearchJobData(BaseModel):
    """Queued unit of work; the optional fields carry state forward on resume."""
    job_id: str
    task_id: str
    task_name: str
    task_description: Optional[str] = None
    user_id: str
    channel_id: Optional[str] = None
    automation_config: CategoryAutomation

    # Resume data
    stage: Optional[ResearchStage] = None
    clarification_response: Optional[str] = None
    understanding: Optional[TaskUnderstanding] = None
    research_data: Optional[ResearchData] = None
    generated_note: Optional[GeneratedNote] = None
    note_id: Optional[str] = None


class ResearchJobResult(BaseModel):
    status: Literal["completed", "awaiting_clarification", "failed", "cancelled"]
    note_id: Optional[str] = None
    error: Optional[str] = None
    stage: Optional[ResearchStage] = None


class ResearchJob(BaseModel):
    """Durable record of one research request, shared across suspend/resume cycles."""
    job_id: str
    task_id: str
    user_id: str
    automation_id: Optional[str] = None
    channel_id: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    current_stage: ResearchStage = ResearchStage.UNDERSTAND
    queue_handle: Optional[str] = None

    # Task understanding
    interpreted_topic: Optional[str] = None
    focus_areas: List[str] = Field(default_factory=list)
    search_queries: List[str] = Field(default_factory=list)

    # Clarification
    clarification_question: Optional[str] = None
    clarification_response: Optional[str] = None
    clarification_sent_at: Optional[datetime] = None
    clarification_timeout_at: Optional[datetime] = None

    # Research results
    raw_research_data: Optional[ResearchData] = None
    sources_used: List[SourceReference] = Field(default_factory=list)
    source_count: int = 0
    generated_note_id: Optional[str] = None

    # Error handling
    error_message: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 3

    # Payload snapshot used to re-enqueue the job after a restart
    job_data: Optional[ResearchJobData] = None

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    logs: List[str] = Field(default_factory=list)
