from enum import Enum
from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel, Field


class ConversationState(str, Enum):
    IDLE = "idle"
    AWAITING_CLARIFICATION = "awaiting_clarification"
    AWAITING_CUSTOM_INPUT = "awaiting_custom_input"

    def __str__(self):
        return self.value


class ClarificationConversation(BaseModel):
    """Per-channel record of the (single) open clarification question."""
    channel_id: str
    user_id: Optional[str] = None
    job_id: Optional[str] = None
    state: ConversationState = ConversationState.IDLE
    focus_areas: List[str] = Field(default_factory=list)
    task_name: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_open(self) -> bool:
        return self.state != ConversationState.IDLE and self.job_id is not None
