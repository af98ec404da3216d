from typing import Optional
from pydantic import BaseModel, Field

from autoresearch.models.research import AutomationType, ResearchDepth


class TriggerRequest(BaseModel):
    """Request model for starting research on a task."""
    task_id: str
    user_id: str
    channel_id: Optional[str] = None
    category_id: Optional[str] = None
    # Web-triggered research falls back to a default automation without clarification
    require_automation: bool = False


class CallbackRequest(BaseModel):
    """A button press relayed from the chat front-end."""
    channel_id: str
    data: str


class MessageRequest(BaseModel):
    """A free-text chat message relayed from the chat front-end."""
    channel_id: str
    text: str


class AutomationCreateRequest(BaseModel):
    """A research policy for one of the user's categories."""
    user_id: str
    category_id: str
    automation_type: AutomationType = "research"
    llm_model: str = "gpt-4o-mini"
    research_depth: ResearchDepth = "medium"
    ask_clarification: bool = True
    notification_enabled: bool = True
    max_sources: int = Field(10, ge=1)


class AutomationUpdateRequest(BaseModel):
    """Fields left out keep their current value."""
    user_id: str
    llm_model: Optional[str] = None
    research_depth: Optional[ResearchDepth] = None
    ask_clarification: Optional[bool] = None
    notification_enabled: Optional[bool] = None
    max_sources: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
