"""Payloads exchanged with the understanding, research and synthesis providers."""
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional
from pydantic import BaseModel, Field, field_validator

from autoresearch.core.config import MAX_SEARCH_QUERIES

ResearchDepth = Literal["quick", "medium", "deep"]
AutomationType = Literal["research", "summary", "analysis"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CategoryAutomation(BaseModel):
    """Per-category policy; read-only input to a job."""
    id: str = ""
    user_id: str = ""
    category_id: str = ""
    automation_type: AutomationType = "research"
    llm_model: str = "gpt-4o-mini"
    research_depth: ResearchDepth = "medium"
    ask_clarification: bool = True
    notification_enabled: bool = True
    max_sources: int = Field(10, ge=1)
    is_active: bool = True


class TaskUnderstanding(BaseModel):
    interpreted_topic: str
    search_queries: List[str] = Field(min_length=1)
    needs_clarification: bool = False
    clarification_question: Optional[str] = None
    suggested_focus_areas: List[str] = Field(default_factory=list)
    confidence: float = Field(0.5, ge=0, le=1)

    @field_validator("search_queries")
    @classmethod
    def limit_queries(cls, v: List[str]) -> List[str]:
        return v[:MAX_SEARCH_QUERIES]


class SearchResult(BaseModel):
    title: str
    url: str
    content: str = ""
    published_date: Optional[str] = None
    author: Optional[str] = None
    score: Optional[float] = None
    source: str = "unknown"


class SourceReference(BaseModel):
    title: str
    url: str
    author: Optional[str] = None
    published_date: Optional[str] = None

    @classmethod
    def from_result(cls, result: SearchResult) -> "SourceReference":
        return cls(
            title=result.title,
            url=result.url,
            author=result.author,
            published_date=result.published_date,
        )


class ResearchData(BaseModel):
    queries: List[str]
    results: List[SearchResult] = Field(default_factory=list)
    total_sources: int = 0
    searched_at: datetime = Field(default_factory=_utcnow)
    # Raw result count per search provider, before deduplication
    result_counts: Dict[str, int] = Field(default_factory=dict)


class NoteSection(BaseModel):
    heading: str
    bullet_points: List[str] = Field(default_factory=list)


class GeneratedNote(BaseModel):
    title: str
    content: str
    sources: List[SourceReference] = Field(default_factory=list)
    sections: List[NoteSection] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=_utcnow)
