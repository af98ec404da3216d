"""Task, note and category-automation persistence.

The pipeline only depends on the ``NoteRepository`` protocol; ``InMemoryRepository``
is the reference implementation used by the API and the tests.
"""
import logging
import uuid
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Protocol

from pydantic import BaseModel, Field

from autoresearch.errors import AutomationExistsError
from autoresearch.models.research import CategoryAutomation, SourceReference

logger = logging.getLogger(__name__)


class Task(BaseModel):
    id: str
    user_id: str
    title: str
    description: Optional[str] = None
    category_id: Optional[str] = None


class Note(BaseModel):
    id: str
    user_id: str
    title: str
    content: str
    research_job_id: Optional[str] = None
    source_type: str = "research"
    sources: List[SourceReference] = Field(default_factory=list)
    word_count: int = 0
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class NoteRepository(Protocol):
    def get_task(self, task_id: str) -> Optional[Task]: ...

    def get_category_automation(self, category_id: str) -> Optional[CategoryAutomation]: ...

    def list_user_automations(self, user_id: str) -> List[CategoryAutomation]: ...

    def get_automation(self, automation_id: str) -> Optional[CategoryAutomation]: ...

    def create_category_automation(self, automation: CategoryAutomation) -> CategoryAutomation: ...

    def update_category_automation(self, automation_id: str, **fields) -> Optional[CategoryAutomation]: ...

    def delete_category_automation(self, automation_id: str) -> bool: ...

    def create_note(
        self,
        user_id: str,
        title: str,
        content: str,
        research_job_id: str,
        sources: List[SourceReference],
    ) -> Optional[str]: ...

    def get_note(self, note_id: str) -> Optional[Note]: ...

    def link_note_to_task(self, task_id: str, note_id: str) -> bool: ...

    def get_task_notes(self, task_id: str) -> List[Note]: ...


class InMemoryRepository:
    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._automations: Dict[str, CategoryAutomation] = {}
        self._notes: Dict[str, Note] = {}
        self._links: Dict[str, List[str]] = {}
        self._lock = Lock()

    def add_task(self, task: Task) -> Task:
        with self._lock:
            self._tasks[task.id] = task
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        return self._tasks.get(task_id)

    def add_category_automation(self, automation: CategoryAutomation) -> CategoryAutomation:
        with self._lock:
            self._automations[automation.category_id] = automation
        return automation

    def get_category_automation(self, category_id: str) -> Optional[CategoryAutomation]:
        automation = self._automations.get(category_id)
        if automation is None or not automation.is_active:
            return None
        return automation

    def list_user_automations(self, user_id: str) -> List[CategoryAutomation]:
        """Every automation the user owns, inactive ones included."""
        return [a for a in self._automations.values() if a.user_id == user_id]

    def get_automation(self, automation_id: str) -> Optional[CategoryAutomation]:
        return next((a for a in self._automations.values() if a.id == automation_id), None)

    def create_category_automation(self, automation: CategoryAutomation) -> CategoryAutomation:
        """Store a new automation; a category has at most one."""
        automation = automation.model_copy(update={"id": automation.id or str(uuid.uuid4())})
        with self._lock:
            if automation.category_id in self._automations:
                raise AutomationExistsError(automation.category_id)
            self._automations[automation.category_id] = automation
        logger.info(f"Created automation {automation.id} for category {automation.category_id}")
        return automation

    def update_category_automation(self, automation_id: str, **fields) -> Optional[CategoryAutomation]:
        """Apply the non-None fields, re-validating the result. None if there is no such automation."""
        with self._lock:
            current = self.get_automation(automation_id)
            if current is None:
                return None
            values = current.model_dump()
            values.update({key: value for key, value in fields.items() if value is not None})
            updated = CategoryAutomation.model_validate(values)
            self._automations[updated.category_id] = updated
        return updated

    def delete_category_automation(self, automation_id: str) -> bool:
        with self._lock:
            automation = self.get_automation(automation_id)
            if automation is None:
                return False
            del self._automations[automation.category_id]
        logger.info(f"Deleted automation {automation_id}")
        return True

    def create_note(
        self,
        user_id: str,
        title: str,
        content: str,
        research_job_id: str,
        sources: List[SourceReference],
    ) -> Optional[str]:
        note = Note(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            content=content,
            research_job_id=research_job_id,
            sources=sources,
            word_count=len(content.split()),
        )
        with self._lock:
            self._notes[note.id] = note
        logger.info(f"Created research note {note.id} for job {research_job_id}")
        return note.id

    def get_note(self, note_id: str) -> Optional[Note]:
        return self._notes.get(note_id)

    def link_note_to_task(self, task_id: str, note_id: str) -> bool:
        with self._lock:
            links = self._links.setdefault(task_id, [])
            if note_id not in links:
                links.append(note_id)
        return True

    def get_task_notes(self, task_id: str) -> List[Note]:
        return [self._notes[note_id] for note_id in self._links.get(task_id, []) if note_id in self._notes]
