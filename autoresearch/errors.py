class ResearchError(Exception):
    """Base class for research automation errors."""


class TaskNotFoundError(ResearchError):
    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class AutomationNotConfiguredError(ResearchError):
    """The task's category has no active research automation."""


class QuotaExceededError(ResearchError):
    def __init__(self, user_id: str):
        super().__init__("Daily research limit reached")
        self.user_id = user_id


class JobNotFoundError(ResearchError):
    def __init__(self, job_id: str):
        super().__init__(f"Research job {job_id} not found")
        self.job_id = job_id


class NoteCreationError(ResearchError):
    """The synthesized note could not be stored."""


class DuplicateJobError(ResearchError):
    def __init__(self, handle: str):
        super().__init__(f"Queue entry {handle} already exists")
        self.handle = handle


class AutomationNotFoundError(ResearchError):
    def __init__(self, automation_id: str):
        super().__init__(f"Automation {automation_id} not found")
        self.automation_id = automation_id


class AutomationExistsError(ResearchError):
    def __init__(self, category_id: str):
        super().__init__(f"Automation already exists for category {category_id}")
        self.category_id = category_id
