import os
import sys
import pytest
from rich.console import Console
from rich.live import Live
from rich.table import Table
import time
from typing import List, Optional

# Add the project root directory to Python path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from autoresearch.config import Settings
from autoresearch.models.research import (
    CategoryAutomation,
    GeneratedNote,
    NoteSection,
    ResearchData,
    SearchResult,
    SourceReference,
    TaskUnderstanding,
)
from autoresearch.providers import ResearchProviders
from autoresearch.repository import InMemoryRepository, Task
from autoresearch.service import ResearchService


@pytest.fixture(scope="session")
def test_console():
    return Console()


def pytest_configure(config):
    """Add custom markers"""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "e2e: End-to-end tests")
    config.addinivalue_line("markers", "api: API tests")


class TestProgress:
    __test__ = False

    def __init__(self):
        self.console = Console()
        self.table = Table(show_header=True, header_style="bold magenta")
        self.table.add_column("Category")
        self.table.add_column("Total")
        self.table.add_column("Passed")
        self.table.add_column("Failed")
        self.table.add_column("Duration")
        self.stats = {
            "unit": {"total": 0, "passed": 0, "failed": 0, "duration": 0},
            "integration": {"total": 0, "passed": 0, "failed": 0, "duration": 0},
            "e2e": {"total": 0, "passed": 0, "failed": 0, "duration": 0},
            "api": {"total": 0, "passed": 0, "failed": 0, "duration": 0},
        }
        self.live = None
        self.refresh_table()

    def start(self):
        """Start the live display"""
        try:
            self.refresh_table()
            self.live = Live(self.table, refresh_per_second=4)
            self.live.start()
        except Exception:
            self.live = None

    def stop(self):
        """Stop the live display"""
        if self.live:
            try:
                self.refresh_table()
                self.live.stop()
            except Exception:
                pass  # Suppress errors during shutdown
            finally:
                self.live = None

    def refresh_table(self):
        """Refresh the table with current stats"""
        self.table.rows.clear()
        for category, stats in self.stats.items():
            self.table.add_row(
                category,
                str(stats["total"]),
                f"[green]{stats['passed']}[/]",
                f"[red]{stats['failed']}[/]",
                f"{stats['duration']:.2f}s"
            )

    def update_stats(self, category, passed, duration):
        """Update test statistics"""
        if category not in self.stats:
            return
        self.stats[category]["total"] += 1
        if passed:
            self.stats[category]["passed"] += 1
        else:
            self.stats[category]["failed"] += 1
        self.stats[category]["duration"] += duration
        try:
            self.refresh_table()
        except Exception:
            pass


test_progress = TestProgress()


@pytest.fixture(scope="session", autouse=True)
def progress_tracker():
    test_progress.start()
    yield test_progress
    test_progress.stop()


def pytest_runtest_logreport(report):
    """Update progress after each test"""
    if report.when == "call":
        for marker_name in ["unit", "integration", "e2e", "api"]:
            if marker_name in report.nodeid:
                test_progress.update_stats(marker_name, report.passed, report.duration)
                break
        else:
            test_progress.update_stats("unit", report.passed, report.duration)


class RecordingSink:
    """Notification sink that keeps every message for assertions."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.messages = []

    async def notify(self, channel_id, text, options=None) -> bool:
        self.messages.append((channel_id, text, options))
        return self.delivered

    def texts(self, channel_id: Optional[str] = None) -> List[str]:
        return [text for channel, text, _ in self.messages if channel_id is None or channel == channel_id]

    def containing(self, fragment: str) -> List[str]:
        return [text for text in self.texts() if fragment in text]


class FakeProviders:
    """Scripted understanding/research/synthesis providers that record their calls."""

    def __init__(self, needs_clarification: bool = False, research_failures: int = 0):
        self.needs_clarification = needs_clarification
        self.research_failures = research_failures
        self.calls = {"understand": 0, "refine": 0, "research": 0, "synthesize": 0}
        self.research_queries: List[List[str]] = []
        self.refinements: List[str] = []
        self.models: List[Optional[str]] = []

    async def understand(self, task_name, task_description=None, model=None):
        self.calls["understand"] += 1
        self.models.append(model)
        return TaskUnderstanding(
            interpreted_topic=f"{task_name} (institution)",
            search_queries=[f"{task_name} overview", f"{task_name} rankings", f"{task_name} campus"],
            needs_clarification=self.needs_clarification,
            clarification_question=f"What would you like to know about {task_name}?" if self.needs_clarification else None,
            suggested_focus_areas=["Admissions", "Placements", "Research Programs", "Campus Life", "Fees"],
            confidence=0.6 if self.needs_clarification else 0.9,
        )

    async def refine(self, task_name, understanding, clarification, model=None):
        self.calls["refine"] += 1
        self.models.append(model)
        self.refinements.append(clarification)
        return understanding.model_copy(update={
            "search_queries": [f"{q} {clarification}" for q in understanding.search_queries],
            "needs_clarification": False,
        })

    async def research(self, queries, depth):
        self.calls["research"] += 1
        self.research_queries.append(list(queries))
        if self.research_failures > 0:
            self.research_failures -= 1
            raise RuntimeError("search provider unavailable")
        results = [
            SearchResult(
                title=f"Result {i}",
                url=f"https://example.com/{i}",
                content=f"Content about {queries[0]} number {i}",
                score=1.0 - i / 100,
                source="tavily",
            )
            for i in range(12)
        ]
        return ResearchData(queries=list(queries), results=results, total_sources=len(results))

    async def synthesize(self, task_name, research_data, focus_areas, model=None):
        self.calls["synthesize"] += 1
        self.models.append(model)
        content = (
            f"# Research: {task_name}\n\n## Summary\n{task_name} is a well known institute.\n\n"
            f"## Key Findings\n- Finding one\n- Finding two\n"
        )
        return GeneratedNote(
            title=f"Research: {task_name}",
            content=content,
            sources=[SourceReference.from_result(r) for r in research_data.results],
            sections=[
                NoteSection(heading="Summary"),
                NoteSection(heading="Key Findings", bullet_points=["Finding one", "Finding two"]),
            ],
        )

    def bundle(self) -> ResearchProviders:
        return ResearchProviders(
            understand=self.understand,
            refine=self.refine,
            research=self.research,
            synthesize=self.synthesize,
        )


def make_settings(**overrides) -> Settings:
    values = dict(
        QUEUE_BACKOFF_DELAY=0.01,
        RATE_LIMIT_MAX=100,
        RATE_LIMIT_DURATION=1.0,
        MAX_JOBS_PER_DAY=10,
        CLARIFICATION_SWEEP_INTERVAL=3600,
        DATA_DIR=None,
        TELEGRAM_BOT_TOKEN=None,
        SENDGRID_API_KEY=None,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def fake_providers():
    return FakeProviders()


@pytest.fixture
def repository():
    repo = InMemoryRepository()
    repo.add_task(Task(id="task-1", user_id="user-1", title="IIT Ropar", category_id="cat-research"))
    repo.add_category_automation(CategoryAutomation(
        id="auto-1",
        user_id="user-1",
        category_id="cat-research",
        research_depth="medium",
        ask_clarification=True,
        max_sources=10,
    ))
    return repo


@pytest.fixture
def make_service(repository, sink):
    def factory(providers: FakeProviders, **overrides) -> ResearchService:
        return ResearchService.from_settings(
            make_settings(**overrides),
            repository=repository,
            providers=providers.bundle(),
            notifier=sink,
        )
    return factory
