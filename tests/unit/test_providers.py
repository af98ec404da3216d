import json
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from autoresearch.models.research import GeneratedNote, ResearchData, SearchResult, TaskUnderstanding
from autoresearch.providers import default_providers
from autoresearch.providers.research import (
    ResearchEngine,
    build_research_engine,
    deduplicate_results,
    normalize_url,
)
from autoresearch.providers.synthesis import (
    create_fallback_note,
    extract_sections,
    generate_note_summary,
    synthesize_note,
)
from autoresearch.providers.understanding import refine_understanding, understand_task
from conftest import make_settings


def result(url: str, score: float = 0.5, content: str = "text", source: str = "tavily") -> SearchResult:
    return SearchResult(title=url, url=url, content=content, score=score, source=source)


class StaticClient:
    def __init__(self, name, results=None, error=None):
        self.name = name
        self.results = results or []
        self.error = error
        self.queries = []

    async def search(self, query, max_results):
        self.queries.append((query, max_results))
        if self.error:
            raise self.error
        return [r.model_copy(update={"url": f"{r.url}?q={len(self.queries)}"}) for r in self.results]


@pytest.mark.unit
class TestDeduplication:
    def test_normalize_url(self):
        assert normalize_url("https://www.Example.com/a/") == "example.com/a"
        assert normalize_url("http://example.com/a?utm=1") == "example.com/a"
        assert normalize_url("Not A URL") == "not a url"

    def test_keeps_highest_score(self):
        unique = deduplicate_results([
            result("https://example.com/a", score=0.4),
            result("https://www.example.com/a/", score=0.9),
            result("https://example.com/b", score=0.1),
        ])
        assert len(unique) == 2
        assert {r.score for r in unique} == {0.9, 0.1}

    def test_equal_score_prefers_longer_content(self):
        unique = deduplicate_results([
            result("https://example.com/a", score=0.5, content="short"),
            result("https://example.com/a", score=0.5, content="much longer content"),
        ])
        assert unique[0].content == "much longer content"


@pytest.mark.unit
class TestResearchEngine:
    @pytest.mark.asyncio
    async def test_failing_client_is_tolerated(self):
        good = StaticClient("tavily", [result("https://example.com/a", 0.8), result("https://example.com/b", 0.6)])
        bad = StaticClient("exa", error=RuntimeError("rate limited"))
        engine = ResearchEngine([bad, good])

        data = await engine.perform_research(["q1", "q2"], depth="quick")

        assert data.queries == ["q1", "q2"]
        # Query strings differ per call, so normalized URLs collapse across queries
        assert [r.url for r in data.results] == ["https://example.com/a?q=1", "https://example.com/b?q=1"]
        assert data.result_counts == {"exa": 0, "tavily": 4}
        assert good.queries == [("q1", 5), ("q2", 5)]

    @pytest.mark.asyncio
    async def test_caps_queries_and_sources_by_depth(self):
        many = [result(f"https://example.com/{i}", score=i / 100) for i in range(30)]
        client = StaticClient("tavily", many)
        engine = ResearchEngine([client])

        data = await engine.perform_research([f"q{i}" for i in range(5)], depth="medium")

        assert len(client.queries) == 3
        assert data.total_sources == 15
        assert data.results[0].score == 0.29

    @pytest.mark.asyncio
    async def test_no_clients_yields_empty_research(self):
        engine = ResearchEngine([])
        assert engine.available is False
        data = await engine.perform_research(["q1"])
        assert data.results == []

    def test_build_from_settings(self):
        engine = build_research_engine(make_settings(TAVILY_API_KEY="tv-key", EXA_API_KEY=None))
        assert engine.capabilities() == {"exa_available": False, "tavily_available": True, "is_operational": True}


NOTE = """# Research: IIT Ropar

## Summary
IIT Ropar is a public technical university in Punjab.

## Key Findings
- Established in 2008
* Ranked among the top engineering institutes

### Placements
- Strong computer science placements
"""


@pytest.mark.unit
class TestSynthesis:
    def test_extract_sections(self):
        sections = extract_sections(NOTE)
        assert [s.heading for s in sections] == ["Summary", "Key Findings", "Placements"]
        assert sections[1].bullet_points == ["Established in 2008", "Ranked among the top engineering institutes"]

    def test_summary_from_summary_section(self):
        note = GeneratedNote(title="Research: IIT Ropar", content=NOTE)
        assert generate_note_summary(note) == "IIT Ropar is a public technical university in Punjab."

    def test_summary_truncated(self):
        note = GeneratedNote(title="t", content="## Summary\n" + "x" * 500)
        summary = generate_note_summary(note, max_length=100)
        assert len(summary) == 100
        assert summary.endswith("...")

    def test_summary_without_section_uses_first_paragraph(self):
        note = GeneratedNote(title="t", content="# Title\n\n**Bold** opening paragraph.\n\nMore.")
        assert generate_note_summary(note) == "Bold opening paragraph."

    def test_fallback_note_lists_top_sources(self):
        data = ResearchData(queries=["q"], results=[result(f"https://example.com/{i}") for i in range(12)])
        note = create_fallback_note("IIT Ropar", data)
        assert note.title == "Research: IIT Ropar"
        assert len(note.sources) == 10
        assert "compiled from 12 sources" in note.content

    @pytest.mark.asyncio
    async def test_synthesize_note(self):
        data = ResearchData(queries=["q"], results=[result("https://example.com/a")])
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=NOTE)) as complete:
            note = await synthesize_note("IIT Ropar", data, ["Placements"])

        assert note.content == NOTE
        assert [s.url for s in note.sources] == ["https://example.com/a"]
        user_prompt = complete.call_args.args[0][1]["content"]
        assert "Focus Areas: Placements" in user_prompt
        assert "=== Source 1: https://example.com/a ===" in user_prompt

    @pytest.mark.asyncio
    async def test_empty_synthesis_falls_back(self):
        data = ResearchData(queries=["q"], results=[result("https://example.com/a")])
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value="  ")):
            note = await synthesize_note("IIT Ropar", data)
        assert "automatically generated" in note.content


@pytest.mark.unit
class TestUnderstanding:
    @pytest.mark.asyncio
    async def test_understand_task(self):
        answer = json.dumps({
            "interpreted_topic": "IIT Ropar, an engineering institute in Punjab",
            "search_queries": ["IIT Ropar admissions", "IIT Ropar placements"],
            "needs_clarification": True,
            "clarification_question": "What about IIT Ropar?",
            "suggested_focus_areas": ["Admissions", "Placements"],
            "confidence": 0.6,
        })
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=answer)) as complete:
            understanding = await understand_task("IIT Ropar", "look into it")

        assert understanding.needs_clarification is True
        assert understanding.search_queries == ["IIT Ropar admissions", "IIT Ropar placements"]
        assert complete.call_args.kwargs["json_mode"] is True
        assert 'Description: "look into it"' in complete.call_args.args[0][1]["content"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", ["not json", "[]", json.dumps({"interpreted_topic": "x", "search_queries": []})])
    async def test_unusable_answer_falls_back(self, answer):
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=answer)):
            understanding = await understand_task("IIT Ropar")
        assert understanding.confidence == 0.3
        assert understanding.needs_clarification is True
        assert understanding.search_queries[0] == "IIT Ropar overview"

    @pytest.mark.asyncio
    async def test_api_errors_propagate(self):
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(side_effect=RuntimeError("401"))):
            with pytest.raises(RuntimeError):
                await understand_task("IIT Ropar")

    @pytest.mark.asyncio
    async def test_refine_understanding(self):
        base = TaskUnderstanding(interpreted_topic="IIT Ropar", search_queries=["IIT Ropar overview"], confidence=0.6)
        answer = json.dumps({"search_queries": ["IIT Ropar placements 2024"], "suggested_focus_areas": ["Placements"]})
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=answer)):
            refined = await refine_understanding("IIT Ropar", base, "Placements")

        assert refined.interpreted_topic == "IIT Ropar"
        assert refined.search_queries == ["IIT Ropar placements 2024"]
        assert refined.needs_clarification is False
        assert refined.confidence == 0.9

    @pytest.mark.asyncio
    async def test_refine_falls_back_to_appending(self):
        base = TaskUnderstanding(interpreted_topic="IIT Ropar", search_queries=["IIT Ropar overview", "IIT Ropar news"])
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value="oops")):
            refined = await refine_understanding("IIT Ropar", base, "Placements")

        assert refined.search_queries == ["IIT Ropar overview Placements", "IIT Ropar news Placements"]
        assert refined.interpreted_topic == "IIT Ropar - Placements"
        assert refined.confidence == 0.8

    @pytest.mark.asyncio
    @pytest.mark.parametrize("answer", [
        {"search_queries": ["IIT Ropar placements 2024"], "confidence": 85},
        {"search_queries": "IIT Ropar placements 2024"},
        {"search_queries": ["IIT Ropar placements 2024"], "suggested_focus_areas": "Placements"},
    ])
    async def test_refine_with_invalid_plan_appends_clarification(self, answer):
        base = TaskUnderstanding(interpreted_topic="IIT Ropar", search_queries=["IIT Ropar overview"])
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=json.dumps(answer))):
            refined = await refine_understanding("IIT Ropar", base, "Placements")

        assert refined.search_queries == ["IIT Ropar overview Placements"]
        assert refined.needs_clarification is False
        assert refined.confidence == 0.8

    @pytest.mark.asyncio
    async def test_refine_keeps_zero_confidence(self):
        base = TaskUnderstanding(interpreted_topic="IIT Ropar", search_queries=["IIT Ropar overview"])
        answer = json.dumps({"search_queries": ["IIT Ropar placements 2024"], "confidence": 0})
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=answer)):
            refined = await refine_understanding("IIT Ropar", base, "Placements")

        assert refined.search_queries == ["IIT Ropar placements 2024"]
        assert refined.confidence == 0

    @pytest.mark.asyncio
    async def test_model_choice_reaches_completion(self):
        base = TaskUnderstanding(interpreted_topic="IIT Ropar", search_queries=["IIT Ropar overview"])
        answer = json.dumps({"interpreted_topic": "IIT Ropar", "search_queries": ["IIT Ropar overview"]})
        data = ResearchData(queries=["q"], results=[result("https://example.com/a")])
        with patch("autoresearch.providers.llm.complete", new=AsyncMock(return_value=answer)) as complete:
            await understand_task("IIT Ropar", model="gpt-4o")
            await refine_understanding("IIT Ropar", base, "Placements", model="gpt-4o")
            await synthesize_note("IIT Ropar", data, model="gpt-4o")

        assert [c.kwargs["model"] for c in complete.call_args_list] == ["gpt-4o"] * 3


@pytest.mark.unit
def test_default_providers_bundle():
    providers = default_providers(make_settings(TAVILY_API_KEY="tv-key"))
    assert providers.understand is understand_task
    assert providers.synthesize is synthesize_note


@pytest.mark.unit
@pytest.mark.asyncio
async def test_completion_model_defaults_to_settings():
    from autoresearch.config import settings
    from autoresearch.providers import llm

    client = MagicMock()
    client.chat.completions.create.return_value.choices = [MagicMock(message=MagicMock(content="ok"))]
    with patch("autoresearch.providers.llm.get_client", return_value=client):
        assert await llm.complete([{"role": "user", "content": "hi"}]) == "ok"
        await llm.complete([{"role": "user", "content": "hi"}], model="gpt-4o")

    models = [c.kwargs["model"] for c in client.chat.completions.create.call_args_list]
    assert models == [settings.OPENAI_MODEL, "gpt-4o"]
