from dataclasses import dataclass
from typing import Awaitable, Callable, List

from autoresearch.models.research import (
    GeneratedNote,
    ResearchData,
    ResearchDepth,
    TaskUnderstanding,
)

# Understand, refine and synthesize also take an optional `model` keyword
UnderstandFn = Callable[..., Awaitable[TaskUnderstanding]]
RefineFn = Callable[..., Awaitable[TaskUnderstanding]]
ResearchFn = Callable[[List[str], ResearchDepth], Awaitable[ResearchData]]
SynthesizeFn = Callable[..., Awaitable[GeneratedNote]]


@dataclass
class ResearchProviders:
    """The four external capabilities the orchestrator drives."""
    understand: UnderstandFn
    refine: RefineFn
    research: ResearchFn
    synthesize: SynthesizeFn


def default_providers(settings) -> ResearchProviders:
    from autoresearch.providers.research import build_research_engine
    from autoresearch.providers.synthesis import synthesize_note
    from autoresearch.providers.understanding import refine_understanding, understand_task

    engine = build_research_engine(settings)
    return ResearchProviders(
        understand=understand_task,
        refine=refine_understanding,
        research=engine.perform_research,
        synthesize=synthesize_note,
    )
