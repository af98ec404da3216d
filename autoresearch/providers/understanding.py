import json
import logging
from typing import Optional

from langsmith import traceable
from pydantic import ValidationError

from autoresearch.models.research import TaskUnderstanding
from autoresearch.providers import llm

logger = logging.getLogger(__name__)

UNDERSTANDING_PROMPT = """You are a research assistant. Analyze tasks to understand what research is needed.

Your job is to:
1. Interpret what the task is about
2. Determine if more clarification is needed from the user
3. Generate specific search queries for research
4. Suggest focus areas for the research

RESPOND ONLY IN JSON FORMAT with this exact structure:
{
  "interpreted_topic": "your understanding of what should be researched",
  "search_queries": ["3-5 specific search queries"],
  "needs_clarification": true or false,
  "clarification_question": "a specific question to ask, or null",
  "suggested_focus_areas": ["2-4 focus areas"],
  "confidence": number between 0 and 1
}

Ask for clarification when the task is very short or ambiguous (e.g. just a name like
"IIT Ropar") or could mean several things. Do not ask when the task is already specific
(e.g. "Research IIT Ropar admission process")."""

REFINEMENT_PROMPT = """You are a research assistant. The user has provided clarification for a research task.

Original task: "{task_name}"
Original interpretation: "{interpreted_topic}"
User's clarification: "{clarification}"

Based on this clarification, generate refined search queries and focus areas.

RESPOND ONLY IN JSON FORMAT with the same structure as before, with
"needs_clarification": false and 3-5 search queries incorporating the user's focus."""


def fallback_understanding(task_name: str) -> TaskUnderstanding:
    """Generic plan used when the model's answer can't be parsed."""
    return TaskUnderstanding(
        interpreted_topic=task_name,
        search_queries=[
            f"{task_name} overview",
            f"{task_name} information",
            f"{task_name} details",
        ],
        needs_clarification=True,
        clarification_question=(
            f'I\'d like to research "{task_name}". What specific aspects would you like me to focus on?'
        ),
        suggested_focus_areas=["General Overview", "Key Details", "Recent Updates"],
        confidence=0.3,
    )


def _parse(content: str) -> TaskUnderstanding:
    data = json.loads(content)
    if not isinstance(data, dict):
        raise ValueError("Understanding response is not a JSON object")
    return TaskUnderstanding.model_validate(data)


def _append_clarification(understanding: TaskUnderstanding, clarification: str) -> TaskUnderstanding:
    return understanding.model_copy(update={
        "interpreted_topic": f"{understanding.interpreted_topic} - {clarification}",
        "search_queries": [f"{q} {clarification}" for q in understanding.search_queries],
        "needs_clarification": False,
        "clarification_question": None,
        "confidence": 0.8,
    })


@traceable(name="understand_task")
async def understand_task(
    task_name: str,
    task_description: Optional[str] = None,
    model: Optional[str] = None,
) -> TaskUnderstanding:
    """Interpret a task and plan the searches for it.

    API errors propagate; an unparseable answer degrades to ``fallback_understanding``.
    """
    user_prompt = f'Task Name: "{task_name}"\n'
    if task_description:
        user_prompt += f'Description: "{task_description}"\n'
    user_prompt += "\nAnalyze this task and provide your response in JSON format."

    logger.info(f"Understanding task: {task_name!r}")
    content = await llm.complete(
        [
            {"role": "system", "content": UNDERSTANDING_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        model=model,
        json_mode=True,
    )

    try:
        understanding = _parse(content)
    except (ValueError, ValidationError) as e:
        logger.warning(f"Unusable understanding for {task_name!r}, using fallback: {e}")
        return fallback_understanding(task_name)

    logger.info(
        f"Task understood: {understanding.interpreted_topic!r} (confidence: {understanding.confidence})"
    )
    return understanding


@traceable(name="refine_understanding")
async def refine_understanding(
    task_name: str,
    understanding: TaskUnderstanding,
    clarification: str,
    model: Optional[str] = None,
) -> TaskUnderstanding:
    """Fold the user's clarification into the research plan.

    A reply that is not a usable plan appends the clarification to every existing query.
    """
    logger.info(f"Refining understanding with: {clarification!r}")
    content = await llm.complete(
        [
            {
                "role": "system",
                "content": REFINEMENT_PROMPT.format(
                    task_name=task_name,
                    interpreted_topic=understanding.interpreted_topic,
                    clarification=clarification,
                ),
            },
            {"role": "user", "content": "Generate the refined research plan based on the clarification."},
        ],
        model=model,
        json_mode=True,
    )

    try:
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("Refinement response is not a JSON object")
        confidence = data.get("confidence")
        return TaskUnderstanding(
            interpreted_topic=data.get("interpreted_topic") or understanding.interpreted_topic,
            search_queries=data.get("search_queries") or understanding.search_queries,
            needs_clarification=False,
            clarification_question=None,
            suggested_focus_areas=data.get("suggested_focus_areas") or understanding.suggested_focus_areas,
            confidence=0.9 if confidence is None else confidence,
        )
    except (ValueError, ValidationError) as e:
        logger.warning(f"Unusable refinement, appending clarification to queries: {e}")
        return _append_clarification(understanding, clarification)
