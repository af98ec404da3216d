import logging
import re
from typing import List, Optional

from langsmith import traceable

from autoresearch.core.config import (
    NOTE_SUMMARY_CHARS,
    SOURCE_CONTENT_CHARS,
    SYNTHESIS_SOURCE_LIMIT,
)
from autoresearch.models.research import (
    GeneratedNote,
    NoteSection,
    ResearchData,
    SearchResult,
    SourceReference,
)
from autoresearch.providers import llm

logger = logging.getLogger(__name__)

FALLBACK_SOURCE_LIMIT = 10

SYNTHESIS_PROMPT = """You are a research synthesizer. Create a comprehensive, well-structured research note based on the provided sources.

Your note should be well-organized, factual, grounded in the sources provided, and
attribute information to its sources.

Use Markdown formatting: # for the main title, ## for section headers, ### for
subsections, - for bullet points and [text](url) for source links.

Structure the note with these sections:
1. Summary (2-3 sentence overview)
2. Key Findings (bullet points of the most important information)
3. Detailed Analysis (organized by topic/theme)
4. Important Facts & Figures (if applicable)
5. Recommendations/Next Steps (if applicable)
6. Sources (numbered list of references)"""

_HEADING = re.compile(r"^#{2,3}\s+(.+)$")
_BULLET = re.compile(r"^\s*[-*]\s+(.+)$")
_SUMMARY = re.compile(r"## (?:Executive )?Summary\s*\n([\s\S]*?)(?=\n## |\n# |$)", re.IGNORECASE)


def format_sources_for_context(results: List[SearchResult]) -> str:
    blocks = []
    for i, r in enumerate(results[:SYNTHESIS_SOURCE_LIMIT], start=1):
        lines = [f"=== Source {i}: {r.title} ===", f"URL: {r.url}"]
        if r.published_date:
            lines.append(f"Published: {r.published_date}")
        if r.author:
            lines.append(f"Author: {r.author}")
        lines.append("")
        lines.append("Content:")
        lines.append(r.content[:SOURCE_CONTENT_CHARS])
        blocks.append("\n".join(lines))
    return "\n---\n".join(blocks)


def extract_sections(content: str) -> List[NoteSection]:
    """Split markdown into ## / ### headings with the bullet points under each."""
    sections: List[NoteSection] = []
    current: Optional[NoteSection] = None
    for line in content.splitlines():
        heading = _HEADING.match(line)
        if heading:
            current = NoteSection(heading=heading.group(1).strip())
            sections.append(current)
            continue
        bullet = _BULLET.match(line)
        if bullet and current is not None:
            current.bullet_points.append(bullet.group(1).strip())
    return sections


def create_fallback_note(task_name: str, research_data: ResearchData) -> GeneratedNote:
    """A plain note listing the top sources, used when the model returns nothing."""
    top = research_data.results[:FALLBACK_SOURCE_LIMIT]
    sources = [SourceReference.from_result(r) for r in top]
    count = len(research_data.results)

    source_blocks = "\n".join(
        f"### {i}. {r.title}\n\n{r.content[:500]}...\n\n[Read more]({r.url})\n"
        for i, r in enumerate(top, start=1)
    )
    source_list = "\n".join(f"{i}. [{s.title}]({s.url})" for i, s in enumerate(sources, start=1))
    content = (
        f"# Research: {task_name}\n\n"
        f"## Summary\n"
        f"This is an automated research note compiled from {count} sources.\n\n"
        f"## Key Sources\n\n{source_blocks}\n"
        f"## Sources\n\n{source_list}\n\n"
        f"---\n*Note: This note was automatically generated. Review and edit as needed.*\n"
    )
    return GeneratedNote(
        title=f"Research: {task_name}",
        content=content,
        sources=sources,
        sections=[NoteSection(heading="Summary", bullet_points=[f"Compiled from {count} sources"])],
    )


def generate_note_summary(note: GeneratedNote, max_length: int = NOTE_SUMMARY_CHARS) -> str:
    """Short summary for the completion message: the Summary section, else the first paragraph."""
    match = _SUMMARY.search(note.content)
    if match:
        text = match.group(1).strip()
    else:
        paragraphs = [p for p in note.content.split("\n\n") if p.strip() and not p.startswith("#")]
        if not paragraphs:
            return f"Research note with {len(note.sources)} sources."
        text = re.sub(r"[#*_]", "", paragraphs[0]).strip()

    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


@traceable(name="synthesize_note")
async def synthesize_note(
    task_name: str,
    research_data: ResearchData,
    focus_areas: Optional[List[str]] = None,
    model: Optional[str] = None,
) -> GeneratedNote:
    """Write the research note from the gathered sources."""
    focus_text = f"Focus Areas: {', '.join(focus_areas)}" if focus_areas else ""
    user_prompt = (
        f'Research Topic: "{task_name}"\n{focus_text}\n\n'
        f"I have gathered information from {len(research_data.results)} sources. "
        f"Please synthesize this into a comprehensive research note.\n\n"
        f"{format_sources_for_context(research_data.results)}\n\n"
        f"Create the research note now."
    )

    logger.info(f"Synthesizing note for: {task_name!r}")
    content = await llm.complete(
        [
            {"role": "system", "content": SYNTHESIS_PROMPT},
            {"role": "user", "content": user_prompt},
        ],
        model=model,
        max_tokens=4000,
    )

    if not content.strip():
        logger.warning(f"Empty synthesis for {task_name!r}, using fallback note")
        return create_fallback_note(task_name, research_data)

    sections = extract_sections(content)
    logger.info(f"Note synthesized: {len(content)} characters, {len(sections)} sections")
    return GeneratedNote(
        title=f"Research: {task_name}",
        content=content,
        sources=[SourceReference.from_result(r) for r in research_data.results[:SYNTHESIS_SOURCE_LIMIT]],
        sections=sections,
    )
