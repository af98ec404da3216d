"""Search clients and the aggregating research engine.

Each ``SearchClient`` wraps one search API; ``ResearchEngine`` fans the planned
queries out to every configured client in parallel, then deduplicates by
normalized URL, ranks by score and caps the result set for the chosen depth.
"""
import asyncio
import logging
from typing import Dict, List, Optional, Protocol
from urllib.parse import urlsplit

import httpx
from langsmith import traceable

from autoresearch.core.config import RESEARCH_SETTINGS
from autoresearch.models.research import ResearchData, ResearchDepth, SearchResult

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
EXA_SEARCH_URL = "https://api.exa.ai/search"


class SearchClient(Protocol):
    name: str

    async def search(self, query: str, max_results: int) -> List[SearchResult]: ...


class TavilySearchClient:
    name = "tavily"

    def __init__(self, api_key: str, timeout: float = 30.0, search_depth: str = "advanced"):
        self.api_key = api_key
        self.timeout = timeout
        self.search_depth = search_depth

    async def search(self, query: str, max_results: int) -> List[SearchResult]:
        logger.info(f"Tavily search: {query!r} ({max_results} results)")
        payload = {
            "query": query,
            "max_results": max_results,
            "search_depth": self.search_depth,
            "topic": "general",
            "include_answer": False,
            "include_raw_content": True,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                TAVILY_SEARCH_URL,
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            response.raise_for_status()
            data = response.json()

        results = [
            SearchResult(
                title=r.get("title") or "Untitled",
                url=r["url"],
                content=r.get("raw_content") or r.get("content") or "",
                published_date=r.get("published_date"),
                score=r.get("score"),
                source=self.name,
            )
            for r in data.get("results", [])
            if r.get("url")
        ]
        logger.info(f"Tavily returned {len(results)} results")
        return results


class ExaSearchClient:
    name = "exa"

    def __init__(self, api_key: str, timeout: float = 30.0, max_characters: int = 3000):
        self.api_key = api_key
        self.timeout = timeout
        self.max_characters = max_characters

    async def search(self, query: str, max_results: int) -> List[SearchResult]:
        logger.info(f"Exa search: {query!r} ({max_results} results)")
        payload = {
            "query": query,
            "numResults": max_results,
            "type": "auto",
            "contents": {
                "text": {"maxCharacters": self.max_characters, "includeHtmlTags": False},
                "highlights": {"numSentences": 3, "highlightsPerUrl": 2},
            },
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(
                EXA_SEARCH_URL,
                json=payload,
                headers={"x-api-key": self.api_key},
            )
            response.raise_for_status()
            data = response.json()

        results = [
            SearchResult(
                title=r.get("title") or "Untitled",
                url=r["url"],
                content=r.get("text") or "\n\n".join(r.get("highlights") or []),
                published_date=r.get("publishedDate"),
                author=r.get("author"),
                score=r.get("score"),
                source=self.name,
            )
            for r in data.get("results", [])
            if r.get("url")
        ]
        logger.info(f"Exa returned {len(results)} results")
        return results


def normalize_url(url: str) -> str:
    """Host without ``www.`` plus path without trailing slash; query and scheme dropped."""
    parts = urlsplit(url)
    if not parts.netloc:
        return url.lower()
    host = (parts.hostname or "").removeprefix("www.")
    return host + parts.path.rstrip("/")


def deduplicate_results(results: List[SearchResult]) -> List[SearchResult]:
    """One result per normalized URL, preferring the higher score, then longer content."""
    by_url: Dict[str, SearchResult] = {}
    for result in results:
        key = normalize_url(result.url)
        existing = by_url.get(key)
        if existing is None or (result.score or 0) > (existing.score or 0):
            by_url[key] = result
        elif len(result.content) > len(existing.content):
            by_url[key] = result.model_copy(update={"score": existing.score})
    return list(by_url.values())


class ResearchEngine:
    def __init__(self, clients: Optional[List[SearchClient]] = None):
        self.clients = list(clients or [])

    @property
    def available(self) -> bool:
        return bool(self.clients)

    def capabilities(self) -> Dict[str, bool]:
        names = {client.name for client in self.clients}
        return {
            "exa_available": "exa" in names,
            "tavily_available": "tavily" in names,
            "is_operational": self.available,
        }

    @traceable(name="perform_research")
    async def perform_research(self, queries: List[str], depth: ResearchDepth = "medium") -> ResearchData:
        config = RESEARCH_SETTINGS[depth]
        selected = queries[: config["max_queries"]]
        logger.info(f"Starting {depth} research with {len(selected)} queries")

        calls = [
            (client.name, client.search(query, config["results_per_query"]))
            for query in selected
            for client in self.clients
        ]
        outcomes = await asyncio.gather(*(call for _, call in calls), return_exceptions=True)

        all_results: List[SearchResult] = []
        counts: Dict[str, int] = {client.name: 0 for client in self.clients}
        for (name, _), outcome in zip(calls, outcomes):
            if isinstance(outcome, BaseException):
                # One failing provider or query should not sink the whole research stage
                logger.error(f"{name} search failed: {outcome}")
                continue
            all_results.extend(outcome)
            counts[name] = counts.get(name, 0) + len(outcome)

        unique = deduplicate_results(all_results)
        unique.sort(key=lambda r: r.score or 0, reverse=True)
        final = unique[: config["max_total_sources"]]

        logger.info(f"Research complete: {len(final)} unique sources ({counts})")
        return ResearchData(
            queries=selected,
            results=final,
            total_sources=len(final),
            result_counts=counts,
        )


def build_research_engine(settings) -> ResearchEngine:
    clients: List[SearchClient] = []
    if settings.EXA_API_KEY:
        clients.append(ExaSearchClient(settings.EXA_API_KEY))
    else:
        logger.warning("Exa API key not configured, Exa search disabled")
    if settings.TAVILY_API_KEY:
        clients.append(TavilySearchClient(settings.TAVILY_API_KEY))
    else:
        logger.warning("Tavily API key not configured, Tavily search disabled")
    return ResearchEngine(clients)
