"""
Web search via Tavily, condensed into plain "facts" text for the LLM.
"""

import os
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import SearchError

logger = logging.getLogger(__name__)

TAVILY_ENDPOINT = "https://api.tavily.com/search"


@dataclass
class SearchResult:
    query: str
    snippets: List[str] = field(default_factory=list)
    answer: Optional[str] = None

    @property
    def facts_text(self) -> str:
        parts = list(self.snippets)
        if self.answer:
            parts.insert(0, f"Summary: {self.answer}")
        return "\n\n".join(parts)


def _snippet(item: Dict[str, Any]) -> str:
    title = str(item.get("title") or "").strip()
    url = str(item.get("url") or "").strip()
    content = str(item.get("content") or "").strip()

    head = " - ".join(part for part in (title, url) if part)
    if head and content:
        return f"{head}\n{content}"
    return head or content


def parse_results(query: str, data: Dict[str, Any]) -> SearchResult:
    """Turn a Tavily response body into a SearchResult. Raises SearchError if empty."""
    snippets = [s for s in (_snippet(r) for r in data.get("results") or []) if s]
    if not snippets:
        raise SearchError("search returned no results")
    answer = data.get("answer")
    return SearchResult(query=query, snippets=snippets, answer=answer if isinstance(answer, str) else None)


class TavilySearch:
    """Tavily search API client"""

    def __init__(self, api_key: Optional[str] = None, endpoint: str = TAVILY_ENDPOINT):
        self.api_key = api_key if api_key is not None else os.getenv("TAVILY_API_KEY", "")
        self.endpoint = endpoint

    async def search(self, query: str, timeout_ms: int = 5000, country: Optional[str] = None) -> SearchResult:
        """
        Search and return compact snippets.

        Every failure (missing key, timeout, HTTP error, bad body, no
        results) surfaces as SearchError.
        """
        if not self.api_key:
            raise SearchError("TAVILY_API_KEY not set")

        payload: Dict[str, Any] = {
            "query": query,
            "include_answer": "basic",
            "search_depth": "basic",
        }
        if country and country.strip():
            payload["country"] = country.strip()

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.endpoint,
                    headers=headers,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=timeout_ms / 1000.0),
                ) as response:
                    if response.status != 200:
                        error_text = await response.text()
                        raise SearchError(f"Tavily status {response.status}: {error_text[:200]}")
                    data = await response.json()
        except SearchError:
            raise
        except asyncio.TimeoutError:
            raise SearchError(f"Tavily timeout ({timeout_ms} ms)")
        except (aiohttp.ClientError, ValueError) as e:
            raise SearchError(f"Tavily request failed: {e}") from e

        result = parse_results(query, data)
        logger.info(f"Search: {len(result.snippets)} results for {query!r}")
        return result
