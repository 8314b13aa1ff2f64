# =============================================================================
# Web Search — Perplexity (grounded answers with citations)
# =============================================================================
#
# Used by the Search agent for "web" / "external" / "internet" tasks.
# Disabled unless WEB_SEARCH_ENABLED=true and PERPLEXITY_API_KEY is set.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

import httpx

from research_agents.config import settings
from research_agents.errors import WebSearchDisabledError

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "Be precise and concise. Provide factual information with sources."


@dataclass
class WebSearchResult:
    answer: str
    citations: list[str] = field(default_factory=list)


class WebSearchService(Protocol):
    async def search(self, query: str) -> WebSearchResult:
        ...


def is_web_search_enabled() -> bool:
    return settings.web_search_enabled and bool(settings.perplexity_api_key)


class PerplexitySearch:
    """Perplexity chat-completions API, one request per query."""

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        resolved_key = api_key or settings.perplexity_api_key
        if not resolved_key:
            raise ValueError("PERPLEXITY_API_KEY is not configured")
        self._api_key = resolved_key
        self._model = model or settings.perplexity_model
        self._base_url = (base_url or settings.perplexity_base_url).rstrip("/")
        self._timeout = timeout or settings.web_search_timeout

    async def search(
        self,
        query: str,
        max_tokens: int = 1024,
        temperature: float = 0.2,
    ) -> WebSearchResult:
        payload = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": query},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "return_citations": True,
            "return_images": False,
            "search_recency_filter": "month",
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._base_url}/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
            data = response.json()

        choices = data.get("choices") or []
        answer = ""
        if choices:
            answer = (choices[0].get("message") or {}).get("content") or ""

        logger.info(
            "Web search returned %d citations (model=%s)",
            len(data.get("citations") or []), self._model,
        )
        return WebSearchResult(
            answer=answer or "No answer returned",
            citations=list(data.get("citations") or []),
        )


_service: PerplexitySearch | None = None


def get_web_search_service() -> PerplexitySearch:
    """
    Return the Perplexity client (lazy singleton).

    Raises:
        WebSearchDisabledError: If the feature flag is off or no key is set.
    """
    global _service
    if not is_web_search_enabled():
        raise WebSearchDisabledError("Web search is not enabled")
    if _service is None:
        _service = PerplexitySearch()
    return _service
