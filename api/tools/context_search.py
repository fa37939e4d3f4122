"""
Web search for broad role context (Exa search API).

Used by the broad-context sub-task when an API key is configured. Transport
failures are retried once with backoff; anything else surfaces as
``SearchError`` so the caller can fall back to the generation service.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from api.schemas.pipeline_state import ContextSource
from libs.common.errors import SearchError

logger = structlog.get_logger(__name__)

EXA_SEARCH_URL = "https://api.exa.ai/search"


class ContextSearchClient:
    """Minimal async client for the Exa ``/search`` endpoint."""

    def __init__(self, api_key: str, num_results: int = 5, timeout: float = 15.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key
        self.num_results = num_results
        self.timeout = timeout
        self._transport = transport

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            return await client.post(
                EXA_SEARCH_URL,
                headers={"x-api-key": self.api_key, "Content-Type": "application/json"},
                json=payload,
            )

    async def search(self, query: str) -> List[ContextSource]:
        """Run one search and return the hits as context sources.

        Raises:
            SearchError: transport failure, non-200 status or malformed body.
        """
        payload = {
            "query": query,
            "numResults": self.num_results,
            "type": "auto",
            "contents": {"highlights": True},
        }
        try:
            response = await self._post(payload)
        except httpx.TransportError as e:
            raise SearchError(f"Search request failed: {e}") from e

        if response.status_code != 200:
            logger.error("Search API error", status=response.status_code, response=response.text[:200])
            raise SearchError(f"Search API returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise SearchError("Search API returned invalid JSON") from e
        results = body.get("results") if isinstance(body, dict) else None
        if not isinstance(results, list):
            raise SearchError("Search API response has no results list")

        sources = []
        for item in results:
            if not isinstance(item, dict):
                continue
            highlights = item.get("highlights") or []
            snippet = highlights[0] if highlights and isinstance(highlights[0], str) else (item.get("text") or "")
            sources.append(
                ContextSource(
                    title=item.get("title") or "",
                    url=item.get("url") or "",
                    snippet=snippet[:500],
                )
            )

        logger.info("Context search completed", query=query[:80], results=len(sources))
        return sources
