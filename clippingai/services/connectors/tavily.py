# clippingai/services/connectors/tavily.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .base import BaseSearchConnector
from ..caching import cached_get, make_cache_key
from ...core.config import Settings, get_settings
from ...schemas.report import SearchResult

logger = logging.getLogger(__name__)

# Tavily snippets can run long; keep prompt size bounded.
MAX_CONTENT_CHARS = 4000


class TavilyConnector(BaseSearchConnector):
    """
    Tavily /search connector.

    - Uses the "news" topic so the upstream ``days`` filter applies.
    - Normalises results into SearchResult(title, url, content,
      published_date, score).
    - Transport errors and 5xx responses are retried with exponential backoff;
      429 honours Retry-After once; other 4xx are treated as "no data".
    """

    name = "tavily"

    def __init__(
        self,
        api_key: str | None,
        base_url: str = "https://api.tavily.com",
        timeout: float = 30.0,
        cache_ttl: int | None = None,
        redis_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.search_url = base_url.rstrip("/") + "/search"
        self.timeout = timeout
        self.cache_ttl = cache_ttl
        self.redis_url = redis_url
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "TavilyConnector":
        settings = settings or get_settings()
        return cls(
            api_key=settings.TAVILY_API_KEY,
            base_url=settings.TAVILY_BASE_URL,
            timeout=settings.SEARCH_TIMEOUT_SECONDS,
            cache_ttl=settings.SEARCH_CACHE_TTL_SECONDS,
            redis_url=settings.REDIS_URL or "",
        )

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "accept": "application/json",
        }

    def _build_payload(
        self,
        query: str,
        depth: str,
        max_results: int,
        exclude_domains: Optional[List[str]],
        days: Optional[int],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": depth,
            "max_results": max_results,
            "include_answer": False,
            "include_raw_content": False,
        }
        if days:
            payload["topic"] = "news"
            payload["days"] = int(days)
        if exclude_domains:
            payload["exclude_domains"] = list(exclude_domains)
        return payload

    @staticmethod
    def _parse_results(data: Dict[str, Any]) -> List[SearchResult]:
        results: List[SearchResult] = []
        for r in data.get("results") or []:
            if not isinstance(r, dict):
                continue
            url = (r.get("url") or "").strip()
            if not url:
                continue
            score = r.get("score")
            results.append(
                SearchResult(
                    title=(r.get("title") or "").strip(),
                    url=url,
                    content=(r.get("content") or "")[:MAX_CONTENT_CHARS],
                    published_date=r.get("published_date") or r.get("publishedDate"),
                    score=float(score) if isinstance(score, (int, float)) else None,
                )
            )
        return results

    @retry(
        retry=retry_if_exception_type(httpx.TransportError)
        | retry_if_exception_type(httpx.HTTPStatusError),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            resp = await client.post(self.search_url, headers=self._headers(), json=payload)

            # Handle rate limits with a local, single retry
            if resp.status_code == 429:
                retry_after = resp.headers.get("Retry-After")
                delay = int(retry_after) if retry_after and retry_after.isdigit() else 5
                await asyncio.sleep(delay)
                resp = await client.post(
                    self.search_url, headers=self._headers(), json=payload
                )

            if 400 <= resp.status_code < 500 and resp.status_code != 429:
                logger.warning(
                    "Tavily rejected query (%s): %s",
                    resp.status_code,
                    resp.text[:300],
                    extra={"query": payload.get("query")},
                )
                return {}

            resp.raise_for_status()
            return resp.json()

    async def search(
        self,
        query: str,
        *,
        depth: str = "advanced",
        max_results: int = 5,
        exclude_domains: Optional[List[str]] = None,
        days: Optional[int] = None,
    ) -> List[SearchResult]:
        if not self.api_key:
            raise RuntimeError("TAVILY_API_KEY is required for report generation")

        query = (query or "").strip()
        if not query:
            return []

        payload = self._build_payload(query, depth, max_results, exclude_domains, days)

        cache_key = make_cache_key(
            "tavily",
            {
                "query": query,
                "depth": depth,
                "max_results": max_results,
                "days": days,
                "exclude": sorted(exclude_domains or []),
            },
        )

        cached = await cached_get(cache_key, redis_url=self.redis_url)
        if cached is not None:
            return [SearchResult(**item) for item in cached]

        data = await self._post(payload)
        results = self._parse_results(data)

        if self.cache_ttl and results:
            await cached_get(
                cache_key,
                set_value=[r.model_dump() for r in results],
                ttl=self.cache_ttl,
                redis_url=self.redis_url,
            )
        return results
