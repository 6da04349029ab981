# clippingai/services/search.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional, Sequence

from ..schemas.report import SearchQuery, SearchResult
from .connectors.base import BaseSearchConnector
from .tracing import RunContext

logger = logging.getLogger(__name__)

# At or beyond this window the date filter is off ("all time").
ALL_TIME_DAYS = 365

DEFAULT_EXCLUDE_DOMAINS = ["reddit.com", "youtube.com", "quora.com"]


def parse_published_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse the loosely-formatted publish dates search providers return
    (ISO-8601 or RFC 2822). Returns an aware UTC datetime, or None.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None

    parsed: Optional[datetime] = None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        try:
            parsed = parsedate_to_datetime(text)
        except (TypeError, ValueError, IndexError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def filter_by_date(
    results: Sequence[SearchResult],
    date_range_days: int,
    now: Optional[datetime] = None,
) -> List[SearchResult]:
    """
    Drop results published before ``now - date_range_days``.

    Results with no (or an unreadable) publish date pass through: the search
    provider already applied its own day filter upstream.
    """
    if date_range_days >= ALL_TIME_DAYS:
        return list(results)

    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=date_range_days)
    kept: List[SearchResult] = []
    for r in results:
        published = parse_published_date(r.published_date)
        if published is not None and published < cutoff:
            continue
        kept.append(r)
    return kept


def dedupe_by_url(results: Sequence[SearchResult]) -> List[SearchResult]:
    """Several planned queries often surface the same story; keep the first copy."""
    seen: set[str] = set()
    unique: List[SearchResult] = []
    for r in results:
        if r.url in seen:
            continue
        seen.add(r.url)
        unique.append(r)
    return unique


class SearchExecutor:
    def __init__(
        self,
        connector: BaseSearchConnector,
        max_results: int = 5,
        exclude_domains: Optional[List[str]] = None,
    ):
        self.connector = connector
        self.max_results = max_results
        self.exclude_domains = (
            list(exclude_domains) if exclude_domains is not None else DEFAULT_EXCLUDE_DOMAINS
        )

    async def _run_query(
        self,
        query: SearchQuery,
        date_range_days: int,
        ctx: RunContext | None,
    ) -> List[SearchResult]:
        try:
            results = await self.connector.search(
                query.query,
                depth="advanced",
                max_results=self.max_results,
                exclude_domains=self.exclude_domains,
                days=date_range_days if date_range_days < ALL_TIME_DAYS else None,
            )
        except Exception as e:
            logger.warning(
                "Search failed for query %r: %s",
                query.query,
                e,
                extra={"stage": "search", "query": query.query},
            )
            if ctx:
                ctx.step("search_error", data={"query": query.query, "error": str(e)})
            return []

        if ctx:
            ctx.usage.add_search(getattr(self.connector, "name", "search"))
        logger.info(
            "Query %r -> %d results",
            query.query,
            len(results),
            extra={"stage": "search", "query": query.query},
        )
        return results

    async def execute(
        self,
        queries: Sequence[SearchQuery],
        date_range_days: int,
        ctx: RunContext | None = None,
    ) -> List[SearchResult]:
        """
        Run every query concurrently, flatten the results and drop repeated URLs.

        A failing query contributes nothing; it never aborts the batch.
        """
        batches = await asyncio.gather(
            *(self._run_query(q, date_range_days, ctx) for q in queries)
        )

        flattened: List[SearchResult] = [r for batch in batches for r in batch]
        results = filter_by_date(dedupe_by_url(flattened), date_range_days)

        if ctx:
            ctx.step(
                "search",
                data={
                    "date_range_days": date_range_days,
                    "queries": [q.query for q in queries],
                    "raw_results": len(flattened),
                    "after_date_filter": len(results),
                    "results": [{"title": r.title, "url": r.url} for r in results],
                },
            )
        return results
