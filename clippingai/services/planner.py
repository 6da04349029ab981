# clippingai/services/planner.py
from __future__ import annotations

import logging
import textwrap
from datetime import datetime, timezone
from typing import List, Optional

from ..schemas.knowledge import CompanyKnowledge
from ..schemas.report import ReportInput, ReportType, SearchQuery
from .jsonparse import JSONExtractionError, extract_json_object
from .tracing import RunContext

logger = logging.getLogger(__name__)

PLANNER_MAX_TOKENS = 2048

# One query per slot, in this order.
QUERY_CATEGORIES = [
    "Company News",
    "Competitor 1",
    "Competitor 2",
    "Industry Trends",
    "Technology",
    "Regulation",
]

REPORT_TYPE_FOCUS = {
    ReportType.COMPETITOR_LANDSCAPE: (
        "Focus on: product launches, pricing changes, strategic moves, funding, "
        "partnerships, leadership changes."
    ),
    ReportType.MARKET_LANDSCAPE: (
        "Focus on: industry trends, regulatory changes, market shifts, emerging "
        "technologies, market opportunities."
    ),
    ReportType.MEDIA_MONITORING: (
        "Focus on: news mentions, press releases, industry publications, analyst "
        "commentary, and how the company is being covered."
    ),
}


def describe_time_window(report_input: ReportInput, now: Optional[datetime] = None) -> str:
    """
    Human-readable search window.

    With a previous-report cutoff we say exactly how long ago it was, so the
    model writes queries for "what changed since", not a generic week.
    """
    now = now or datetime.now(timezone.utc)
    if report_input.last_report_at:
        since = report_input.last_report_at
        elapsed_hours = max(1, int((now - since).total_seconds() // 3600))
        stamp = since.strftime("%Y-%m-%d %H:%M UTC")
        if elapsed_hours < 48:
            return f"the last {elapsed_hours} hours (since the previous report on {stamp})"
        return (
            f"the last {elapsed_hours // 24} days (since the previous report on {stamp})"
        )
    days = report_input.date_range_days
    return f"the last {days} day{'s' if days != 1 else ''}"


def _competitors_for_prompt(
    report_input: ReportInput, knowledge: CompanyKnowledge | None
) -> List[str]:
    if report_input.competitors:
        return list(report_input.competitors)
    if knowledge and knowledge.competitors:
        return list(knowledge.competitors)
    return []


def build_query_planning_prompt(
    report_input: ReportInput,
    knowledge: CompanyKnowledge | None = None,
    now: Optional[datetime] = None,
) -> str:
    competitors = _competitors_for_prompt(report_input, knowledge)
    categories = "\n".join(f"{i + 1}. {c}" for i, c in enumerate(QUERY_CATEGORIES))

    return textwrap.dedent(
        f"""
        You are a research assistant planning web searches for a competitive intelligence digest.

        Company: {report_input.company_name} ({report_input.company_domain})
        Industry: {report_input.industry or 'Unknown'}
        Competitors: {', '.join(competitors) if competitors else 'To be discovered'}
        Report Type: {report_input.report_type.value}
        Time Window: {describe_time_window(report_input, now)}

        {REPORT_TYPE_FOCUS[report_input.report_type]}

        Write EXACTLY one search query for each of these {len(QUERY_CATEGORIES)} categories, in order:
        {categories}

        Rules:
        - Each query must be specific and likely to surface news published in the time window.
        - Competitor slots name a concrete competitor. If fewer competitors are known, use the
          slot to discover the company's most relevant rivals.
        - Do not repeat the same query with different wording.
        - The reasoning field MUST start with "Category: <category> – " followed by one line
          explaining why the query is valuable.

        Return ONLY valid JSON in this format:
        {{
          "queries": [
            {{
              "query": "the search query string",
              "reasoning": "Category: Company News – why this query is valuable"
            }}
          ]
        }}
        """
    ).strip()


def parse_query_planning_response(response: str) -> List[SearchQuery]:
    try:
        parsed = extract_json_object(response)
    except JSONExtractionError as e:
        logger.error("Error parsing query planning response: %s", e)
        return []

    raw_queries = parsed.get("queries")
    if not isinstance(raw_queries, list):
        logger.error("Query planning response has no 'queries' array")
        return []

    queries: List[SearchQuery] = []
    for item in raw_queries:
        if isinstance(item, str):
            item = {"query": item}
        if not isinstance(item, dict):
            continue
        text = str(item.get("query") or "").strip()
        if not text:
            continue
        queries.append(
            SearchQuery(query=text, reasoning=str(item.get("reasoning") or "").strip())
        )
    return queries


class QueryPlanner:
    def __init__(self, llm):
        self.llm = llm

    async def plan(
        self,
        report_input: ReportInput,
        ctx: RunContext | None = None,
        knowledge: CompanyKnowledge | None = None,
    ) -> List[SearchQuery]:
        prompt = build_query_planning_prompt(report_input, knowledge)
        response = await self.llm.complete(
            prompt,
            PLANNER_MAX_TOKENS,
            kind="query_planning",
            usage=ctx.usage if ctx else None,
        )
        queries = parse_query_planning_response(response)

        if len(queries) != len(QUERY_CATEGORIES):
            logger.warning(
                "Planner returned %d queries, expected %d",
                len(queries),
                len(QUERY_CATEGORIES),
                extra={"stage": "query_planning"},
            )

        if ctx:
            ctx.step(
                "query_planning",
                prompt=prompt,
                response=response,
                data={"queries": [q.model_dump() for q in queries]},
            )
        logger.info(
            "Planned %d search queries",
            len(queries),
            extra=ctx.log_extra(stage="query_planning") if ctx else {"stage": "query_planning"},
        )
        return queries
