# clippingai/services/research.py
"""
Deep-research loop for a single candidate article.

The model decides, one evaluation at a time, whether the evidence gathered so
far is enough to write a grounded brief. Its answer is only ever used as a
stop/continue signal; facts come from the search results themselves.

    Evaluating --search--> Searching --> Evaluating
    Evaluating --done / confident / cap / unparseable--> Done
"""
from __future__ import annotations

import asyncio
import logging
import textwrap
from typing import List, Sequence

from pydantic import ValidationError

from ..schemas.report import (
    Candidate,
    ReportInput,
    ResearchDecision,
    ResearchSession,
    SearchResult,
)
from .connectors.base import BaseSearchConnector
from .jsonparse import JSONExtractionError, extract_json_object
from .search import DEFAULT_EXCLUDE_DOMAINS
from .tracing import RunContext

logger = logging.getLogger(__name__)

MAX_RESEARCH_ITERATIONS = 3
CONFIDENCE_THRESHOLD = 90
DECISION_MAX_TOKENS = 1024
FOLLOW_UP_MAX_RESULTS = 3
SOURCE_EXCERPT_CHARS = 1500


def build_decision_prompt(
    candidate: Candidate,
    sources: Sequence[SearchResult],
    report_input: ReportInput,
    iteration: int,
    max_iterations: int,
) -> str:
    if sources:
        gathered = "\n\n".join(
            f"[{i + 2}] {s.title}\nURL: {s.url}\nPublished: {s.published_date or 'Unknown'}\n"
            f"{s.content[:SOURCE_EXCERPT_CHARS]}"
            for i, s in enumerate(sources)
        )
    else:
        gathered = "(none yet)"

    return textwrap.dedent(
        f"""
        You are researching a news item for an intelligence brief about {report_input.company_name}.
        Decide whether the evidence below is enough to write an accurate, well-sourced
        300-500 word article, or whether specific follow-up searches are needed first.

        Research round {iteration} of {max_iterations}.

        PRIMARY SOURCE [1] (category: {candidate.category.value}):
        Title: {candidate.title}
        URL: {candidate.url}
        Published: {candidate.published_date or 'Unknown'}
        {candidate.content[:SOURCE_EXCERPT_CHARS * 2]}

        ADDITIONAL SOURCES GATHERED SO FAR:
        {gathered}

        Search again ONLY when a concrete gap would weaken the article: an unverified claim,
        missing figures, missing context on who/what/when, or no independent corroboration.
        Do not search for background that is already covered.

        Return ONLY valid JSON:
        {{
          "action": "done" or "search",
          "reasoning": "what is covered and what (if anything) is missing",
          "confidence": 0-100,
          "queries": ["1-2 specific follow-up queries, only when action is search"]
        }}
        """
    ).strip()


def parse_decision(response: str) -> ResearchDecision | None:
    """Strict schema check; anything malformed is treated as a stop signal."""
    try:
        parsed = extract_json_object(response)
        return ResearchDecision.model_validate(parsed)
    except (JSONExtractionError, ValidationError, ValueError, TypeError) as e:
        logger.warning("Unparseable research decision: %s", e)
        return None


class DeepResearchAgent:
    def __init__(
        self,
        llm,
        connector: BaseSearchConnector,
        max_iterations: int = MAX_RESEARCH_ITERATIONS,
        confidence_threshold: int = CONFIDENCE_THRESHOLD,
        exclude_domains: List[str] | None = None,
    ):
        self.llm = llm
        self.connector = connector
        self.max_iterations = max_iterations
        self.confidence_threshold = confidence_threshold
        self.exclude_domains = (
            list(exclude_domains) if exclude_domains is not None else DEFAULT_EXCLUDE_DOMAINS
        )

    async def _follow_up(
        self, query: str, ctx: RunContext | None, candidate: Candidate
    ) -> List[SearchResult]:
        try:
            results = await self.connector.search(
                query,
                depth="advanced",
                max_results=FOLLOW_UP_MAX_RESULTS,
                exclude_domains=self.exclude_domains,
            )
        except Exception as e:
            logger.warning(
                "Follow-up search failed for %r: %s",
                query,
                e,
                extra={"stage": "deep_research_search", "candidate": candidate.url},
            )
            return []
        if ctx:
            ctx.usage.add_search(getattr(self.connector, "name", "search"))
        return results

    async def research(
        self,
        candidate: Candidate,
        report_input: ReportInput,
        ctx: RunContext | None = None,
    ) -> ResearchSession:
        session = ResearchSession(candidate=candidate, stop_reason="iteration_cap")
        seen_urls: set[str] = {candidate.url}

        for iteration in range(1, self.max_iterations + 1):
            # Evaluating
            prompt = build_decision_prompt(
                candidate, session.sources, report_input, iteration, self.max_iterations
            )
            try:
                response = await self.llm.complete(
                    prompt,
                    DECISION_MAX_TOKENS,
                    kind="deep_research_decision",
                    usage=ctx.usage if ctx else None,
                )
            except Exception as e:
                logger.warning(
                    "Research decision call failed; writing with what we have: %s",
                    e,
                    extra={"stage": "deep_research_decision", "candidate": candidate.url},
                )
                session.stop_reason = "error"
                break
            decision = parse_decision(response)

            if ctx:
                ctx.step(
                    "deep_research_decision",
                    prompt=prompt,
                    response=response,
                    data={
                        "candidate": candidate.url,
                        "iteration": iteration,
                        "decision": decision.model_dump() if decision else None,
                    },
                )

            if decision is None:
                session.stop_reason = "unparseable"
                break

            session.decisions.append(decision)

            if decision.action == "done":
                session.stop_reason = "done"
                break

            if not decision.queries:
                session.stop_reason = "no_queries"
                break

            # Searching
            batches = await asyncio.gather(
                *(self._follow_up(q, ctx, candidate) for q in decision.queries)
            )
            session.iterations += 1

            added: List[SearchResult] = []
            for batch in batches:
                for result in batch:
                    if result.url in seen_urls:
                        continue
                    seen_urls.add(result.url)
                    added.append(result)
            session.sources.extend(added)

            if ctx:
                ctx.step(
                    "deep_research_search",
                    data={
                        "candidate": candidate.url,
                        "iteration": iteration,
                        "queries": decision.queries,
                        "new_sources": [s.url for s in added],
                    },
                )

            if decision.confidence >= self.confidence_threshold:
                session.stop_reason = "confident"
                break

        if ctx:
            ctx.step(
                "deep_research_complete",
                data={
                    "candidate": candidate.url,
                    "rounds": session.iterations,
                    "sources": len(session.sources),
                    "stop_reason": session.stop_reason,
                },
            )
        logger.info(
            "Deep research for '%s' finished after %d rounds (%s), %d extra sources",
            candidate.title,
            session.iterations,
            session.stop_reason,
            len(session.sources),
            extra={"stage": "deep_research", "candidate": candidate.url},
        )
        return session
