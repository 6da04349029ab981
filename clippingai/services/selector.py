# clippingai/services/selector.py
from __future__ import annotations

import logging
import textwrap
from typing import Any, Dict, List, Sequence

from ..schemas.report import ArticleCategory, Candidate, ReportInput, SearchResult
from .jsonparse import JSONExtractionError, extract_json_object
from .search import parse_published_date
from .tracing import RunContext

logger = logging.getLogger(__name__)

SELECTOR_MAX_TOKENS = 4096
PREVIEW_CHARS = 300

CATEGORY_VALUES = [c.value for c in ArticleCategory]


def build_selection_prompt(
    results: Sequence[SearchResult],
    report_input: ReportInput,
    target_count: int,
) -> str:
    results_text = "\n---\n".join(
        f"[{i}] {r.title}\n"
        f"URL: {r.url}\n"
        f"Published: {r.published_date or 'Unknown'}\n"
        f"Preview: {r.content[:PREVIEW_CHARS]}..."
        for i, r in enumerate(results)
    )

    cutoff_rule = ""
    if report_input.last_report_at:
        cutoff_rule = (
            "- Reject anything published before "
            f"{report_input.last_report_at.strftime('%Y-%m-%d %H:%M UTC')} "
            "(already covered by the previous report).\n"
        )

    return textwrap.dedent(
        f"""
        You are the editor of a {report_input.report_type.value} digest about {report_input.company_name}
        ({report_input.company_domain}, industry: {report_input.industry or 'Unknown'}).

        Review these {len(results)} search results and choose the articles worth a full write-up.

        QUALITY OVER QUANTITY:
        - Select between {report_input.min_articles} and {target_count} articles.
        - Selecting ZERO articles is a valid answer when nothing is genuinely newsworthy.
          Never pad the list with weak, generic, or evergreen content.

        Rules:
        - Each selected article gets exactly one category from: {', '.join(CATEGORY_VALUES)}.
        - No two selected articles may share a category; pick the strongest article per theme.
        - Prefer primary reporting over aggregators, and recent items over older ones.
        - Treat near-duplicates (same event, different outlet) as one story.
        {cutoff_rule}
        Results:
        {results_text}

        Return ONLY valid JSON:
        {{
          "analysis": "one short paragraph on what is and is not newsworthy",
          "selected": [
            {{"index": 0, "category": "company_news", "reason": "why it matters"}}
          ],
          "rejected": [
            {{"index": 3, "reason": "why it was rejected"}}
          ]
        }}
        """
    ).strip()


def _coerce_index(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def apply_selection_policy(
    parsed: Dict[str, Any],
    results: Sequence[SearchResult],
    report_input: ReportInput,
    target_count: int,
) -> List[Candidate]:
    """
    Turn the model's selection into candidates, enforcing the rules the
    prompt asked for: valid indexes, one category per article, nothing older
    than the previous report, and at most ``target_count`` items.
    """
    raw_selected = parsed.get("selected")
    if not isinstance(raw_selected, list):
        return []

    candidates: List[Candidate] = []
    seen_indexes: set[int] = set()
    seen_categories: set[ArticleCategory] = set()

    for entry in raw_selected:
        if not isinstance(entry, dict):
            logger.warning("Skipping selection entry without a category: %r", entry)
            continue

        idx = _coerce_index(entry.get("index"))
        if idx is None or idx < 0 or idx >= len(results):
            logger.warning("Skipping out-of-range selection index %r", entry.get("index"))
            continue
        if idx in seen_indexes:
            continue
        seen_indexes.add(idx)

        try:
            category = ArticleCategory(str(entry.get("category") or "").strip().lower())
        except ValueError:
            logger.warning(
                "Skipping selection %d with unknown category %r", idx, entry.get("category")
            )
            continue

        if category in seen_categories:
            logger.warning(
                "Model selected more than one '%s' article; keeping the first",
                category.value,
                extra={"stage": "candidate_selection"},
            )
            continue

        result = results[idx]
        if report_input.last_report_at:
            published = parse_published_date(result.published_date)
            if published is not None and published < report_input.last_report_at:
                logger.info(
                    "Dropping '%s': published before the previous report",
                    result.title,
                    extra={"stage": "candidate_selection"},
                )
                continue

        seen_categories.add(category)
        candidates.append(
            Candidate(
                **result.model_dump(),
                category=category,
                reason=str(entry.get("reason") or "").strip(),
            )
        )
        if len(candidates) >= target_count:
            break

    return candidates


class CandidateSelector:
    def __init__(self, llm):
        self.llm = llm

    async def select(
        self,
        results: Sequence[SearchResult],
        report_input: ReportInput,
        target_count: int,
        ctx: RunContext | None = None,
    ) -> List[Candidate]:
        if not results or target_count <= 0:
            return []

        prompt = build_selection_prompt(results, report_input, target_count)
        response = await self.llm.complete(
            prompt,
            SELECTOR_MAX_TOKENS,
            kind="candidate_selection",
            usage=ctx.usage if ctx else None,
        )

        try:
            parsed = extract_json_object(response)
        except JSONExtractionError as e:
            logger.error("Error parsing selection response: %s", e)
            parsed = {}

        candidates = apply_selection_policy(parsed, results, report_input, target_count)

        if len(candidates) < report_input.min_articles:
            logger.warning(
                "Selected %d articles, below the requested minimum of %d",
                len(candidates),
                report_input.min_articles,
                extra={"stage": "candidate_selection"},
            )

        if ctx:
            ctx.step(
                "candidate_selection",
                prompt=prompt,
                response=response,
                data={
                    "analysis": parsed.get("analysis"),
                    "selected": [
                        {"url": c.url, "title": c.title, "category": c.category.value}
                        for c in candidates
                    ],
                    "rejected": parsed.get("rejected"),
                },
            )
        logger.info(
            "Selected %d articles from %d results",
            len(candidates),
            len(results),
            extra=ctx.log_extra(stage="candidate_selection") if ctx else {},
        )
        return candidates
