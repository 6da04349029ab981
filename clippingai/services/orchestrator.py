# clippingai/services/orchestrator.py
from __future__ import annotations

import asyncio
import logging
import time
from functools import lru_cache
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.config import Settings, get_settings
from ..core.logging import configure_logging
from ..schemas.knowledge import CompanyKnowledge
from ..schemas.report import (
    Candidate,
    GeneratedReport,
    ReportArticle,
    ReportInput,
    ReportMetadata,
    ResearchSession,
    SearchQuery,
    SearchResult,
)
from .connectors import get_search_connector
from .images import Illustrator
from .knowledge import KnowledgeBaseManager, get_knowledge_store
from .llm import CompletionClient
from .llm_costs import ModelRate, load_pricebook
from .planner import QueryPlanner, describe_time_window
from .research import DeepResearchAgent
from .search import ALL_TIME_DAYS, SearchExecutor
from .selector import CandidateSelector
from .synthesizer import ReportSynthesizer
from .tracing import AgentTrace, RunContext
from .writer import ArticleSummarizer

logger = logging.getLogger(__name__)

# Widening windows tried after the requested one comes back empty.
FALLBACK_WINDOWS_DAYS = (30, ALL_TIME_DAYS)

EMPTY_REPORT_TITLE = "No New Updates"


class ReportGenerationError(RuntimeError):
    """A run could not produce a report."""


class NoQueriesPlannedError(ReportGenerationError):
    pass


class NoSearchResultsError(ReportGenerationError):
    pass


class ReportTimeoutError(ReportGenerationError):
    pass


def search_windows(date_range_days: int) -> List[int]:
    """The requested window, then each fallback strictly wider than the last one tried."""
    windows = [date_range_days]
    for days in FALLBACK_WINDOWS_DAYS:
        if days > windows[-1]:
            windows.append(days)
    return windows


class ReportPipeline:
    def __init__(
        self,
        planner: QueryPlanner,
        executor: SearchExecutor,
        selector: CandidateSelector,
        researcher: DeepResearchAgent,
        summarizer: ArticleSummarizer,
        synthesizer: ReportSynthesizer,
        illustrator: Illustrator | None = None,
        knowledge: KnowledgeBaseManager | None = None,
        *,
        deep_research_enabled: bool = True,
        target_article_count: int = 5,
        deadline_seconds: float | None = None,
        pricebook: Dict[str, ModelRate] | None = None,
        web_search_cost_usd: float | None = None,
    ):
        self.planner = planner
        self.executor = executor
        self.selector = selector
        self.researcher = researcher
        self.summarizer = summarizer
        self.synthesizer = synthesizer
        self.illustrator = illustrator
        self.knowledge = knowledge
        self.deep_research_enabled = deep_research_enabled
        self.target_article_count = target_article_count
        self.deadline_seconds = deadline_seconds
        self.pricebook = pricebook
        self.web_search_cost_usd = web_search_cost_usd

    async def generate(self, report_input: ReportInput) -> GeneratedReport:
        report, _ = await self.generate_with_trace(report_input)
        return report

    async def generate_with_trace(
        self, report_input: ReportInput
    ) -> Tuple[GeneratedReport, AgentTrace]:
        ctx = RunContext(
            report_input,
            pricebook=self.pricebook,
            web_search_cost_usd=self.web_search_cost_usd,
        )
        logger.info("Starting report run", extra=ctx.log_extra(stage="start"))

        try:
            if self.deadline_seconds:
                report = await asyncio.wait_for(self._run(ctx), self.deadline_seconds)
            else:
                report = await self._run(ctx)
        except asyncio.TimeoutError as e:
            err = ReportTimeoutError(
                f"Report run exceeded its {self.deadline_seconds:g}s deadline"
            )
            self._record_failure(ctx, err)
            raise err from e
        except Exception as e:
            self._record_failure(ctx, e)
            raise

        trace = ctx.finish()
        logger.info(
            "Report run complete: %d articles in %dms",
            len(report.articles),
            report.metadata.generation_time_ms,
            extra=ctx.log_extra(stage="done"),
        )
        return report, trace

    def _record_failure(self, ctx: RunContext, error: Exception) -> None:
        ctx.step(
            "run_failed",
            data={"error": str(error), "error_type": type(error).__name__},
        )
        ctx.finish(error=str(error))
        logger.error(
            "Report run failed: %s",
            error,
            extra=ctx.log_extra(stage="run_failed"),
        )

    async def _load_knowledge(self, ctx: RunContext) -> CompanyKnowledge | None:
        owner_id = ctx.input.owner_id
        if not owner_id or self.knowledge is None:
            return None
        try:
            return await self.knowledge.load(owner_id)
        except Exception:
            logger.exception(
                "Could not load company knowledge; continuing without it",
                extra=ctx.log_extra(stage="knowledge"),
            )
            return None

    async def _search_with_fallback(
        self, queries: Sequence[SearchQuery], ctx: RunContext
    ) -> Tuple[List[SearchResult], int]:
        for window in search_windows(ctx.input.date_range_days):
            with ctx.timed("search"):
                results = await self.executor.execute(queries, window, ctx)
            if results:
                return results, window
            logger.warning(
                "No results in the last %d days; widening the window",
                window,
                extra=ctx.log_extra(stage="search"),
            )
            ctx.step("search_fallback", data={"empty_window_days": window})

        raise NoSearchResultsError(
            f"No search results for {ctx.input.company_name}, even across all time"
        )

    async def _process_candidate(
        self,
        candidate: Candidate,
        knowledge: CompanyKnowledge | None,
        use_deep_research: bool,
        ctx: RunContext,
    ) -> Tuple[ReportArticle, ResearchSession] | None:
        """Research, write and illustrate one candidate. Any failure drops just this article."""
        try:
            if use_deep_research:
                session = await self.researcher.research(candidate, ctx.input, ctx)
            else:
                session = ResearchSession(candidate=candidate)

            article = await self.summarizer.summarize(
                candidate, session.sources, ctx.input, knowledge=knowledge, ctx=ctx
            )

            if self.illustrator is not None:
                await self.illustrator.illustrate(article, ctx)

            return article, session
        except Exception as e:
            logger.exception(
                "Dropping article for %s",
                candidate.url,
                extra=ctx.log_extra(stage="article", candidate=candidate.url),
            )
            ctx.step(
                "article_failed",
                data={"candidate": candidate.url, "error": str(e)},
            )
            return None

    def _empty_report(self, window: int, ctx: RunContext) -> Tuple[str, str]:
        if window == ctx.input.date_range_days:
            period = describe_time_window(ctx.input)
        elif window >= ALL_TIME_DAYS:
            period = "the past year"
        else:
            period = f"the last {window} days"
        summary = (
            f"No significant developments were found for {ctx.input.company_name} "
            f"in {period}. We will keep monitoring and report as soon as there is news."
        )
        return EMPTY_REPORT_TITLE, summary

    async def _run(self, ctx: RunContext) -> GeneratedReport:
        started = time.perf_counter()
        report_input = ctx.input
        use_deep_research = (
            report_input.use_deep_research
            if report_input.use_deep_research is not None
            else self.deep_research_enabled
        )
        ctx.step(
            "run_started",
            data={
                "company": report_input.company_name,
                "report_type": report_input.report_type.value,
                "date_range_days": report_input.date_range_days,
                "deep_research": use_deep_research,
                "images": self.illustrator is not None,
            },
        )

        knowledge = await self._load_knowledge(ctx)

        # 1. Plan
        with ctx.timed("query_planning"):
            queries = await self.planner.plan(report_input, ctx, knowledge=knowledge)
        if not queries:
            raise NoQueriesPlannedError("Query planning produced no search queries")

        # 2. Search, widening the window when nothing comes back
        results, window = await self._search_with_fallback(queries, ctx)

        # 3. Select
        with ctx.timed("candidate_selection"):
            candidates = await self.selector.select(
                results, report_input, self.target_article_count, ctx
            )

        # 4. Research + write + illustrate, one branch per candidate
        articles: List[ReportArticle] = []
        research_rounds = 0
        if candidates:
            with ctx.timed("articles"):
                outcomes = await asyncio.gather(
                    *(
                        self._process_candidate(c, knowledge, use_deep_research, ctx)
                        for c in candidates
                    )
                )
            for outcome in outcomes:
                if outcome is None:
                    continue
                article, session = outcome
                articles.append(article)
                research_rounds += session.iterations

        # 5. Synthesize
        if articles:
            with ctx.timed("report_synthesis"):
                synthesis = await self.synthesizer.synthesize(articles, report_input, ctx)
            title, summary = synthesis.title, synthesis.summary
        else:
            if candidates:
                logger.warning(
                    "All %d selected articles failed; returning an empty report",
                    len(candidates),
                    extra=ctx.log_extra(stage="articles"),
                )
            title, summary = self._empty_report(window, ctx)
            ctx.step("empty_report", data={"search_window_days": window})

        report = GeneratedReport(title=title, summary=summary, articles=articles)

        # 6. Learn
        if report_input.owner_id and self.knowledge is not None:
            with ctx.timed("knowledge"):
                await self.knowledge.update_from_report(
                    report_input.owner_id, report_input, report, knowledge, ctx=ctx
                )

        report.metadata = ReportMetadata(
            total_searches=len(queries),
            articles_found=len(results),
            articles_selected=len(candidates),
            generation_time_ms=int((time.perf_counter() - started) * 1000),
            search_window_days=window,
            research_rounds=research_rounds,
            profiling=dict(ctx.timings),
            llm_usage=ctx.usage.summarize(),
        )
        ctx.step("report_complete", data=report.metadata.model_dump(exclude={"llm_usage"}))
        return report


def build_pipeline(settings: Optional[Settings] = None) -> ReportPipeline:
    """Wire every client once; the pipeline only sees the injected collaborators."""
    settings = settings or get_settings()
    configure_logging(settings.LOG_LEVEL)

    llm = CompletionClient.from_settings(settings)
    connector = get_search_connector(settings)
    exclude_domains = list(settings.SEARCH_EXCLUDE_DOMAINS)

    illustrator: Illustrator | None = None
    if settings.IMAGES_ENABLED:
        if settings.OPENAI_API_KEY:
            illustrator = Illustrator.from_settings(settings)
        else:
            logger.warning("IMAGES_ENABLED is set but OPENAI_API_KEY is missing; skipping images")

    return ReportPipeline(
        planner=QueryPlanner(llm),
        executor=SearchExecutor(
            connector,
            max_results=settings.SEARCH_MAX_RESULTS,
            exclude_domains=exclude_domains,
        ),
        selector=CandidateSelector(llm),
        researcher=DeepResearchAgent(
            llm,
            connector,
            max_iterations=settings.MAX_RESEARCH_ITERATIONS,
            confidence_threshold=settings.RESEARCH_CONFIDENCE_THRESHOLD,
            exclude_domains=exclude_domains,
        ),
        summarizer=ArticleSummarizer(llm),
        synthesizer=ReportSynthesizer(llm),
        illustrator=illustrator,
        knowledge=KnowledgeBaseManager(llm, get_knowledge_store(settings)),
        deep_research_enabled=settings.DEEP_RESEARCH_ENABLED,
        target_article_count=settings.TARGET_ARTICLE_COUNT,
        deadline_seconds=settings.PIPELINE_DEADLINE_SECONDS,
        pricebook=load_pricebook(settings.LLM_PRICEBOOK_JSON or ""),
        web_search_cost_usd=settings.WEB_SEARCH_PER_CALL_USD,
    )


@lru_cache(maxsize=1)
def get_default_pipeline() -> ReportPipeline:
    """Process-wide pipeline built from the environment settings."""
    return build_pipeline()


async def generate_report(report_input: ReportInput) -> GeneratedReport:
    """Convenience entry point using the default, settings-driven pipeline."""
    return await get_default_pipeline().generate(report_input)
