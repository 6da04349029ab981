# clippingai/services/knowledge.py
"""
Per-owner company knowledge base.

Each report teaches the system a little more about the target company:
competitors, products, strategic themes and a rolling list of recent
developments. The accumulated profile feeds the planner and the article
writer of later runs as background context.
"""
from __future__ import annotations

import asyncio
import logging
import textwrap
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, List

import redis

from ..core.config import Settings, get_settings
from ..schemas.knowledge import (
    MAX_RECENT_DEVELOPMENTS,
    CompanyKnowledge,
    KnowledgeUpdate,
)
from ..schemas.report import GeneratedReport, ReportInput
from .jsonparse import JSONExtractionError, extract_json_object
from .tracing import RunContext

logger = logging.getLogger(__name__)

EXTRACTION_MAX_TOKENS = 2048
REDIS_KEY_PREFIX = "clippingai:knowledge:"
PROMPT_RECENT_DEVELOPMENTS = 3


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def _union(existing: Iterable[str], new: Iterable[str] | None) -> List[str]:
    """Case-insensitive union; the first spelling seen wins, order is kept."""
    merged: List[str] = []
    seen: set[str] = set()
    for item in list(existing) + list(new or []):
        key = item.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(item.strip())
    return merged


def merge_knowledge(
    existing: CompanyKnowledge,
    update: KnowledgeUpdate,
    now: datetime | None = None,
) -> CompanyKnowledge:
    merged = existing.model_copy(deep=True)

    merged.competitors = _union(existing.competitors, update.competitors)
    merged.key_products = _union(existing.key_products, update.key_products)
    merged.strategic_focus = _union(existing.strategic_focus, update.strategic_focus)

    if update.market_position:
        merged.market_position = update.market_position
    if update.target_market:
        merged.target_market = update.target_market

    if update.recent_developments:
        merged.recent_developments = (
            list(update.recent_developments) + list(existing.recent_developments)
        )[:MAX_RECENT_DEVELOPMENTS]

    if update.competitive_insights:
        merged.competitive_insights = {
            **existing.competitive_insights,
            **update.competitive_insights,
        }

    merged.report_count = existing.report_count + 1
    merged.last_updated = now or datetime.now(timezone.utc)
    return merged


def format_knowledge_for_prompt(knowledge: CompanyKnowledge | None) -> str:
    if knowledge is None:
        return ""

    parts: List[str] = []
    if knowledge.competitors:
        parts.append(f"Known competitors: {', '.join(knowledge.competitors)}")
    if knowledge.market_position:
        parts.append(f"Market position: {knowledge.market_position}")
    if knowledge.key_products:
        parts.append(f"Key products: {', '.join(knowledge.key_products)}")
    if knowledge.target_market:
        parts.append(f"Target market: {knowledge.target_market}")
    if knowledge.strategic_focus:
        parts.append(f"Strategic focus areas: {', '.join(knowledge.strategic_focus)}")
    if knowledge.recent_developments:
        recent = knowledge.recent_developments[:PROMPT_RECENT_DEVELOPMENTS]
        lines = "\n".join(f"{d.date or 'undated'}: {d.summary}" for d in recent)
        parts.append(f"Recent developments:\n{lines}")

    if not parts:
        return ""
    joined = "\n".join(parts)
    return f"\nBACKGROUND CONTEXT (for inspiration - do not force connections):\n{joined}\n"


def build_extraction_prompt(
    report_input: ReportInput,
    report: GeneratedReport,
    existing: CompanyKnowledge | None,
) -> str:
    articles_text = "\n\n---\n\n".join(
        f"{a.title}\n{a.summary}\n{a.content}" for a in report.articles
    )

    existing_context = ""
    if existing:
        existing_context = (
            "EXISTING KNOWLEDGE:\n"
            f"- Competitors: {', '.join(existing.competitors) or 'Unknown'}\n"
            f"- Market Position: {existing.market_position or 'Unknown'}\n"
            f"- Key Products: {', '.join(existing.key_products) or 'Unknown'}\n"
            f"- Target Market: {existing.target_market or 'Unknown'}\n"
            f"- Strategic Focus: {', '.join(existing.strategic_focus) or 'Unknown'}\n"
        )

    company = report_input.company_name
    return textwrap.dedent(
        f"""
        You are updating the knowledge base for {company} based on a new intelligence report.

        {existing_context}
        NEW REPORT CONTENT:
        {articles_text}

        Extract NEW or UPDATED knowledge about {company}.

        Rules:
        1. Only extract facts explicitly stated in the report.
        2. Focus on information not already in the existing knowledge.
        3. Be concise: key facts only.
        4. If the report has nothing for a field, return null for that field.
        5. Competitors: only companies mentioned as competitors or in a competitive context.

        Return ONLY valid JSON:
        {{
          "competitors": ["CompanyA", "CompanyB"] or null,
          "market_position": "brief description of market position" or null,
          "key_products": ["Product1", "Product2"] or null,
          "target_market": "who the company sells to" or null,
          "strategic_focus": ["focus area 1", "focus area 2"] or null,
          "recent_developments": [{{"date": "YYYY-MM-DD", "summary": "brief summary"}}] or null,
          "competitive_insights": {{
            "CompetitorA": {{"strength": "brief strength", "weakness": "brief weakness"}}
          }} or null
        }}
        """
    ).strip()


def parse_knowledge_update(response: str) -> KnowledgeUpdate:
    """Lenient: anything unreadable becomes an all-null update."""
    try:
        parsed = extract_json_object(response)
    except JSONExtractionError as e:
        logger.warning("No JSON in knowledge extraction response: %s", e)
        return KnowledgeUpdate()

    # camelCase keys are accepted too; models drift between styles.
    aliases = {
        "marketPosition": "market_position",
        "keyProducts": "key_products",
        "targetMarket": "target_market",
        "strategicFocus": "strategic_focus",
        "recentDevelopments": "recent_developments",
        "competitiveInsights": "competitive_insights",
    }
    normalised = {aliases.get(k, k): v for k, v in parsed.items()}
    try:
        return KnowledgeUpdate.model_validate(normalised)
    except ValueError as e:
        logger.warning("Knowledge extraction failed validation: %s", e)
        return KnowledgeUpdate()


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


class KnowledgeStore(ABC):
    @abstractmethod
    async def get(self, owner_id: str) -> CompanyKnowledge | None:
        raise NotImplementedError

    @abstractmethod
    async def put(self, owner_id: str, knowledge: CompanyKnowledge) -> None:
        raise NotImplementedError


class InMemoryKnowledgeStore(KnowledgeStore):
    def __init__(self):
        self._items: Dict[str, str] = {}

    async def get(self, owner_id: str) -> CompanyKnowledge | None:
        raw = self._items.get(owner_id)
        return CompanyKnowledge.model_validate_json(raw) if raw else None

    async def put(self, owner_id: str, knowledge: CompanyKnowledge) -> None:
        self._items[owner_id] = knowledge.model_dump_json()


class RedisKnowledgeStore(KnowledgeStore):
    """One JSON document per owner under ``clippingai:knowledge:<owner_id>``. No TTL."""

    def __init__(self, client: redis.Redis):
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RedisKnowledgeStore":
        settings = settings or get_settings()
        if not settings.REDIS_URL:
            raise RuntimeError("REDIS_URL is required for the Redis knowledge store")
        return cls(
            redis.from_url(
                str(settings.REDIS_URL),
                decode_responses=True,
                socket_timeout=5,
                socket_connect_timeout=5,
            )
        )

    @staticmethod
    def _key(owner_id: str) -> str:
        return f"{REDIS_KEY_PREFIX}{owner_id}"

    async def get(self, owner_id: str) -> CompanyKnowledge | None:
        raw = await asyncio.to_thread(self.client.get, self._key(owner_id))
        if raw is None:
            return None
        return CompanyKnowledge.model_validate_json(raw)

    async def put(self, owner_id: str, knowledge: CompanyKnowledge) -> None:
        await asyncio.to_thread(self.client.set, self._key(owner_id), knowledge.model_dump_json())


_memory_store: InMemoryKnowledgeStore | None = None


def get_knowledge_store(settings: Settings | None = None) -> KnowledgeStore:
    """
    Redis when REDIS_URL is set. Otherwise one in-memory store shared by the
    whole process, so knowledge survives from one pipeline build to the next.
    """
    global _memory_store
    settings = settings or get_settings()
    if settings.REDIS_URL:
        return RedisKnowledgeStore.from_settings(settings)
    if _memory_store is None:
        logger.info("REDIS_URL not set; company knowledge is kept in memory only")
        _memory_store = InMemoryKnowledgeStore()
    return _memory_store


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class KnowledgeBaseManager:
    def __init__(self, llm, store: KnowledgeStore):
        self.llm = llm
        self.store = store
        # Serialises load-merge-write per owner within this process only.
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _owner_lock(self, owner_id: str):
        lock = self._locks.get(owner_id)
        if lock is None:
            lock = self._locks[owner_id] = asyncio.Lock()
        self._lock_users[owner_id] = self._lock_users.get(owner_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Forget the lock once nobody holds or awaits it.
            self._lock_users[owner_id] -= 1
            if not self._lock_users[owner_id]:
                del self._lock_users[owner_id]
                del self._locks[owner_id]

    async def load(self, owner_id: str) -> CompanyKnowledge | None:
        return await self.store.get(owner_id)

    async def initialize(self, owner_id: str, report_input: ReportInput) -> CompanyKnowledge:
        async with self._owner_lock(owner_id):
            existing = await self.store.get(owner_id)
            if existing is not None:
                return existing
            knowledge = CompanyKnowledge(
                company_name=report_input.company_name,
                company_domain=report_input.company_domain,
                industry=report_input.industry,
                competitors=list(report_input.competitors),
            )
            await self.store.put(owner_id, knowledge)
            logger.info(
                "Initialised knowledge base for %s",
                report_input.company_name,
                extra={"stage": "knowledge", "company": report_input.company_name},
            )
            return knowledge

    async def extract(
        self,
        report_input: ReportInput,
        report: GeneratedReport,
        existing: CompanyKnowledge | None,
        ctx: RunContext | None = None,
    ) -> KnowledgeUpdate:
        prompt = build_extraction_prompt(report_input, report, existing)
        response = await self.llm.complete(
            prompt,
            EXTRACTION_MAX_TOKENS,
            kind="knowledge_extraction",
            usage=ctx.usage if ctx else None,
        )
        update = parse_knowledge_update(response)
        if ctx:
            ctx.step(
                "knowledge_extraction",
                prompt=prompt,
                response=response,
                data=update.model_dump(mode="json", exclude_none=True),
            )
        return update

    async def merge(self, owner_id: str, update: KnowledgeUpdate) -> CompanyKnowledge | None:
        async with self._owner_lock(owner_id):
            existing = await self.store.get(owner_id)
            if existing is None:
                logger.warning(
                    "No knowledge base for owner %s; skipping update",
                    owner_id,
                    extra={"stage": "knowledge"},
                )
                return None
            merged = merge_knowledge(existing, update)
            await self.store.put(owner_id, merged)
            return merged

    async def update_from_report(
        self,
        owner_id: str,
        report_input: ReportInput,
        report: GeneratedReport,
        existing: CompanyKnowledge | None,
        ctx: RunContext | None = None,
    ) -> CompanyKnowledge | None:
        """
        Initialise (if needed), extract and merge. Never raises: a knowledge
        failure must not fail a report that has already been written.
        """
        try:
            if existing is None:
                existing = await self.initialize(owner_id, report_input)
            if not report.articles:
                return existing
            update = await self.extract(report_input, report, existing, ctx=ctx)
            merged = await self.merge(owner_id, update)
            logger.info(
                "Knowledge base updated (report #%s)",
                merged.report_count if merged else "?",
                extra=ctx.log_extra(stage="knowledge") if ctx else {"stage": "knowledge"},
            )
            return merged
        except Exception:
            logger.exception(
                "Knowledge base update failed",
                extra=ctx.log_extra(stage="knowledge") if ctx else {"stage": "knowledge"},
            )
            if ctx:
                ctx.step("knowledge_error", data={"owner_id": owner_id})
            return None
