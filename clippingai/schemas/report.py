# clippingai/schemas/report.py
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_COMPANY_NAME_LEN = 200
MAX_DOMAIN_LEN = 253
MAX_COMPETITORS = 20
MAX_DATE_RANGE_DAYS = 365


class ReportType(str, Enum):
    MEDIA_MONITORING = "media_monitoring"
    COMPETITOR_LANDSCAPE = "competitor_landscape"
    MARKET_LANDSCAPE = "market_landscape"


class ArticleCategory(str, Enum):
    COMPANY_NEWS = "company_news"
    COMPETITOR = "competitor"
    MARKET_TREND = "market_trend"
    TECHNOLOGY = "technology"
    REGULATION = "regulation"
    FUNDING = "funding"
    PRODUCT_LAUNCH = "product_launch"
    OPINION = "opinion"


class ReportInput(BaseModel):
    """Everything one pipeline run needs to know about the target company."""

    model_config = ConfigDict(frozen=True)

    company_name: str
    company_domain: str
    industry: str | None = None
    competitors: tuple[str, ...] = ()
    report_type: ReportType = ReportType.MEDIA_MONITORING
    date_range_days: int = Field(default=7, ge=1, le=MAX_DATE_RANGE_DAYS)
    last_report_at: datetime | None = None
    owner_id: str | None = None
    min_articles: int = Field(default=0, ge=0)
    use_deep_research: bool | None = None

    @field_validator("industry", "owner_id", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        if isinstance(v, str):
            stripped = v.strip()
            return stripped or None
        return v

    @field_validator("company_name")
    @classmethod
    def validate_company_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("company_name must not be empty")
        if len(v) > MAX_COMPANY_NAME_LEN:
            raise ValueError(
                f"company_name must be at most {MAX_COMPANY_NAME_LEN} characters"
            )
        return v

    @field_validator("company_domain")
    @classmethod
    def validate_company_domain(cls, v: str) -> str:
        v = v.strip().lower()
        for prefix in ("https://", "http://"):
            if v.startswith(prefix):
                v = v[len(prefix):]
        v = v.rstrip("/")
        if not v:
            raise ValueError("company_domain must not be empty")
        if len(v) > MAX_DOMAIN_LEN:
            raise ValueError("company_domain is too long")
        return v

    @field_validator("competitors", mode="before")
    @classmethod
    def validate_competitors(cls, v):
        if v is None:
            return ()
        seen: set[str] = set()
        cleaned: list[str] = []
        for name in v:
            if not isinstance(name, str):
                continue
            name = name.strip()
            if not name or name.lower() in seen:
                continue
            seen.add(name.lower())
            cleaned.append(name)
        if len(cleaned) > MAX_COMPETITORS:
            raise ValueError(f"at most {MAX_COMPETITORS} competitors are supported")
        return tuple(cleaned)

    @field_validator("last_report_at")
    @classmethod
    def validate_last_report_at(cls, v: datetime | None) -> datetime | None:
        if v is not None and v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v


class SearchQuery(BaseModel):
    query: str
    reasoning: str = ""


class SearchResult(BaseModel):
    title: str = ""
    url: str
    content: str = ""
    published_date: str | None = None
    score: float | None = None


class Candidate(SearchResult):
    category: ArticleCategory
    reason: str = ""


class ResearchDecision(BaseModel):
    action: Literal["done", "search"]
    reasoning: str = ""
    confidence: int = 0
    queries: list[str] = Field(default_factory=list)

    @field_validator("action", mode="before")
    @classmethod
    def _normalise_action(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v):
        if v is None:
            return 0
        value = int(float(v))
        return max(0, min(100, value))

    @field_validator("queries", mode="before")
    @classmethod
    def _clean_queries(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(q).strip() for q in v if str(q).strip()][:2]


class ResearchSession(BaseModel):
    candidate: Candidate
    sources: list[SearchResult] = Field(default_factory=list)
    decisions: list[ResearchDecision] = Field(default_factory=list)
    iterations: int = 0
    stop_reason: Literal[
        "done", "confident", "iteration_cap", "unparseable", "error", "no_queries", "disabled"
    ] = "disabled"


class ReportArticle(BaseModel):
    id: str
    title: str
    summary: str
    content: str
    image_url: str | None = None
    image_alt: str | None = None
    sources: list[str]
    published_at: str | None = None
    tag: ArticleCategory


class ReportMetadata(BaseModel):
    total_searches: int = 0
    articles_found: int = 0
    articles_selected: int = 0
    generation_time_ms: int = 0
    search_window_days: int | None = None
    research_rounds: int = 0
    profiling: dict[str, float] = Field(default_factory=dict)
    llm_usage: dict[str, Any] | None = None


class GeneratedReport(BaseModel):
    title: str
    summary: str
    articles: list[ReportArticle] = Field(default_factory=list)
    metadata: ReportMetadata = Field(default_factory=ReportMetadata)
