# clippingai/schemas/knowledge.py
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

MAX_RECENT_DEVELOPMENTS = 10


class Development(BaseModel):
    date: str = ""
    summary: str


class CompetitiveInsight(BaseModel):
    strength: str | None = None
    weakness: str | None = None


class CompanyKnowledge(BaseModel):
    company_name: str
    company_domain: str
    industry: str | None = None
    competitors: list[str] = Field(default_factory=list)
    market_position: str | None = None
    key_products: list[str] = Field(default_factory=list)
    target_market: str | None = None
    strategic_focus: list[str] = Field(default_factory=list)
    recent_developments: list[Development] = Field(default_factory=list)
    competitive_insights: dict[str, CompetitiveInsight] = Field(default_factory=dict)
    report_count: int = 0
    last_updated: datetime | None = None


def _string_list(v):
    if v is None:
        return None
    if isinstance(v, str):
        v = [v]
    if not isinstance(v, list):
        return None
    return [str(item).strip() for item in v if item is not None and str(item).strip()]


class KnowledgeUpdate(BaseModel):
    """
    Output of the extraction call. ``None`` on any field means the report
    carried no new information for it.
    """

    competitors: list[str] | None = None
    market_position: str | None = None
    key_products: list[str] | None = None
    target_market: str | None = None
    strategic_focus: list[str] | None = None
    recent_developments: list[Development] | None = None
    competitive_insights: dict[str, CompetitiveInsight] | None = None

    @field_validator("competitors", "key_products", "strategic_focus", mode="before")
    @classmethod
    def _coerce_lists(cls, v):
        return _string_list(v)

    @field_validator("market_position", "target_market", mode="before")
    @classmethod
    def _blank_to_none(cls, v):
        if isinstance(v, str):
            return v.strip() or None
        return v

    @field_validator("recent_developments", mode="before")
    @classmethod
    def _coerce_developments(cls, v):
        if v is None:
            return None
        if not isinstance(v, list):
            return None
        items = []
        for item in v:
            if isinstance(item, str) and item.strip():
                items.append({"date": "", "summary": item.strip()})
            elif isinstance(item, dict) and str(item.get("summary") or "").strip():
                items.append(
                    {
                        "date": str(item.get("date") or ""),
                        "summary": str(item["summary"]).strip(),
                    }
                )
        return items

    @field_validator("competitive_insights", mode="before")
    @classmethod
    def _coerce_insights(cls, v):
        if not isinstance(v, dict):
            return None
        return {
            str(name).strip(): payload
            for name, payload in v.items()
            if str(name).strip() and isinstance(payload, dict)
        }
