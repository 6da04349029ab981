"""
Token and search-call accounting for a single report run.

Prices are USD per million tokens, keyed by the bare model name so that
``anthropic/claude-sonnet-4.5`` and ``claude-sonnet-4.5:beta`` share a rate.
LLM_PRICEBOOK_JSON can add or replace entries.
"""
from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..core.config import get_settings

_MTOK = 1_000_000


@dataclass(frozen=True)
class ModelRate:
    input_per_mtok: float
    output_per_mtok: float
    cached_input_per_mtok: Optional[float] = None

    def cost(self, input_tokens: int, output_tokens: int, cached_input_tokens: int = 0) -> float:
        cached = max(0, int(cached_input_tokens))
        paid = max(0, int(input_tokens) - cached)
        cached_rate = self.cached_input_per_mtok or self.input_per_mtok
        return (
            paid * self.input_per_mtok
            + max(0, int(output_tokens)) * self.output_per_mtok
            + cached * cached_rate
        ) / _MTOK


DEFAULT_PRICEBOOK: Dict[str, ModelRate] = {
    "claude-sonnet-4.5": ModelRate(3.00, 15.00, 0.30),
    "claude-haiku-4.5": ModelRate(1.00, 5.00, 0.10),
    "gpt-5.1": ModelRate(1.25, 10.00, 0.125),
    "gpt-4o-mini": ModelRate(0.15, 0.60, 0.075),
}


def _rate_from_json(value: Any) -> ModelRate | None:
    if not isinstance(value, dict):
        return None
    try:
        cached = value.get("cached_input_per_mtok")
        return ModelRate(
            input_per_mtok=float(value["input_per_mtok"]),
            output_per_mtok=float(value["output_per_mtok"]),
            cached_input_per_mtok=float(cached) if cached is not None else None,
        )
    except (KeyError, ValueError, TypeError):
        return None


def load_pricebook(override_raw: str | None = None) -> Dict[str, ModelRate]:
    """Default rates merged with the JSON override; malformed entries are skipped."""
    pricebook = dict(DEFAULT_PRICEBOOK)
    if override_raw is None:
        override_raw = get_settings().LLM_PRICEBOOK_JSON
    if not override_raw:
        return pricebook

    try:
        override = json.loads(override_raw)
    except json.JSONDecodeError:
        return pricebook
    if not isinstance(override, dict):
        return pricebook

    for name, value in override.items():
        rate = _rate_from_json(value)
        if rate is not None:
            pricebook[normalize_model_name(name)] = rate
    return pricebook


def normalize_model_name(model: str | None) -> str:
    name = (model or "").strip().lower()
    name = name.rsplit("/", 1)[-1]
    return name.split(":", 1)[0]


def cost_for_tokens(
    model: str | None,
    input_tokens: int,
    output_tokens: int,
    cached_input_tokens: int = 0,
    pricebook: Dict[str, ModelRate] | None = None,
) -> float:
    rates = pricebook if pricebook is not None else load_pricebook()
    rate = rates.get(normalize_model_name(model))
    if rate is None:
        return 0.0
    return rate.cost(input_tokens, output_tokens, cached_input_tokens)


def cost_for_web_search_calls(call_count: int, per_call_usd: float | None = None) -> float:
    if per_call_usd is None:
        per_call_usd = get_settings().WEB_SEARCH_PER_CALL_USD
    return max(0, int(call_count)) * per_call_usd


@dataclass(frozen=True)
class UsageRecord:
    provider: str
    model: str
    kind: str
    input_tokens: int = 0
    output_tokens: int = 0
    cached_input_tokens: int = 0
    web_search_calls: int = 0
    cost_usd: float = 0.0


def _empty_provider_entry(model: str) -> Dict[str, Any]:
    return {
        "model": model,
        "cost_usd": 0.0,
        "totals": {
            "calls": 0,
            "input": 0,
            "output": 0,
            "cached_input": 0,
            "web_search_calls": 0,
        },
        "by_kind": {},
    }


class LLMCostTracker:
    """
    Per-run ledger of completion and search usage.

    Completion calls execute in worker threads, so appends take a lock.
    """

    def __init__(
        self,
        run_id: str,
        pricebook: Dict[str, ModelRate] | None = None,
        web_search_cost_usd: float | None = None,
    ):
        self.run_id = run_id
        self._pricebook = pricebook if pricebook is not None else load_pricebook()
        self._web_search_cost_usd = web_search_cost_usd
        self._lock = threading.Lock()
        self._records: List[UsageRecord] = []

    @property
    def records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [asdict(r) for r in self._records]

    def add_record(
        self,
        provider: str,
        model: str | None,
        kind: str,
        *,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cached_input_tokens: int = 0,
        web_search_calls: int = 0,
        cost_usd: float | None = None,
    ) -> None:
        if cost_usd is None:
            cost_usd = cost_for_tokens(
                model,
                input_tokens,
                output_tokens,
                cached_input_tokens,
                pricebook=self._pricebook,
            )
        record = UsageRecord(
            provider=provider or "unknown",
            model=model or "",
            kind=kind,
            input_tokens=int(input_tokens or 0),
            output_tokens=int(output_tokens or 0),
            cached_input_tokens=int(cached_input_tokens or 0),
            web_search_calls=int(web_search_calls or 0),
            cost_usd=float(cost_usd or 0.0),
        )
        with self._lock:
            self._records.append(record)

    def add_search(self, provider: str, calls: int = 1) -> None:
        self.add_record(
            provider,
            None,
            "search",
            web_search_calls=calls,
            cost_usd=cost_for_web_search_calls(calls, self._web_search_cost_usd),
        )

    def summarize(self) -> dict:
        """Totals per provider, broken down by call kind."""
        with self._lock:
            snapshot = list(self._records)

        providers: Dict[str, Dict[str, Any]] = {}
        for rec in snapshot:
            entry = providers.setdefault(rec.provider, _empty_provider_entry(rec.model))
            entry["model"] = entry["model"] or rec.model
            entry["cost_usd"] += rec.cost_usd

            totals = entry["totals"]
            totals["calls"] += 1
            totals["input"] += rec.input_tokens
            totals["output"] += rec.output_tokens
            totals["cached_input"] += rec.cached_input_tokens
            totals["web_search_calls"] += rec.web_search_calls

            by_kind = entry["by_kind"].setdefault(rec.kind, {"calls": 0, "cost_usd": 0.0})
            by_kind["calls"] += 1
            by_kind["cost_usd"] += rec.cost_usd

        total_cost = sum(rec.cost_usd for rec in snapshot)
        return {"providers": providers, "total_cost_usd": round(total_cost, 6)}
