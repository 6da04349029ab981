# clippingai/services/tracing.py
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List

from ..schemas.report import ReportInput
from .llm_costs import LLMCostTracker, ModelRate

logger = logging.getLogger(__name__)


@dataclass
class AgentTraceStep:
    stage: str
    timestamp: datetime
    prompt: str | None = None
    response: str | None = None
    data: Dict[str, Any] | None = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "timestamp": self.timestamp.isoformat(),
            "prompt": self.prompt,
            "response": self.response,
            "data": self.data,
        }


@dataclass
class AgentTrace:
    run_id: str
    input: ReportInput
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    end_time: datetime | None = None
    error: str | None = None
    steps: List[AgentTraceStep] = field(default_factory=list)

    def ordered_steps(self) -> List[AgentTraceStep]:
        # Concurrent branches append out of order; timestamps are the truth.
        return sorted(self.steps, key=lambda s: s.timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "error": self.error,
            "input": self.input.model_dump(mode="json"),
            "steps": [s.to_dict() for s in self.ordered_steps()],
        }


class RunContext:
    """
    State owned by one pipeline run and passed explicitly to every stage:
    the trace, the usage ledger and the stage timings.
    """

    def __init__(
        self,
        report_input: ReportInput,
        run_id: str | None = None,
        *,
        pricebook: Dict[str, ModelRate] | None = None,
        web_search_cost_usd: float | None = None,
    ):
        self.run_id = run_id or uuid.uuid4().hex
        self.input = report_input
        self.trace = AgentTrace(run_id=self.run_id, input=report_input)
        self.usage = LLMCostTracker(
            run_id=self.run_id,
            pricebook=pricebook,
            web_search_cost_usd=web_search_cost_usd,
        )
        self.timings: Dict[str, float] = {}
        publish_trace(self.trace)

    def step(
        self,
        stage: str,
        *,
        prompt: str | None = None,
        response: str | None = None,
        data: Dict[str, Any] | None = None,
    ) -> None:
        """
        Best-effort trace writer.
        Failure must NEVER break the report run.
        """
        try:
            self.trace.steps.append(
                AgentTraceStep(
                    stage=stage,
                    timestamp=datetime.now(timezone.utc),
                    prompt=prompt,
                    response=response,
                    data=data,
                )
            )
        except Exception:
            logger.exception(
                "Failed to record trace step",
                extra={"run_id": self.run_id, "stage": stage},
            )

    @contextmanager
    def timed(self, stage: str) -> Iterator[None]:
        started = time.perf_counter()
        try:
            yield
        finally:
            elapsed_ms = (time.perf_counter() - started) * 1000
            self.timings[stage] = round(self.timings.get(stage, 0.0) + elapsed_ms, 1)

    def log_extra(self, **fields: Any) -> Dict[str, Any]:
        return {"run_id": self.run_id, "company": self.input.company_name, **fields}

    def finish(self, error: str | None = None) -> AgentTrace:
        self.trace.end_time = datetime.now(timezone.utc)
        self.trace.error = error
        publish_trace(self.trace)
        return self.trace


# Single-slot, process-wide view of the most recent run, for debugging only.
# Concurrent runs overwrite each other here; use the trace returned by the
# pipeline when the exact run matters.
_latest_trace: AgentTrace | None = None


def publish_trace(trace: AgentTrace) -> None:
    global _latest_trace
    _latest_trace = trace


def get_trace() -> AgentTrace | None:
    return _latest_trace


def clear_trace() -> None:
    global _latest_trace
    _latest_trace = None
