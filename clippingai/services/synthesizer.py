# clippingai/services/synthesizer.py
from __future__ import annotations

import logging
import textwrap
from dataclasses import dataclass
from typing import Sequence

from ..schemas.report import ReportArticle, ReportInput
from .jsonparse import JSONExtractionError, extract_json_object
from .tracing import RunContext

logger = logging.getLogger(__name__)

SYNTHESIS_MAX_TOKENS = 2048


@dataclass
class SynthesisResult:
    title: str
    summary: str


def fallback_title(report_input: ReportInput) -> str:
    return f"{report_input.company_name} Weekly Intelligence"


def build_synthesis_prompt(articles: Sequence[ReportArticle], report_input: ReportInput) -> str:
    articles_text = "\n\n".join(
        f"{i + 1}. {a.title} ({a.tag.value})\n{a.summary}" for i, a in enumerate(articles)
    )
    return textwrap.dedent(
        f"""
        You are writing the executive summary of a {report_input.report_type.value} digest
        for {report_input.company_name} ({report_input.industry or 'industry unknown'}).

        The digest contains these {len(articles)} articles:

        {articles_text}

        Use ONLY the articles above. Do not add facts, numbers or events they do not contain.

        Write:
        - A report title of 5-10 words capturing the main theme of the period.
        - A summary with 3-5 "Key insights" bullets (one per important development),
          followed by one or two sentences of strategic context for {report_input.company_name}.

        Return ONLY valid JSON:
        {{
          "title": "5-10 word report title",
          "summary": "Key insights:\\n- ...\\n- ...\\n\\nStrategic context..."
        }}
        """
    ).strip()


class ReportSynthesizer:
    def __init__(self, llm):
        self.llm = llm

    async def synthesize(
        self,
        articles: Sequence[ReportArticle],
        report_input: ReportInput,
        ctx: RunContext | None = None,
    ) -> SynthesisResult:
        """Title and executive summary. Never raises; degrades to a templated title."""
        prompt = build_synthesis_prompt(articles, report_input)
        try:
            response = await self.llm.complete(
                prompt,
                SYNTHESIS_MAX_TOKENS,
                kind="report_synthesis",
                usage=ctx.usage if ctx else None,
            )
        except Exception as e:
            logger.warning(
                "Synthesis call failed: %s",
                e,
                extra={"stage": "report_synthesis"},
            )
            result = SynthesisResult(
                title=fallback_title(report_input),
                summary=(
                    f"This report covers {len(articles)} development"
                    f"{'s' if len(articles) != 1 else ''} relevant to "
                    f"{report_input.company_name}."
                ),
            )
            if ctx:
                ctx.step("report_synthesis_error", prompt=prompt, data={"error": str(e)})
            return result

        try:
            parsed = extract_json_object(response)
            title = str(parsed.get("title") or "").strip() or fallback_title(report_input)
            summary = str(parsed.get("summary") or "").strip() or response.strip()
            result = SynthesisResult(title=title, summary=summary)
        except JSONExtractionError as e:
            logger.warning("Error parsing synthesis response: %s", e)
            result = SynthesisResult(title=fallback_title(report_input), summary=response.strip())

        if ctx:
            ctx.step(
                "report_synthesis",
                prompt=prompt,
                response=response,
                data={"title": result.title},
            )
        return result
