from __future__ import annotations

import asyncio
import logging
import threading
from functools import lru_cache
from contextlib import contextmanager
from threading import BoundedSemaphore
from typing import Dict

from openai import OpenAI

from ..core.config import Settings, get_settings
from .llm_costs import LLMCostTracker

logger = logging.getLogger(__name__)

# One semaphore per configured limit, shared by every client in the process.
_semaphores: Dict[int, BoundedSemaphore] = {}
_semaphores_lock = threading.Lock()


def _get_semaphore(limit: int) -> BoundedSemaphore:
    with _semaphores_lock:
        sem = _semaphores.get(limit)
        if sem is None:
            sem = _semaphores[limit] = BoundedSemaphore(limit)
        return sem


@contextmanager
def limit_llm_concurrency(limit: int | None = None):
    """
    Bound concurrent calls to the LLM provider.

    ``limit`` defaults to LLM_MAX_CONCURRENCY. Enter it inside the worker
    thread that performs the HTTP request, so a blocked acquire never stalls
    the event loop.
    """
    if limit is None:
        limit = get_settings().LLM_MAX_CONCURRENCY
    sem = _get_semaphore(max(1, int(limit)))
    sem.acquire()
    try:
        yield
    finally:
        sem.release()


def build_llm_client(settings: Settings) -> OpenAI:
    """
    OpenAI-compatible client for the given settings.

    - If OPENROUTER_API_KEY is set, route requests via OpenRouter (this is how
      non-OpenAI models such as Claude are reached).
    - Otherwise, fall back to the standard OpenAI API using OPENAI_API_KEY.
    """
    if settings.OPENROUTER_API_KEY:
        return OpenAI(
            base_url="https://openrouter.ai/api/v1",
            api_key=settings.OPENROUTER_API_KEY.strip(),
            timeout=settings.LLM_TIMEOUT_SECONDS,
            default_headers={
                "HTTP-Referer": settings.FRONTEND_ORIGIN or "http://localhost:3000",
                "X-Title": "ClippingAI Intelligence Digest",
            },
        )

    if settings.OPENAI_API_KEY:
        return OpenAI(
            api_key=settings.OPENAI_API_KEY.strip(),
            timeout=settings.LLM_TIMEOUT_SECONDS,
        )

    raise RuntimeError(
        "No LLM API key configured. Set either OPENAI_API_KEY or OPENROUTER_API_KEY."
    )


@lru_cache(maxsize=1)
def get_llm_client() -> OpenAI:
    """Process-wide client built from the environment settings."""
    return build_llm_client(get_settings())


class CompletionClient:
    """
    Single-turn, non-streaming text completion.

    Every pipeline stage talks to the model through ``complete``; it returns
    the raw response text and leaves parsing to the caller.
    """

    provider = "openrouter"

    def __init__(
        self,
        client: OpenAI,
        model: str,
        temperature: float = 0.3,
        max_concurrency: int | None = None,
    ):
        self.client = client
        self.model = model
        self.temperature = temperature
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CompletionClient":
        if settings is None:
            settings, client = get_settings(), get_llm_client()
        else:
            client = build_llm_client(settings)
        instance = cls(
            client, settings.LLM_MODEL, max_concurrency=settings.LLM_MAX_CONCURRENCY
        )
        instance.provider = "openrouter" if settings.OPENROUTER_API_KEY else "openai"
        return instance

    async def complete(
        self,
        prompt: str,
        max_tokens: int = 2048,
        *,
        kind: str = "completion",
        usage: LLMCostTracker | None = None,
    ) -> str:
        def _call_sync():
            with limit_llm_concurrency(self.max_concurrency):
                return self.client.chat.completions.create(
                    model=self.model,
                    messages=[{"role": "user", "content": prompt}],
                    temperature=self.temperature,
                    max_tokens=max_tokens,
                )

        resp = await asyncio.to_thread(_call_sync)
        text = (resp.choices[0].message.content or "") if resp.choices else ""

        if usage is not None:
            tokens = getattr(resp, "usage", None)
            details = getattr(tokens, "prompt_tokens_details", None)
            usage.add_record(
                self.provider,
                self.model,
                kind,
                input_tokens=getattr(tokens, "prompt_tokens", 0) or 0,
                output_tokens=getattr(tokens, "completion_tokens", 0) or 0,
                cached_input_tokens=getattr(details, "cached_tokens", 0) or 0,
            )

        logger.debug(
            "Completion finished",
            extra={"stage": kind},
        )
        return text
