# clippingai/services/images.py
from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import textwrap
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import httpx
from openai import OpenAI

from ..core.config import Settings, get_settings
from ..schemas.report import ReportArticle
from .llm import limit_llm_concurrency
from .tracing import RunContext

logger = logging.getLogger(__name__)


def build_image_prompt(article: ReportArticle) -> str:
    # image_alt falls back to the title when the writer gave no visual concept
    concept = article.image_alt if article.image_alt and article.image_alt != article.title else ""
    concept_line = f"Visual concept: {concept[:400]}" if concept else ""
    return textwrap.dedent(
        f"""
        Abstract editorial illustration for a business news article.
        Headline: {article.title}
        Gist: {article.summary[:400]}
        {concept_line}

        Style: modern, minimal, conceptual. Convey the theme through shapes, light and
        colour rather than a literal scene. No text, no letters, no logos, no brand marks,
        no recognisable people or faces.
        """
    ).strip()


def _is_url(data: str) -> bool:
    return data.startswith("http://") or data.startswith("https://")


class ImageClient:
    """OpenAI Images API. Returns base64 PNG data, or a URL for models that only give URLs."""

    def __init__(self, client: OpenAI, model: str, max_concurrency: int | None = None):
        self.client = client
        self.model = model
        self.max_concurrency = max_concurrency

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ImageClient":
        settings = settings or get_settings()
        if not settings.OPENAI_API_KEY:
            raise RuntimeError("OPENAI_API_KEY is required for image generation")
        client = OpenAI(
            api_key=settings.OPENAI_API_KEY.strip(),
            timeout=settings.IMAGE_TIMEOUT_SECONDS,
        )
        return cls(client, settings.IMAGE_MODEL, max_concurrency=settings.LLM_MAX_CONCURRENCY)

    async def generate(self, prompt: str, size: str, quality: str) -> str:
        def _call_sync():
            with limit_llm_concurrency(self.max_concurrency):
                return self.client.images.generate(
                    model=self.model,
                    prompt=prompt,
                    size=size,
                    quality=quality,
                    n=1,
                )

        resp = await asyncio.to_thread(_call_sync)
        if not resp.data:
            raise RuntimeError("Image API returned no data")
        image = resp.data[0]
        data = getattr(image, "b64_json", None) or getattr(image, "url", None)
        if not data:
            raise RuntimeError("Image API returned neither b64_json nor url")
        return data


class ImageStorage(ABC):
    @abstractmethod
    async def store(self, data: str) -> str:
        """Persist base64 image data (or a temporary URL) and return its public URL."""
        raise NotImplementedError


class LocalImageStorage(ImageStorage):
    """
    Writes PNGs into ``upload_dir`` and serves them as ``<public_prefix>/<name>.png``.

    Provider URLs expire, so URL inputs are downloaded too; if the download
    fails the original URL is returned as-is.
    """

    def __init__(
        self,
        upload_dir: str | Path,
        public_prefix: str = "/uploads",
        prefix: str = "article",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.upload_dir = Path(upload_dir)
        self.public_prefix = public_prefix.rstrip("/")
        self.prefix = prefix
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "LocalImageStorage":
        settings = settings or get_settings()
        return cls(settings.IMAGE_UPLOAD_DIR, settings.IMAGE_PUBLIC_PREFIX)

    def _write(self, payload: bytes) -> str:
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        filename = f"{self.prefix}-{uuid.uuid4()}.png"
        (self.upload_dir / filename).write_bytes(payload)
        return f"{self.public_prefix}/{filename}"

    async def _download(self, url: str) -> bytes:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            resp = await client.get(url)
            resp.raise_for_status()
            return resp.content

    async def store(self, data: str) -> str:
        if _is_url(data):
            try:
                payload = await self._download(data)
            except httpx.HTTPError as e:
                logger.warning("Image download failed, keeping provider URL: %s", e)
                return data
            return await asyncio.to_thread(self._write, payload)

        try:
            payload = base64.b64decode(data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("Image data is neither a URL nor valid base64") from e
        return await asyncio.to_thread(self._write, payload)


class Illustrator:
    def __init__(
        self,
        client: ImageClient,
        storage: ImageStorage,
        size: str = "1536x1024",
        quality: str = "medium",
    ):
        self.client = client
        self.storage = storage
        self.size = size
        self.quality = quality

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "Illustrator":
        settings = settings or get_settings()
        return cls(
            ImageClient.from_settings(settings),
            LocalImageStorage.from_settings(settings),
            size=settings.IMAGE_SIZE,
            quality=settings.IMAGE_QUALITY,
        )

    async def illustrate(self, article: ReportArticle, ctx: RunContext | None = None) -> None:
        """Attach an image to ``article`` in place. Failures leave it without one."""
        prompt = build_image_prompt(article)
        try:
            data = await self.client.generate(prompt, self.size, self.quality)
            public_url = await self.storage.store(data)
        except Exception as e:
            logger.warning(
                "Illustration failed for '%s': %s",
                article.title,
                e,
                extra={"stage": "illustration"},
            )
            if ctx:
                ctx.step(
                    "illustration_error",
                    prompt=prompt,
                    data={"article": article.id, "error": str(e)},
                )
            return

        article.image_url = public_url
        if not article.image_alt:
            article.image_alt = article.title
        if ctx:
            ctx.step(
                "illustration",
                prompt=prompt,
                data={"article": article.id, "image_url": public_url},
            )
