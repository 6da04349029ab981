"""
Tests for images.py

Covers local image storage and the illustrator's fail-soft behaviour.
"""
import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from clippingai.schemas.report import ArticleCategory, ReportArticle
from clippingai.services.images import (
    ImageClient,
    Illustrator,
    LocalImageStorage,
    build_image_prompt,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def _article() -> ReportArticle:
    return ReportArticle(
        id="a1",
        title="Globex raises Series C",
        summary="Globex raised $50M to expand.",
        content="...",
        sources=["https://x.example.com"],
        tag=ArticleCategory.FUNDING,
    )


class TestLocalImageStorage:
    """Tests for LocalImageStorage.store."""

    def test_base64_is_written_to_upload_dir(self, tmp_path):
        storage = LocalImageStorage(tmp_path, "/uploads")
        url = asyncio.run(storage.store(base64.b64encode(PNG_BYTES).decode()))
        assert url.startswith("/uploads/article-") and url.endswith(".png")
        files = list(tmp_path.iterdir())
        assert len(files) == 1
        assert files[0].read_bytes() == PNG_BYTES

    def test_url_is_downloaded(self, tmp_path):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=PNG_BYTES))
        storage = LocalImageStorage(tmp_path, "/img/", transport=transport)
        url = asyncio.run(storage.store("https://images.example.com/tmp.png"))
        assert url.startswith("/img/article-")
        assert next(tmp_path.iterdir()).read_bytes() == PNG_BYTES

    def test_failed_download_keeps_original_url(self, tmp_path):
        transport = httpx.MockTransport(lambda request: httpx.Response(403))
        storage = LocalImageStorage(tmp_path, transport=transport)
        original = "https://images.example.com/expired.png"
        assert asyncio.run(storage.store(original)) == original
        assert list(tmp_path.iterdir()) == []

    def test_invalid_base64_raises(self, tmp_path):
        with pytest.raises(ValueError):
            asyncio.run(LocalImageStorage(tmp_path).store("not base64 at all!"))


class TestImageClient:
    """Tests for ImageClient.generate."""

    def test_returns_b64_payload(self):
        sdk = MagicMock()
        sdk.images.generate.return_value = MagicMock(data=[MagicMock(b64_json="QUJD", url=None)])
        data = asyncio.run(ImageClient(sdk, "gpt-image-1").generate("p", "1536x1024", "medium"))
        assert data == "QUJD"
        kwargs = sdk.images.generate.call_args.kwargs
        assert kwargs["model"] == "gpt-image-1"
        assert kwargs["size"] == "1536x1024"

    def test_empty_response_raises(self):
        sdk = MagicMock()
        sdk.images.generate.return_value = MagicMock(data=[])
        with pytest.raises(RuntimeError):
            asyncio.run(ImageClient(sdk, "gpt-image-1").generate("p", "1024x1024", "low"))


class TestIllustrator:
    """Tests for Illustrator.illustrate."""

    def test_sets_image_url(self):
        client = MagicMock()
        client.generate = AsyncMock(return_value="QUJD")
        storage = MagicMock()
        storage.store = AsyncMock(return_value="/uploads/article-1.png")
        article = _article()

        asyncio.run(Illustrator(client, storage).illustrate(article))

        assert article.image_url == "/uploads/article-1.png"
        assert article.image_alt == article.title
        storage.store.assert_awaited_once_with("QUJD")

    def test_failure_leaves_article_without_image(self):
        client = MagicMock()
        client.generate = AsyncMock(side_effect=RuntimeError("content policy"))
        article = _article()
        asyncio.run(Illustrator(client, MagicMock()).illustrate(article))
        assert article.image_url is None

    def test_prompt_is_abstract(self):
        prompt = build_image_prompt(_article())
        assert "Globex raises Series C" in prompt
        assert "no logos" in prompt
        assert "faces" in prompt

    def test_prompt_uses_visual_concept(self):
        article = _article()
        article.image_alt = "Rising bar chart made of glowing glass panes"
        prompt = build_image_prompt(article)
        assert "Visual concept: Rising bar chart made of glowing glass panes" in prompt

    def test_title_fallback_alt_is_not_repeated(self):
        article = _article()
        article.image_alt = article.title
        assert "Visual concept" not in build_image_prompt(article)


class TestImageClientSettings:
    """Tests for ImageClient settings wiring."""

    def test_from_settings_carries_concurrency_limit(self):
        from clippingai.core.config import Settings

        settings = Settings(OPENAI_API_KEY="sk-test", LLM_MAX_CONCURRENCY=2)
        client = ImageClient.from_settings(settings)
        assert client.max_concurrency == 2
        assert client.model == settings.IMAGE_MODEL
