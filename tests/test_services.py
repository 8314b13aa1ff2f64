# =============================================================================
# Unit Tests — Supporting Services
# =============================================================================
#
# Image compression, LLM providers and message shaping, embedding services,
# the web search feature flag and the project data repository. No API keys
# or network access required.
# =============================================================================

from __future__ import annotations

import asyncio
import base64
import io
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from PIL import Image

from research_agents.config import settings
from research_agents.errors import WebSearchDisabledError
from research_agents.services.embedder import OpenAIEmbeddingService, VoyageEmbeddingService
from research_agents.services.image_utils import compress_image, estimate_image_tokens
from research_agents.services.llm import (
    AnthropicProvider,
    ImageInput,
    LLMResponse,
    OpenAICompatibleProvider,
    _anthropic_image_block,
    _attach_images,
    _openai_image_part,
    generate,
)
from research_agents.services.web_search import get_web_search_service, is_web_search_enabled


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _image_base64(width: int, height: int, mode: str = "RGB", fmt: str = "PNG") -> str:
    buffer = io.BytesIO()
    Image.new(mode, (width, height)).save(buffer, format=fmt)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _decode(image_base64: str) -> Image.Image:
    return Image.open(io.BytesIO(base64.b64decode(image_base64)))


# ---------------------------------------------------------------------------
# Test: Image Compression
# ---------------------------------------------------------------------------


class TestCompressImage:

    def test_wide_image_is_resized(self):
        result = compress_image(_image_base64(400, 200), "image/png", max_width=100)

        img = _decode(result.base64)
        assert img.size == (100, 50)
        assert img.format == "JPEG"
        assert result.media_type == "image/jpeg"

    def test_narrow_image_keeps_size(self):
        result = compress_image(_image_base64(80, 40), "image/png", max_width=100)
        assert _decode(result.base64).size == (80, 40)

    def test_alpha_is_flattened_for_jpeg(self):
        result = compress_image(_image_base64(50, 50, mode="RGBA"), "image/png")
        assert _decode(result.base64).mode == "RGB"

    def test_webp_stays_webp(self):
        result = compress_image(_image_base64(50, 50, fmt="WEBP"), "image/webp")

        assert result.media_type == "image/webp"
        assert _decode(result.base64).format == "WEBP"

    def test_invalid_image_returned_unchanged(self):
        garbage = base64.b64encode(b"not an image").decode("ascii")

        result = compress_image(garbage, "image/png")

        assert result.base64 == garbage
        assert result.media_type == "image/png"

    def test_token_estimate(self):
        assert estimate_image_tokens("a" * 400) == 100
        assert estimate_image_tokens("") == 0


# ---------------------------------------------------------------------------
# Test: LLM Message Shaping
# ---------------------------------------------------------------------------


class TestAttachImages:

    def test_without_images_messages_are_unchanged(self):
        messages = [{"role": "user", "content": "hi"}]
        assert _attach_images(messages, None, _anthropic_image_block) == messages

    def test_anthropic_blocks_precede_text(self):
        messages = [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "ok"},
            {"role": "user", "content": "describe"},
        ]

        result = _attach_images(messages, [ImageInput(data="QUJD", media_type="image/png")], _anthropic_image_block)

        assert result[0] == {"role": "user", "content": "first"}
        assert result[2]["content"] == [
            {"type": "image", "source": {"type": "base64", "media_type": "image/png", "data": "QUJD"}},
            {"type": "text", "text": "describe"},
        ]
        # Input is not mutated
        assert messages[2]["content"] == "describe"

    def test_openai_data_url(self):
        part = _openai_image_part(ImageInput(data="QUJD"))
        assert part == {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,QUJD"}}

    def test_total_tokens(self):
        response = LLMResponse(content="x", model="m", input_tokens=10, output_tokens=5)
        assert response.total_tokens == 15


# ---------------------------------------------------------------------------
# Test: LLM Providers
# ---------------------------------------------------------------------------


class TestProviders:

    def test_missing_key_raises(self):
        with patch.object(settings, "llm_api_key", None), \
                patch.object(settings, "anthropic_api_key", ""):
            with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
                AnthropicProvider()

    def test_anthropic_request_and_response(self):
        provider = AnthropicProvider(api_key="test-key", model="claude-test")
        provider._client = MagicMock()
        provider._client.messages.create = AsyncMock(return_value=SimpleNamespace(
            content=[SimpleNamespace(type="text", text="Hello"), SimpleNamespace(type="tool_use")],
            model="claude-test",
            usage=SimpleNamespace(input_tokens=12, output_tokens=3),
        ))

        response = _run(generate("Hi", llm=provider, system="Be brief", max_tokens=50))

        assert response.content == "Hello"
        assert response.total_tokens == 15
        kwargs = provider._client.messages.create.call_args.kwargs
        assert kwargs["system"] == "Be brief"
        assert kwargs["max_tokens"] == 50
        assert kwargs["temperature"] == settings.llm_temperature
        assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]

    def test_openai_puts_system_first(self):
        provider = OpenAICompatibleProvider(api_key="test-key", model="gpt-test")
        provider._client = MagicMock()
        provider._client.chat.completions.create = AsyncMock(return_value=SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=None))],
            model=None,
            usage=None,
        ))

        response = _run(generate("Hi", llm=provider, system="Be brief"))

        assert response.content == ""
        assert response.model == "gpt-test"
        assert response.total_tokens == 0
        messages = provider._client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "Be brief"}
        assert messages[1] == {"role": "user", "content": "Hi"}


# ---------------------------------------------------------------------------
# Test: Embedding Services
# ---------------------------------------------------------------------------


class TestEmbeddingServices:

    def test_openai_embeds_text(self):
        service = OpenAIEmbeddingService(api_key="test-key", model="embed-test")
        service._client = MagicMock()
        service._client.embeddings.create.return_value = SimpleNamespace(
            data=[SimpleNamespace(embedding=[0.1, 0.2])],
        )

        assert _run(service.embed(text="hello")) == [0.1, 0.2]
        kwargs = service._client.embeddings.create.call_args.kwargs
        assert kwargs["input"] == ["hello"]
        assert kwargs["model"] == "embed-test"

    def test_openai_rejects_images(self):
        service = OpenAIEmbeddingService(api_key="test-key")
        with pytest.raises(ValueError, match="voyage"):
            _run(service.embed(text="x", image_bytes=b"\x89PNG"))

    def test_voyage_sends_joint_input(self):
        service = VoyageEmbeddingService(api_key="test-key", base_url="https://voyage.test/v1/")
        client_cls = MagicMock()
        client = client_cls.return_value.__aenter__.return_value
        client.post = AsyncMock(return_value=MagicMock(
            json=MagicMock(return_value={"data": [{"embedding": [0.5, 0.5]}]}),
        ))

        with patch("research_agents.services.embedder.httpx.AsyncClient", client_cls):
            vector = _run(service.embed(text="caption", image_bytes=b"img", mode="query"))

        assert vector == [0.5, 0.5]
        url = client.post.call_args.args[0]
        payload = client.post.call_args.kwargs["json"]
        assert url == "https://voyage.test/v1/multimodalembeddings"
        assert payload["input_type"] == "query"
        parts = payload["inputs"][0]["content"]
        assert [p["type"] for p in parts] == ["text", "image_base64"]

    def test_voyage_requires_content(self):
        service = VoyageEmbeddingService(api_key="test-key")
        with pytest.raises(ValueError):
            _run(service.embed())


# ---------------------------------------------------------------------------
# Test: Web Search Flag
# ---------------------------------------------------------------------------


class TestWebSearchFlag:

    def test_disabled_without_flag(self):
        with patch.object(settings, "web_search_enabled", False):
            assert not is_web_search_enabled()
            with pytest.raises(WebSearchDisabledError):
                get_web_search_service()

    def test_disabled_without_key(self):
        with patch.object(settings, "web_search_enabled", True), \
                patch.object(settings, "perplexity_api_key", ""):
            assert not is_web_search_enabled()


# ---------------------------------------------------------------------------
# Test: Project Data Repository
# ---------------------------------------------------------------------------


class TestProjectData:

    def test_round_trip_with_analysis(self, project_data):
        analysis = {"description": "Deck plan", "tags": ["deck"], "insights": [], "facets": {}}
        item = _run(project_data.add_project_item("P1", "deck.txt", "Deck plan text", analysis=analysis))

        fetched = _run(project_data.get_project_item(item.id, project_id="P1"))

        assert fetched.filename == "deck.txt"
        assert fetched.analysis == analysis
        assert fetched.tags == ["deck"]
        assert fetched.size == len("Deck plan text")
        assert fetched.embedding is None

    def test_lookup_falls_back_to_unscoped(self, project_data):
        item = _run(project_data.add_project_item("P2", "deck.txt", "Deck plan text"))

        fetched = _run(project_data.get_project_item(item.id, project_id="P1"))

        assert fetched is not None
        assert fetched.project_id == "P2"

    def test_image_embedded_from_bytes(self, project_data, embedder):
        image = _image_base64(10, 10)

        item = _run(project_data.add_project_item("P1", "tiny.png", image, item_type="image"))

        assert item.mime_type == "image/jpeg"
        assert item.size == len(base64.b64decode(image))
        assert embedder.calls[-1] == {"text": "tiny.png", "image": True, "mode": "document"}

    def test_search_threshold(self, project_data):
        _run(project_data.add_project_item("P1", "deck.txt", "deck plan"))

        assert len(_run(project_data.search_project_data("P1", "deck plan"))) == 1
        assert _run(project_data.search_project_data("P1", "deck plan", threshold=1.01)) == []
