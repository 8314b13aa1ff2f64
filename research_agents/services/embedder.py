# =============================================================================
# Embedding Service — Vector Generation (Provider-Agnostic)
# =============================================================================
#
# Turns memory content, search queries and project items into vectors.
#
#   EmbeddingService (Protocol)
#   ├── OpenAIEmbeddingService — any OpenAI-compatible embeddings endpoint,
#   │                            text only, sync SDK wrapped in to_thread()
#   └── VoyageEmbeddingService — Voyage multimodal embeddings over httpx,
#                                text and/or image, query/document modes
#
# `mode` distinguishes queries from stored documents. Voyage uses it as the
# request's input_type; OpenAI embeddings have no such notion and ignore it.
#
# No retry logic here. Retry policy belongs to whoever calls the agents.
# =============================================================================

from __future__ import annotations

import asyncio
import base64
import logging
from typing import Literal, Protocol

import httpx
from openai import OpenAI

from research_agents.config import settings

logger = logging.getLogger(__name__)

EmbeddingMode = Literal["query", "document"]


class EmbeddingService(Protocol):
    """Protocol for anything that can embed text and/or an image."""

    async def embed(
        self,
        text: str | None = None,
        image_bytes: bytes | None = None,
        mode: EmbeddingMode = "document",
    ) -> list[float]:
        """
        Embed one input.

        Identical inputs must yield identical vectors (cosine similarity
        1.0 with themselves); the memory store's deduplication relies on it.
        """
        ...


# ---------------------------------------------------------------------------
# OpenAI-compatible embeddings
# ---------------------------------------------------------------------------


class OpenAIEmbeddingService:
    """
    Text-only embeddings from any OpenAI-compatible endpoint.

    The SDK client is synchronous; calls run in a worker thread so the
    event loop keeps serving other agents. The key comes from
    OPENAI_API_KEY, falling back to LLM_API_KEY.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        key = api_key or settings.openai_api_key or settings.llm_api_key
        if not key:
            raise ValueError(
                "No embedding API key configured. Set OPENAI_API_KEY or LLM_API_KEY"
            )
        self._model = model or settings.embedding_model
        self._client = OpenAI(api_key=key, base_url=base_url or settings.embedding_base_url)
        logger.info("Initialized OpenAIEmbeddingService (model=%s)", self._model)

    def _embed_sync(self, text: str) -> list[float]:
        options: dict = {"model": self._model, "input": [text]}
        if settings.embedding_dimensions:
            options["dimensions"] = settings.embedding_dimensions
        response = self._client.embeddings.create(**options)
        return response.data[0].embedding

    async def embed(
        self,
        text: str | None = None,
        image_bytes: bytes | None = None,
        mode: EmbeddingMode = "document",
    ) -> list[float]:
        if image_bytes is not None:
            raise ValueError(
                "The OpenAI embedding provider does not support images. "
                "Set EMBEDDING_PROVIDER=voyage for multimodal embeddings."
            )
        if not text:
            raise ValueError("No content provided for embedding")
        return await asyncio.to_thread(self._embed_sync, text)


# ---------------------------------------------------------------------------
# Voyage multimodal embeddings
# ---------------------------------------------------------------------------


class VoyageEmbeddingService:
    """
    Voyage AI multimodal embeddings.

    One request per input. Text and image are sent as parts of the same
    input, so a captioned image gets a single joint vector.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
    ) -> None:
        resolved_key = api_key or settings.voyage_api_key
        if not resolved_key:
            raise ValueError(
                "No Voyage API key configured. Set VOYAGE_API_KEY in .env"
            )
        self._api_key = resolved_key
        self._model = model or settings.voyage_model
        self._base_url = (base_url or settings.voyage_base_url).rstrip("/")
        self._timeout = timeout

        logger.info("Initialized VoyageEmbeddingService (model=%s)", self._model)

    async def embed(
        self,
        text: str | None = None,
        image_bytes: bytes | None = None,
        mode: EmbeddingMode = "document",
    ) -> list[float]:
        content: list[dict] = []
        if text:
            content.append({"type": "text", "text": text})
        if image_bytes is not None:
            encoded = base64.b64encode(image_bytes).decode("ascii")
            content.append({
                "type": "image_base64",
                "image_base64": f"data:image/jpeg;base64,{encoded}",
            })
        if not content:
            raise ValueError("No content provided for embedding")

        payload = {
            "model": self._model,
            "inputs": [{"content": content}],
            "input_type": mode,
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            response = await client.post(
                f"{self._base_url}/multimodalembeddings",
                json=payload,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
            response.raise_for_status()
            data = response.json()

        return data["data"][0]["embedding"]


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

_service: OpenAIEmbeddingService | VoyageEmbeddingService | None = None


def get_embedding_service() -> OpenAIEmbeddingService | VoyageEmbeddingService:
    """
    Return the configured embedding service (lazy singleton).

    Reads `embedding_provider` from settings:
    - "openai" → OpenAIEmbeddingService
    - "voyage" → VoyageEmbeddingService
    """
    global _service
    if _service is None:
        if settings.embedding_provider == "voyage":
            _service = VoyageEmbeddingService()
        else:
            _service = OpenAIEmbeddingService()
    return _service
