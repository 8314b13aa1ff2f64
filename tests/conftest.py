# =============================================================================
# Shared Test Fixtures
# =============================================================================
#
# Everything here runs without API keys, databases or network access:
#   - HashingEmbedder: deterministic bag-of-words vectors, so texts sharing
#     words land near each other and identical texts score 1.0
#   - EchoLLM: records every call and answers with the prompt it was given
#   - vector_store: in-process ChromaDB, one collection namespace per test
# =============================================================================

from __future__ import annotations

import hashlib
import math
import re
import uuid

import chromadb
import pytest

from research_agents.agents.base import AgentServices
from research_agents.models.agents import AgentContext
from research_agents.services.llm import LLMResponse
from research_agents.services.memory import MemoryStore
from research_agents.services.project_data import ProjectDataRepository
from research_agents.services.vectorstore import ChromaVectorStore


class HashingEmbedder:
    """Feature-hashed word counts, L2-normalised."""

    dimensions = 256

    def __init__(self) -> None:
        self.calls: list[dict] = []

    async def embed(self, text=None, image_bytes=None, mode="document") -> list[float]:
        self.calls.append({"text": text, "image": image_bytes is not None, "mode": mode})

        tokens = re.findall(r"[a-z0-9]+", (text or "").lower())
        if image_bytes is not None:
            tokens.append(hashlib.sha256(image_bytes).hexdigest())
        if not tokens:
            raise ValueError("No content provided for embedding")

        vector = [0.0] * self.dimensions
        for token in tokens:
            bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vector))
        return [v / norm for v in vector]


class EchoLLM:
    """LLMProvider double: replies with a fixed text, or echoes the prompt."""

    def __init__(self, reply: str | None = None) -> None:
        self.reply = reply
        self.calls: list[dict] = []

    async def complete(
        self,
        messages,
        system=None,
        temperature=None,
        max_tokens=None,
        images=None,
    ) -> LLMResponse:
        prompt = messages[-1]["content"]
        self.calls.append({
            "prompt": prompt,
            "system": system,
            "max_tokens": max_tokens,
            "images": images,
        })
        content = self.reply if self.reply is not None else f"Answer based on:\n{prompt}"
        return LLMResponse(
            content=content,
            model="echo",
            input_tokens=len(prompt) // 4,
            output_tokens=len(content) // 4,
        )


@pytest.fixture
def embedder() -> HashingEmbedder:
    return HashingEmbedder()


@pytest.fixture
def llm() -> EchoLLM:
    return EchoLLM()


@pytest.fixture
def vector_store() -> ChromaVectorStore:
    return ChromaVectorStore(client=chromadb.Client(), namespace=f"t{uuid.uuid4().hex[:12]}_")


@pytest.fixture
def memory_store(vector_store, embedder) -> MemoryStore:
    return MemoryStore(vector_store, embedder)


@pytest.fixture
def project_data(vector_store, embedder) -> ProjectDataRepository:
    return ProjectDataRepository(vector_store, embedder)


@pytest.fixture
def services(vector_store, embedder, llm) -> AgentServices:
    return AgentServices(vector_store=vector_store, embedder=embedder, llm=llm)


@pytest.fixture
def context() -> AgentContext:
    return AgentContext(
        project_id="P1",
        session_id="S1",
        conversation_id="C1",
        user_query="find the safety diagram",
        project_name="Harbour Bridge Retrofit",
    )
