# =============================================================================
# Text-Generation Service — Anthropic and OpenAI-Compatible Providers
# =============================================================================
#
# The agents build prompts and read back plain text. Everything that differs
# between vendors lives here:
#
#                       system prompt          images
#   Anthropic           top-level `system=`    base64 "image" content blocks
#   OpenAI-compatible   leading system message data-URL "image_url" parts
#
#   LLMProvider (Protocol)
#   ├── AnthropicProvider         native async SDK
#   └── OpenAICompatibleProvider  OpenAI, DeepSeek, vLLM, Ollama, ...
#
#   get_llm_provider()  configured provider, created on first use
#   generate()          one prompt (plus optional images) in, LLMResponse out
#
# No retries or timeouts beyond the SDK defaults; a failed call raises and
# the calling agent turns it into a failed AgentOutput.
# =============================================================================

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from research_agents.config import settings

logger = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """What every provider returns, whatever its SDK's response shape."""

    content: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ImageInput:
    """A base64-encoded image attached to the last user message."""

    data: str
    media_type: str = "image/jpeg"


class LLMProvider(Protocol):
    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        """
        Run one chat completion.

        `messages` are {"role": "user" | "assistant", "content": str} dicts;
        `images` go on the last user message. Unset sampling options fall
        back to LLM_TEMPERATURE / LLM_MAX_TOKENS.
        """
        ...


class _ConfiguredProvider:
    """Key resolution and sampling defaults shared by both providers."""

    label = "LLM"
    key_settings: tuple[str, ...] = ()

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        self._api_key = api_key or settings.llm_api_key or next(
            (getattr(settings, name) for name in self.key_settings if getattr(settings, name)),
            None,
        )
        if not self._api_key:
            env_names = ", ".join(["LLM_API_KEY", *(n.upper() for n in self.key_settings)])
            raise ValueError(f"No {self.label} API key configured. Set one of: {env_names}")

        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

    def _sampling(self, temperature: float | None, max_tokens: int | None) -> dict[str, Any]:
        return {
            "model": self._model,
            "max_tokens": max_tokens or self._max_tokens,
            "temperature": self._temperature if temperature is None else temperature,
        }


class AnthropicProvider(_ConfiguredProvider):
    label = "Anthropic"
    key_settings = ("anthropic_api_key",)

    def __init__(self, api_key: str | None = None, model: str | None = None) -> None:
        from anthropic import AsyncAnthropic

        super().__init__(api_key, model)
        self._client = AsyncAnthropic(api_key=self._api_key)
        logger.info("Anthropic provider ready (model=%s)", self._model)

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        request = self._sampling(temperature, max_tokens)
        request["messages"] = _attach_images(messages, images, _anthropic_image_block)
        if system:
            request["system"] = system

        response = await self._client.messages.create(**request)

        return LLMResponse(
            content="".join(b.text for b in response.content if b.type == "text"),
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )


class OpenAICompatibleProvider(_ConfiguredProvider):
    """
    Any chat-completions endpoint. Pointing at another vendor is config:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_MODEL=deepseek-chat
    """

    label = "OpenAI-compatible"
    key_settings = ("openai_api_key",)

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        super().__init__(api_key, model)
        self._base_url = base_url or settings.llm_base_url
        self._client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)
        logger.info(
            "OpenAI-compatible provider ready (model=%s, base_url=%s)",
            self._model, self._base_url or "default",
        )

    async def complete(
        self,
        messages: list[dict[str, Any]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        images: list[ImageInput] | None = None,
    ) -> LLMResponse:
        chat = [{"role": "system", "content": system}] if system else []
        chat += _attach_images(messages, images, _openai_image_part)

        response = await self._client.chat.completions.create(
            messages=chat, **self._sampling(temperature, max_tokens),
        )

        usage = response.usage
        return LLMResponse(
            content=response.choices[0].message.content or "",
            model=response.model or self._model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
        )


_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """Provider selected by LLM_PROVIDER ("anthropic" or "openai_compatible")."""
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        else:
            _provider = AnthropicProvider()
    return _provider


async def generate(
    prompt: str,
    llm: LLMProvider | None = None,
    images: list[ImageInput] | None = None,
    system: str | None = None,
    max_tokens: int | None = None,
) -> LLMResponse:
    """Single-turn completion: one user prompt, optional images."""
    provider = llm or get_llm_provider()
    return await provider.complete(
        messages=[{"role": "user", "content": prompt}],
        system=system,
        max_tokens=max_tokens,
        images=images,
    )


# ---------------------------------------------------------------------------
# Image attachment
# ---------------------------------------------------------------------------


def _anthropic_image_block(image: ImageInput) -> dict[str, Any]:
    return {
        "type": "image",
        "source": {
            "type": "base64",
            "media_type": image.media_type,
            "data": image.data,
        },
    }


def _openai_image_part(image: ImageInput) -> dict[str, Any]:
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{image.media_type};base64,{image.data}"},
    }


def _attach_images(
    messages: list[dict[str, Any]],
    images: list[ImageInput] | None,
    to_block: Callable[[ImageInput], dict[str, Any]],
) -> list[dict[str, Any]]:
    """
    Copy of `messages` with the images placed before the text of the last
    user message (text content becomes a single text block).
    """
    if not images:
        return list(messages)

    result = [dict(m) for m in messages]
    last_user = next((m for m in reversed(result) if m.get("role") == "user"), None)
    if last_user is not None:
        content = last_user.get("content", "")
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]
        last_user["content"] = [to_block(img) for img in images] + list(content)
    return result
