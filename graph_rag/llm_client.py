from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import openai
from openai import AsyncOpenAI

from .config import Settings
from .embedder import SentenceTransformerEmbedder
from .errors import EmbeddingFailure, ModelUnavailable, RateLimited


logger = logging.getLogger(__name__)


@runtime_checkable
class ModelClient(Protocol):
    """
    The two model capabilities the pipelines rely on.

    New providers add an adapter implementing this protocol; the pipelines
    never depend on a concrete provider.
    """

    async def embed(self, text: str) -> List[float]: ...

    async def complete(
        self,
        prompt: str,
        constraints: Optional[Dict[str, Any]] = None,
    ) -> str: ...


def _translate(exc: Exception, what: str) -> Exception:
    if isinstance(exc, openai.RateLimitError):
        return RateLimited(f"{what} rate limited: {exc}")
    return ModelUnavailable(f"{what} failed: {exc}")


def _check_dimensions(vector: List[float], expected: Optional[int]) -> List[float]:
    # The vector index is created for exactly `expected` dimensions.
    if expected and len(vector) != expected:
        raise EmbeddingFailure(
            f"Embedding has {len(vector)} dimensions, expected {expected} (EMBEDDING_DIMENSIONS)"
        )
    return vector


class OpenAIModelClient:
    """
    Chat and embeddings over an OpenAI-compatible API (OpenAI, vLLM, LM Studio).

    ``constraints`` understood by ``complete``:
      - system: system prompt sent before the user prompt
      - response_format: "json_object" to request a JSON answer
      - max_tokens, temperature: per-call overrides
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        embedding_model_name: str,
        max_output_tokens: int = 1024,
        temperature: float = 0.2,
        embedding_dimensions: Optional[int] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        self.model_name = model_name
        self.embedding_model_name = embedding_model_name
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.embedding_dimensions = embedding_dimensions
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    async def complete(
        self,
        prompt: str,
        constraints: Optional[Dict[str, Any]] = None,
    ) -> str:
        constraints = constraints or {}
        messages: List[dict] = []
        if constraints.get("system"):
            messages.append({"role": "system", "content": constraints["system"]})
        messages.append({"role": "user", "content": prompt})

        kwargs: Dict[str, Any] = {
            "model": self.model_name,
            "messages": messages,
            "max_tokens": constraints.get("max_tokens") or self.max_output_tokens,
            "temperature": constraints.get("temperature", self.temperature),
        }
        if constraints.get("response_format") == "json_object":
            kwargs["response_format"] = {"type": "json_object"}

        # Логируем только начало промпта, чтобы не забивать лог
        logger.debug(
            "Calling LLM %s (max_tokens=%d, prompt=%r)",
            self.model_name,
            kwargs["max_tokens"],
            prompt[:80],
        )
        try:
            response = await self._client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise _translate(e, "Completion") from e

        content = response.choices[0].message.content or ""
        logger.debug("Received LLM response (length=%d chars)", len(content))
        return content

    async def embed(self, text: str) -> List[float]:
        kwargs: Dict[str, Any] = {"model": self.embedding_model_name, "input": text}
        if self.embedding_dimensions:
            kwargs["dimensions"] = self.embedding_dimensions
        try:
            response = await self._client.embeddings.create(**kwargs)
        except openai.OpenAIError as e:
            raise _translate(e, "Embedding") from e
        return _check_dimensions(list(response.data[0].embedding), self.embedding_dimensions)

    async def close(self) -> None:
        await self._client.close()


class LocalModelClient(OpenAIModelClient):
    """OpenAI-compatible chat endpoint combined with a local sentence-transformers embedder."""

    def __init__(self, embedder: SentenceTransformerEmbedder, **kwargs: Any) -> None:
        kwargs.setdefault("embedding_model_name", "local")
        super().__init__(**kwargs)
        self.embedder = embedder

    async def embed(self, text: str) -> List[float]:
        vector = await self.embedder.aencode(text)
        return _check_dimensions(list(vector), self.embedding_dimensions)


def build_model_client(settings: Settings) -> OpenAIModelClient:
    common = dict(
        base_url=settings.llm_base_url,
        api_key=settings.llm_api_key,
        model_name=settings.llm_model_name,
        max_output_tokens=settings.llm_max_output_tokens,
        temperature=settings.llm_temperature,
        embedding_dimensions=settings.embedding_dimensions,
    )
    if settings.uses_local_embedder:
        logger.info(
            "Using local embedder %s with chat model %s",
            settings.embedder_model_path,
            settings.llm_model_name,
        )
        embedder = SentenceTransformerEmbedder(
            model_path=settings.embedder_model_path,
            device=settings.embedder_device,
        )
        return LocalModelClient(embedder=embedder, **common)

    logger.info(
        "Using OpenAI-compatible provider at %s (chat=%s, embeddings=%s)",
        settings.llm_base_url,
        settings.llm_model_name,
        settings.embedding_model_name,
    )
    return OpenAIModelClient(embedding_model_name=settings.embedding_model_name, **common)


__all__ = [
    "ModelClient",
    "OpenAIModelClient",
    "LocalModelClient",
    "build_model_client",
]
