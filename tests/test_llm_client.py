from types import SimpleNamespace

import pytest

from graph_rag.errors import EmbeddingFailure
from graph_rag.llm_client import OpenAIModelClient, build_model_client

from conftest import make_settings


class StubEmbeddings:
    """Mimics ``AsyncOpenAI().embeddings``; ``native`` is the model's own size."""

    def __init__(self, native: int, honour_dimensions: bool = True) -> None:
        self.native = native
        self.honour_dimensions = honour_dimensions
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        size = kwargs.get("dimensions") if self.honour_dimensions else None
        return SimpleNamespace(data=[SimpleNamespace(embedding=[0.1] * (size or self.native))])


def _client(embeddings: StubEmbeddings, dimensions) -> OpenAIModelClient:
    return OpenAIModelClient(
        base_url="http://127.0.0.1:8000/v1",
        api_key="dummy",
        model_name="test-model",
        embedding_model_name="text-embedding-3-small",
        embedding_dimensions=dimensions,
        client=SimpleNamespace(embeddings=embeddings),
    )


@pytest.mark.asyncio
async def test_embed_requests_configured_dimensions() -> None:
    embeddings = StubEmbeddings(native=1536)
    vector = await _client(embeddings, 1024).embed("Moore's Law")

    assert len(vector) == 1024
    assert embeddings.calls == [
        {"model": "text-embedding-3-small", "input": "Moore's Law", "dimensions": 1024}
    ]


@pytest.mark.asyncio
async def test_embedding_of_wrong_size_is_rejected() -> None:
    embeddings = StubEmbeddings(native=1536, honour_dimensions=False)

    with pytest.raises(EmbeddingFailure):
        await _client(embeddings, 1024).embed("Moore's Law")


@pytest.mark.asyncio
async def test_embed_without_configured_dimensions_keeps_model_size() -> None:
    embeddings = StubEmbeddings(native=1536)
    vector = await _client(embeddings, None).embed("Moore's Law")

    assert len(vector) == 1536
    assert "dimensions" not in embeddings.calls[0]


def test_build_model_client_uses_embedding_dimensions() -> None:
    client = build_model_client(make_settings(model_provider="openai", embedding_dimensions=1024))

    assert type(client) is OpenAIModelClient
    assert client.embedding_dimensions == 1024
