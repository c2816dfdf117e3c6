from contextlib import asynccontextmanager

import pytest

from graph_rag.errors import AlreadyRunning, GenerationError, NoContextAvailable, StoreUnavailable
from graph_rag.models import ENTITY, MATCHED_CHUNK, QUERY, JobState
from graph_rag.service import GraphRagService

from conftest import make_settings


@pytest.fixture
def service(store, fake_model, settings) -> GraphRagService:
    return GraphRagService(store=store, model=fake_model, settings=settings)


async def _ingest(service: GraphRagService, directory) -> None:
    handle = await service.start_ingestion(directory)
    await handle.wait()


@pytest.mark.asyncio
async def test_ingest_then_query_end_to_end(service, store, moore_dir) -> None:
    await service.initialize()
    await _ingest(service, moore_dir)
    assert service.job_status().state is JobState.COMPLETED

    result = await service.query("What drives AI?")

    assert result.answer == "Moore's Law drives AI progress."
    assert set(result.key_entities) == {"Moore's Law", "AI"}

    queries = list(store.nodes[QUERY].values())
    assert len(queries) == 1
    assert queries[0]["question"] == "What drives AI?"
    assert queries[0]["status"] == "ok"
    edges = list(store.edges[MATCHED_CHUNK].values())
    assert len(edges) == 1
    assert edges[0]["score"] > 0.2


@pytest.mark.asyncio
async def test_query_without_matching_chunks_raises_no_context(store, fake_model, moore_dir) -> None:
    service = GraphRagService(store=store, model=fake_model, settings=make_settings(min_similarity=0.3))
    await _ingest(service, moore_dir)

    with pytest.raises(NoContextAvailable):
        await service.query("Describe quantum chromodynamics")

    # the question is still recorded, without matched chunks
    assert await store.count_nodes(QUERY) == 1
    assert await store.count_edges(MATCHED_CHUNK) == 0
    assert fake_model.answer_prompts == []


@pytest.mark.asyncio
async def test_generation_failure_surfaces(service, fake_model, moore_dir) -> None:
    await _ingest(service, moore_dir)
    fake_model.fail_answers = True

    with pytest.raises(GenerationError):
        await service.query("What drives AI?")


@pytest.mark.asyncio
async def test_query_logging_failure_does_not_fail_the_query(service, store, moore_dir, caplog) -> None:
    await _ingest(service, moore_dir)

    @asynccontextmanager
    async def _unavailable():
        raise StoreUnavailable("read-only replica")
        yield

    store.transaction = _unavailable
    result = await service.query("What drives AI?")

    assert result.answer
    assert "Failed to record query" in caplog.text


@pytest.mark.asyncio
async def test_start_ingestion_while_running_raises(service, fake_model, moore_dir) -> None:
    handle = await service.start_ingestion(moore_dir)
    with pytest.raises(AlreadyRunning):
        await service.start_ingestion(moore_dir)
    await handle.wait()


@pytest.mark.asyncio
async def test_display_projections(service, store, moore_dir) -> None:
    await _ingest(service, moore_dir)

    entities = await service.list_entities()
    assert {e.name for e in entities} == {"Moore's Law", "AI"}
    assert all(e.mentions == 1 for e in entities)

    snapshot = await service.graph_snapshot()
    assert len(snapshot.nodes) == await store.count_nodes(ENTITY)
    assert snapshot.edges == [{"source": "moore's law", "target": "ai", "type": "DRIVES"}]


@pytest.mark.asyncio
async def test_graph_snapshot_uses_configured_limits(store, fake_model, moore_dir) -> None:
    service = GraphRagService(store=store, model=fake_model, settings=make_settings(graph_max_nodes=1))
    await _ingest(service, moore_dir)

    snapshot = await service.graph_snapshot()
    assert len(snapshot.nodes) == 1
    assert snapshot.edges == []
