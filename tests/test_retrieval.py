import pytest

from graph_rag.errors import ModelUnavailable
from graph_rag.ingestion import IngestionPipeline
from graph_rag.models import EntityView, RelationView, RetrievalStatus, VectorHit
from graph_rag.retrieval import RetrievalEngine, render_context


async def _ingest(store, model, job_state, directory) -> None:
    pipeline = IngestionPipeline(store, model, job_state, retry_initial_wait=0.0, retry_max_wait=0.0)
    await pipeline.run(directory)


@pytest.mark.asyncio
async def test_question_expands_to_entities_and_relations(store, fake_model, job_state, moore_dir) -> None:
    await _ingest(store, fake_model, job_state, moore_dir)
    context = await RetrievalEngine(store, fake_model).retrieve("What drives AI?")

    assert context.status is RetrievalStatus.OK
    assert [hit.text for hit in context.chunks] == ["Moore's Law drives AI progress."]
    assert [e.name for e in context.entities] == ["AI", "Moore's Law"]
    assert [(r.source_name, r.predicate, r.target_name) for r in context.relations] == [
        ("Moore's Law", "DRIVES", "AI")
    ]
    assert context.text == (
        "Document excerpts:\nMoore's Law drives AI progress.\n\n"
        "Key concepts: AI, Moore's Law.\n\n"
        "Relations:\n- Moore's Law DRIVES AI"
    )


@pytest.mark.asyncio
async def test_unrelated_question_returns_no_context(store, fake_model, job_state, moore_dir) -> None:
    await _ingest(store, fake_model, job_state, moore_dir)
    context = await RetrievalEngine(store, fake_model, min_similarity=0.3).retrieve(
        "Describe quantum chromodynamics"
    )

    assert context.status is RetrievalStatus.NO_CONTEXT
    assert context.is_empty
    assert context.chunks == []
    assert context.text == ""


@pytest.mark.asyncio
async def test_empty_store_and_blank_question_return_no_context(store, fake_model) -> None:
    engine = RetrievalEngine(store, fake_model)

    assert (await engine.retrieve("What drives AI?")).is_empty
    assert (await engine.retrieve("   ")).is_empty
    # a blank question never reaches the model
    assert fake_model.embed_calls == ["What drives AI?"]


@pytest.mark.asyncio
async def test_model_errors_propagate(store, fake_model) -> None:
    fake_model.fail_embeddings = True
    with pytest.raises(ModelUnavailable):
        await RetrievalEngine(store, fake_model).retrieve("What drives AI?")


def test_mentioned_entities_survive_truncation(store, fake_model) -> None:
    engine = RetrievalEngine(store, fake_model, max_entities=2)
    mentioned = [EntityView(key="a", name="A", type="Concept", mentioned=True)]
    neighbours = [
        EntityView(key="b", name="B", type="Concept"),
        EntityView(key="a", name="A", type="Concept"),
        EntityView(key="c", name="C", type="Concept"),
    ]

    selected = engine._select_entities(mentioned, neighbours)

    assert [(e.key, e.mentioned) for e in selected] == [("a", True), ("b", False)]


def test_render_context_lists_each_concept_once() -> None:
    chunks = [
        VectorHit(chunk_key="d:0", similarity=0.9, text="first"),
        VectorHit(chunk_key="d:1", similarity=0.5, text="second"),
    ]
    entities = [
        EntityView(key="ai", name="AI", type="Technology"),
        EntityView(key="ai2", name=" ai ", type="Technology"),
        EntityView(key="gpu", name="GPU", type="Technology"),
    ]
    relations = [RelationView("gpu", "ai", "GPU", "AI", "ACCELERATES")]

    text = render_context(chunks, entities, relations)

    assert text == (
        "Document excerpts:\nfirst\n\n---\n\nsecond\n\n"
        "Key concepts: AI, GPU.\n\n"
        "Relations:\n- GPU ACCELERATES AI"
    )


def test_render_context_without_graph_data() -> None:
    text = render_context([VectorHit(chunk_key="d:0", similarity=0.9, text="only text")], [], [])
    assert text == "Document excerpts:\nonly text"
