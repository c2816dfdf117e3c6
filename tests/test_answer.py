import pytest

from graph_rag.answer import AnswerComposer, find_key_entities
from graph_rag.errors import GenerationError
from graph_rag.models import AugmentedContext, EntityView, RetrievalStatus

from conftest import FakeModelClient


def _context(*names: str) -> AugmentedContext:
    return AugmentedContext(
        question="What drives AI?",
        status=RetrievalStatus.OK,
        entities=[EntityView(key=n.casefold(), name=n, type="Concept") for n in names],
        text="Document excerpts:\nMoore's Law drives AI progress.",
    )


def test_key_entities_follow_context_order() -> None:
    context = _context("Moore's Law", "AI", "GPU")
    answer = "AI progress is driven by moore’s law."

    assert find_key_entities(answer, context) == ["Moore's Law", "AI"]


def test_key_entities_match_whole_words_only() -> None:
    context = _context("AI", "Law")
    assert find_key_entities("She said the lawyer was busy.", context) == []


def test_key_entities_are_listed_once() -> None:
    context = _context("AI", "ai")
    assert find_key_entities("AI, AI and more AI.", context) == ["AI"]


@pytest.mark.asyncio
async def test_answer_builds_prompt_from_context() -> None:
    model = FakeModelClient(answer="  Moore's Law drives AI.  ")
    result = await AnswerComposer(model).answer("What drives AI?", _context("Moore's Law", "AI"))

    assert result.answer == "Moore's Law drives AI."
    assert result.key_entities == ["Moore's Law", "AI"]
    prompt = model.answer_prompts[0]
    assert "Moore's Law drives AI progress." in prompt
    assert "Question: What drives AI?" in prompt


@pytest.mark.asyncio
async def test_model_failure_becomes_generation_error() -> None:
    model = FakeModelClient()
    model.fail_answers = True

    with pytest.raises(GenerationError) as excinfo:
        await AnswerComposer(model).answer("What drives AI?", _context("AI"))
    assert excinfo.value.__cause__ is not None
    # no automatic retry
    assert len(model.answer_prompts) == 1


@pytest.mark.asyncio
async def test_empty_answer_is_a_generation_error() -> None:
    model = FakeModelClient(answer="   ")
    with pytest.raises(GenerationError):
        await AnswerComposer(model).answer("What drives AI?", _context("AI"))
