import pytest

from graph_rag.chunking import chunk_text
from graph_rag.errors import ConfigError


LONG_TEXT = " ".join(f"Sentence number {i} is here." for i in range(40))


def test_empty_text_yields_no_chunks() -> None:
    assert chunk_text("", 100, 10) == []
    assert chunk_text("  \n\n \t", 100) == []


@pytest.mark.parametrize(
    "max_size, overlap",
    [(100, 100), (100, 150), (100, -1), (0, 0)],
)
def test_invalid_parameters_raise_config_error(max_size: int, overlap: int) -> None:
    with pytest.raises(ConfigError):
        chunk_text("some text", max_size, overlap)


def test_invalid_parameters_checked_before_empty_input() -> None:
    with pytest.raises(ConfigError):
        chunk_text("", 10, 10)


def test_short_text_is_a_single_chunk() -> None:
    assert chunk_text("  Moore's Law drives AI progress.  ", 1200, 150) == [
        "Moore's Law drives AI progress."
    ]


def test_paragraphs_are_packed_together_when_they_fit() -> None:
    text = "First paragraph.\n\n\nSecond paragraph."
    assert chunk_text(text, 1000) == ["First paragraph.\n\nSecond paragraph."]


@pytest.mark.parametrize("overlap", [0, 10, 20, 50])
def test_chunks_never_exceed_max_size(overlap: int) -> None:
    chunks = chunk_text(LONG_TEXT, 100, overlap)
    assert len(chunks) > 1
    assert all(0 < len(c) <= 100 for c in chunks)


def test_without_overlap_every_word_is_kept_in_order() -> None:
    text = LONG_TEXT + "\n\n" + "Another paragraph follows with more words."
    chunks = chunk_text(text, 80)
    assert " ".join(chunks).split() == text.split()


def test_overlap_repeats_the_tail_of_the_previous_chunk() -> None:
    chunks = chunk_text(LONG_TEXT, 100, 20)
    for previous, current in zip(chunks, chunks[1:]):
        first_word = current.split()[0]
        assert first_word in previous


def test_word_without_whitespace_is_split_at_the_limit() -> None:
    assert chunk_text("a" * 25, 10) == ["a" * 10, "a" * 10, "a" * 5]


def test_chunking_is_deterministic() -> None:
    assert chunk_text(LONG_TEXT, 120, 30) == chunk_text(LONG_TEXT, 120, 30)
