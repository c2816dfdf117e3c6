"""
Paragraph/sentence aware text chunking.

Sizes are measured in characters (Python code points), so a segment
boundary never falls inside a code point. Output depends only on the
input text and parameters, which keeps chunk keys stable across
re-ingestion runs.
"""

from __future__ import annotations

import re
from typing import List, Tuple

from .errors import ConfigError


_PARAGRAPH_BREAK = re.compile(r"\n[ \t]*\n+")
_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")

PARAGRAPH_SEPARATOR = "\n\n"
SENTENCE_SEPARATOR = " "


def _validate(max_size: int, overlap: int) -> None:
    if max_size <= 0:
        raise ConfigError(f"max_size must be positive, got {max_size}")
    if overlap < 0:
        raise ConfigError(f"overlap must be >= 0, got {overlap}")
    if overlap >= max_size:
        raise ConfigError(
            f"overlap ({overlap}) must be smaller than max_size ({max_size})"
        )


def _hard_split(sentence: str, limit: int) -> List[str]:
    """Split a single over-long sentence, preferring whitespace boundaries."""
    pieces: List[str] = []
    while len(sentence) > limit:
        cut = sentence.rfind(" ", 0, limit + 1)
        if cut <= 0:
            cut = limit
        pieces.append(sentence[:cut].rstrip())
        sentence = sentence[cut:].lstrip()
    if sentence:
        pieces.append(sentence)
    return pieces


def _split_paragraph(paragraph: str, limit: int) -> List[str]:
    if len(paragraph) <= limit:
        return [paragraph]
    pieces: List[str] = []
    for sentence in _SENTENCE_END.split(paragraph):
        sentence = sentence.strip()
        if sentence:
            pieces.extend(_hard_split(sentence, limit))
    return pieces


def _units(text: str, limit: int) -> List[Tuple[str, str]]:
    """
    Flatten the text into (piece, separator) pairs where every piece fits
    into ``limit``. The separator is the one used to glue the piece to
    whatever precedes it inside the same segment.
    """
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    units: List[Tuple[str, str]] = []
    for paragraph in _PARAGRAPH_BREAK.split(normalized):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        for i, piece in enumerate(_split_paragraph(paragraph, limit)):
            units.append((piece, PARAGRAPH_SEPARATOR if i == 0 else SENTENCE_SEPARATOR))
    return units


def _overlap_tail(previous: str, size: int) -> str:
    if size <= 0:
        return ""
    if len(previous) <= size:
        return previous.strip()
    tail = previous[-size:]
    # Start the overlap on a word boundary when the tail begins mid-word.
    if not previous[-size - 1].isspace():
        space = tail.find(" ")
        if space != -1:
            tail = tail[space + 1:]
    return tail.strip()


def chunk_text(text: str, max_size: int, overlap: int = 0) -> List[str]:
    """
    Split ``text`` into ordered segments of at most ``max_size`` characters.

    Paragraphs (blank-line separated) are packed greedily; a paragraph that
    does not fit is split on sentence boundaries, and a sentence that still
    does not fit is split on whitespace (or at exactly the size limit when
    it has none). With ``overlap > 0`` every segment after the first starts
    with up to ``overlap`` trailing characters of the previous segment.

    Raises ConfigError when ``overlap`` is negative or not smaller than
    ``max_size``. Empty input yields an empty list.
    """
    _validate(max_size, overlap)
    if not text or not text.strip():
        return []

    # Room left for new content once the overlap prefix and its separator
    # are accounted for.
    budget = max(1, max_size - overlap - 1) if overlap else max_size

    bodies: List[str] = []
    current = ""
    for piece, separator in _units(text, budget):
        candidate = piece if not current else current + separator + piece
        if len(candidate) <= budget:
            current = candidate
            continue
        if current:
            bodies.append(current)
        current = piece
    if current:
        bodies.append(current)

    if not overlap:
        return bodies

    segments: List[str] = []
    for body in bodies:
        if not segments:
            segments.append(body)
            continue
        room = min(overlap, max_size - len(body) - 1)
        prefix = _overlap_tail(segments[-1], room)
        segments.append(f"{prefix} {body}" if prefix else body)
    return segments


__all__ = ["chunk_text"]
