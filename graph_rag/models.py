from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


# Node labels
FILE = "File"
DOCUMENT = "Document"
CHUNK = "Chunk"
ENTITY = "Entity"
QUERY = "Query"

# Edge labels
HAS_DOCUMENT = "HAS_DOCUMENT"
HAS_CHUNK = "HAS_CHUNK"
MENTIONS = "MENTIONS"
RELATED_TO = "RELATED_TO"
NEXT_CHUNK = "NEXT_CHUNK"
MATCHED_CHUNK = "MATCHED_CHUNK"

NODE_LABELS = (FILE, DOCUMENT, CHUNK, ENTITY, QUERY)
EDGE_ENDPOINTS = {
    HAS_DOCUMENT: (FILE, DOCUMENT),
    HAS_CHUNK: (DOCUMENT, CHUNK),
    MENTIONS: (CHUNK, ENTITY),
    RELATED_TO: (ENTITY, ENTITY),
    NEXT_CHUNK: (CHUNK, CHUNK),
    MATCHED_CHUNK: (QUERY, CHUNK),
}

_WHITESPACE = re.compile(r"\s+")
_APOSTROPHES = str.maketrans({"’": "'", "‘": "'", "`": "'"})


def normalize_entity_name(name: str) -> str:
    """
    Dedup key for entities: NFKC, casefolded, whitespace collapsed.

    "Moore's Law", "moore’s  law" and " MOORE'S LAW " share one key.
    """
    text = unicodedata.normalize("NFKC", name or "").translate(_APOSTROPHES)
    return _WHITESPACE.sub(" ", text).strip().casefold()


def document_key_for(path: str) -> str:
    digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:16]
    return f"doc:{digest}"


def chunk_key_for(document_key: str, index: int) -> str:
    return f"{document_key}:{index}"


# ─────────────────────────────────────────────────────────────────────────────
# Persisted graph nodes
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class FileNode:
    path: str
    filename: str
    size_bytes: int
    modified_at: str
    mime_type: Optional[str]
    extension: str

    @property
    def key(self) -> str:
        return self.path

    def attributes(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "filename": self.filename,
            "size_bytes": self.size_bytes,
            "modified_at": self.modified_at,
            "mime_type": self.mime_type or "",
            "extension": self.extension,
        }


@dataclass
class DocumentNode:
    key: str
    source: str
    title: str
    doc_type: str
    chunk_count: int

    def attributes(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "title": self.title,
            "doc_type": self.doc_type,
            "chunk_count": self.chunk_count,
        }


@dataclass
class ChunkNode:
    document_key: str
    index: int
    text: str
    embedding: List[float]
    # Position of the chunk across the whole ingestion run.
    ordinal: int = 0

    @property
    def key(self) -> str:
        return chunk_key_for(self.document_key, self.index)

    def attributes(self) -> Dict[str, Any]:
        return {
            "document_key": self.document_key,
            "index": self.index,
            "ordinal": self.ordinal,
            "text": self.text,
            "char_count": len(self.text),
            "embedding": list(self.embedding),
        }


# ─────────────────────────────────────────────────────────────────────────────
# Extraction results
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class ExtractedEntity:
    name: str
    type: str

    @property
    def key(self) -> str:
        return normalize_entity_name(self.name)


@dataclass
class ExtractedRelation:
    source: str
    target: str
    label: str


@dataclass
class ExtractionResult:
    entities: List[ExtractedEntity] = field(default_factory=list)
    relations: List[ExtractedRelation] = field(default_factory=list)
    # True when the model answered but the answer could not be parsed.
    parse_failed: bool = False


# ─────────────────────────────────────────────────────────────────────────────
# Read projections returned by the store
# ─────────────────────────────────────────────────────────────────────────────


@dataclass
class VectorHit:
    chunk_key: str
    similarity: float
    text: str
    # Creation order of the chunk, used to break similarity ties.
    sequence: int = 0


@dataclass
class EntityView:
    key: str
    name: str
    type: str
    mentioned: bool = False


@dataclass
class RelationView:
    source_key: str
    target_key: str
    source_name: str
    target_name: str
    predicate: str


@dataclass
class Neighborhood:
    entities: List[EntityView] = field(default_factory=list)
    relations: List[RelationView] = field(default_factory=list)


@dataclass
class EntitySummary:
    key: str
    name: str
    type: str
    mentions: int


@dataclass
class GraphSnapshot:
    """Nodes as {"id", "label", "group"} and edges as {"source", "target", "type"}."""

    nodes: List[Dict[str, Any]] = field(default_factory=list)
    edges: List[Dict[str, Any]] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Query path
# ─────────────────────────────────────────────────────────────────────────────


class RetrievalStatus(str, Enum):
    OK = "ok"
    NO_CONTEXT = "no_context"


@dataclass
class AugmentedContext:
    question: str
    status: RetrievalStatus
    chunks: List[VectorHit] = field(default_factory=list)
    entities: List[EntityView] = field(default_factory=list)
    relations: List[RelationView] = field(default_factory=list)
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return self.status is RetrievalStatus.NO_CONTEXT


@dataclass
class QueryAnswer:
    answer: str
    key_entities: List[str] = field(default_factory=list)


# ─────────────────────────────────────────────────────────────────────────────
# Ingestion job
# ─────────────────────────────────────────────────────────────────────────────


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class SkippedChunk:
    path: str
    index: int
    reason: str


@dataclass
class IngestionSummary:
    files_scanned: int = 0
    files_ingested: int = 0
    files_skipped: int = 0
    files_unsupported: int = 0
    chunks_persisted: int = 0
    extraction_parse_failures: int = 0
    entities: int = 0
    relations: int = 0
    skipped_chunks: List[SkippedChunk] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def chunks_skipped(self) -> int:
        return len(self.skipped_chunks)

    def __str__(self) -> str:
        return (
            f"{self.files_scanned} file(s) scanned, {self.files_ingested} ingested, "
            f"{self.files_skipped} skipped, {self.files_unsupported} unsupported. "
            f"{self.chunks_persisted} chunk(s) stored, {self.chunks_skipped} skipped; "
            f"{self.entities} entit(ies) and {self.relations} relation(s) extracted."
        )


@dataclass(frozen=True)
class JobStatus:
    state: JobState
    progress: float
    message: str
    job_id: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    summary: Optional[IngestionSummary] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "progress": self.progress,
            "message": self.message,
        }


__all__ = [
    "FILE",
    "DOCUMENT",
    "CHUNK",
    "ENTITY",
    "QUERY",
    "HAS_DOCUMENT",
    "HAS_CHUNK",
    "MENTIONS",
    "RELATED_TO",
    "NEXT_CHUNK",
    "MATCHED_CHUNK",
    "NODE_LABELS",
    "EDGE_ENDPOINTS",
    "normalize_entity_name",
    "document_key_for",
    "chunk_key_for",
    "FileNode",
    "DocumentNode",
    "ChunkNode",
    "ExtractedEntity",
    "ExtractedRelation",
    "ExtractionResult",
    "VectorHit",
    "EntityView",
    "RelationView",
    "Neighborhood",
    "EntitySummary",
    "GraphSnapshot",
    "RetrievalStatus",
    "AugmentedContext",
    "QueryAnswer",
    "JobState",
    "SkippedChunk",
    "IngestionSummary",
    "JobStatus",
]
