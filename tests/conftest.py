"""
Shared fixtures: a deterministic fake model client, the in-memory store
and settings tuned for fast tests (no retry waits, memory backend).
"""
import asyncio
import hashlib
import json
import math
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from graph_rag.config import Settings
from graph_rag.errors import ModelUnavailable
from graph_rag.extractor import EXTRACTION_SYSTEM_PROMPT
from graph_rag.job_state import JobStateMachine
from graph_rag.memory_store import InMemoryGraphStore


EMBEDDING_DIM = 2048
_WORD = re.compile(r"[\w']+")


def bag_of_words_embedding(text: str, dim: int = EMBEDDING_DIM) -> List[float]:
    vector = [0.0] * dim
    for word in _WORD.findall(text.lower()):
        bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % dim
        vector[bucket] += 1.0
    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        # Keep the vector non-empty and non-zero for texts without words.
        vector[0] = 1.0
        return vector
    return [v / norm for v in vector]


class FakeModelClient:
    """
    Model client double.

    - ``extractions`` maps a substring of the chunk text to the extraction
      answer (a dict dumped as JSON, or a raw string).
    - ``failing`` maps a substring to the number of extraction calls that
      fail with ModelUnavailable before succeeding (None = always fail).
    - ``answer`` is returned for every non-extraction completion.
    """

    def __init__(
        self,
        extractions: Optional[Dict[str, Any]] = None,
        answer: str = "",
        failing: Optional[Dict[str, Optional[int]]] = None,
        delay: float = 0.0,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.extractions = extractions or {}
        self.answer = answer
        self.failing = dict(failing or {})
        self.delay = delay
        self.gate = gate
        self.extraction_calls: List[str] = []
        self.answer_prompts: List[str] = []
        self.embed_calls: List[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.fail_answers = False
        self.fail_embeddings = False

    async def embed(self, text: str) -> List[float]:
        self.embed_calls.append(text)
        if self.fail_embeddings:
            raise ModelUnavailable("embedding endpoint down")
        return bag_of_words_embedding(text)

    async def complete(self, prompt: str, constraints: Optional[Dict[str, Any]] = None) -> str:
        constraints = constraints or {}
        if constraints.get("system") != EXTRACTION_SYSTEM_PROMPT:
            self.answer_prompts.append(prompt)
            if self.fail_answers:
                raise ModelUnavailable("chat endpoint down")
            return self.answer

        self.extraction_calls.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            for marker, remaining in self.failing.items():
                if marker in prompt:
                    if remaining is None:
                        raise ModelUnavailable(f"extraction failed for {marker!r}")
                    if remaining > 0:
                        self.failing[marker] = remaining - 1
                        raise ModelUnavailable(f"transient failure for {marker!r}")
            for marker, result in self.extractions.items():
                if marker in prompt:
                    return result if isinstance(result, str) else json.dumps(result)
            return json.dumps({"entities": [], "relations": []})
        finally:
            self.in_flight -= 1


MOORE_EXTRACTION = {
    "entities": [
        {"name": "Moore's Law", "type": "Concept"},
        {"name": "AI", "type": "Technology"},
    ],
    "relations": [{"source": "Moore's Law", "target": "AI", "label": "DRIVES"}],
}


def make_settings(**overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        model_provider="openai",
        llm_base_url="http://127.0.0.1:8000/v1",
        llm_api_key="dummy",
        llm_model_name="test-model",
        llm_max_output_tokens=256,
        llm_temperature=0.0,
        embedding_model_name="test-embedding",
        embedder_model_path=Path("./models/bge-m3"),
        embedder_device="cpu",
        embedding_dimensions=EMBEDDING_DIM,
        graph_backend="memory",
        neo4j_uri="bolt://127.0.0.1:7687",
        neo4j_username="neo4j",
        neo4j_password="password",
        neo4j_database="neo4j",
        chunk_size=200,
        chunk_overlap=20,
        ingest_concurrency=4,
        chunk_max_attempts=3,
        retry_initial_wait=0.0,
        retry_max_wait=0.0,
        retrieval_top_k=6,
        min_similarity=0.2,
        max_context_entities=40,
        max_context_relations=60,
        graph_max_nodes=300,
        graph_max_edges=500,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def store() -> InMemoryGraphStore:
    return InMemoryGraphStore()


@pytest.fixture
def job_state() -> JobStateMachine:
    return JobStateMachine()


@pytest.fixture
def fake_model() -> FakeModelClient:
    return FakeModelClient(
        extractions={"Moore's Law drives AI progress.": MOORE_EXTRACTION},
        answer="Moore's Law drives AI progress.",
    )


@pytest.fixture
def moore_dir(tmp_path: Path) -> Path:
    docs = tmp_path / "docs"
    docs.mkdir()
    (docs / "moore.txt").write_text("Moore's Law drives AI progress.", encoding="utf-8")
    return docs
