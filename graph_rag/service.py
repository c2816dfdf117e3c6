from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .answer import AnswerComposer
from .config import Settings, get_settings
from .errors import NoContextAvailable
from .graph_store import GraphStore, build_graph_store
from .ingestion import IngestionPipeline, JobHandle
from .job_state import JobStateMachine
from .llm_client import ModelClient, build_model_client
from .models import (
    MATCHED_CHUNK,
    QUERY,
    AugmentedContext,
    EntitySummary,
    GraphSnapshot,
    JobStatus,
    QueryAnswer,
)
from .retrieval import RetrievalEngine


logger = logging.getLogger(__name__)


class GraphRagService:
    """
    The operations exposed to callers (UI, scripts): start an ingestion,
    poll its status, ask questions and read display projections.

    Collaborators are injected; ``from_settings`` wires the configured
    store and model adapters.
    """

    def __init__(
        self,
        store: GraphStore,
        model: ModelClient,
        settings: Optional[Settings] = None,
        job_state: Optional[JobStateMachine] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.store = store
        self.model = model
        self.job_state = job_state or JobStateMachine()
        self.pipeline = IngestionPipeline.from_settings(self.settings, store, model, self.job_state)
        self.retrieval = RetrievalEngine.from_settings(self.settings, store, model)
        self.composer = AnswerComposer(model, max_tokens=self.settings.llm_max_output_tokens)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "GraphRagService":
        settings = settings or get_settings()
        return cls(
            store=build_graph_store(settings),
            model=build_model_client(settings),
            settings=settings,
        )

    async def initialize(self) -> None:
        await self.store.ensure_schema()

    async def close(self) -> None:
        await self.store.close()
        close = getattr(self.model, "close", None)
        if close is not None:
            await close()

    # ── ingestion ────────────────────────────────────────────────────────

    async def start_ingestion(self, path: str | Path) -> JobHandle:
        return await self.pipeline.start(path)

    def job_status(self) -> JobStatus:
        return self.job_state.status()

    # ── query ────────────────────────────────────────────────────────────

    async def query(self, question: str) -> QueryAnswer:
        """
        Answer a question from the ingested graph.

        Raises NoContextAvailable when nothing relevant is stored,
        GenerationError when the answer could not be produced, and lets
        ModelUnavailable / RateLimited from the question embedding through.
        """
        context = await self.retrieval.retrieve(question)
        if context.is_empty:
            await self._log_query(context, answer=None)
            raise NoContextAvailable(f"No stored knowledge matches the question: {question!r}")

        result = await self.composer.answer(context.question, context)
        await self._log_query(context, answer=result.answer)
        return result

    async def _log_query(self, context: AugmentedContext, answer: Optional[str]) -> None:
        if not context.question:
            return
        query_key = uuid.uuid4().hex
        try:
            async with self.store.transaction() as tx:
                await tx.upsert_node(
                    QUERY,
                    query_key,
                    {
                        "question": context.question,
                        "status": context.status.value,
                        "answer": answer or "",
                        "created_at": datetime.now(timezone.utc).isoformat(),
                    },
                )
                for rank, hit in enumerate(context.chunks):
                    await tx.upsert_edge(
                        MATCHED_CHUNK,
                        query_key,
                        hit.chunk_key,
                        {"score": hit.similarity, "rank": rank},
                    )
        except Exception:
            # Query logging never fails the query itself.
            logger.exception("Failed to record query %s", query_key)

    # ── display projections ──────────────────────────────────────────────

    async def list_entities(self) -> List[EntitySummary]:
        return await self.store.list_entities()

    async def graph_snapshot(self) -> GraphSnapshot:
        return await self.store.graph_snapshot(
            max_nodes=self.settings.graph_max_nodes,
            max_edges=self.settings.graph_max_edges,
        )


__all__ = ["GraphRagService"]
