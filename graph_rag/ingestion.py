from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, List, Optional, Set, Tuple

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .chunking import chunk_text
from .config import Settings
from .documents import discover_files, load_document, validate_directory
from .errors import (
    ChunkProcessingError,
    EmbeddingFailure,
    ModelError,
    NotFound,
    TransientStoreError,
)
from .extractor import KnowledgeExtractor
from .graph_store import GraphStore
from .job_state import JobStateMachine
from .llm_client import ModelClient
from .models import (
    CHUNK,
    DOCUMENT,
    ENTITY,
    FILE,
    HAS_CHUNK,
    HAS_DOCUMENT,
    MENTIONS,
    NEXT_CHUNK,
    RELATED_TO,
    ChunkNode,
    DocumentNode,
    ExtractionResult,
    FileNode,
    IngestionSummary,
    SkippedChunk,
    chunk_key_for,
    document_key_for,
    normalize_entity_name,
)


logger = logging.getLogger(__name__)

# Per-chunk failures that are retried and then downgraded to a skipped chunk.
RETRYABLE_CHUNK_ERRORS = (ChunkProcessingError, ModelError)


@dataclass
class JobHandle:
    """A started ingestion job; ``wait()`` resolves when it reaches a terminal state."""

    job_id: str
    directory: Path
    task: "asyncio.Task[Optional[IngestionSummary]]"

    def done(self) -> bool:
        return self.task.done()

    async def wait(self) -> Optional[IngestionSummary]:
        return await self.task


@dataclass
class _PlannedDocument:
    file: FileNode
    document: DocumentNode
    chunks: List[str]
    # Ordinal of the first chunk within the run.
    first_ordinal: int = 0


@dataclass
class _RunState:
    total_units: int = 0
    completed_units: int = 0
    entity_keys: Set[str] = field(default_factory=set)
    relation_keys: Set[Tuple[str, str, str]] = field(default_factory=set)


async def _gather_or_cancel(*aws: Awaitable) -> list:
    """
    Like asyncio.gather, but cancels the remaining awaitables as soon as one
    of them fails, so no orphan task outlives the failure.
    """
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class IngestionPipeline:
    """
    Directory ingestion: discovery -> chunking -> bounded concurrent
    extraction + embedding -> per-chunk transactional persistence.
    """

    def __init__(
        self,
        store: GraphStore,
        model: ModelClient,
        job_state: JobStateMachine,
        extractor: Optional[KnowledgeExtractor] = None,
        chunk_size: int = 1200,
        chunk_overlap: int = 150,
        concurrency: int = 4,
        max_attempts: int = 3,
        retry_initial_wait: float = 0.5,
        retry_max_wait: float = 8.0,
    ) -> None:
        # Fail fast on invalid chunking parameters (raises ConfigError).
        chunk_text("", chunk_size, chunk_overlap)
        self.store = store
        self.model = model
        self.job_state = job_state
        self.extractor = extractor or KnowledgeExtractor(model)
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.concurrency = max(1, concurrency)
        self.max_attempts = max(1, max_attempts)
        self.retry_initial_wait = retry_initial_wait
        self.retry_max_wait = retry_max_wait
        self.current_job: Optional[JobHandle] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: GraphStore,
        model: ModelClient,
        job_state: JobStateMachine,
    ) -> "IngestionPipeline":
        return cls(
            store=store,
            model=model,
            job_state=job_state,
            extractor=KnowledgeExtractor(model, max_tokens=settings.llm_max_output_tokens),
            chunk_size=settings.chunk_size,
            chunk_overlap=settings.chunk_overlap,
            concurrency=settings.ingest_concurrency,
            max_attempts=settings.chunk_max_attempts,
            retry_initial_wait=settings.retry_initial_wait,
            retry_max_wait=settings.retry_max_wait,
        )

    # ─────────────────────────────────────────────────────────────────────
    # Job control
    # ─────────────────────────────────────────────────────────────────────

    async def start(self, directory: str | Path) -> JobHandle:
        """
        Validate the target and schedule the ingestion on the running loop.

        Raises NotFound / NotADirectory (job stays as it was) or
        AlreadyRunning when another ingestion is in progress.
        """
        root = validate_directory(directory)
        job_id = self.job_state.begin(f"Scanning {root}")
        task = asyncio.get_running_loop().create_task(
            self._run_job(root),
            name=f"ingestion-{job_id}",
        )
        self.current_job = JobHandle(job_id=job_id, directory=root, task=task)
        return self.current_job

    async def run(self, directory: str | Path) -> Optional[IngestionSummary]:
        """Start an ingestion and wait for it; returns None when the job failed."""
        handle = await self.start(directory)
        return await handle.wait()

    async def _run_job(self, root: Path) -> Optional[IngestionSummary]:
        summary = IngestionSummary()
        started = time.perf_counter()
        try:
            await self._ingest(root, summary)
        except asyncio.CancelledError:
            summary.elapsed_seconds = time.perf_counter() - started
            self.job_state.fail("cancelled", summary)
            raise
        except Exception as e:
            summary.elapsed_seconds = time.perf_counter() - started
            logger.exception("Ingestion of %s failed", root)
            self.job_state.fail(f"{type(e).__name__}: {e}", summary)
            return None

        summary.elapsed_seconds = time.perf_counter() - started
        self.job_state.complete(summary)
        return summary

    # ─────────────────────────────────────────────────────────────────────
    # Run body
    # ─────────────────────────────────────────────────────────────────────

    async def _ingest(self, root: Path, summary: IngestionSummary) -> None:
        supported, unsupported = await asyncio.to_thread(discover_files, root)
        summary.files_scanned = len(supported) + len(unsupported)
        summary.files_unsupported = len(unsupported)
        for path in unsupported:
            logger.debug("Skipping file with unsupported extension: %s", path)

        planned = await self._plan(supported, summary)
        if not root.is_dir():
            raise NotFound(f"Directory disappeared during ingestion: {root}")

        state = _RunState(total_units=sum(len(p.chunks) for p in planned))
        logger.info(
            "Ingesting %d document(s) with %d chunk(s) from %s",
            len(planned),
            state.total_units,
            root,
        )
        self.job_state.advance(0, state.total_units, f"Processing {state.total_units} chunk(s)")

        semaphore = asyncio.Semaphore(self.concurrency)
        await _gather_or_cancel(
            *(self._ingest_document(doc, semaphore, state, summary) for doc in planned)
        )
        summary.entities = len(state.entity_keys)
        summary.relations = len(state.relation_keys)

    async def _plan(self, paths: List[Path], summary: IngestionSummary) -> List[_PlannedDocument]:
        planned: List[_PlannedDocument] = []
        total = len(paths)
        ordinal = 0
        for i, path in enumerate(paths, start=1):
            self.job_state.set_message(f"[{i}/{total}] Reading {path.name}")
            try:
                loaded = await asyncio.to_thread(load_document, path)
            except Exception as e:
                # pdfplumber raises a variety of parser errors; any of them
                # only affects this file.
                summary.files_skipped += 1
                logger.warning("Skipping %s: could not read text (%s)", path, e)
                continue

            chunks = chunk_text(loaded.text, self.chunk_size, self.chunk_overlap)
            if not chunks:
                summary.files_skipped += 1
                logger.warning("Skipping %s: no extractable text", path)
                continue

            document = DocumentNode(
                key=document_key_for(loaded.file.path),
                source=loaded.file.path,
                title=loaded.file.filename,
                doc_type=loaded.file.extension or "text",
                chunk_count=len(chunks),
            )
            planned.append(
                _PlannedDocument(
                    file=loaded.file,
                    document=document,
                    chunks=chunks,
                    first_ordinal=ordinal,
                )
            )
            ordinal += len(chunks)
        return planned

    async def _ingest_document(
        self,
        planned: _PlannedDocument,
        semaphore: asyncio.Semaphore,
        state: _RunState,
        summary: IngestionSummary,
    ) -> None:
        file_node, document = planned.file, planned.document

        async def _write_document() -> None:
            async with self.store.transaction() as tx:
                await tx.upsert_node(FILE, file_node.key, file_node.attributes())
                await tx.upsert_node(DOCUMENT, document.key, document.attributes())
                await tx.upsert_edge(HAS_DOCUMENT, file_node.key, document.key)
                await tx.remove_chunks_beyond(document.key, document.chunk_count)

        await self._with_store_retry(_write_document)

        results = await _gather_or_cancel(
            *(
                self._ingest_chunk(planned, index, text, semaphore, state, summary)
                for index, text in enumerate(planned.chunks)
            )
        )
        persisted = sorted(index for index in results if index is not None)
        await self._link_chunks(document.key, persisted)

        summary.files_ingested += 1
        logger.info(
            "Ingested %s: %d/%d chunk(s) stored",
            file_node.path,
            len(persisted),
            len(planned.chunks),
        )

    async def _ingest_chunk(
        self,
        planned: _PlannedDocument,
        index: int,
        text: str,
        semaphore: asyncio.Semaphore,
        state: _RunState,
        summary: IngestionSummary,
    ) -> Optional[int]:
        async with semaphore:
            try:
                extraction, embedding = await self._analyze(text)
            except RETRYABLE_CHUNK_ERRORS as e:
                summary.skipped_chunks.append(
                    SkippedChunk(path=planned.file.path, index=index, reason=f"{type(e).__name__}: {e}")
                )
                logger.warning(
                    "Skipping chunk %d of %s after %d attempt(s): %s",
                    index,
                    planned.file.path,
                    self.max_attempts,
                    e,
                )
                # A chunk stored at this index by an earlier run holds content
                # the file no longer has.
                await self._with_store_retry(
                    lambda: self._remove_chunk(chunk_key_for(planned.document.key, index))
                )
                self._tick(state, planned.file.filename)
                return None

        chunk = ChunkNode(
            document_key=planned.document.key,
            index=index,
            text=text,
            embedding=embedding,
            ordinal=planned.first_ordinal + index,
        )
        await self._with_store_retry(lambda: self._persist_chunk(chunk, extraction))

        summary.chunks_persisted += 1
        if extraction.parse_failed:
            summary.extraction_parse_failures += 1
        state.entity_keys.update(e.key for e in extraction.entities)
        state.relation_keys.update(
            (normalize_entity_name(r.source), normalize_entity_name(r.target), r.label)
            for r in extraction.relations
        )
        self._tick(state, planned.file.filename)
        return index

    def _tick(self, state: _RunState, filename: str) -> None:
        state.completed_units += 1
        self.job_state.advance(
            state.completed_units,
            state.total_units,
            f"[{state.completed_units}/{state.total_units}] chunks processed ({filename})",
        )

    # ─────────────────────────────────────────────────────────────────────
    # Model calls
    # ─────────────────────────────────────────────────────────────────────

    def _retrying(self, errors: tuple) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.retry_initial_wait, max=self.retry_max_wait),
            retry=retry_if_exception_type(errors),
            before_sleep=before_sleep_log(logger, logging.WARNING),
        )

    async def _analyze(self, text: str) -> Tuple[ExtractionResult, List[float]]:
        async for attempt in self._retrying(RETRYABLE_CHUNK_ERRORS):
            with attempt:
                extraction, embedding = await _gather_or_cancel(
                    self.extractor.extract(text),
                    self._embed(text),
                )
        return extraction, embedding

    async def _embed(self, text: str) -> List[float]:
        try:
            vector = await self.model.embed(text)
        except (ModelError, ChunkProcessingError):
            raise
        except Exception as e:
            raise EmbeddingFailure(f"Embedding call failed: {e}") from e
        if not vector:
            raise EmbeddingFailure("Embedding call returned an empty vector")
        return list(vector)

    # ─────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────

    async def _with_store_retry(self, write) -> None:
        async for attempt in self._retrying((TransientStoreError,)):
            with attempt:
                await write()

    async def _persist_chunk(self, chunk: ChunkNode, extraction: ExtractionResult) -> None:
        """Chunk, its entities, MENTIONS and RELATED_TO edges: all or nothing."""
        async with self.store.transaction() as tx:
            await tx.upsert_node(CHUNK, chunk.key, chunk.attributes())
            await tx.upsert_edge(HAS_CHUNK, chunk.document_key, chunk.key)
            await tx.clear_edges(MENTIONS, chunk.key)
            for entity in extraction.entities:
                await tx.upsert_node(ENTITY, entity.key, {"name": entity.name, "type": entity.type})
                await tx.upsert_edge(MENTIONS, chunk.key, entity.key)
            for relation in extraction.relations:
                await tx.upsert_edge(
                    RELATED_TO,
                    normalize_entity_name(relation.source),
                    normalize_entity_name(relation.target),
                    {"predicate": relation.label},
                )

    async def _remove_chunk(self, chunk_key: str) -> None:
        async with self.store.transaction() as tx:
            await tx.remove_chunk(chunk_key)

    async def _link_chunks(self, document_key: str, persisted: List[int]) -> None:
        pairs = [(a, b) for a, b in zip(persisted, persisted[1:]) if b == a + 1]
        if not pairs:
            return

        async def _write_links() -> None:
            async with self.store.transaction() as tx:
                for a, b in pairs:
                    await tx.upsert_edge(
                        NEXT_CHUNK,
                        chunk_key_for(document_key, a),
                        chunk_key_for(document_key, b),
                    )

        await self._with_store_retry(_write_links)


__all__ = ["IngestionPipeline", "JobHandle", "RETRYABLE_CHUNK_ERRORS"]
