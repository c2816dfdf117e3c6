from __future__ import annotations

import logging
from typing import Dict, List

from .config import Settings
from .graph_store import GraphStore
from .llm_client import ModelClient
from .models import (
    AugmentedContext,
    EntityView,
    RelationView,
    RetrievalStatus,
    VectorHit,
    normalize_entity_name,
)


logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "\n\n---\n\n"


def render_context(
    chunks: List[VectorHit],
    entities: List[EntityView],
    relations: List[RelationView],
) -> str:
    """
    Fuse chunk texts and the graph neighbourhood into one prompt context:

        Document excerpts:
        <chunk 1>
        ---
        <chunk 2>

        Key concepts: A, B.

        Relations:
        - A DRIVES B
    """
    parts = ["Document excerpts:\n" + CHUNK_SEPARATOR.join(hit.text for hit in chunks)]

    names: List[str] = []
    seen = set()
    for entity in entities:
        normalized = normalize_entity_name(entity.name)
        if normalized and normalized not in seen:
            seen.add(normalized)
            names.append(entity.name)
    if names:
        parts.append(f"Key concepts: {', '.join(names)}.")

    if relations:
        lines = [f"- {r.source_name} {r.predicate} {r.target_name}" for r in relations]
        parts.append("Relations:\n" + "\n".join(lines))

    return "\n\n".join(parts)


class RetrievalEngine:
    """
    Vector search over chunks, then a 1-hop expansion through the entities
    those chunks mention. Read-only.
    """

    def __init__(
        self,
        store: GraphStore,
        model: ModelClient,
        top_k: int = 6,
        min_similarity: float = 0.2,
        max_entities: int = 40,
        max_relations: int = 60,
    ) -> None:
        self.store = store
        self.model = model
        self.top_k = top_k
        self.min_similarity = min_similarity
        self.max_entities = max_entities
        self.max_relations = max_relations

    @classmethod
    def from_settings(cls, settings: Settings, store: GraphStore, model: ModelClient) -> "RetrievalEngine":
        return cls(
            store=store,
            model=model,
            top_k=settings.retrieval_top_k,
            min_similarity=settings.min_similarity,
            max_entities=settings.max_context_entities,
            max_relations=settings.max_context_relations,
        )

    async def retrieve(self, question: str) -> AugmentedContext:
        question = (question or "").strip()
        if not question:
            return AugmentedContext(question=question, status=RetrievalStatus.NO_CONTEXT)

        # Model errors (ModelUnavailable, RateLimited) propagate to the caller.
        embedding = await self.model.embed(question)

        hits = await self.store.vector_search(embedding, self.top_k)
        hits = sorted(
            (hit for hit in hits if hit.similarity >= self.min_similarity),
            key=lambda hit: (-hit.similarity, hit.sequence),
        )
        if not hits:
            logger.info("No chunk reached similarity %.2f for question %r", self.min_similarity, question)
            return AugmentedContext(question=question, status=RetrievalStatus.NO_CONTEXT)

        chunk_keys = [hit.chunk_key for hit in hits]
        mentioned = await self.store.mentioned_entities(chunk_keys)
        neighborhood = await self.store.neighborhood(
            [e.key for e in mentioned],
            hops=1,
            max_results=self.max_relations,
        )

        entities = self._select_entities(mentioned, neighborhood.entities)
        kept = {e.key for e in entities}
        relations = [
            r for r in neighborhood.relations
            if r.source_key in kept and r.target_key in kept
        ][: self.max_relations]

        logger.info(
            "Retrieved %d chunk(s), %d entit(ies), %d relation(s) for question %r",
            len(hits),
            len(entities),
            len(relations),
            question,
        )
        return AugmentedContext(
            question=question,
            status=RetrievalStatus.OK,
            chunks=hits,
            entities=entities,
            relations=relations,
            text=render_context(hits, entities, relations),
        )

    def _select_entities(self, mentioned: List[EntityView], neighbours: List[EntityView]) -> List[EntityView]:
        # Directly mentioned entities win when the list has to be cut.
        selected: Dict[str, EntityView] = {}
        for entity in mentioned:
            selected.setdefault(entity.key, entity)
        for entity in neighbours:
            if entity.key not in selected:
                selected[entity.key] = EntityView(key=entity.key, name=entity.name, type=entity.type, mentioned=False)
        return list(selected.values())[: self.max_entities]


__all__ = ["RetrievalEngine", "render_context", "CHUNK_SEPARATOR"]
