from __future__ import annotations

import asyncio
import itertools
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from .errors import DanglingReference
from .graph_store import (
    EDGE_IDENTITY,
    GraphStore,
    GraphTransaction,
    _check_edge_label,
    _check_node_label,
    order_by_first_mention,
)
from .models import (
    CHUNK,
    EDGE_ENDPOINTS,
    ENTITY,
    MENTIONS,
    NODE_LABELS,
    RELATED_TO,
    EntitySummary,
    EntityView,
    GraphSnapshot,
    Neighborhood,
    RelationView,
    VectorHit,
)


logger = logging.getLogger(__name__)

EdgeId = Tuple[str, str, Optional[str]]


class InMemoryTransaction(GraphTransaction):
    """
    Applies writes immediately and keeps an undo log; the owning store
    replays the log backwards when the transaction body raises.
    """

    def __init__(self, store: "InMemoryGraphStore") -> None:
        self._store = store
        self._undo: List[Callable[[], None]] = []

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()

    async def upsert_node(self, label: str, key: str, attributes: Dict[str, Any]) -> None:
        _check_node_label(label)
        table = self._store.nodes[label]
        previous = table.get(key)
        if previous is None:
            table[key] = {**attributes, "key": key, "_seq": next(self._store._sequence)}
            self._undo.append(lambda: table.pop(key, None))
        else:
            snapshot = dict(previous)
            previous.update(attributes)
            self._undo.append(lambda: table.__setitem__(key, snapshot))

    async def upsert_edge(
        self,
        label: str,
        source_key: str,
        target_key: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        _check_edge_label(label)
        attributes = dict(attributes or {})
        source_label, target_label = EDGE_ENDPOINTS[label]
        if source_key not in self._store.nodes[source_label] or target_key not in self._store.nodes[target_label]:
            raise DanglingReference(
                f"{label} edge {source_key!r} -> {target_key!r} references a missing node"
            )
        identity_field = EDGE_IDENTITY.get(label)
        edge_id: EdgeId = (source_key, target_key, attributes.get(identity_field) if identity_field else None)
        table = self._store.edges[label]
        previous = table.get(edge_id)
        if previous is None:
            table[edge_id] = attributes
            self._undo.append(lambda: table.pop(edge_id, None))
        else:
            snapshot = dict(previous)
            previous.update(attributes)
            self._undo.append(lambda: table.__setitem__(edge_id, snapshot))

    async def clear_edges(self, label: str, source_key: str) -> None:
        _check_edge_label(label)
        table = self._store.edges[label]
        removed = {edge_id: attrs for edge_id, attrs in table.items() if edge_id[0] == source_key}
        for edge_id in removed:
            del table[edge_id]
        self._undo.append(lambda: table.update(removed))

    async def remove_chunks_beyond(self, document_key: str, count: int) -> None:
        chunks = self._store.nodes[CHUNK]
        self._drop_chunks(
            [
                key
                for key, attrs in chunks.items()
                if attrs.get("document_key") == document_key and attrs.get("index", 0) >= count
            ]
        )

    async def remove_chunk(self, chunk_key: str) -> None:
        self._drop_chunks([chunk_key])

    def _drop_chunks(self, keys: List[str]) -> None:
        chunks = self._store.nodes[CHUNK]
        stale = {key: chunks[key] for key in keys if key in chunks}
        if not stale:
            return
        for key in stale:
            del chunks[key]
        self._undo.append(lambda: chunks.update(stale))

        # DETACH: drop every edge touching a removed chunk.
        for label, (source_label, target_label) in EDGE_ENDPOINTS.items():
            if CHUNK not in (source_label, target_label):
                continue
            table = self._store.edges[label]
            dropped = {
                edge_id: attrs
                for edge_id, attrs in table.items()
                if (source_label == CHUNK and edge_id[0] in stale)
                or (target_label == CHUNK and edge_id[1] in stale)
            }
            for edge_id in dropped:
                del table[edge_id]
            self._undo.append(lambda table=table, dropped=dropped: table.update(dropped))


class InMemoryGraphStore(GraphStore):
    """
    Process-local implementation of the store contract.

    Used by the test-suite and for single-process local runs
    (GRAPH_BACKEND=memory). Transactions are serialised by a lock and
    rolled back from an undo log on error.
    """

    def __init__(self) -> None:
        self.nodes: Dict[str, Dict[str, Dict[str, Any]]] = {label: {} for label in NODE_LABELS}
        self.edges: Dict[str, Dict[EdgeId, Dict[str, Any]]] = {label: {} for label in EDGE_ENDPOINTS}
        self._sequence = itertools.count(1)
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[GraphTransaction]:
        async with self._lock:
            tx = InMemoryTransaction(self)
            try:
                yield tx
            except BaseException:
                tx.rollback()
                raise

    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[VectorHit]:
        chunks = [c for c in self.nodes[CHUNK].values() if c.get("embedding")]
        if not chunks or top_k <= 0:
            return []

        query = np.asarray(embedding, dtype="float32")
        matrix = np.asarray([c["embedding"] for c in chunks], dtype="float32")
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, matrix @ query / norms, 0.0)

        ranked = sorted(
            zip(chunks, scores.tolist()),
            key=lambda pair: (-pair[1], pair[0]["_seq"]),
        )
        return [
            VectorHit(chunk_key=c["key"], similarity=float(score), text=c.get("text", ""), sequence=c["_seq"])
            for c, score in ranked[:top_k]
        ]

    async def mentioned_entities(self, chunk_keys: Sequence[str]) -> List[EntityView]:
        wanted = set(chunk_keys)
        entities = self.nodes[ENTITY]
        rows = [
            {
                "chunk_key": chunk_key,
                "key": entity_key,
                "name": entities[entity_key].get("name"),
                "type": entities[entity_key].get("type"),
            }
            for (chunk_key, entity_key, _) in self.edges[MENTIONS]
            if chunk_key in wanted
        ]
        return order_by_first_mention(rows, chunk_keys)

    def _entity_view(self, key: str) -> EntityView:
        attrs = self.nodes[ENTITY][key]
        return EntityView(key=key, name=attrs.get("name", key), type=attrs.get("type") or "Other")

    async def neighborhood(
        self,
        entity_keys: Sequence[str],
        hops: int = 1,
        max_results: int = 100,
    ) -> Neighborhood:
        names = {key: attrs.get("name", key) for key, attrs in self.nodes[ENTITY].items()}
        entities: Dict[str, EntityView] = {}
        relations: Dict[EdgeId, RelationView] = {}
        visited = set(entity_keys)
        frontier = set(entity_keys)

        for _ in range(max(1, hops)):
            if not frontier or len(relations) >= max_results:
                break
            touching = sorted(
                (
                    edge_id
                    for edge_id in self.edges[RELATED_TO]
                    if (edge_id[0] in frontier or edge_id[1] in frontier) and edge_id not in relations
                ),
                key=lambda e: (names.get(e[0], ""), e[2] or "", names.get(e[1], "")),
            )
            next_frontier = set()
            for source, target, predicate in touching[: max_results - len(relations)]:
                relations[(source, target, predicate)] = RelationView(
                    source_key=source,
                    target_key=target,
                    source_name=names.get(source, source),
                    target_name=names.get(target, target),
                    predicate=predicate or "",
                )
                for key in (source, target):
                    entities.setdefault(key, self._entity_view(key))
                    if key not in visited:
                        visited.add(key)
                        next_frontier.add(key)
            frontier = next_frontier

        return Neighborhood(entities=list(entities.values()), relations=list(relations.values()))

    async def list_entities(self) -> List[EntitySummary]:
        mentions: Dict[str, int] = {}
        for _, entity_key, _ in self.edges[MENTIONS]:
            mentions[entity_key] = mentions.get(entity_key, 0) + 1
        summaries = [
            EntitySummary(
                key=key,
                name=attrs.get("name", key),
                type=attrs.get("type") or "Other",
                mentions=mentions.get(key, 0),
            )
            for key, attrs in self.nodes[ENTITY].items()
        ]
        summaries.sort(key=lambda s: (-s.mentions, s.name))
        return summaries

    async def graph_snapshot(self, max_nodes: int, max_edges: int) -> GraphSnapshot:
        degree: Dict[str, int] = {key: 0 for key in self.nodes[ENTITY]}
        for source, target, _ in self.edges[RELATED_TO]:
            degree[source] = degree.get(source, 0) + 1
            degree[target] = degree.get(target, 0) + 1

        ranked = sorted(
            self.nodes[ENTITY].items(),
            key=lambda item: (-degree.get(item[0], 0), item[1].get("name", item[0])),
        )[:max_nodes]
        selected = {key for key, _ in ranked}
        nodes = [
            {"id": key, "label": attrs.get("name", key), "group": attrs.get("type") or "Other"}
            for key, attrs in ranked
        ]
        edges = sorted(
            (
                {"source": source, "target": target, "type": predicate or ""}
                for source, target, predicate in self.edges[RELATED_TO]
                if source in selected and target in selected
            ),
            key=lambda e: (e["source"], e["type"], e["target"]),
        )[:max_edges]
        return GraphSnapshot(nodes=nodes, edges=edges)

    async def count_nodes(self, label: str) -> int:
        _check_node_label(label)
        return len(self.nodes[label])

    async def count_edges(self, label: str) -> int:
        _check_edge_label(label)
        return len(self.edges[label])

    def dangling_edges(self) -> List[Tuple[str, EdgeId]]:
        """Edges whose endpoints no longer exist; empty for a consistent graph."""
        broken = []
        for label, (source_label, target_label) in EDGE_ENDPOINTS.items():
            for edge_id in self.edges[label]:
                if edge_id[0] not in self.nodes[source_label] or edge_id[1] not in self.nodes[target_label]:
                    broken.append((label, edge_id))
        return broken


__all__ = ["InMemoryGraphStore", "InMemoryTransaction"]
