from __future__ import annotations

import abc
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence

from neo4j import AsyncGraphDatabase
from neo4j.exceptions import AuthError, ServiceUnavailable, SessionExpired, TransientError

from .errors import DanglingReference, StoreUnavailable, TransientStoreError
from .models import (
    CHUNK,
    EDGE_ENDPOINTS,
    ENTITY,
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

VECTOR_INDEX_NAME = "chunk_embedding_index"

# Edge attributes that take part in the edge identity, per edge label.
EDGE_IDENTITY = {RELATED_TO: "predicate"}


def _check_node_label(label: str) -> None:
    if label not in NODE_LABELS:
        raise ValueError(f"Unknown node label: {label!r}")


def _check_edge_label(label: str) -> None:
    if label not in EDGE_ENDPOINTS:
        raise ValueError(f"Unknown edge label: {label!r}")


def order_by_first_mention(
    rows: Iterable[Dict[str, Any]],
    chunk_keys: Sequence[str],
) -> List[EntityView]:
    """
    Turn (chunk_key, key, name, type) rows into entities ordered by the rank
    of the first chunk that mentions them, then by name.
    """
    rank = {key: i for i, key in enumerate(chunk_keys)}
    best: Dict[str, tuple] = {}
    for row in rows:
        position = rank.get(row["chunk_key"], len(rank))
        current = best.get(row["key"])
        if current is None or position < current[0]:
            best[row["key"]] = (position, row["name"] or row["key"], row["type"] or "Other")
    ordered = sorted(best.items(), key=lambda item: (item[1][0], item[1][1].casefold()))
    return [
        EntityView(key=key, name=name, type=etype, mentioned=True)
        for key, (_, name, etype) in ordered
    ]


class GraphTransaction(abc.ABC):
    """Writes performed inside one all-or-nothing store transaction."""

    @abc.abstractmethod
    async def upsert_node(self, label: str, key: str, attributes: Dict[str, Any]) -> None:
        """Insert the node or overwrite the given attributes in place."""

    @abc.abstractmethod
    async def upsert_edge(
        self,
        label: str,
        source_key: str,
        target_key: str,
        attributes: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Insert or update an edge between two existing nodes.

        Raises DanglingReference when either endpoint is missing.
        """

    @abc.abstractmethod
    async def clear_edges(self, label: str, source_key: str) -> None:
        """Remove all outgoing ``label`` edges of a node."""

    @abc.abstractmethod
    async def remove_chunks_beyond(self, document_key: str, count: int) -> None:
        """Delete chunks of a document whose index is >= ``count``."""

    @abc.abstractmethod
    async def remove_chunk(self, chunk_key: str) -> None:
        """Delete one chunk and every edge touching it; a missing chunk is a no-op."""


class GraphStore(abc.ABC):
    """Combined graph + vector store used by the ingestion and query pipelines."""

    async def ensure_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    def transaction(self) -> Any:
        """Async context manager yielding a GraphTransaction."""

    @abc.abstractmethod
    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[VectorHit]:
        """Top-K chunks by cosine similarity, best first, ties by creation order."""

    @abc.abstractmethod
    async def mentioned_entities(self, chunk_keys: Sequence[str]) -> List[EntityView]:
        """Entities MENTIONED by the given chunks, ordered by first mention."""

    @abc.abstractmethod
    async def neighborhood(
        self,
        entity_keys: Sequence[str],
        hops: int = 1,
        max_results: int = 100,
    ) -> Neighborhood:
        """
        RELATED_TO relations within ``hops`` of the given entities, at most
        ``max_results`` of them, with their endpoint entities.
        """

    @abc.abstractmethod
    async def list_entities(self) -> List[EntitySummary]: ...

    @abc.abstractmethod
    async def graph_snapshot(self, max_nodes: int, max_edges: int) -> GraphSnapshot: ...

    @abc.abstractmethod
    async def count_nodes(self, label: str) -> int: ...

    @abc.abstractmethod
    async def count_edges(self, label: str) -> int: ...


# ─────────────────────────────────────────────────────────────────────────────
# Neo4j
# ─────────────────────────────────────────────────────────────────────────────

_UNAVAILABLE = (ServiceUnavailable, SessionExpired, AuthError)


class Neo4jTransaction(GraphTransaction):
    def __init__(self, tx) -> None:
        self._tx = tx

    async def upsert_node(self, label: str, key: str, attributes: Dict[str, Any]) -> None:
        _check_node_label(label)
        # Labels cannot be parameterised; they come from the whitelist above.
        await self._tx.run(
            f"""
            MERGE (n:{label} {{key: $key}})
            ON CREATE SET n.created_at_ms = timestamp()
            SET n += $attributes
            """,
            key=key,
            attributes=attributes,
        )

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
        identity_field = EDGE_IDENTITY.get(label)
        identity = f" {{{identity_field}: $identity}}" if identity_field else ""

        result = await self._tx.run(
            f"""
            MATCH (s:{source_label} {{key: $source}})
            MATCH (t:{target_label} {{key: $target}})
            MERGE (s)-[r:{label}{identity}]->(t)
            SET r += $attributes
            RETURN count(r) AS n
            """,
            source=source_key,
            target=target_key,
            identity=attributes.get(identity_field) if identity_field else None,
            attributes=attributes,
        )
        record = await result.single()
        if not record or record["n"] == 0:
            raise DanglingReference(
                f"{label} edge {source_key!r} -> {target_key!r} references a missing node"
            )

    async def clear_edges(self, label: str, source_key: str) -> None:
        _check_edge_label(label)
        source_label, _ = EDGE_ENDPOINTS[label]
        await self._tx.run(
            f"MATCH (s:{source_label} {{key: $key}})-[r:{label}]->() DELETE r",
            key=source_key,
        )

    async def remove_chunks_beyond(self, document_key: str, count: int) -> None:
        await self._tx.run(
            f"""
            MATCH (c:{CHUNK} {{document_key: $document_key}})
            WHERE c.index >= $count
            DETACH DELETE c
            """,
            document_key=document_key,
            count=count,
        )

    async def remove_chunk(self, chunk_key: str) -> None:
        await self._tx.run(
            f"MATCH (c:{CHUNK} {{key: $key}}) DETACH DELETE c",
            key=chunk_key,
        )


class Neo4jGraphStore(GraphStore):
    """
    Neo4j-backed store: MERGE upserts keyed by ``key``, uniqueness
    constraints per label, and a native vector index over Chunk.embedding.
    """

    def __init__(
        self,
        uri: str,
        username: str,
        password: str,
        database: str = "neo4j",
        embedding_dimensions: int = 1024,
    ) -> None:
        self.uri = uri
        self.database = database
        self.embedding_dimensions = embedding_dimensions
        self._driver = AsyncGraphDatabase.driver(uri, auth=(username, password))

    async def close(self) -> None:
        await self._driver.close()

    async def _read(self, query: str, **params: Any) -> List[Dict[str, Any]]:
        async def _work(tx):
            result = await tx.run(query, **params)
            return [record.data() async for record in result]

        try:
            async with self._driver.session(database=self.database) as session:
                return await session.execute_read(_work)
        except _UNAVAILABLE as e:
            raise StoreUnavailable(f"Neo4j at {self.uri} is unavailable: {e}") from e

    async def _write(self, query: str, **params: Any) -> None:
        try:
            async with self._driver.session(database=self.database) as session:
                await session.run(query, **params)
        except _UNAVAILABLE as e:
            raise StoreUnavailable(f"Neo4j at {self.uri} is unavailable: {e}") from e

    async def ensure_schema(self) -> None:
        for label in NODE_LABELS:
            await self._write(
                f"CREATE CONSTRAINT {label.lower()}_key IF NOT EXISTS "
                f"FOR (n:{label}) REQUIRE n.key IS UNIQUE"
            )
        await self._write(
            f"CREATE INDEX chunk_document IF NOT EXISTS FOR (c:{CHUNK}) ON (c.document_key)"
        )
        await self._write(
            f"""
            CREATE VECTOR INDEX {VECTOR_INDEX_NAME} IF NOT EXISTS
            FOR (c:{CHUNK}) ON (c.embedding)
            OPTIONS {{indexConfig: {{
              `vector.dimensions`: $dim,
              `vector.similarity_function`: 'cosine'
            }}}}
            """,
            dim=self.embedding_dimensions,
        )
        logger.info("Neo4j schema ensured (constraints and vector index %s)", VECTOR_INDEX_NAME)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[GraphTransaction]:
        try:
            async with self._driver.session(database=self.database) as session:
                tx = await session.begin_transaction()
                try:
                    yield Neo4jTransaction(tx)
                except BaseException:
                    # close() rolls back a transaction that was not committed
                    await tx.close()
                    raise
                else:
                    await tx.commit()
        except _UNAVAILABLE as e:
            raise StoreUnavailable(f"Neo4j at {self.uri} is unavailable: {e}") from e
        except TransientError as e:
            raise TransientStoreError(f"Neo4j transaction conflict: {e}") from e

    async def vector_search(self, embedding: Sequence[float], top_k: int) -> List[VectorHit]:
        # timestamp() has millisecond resolution; chunks written in the same
        # millisecond fall back to their position in the ingestion run.
        rows = await self._read(
            """
            CALL db.index.vector.queryNodes($index_name, $k, $embedding)
            YIELD node, score
            RETURN node.key AS key, node.text AS text, score,
                   coalesce(node.created_at_ms, 0) AS sequence,
                   coalesce(node.ordinal, 0) AS ordinal
            ORDER BY score DESC, sequence ASC, ordinal ASC
            """,
            index_name=VECTOR_INDEX_NAME,
            k=top_k,
            embedding=list(embedding),
        )
        # Neo4j reports cosine scores rescaled to [0, 1]; convert back.
        return [
            VectorHit(
                chunk_key=row["key"],
                similarity=2.0 * float(row["score"]) - 1.0,
                text=row["text"] or "",
                sequence=int(row["sequence"]),
            )
            for row in rows
        ]

    async def mentioned_entities(self, chunk_keys: Sequence[str]) -> List[EntityView]:
        if not chunk_keys:
            return []
        rows = await self._read(
            f"""
            MATCH (c:{CHUNK})-[:MENTIONS]->(e:{ENTITY})
            WHERE c.key IN $keys
            RETURN c.key AS chunk_key, e.key AS key, e.name AS name, e.type AS type
            """,
            keys=list(chunk_keys),
        )
        return order_by_first_mention(rows, chunk_keys)

    async def neighborhood(
        self,
        entity_keys: Sequence[str],
        hops: int = 1,
        max_results: int = 100,
    ) -> Neighborhood:
        entities: Dict[str, EntityView] = {}
        relations: Dict[tuple, RelationView] = {}
        visited = set(entity_keys)
        frontier = list(entity_keys)

        for _ in range(max(1, hops)):
            if not frontier or len(relations) >= max_results:
                break
            rows = await self._read(
                f"""
                MATCH (a:{ENTITY})-[r:{RELATED_TO}]-(:{ENTITY})
                WHERE a.key IN $keys
                WITH DISTINCT r
                WITH r, startNode(r) AS s, endNode(r) AS t
                RETURN s.key AS source_key, s.name AS source_name, s.type AS source_type,
                       t.key AS target_key, t.name AS target_name, t.type AS target_type,
                       r.predicate AS predicate
                ORDER BY source_name, predicate, target_name
                LIMIT $limit
                """,
                keys=frontier,
                limit=max_results - len(relations),
            )
            next_frontier = []
            for row in rows:
                triple = (row["source_key"], row["target_key"], row["predicate"])
                if triple in relations:
                    continue
                relations[triple] = RelationView(
                    source_key=row["source_key"],
                    target_key=row["target_key"],
                    source_name=row["source_name"],
                    target_name=row["target_name"],
                    predicate=row["predicate"],
                )
                for side in ("source", "target"):
                    key = row[f"{side}_key"]
                    entities.setdefault(
                        key,
                        EntityView(key=key, name=row[f"{side}_name"], type=row[f"{side}_type"] or "Other"),
                    )
                    if key not in visited:
                        visited.add(key)
                        next_frontier.append(key)
            frontier = next_frontier

        return Neighborhood(entities=list(entities.values()), relations=list(relations.values()))

    async def list_entities(self) -> List[EntitySummary]:
        rows = await self._read(
            f"""
            MATCH (e:{ENTITY})
            OPTIONAL MATCH (:{CHUNK})-[m:MENTIONS]->(e)
            RETURN e.key AS key, e.name AS name, e.type AS type, count(m) AS mentions
            ORDER BY mentions DESC, name ASC
            """
        )
        return [
            EntitySummary(key=r["key"], name=r["name"], type=r["type"] or "Other", mentions=r["mentions"])
            for r in rows
        ]

    async def graph_snapshot(self, max_nodes: int, max_edges: int) -> GraphSnapshot:
        # Если узлов слишком много, берём только самые связанные
        nodes = await self._read(
            f"""
            MATCH (e:{ENTITY})
            OPTIONAL MATCH (e)-[r:{RELATED_TO}]-(:{ENTITY})
            RETURN e.key AS id, e.name AS label, e.type AS group, count(r) AS degree
            ORDER BY degree DESC, label ASC
            LIMIT $limit
            """,
            limit=max_nodes,
        )
        selected = [n["id"] for n in nodes]
        edges = await self._read(
            f"""
            MATCH (s:{ENTITY})-[r:{RELATED_TO}]->(t:{ENTITY})
            WHERE s.key IN $keys AND t.key IN $keys
            RETURN s.key AS source, t.key AS target, r.predicate AS type
            ORDER BY source, type, target
            LIMIT $limit
            """,
            keys=selected,
            limit=max_edges,
        )
        return GraphSnapshot(
            nodes=[{"id": n["id"], "label": n["label"], "group": n["group"] or "Other"} for n in nodes],
            edges=edges,
        )

    async def count_nodes(self, label: str) -> int:
        _check_node_label(label)
        rows = await self._read(f"MATCH (n:{label}) RETURN count(n) AS n")
        return int(rows[0]["n"]) if rows else 0

    async def count_edges(self, label: str) -> int:
        _check_edge_label(label)
        rows = await self._read(f"MATCH ()-[r:{label}]->() RETURN count(r) AS n")
        return int(rows[0]["n"]) if rows else 0


def build_graph_store(settings) -> GraphStore:
    if settings.uses_memory_store:
        from .memory_store import InMemoryGraphStore

        logger.info("Using in-process graph store")
        return InMemoryGraphStore()

    logger.info("Using Neo4j graph store at %s (database=%s)", settings.neo4j_uri, settings.neo4j_database)
    return Neo4jGraphStore(
        uri=settings.neo4j_uri,
        username=settings.neo4j_username,
        password=settings.neo4j_password,
        database=settings.neo4j_database,
        embedding_dimensions=settings.embedding_dimensions,
    )


__all__ = [
    "VECTOR_INDEX_NAME",
    "GraphTransaction",
    "GraphStore",
    "Neo4jTransaction",
    "Neo4jGraphStore",
    "order_by_first_mention",
    "build_graph_store",
]
