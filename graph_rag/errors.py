"""
Exception hierarchy shared by the ingestion and query pipelines.

Adapters translate provider exceptions (openai, neo4j) into these types,
so callers never need to import a provider package to handle failures.
"""


class GraphRagError(Exception):
    """Base class for all errors raised by this package."""


class ConfigError(GraphRagError):
    """Invalid configuration or call parameters (e.g. chunk sizes)."""


class NotFound(GraphRagError):
    """Ingestion target does not exist."""


class NotADirectory(GraphRagError):
    """Ingestion target exists but is not a directory."""


class AlreadyRunning(GraphRagError):
    """An ingestion job is already running."""


class ChunkProcessingError(GraphRagError):
    """Per-chunk failure; retried and then downgraded to a skipped chunk."""


class ExtractionFailure(ChunkProcessingError):
    pass


class EmbeddingFailure(ChunkProcessingError):
    pass


class StoreUnavailable(GraphRagError):
    """The graph store cannot be reached; fatal for the current run."""


class TransientStoreError(GraphRagError):
    """A write conflicted with a concurrent transaction and may be retried."""


class DanglingReference(GraphRagError):
    """An edge was written whose source or target node does not exist."""


class ModelError(GraphRagError):
    """Base class for model provider failures."""


class ModelUnavailable(ModelError):
    pass


class RateLimited(ModelError):
    pass


class GenerationError(GraphRagError):
    """Answer generation failed; not retried internally."""


class NoContextAvailable(GraphRagError):
    """
    No stored chunk is similar enough to the question.

    This is a legitimate empty result rather than a failure: callers decide
    whether to report "no knowledge available" or query the model anyway.
    """


__all__ = [
    "GraphRagError",
    "ConfigError",
    "NotFound",
    "NotADirectory",
    "AlreadyRunning",
    "ChunkProcessingError",
    "ExtractionFailure",
    "EmbeddingFailure",
    "StoreUnavailable",
    "TransientStoreError",
    "DanglingReference",
    "ModelError",
    "ModelUnavailable",
    "RateLimited",
    "GenerationError",
    "NoContextAvailable",
]
