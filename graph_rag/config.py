import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError


# Load environment variables from a .env file if present.
load_dotenv()


@dataclass(frozen=True)
class Settings:
    """Application configuration loaded from environment variables."""

    model_provider: str  # "local" or "openai"

    llm_base_url: str
    llm_api_key: str
    llm_model_name: str
    llm_max_output_tokens: int
    llm_temperature: float

    embedding_model_name: str
    embedder_model_path: Path
    embedder_device: str
    embedding_dimensions: int

    graph_backend: str  # "neo4j" or "memory"
    neo4j_uri: str
    neo4j_username: str
    neo4j_password: str
    neo4j_database: str

    chunk_size: int
    chunk_overlap: int
    ingest_concurrency: int
    chunk_max_attempts: int
    retry_initial_wait: float
    retry_max_wait: float

    retrieval_top_k: int
    min_similarity: float
    max_context_entities: int
    max_context_relations: int

    # Limits for the graph view
    graph_max_nodes: int
    graph_max_edges: int

    @property
    def uses_local_embedder(self) -> bool:
        return self.model_provider.lower() == "local"

    @property
    def uses_memory_store(self) -> bool:
        return self.graph_backend.lower() == "memory"


_settings: Settings | None = None


def _int_env(name: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float_env(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {value}")
    return value


def _validate(settings: Settings) -> None:
    if settings.model_provider.lower() not in ("local", "openai"):
        raise ConfigError(f"Unsupported MODEL_PROVIDER: {settings.model_provider!r}")
    if settings.graph_backend.lower() not in ("neo4j", "memory"):
        raise ConfigError(f"Unsupported GRAPH_BACKEND: {settings.graph_backend!r}")
    if settings.chunk_overlap >= settings.chunk_size:
        raise ConfigError(
            f"CHUNK_OVERLAP ({settings.chunk_overlap}) must be smaller than "
            f"CHUNK_SIZE ({settings.chunk_size})"
        )
    if not 0.0 <= settings.min_similarity <= 1.0:
        raise ConfigError("MIN_SIMILARITY must be within [0, 1]")


def load_settings() -> Settings:
    """
    Build a fresh Settings instance from environment variables.

    Environment variables (with reasonable defaults for local dev):
      - MODEL_PROVIDER, LLM_BASE_URL, LLM_API_KEY, LLM_MODEL_NAME
      - EMBEDDING_MODEL_NAME, EMBEDDER_MODEL_PATH, EMBEDDER_DEVICE
      - GRAPH_BACKEND, NEO4J_URI, NEO4J_USERNAME, NEO4J_PASSWORD
      - CHUNK_SIZE, CHUNK_OVERLAP, INGEST_CONCURRENCY, CHUNK_MAX_ATTEMPTS
      - RETRIEVAL_TOP_K, MIN_SIMILARITY
    """
    settings = Settings(
        model_provider=os.getenv("MODEL_PROVIDER", "local"),
        llm_base_url=os.getenv("LLM_BASE_URL", "http://127.0.0.1:8000/v1"),
        llm_api_key=os.getenv("LLM_API_KEY", "dummy"),
        llm_model_name=os.getenv("LLM_MODEL_NAME", "qwen-4b-instruct"),
        llm_max_output_tokens=_int_env("LLM_MAX_OUTPUT_TOKENS", 1024, minimum=1),
        llm_temperature=_float_env("LLM_TEMPERATURE", 0.2),
        embedding_model_name=os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-small"),
        embedder_model_path=Path(
            os.getenv("EMBEDDER_MODEL_PATH", "./models/bge-m3")
        ).resolve(),
        embedder_device=os.getenv("EMBEDDER_DEVICE", "cpu"),
        embedding_dimensions=_int_env("EMBEDDING_DIMENSIONS", 1024, minimum=1),
        graph_backend=os.getenv("GRAPH_BACKEND", "neo4j"),
        neo4j_uri=os.getenv("NEO4J_URI", "bolt://127.0.0.1:7687"),
        neo4j_username=os.getenv("NEO4J_USERNAME", "neo4j"),
        neo4j_password=os.getenv("NEO4J_PASSWORD", "password"),
        neo4j_database=os.getenv("NEO4J_DATABASE", "neo4j"),
        chunk_size=_int_env("CHUNK_SIZE", 1200, minimum=1),
        chunk_overlap=_int_env("CHUNK_OVERLAP", 150),
        ingest_concurrency=_int_env("INGEST_CONCURRENCY", 4, minimum=1),
        chunk_max_attempts=_int_env("CHUNK_MAX_ATTEMPTS", 3, minimum=1),
        retry_initial_wait=_float_env("RETRY_INITIAL_WAIT", 0.5),
        retry_max_wait=_float_env("RETRY_MAX_WAIT", 8.0),
        retrieval_top_k=_int_env("RETRIEVAL_TOP_K", 6, minimum=1),
        min_similarity=_float_env("MIN_SIMILARITY", 0.2),
        max_context_entities=_int_env("MAX_CONTEXT_ENTITIES", 40, minimum=1),
        max_context_relations=_int_env("MAX_CONTEXT_RELATIONS", 60),
        graph_max_nodes=_int_env("GRAPH_MAX_NODES", 300, minimum=1),
        graph_max_edges=_int_env("GRAPH_MAX_EDGES", 500),
    )
    _validate(settings)
    return settings


def get_settings() -> Settings:
    """
    Return singleton Settings instance populated from environment variables.
    """
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached Settings so the next get_settings() re-reads the env."""
    global _settings
    _settings = None


__all__ = ["Settings", "get_settings", "load_settings", "reset_settings"]
