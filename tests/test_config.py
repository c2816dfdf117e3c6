import pytest

from graph_rag import config
from graph_rag.errors import ConfigError


_VARS = (
    "MODEL_PROVIDER",
    "GRAPH_BACKEND",
    "CHUNK_SIZE",
    "CHUNK_OVERLAP",
    "INGEST_CONCURRENCY",
    "MIN_SIMILARITY",
    "LLM_MODEL_NAME",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in _VARS:
        monkeypatch.delenv(name, raising=False)
    config.reset_settings()
    yield
    config.reset_settings()


def test_defaults() -> None:
    settings = config.load_settings()

    assert settings.model_provider == "local"
    assert settings.uses_local_embedder
    assert settings.graph_backend == "neo4j"
    assert not settings.uses_memory_store
    assert settings.chunk_size == 1200
    assert settings.chunk_overlap == 150
    assert settings.ingest_concurrency == 4
    assert settings.llm_model_name == "qwen-4b-instruct"


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MODEL_PROVIDER", "openai")
    monkeypatch.setenv("GRAPH_BACKEND", "memory")
    monkeypatch.setenv("CHUNK_SIZE", "500")
    monkeypatch.setenv("CHUNK_OVERLAP", "50")

    settings = config.load_settings()

    assert not settings.uses_local_embedder
    assert settings.uses_memory_store
    assert (settings.chunk_size, settings.chunk_overlap) == (500, 50)


@pytest.mark.parametrize(
    "name, value",
    [
        ("CHUNK_SIZE", "big"),
        ("INGEST_CONCURRENCY", "0"),
        ("CHUNK_OVERLAP", "1200"),
        ("MIN_SIMILARITY", "1.5"),
        ("MODEL_PROVIDER", "bedrock"),
        ("GRAPH_BACKEND", "sqlite"),
    ],
)
def test_invalid_values_raise_config_error(monkeypatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigError):
        config.load_settings()


def test_get_settings_is_cached_until_reset(monkeypatch) -> None:
    first = config.get_settings()
    monkeypatch.setenv("CHUNK_SIZE", "900")

    assert config.get_settings() is first
    config.reset_settings()
    assert config.get_settings().chunk_size == 900
