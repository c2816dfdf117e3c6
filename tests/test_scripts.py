import importlib.util
from pathlib import Path

import pytest

from graph_rag import config


ASK_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "ask.py"


def _load_ask():
    module_spec = importlib.util.spec_from_file_location("ask_script", ASK_SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


@pytest.fixture(autouse=True)
def clean_settings():
    config.reset_settings()
    yield
    config.reset_settings()


@pytest.mark.asyncio
async def test_ask_refuses_the_in_process_backend(monkeypatch, capsys) -> None:
    monkeypatch.setenv("GRAPH_BACKEND", "memory")
    ask = _load_ask()

    def _unexpected(*args, **kwargs):
        raise AssertionError("no service should be built")

    monkeypatch.setattr(ask.GraphRagService, "from_settings", _unexpected)

    assert await ask._ask("What drives AI?") == 1
    assert "GRAPH_BACKEND=memory" in capsys.readouterr().out
