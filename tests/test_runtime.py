import asyncio
import threading

import pytest

from graph_rag.runtime import BackgroundLoop


async def _double(x: int) -> int:
    await asyncio.sleep(0)
    return 2 * x


async def _thread_name() -> str:
    return threading.current_thread().name


async def _boom() -> None:
    raise ValueError("boom")


def test_run_executes_on_the_background_thread() -> None:
    with BackgroundLoop(name="test-loop") as loop:
        assert loop.run(_double(21)) == 42
        assert loop.run(_thread_name()) == "test-loop"


def test_exceptions_propagate_to_the_caller() -> None:
    with BackgroundLoop() as loop:
        with pytest.raises(ValueError, match="boom"):
            loop.run(_boom())


def test_tasks_outlive_the_submitting_call() -> None:
    with BackgroundLoop() as loop:
        started = threading.Event()

        async def _spawn():
            async def _background():
                started.set()
                await asyncio.sleep(0.01)
                return "done"

            return asyncio.get_running_loop().create_task(_background())

        task = loop.run(_spawn())
        assert started.wait(timeout=2)

        async def _await(t):
            return await t

        assert loop.run(_await(task), timeout=2) == "done"


def test_submit_after_stop_raises() -> None:
    loop = BackgroundLoop().start()
    loop.stop()

    assert not loop.is_running
    coro = _double(1)
    with pytest.raises(RuntimeError):
        loop.submit(coro)
