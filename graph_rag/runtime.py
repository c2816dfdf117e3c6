from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Coroutine, Optional, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class BackgroundLoop:
    """
    Одно долгоживущее event loop в фоновом daemon-потоке.

    Synchronous callers (the Streamlit script thread, CLI scripts) submit
    coroutines with ``submit`` / ``run``. Keeping a single loop alive lets
    an ingestion task keep running between Streamlit reruns while the page
    polls the job status.
    """

    def __init__(self, name: str = "graph-rag-loop") -> None:
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._ready = threading.Event()
        self._lock = threading.Lock()

    def start(self) -> "BackgroundLoop":
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return self
            self._ready.clear()
            self._thread = threading.Thread(target=self._worker, name=self.name, daemon=True)
            self._thread.start()
        self._ready.wait()
        logger.info("Background event loop %s started", self.name)
        return self

    def _worker(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def submit(self, coro: Coroutine[Any, Any, T]) -> "Future[T]":
        """Schedule a coroutine on the loop and return a concurrent Future."""
        if not self.is_running or self._loop is None:
            coro.close()
            raise RuntimeError(f"Background loop {self.name} is not running")
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def run(self, coro: Coroutine[Any, Any, T], timeout: Optional[float] = None) -> T:
        """Run a coroutine on the loop and block until it returns (or raises)."""
        return self.submit(coro).result(timeout=timeout)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            loop.call_soon_threadsafe(loop.stop)
            thread.join(timeout=timeout)
            self._loop = None
            self._thread = None
        logger.info("Background event loop %s stopped", self.name)

    def __enter__(self) -> "BackgroundLoop":
        return self.start()

    def __exit__(self, *exc_info) -> None:
        self.stop()


__all__ = ["BackgroundLoop"]
