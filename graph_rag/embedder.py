from __future__ import annotations

import asyncio
import logging
import threading
from pathlib import Path
from typing import List

from sentence_transformers import SentenceTransformer

from .errors import EmbeddingFailure


logger = logging.getLogger(__name__)


class SentenceTransformerEmbedder:
    """
    Lazily loaded local embedding model (bge-m3 by default).

    ``encode`` blocks; ``aencode`` runs it in a worker thread so the event
    loop keeps serving other chunks while the model computes.
    """

    def __init__(self, model_path: Path, device: str = "cpu") -> None:
        self.model_path = model_path
        self.device = device
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> SentenceTransformer:
        with self._lock:
            if self._model is None:
                logger.info("Loading embedder from %s on %s", self.model_path, self.device)
                self._model = SentenceTransformer(str(self.model_path), device=self.device)
            return self._model

    def encode(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        model = self._get_model()
        try:
            embeddings = model.encode(texts, convert_to_numpy=True, normalize_embeddings=True)
        except (RuntimeError, ValueError) as e:
            raise EmbeddingFailure(f"Local embedder failed: {e}") from e
        return embeddings.tolist()

    async def aencode(self, text: str) -> List[float]:
        vectors = await asyncio.to_thread(self.encode, [text])
        return vectors[0]


__all__ = ["SentenceTransformerEmbedder"]
