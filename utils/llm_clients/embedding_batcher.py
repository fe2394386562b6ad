# utils/llm_clients/embedding_batcher.py

import logging
from typing import List, Protocol

from utils.metrics import Timer

logger = logging.getLogger(__name__)


class EmbeddingProvider(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]:
        ...


def resize_embedding(embedding: List[float], target_dimensions: int) -> List[float]:
    """Truncate or right-pad with zeros to exactly `target_dimensions`"""
    if len(embedding) == target_dimensions:
        return embedding
    if len(embedding) > target_dimensions:
        return embedding[:target_dimensions]
    return embedding + [0.0] * (target_dimensions - len(embedding))


class EmbeddingBatcher:
    """
    Calls the provider once per fixed-size batch and concatenates the results.

    Order is preserved: output[i] belongs to texts[i]. A provider exception is not
    retried here; it propagates to the caller, which fails the whole source.
    Empty vectors are returned as-is (never zero-padded into a fake embedding) so the
    pipeline can drop them.
    """

    def __init__(self, provider: EmbeddingProvider, batch_size: int = 20,
                 dimensions: int = 1536, resize: bool = True):
        self.provider = provider
        self.batch_size = max(1, batch_size)
        self.dimensions = dimensions
        self.resize = resize

    async def embed(self, texts: List[str]) -> List[List[float]]:
        vectors: List[List[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = texts[start:start + self.batch_size]
            with Timer() as timer:
                batch_vectors = await self.provider.embed(batch)
            logger.debug(f"🤖 Embedded batch {start // self.batch_size + 1} ({len(batch)} texts) in {timer.elapsed_ms:.0f}ms")

            for i in range(len(batch)):
                vector = batch_vectors[i] if i < len(batch_vectors) else []
                vectors.append(self._validate(list(vector or [])))

        return vectors

    def _validate(self, vector: List[float]) -> List[float]:
        if not vector or len(vector) == self.dimensions or not self.resize:
            return vector
        return resize_embedding(vector, self.dimensions)
