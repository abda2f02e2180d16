from abc import ABC, abstractmethod
from typing import List, Sequence
import asyncio
import hashlib
import math
import re

from langchain_core.embeddings import Embeddings


class EmbeddingProvider(ABC):
    """Turns text into a dense vector"""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Embed a single text"""
        pass

    async def embed_many(self, texts: Sequence[str]) -> List[List[float]]:
        return list(await asyncio.gather(*(self.embed(text) for text in texts)))


class LangChainEmbeddingProvider(EmbeddingProvider):
    """Adapter over any LangChain ``Embeddings`` implementation"""

    def __init__(self, embeddings: Embeddings):
        self.embeddings = embeddings

    async def embed(self, text: str) -> List[float]:
        return list(await self.embeddings.aembed_query(text))


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embedder.

    Each word is hashed into one of ``dimensions`` buckets with a stable
    digest, so identical text always maps to the same unit vector across
    processes. Useful offline and in tests where no embedding model runs.
    """

    def __init__(self, dimensions: int = 384):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.dimensions = dimensions

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions

        for word in re.findall(r'\w+', text.lower()):
            digest = hashlib.md5(word.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimensions
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = math.sqrt(sum(v * v for v in vector))
        if norm == 0:
            return vector
        return [v / norm for v in vector]
