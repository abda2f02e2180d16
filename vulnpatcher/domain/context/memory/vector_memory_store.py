from typing import Dict, List, Optional, Tuple
import asyncio
import itertools
import math
from datetime import datetime
from dataclasses import dataclass, field

from vulnpatcher.domain.models.code_context import Chunk
from vulnpatcher.domain.models.workflow_state import utcnow


@dataclass
class MemoryEntry:
    """A stored chunk with its embedding and access bookkeeping"""
    memory_id: str
    chunk: Chunk
    embedding: List[float]
    inserted_seq: int
    last_retrieved_seq: Optional[int] = None
    timestamp: datetime = field(default_factory=utcnow)


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Embedding dimension mismatch: {len(a)} != {len(b)}")

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))

    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class VectorMemoryStore:
    """In-memory vector store for the chunks of one session"""

    def __init__(self):
        self.memories: Dict[str, MemoryEntry] = {}
        self._clock = itertools.count()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self.memories)

    async def add(self, chunk: Chunk, embedding: List[float]) -> str:
        """Add an embedded chunk, replacing any entry with the same id"""

        async with self._lock:
            memory_id = f"{chunk.file_path}#{chunk.index}"

            self.memories[memory_id] = MemoryEntry(
                memory_id=memory_id,
                chunk=chunk,
                embedding=list(embedding),
                inserted_seq=next(self._clock)
            )

            return memory_id

    async def remove_file(self, file_path: str) -> List[Chunk]:
        """Drop every chunk of a file and return them"""

        async with self._lock:
            removed = [
                entry for entry in self.memories.values()
                if entry.chunk.file_path == file_path
            ]
            for entry in removed:
                del self.memories[entry.memory_id]

            return [entry.chunk for entry in removed]

    async def search(self, query_embedding: List[float], limit: int = 5) -> List[Tuple[Chunk, float]]:
        """Return the ``limit`` most similar chunks, best first"""

        async with self._lock:
            if not self.memories or limit <= 0:
                return []

            scored = [
                (entry, cosine_similarity(query_embedding, entry.embedding))
                for entry in self.memories.values()
            ]
            scored.sort(key=lambda item: (-item[1], item[0].chunk.file_path, item[0].chunk.index))
            top = scored[:limit]

            # Retrieval order feeds the eviction policy
            for entry, _ in top:
                entry.last_retrieved_seq = next(self._clock)

            return [(entry.chunk, score) for entry, score in top]

    async def evict_least_recently_retrieved(self, tokens_to_free: int) -> List[Chunk]:
        """Evict chunks until ``tokens_to_free`` token estimates are released.

        Chunks never returned by a search go first, oldest ingestion first,
        followed by retrieved chunks in order of their last retrieval.
        """

        async with self._lock:
            if tokens_to_free <= 0:
                return []

            candidates = sorted(
                self.memories.values(),
                key=lambda entry: (
                    entry.last_retrieved_seq is not None,
                    entry.last_retrieved_seq or 0,
                    entry.inserted_seq
                )
            )

            evicted: List[Chunk] = []
            freed = 0
            for entry in candidates:
                if freed >= tokens_to_free:
                    break
                del self.memories[entry.memory_id]
                evicted.append(entry.chunk)
                freed += entry.chunk.token_estimate

            return evicted

    async def clear(self):
        async with self._lock:
            self.memories.clear()
