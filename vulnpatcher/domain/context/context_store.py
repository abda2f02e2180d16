from typing import Dict, List, Optional, Tuple
import asyncio
import base64
import hashlib
import structlog
from datetime import datetime

from vulnpatcher.domain.exceptions import ContextIngestError, RetrievalError
from vulnpatcher.domain.models.code_context import Chunk, FileContext, RelevantContext, SessionSummary
from vulnpatcher.domain.models.workflow_state import utcnow
from vulnpatcher.infrastructure.config import ContextSettings
from vulnpatcher.infrastructure.observability.logging import agent_logger
from .chunker import Chunker, estimate_tokens
from .embedding import EmbeddingProvider
from .memory.vector_memory_store import VectorMemoryStore

logger = structlog.get_logger(__name__)


def calculate_checksum(content: str) -> str:
    """Base64 SHA-256 digest used for change detection"""
    digest = hashlib.sha256(content.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


class SessionContext:
    """Ingested files, chunk embeddings and token budget of one session.

    Every operation runs under the session lock so the token counter and the
    embedding index never disagree. Different sessions do not share a lock.
    """

    def __init__(
        self,
        session_id: str,
        embedding_provider: EmbeddingProvider,
        chunker: Chunker,
        settings: ContextSettings
    ):
        self.session_id = session_id
        self.embedding_provider = embedding_provider
        self.chunker = chunker
        self.settings = settings
        self.vector_store = VectorMemoryStore()
        self.file_contexts: Dict[str, FileContext] = {}
        self.file_checksums: Dict[str, str] = {}
        self.total_tokens = 0
        self.created_at: datetime = utcnow()
        self._lock = asyncio.Lock()

    @property
    def prune_threshold_tokens(self) -> float:
        return self.settings.max_context_tokens * self.settings.prune_threshold

    def is_prune_eligible(self) -> bool:
        return self.total_tokens > self.prune_threshold_tokens

    def has_file_changed(self, file_path: str, content: str) -> bool:
        """True when the path is unknown or its content differs from what was ingested"""
        return self.file_checksums.get(file_path) != calculate_checksum(content)

    async def add_file(self, file_path: str, content: str, file_type: str) -> FileContext:
        """Chunk, embed and register a file"""

        async with self._lock:
            checksum = calculate_checksum(content)

            existing = self.file_contexts.get(file_path)
            if existing and self.file_checksums.get(file_path) == checksum:
                logger.debug("File unchanged, skipping", session_id=self.session_id, file_path=file_path)
                return existing

            if existing:
                await self._remove_file_locked(file_path)

            file_tokens = estimate_tokens(content)
            embedded, failed = await self._index_chunks(file_path, content, file_type)

            file_context = FileContext(
                file_path=file_path,
                content=content,
                file_type=file_type,
                checksum=checksum,
                chunk_count=embedded,
                token_estimate=file_tokens,
                resident_tokens=file_tokens,
                metadata={"failed_chunks": failed, "replaced": existing is not None}
            )

            self.file_contexts[file_path] = file_context
            self.file_checksums[file_path] = checksum
            self.total_tokens += file_tokens

            agent_logger.log_context_update(
                self.session_id,
                context_type="file",
                action="replaced" if existing else "added",
                details={
                    "file_path": file_path,
                    "chunks": embedded,
                    "failed_chunks": failed,
                    "total_tokens": self.total_tokens
                }
            )

            if self.is_prune_eligible():
                logger.info(
                    "Context size exceeded threshold, session eligible for pruning",
                    session_id=self.session_id,
                    total_tokens=self.total_tokens,
                    threshold=self.prune_threshold_tokens
                )
                if self.settings.auto_prune:
                    await self._prune_locked()

            return file_context

    async def _index_chunks(self, file_path: str, content: str, file_type: str) -> Tuple[int, int]:
        """Embed and store chunks, keeping the ones that embedded successfully"""

        try:
            chunks = self._chunk(file_path, content, file_type)
        except ContextIngestError as e:
            logger.error("Error adding file to context", session_id=self.session_id,
                         file_path=file_path, error=str(e), error_code=e.error_code.name)
            return 0, 0

        results = await asyncio.gather(
            *(self.embedding_provider.embed(chunk.content) for chunk in chunks),
            return_exceptions=True
        )

        embedded = 0
        failed = 0
        for chunk, result in zip(chunks, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                failed += 1
                logger.error("Error embedding chunk", session_id=self.session_id,
                             file_path=file_path, chunk_index=chunk.index, error=str(result))
                continue
            await self.vector_store.add(chunk, result)
            embedded += 1

        return embedded, failed

    def _chunk(self, file_path: str, content: str, file_type: str) -> List[Chunk]:
        try:
            return self.chunker.chunk(content, file_path, file_type)
        except Exception as e:
            raise ContextIngestError(f"Chunking failed for {file_path}: {e}") from e

    async def get_relevant_context(self, query: str, max_chunks: int) -> List[RelevantContext]:
        """Similarity search over this session's chunks, best first"""

        async with self._lock:
            try:
                matches = await self._search(query, max_chunks)
            except RetrievalError as e:
                logger.error("Error retrieving relevant context", session_id=self.session_id,
                             error=str(e), error_code=e.error_code.name)
                return []

            return [self._to_relevant_context(chunk, score) for chunk, score in matches]

    async def _search(self, query: str, max_chunks: int) -> List[Tuple[Chunk, float]]:
        try:
            query_embedding = await self.embedding_provider.embed(query)
            return await self.vector_store.search(query_embedding, limit=max_chunks)
        except Exception as e:
            raise RetrievalError(f"Retrieval failed: {e}") from e

    @staticmethod
    def _to_relevant_context(chunk: Chunk, score: float) -> RelevantContext:
        return RelevantContext(
            content=chunk.content,
            file_path=chunk.file_path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            relevance_score=score,
            file_type=chunk.file_type,
            chunk_index=chunk.index
        )

    async def remove_file(self, file_path: str) -> bool:
        async with self._lock:
            return await self._remove_file_locked(file_path)

    async def _remove_file_locked(self, file_path: str) -> bool:
        file_context = self.file_contexts.pop(file_path, None)
        self.file_checksums.pop(file_path, None)
        if file_context is None:
            return False

        await self.vector_store.remove_file(file_path)
        self.total_tokens -= file_context.resident_tokens
        return True

    async def prune(self) -> int:
        """Evict least-recently-retrieved chunks until the session is back under threshold"""
        async with self._lock:
            return await self._prune_locked()

    async def _prune_locked(self) -> int:
        if not self.is_prune_eligible():
            return 0

        tokens_to_free = self.total_tokens - int(self.prune_threshold_tokens)
        evicted = await self.vector_store.evict_least_recently_retrieved(tokens_to_free)

        # total_tokens stays equal to the sum of resident_tokens over files
        freed = 0
        for chunk in evicted:
            file_context = self.file_contexts.get(chunk.file_path)
            if file_context is None:
                continue
            released = min(file_context.resident_tokens, chunk.token_estimate)
            file_context.resident_tokens -= released
            file_context.chunk_count = max(0, file_context.chunk_count - 1)
            freed += released

        self.total_tokens -= freed

        agent_logger.log_context_update(
            self.session_id,
            context_type="chunks",
            action="pruned",
            details={"evicted": len(evicted), "freed_tokens": freed, "total_tokens": self.total_tokens}
        )

        return len(evicted)

    def summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            total_files=len(self.file_contexts),
            total_tokens=self.total_tokens,
            chunk_count=len(self.vector_store),
            files=sorted(self.file_contexts.keys()),
            prune_eligible=self.is_prune_eligible()
        )


class ContextStore:
    """Registry of per-session code context with similarity retrieval"""

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        settings: Optional[ContextSettings] = None,
        chunker: Optional[Chunker] = None
    ):
        self.settings = settings or ContextSettings()
        self.embedding_provider = embedding_provider
        self.chunker = chunker or Chunker.from_settings(self.settings)
        self.sessions: Dict[str, SessionContext] = {}
        self._lock = asyncio.Lock()

    async def get_or_create_session(self, session_id: str) -> SessionContext:
        """Return the session, creating it on first use"""

        if not session_id:
            raise ValueError("session_id must not be empty")

        async with self._lock:
            session = self.sessions.get(session_id)
            if session is None:
                session = SessionContext(session_id, self.embedding_provider, self.chunker, self.settings)
                self.sessions[session_id] = session
                logger.info("Created context session", session_id=session_id)
            return session

    def get_session(self, session_id: str) -> Optional[SessionContext]:
        return self.sessions.get(session_id)

    async def remove_session(self, session_id: str) -> bool:
        """Drop a session and everything ingested into it"""

        async with self._lock:
            session = self.sessions.pop(session_id, None)

        if session is None:
            return False

        await session.vector_store.clear()
        logger.info("Removed context session", session_id=session_id)
        return True

    async def add_file(self, session_id: str, file_path: str, content: str, file_type: str) -> FileContext:
        if not file_path:
            raise ValueError("file_path must not be empty")

        session = await self.get_or_create_session(session_id)
        return await session.add_file(file_path, content, file_type)

    async def get_relevant_context(
        self,
        session_id: str,
        query: str,
        max_chunks: Optional[int] = None
    ) -> List[RelevantContext]:
        """Return up to ``max_chunks`` hits ordered by descending relevance.

        Unknown sessions have nothing to search and yield an empty list.
        """

        if max_chunks is None:
            max_chunks = self.settings.retrieval_limit
        if max_chunks < 1:
            raise ValueError("max_chunks must be at least 1")

        session = self.get_session(session_id)
        if session is None:
            return []

        return await session.get_relevant_context(query, min(max_chunks, self.settings.retrieval_limit))

    async def prune_session(self, session_id: str) -> int:
        session = self.get_session(session_id)
        if session is None:
            return 0
        return await session.prune()

    def has_file_changed(self, session_id: str, file_path: str, content: str) -> bool:
        session = self.get_session(session_id)
        if session is None:
            return True
        return session.has_file_changed(file_path, content)

    def get_session_summary(self, session_id: str) -> Optional[SessionSummary]:
        session = self.get_session(session_id)
        return session.summary() if session else None
