from typing import List, Optional
import structlog

from vulnpatcher.domain.models.code_context import Chunk
from vulnpatcher.infrastructure.config import ContextSettings

logger = structlog.get_logger(__name__)


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters"""
    return len(text) // 4


class Chunker:
    """Splits file content into line-addressed chunks with a look-ahead overlap tail"""

    def __init__(self, chunk_size: int = 1500, chunk_overlap: int = 200):
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if chunk_overlap < 0:
            raise ValueError("chunk_overlap must not be negative")
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap

    @classmethod
    def from_settings(cls, settings: Optional[ContextSettings] = None) -> "Chunker":
        settings = settings or ContextSettings()
        return cls(chunk_size=settings.chunk_size, chunk_overlap=settings.chunk_overlap)

    @staticmethod
    def split_lines(content: str) -> List[str]:
        return content.splitlines()

    def chunk(self, content: str, file_path: str, file_type: str) -> List[Chunk]:
        """Split content into chunks whose primary line ranges partition the file.

        Lines are accumulated until the running estimate reaches ``chunk_size``
        (every chunk holds at least one line). The lines that follow, up to
        ``chunk_overlap``, are attached as an overlap tail. The next chunk
        starts where the previous primary range ended.
        """

        lines = self.split_lines(content)
        chunks: List[Chunk] = []
        cursor = 0

        while cursor < len(lines):
            start = cursor
            token_count = 0
            primary: List[str] = []

            while cursor < len(lines) and token_count < self.chunk_size:
                primary.append(lines[cursor] + "\n")
                token_count += estimate_tokens(lines[cursor])
                cursor += 1

            overlap_cursor = cursor
            overlap_tokens = 0
            overlap: List[str] = []

            while overlap_cursor < len(lines) and overlap_tokens < self.chunk_overlap:
                overlap.append(lines[overlap_cursor] + "\n")
                overlap_tokens += estimate_tokens(lines[overlap_cursor])
                overlap_cursor += 1

            text = "".join(primary)
            chunks.append(Chunk(
                text=text,
                overlap_text="".join(overlap),
                file_path=file_path,
                start_line=start + 1,
                end_line=cursor + 1,
                overlap_end_line=overlap_cursor + 1,
                file_type=file_type,
                index=len(chunks),
                token_estimate=estimate_tokens(text)
            ))

        logger.debug("Chunked file", file_path=file_path, lines=len(lines), chunks=len(chunks))

        return chunks
