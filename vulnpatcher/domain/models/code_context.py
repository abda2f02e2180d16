from typing import Dict, Any, List, ClassVar
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime

from .workflow_state import utcnow


class FileContext(BaseModel):
    """One ingested file"""
    file_path: str
    content: str
    file_type: str
    checksum: str = Field(description="Base64 SHA-256 of the content")
    chunk_count: int = Field(default=0, ge=0)
    token_estimate: int = Field(default=0, ge=0)
    resident_tokens: int = Field(default=0, ge=0, description="Share of token_estimate still counted by the session")
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Chunk(BaseModel):
    """Bounded slice of a file.

    ``start_line`` is 1-indexed and ``end_line`` exclusive, so the primary text
    covers ``range(start_line, end_line)``. The overlap tail is drawn from the
    lines that follow and is not part of that range.
    """
    model_config = ConfigDict(frozen=True)

    text: str = Field(description="Primary lines of the chunk")
    overlap_text: str = Field(default="", description="Look-ahead lines appended for continuity")
    file_path: str
    start_line: int = Field(ge=1)
    end_line: int = Field(ge=1)
    overlap_end_line: int = Field(ge=1, description="Exclusive end of the overlap tail")
    file_type: str
    index: int = Field(ge=0)
    token_estimate: int = Field(default=0, ge=0)

    OVERLAP_MARKER: ClassVar[str] = "\n... (overlap) ...\n"

    @property
    def has_overlap(self) -> bool:
        return bool(self.overlap_text)

    @property
    def content(self) -> str:
        """Text sent to the embedder and returned by retrieval"""
        if self.overlap_text:
            return self.text + self.OVERLAP_MARKER + self.overlap_text
        return self.text


class RelevantContext(BaseModel):
    """One retrieval hit"""
    model_config = ConfigDict(frozen=True)

    content: str
    file_path: str
    start_line: int
    end_line: int
    relevance_score: float
    file_type: str
    chunk_index: int = 0


class SessionSummary(BaseModel):
    """Snapshot of a context session"""
    session_id: str
    total_files: int
    total_tokens: int
    chunk_count: int
    files: List[str] = Field(default_factory=list)
    prune_eligible: bool = False
