"""
VulnPatcher exceptions

Centralized exception definitions. Every error carries an ErrorCode so that
failed workflow results and callers can classify what went wrong.
"""

from typing import Optional
from enum import Enum

__all__ = [
    "ErrorCode",
    "VulnPatcherError",
    "AgentFailure",
    "WorkflowNotFoundError",
    "ContextIngestError",
    "RetrievalError",
]


class ErrorCode(Enum):
    """Error codes grouped by area"""
    # Configuration errors (1xxx)
    CONFIG_INVALID = 1001
    CONFIG_MISSING = 1002

    # Fix generation errors (5xxx)
    FIX_GENERATION_FAILED = 5001
    WORKFLOW_NOT_FOUND = 5002
    WORKFLOW_CANCELLED = 5003

    # External service errors (6xxx)
    EXTERNAL_SERVICE_ERROR = 6001
    EXTERNAL_SERVICE_TIMEOUT = 6002

    # Context errors (7xxx)
    CONTEXT_INGEST_FAILED = 7001
    CONTEXT_RETRIEVAL_FAILED = 7002

    # General errors (9xxx)
    INTERNAL_ERROR = 9001
    INVALID_REQUEST = 9002


class VulnPatcherError(Exception):
    """Base exception for all VulnPatcher errors"""

    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details

    @property
    def code(self) -> int:
        return self.error_code.value


class AgentFailure(VulnPatcherError):
    """Raised when an agent role call errors or times out"""

    default_code = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(
        self,
        role: str,
        message: str,
        error_code: Optional[ErrorCode] = None,
        details: Optional[str] = None
    ):
        super().__init__(message, error_code, details)
        self.role = role


class WorkflowNotFoundError(VulnPatcherError, LookupError):
    """Raised when a workflow id is unknown to the registry"""

    default_code = ErrorCode.WORKFLOW_NOT_FOUND

    def __init__(self, workflow_id: str):
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class ContextIngestError(VulnPatcherError):
    """Raised when chunking or embedding fails during ingestion"""

    default_code = ErrorCode.CONTEXT_INGEST_FAILED


class RetrievalError(VulnPatcherError):
    """Raised when a context query cannot be embedded or searched"""

    default_code = ErrorCode.CONTEXT_RETRIEVAL_FAILED
