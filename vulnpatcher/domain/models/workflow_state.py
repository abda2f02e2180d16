from typing import Dict, Any, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, timezone
from enum import Enum


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Severity(str, Enum):
    """Vulnerability severity levels, highest first"""
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    INFO = "INFO"

    @classmethod
    def highest(cls) -> "Severity":
        return cls.CRITICAL


class WorkflowStage(str, Enum):
    """Pipeline stages in execution order"""
    PLAN = "plan"
    FIX = "fix"
    REVIEW = "review"
    VALIDATE = "validate"
    CONSENSUS = "consensus"
    COMPLETE = "complete"
    FAIL = "fail"


class WorkflowStatus(str, Enum):
    """Workflow execution status"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowEventType(str, Enum):
    """Audit event types emitted by the orchestrator"""
    STARTED = "STARTED"
    PLAN_CREATED = "PLAN_CREATED"
    FIX_GENERATED = "FIX_GENERATED"
    CODE_REVIEWED = "CODE_REVIEWED"
    SECURITY_VALIDATED = "SECURITY_VALIDATED"
    CONSENSUS_BUILT = "CONSENSUS_BUILT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowEventType.COMPLETED, WorkflowEventType.FAILED)


class Vulnerability(BaseModel):
    """A known vulnerability as described by an advisory feed"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Advisory identifier (CVE, GHSA, ...)")
    title: str = Field(description="Short title")
    description: str = Field(default="", description="Advisory description")
    severity: Severity = Field(default=Severity.MEDIUM)
    cve_id: Optional[str] = None
    cvss_score: Optional[float] = Field(None, ge=0.0, le=10.0)
    references: List[str] = Field(default_factory=list)


class VulnerabilityMatch(BaseModel):
    """Scan finding linking a vulnerability to a location in the code"""
    model_config = ConfigDict(frozen=True)

    vulnerability: Vulnerability
    file_path: str = Field(description="Path of the affected file")
    line_number: int = Field(default=0, ge=0, description="1-indexed line, 0 when unknown")
    affected_code: str = Field(description="Code snippet flagged by the scanner")
    confidence: float = Field(default=1.0, ge=0.0, le=1.0, description="Scanner confidence")
    language: Optional[str] = None
    match_type: Optional[str] = None
    indicators: List[str] = Field(default_factory=list)

    @property
    def vulnerability_id(self) -> str:
        return self.vulnerability.id


class WorkflowContext(BaseModel):
    """Parameters of a fix run, supplied by the caller"""
    model_config = ConfigDict(frozen=True)

    repository_url: Optional[str] = None
    language: Optional[str] = None
    framework: Optional[str] = None
    session_id: Optional[str] = Field(None, description="Context store session used for code retrieval")
    additional_context: Dict[str, Any] = Field(default_factory=dict)


class WorkflowState(BaseModel):
    """Mutable state of an in-flight workflow, owned by the orchestrator"""
    workflow_id: str
    vulnerability: VulnerabilityMatch
    context: WorkflowContext
    iterations: int = Field(default=0, ge=0)
    current_stage: Optional[WorkflowStage] = None
    status: WorkflowStatus = Field(default=WorkflowStatus.RUNNING)
    started_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)

    def increment_iterations(self) -> int:
        """Count one more fix attempt"""
        self.iterations += 1
        return self.iterations

    def advance(self, stage: WorkflowStage):
        self.current_stage = stage
        self.last_activity = utcnow()

    def language(self) -> str:
        return self.context.language or self.vulnerability.language or "unknown"

    def get_state_summary(self) -> Dict[str, Any]:
        """Get a summary of the current state"""
        return {
            "workflow_id": self.workflow_id,
            "vulnerability_id": self.vulnerability.vulnerability_id,
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "iterations": self.iterations,
            "last_activity": self.last_activity.isoformat()
        }


class WorkflowEvent(BaseModel):
    """One audit record, never mutated once appended"""
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    sequence: int = Field(ge=0, description="Position in the workflow's event log")
    type: WorkflowEventType
    message: str
    timestamp: datetime = Field(default_factory=utcnow)


class WorkflowResult(BaseModel):
    """Terminal outcome, produced exactly once per workflow"""
    model_config = ConfigDict(frozen=True)

    workflow_id: str
    vulnerability_id: str
    success: bool
    final_solution: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    iterations: int = Field(default=0, ge=0)
    recommendations: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    completed_at: datetime = Field(default_factory=utcnow)
    duration_seconds: Optional[float] = None
