from typing import Dict, Any, Optional, Type
from pydantic import BaseModel, Field, model_validator
import os


ENV_PREFIX = "VULNPATCHER_"


def _env_overrides(section: str, model: Type[BaseModel]) -> Dict[str, Any]:
    """Collect VULNPATCHER_<SECTION>_<FIELD> overrides for a settings model"""

    overrides = {}
    for field_name in model.model_fields:
        value = os.getenv(f"{ENV_PREFIX}{section}_{field_name}".upper())
        if value is not None and value != "":
            overrides[field_name] = value
    return overrides


class ContextSettings(BaseModel):
    """Chunking and retrieval budget for the context store"""
    chunk_size: int = Field(default=1500, gt=0, description="Target token estimate per chunk")
    chunk_overlap: int = Field(default=200, ge=0, description="Token estimate of the overlap tail")
    max_context_tokens: int = Field(default=100_000, gt=0, description="Token budget per session")
    retrieval_limit: int = Field(default=20, gt=0, description="Hard cap on chunks per query")
    prune_threshold: float = Field(default=0.8, gt=0.0, le=1.0, description="Budget fraction that makes a session prunable")
    auto_prune: bool = Field(default=False, description="Prune right after ingestion when over threshold")

    @model_validator(mode="after")
    def check_overlap(self) -> "ContextSettings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @classmethod
    def from_env(cls) -> "ContextSettings":
        return cls(**_env_overrides("context", cls))


class OrchestratorSettings(BaseModel):
    """Workflow pipeline settings"""
    stage_timeout_seconds: Optional[float] = Field(
        default=None, gt=0, description="Upper bound for a single agent call, None disables it"
    )
    context_chunks_per_stage: int = Field(default=5, gt=0, description="Snippets retrieved for each stage")

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        return cls(**_env_overrides("orchestrator", cls))


class LoggingSettings(BaseModel):
    """Structured logging settings"""
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", pattern="^(json|console)$")
    service_name: str = Field(default="vulnpatcher")

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        return cls(**_env_overrides("logging", cls))


class Settings(BaseModel):
    """Aggregated service settings"""
    context: ContextSettings = Field(default_factory=ContextSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from VULNPATCHER_* environment variables"""
        return cls(
            context=ContextSettings.from_env(),
            orchestrator=OrchestratorSettings.from_env(),
            logging=LoggingSettings.from_env()
        )
