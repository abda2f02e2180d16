from abc import ABC, abstractmethod
from typing import Dict, Any, Sequence
from datetime import datetime

from vulnpatcher.domain.models.code_context import RelevantContext
from vulnpatcher.domain.models.workflow_state import (
    Vulnerability, VulnerabilityMatch, WorkflowContext, utcnow
)


class AgentInterface(ABC):
    """Capabilities the orchestrator needs from the LLM-backed roles"""

    @abstractmethod
    async def plan(
        self,
        vulnerability: VulnerabilityMatch,
        context: WorkflowContext,
        related: Sequence[RelevantContext] = ()
    ) -> str:
        """Produce a task plan for fixing the vulnerability"""
        pass

    @abstractmethod
    async def generate_fix(
        self,
        code: str,
        description: str,
        language: str,
        related: Sequence[RelevantContext] = ()
    ) -> str:
        """Produce a candidate patch for the affected code"""
        pass

    @abstractmethod
    async def review_code(
        self,
        code: str,
        description: str,
        related: Sequence[RelevantContext] = ()
    ) -> str:
        """Critique a candidate patch"""
        pass

    @abstractmethod
    async def analyze_security(self, code: str, vulnerability: Vulnerability) -> str:
        """Check a candidate patch against the vulnerability"""
        pass

    @abstractmethod
    async def build_consensus(self, fix: str, review: str, validation: str) -> str:
        """Combine fix, review feedback and validation into the final solution"""
        pass


class BaseSubAgent(ABC):
    """Base class for a single LLM-backed role"""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description
        self.created_at: datetime = utcnow()
        self.last_active: datetime = utcnow()
        self.invocations = 0

    @abstractmethod
    async def process(self, prompt: str) -> str:
        """Send a prompt to the role and return its text answer"""
        pass

    def update_activity(self):
        """Update last activity timestamp"""
        self.last_active = utcnow()
        self.invocations += 1

    def get_info(self) -> Dict[str, Any]:
        """Get agent information"""
        return {
            "name": self.name,
            "description": self.description,
            "invocations": self.invocations,
            "created_at": self.created_at.isoformat(),
            "last_active": self.last_active.isoformat()
        }
