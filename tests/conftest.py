from typing import Dict, List, Optional, Sequence
import asyncio

import pytest

from vulnpatcher.domain.context.embedding import EmbeddingProvider, HashingEmbeddingProvider
from vulnpatcher.domain.models.code_context import RelevantContext
from vulnpatcher.domain.models.workflow_state import (
    Severity, Vulnerability, VulnerabilityMatch, WorkflowContext
)
from vulnpatcher.domain.orchestration.subagent.base_subagent import AgentInterface


class FakeAgents(AgentInterface):
    """Scripted roles: optional failure, delay or gate per role"""

    def __init__(
        self,
        fail_on: Optional[str] = None,
        delays: Optional[Dict[str, float]] = None,
        gates: Optional[Dict[str, asyncio.Event]] = None
    ):
        self.fail_on = fail_on
        self.delays = delays or {}
        self.gates = gates or {}
        self.calls: List[str] = []
        self.related: Dict[str, List[RelevantContext]] = {}
        self.languages: List[str] = []

    async def _answer(self, role: str, text: str) -> str:
        self.calls.append(role)
        if role in self.gates:
            await self.gates[role].wait()
        if role in self.delays:
            await asyncio.sleep(self.delays[role])
        if role == self.fail_on:
            raise RuntimeError(f"{role} unavailable")
        return text

    async def plan(self, vulnerability, context, related: Sequence[RelevantContext] = ()) -> str:
        self.related["planner"] = list(related)
        return await self._answer("planner", f"plan for {vulnerability.vulnerability_id}")

    async def generate_fix(self, code, description, language, related: Sequence[RelevantContext] = ()) -> str:
        self.related["fixer"] = list(related)
        self.languages.append(language)
        return await self._answer("fixer", f"fixed: {code}")

    async def review_code(self, code, description, related: Sequence[RelevantContext] = ()) -> str:
        self.related["reviewer"] = list(related)
        return await self._answer("reviewer", "OVERALL_ASSESSMENT: APPROVED")

    async def analyze_security(self, code, vulnerability) -> str:
        return await self._answer("validator", f"{vulnerability.id} mitigated")

    async def build_consensus(self, fix, review, validation) -> str:
        return await self._answer("synthesizer", f"FINAL\n{fix}")


class FailingEmbeddingProvider(EmbeddingProvider):
    """Hashing embedder that fails on texts containing a marker"""

    def __init__(self, marker: str = "EMBED_FAIL"):
        self.marker = marker
        self.inner = HashingEmbeddingProvider()

    async def embed(self, text: str) -> List[float]:
        if self.marker in text:
            raise ConnectionError("embedding backend unavailable")
        return await self.inner.embed(text)


def make_match(
    vuln_id: str = "CVE-2024-0001",
    severity: Severity = Severity.HIGH,
    language: Optional[str] = "python"
) -> VulnerabilityMatch:
    return VulnerabilityMatch(
        vulnerability=Vulnerability(
            id=vuln_id,
            title="SQL injection in login query",
            description="User input is concatenated into a SQL query for password lookup",
            severity=severity
        ),
        file_path="app/auth.py",
        line_number=42,
        affected_code='cursor.execute("SELECT * FROM users WHERE name = \'" + name + "\'")',
        language=language
    )


@pytest.fixture
def fake_agents():
    return FakeAgents()


@pytest.fixture
def embedder():
    return HashingEmbeddingProvider()


@pytest.fixture
def match():
    return make_match()


@pytest.fixture
def workflow_context():
    return WorkflowContext(
        repository_url="https://example.com/acme/shop.git",
        language="python",
        framework="flask"
    )
