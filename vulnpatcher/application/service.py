from typing import AsyncIterator, List, Optional
import structlog

from vulnpatcher.domain.context.context_store import ContextStore
from vulnpatcher.domain.context.embedding import EmbeddingProvider
from vulnpatcher.domain.models.code_context import FileContext, RelevantContext, SessionSummary
from vulnpatcher.domain.models.workflow_state import (
    VulnerabilityMatch, WorkflowContext, WorkflowEvent, WorkflowResult
)
from vulnpatcher.domain.orchestration.core.workflow_orchestrator import WorkflowOrchestrator
from vulnpatcher.domain.orchestration.registry import WorkflowRegistry
from vulnpatcher.domain.orchestration.subagent.base_subagent import AgentInterface
from vulnpatcher.infrastructure.config import Settings
from vulnpatcher.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)


class VulnPatcherService:
    """Serving component that owns the workflow registry, orchestrator and context store"""

    def __init__(
        self,
        agents: AgentInterface,
        embedding_provider: EmbeddingProvider,
        settings: Optional[Settings] = None
    ):
        self.settings = settings or Settings()
        self.registry = WorkflowRegistry()
        self.context_store = ContextStore(embedding_provider, self.settings.context)
        self.orchestrator = WorkflowOrchestrator(
            agents,
            registry=self.registry,
            context_store=self.context_store,
            settings=self.settings.orchestrator
        )

    async def start_workflow(self, vulnerability: VulnerabilityMatch, context: WorkflowContext) -> str:
        workflow_id = await self.orchestrator.start(vulnerability, context)
        logger.info("Workflow submitted", workflow_id=workflow_id,
                    vulnerability_id=vulnerability.vulnerability_id)
        return workflow_id

    def get_workflow_result(self, workflow_id: str) -> Optional[WorkflowResult]:
        """Terminal result, None while running; unknown ids raise WorkflowNotFoundError"""
        return self.registry.get_result(workflow_id)

    async def wait_for_result(self, workflow_id: str, timeout: Optional[float] = None) -> WorkflowResult:
        return await self.registry.wait_for_result(workflow_id, timeout)

    def stream_events(self, workflow_id: str, follow: bool = False) -> AsyncIterator[WorkflowEvent]:
        return self.registry.stream_events(workflow_id, follow=follow)

    async def cancel_workflow(self, workflow_id: str) -> bool:
        return await self.orchestrator.cancel(workflow_id)

    def active_workflows(self) -> List[str]:
        return self.registry.active_ids()

    async def ingest_file(self, session_id: str, file_path: str, content: str, file_type: str) -> FileContext:
        return await self.context_store.add_file(session_id, file_path, content, file_type)

    async def query_context(self, session_id: str, query: str, max_chunks: Optional[int] = None) -> List[RelevantContext]:
        return await self.context_store.get_relevant_context(session_id, query, max_chunks)

    async def remove_session(self, session_id: str) -> bool:
        return await self.context_store.remove_session(session_id)

    def session_summary(self, session_id: str) -> Optional[SessionSummary]:
        return self.context_store.get_session_summary(session_id)

    async def shutdown(self):
        await self.orchestrator.shutdown()
        logger.info("VulnPatcher service shutdown")


def create_service(
    agents: AgentInterface,
    embedding_provider: EmbeddingProvider,
    settings: Optional[Settings] = None
) -> VulnPatcherService:
    """Build a service from VULNPATCHER_* settings and configure structured logging"""

    settings = settings or Settings.from_env()
    setup_logging(
        log_level=settings.logging.log_level,
        log_format=settings.logging.log_format,
        service_name=settings.logging.service_name
    )
    return VulnPatcherService(agents, embedding_provider, settings)
