from typing import TypedDict, Any, Awaitable, Dict, List, Optional
from langgraph.graph import StateGraph, END
import asyncio
import time
import uuid
import structlog

from vulnpatcher.domain.context.context_store import ContextStore
from vulnpatcher.domain.exceptions import AgentFailure, ErrorCode, VulnPatcherError
from vulnpatcher.domain.models.code_context import RelevantContext
from vulnpatcher.domain.models.workflow_state import (
    Severity, VulnerabilityMatch, WorkflowContext, WorkflowEventType,
    WorkflowResult, WorkflowStage, WorkflowState, WorkflowStatus
)
from vulnpatcher.domain.orchestration.registry import WorkflowRegistry
from vulnpatcher.domain.orchestration.subagent.base_subagent import AgentInterface
from vulnpatcher.domain.streaming.streaming_handler import StreamingHandler
from vulnpatcher.infrastructure.config import OrchestratorSettings
from vulnpatcher.infrastructure.observability.logging import agent_logger

logger = structlog.get_logger(__name__)


def calculate_confidence(iterations: int) -> float:
    """Confidence grows with fix iterations and saturates at 0.95"""
    return min(0.95, 0.7 + iterations * 0.05)


def generate_recommendations(vulnerability: VulnerabilityMatch) -> List[str]:
    recommendations = []

    if vulnerability.vulnerability.severity == Severity.highest():
        recommendations.append("Priority fix: This is a critical vulnerability and should be fixed immediately")

    recommendations.append("Apply the fix and thoroughly test the changes")
    recommendations.append("Review similar code patterns in the codebase")
    recommendations.append("Update security policies to prevent similar issues")

    return recommendations


class PipelineState(TypedDict, total=False):
    """State flowing through the fix pipeline graph"""
    workflow_id: str
    plan: str
    fix: str
    review: str
    validation: str
    final_solution: str


class WorkflowOrchestrator:
    """Drives the PLAN -> FIX -> REVIEW -> VALIDATE -> CONSENSUS pipeline.

    Each started workflow runs as its own asyncio task. Stages inside a
    workflow run strictly in sequence because every prompt depends on the
    previous stage's output. Any stage failure ends the workflow with a
    failed WorkflowResult instead of an exception.
    """

    def __init__(
        self,
        agents: AgentInterface,
        registry: Optional[WorkflowRegistry] = None,
        context_store: Optional[ContextStore] = None,
        settings: Optional[OrchestratorSettings] = None,
        streaming_handler: Optional[StreamingHandler] = None
    ):
        self.agents = agents
        self.registry = registry or WorkflowRegistry()
        self.context_store = context_store
        self.settings = settings or OrchestratorSettings()
        self.streaming_handler = streaming_handler or StreamingHandler(self.registry)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the linear fix pipeline graph"""

        workflow = StateGraph(PipelineState)

        workflow.add_node("planner", self.plan_node)
        workflow.add_node("fixer", self.fix_node)
        workflow.add_node("reviewer", self.review_node)
        workflow.add_node("security_validator", self.validate_node)
        workflow.add_node("synthesizer", self.consensus_node)

        workflow.set_entry_point("planner")
        workflow.add_edge("planner", "fixer")
        workflow.add_edge("fixer", "reviewer")
        workflow.add_edge("reviewer", "security_validator")
        workflow.add_edge("security_validator", "synthesizer")
        workflow.add_edge("synthesizer", END)

        return workflow.compile()

    async def start(self, vulnerability: VulnerabilityMatch, context: WorkflowContext) -> str:
        """Register a workflow, emit STARTED and schedule the pipeline; returns the workflow id"""

        workflow_id = str(uuid.uuid4())
        state = WorkflowState(workflow_id=workflow_id, vulnerability=vulnerability, context=context)

        await self.registry.register(state)
        await self.streaming_handler.emit(
            workflow_id,
            WorkflowEventType.STARTED,
            f"Workflow started for vulnerability: {vulnerability.vulnerability_id}"
        )

        task = asyncio.create_task(self._run(state), name=f"workflow-{workflow_id}")
        self.registry.attach_task(workflow_id, task)

        return workflow_id

    async def _run(self, state: WorkflowState) -> Optional[WorkflowResult]:
        workflow_id = state.workflow_id
        structlog.contextvars.bind_contextvars(workflow_id=workflow_id)
        started = time.monotonic()

        try:
            final_state = await self._execute_pipeline(state)

            result = WorkflowResult(
                workflow_id=workflow_id,
                vulnerability_id=state.vulnerability.vulnerability_id,
                success=True,
                final_solution=final_state.get("final_solution"),
                confidence=calculate_confidence(state.iterations),
                iterations=state.iterations,
                recommendations=generate_recommendations(state.vulnerability),
                duration_seconds=time.monotonic() - started
            )

            state.status = WorkflowStatus.COMPLETED
            state.advance(WorkflowStage.COMPLETE)
            # The result is published before the terminal event reaches handlers
            await self.registry.retire(workflow_id, result)
            await self.streaming_handler.emit(
                workflow_id, WorkflowEventType.COMPLETED, "Workflow completed successfully"
            )
            return result

        except asyncio.CancelledError:
            await self._fail(state, "Workflow cancelled", ErrorCode.WORKFLOW_CANCELLED, started)
            raise

        except Exception as e:
            logger.error("Workflow failed", workflow_id=workflow_id, error=str(e), exc_info=True)
            error_code = e.error_code if isinstance(e, VulnPatcherError) else ErrorCode.INTERNAL_ERROR
            return await self._fail(state, str(e), error_code, started)

    async def _fail(
        self,
        state: WorkflowState,
        error: str,
        error_code: ErrorCode,
        started: Optional[float] = None
    ) -> Optional[WorkflowResult]:
        """Publish the failed result and emit FAILED, unless the workflow already has a result"""

        workflow_id = state.workflow_id
        existing = self.registry.results.get(workflow_id)
        if existing is not None:
            return existing

        result = WorkflowResult(
            workflow_id=workflow_id,
            vulnerability_id=state.vulnerability.vulnerability_id,
            success=False,
            iterations=state.iterations,
            error=error,
            error_code=error_code.name,
            duration_seconds=time.monotonic() - started if started is not None else None
        )

        state.status = WorkflowStatus.FAILED
        state.advance(WorkflowStage.FAIL)
        await self.registry.retire(workflow_id, result)
        if not self.registry.get_event_log(workflow_id).closed:
            await self.streaming_handler.emit(workflow_id, WorkflowEventType.FAILED, f"Workflow failed: {error}")
        return result

    async def _execute_pipeline(self, state: WorkflowState) -> Dict[str, Any]:
        """Stream the graph, logging each stage transition"""

        final_state: Dict[str, Any] = {"workflow_id": state.workflow_id}
        previous = "start"

        async for update in self.workflow.astream({"workflow_id": state.workflow_id}):
            for node_id, node_data in update.items():
                agent_logger.log_workflow_transition(
                    state.workflow_id,
                    from_stage=previous,
                    to_stage=node_id,
                    state_summary=state.get_state_summary()
                )
                previous = node_id
                if node_data:
                    final_state.update(node_data)

        return final_state

    def _workflow_state(self, state: PipelineState) -> WorkflowState:
        workflow = self.registry.get_state(state["workflow_id"])
        if workflow is None:
            raise RuntimeError(f"Workflow {state['workflow_id']} is not active")
        return workflow

    async def plan_node(self, state: PipelineState) -> Dict[str, Any]:
        workflow = self._workflow_state(state)
        workflow.advance(WorkflowStage.PLAN)
        match = workflow.vulnerability

        related = await self._related_context(
            workflow,
            f"{match.vulnerability.title} {match.vulnerability.description} {match.file_path}"
        )
        plan = await self._invoke_role(
            workflow, "planner", self.agents.plan(match, workflow.context, related)
        )

        await self.streaming_handler.emit(workflow.workflow_id, WorkflowEventType.PLAN_CREATED, "Task plan generated")
        return {"plan": plan}

    async def fix_node(self, state: PipelineState) -> Dict[str, Any]:
        workflow = self._workflow_state(state)
        workflow.advance(WorkflowStage.FIX)
        match = workflow.vulnerability

        related = await self._related_context(
            workflow, f"{match.affected_code}\n{match.vulnerability.description}"
        )
        fix = await self._invoke_role(
            workflow,
            "fixer",
            self.agents.generate_fix(
                match.affected_code, match.vulnerability.description, workflow.language(), related
            )
        )
        workflow.increment_iterations()

        await self.streaming_handler.emit(workflow.workflow_id, WorkflowEventType.FIX_GENERATED, "Security fix generated")
        return {"fix": fix}

    async def review_node(self, state: PipelineState) -> Dict[str, Any]:
        workflow = self._workflow_state(state)
        workflow.advance(WorkflowStage.REVIEW)
        fix = state["fix"]

        related = await self._related_context(workflow, fix)
        review = await self._invoke_role(
            workflow,
            "reviewer",
            self.agents.review_code(fix, workflow.vulnerability.vulnerability.description, related)
        )

        await self.streaming_handler.emit(
            workflow.workflow_id, WorkflowEventType.CODE_REVIEWED, "Code reviewed by tech lead"
        )
        return {"review": review}

    async def validate_node(self, state: PipelineState) -> Dict[str, Any]:
        workflow = self._workflow_state(state)
        workflow.advance(WorkflowStage.VALIDATE)

        validation = await self._invoke_role(
            workflow,
            "validator",
            self.agents.analyze_security(state["fix"], workflow.vulnerability.vulnerability)
        )

        await self.streaming_handler.emit(
            workflow.workflow_id, WorkflowEventType.SECURITY_VALIDATED, "Security implications analyzed"
        )
        return {"validation": validation}

    async def consensus_node(self, state: PipelineState) -> Dict[str, Any]:
        workflow = self._workflow_state(state)
        workflow.advance(WorkflowStage.CONSENSUS)

        final_solution = await self._invoke_role(
            workflow,
            "synthesizer",
            self.agents.build_consensus(state["fix"], state["review"], state["validation"])
        )

        await self.streaming_handler.emit(
            workflow.workflow_id, WorkflowEventType.CONSENSUS_BUILT, "Final solution determined"
        )
        return {"final_solution": final_solution}

    async def _invoke_role(self, workflow: WorkflowState, role: str, call: Awaitable[str]) -> str:
        """Await a role call, converting errors and timeouts into AgentFailure"""

        timeout = self.settings.stage_timeout_seconds
        agent_logger.log_agent_event("role_invoked", role, workflow.workflow_id,
                                     data={"stage": workflow.current_stage.value})

        try:
            if timeout is not None:
                return await asyncio.wait_for(call, timeout)
            return await call
        except asyncio.TimeoutError as e:
            raise AgentFailure(
                role, f"{role} timed out after {timeout}s", ErrorCode.EXTERNAL_SERVICE_TIMEOUT
            ) from e
        except AgentFailure:
            raise
        except Exception as e:
            raise AgentFailure(role, f"{role} failed: {e}") from e

    async def _related_context(self, workflow: WorkflowState, query: str) -> List[RelevantContext]:
        session_id = workflow.context.session_id
        if self.context_store is None or not session_id:
            return []

        related = await self.context_store.get_relevant_context(
            session_id, query, self.settings.context_chunks_per_stage
        )
        agent_logger.log_context_update(
            session_id,
            context_type="retrieval",
            action="queried",
            details={"workflow_id": workflow.workflow_id, "hits": len(related)}
        )
        return related

    async def cancel(self, workflow_id: str) -> bool:
        """Cancel a running workflow; it ends with a FAILED event and a failed result"""

        task = self.registry.tasks.get(workflow_id)
        if task is None or task.done():
            return False

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        # A task cancelled before its first step never reaches its own handler
        state = self.registry.get_state(workflow_id)
        if state is not None and self.registry.results.get(workflow_id) is None:
            await self._fail(state, "Workflow cancelled", ErrorCode.WORKFLOW_CANCELLED)

        logger.info("Workflow cancelled", workflow_id=workflow_id)
        return True

    async def shutdown(self):
        """Cancel every running workflow"""

        workflow_ids = list(self.registry.tasks.keys())
        for workflow_id in workflow_ids:
            await self.cancel(workflow_id)

        logger.info("Workflow orchestrator shutdown", cancelled=len(workflow_ids))
