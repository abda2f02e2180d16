from typing import AsyncIterator, Dict, List, Optional
import asyncio
import structlog

from vulnpatcher.domain.exceptions import WorkflowNotFoundError
from vulnpatcher.domain.models.workflow_state import WorkflowEvent, WorkflowResult, WorkflowState
from vulnpatcher.domain.streaming.event_log import EventLog

logger = structlog.get_logger(__name__)


class WorkflowRegistry:
    """Owns active workflow states, their event logs, results and tasks.

    Active states are removed on the terminal transition. Event logs and
    results are kept until ``forget`` is called explicitly.
    """

    def __init__(self):
        self.active_workflows: Dict[str, WorkflowState] = {}
        self.event_logs: Dict[str, EventLog] = {}
        self.results: Dict[str, WorkflowResult] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self._result_futures: Dict[str, asyncio.Future] = {}
        self._lock = asyncio.Lock()

    async def register(self, state: WorkflowState) -> EventLog:
        """Insert a new workflow; ids must never be reused"""

        async with self._lock:
            workflow_id = state.workflow_id
            if workflow_id in self.active_workflows or workflow_id in self.event_logs:
                raise ValueError(f"Workflow already registered: {workflow_id}")

            event_log = EventLog(workflow_id)
            self.active_workflows[workflow_id] = state
            self.event_logs[workflow_id] = event_log
            self._result_futures[workflow_id] = asyncio.get_running_loop().create_future()

            return event_log

    def attach_task(self, workflow_id: str, task: asyncio.Task):
        self.tasks[workflow_id] = task
        task.add_done_callback(lambda _: self.tasks.pop(workflow_id, None))

    async def retire(self, workflow_id: str, result: WorkflowResult):
        """Drop the active state and publish the terminal result"""

        async with self._lock:
            if workflow_id in self.results:
                raise RuntimeError(f"Workflow {workflow_id} already has a result")

            self.active_workflows.pop(workflow_id, None)
            self.results[workflow_id] = result

            future = self._result_futures.get(workflow_id)
            if future is not None and not future.done():
                future.set_result(result)

        logger.debug("Workflow retired", workflow_id=workflow_id, success=result.success)

    def get_state(self, workflow_id: str) -> Optional[WorkflowState]:
        return self.active_workflows.get(workflow_id)

    def get_event_log(self, workflow_id: str) -> EventLog:
        event_log = self.event_logs.get(workflow_id)
        if event_log is None:
            raise WorkflowNotFoundError(workflow_id)
        return event_log

    def get_events(self, workflow_id: str) -> List[WorkflowEvent]:
        return self.get_event_log(workflow_id).snapshot()

    def stream_events(self, workflow_id: str, follow: bool = False) -> AsyncIterator[WorkflowEvent]:
        """Events of a workflow in emission order.

        Raises WorkflowNotFoundError right away for unknown ids. By default the
        history recorded so far is replayed and the iterator completes; with
        ``follow`` it keeps delivering new events until the terminal one.
        """

        event_log = self.get_event_log(workflow_id)
        return event_log.follow() if follow else event_log.replay()

    def get_result(self, workflow_id: str) -> Optional[WorkflowResult]:
        """Terminal result, or None while the workflow is still running"""

        if workflow_id not in self.event_logs:
            raise WorkflowNotFoundError(workflow_id)
        return self.results.get(workflow_id)

    async def wait_for_result(self, workflow_id: str, timeout: Optional[float] = None) -> WorkflowResult:
        future = self._result_futures.get(workflow_id)
        if future is None:
            raise WorkflowNotFoundError(workflow_id)
        return await asyncio.wait_for(asyncio.shield(future), timeout)

    def active_ids(self) -> List[str]:
        return list(self.active_workflows.keys())

    async def forget(self, workflow_id: str) -> bool:
        """Release the history of a finished workflow"""

        async with self._lock:
            if workflow_id in self.active_workflows:
                raise RuntimeError(f"Workflow {workflow_id} is still running")

            found = self.event_logs.pop(workflow_id, None) is not None
            self.results.pop(workflow_id, None)
            self._result_futures.pop(workflow_id, None)
            return found
