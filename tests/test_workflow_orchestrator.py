import asyncio

import pytest

from tests.conftest import FakeAgents, make_match
from vulnpatcher.domain.context.context_store import ContextStore
from vulnpatcher.domain.models.workflow_state import (
    Severity, WorkflowContext, WorkflowEventType
)
from vulnpatcher.domain.orchestration.core.workflow_orchestrator import (
    WorkflowOrchestrator, calculate_confidence, generate_recommendations
)
from vulnpatcher.infrastructure.config import OrchestratorSettings

SUCCESS_SEQUENCE = [
    WorkflowEventType.STARTED,
    WorkflowEventType.PLAN_CREATED,
    WorkflowEventType.FIX_GENERATED,
    WorkflowEventType.CODE_REVIEWED,
    WorkflowEventType.SECURITY_VALIDATED,
    WorkflowEventType.CONSENSUS_BUILT,
    WorkflowEventType.COMPLETED,
]


async def wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


def event_types(orchestrator, workflow_id):
    return [event.type for event in orchestrator.registry.get_events(workflow_id)]


class TestConfidence:
    def test_values(self):
        assert calculate_confidence(0) == pytest.approx(0.7)
        assert calculate_confidence(1) == pytest.approx(0.75)
        assert calculate_confidence(5) == pytest.approx(0.95)
        assert calculate_confidence(50) == 0.95

    def test_monotonic_and_bounded(self):
        values = [calculate_confidence(i) for i in range(20)]
        assert values == sorted(values)
        assert all(0.7 <= value <= 0.95 for value in values)


class TestRecommendations:
    def test_critical_gets_priority_line_first(self):
        recommendations = generate_recommendations(make_match(severity=Severity.CRITICAL))

        assert len(recommendations) == 4
        assert recommendations[0].startswith("Priority fix")

    def test_non_critical(self):
        recommendations = generate_recommendations(make_match(severity=Severity.LOW))

        assert recommendations == [
            "Apply the fix and thoroughly test the changes",
            "Review similar code patterns in the codebase",
            "Update security policies to prevent similar issues",
        ]


class TestWorkflowOrchestrator:
    async def test_successful_workflow(self, fake_agents, match, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)

        workflow_id = await orchestrator.start(match, workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert result.success
        assert result.workflow_id == workflow_id
        assert result.vulnerability_id == "CVE-2024-0001"
        assert result.final_solution.startswith("FINAL")
        assert result.iterations == 1
        assert result.confidence == pytest.approx(0.75)
        assert len(result.recommendations) == 3
        assert result.error is None
        assert fake_agents.calls == ["planner", "fixer", "reviewer", "validator", "synthesizer"]
        assert event_types(orchestrator, workflow_id) == SUCCESS_SEQUENCE
        assert orchestrator.registry.active_ids() == []

    async def test_critical_vulnerability_recommendations(self, fake_agents, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)

        workflow_id = await orchestrator.start(make_match(severity=Severity.CRITICAL), workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert result.recommendations[0].startswith("Priority fix")

    async def test_start_returns_before_pipeline_runs(self, match, workflow_context):
        gate = asyncio.Event()
        orchestrator = WorkflowOrchestrator(FakeAgents(gates={"planner": gate}))

        workflow_id = await orchestrator.start(match, workflow_context)

        assert orchestrator.registry.get_result(workflow_id) is None
        assert workflow_id in orchestrator.registry.active_ids()
        assert event_types(orchestrator, workflow_id)[0] == WorkflowEventType.STARTED

        gate.set()
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)
        assert result.success

    async def test_stage_failure_fails_workflow(self, match, workflow_context):
        orchestrator = WorkflowOrchestrator(FakeAgents(fail_on="fixer"))

        workflow_id = await orchestrator.start(match, workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert not result.success
        assert "fixer" in result.error
        assert result.error_code == "EXTERNAL_SERVICE_ERROR"
        assert result.iterations == 0
        assert result.final_solution is None
        assert event_types(orchestrator, workflow_id) == [
            WorkflowEventType.STARTED, WorkflowEventType.PLAN_CREATED, WorkflowEventType.FAILED
        ]
        last = orchestrator.registry.get_events(workflow_id)[-1]
        assert last.message.startswith("Workflow failed:")

    async def test_consensus_failure_after_fix(self, match, workflow_context):
        orchestrator = WorkflowOrchestrator(FakeAgents(fail_on="synthesizer"))

        workflow_id = await orchestrator.start(match, workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert not result.success
        assert result.iterations == 1
        assert event_types(orchestrator, workflow_id)[-1] == WorkflowEventType.FAILED

    async def test_stage_timeout(self, match, workflow_context):
        orchestrator = WorkflowOrchestrator(
            FakeAgents(delays={"reviewer": 1.0}),
            settings=OrchestratorSettings(stage_timeout_seconds=0.05)
        )

        workflow_id = await orchestrator.start(match, workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert not result.success
        assert result.error_code == "EXTERNAL_SERVICE_TIMEOUT"
        assert "reviewer" in result.error

    async def test_concurrent_workflows_keep_separate_logs(self, workflow_context):
        orchestrator = WorkflowOrchestrator(FakeAgents(delays={"fixer": 0.02}))

        first = await orchestrator.start(make_match("CVE-2024-0001"), workflow_context)
        second = await orchestrator.start(make_match("CVE-2024-0002"), workflow_context)
        results = await asyncio.gather(
            orchestrator.registry.wait_for_result(first, timeout=5),
            orchestrator.registry.wait_for_result(second, timeout=5)
        )

        assert first != second
        assert {result.vulnerability_id for result in results} == {"CVE-2024-0001", "CVE-2024-0002"}
        for workflow_id in (first, second):
            events = orchestrator.registry.get_events(workflow_id)
            assert [event.type for event in events] == SUCCESS_SEQUENCE
            assert all(event.workflow_id == workflow_id for event in events)
            assert [event.sequence for event in events] == list(range(len(events)))

    async def test_one_failure_does_not_affect_another(self, workflow_context):
        healthy = WorkflowOrchestrator(FakeAgents())
        registry = healthy.registry
        broken = WorkflowOrchestrator(FakeAgents(fail_on="planner"), registry=registry)

        ok_id = await healthy.start(make_match("CVE-2024-0001"), workflow_context)
        bad_id = await broken.start(make_match("CVE-2024-0002"), workflow_context)

        assert (await registry.wait_for_result(ok_id, timeout=5)).success
        assert not (await registry.wait_for_result(bad_id, timeout=5)).success

    async def test_cancel_running_workflow(self, match, workflow_context):
        agents = FakeAgents(gates={"reviewer": asyncio.Event()})
        orchestrator = WorkflowOrchestrator(agents)

        workflow_id = await orchestrator.start(match, workflow_context)
        await wait_until(lambda: "reviewer" in agents.calls)

        assert await orchestrator.cancel(workflow_id)

        result = orchestrator.registry.get_result(workflow_id)
        assert not result.success
        assert result.error == "Workflow cancelled"
        assert result.error_code == "WORKFLOW_CANCELLED"
        assert result.iterations == 1
        assert event_types(orchestrator, workflow_id)[-1] == WorkflowEventType.FAILED
        assert not await orchestrator.cancel(workflow_id)

    async def test_cancel_before_first_step(self, fake_agents, match, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)

        workflow_id = await orchestrator.start(match, workflow_context)
        assert await orchestrator.cancel(workflow_id)

        result = orchestrator.registry.get_result(workflow_id)
        assert not result.success
        assert result.error_code == "WORKFLOW_CANCELLED"
        assert event_types(orchestrator, workflow_id) == [WorkflowEventType.STARTED, WorkflowEventType.FAILED]

    async def test_cancel_during_completed_dispatch_keeps_result(self, fake_agents, match, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)
        entered = asyncio.Event()
        gate = asyncio.Event()

        async def slow_subscriber(event):
            entered.set()
            await gate.wait()

        orchestrator.streaming_handler.register_event_handler(WorkflowEventType.COMPLETED.value, slow_subscriber)

        workflow_id = await orchestrator.start(match, workflow_context)
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert await orchestrator.cancel(workflow_id)

        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=1)
        assert result.success
        assert orchestrator.registry.active_ids() == []
        assert event_types(orchestrator, workflow_id) == SUCCESS_SEQUENCE

    async def test_cancel_during_failed_dispatch_keeps_result(self, match, workflow_context):
        orchestrator = WorkflowOrchestrator(FakeAgents(fail_on="planner"))
        entered = asyncio.Event()

        async def slow_subscriber(event):
            entered.set()
            await asyncio.Event().wait()

        orchestrator.streaming_handler.register_event_handler(WorkflowEventType.FAILED.value, slow_subscriber)

        workflow_id = await orchestrator.start(match, workflow_context)
        await asyncio.wait_for(entered.wait(), timeout=5)

        assert await orchestrator.cancel(workflow_id)

        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=1)
        assert not result.success
        assert result.error_code == "EXTERNAL_SERVICE_ERROR"
        assert orchestrator.registry.active_ids() == []
        assert event_types(orchestrator, workflow_id) == [WorkflowEventType.STARTED, WorkflowEventType.FAILED]

    async def test_cancel_unknown_workflow(self, fake_agents):
        assert not await WorkflowOrchestrator(fake_agents).cancel("missing")

    async def test_shutdown_cancels_running_workflows(self, match, workflow_context):
        orchestrator = WorkflowOrchestrator(FakeAgents(gates={"planner": asyncio.Event()}))
        workflow_id = await orchestrator.start(match, workflow_context)

        await orchestrator.shutdown()

        assert orchestrator.registry.active_ids() == []
        assert not orchestrator.registry.get_result(workflow_id).success

    async def test_follow_stream_ends_with_terminal_event(self, fake_agents, match, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)

        workflow_id = await orchestrator.start(match, workflow_context)
        events = [event async for event in orchestrator.registry.stream_events(workflow_id, follow=True)]

        assert [event.type for event in events] == SUCCESS_SEQUENCE

    async def test_event_handlers_receive_events(self, fake_agents, match, workflow_context):
        orchestrator = WorkflowOrchestrator(fake_agents)
        received = []

        async def collect(event):
            received.append(event.type)

        async def broken(event):
            raise RuntimeError("subscriber down")

        orchestrator.streaming_handler.register_event_handler("*", broken)
        orchestrator.streaming_handler.register_event_handler("*", collect)

        workflow_id = await orchestrator.start(match, workflow_context)
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert result.success
        assert received == SUCCESS_SEQUENCE

    async def test_language_falls_back_to_match(self, fake_agents, match):
        orchestrator = WorkflowOrchestrator(fake_agents)

        workflow_id = await orchestrator.start(match, WorkflowContext())
        await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert fake_agents.languages == ["python"]

    async def test_related_context_from_session(self, fake_agents, match, embedder):
        store = ContextStore(embedder)
        await store.add_file(
            "repo-1",
            "app/auth.py",
            "def login(name):\n    cursor.execute('SELECT * FROM users WHERE name = %s', (name,))\n",
            "python"
        )
        orchestrator = WorkflowOrchestrator(fake_agents, context_store=store)

        workflow_id = await orchestrator.start(match, WorkflowContext(session_id="repo-1"))
        result = await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert result.success
        for role in ("planner", "fixer", "reviewer"):
            assert [ctx.file_path for ctx in fake_agents.related[role]] == ["app/auth.py"]

    async def test_no_session_means_no_related_context(self, fake_agents, match, workflow_context, embedder):
        orchestrator = WorkflowOrchestrator(fake_agents, context_store=ContextStore(embedder))

        workflow_id = await orchestrator.start(match, workflow_context)
        await orchestrator.registry.wait_for_result(workflow_id, timeout=5)

        assert fake_agents.related["fixer"] == []
