import asyncio

import pytest

from hubflow.config import EngineConfig
from hubflow.contracts import (
    EventType,
    StepResult,
    StepStatus,
    StepType,
    WorkflowStatus,
)
from hubflow.engine import WorkflowEngine
from hubflow.errors import (
    DefinitionNotFound,
    EngineNotRunning,
    InvalidStateTransition,
    ResourceExhausted,
    UnregisteredStepType,
)
from hubflow.handlers import StepHandlerRegistry, build_handler_registry
from hubflow.registry import WorkflowDefinitionRegistry


def _ok(step, data=None):
    return StepResult(type=step.type.value, data=data, success=True)


def _engine(definitions, handlers=None, config=None, **kwargs):
    registry = WorkflowDefinitionRegistry(definitions)
    return WorkflowEngine(
        registry,
        handlers or build_handler_registry(),
        config=config or EngineConfig(retry_delay_ms=0, step_timeout_ms=2000),
        **kwargs,
    )


def _recording_handlers(calls):
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def run(step, ctx):
        calls.append(step.id)
        return _ok(step, {"step": step.id})

    return handlers


@pytest.mark.asyncio
async def test_linear_workflow_runs_in_dependency_order(make_step, make_definition):
    definition = make_definition(
        [make_step("A"), make_step("B", ["A"]), make_step("C", ["B"])]
    )
    calls = []
    events = []
    engine = _engine([definition], _recording_handlers(calls))
    engine.on_event(lambda e: events.append((e.type, e.step_id)))

    async with engine:
        started = await engine.start_workflow("wf", {"user": {"id": "u1"}})
        assert started.status == WorkflowStatus.ACTIVE
        assert started.current_step_id == "A"
        assert all(s.status == StepStatus.PENDING for s in started.steps)

        done = await engine.wait_for(started.id, timeout=5)

    assert calls == ["A", "B", "C"]
    assert done.status == WorkflowStatus.COMPLETED
    assert done.execution_order == ["A", "B", "C"]
    assert done.result.type == "success"
    assert done.result.summary == ["A", "B", "C"]
    assert done.result.data == {"A": {"step": "A"}, "B": {"step": "B"}, "C": {"step": "C"}}
    assert done.completed_at is not None
    assert events[0] == (EventType.WORKFLOW_STARTED, None)
    assert events[-1] == (EventType.WORKFLOW_COMPLETED, None)
    completed = [step_id for kind, step_id in events if kind == EventType.STEP_COMPLETED]
    assert completed == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_diamond_prefers_dependents_then_any_runnable(make_step, make_definition):
    definition = make_definition(
        [
            make_step("A"),
            make_step("B", ["A"]),
            make_step("C", ["A"]),
            make_step("D", ["B", "C"]),
        ]
    )
    calls = []
    async with _engine([definition], _recording_handlers(calls)) as engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)

    assert calls == ["A", "B", "C", "D"]
    assert done.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_step_titles_are_used_in_summary(make_step, make_definition):
    definition = make_definition(
        [make_step("a", title="Detect"), make_step("b", ["a"])]
    )
    async with _engine([definition], _recording_handlers([])) as engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)
    assert done.result.summary == ["Detect", "b"]


@pytest.mark.asyncio
async def test_concurrency_bound_is_enforced(make_step, make_definition):
    gate = asyncio.Event()
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def blocked(step, ctx):
        await gate.wait()
        return _ok(step)

    definition = make_definition([make_step("A")])
    config = EngineConfig(max_concurrent_workflows=2, retry_delay_ms=0)
    async with _engine([definition], handlers, config) as engine:
        first = await engine.start_workflow("wf")
        second = await engine.start_workflow("wf")
        assert engine.active_count == 2
        with pytest.raises(ResourceExhausted):
            await engine.start_workflow("wf")

        await engine.pause_workflow(first.id)
        third = await engine.start_workflow("wf")
        with pytest.raises(ResourceExhausted):
            await engine.resume_workflow(first.id)
        assert engine.active_count == 2

        gate.set()
        await engine.wait_for(second.id, timeout=5)
        await engine.wait_for(third.id, timeout=5)
        assert engine.active_count == 0

        await engine.resume_workflow(first.id)
        done = await engine.wait_for(first.id, timeout=5)
        assert done.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_then_resume_before_progress_is_identity(make_step, make_definition):
    definition = make_definition([make_step("A"), make_step("B", ["A"])])
    async with _engine([definition], _recording_handlers([])) as engine:
        created = await engine.start_workflow("wf")
        paused = await engine.pause_workflow(created.id)
        assert paused.status == WorkflowStatus.PAUSED
        assert paused.paused_at is not None
        assert [i.id for i in engine.list_paused()] == [created.id]

        resumed = await engine.resume_workflow(created.id)
        assert resumed.model_dump() == created.model_dump()

        done = await engine.wait_for(created.id, timeout=5)
        assert done.status == WorkflowStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_discards_late_handler_result(make_step, make_definition):
    gate = asyncio.Event()
    started = asyncio.Event()
    calls = []
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def slow(step, ctx):
        calls.append(step.id)
        started.set()
        await gate.wait()
        return _ok(step, "late")

    events = []
    definition = make_definition([make_step("A")])
    engine = _engine([definition], handlers)
    engine.on_event(lambda e: events.append(e.type))
    async with engine:
        instance = await engine.start_workflow("wf")
        await asyncio.wait_for(started.wait(), timeout=5)

        paused = await engine.pause_workflow(instance.id)
        assert paused.get_step("A").status == StepStatus.PAUSED

        gate.set()
        for _ in range(5):
            await asyncio.sleep(0)
        current = await engine.get_workflow(instance.id)
        assert current.status == WorkflowStatus.PAUSED
        assert current.get_step("A").status == StepStatus.PAUSED
        assert current.get_step("A").result is None
        assert EventType.STEP_COMPLETED not in events
        assert EventType.STEP_PAUSED in events

        resumed = await engine.resume_workflow(instance.id)
        assert resumed.get_step("A").status == StepStatus.PENDING
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.status == WorkflowStatus.COMPLETED
    assert calls == ["A", "A"]
    assert events.count(EventType.STEP_COMPLETED) == 1
    assert EventType.STEP_RESUMED in events


@pytest.mark.asyncio
async def test_cancel_is_terminal(make_step, make_definition):
    gate = asyncio.Event()
    started = asyncio.Event()
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def slow(step, ctx):
        started.set()
        await gate.wait()
        return _ok(step)

    definition = make_definition([make_step("A"), make_step("B", ["A"])])
    async with _engine([definition], handlers) as engine:
        instance = await engine.start_workflow("wf")
        await asyncio.wait_for(started.wait(), timeout=5)

        cancelled = await engine.cancel_workflow(instance.id)
        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.result.type == "cancelled"
        assert cancelled.get_step("A").status == StepStatus.SKIPPED
        assert cancelled.get_step("B").status == StepStatus.PENDING
        assert engine.active_count == 0

        gate.set()
        await asyncio.sleep(0.01)
        current = await engine.get_workflow(instance.id)
        assert current.status == WorkflowStatus.CANCELLED
        assert current.get_step("A").status == StepStatus.SKIPPED

        for operation in (
            engine.pause_workflow,
            engine.resume_workflow,
            engine.cancel_workflow,
        ):
            with pytest.raises(InvalidStateTransition):
                await operation(instance.id)
        assert [i.id for i in engine.list_completed()] == [instance.id]


@pytest.mark.asyncio
async def test_cancel_paused_workflow(make_step, make_definition):
    definition = make_definition([make_step("A")])
    async with _engine([definition], _recording_handlers([])) as engine:
        instance = await engine.start_workflow("wf")
        await engine.pause_workflow(instance.id)
        cancelled = await engine.cancel_workflow(instance.id)
    assert cancelled.status == WorkflowStatus.CANCELLED


@pytest.mark.asyncio
async def test_resume_requires_paused(make_step, make_definition):
    definition = make_definition([make_step("A")])
    gate = asyncio.Event()
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def slow(step, ctx):
        await gate.wait()
        return _ok(step)

    async with _engine([definition], handlers) as engine:
        instance = await engine.start_workflow("wf")
        with pytest.raises(InvalidStateTransition):
            await engine.resume_workflow(instance.id)
        gate.set()
        await engine.wait_for(instance.id, timeout=5)


@pytest.mark.asyncio
async def test_instances_have_independent_step_copies(make_step, make_definition):
    definition = make_definition([make_step("A"), make_step("B", ["A"])])
    registry = WorkflowDefinitionRegistry([definition])
    engine = WorkflowEngine(
        registry, _recording_handlers([]), config=EngineConfig(retry_delay_ms=0)
    )
    async with engine:
        first = await engine.start_workflow("wf")
        second = await engine.start_workflow("wf")
        await engine.pause_workflow(second.id)

        done = await engine.wait_for(first.id, timeout=5)
        other = await engine.get_workflow(second.id)

        snapshot = await engine.get_workflow(first.id)
        snapshot.steps[0].status = StepStatus.FAILED

    assert all(s.status == StepStatus.COMPLETED for s in done.steps)
    assert all(s.status == StepStatus.PENDING for s in other.steps)
    assert (await engine.get_workflow(first.id)).steps[0].status == StepStatus.COMPLETED
    assert all(s.status == StepStatus.PENDING for s in registry.get("wf").steps)


@pytest.mark.asyncio
async def test_handler_receives_a_copy_of_the_step(make_step, make_definition):
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def meddling(step, ctx):
        step.status = StepStatus.SKIPPED
        step.dependencies.append("ghost")
        return _ok(step)

    definition = make_definition([make_step("A")])
    async with _engine([definition], handlers) as engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.status == WorkflowStatus.COMPLETED
    assert done.get_step("A").dependencies == []


@pytest.mark.asyncio
async def test_context_and_artifacts_are_shared_between_steps(make_step, make_definition):
    handlers = build_handler_registry()
    seen = {}

    @handlers.register(StepType.AI_ACTION)
    async def run(step, ctx):
        seen[step.id] = (dict(ctx.snapshot), sorted(ctx.step_results))
        return _ok(step, step.id)

    definition = make_definition([make_step("A"), make_step("B", ["A"])])
    async with _engine(
        [definition], handlers, context_provider=lambda: {"domain": "example.com"}
    ) as engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.context == {"domain": "example.com"}
    assert seen["A"] == ({"domain": "example.com"}, [])
    assert seen["B"] == ({"domain": "example.com"}, ["A"])


@pytest.mark.asyncio
async def test_user_action_waits_for_submitted_input(make_step, make_definition):
    definition = make_definition(
        [
            make_step("prepare"),
            make_step("confirm", ["prepare"], step_type=StepType.USER_ACTION),
            make_step("finish", ["confirm"]),
        ]
    )
    calls = []
    events = []
    engine = _engine([definition], _recording_handlers(calls))
    engine.on_event(lambda e: events.append((e.type, e.step_id)))
    async with engine:
        instance = await engine.start_workflow("wf")
        waiting = await engine.wait_for(instance.id, timeout=5)

        assert waiting.status == WorkflowStatus.ACTIVE
        assert waiting.current_step_id == "confirm"
        assert waiting.get_step("confirm").status == StepStatus.PAUSED
        assert waiting.get_step("confirm").result.awaiting_input is True
        assert (EventType.USER_ACTION_REQUIRED, "confirm") in events
        assert calls == ["prepare"]

        with pytest.raises(InvalidStateTransition):
            await engine.submit_step_input(instance.id, "finish", {"ok": True})

        await engine.submit_step_input(instance.id, "confirm", {"ok": True})
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.status == WorkflowStatus.COMPLETED
    assert done.execution_order == ["prepare", "confirm", "finish"]
    assert done.result.data["confirm"] == {"ok": True}
    assert calls == ["prepare", "finish"]


@pytest.mark.asyncio
async def test_submit_input_on_last_step_completes(make_step, make_definition):
    definition = make_definition(
        [make_step("ask", step_type=StepType.USER_ACTION)]
    )
    async with _engine([definition]) as engine:
        instance = await engine.start_workflow("wf")
        await engine.wait_for(instance.id, timeout=5)
        done = await engine.submit_step_input(instance.id, "ask", "yes")

    assert done.status == WorkflowStatus.COMPLETED
    assert done.result.summary == ["ask"]


@pytest.mark.asyncio
async def test_unregistered_step_type_fails_at_start(make_step, make_definition):
    definition = make_definition([make_step("A")])
    async with _engine([definition], StepHandlerRegistry()) as engine:
        with pytest.raises(UnregisteredStepType) as excinfo:
            await engine.start_workflow("wf")
        assert engine.active_count == 0
    assert excinfo.value.step_type == "ai_action"


@pytest.mark.asyncio
async def test_unknown_definition_is_rejected(make_step, make_definition):
    async with _engine([make_definition([make_step("A")])]) as engine:
        with pytest.raises(DefinitionNotFound):
            await engine.start_workflow("missing")


@pytest.mark.asyncio
async def test_operations_require_running_engine(make_step, make_definition):
    engine = _engine([make_definition([make_step("A")])], _recording_handlers([]))
    with pytest.raises(EngineNotRunning):
        await engine.start_workflow("wf")

    async with engine:
        instance = await engine.start_workflow("wf")
        await engine.wait_for(instance.id, timeout=5)

    with pytest.raises(EngineNotRunning):
        await engine.pause_workflow(instance.id)


@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_execution(make_step, make_definition):
    definition = make_definition([make_step("A"), make_step("B", ["A"])])
    engine = _engine([definition], _recording_handlers([]))
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    engine.on_event(broken)
    unsubscribe = engine.on_event(lambda e: received.append(e.type))
    async with engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)
        unsubscribe()

    assert done.status == WorkflowStatus.COMPLETED
    assert received[-1] == EventType.WORKFLOW_COMPLETED


@pytest.mark.asyncio
async def test_delete_and_cleanup_only_touch_finished_instances(make_step, make_definition):
    from datetime import timedelta

    definition = make_definition([make_step("A")])
    async with _engine([definition], _recording_handlers([])) as engine:
        finished = await engine.start_workflow("wf")
        await engine.wait_for(finished.id, timeout=5)
        running = await engine.start_workflow("wf")
        await engine.pause_workflow(running.id)

        with pytest.raises(InvalidStateTransition):
            await engine.delete_workflow(running.id)

        assert await engine.cleanup(max_age=timedelta(days=1)) == 0
        assert await engine.cleanup(max_age=timedelta(0)) == 1
        assert engine.list_completed() == []
        assert [i.id for i in engine.list_paused()] == [running.id]

        await engine.cancel_workflow(running.id)
        await engine.delete_workflow(running.id)
        assert engine.list_completed() == []


@pytest.mark.asyncio
async def test_condition_wait_sees_data_written_by_earlier_steps(make_step, make_definition):
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def prepare(step, ctx):
        ctx.data["ready"] = True
        return _ok(step, {"score": 9})

    def wait_for_condition(step_id, dependency, condition):
        return make_step(
            step_id,
            [dependency],
            step_type=StepType.WAIT,
            config={
                "wait_type": "condition",
                "duration_ms": 1000,
                "poll_interval_ms": 5,
                "condition": condition,
            },
            max_retries=0,
        )

    definition = make_definition(
        [
            make_step("A"),
            wait_for_condition("ready", "A", {"context_path": "ready", "value": True}),
            wait_for_condition(
                "scored",
                "ready",
                {
                    "context_path": "step_results.A.score",
                    "operator": "greater_than",
                    "value": 5,
                },
            ),
        ]
    )
    async with _engine([definition], handlers) as engine:
        instance = await engine.start_workflow("wf", {"ready": False})
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.status == WorkflowStatus.COMPLETED
    assert done.result.summary == ["A", "ready", "scored"]
    assert done.context == {"ready": False}
