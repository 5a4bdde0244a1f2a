import pytest

from hubflow.config import EngineConfig
from hubflow.contracts import (
    StepResult,
    StepStatus,
    StepType,
    WorkflowInstance,
    WorkflowStatus,
)
from hubflow.engine import WorkflowEngine
from hubflow.handlers import build_handler_registry
from hubflow.persistence import InMemoryInstanceStore, SQLiteInstanceStore
from hubflow.registry import WorkflowDefinitionRegistry


def _handlers(calls):
    handlers = build_handler_registry()

    @handlers.register(StepType.AI_ACTION)
    async def run(step, ctx):
        calls.append(step.id)
        return StepResult(type=step.type.value, success=True, data=step.id)

    return handlers


@pytest.mark.asyncio
async def test_engine_persists_progress_to_sqlite(tmp_path, make_step, make_definition):
    store = SQLiteInstanceStore(tmp_path / "wf.db")
    definition = make_definition(
        [make_step("A"), make_step("B", ["A"], step_type=StepType.USER_ACTION)]
    )
    engine = WorkflowEngine(
        WorkflowDefinitionRegistry([definition]),
        _handlers([]),
        store=store,
        config=EngineConfig(retry_delay_ms=0),
    )
    async with engine:
        instance = await engine.start_workflow("wf", {"k": "v"}, user_id="u1")
        await engine.wait_for(instance.id, timeout=5)

        stored = await store.load(instance.id)
        assert stored.status == WorkflowStatus.ACTIVE
        assert stored.current_step_id == "B"
        assert stored.get_step("A").status == StepStatus.COMPLETED
        assert stored.get_step("B").status == StepStatus.PAUSED
        assert stored.get_step("B").result.awaiting_input is True
        assert stored.context == {"k": "v"}

        await engine.submit_step_input(instance.id, "B", {"approved": True})
        await engine.wait_for(instance.id, timeout=5)

    stored = await store.load(instance.id)
    assert stored.status == WorkflowStatus.COMPLETED
    assert stored.result.summary == ["A", "B"]
    assert stored.execution_order == ["A", "B"]
    assert [i.id for i in await store.load_for_user("u1")] == [instance.id]
    store.close()


@pytest.mark.asyncio
async def test_recovery_restarts_interrupted_step(tmp_path, make_step, make_definition):
    store = SQLiteInstanceStore(tmp_path / "wf.db")
    steps = [make_step("A"), make_step("B", ["A"]), make_step("C", ["B"])]
    steps[0].status = StepStatus.COMPLETED
    steps[0].result = StepResult(type="ai_action", success=True, data="A")
    steps[1].status = StepStatus.IN_PROGRESS
    crashed = WorkflowInstance(
        definition_id="wf",
        current_step_id="B",
        status=WorkflowStatus.ACTIVE,
        steps=steps,
        execution_order=["A"],
    )
    await store.save(crashed)

    calls = []
    engine = WorkflowEngine(
        WorkflowDefinitionRegistry([make_definition(steps)]),
        _handlers(calls),
        store=store,
        config=EngineConfig(recover_on_start=True, retry_delay_ms=0),
    )
    async with engine:
        done = await engine.wait_for(crashed.id, timeout=5)

    assert calls == ["B", "C"]
    assert done.status == WorkflowStatus.COMPLETED
    assert done.result.summary == ["A", "B", "C"]
    assert done.result.data["A"] == "A"
    store.close()


@pytest.mark.asyncio
async def test_recovery_pauses_instances_beyond_the_bound(make_step, make_definition):
    store = InMemoryInstanceStore()
    ids = []
    for _ in range(3):
        instance = WorkflowInstance(
            definition_id="wf",
            current_step_id="A",
            status=WorkflowStatus.ACTIVE,
            steps=[make_step("A", step_type=StepType.USER_ACTION)],
        )
        await store.save(instance)
        ids.append(instance.id)

    engine = WorkflowEngine(
        WorkflowDefinitionRegistry([make_definition([make_step("A")])]),
        build_handler_registry(),
        store=store,
        config=EngineConfig(max_concurrent_workflows=2, recover_on_start=True),
    )
    async with engine:
        assert engine.active_count == 2
        assert len(engine.list_paused()) == 1
        paused_id = engine.list_paused()[0].id
        stored = await store.load(paused_id)
        assert stored.status == WorkflowStatus.PAUSED


@pytest.mark.asyncio
async def test_transient_instances_are_not_persisted(make_step, make_definition):
    store = InMemoryInstanceStore()
    engine = WorkflowEngine(
        WorkflowDefinitionRegistry([make_definition([make_step("A")])]),
        _handlers([]),
        store=store,
        config=EngineConfig(persist_workflow_state=False, retry_delay_ms=0),
    )
    async with engine:
        instance = await engine.start_workflow("wf")
        done = await engine.wait_for(instance.id, timeout=5)

    assert done.status == WorkflowStatus.COMPLETED
    assert await store.list_instances() == []


@pytest.mark.asyncio
async def test_get_workflow_falls_back_to_store(make_step, make_definition):
    store = InMemoryInstanceStore()
    finished = WorkflowInstance(
        definition_id="wf",
        current_step_id="A",
        status=WorkflowStatus.COMPLETED,
        steps=[make_step("A")],
    )
    await store.save(finished)

    engine = WorkflowEngine(
        WorkflowDefinitionRegistry([make_definition([make_step("A")])]),
        _handlers([]),
        store=store,
    )
    loaded = await engine.get_workflow(finished.id)
    assert loaded.status == WorkflowStatus.COMPLETED

    await engine.delete_workflow(finished.id)
    assert await store.list_instances() == []
