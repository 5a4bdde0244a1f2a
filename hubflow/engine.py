"""Workflow execution engine.

The engine owns every running instance. Each active instance is driven by
one asyncio task that executes its steps one at a time. Pausing or
cancelling an instance bumps its driver token; a driver whose token is stale
stops at its next checkpoint and discards any handler result it was waiting
for.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from datetime import timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Set

from .config import EngineConfig, HubflowConfig
from .contracts import (
    Artifact,
    EventType,
    StepError,
    StepResult,
    StepStatus,
    WorkflowContext,
    WorkflowError,
    WorkflowEvent,
    WorkflowInstance,
    WorkflowResult,
    WorkflowStatus,
    WorkflowStep,
    utcnow,
)
from .errors import (
    INTERNAL_ERROR,
    Deadlock,
    EngineNotRunning,
    InstanceNotFound,
    InvalidStateTransition,
    MaxRetriesExceeded,
    ResourceExhausted,
    StepExecutionError,
    StepNotFound,
    StepTimeout,
    UnregisteredStepType,
)
from .events import EventBus, EventListener
from .handlers import StepHandlerRegistry
from .persistence import InMemoryInstanceStore, WorkflowInstanceStore, get_store
from .registry import (
    WorkflowDefinitionRegistry,
    register_catalog,
    register_default_workflows,
)
from .states import check_step_transition, check_workflow_transition
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)

ContextProvider = Callable[[], Mapping[str, Any]]


class WorkflowEngine:
    """Run workflow instances built from registered definitions."""

    def __init__(
        self,
        definitions: WorkflowDefinitionRegistry,
        handlers: StepHandlerRegistry,
        store: Optional[WorkflowInstanceStore] = None,
        config: Optional[EngineConfig] = None,
        context_provider: Optional[ContextProvider] = None,
    ) -> None:
        self.definitions = definitions
        self.handlers = handlers
        self.store = store if store is not None else InMemoryInstanceStore()
        self.config = config or EngineConfig()
        self.context_provider = context_provider
        self.events = EventBus()

        self._instances: Dict[str, WorkflowInstance] = {}
        self._contexts: Dict[str, WorkflowContext] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, int] = {}
        self._background: Set[asyncio.Task] = set()
        self._running = False

    @classmethod
    def from_config(
        cls,
        handlers: StepHandlerRegistry,
        config: Optional[HubflowConfig] = None,
        context_provider: Optional[ContextProvider] = None,
    ) -> "WorkflowEngine":
        """Build an engine with the catalogs and store named in ``config``."""

        config = config or HubflowConfig()
        definitions = WorkflowDefinitionRegistry()
        if config.load_default_workflows:
            register_default_workflows(definitions)
        for path in config.catalog_paths:
            register_catalog(definitions, path)
        store = get_store(config.database_url, config) if config.database_url else None
        return cls(
            definitions,
            handlers,
            store=store,
            config=config.engine,
            context_provider=context_provider,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("Workflow engine started")
        if self.config.recover_on_start and self.config.persist_workflow_state:
            await self._recover()

    async def shutdown(self) -> None:
        """Stop every driver task. Active instances stay active in the store."""

        self._running = False
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("Workflow engine stopped")

    async def __aenter__(self) -> "WorkflowEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    def _require_running(self) -> None:
        if not self._running:
            raise EngineNotRunning("Workflow engine is not running; call start() first")

    # ------------------------------------------------------------------
    # Queries
    @property
    def active_count(self) -> int:
        return sum(
            1 for i in self._instances.values() if i.status == WorkflowStatus.ACTIVE
        )

    def on_event(self, listener: EventListener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    async def get_workflow(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is not None:
            return instance.model_copy(deep=True)
        if self._persisting():
            return await self.store.load(instance_id)
        raise InstanceNotFound(instance_id)

    def list_active(self) -> List[WorkflowInstance]:
        return self._snapshots(lambda i: i.status == WorkflowStatus.ACTIVE)

    def list_paused(self) -> List[WorkflowInstance]:
        return self._snapshots(lambda i: i.status == WorkflowStatus.PAUSED)

    def list_completed(self) -> List[WorkflowInstance]:
        return self._snapshots(lambda i: i.is_terminal)

    def _snapshots(self, predicate) -> List[WorkflowInstance]:
        return [
            i.model_copy(deep=True) for i in self._instances.values() if predicate(i)
        ]

    async def wait_for(
        self, instance_id: str, timeout: Optional[float] = None
    ) -> WorkflowInstance:
        """Wait until the instance has no running driver and return a snapshot.

        The driver task is never cancelled by this call.
        """

        if instance_id not in self._instances:
            raise InstanceNotFound(instance_id)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None
        while True:
            task = self._tasks.get(instance_id)
            if task is None or task.done():
                break
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            done, _ = await asyncio.wait({task}, timeout=remaining)
            if not done:
                raise asyncio.TimeoutError(
                    f"Workflow {instance_id} still running after {timeout}s"
                )
        return self._instances[instance_id].model_copy(deep=True)

    # ------------------------------------------------------------------
    # Operations
    async def start_workflow(
        self,
        definition_id: str,
        context: Optional[Mapping[str, Any]] = None,
        user_id: Optional[str] = None,
    ) -> WorkflowInstance:
        self._require_running()
        if self.active_count >= self.config.max_concurrent_workflows:
            raise ResourceExhausted(
                f"Maximum concurrent workflows ({self.config.max_concurrent_workflows}) reached"
            )
        definition = self.definitions.get(definition_id)
        missing = self.handlers.missing({step.type for step in definition.steps})
        if missing:
            raise UnregisteredStepType(missing[0].value)

        if context is None and self.context_provider is not None:
            context = self.context_provider()
        snapshot = copy.deepcopy(dict(context or {}))

        instance = WorkflowInstance(
            definition_id=definition.id,
            current_step_id=definition.entry_step_id,
            context=snapshot,
            steps=[step.as_template() for step in definition.steps],
            metadata={"definition_version": definition.version},
            user_id=user_id,
        )
        check_workflow_transition(instance.id, instance.status, WorkflowStatus.ACTIVE)
        instance.status = WorkflowStatus.ACTIVE
        # the slot is held from here on
        self._instances[instance.id] = instance
        self._contexts[instance.id] = WorkflowContext(snapshot=copy.deepcopy(snapshot))

        created = instance.model_copy(deep=True)
        try:
            await self._save(instance)
        except Exception:
            logger.error(f"Could not persist new workflow {instance.id}; releasing its slot")
            self._forget(instance.id)
            raise

        logger.info(f"Workflow {instance.id} started from {definition.id}")
        self._emit(
            EventType.WORKFLOW_STARTED,
            instance,
            definition_id=definition.id,
            user_id=user_id,
        )
        if instance.status == WorkflowStatus.ACTIVE:
            self._spawn(instance.id)
        return created

    async def pause_workflow(self, instance_id: str) -> WorkflowInstance:
        self._require_running()
        instance = self._get(instance_id)
        check_workflow_transition(instance_id, instance.status, WorkflowStatus.PAUSED)
        instance.status = WorkflowStatus.PAUSED
        instance.paused_at = utcnow()
        self._invalidate(instance_id)

        paused_step = self._current_in_progress(instance)
        if paused_step is not None:
            check_step_transition(paused_step.id, paused_step.status, StepStatus.PAUSED)
            paused_step.status = StepStatus.PAUSED

        logger.info(f"Workflow {instance_id} paused")
        self._emit(EventType.WORKFLOW_PAUSED, instance)
        if paused_step is not None:
            self._emit(EventType.STEP_PAUSED, instance, step_id=paused_step.id)
        snapshot = instance.model_copy(deep=True)

        if self._persisting(instance):
            await self.store.update_status(instance_id, WorkflowStatus.PAUSED)
            if paused_step is not None:
                await self.store.save_step(instance_id, paused_step)
        return snapshot

    async def resume_workflow(self, instance_id: str) -> WorkflowInstance:
        self._require_running()
        instance = self._get(instance_id)
        check_workflow_transition(instance_id, instance.status, WorkflowStatus.ACTIVE)
        if self.active_count >= self.config.max_concurrent_workflows:
            raise ResourceExhausted(
                f"Maximum concurrent workflows ({self.config.max_concurrent_workflows}) reached"
            )
        paused_at = instance.paused_at
        instance.status = WorkflowStatus.ACTIVE
        instance.paused_at = None

        resumed_step = instance.get_step(instance.current_step_id)
        if resumed_step is not None and resumed_step.status == StepStatus.PAUSED:
            check_step_transition(resumed_step.id, resumed_step.status, StepStatus.PENDING)
            resumed_step.status = StepStatus.PENDING
        else:
            resumed_step = None

        snapshot = instance.model_copy(deep=True)
        try:
            await self._save(instance)
        except Exception:
            logger.error(f"Could not persist resume of workflow {instance_id}; staying paused")
            if instance.status == WorkflowStatus.ACTIVE:
                instance.status = WorkflowStatus.PAUSED
                instance.paused_at = paused_at
                if resumed_step is not None and resumed_step.status == StepStatus.PENDING:
                    resumed_step.status = StepStatus.PAUSED
            raise

        logger.info(f"Workflow {instance_id} resumed at {instance.current_step_id}")
        self._emit(EventType.WORKFLOW_RESUMED, instance)
        if resumed_step is not None:
            self._emit(EventType.STEP_RESUMED, instance, step_id=resumed_step.id)
        if instance.status == WorkflowStatus.ACTIVE:
            self._spawn(instance_id)
        return snapshot

    async def cancel_workflow(self, instance_id: str) -> WorkflowInstance:
        self._require_running()
        instance = self._get(instance_id)
        check_workflow_transition(instance_id, instance.status, WorkflowStatus.CANCELLED)
        self._invalidate(instance_id)

        for step in instance.steps:
            if step.status in (StepStatus.IN_PROGRESS, StepStatus.PAUSED):
                check_step_transition(step.id, step.status, StepStatus.SKIPPED)
                step.status = StepStatus.SKIPPED

        instance.status = WorkflowStatus.CANCELLED
        instance.completed_at = utcnow()
        instance.result = WorkflowResult(
            type="cancelled",
            message="Workflow cancelled",
            summary=self._summary(instance),
            artifacts=list(self._contexts[instance_id].artifacts),
        )
        logger.info(f"Workflow {instance_id} cancelled")
        self._emit(EventType.WORKFLOW_CANCELLED, instance)
        snapshot = instance.model_copy(deep=True)
        await self._save(instance)
        return snapshot

    async def submit_step_input(
        self, instance_id: str, step_id: str, data: Any = None
    ) -> WorkflowInstance:
        """Complete a step that is waiting for an external outcome."""

        self._require_running()
        instance = self._get(instance_id)
        if instance.status != WorkflowStatus.ACTIVE:
            raise InvalidStateTransition(
                instance_id, instance.status.value, "submit_step_input"
            )
        step = instance.get_step(step_id)
        if step is None:
            raise StepNotFound(f"Step not found: {step_id} (instance={instance_id})")
        if not (
            step.status == StepStatus.PAUSED
            and step.result is not None
            and step.result.awaiting_input
        ):
            raise InvalidStateTransition(
                instance_id, step.status.value, StepStatus.COMPLETED.value
            )

        ctx = self._contexts[instance_id]
        ctx.user_inputs[step_id] = data
        result = StepResult(
            type=step.type.value,
            data=data,
            success=True,
            message="Input received",
            metadata={"submitted": True},
        )
        self._complete_step(instance, step, result)
        logger.info(f"Workflow {instance_id} received input for {step_id}")

        self._invalidate(instance_id)
        if await self._advance(instance, step):
            self._spawn(instance_id)
        return instance.model_copy(deep=True)

    async def delete_workflow(self, instance_id: str) -> None:
        instance = self._instances.get(instance_id)
        if instance is None and self._persisting():
            instance = await self.store.load(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        if not instance.is_terminal:
            raise InvalidStateTransition(instance_id, instance.status.value, "deleted")
        self._forget(instance_id)
        if self._persisting():
            await self.store.delete(instance_id)

    async def cleanup(self, max_age: Optional[timedelta] = None) -> int:
        """Drop finished instances older than ``max_age``."""

        if max_age is None:
            max_age = timedelta(days=self.config.completed_retention_days)
        cutoff = utcnow() - max_age
        expired = [
            i.id
            for i in self._instances.values()
            if i.is_terminal and i.completed_at is not None and i.completed_at < cutoff
        ]
        for instance_id in expired:
            self._forget(instance_id)
        if self._persisting():
            removed = await self.store.delete_older_than(max_age)
        else:
            removed = len(expired)
        logger.info(f"Cleanup removed {removed} finished workflow(s)")
        return removed

    # ------------------------------------------------------------------
    # Driver
    def _spawn(self, instance_id: str) -> None:
        token = self._tokens.get(instance_id, 0) + 1
        self._tokens[instance_id] = token
        task = asyncio.create_task(
            self._drive(instance_id, token), name=f"hubflow-{instance_id}"
        )
        self._tasks[instance_id] = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _invalidate(self, instance_id: str) -> None:
        self._tokens[instance_id] = self._tokens.get(instance_id, 0) + 1

    def _is_current(self, instance_id: str, token: int) -> bool:
        instance = self._instances.get(instance_id)
        return (
            instance is not None
            and instance.status == WorkflowStatus.ACTIVE
            and self._tokens.get(instance_id) == token
        )

    async def _drive(self, instance_id: str, token: int) -> None:
        try:
            await self._run_steps(instance_id, token)
        except Exception as exc:
            logger.exception(f"Driver for workflow {instance_id} crashed")
            instance = self._instances.get(instance_id)
            if instance is None or not self._is_current(instance_id, token):
                return
            await self._fail(
                instance,
                WorkflowError(
                    code=INTERNAL_ERROR,
                    message=f"Internal error: {exc}",
                    step_id=instance.current_step_id,
                    details={"exception": type(exc).__name__},
                ),
            )

    async def _run_steps(self, instance_id: str, token: int) -> None:
        while self._is_current(instance_id, token):
            instance = self._instances[instance_id]
            step = instance.get_step(instance.current_step_id)
            if step is None:
                await self._fail(
                    instance,
                    WorkflowError(
                        code=StepNotFound.code,
                        message=f"Step not found: {instance.current_step_id}",
                        step_id=instance.current_step_id,
                    ),
                )
                return

            if step.status == StepStatus.PAUSED:
                logger.info(f"Workflow {instance_id} waiting for input on {step.id}")
                return
            if step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
                if not await self._advance(instance, step):
                    return
                continue
            if step.status == StepStatus.FAILED:
                step.status = StepStatus.PENDING

            index = instance.step_index()
            unmet = [
                dep
                for dep in step.dependencies
                if dep not in index or index[dep].status != StepStatus.COMPLETED
            ]
            if unmet:
                logger.warning(
                    f"Workflow {instance_id}: step {step.id} has unmet dependencies {unmet}"
                )
                runnable = self._first_runnable(instance)
                if runnable is None:
                    await self._fail(instance, self._deadlock_error(instance))
                    return
                instance.current_step_id = runnable.id
                continue

            if not await self._execute_step(instance, step, token):
                return

    async def _execute_step(
        self, instance: WorkflowInstance, step: WorkflowStep, token: int
    ) -> bool:
        """Run one attempt of ``step``. Return True to keep driving."""

        check_step_transition(step.id, step.status, StepStatus.IN_PROGRESS)
        step.status = StepStatus.IN_PROGRESS
        step.started_at = utcnow()
        step.completed_at = None
        self._emit(
            EventType.STEP_STARTED,
            instance,
            step_id=step.id,
            attempt=step.retry_count + 1,
        )
        if self._persisting(instance):
            await self.store.update_step_status(
                instance.id, step.id, StepStatus.IN_PROGRESS
            )
        if not self._is_current(instance.id, token):
            return False

        ctx = self._contexts[instance.id]
        handler = self.handlers.get(step.type)
        timeout_ms = step.timeout if step.timeout is not None else self.config.step_timeout_ms
        result: Optional[StepResult] = None
        error: Optional[StepError] = None
        call: Optional[asyncio.Future] = None
        try:
            call = asyncio.ensure_future(handler(step.model_copy(deep=True), ctx))
            # a TimeoutError raised by the handler itself is an execution error
            done, _ = await asyncio.wait(
                {call}, timeout=timeout_ms / 1000 if timeout_ms else None
            )
            if call in done:
                result = call.result()
            else:
                call.cancel()
                await asyncio.gather(call, return_exceptions=True)
                error = StepError(
                    code=StepTimeout.code,
                    message=f"Step {step.id} timed out after {timeout_ms}ms",
                    details={"timeout_ms": timeout_ms},
                )
        except asyncio.CancelledError:
            if call is not None:
                call.cancel()
            raise
        except Exception as exc:
            logger.error(f"Step {step.id} of workflow {instance.id} raised: {exc!r}")
            error = StepError(
                code=StepExecutionError.code,
                message=str(exc) or type(exc).__name__,
                details={"exception": type(exc).__name__},
            )

        if not self._is_current(instance.id, token):
            logger.warning(
                f"Discarding late result of step {step.id} for workflow {instance.id}"
            )
            return False

        if result is not None and not result.success:
            error = StepError(
                code=StepExecutionError.code,
                message=result.message or f"Step {step.id} reported failure",
                details=result.data,
                recoverable=result.metadata.get("recoverable", True),
            )
        if error is not None:
            return await self._handle_failure(instance, step, result, error, token)

        assert result is not None
        ctx.step_results[step.id] = result
        if result.awaiting_input:
            check_step_transition(step.id, step.status, StepStatus.PAUSED)
            step.status = StepStatus.PAUSED
            step.result = result
            logger.info(f"Workflow {instance.id}: step {step.id} awaits external input")
            self._emit(
                EventType.USER_ACTION_REQUIRED,
                instance,
                step_id=step.id,
                request=result.data,
                message=result.message,
            )
            if self._persisting(instance):
                await self.store.save_step(instance.id, step)
            return False

        self._complete_step(instance, step, result)
        return await self._advance(instance, step)

    async def _handle_failure(
        self,
        instance: WorkflowInstance,
        step: WorkflowStep,
        result: Optional[StepResult],
        error: StepError,
        token: int,
    ) -> bool:
        check_step_transition(step.id, step.status, StepStatus.FAILED)
        step.retry_count += 1
        step.status = StepStatus.FAILED
        step.completed_at = utcnow()
        step.result = result
        step.error = error

        max_retries = (
            step.max_retries if step.max_retries is not None else self.config.max_step_retries
        )
        will_retry = error.recoverable and step.retry_count <= max_retries
        logger.warning(
            f"Workflow {instance.id}: step {step.id} failed with {error.code} "
            f"(attempt {step.retry_count}, will_retry={will_retry})"
        )
        self._emit(
            EventType.STEP_FAILED,
            instance,
            step_id=step.id,
            error=error.model_dump(mode="json"),
            retry_count=step.retry_count,
            will_retry=will_retry,
        )

        if not will_retry:
            if error.recoverable:
                failure = WorkflowError(
                    code=MaxRetriesExceeded.code,
                    message=f"Step {step.id} failed after {step.retry_count} attempt(s)",
                    step_id=step.id,
                    details={"cause": error.model_dump(mode="json")},
                )
            else:
                failure = WorkflowError(
                    code=error.code,
                    message=error.message,
                    step_id=step.id,
                    details={"cause": error.model_dump(mode="json")},
                )
            await self._fail(instance, failure)
            return False

        check_step_transition(step.id, step.status, StepStatus.PENDING)
        step.status = StepStatus.PENDING
        if self._persisting(instance):
            await self.store.save_step(instance.id, step)
        await schedule_retry(step.retry_count, self.config)
        return self._is_current(instance.id, token)

    def _complete_step(
        self, instance: WorkflowInstance, step: WorkflowStep, result: StepResult
    ) -> None:
        check_step_transition(step.id, step.status, StepStatus.COMPLETED)
        step.status = StepStatus.COMPLETED
        step.completed_at = utcnow()
        step.result = result
        step.error = None
        instance.execution_order.append(step.id)

        ctx = self._contexts[instance.id]
        ctx.step_results[step.id] = result
        if ctx.artifacts:
            instance.metadata["artifacts"] = [
                a.model_dump(mode="json") for a in ctx.artifacts
            ]
        logger.info(f"Workflow {instance.id}: step {step.id} completed")
        self._emit(EventType.STEP_COMPLETED, instance, step_id=step.id, data=result.data)

    async def _advance(self, instance: WorkflowInstance, done: WorkflowStep) -> bool:
        """Select the step after ``done`` or finish. Return True to keep driving."""

        next_step = self._next_step(instance, done.id)
        if next_step is None:
            if any(s.status == StepStatus.PENDING for s in instance.steps):
                await self._fail(instance, self._deadlock_error(instance))
            else:
                await self._complete(instance)
            return False
        instance.current_step_id = next_step.id
        await self._save(instance)
        return True

    def _next_step(
        self, instance: WorkflowInstance, completed_id: str
    ) -> Optional[WorkflowStep]:
        for step in instance.steps:
            if completed_id in step.dependencies and self._is_runnable(instance, step):
                return step
        return self._first_runnable(instance)

    def _first_runnable(self, instance: WorkflowInstance) -> Optional[WorkflowStep]:
        for step in instance.steps:
            if self._is_runnable(instance, step):
                return step
        return None

    @staticmethod
    def _is_runnable(instance: WorkflowInstance, step: WorkflowStep) -> bool:
        if step.status != StepStatus.PENDING:
            return False
        index = instance.step_index()
        return all(
            dep in index and index[dep].status == StepStatus.COMPLETED
            for dep in step.dependencies
        )

    @staticmethod
    def _deadlock_error(instance: WorkflowInstance) -> WorkflowError:
        pending = [s.id for s in instance.steps if s.status == StepStatus.PENDING]
        return WorkflowError(
            code=Deadlock.code,
            message="No pending step has all of its dependencies completed",
            step_id=instance.current_step_id,
            details={"pending": pending},
        )

    @staticmethod
    def _summary(instance: WorkflowInstance) -> List[str]:
        index = instance.step_index()
        return [index[step_id].label for step_id in instance.execution_order]

    @staticmethod
    def _current_in_progress(instance: WorkflowInstance) -> Optional[WorkflowStep]:
        step = instance.get_step(instance.current_step_id)
        if step is not None and step.status == StepStatus.IN_PROGRESS:
            return step
        return None

    # ------------------------------------------------------------------
    # Terminal transitions
    async def _complete(self, instance: WorkflowInstance) -> None:
        check_workflow_transition(instance.id, instance.status, WorkflowStatus.COMPLETED)
        ctx = self._contexts[instance.id]
        definition_name = instance.definition_id
        if instance.definition_id in self.definitions:
            definition_name = self.definitions.get(instance.definition_id).name
        instance.status = WorkflowStatus.COMPLETED
        instance.completed_at = utcnow()
        instance.result = WorkflowResult(
            type="success",
            data={
                step_id: ctx.step_results[step_id].data
                for step_id in instance.execution_order
                if step_id in ctx.step_results
            },
            message=f"{definition_name} completed",
            summary=self._summary(instance),
            artifacts=list(ctx.artifacts),
        )
        self._invalidate(instance.id)
        logger.info(f"Workflow {instance.id} completed")
        self._emit(
            EventType.WORKFLOW_COMPLETED,
            instance,
            summary=instance.result.summary,
        )
        await self._save(instance)

    async def _fail(self, instance: WorkflowInstance, error: WorkflowError) -> None:
        check_workflow_transition(instance.id, instance.status, WorkflowStatus.FAILED)
        instance.status = WorkflowStatus.FAILED
        instance.completed_at = utcnow()
        instance.error = error
        self._invalidate(instance.id)
        logger.error(f"Workflow {instance.id} failed: {error.code} {error.message}")
        self._emit(EventType.WORKFLOW_FAILED, instance, step_id=error.step_id, code=error.code)
        await self._save(instance)

    # ------------------------------------------------------------------
    # Recovery
    async def _recover(self) -> None:
        recovered = 0
        for instance in await self.store.list_instances():
            if instance.is_terminal or instance.id in self._instances:
                continue
            for step in instance.steps:
                # work interrupted by the crash is started over
                if step.status == StepStatus.IN_PROGRESS:
                    step.status = StepStatus.PENDING
            if (
                instance.status == WorkflowStatus.ACTIVE
                and self.active_count >= self.config.max_concurrent_workflows
            ):
                logger.warning(
                    f"Recovered workflow {instance.id} paused: concurrency limit reached"
                )
                instance.status = WorkflowStatus.PAUSED
                instance.paused_at = utcnow()
            elif instance.status == WorkflowStatus.DRAFT:
                continue

            self._instances[instance.id] = instance
            self._contexts[instance.id] = self._rebuild_context(instance)
            await self.store.save(instance)
            if instance.status == WorkflowStatus.ACTIVE:
                self._spawn(instance.id)
            recovered += 1
        logger.info(f"Recovered {recovered} workflow(s) from the store")

    @staticmethod
    def _rebuild_context(instance: WorkflowInstance) -> WorkflowContext:
        ctx = WorkflowContext(snapshot=copy.deepcopy(instance.context))
        for step in instance.steps:
            if step.status == StepStatus.COMPLETED and step.result is not None:
                ctx.step_results[step.id] = step.result
                if step.result.metadata.get("submitted"):
                    ctx.user_inputs[step.id] = step.result.data
        for artifact in instance.metadata.get("artifacts", []):
            ctx.artifacts.append(Artifact.model_validate(artifact))
        return ctx

    # ------------------------------------------------------------------
    # Helpers
    def _get(self, instance_id: str) -> WorkflowInstance:
        instance = self._instances.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def _forget(self, instance_id: str) -> None:
        self._instances.pop(instance_id, None)
        self._contexts.pop(instance_id, None)
        self._tasks.pop(instance_id, None)
        self._tokens.pop(instance_id, None)

    def _persisting(self, instance: Optional[WorkflowInstance] = None) -> bool:
        if not self.config.persist_workflow_state:
            return False
        return instance is None or instance.persistent

    async def _save(self, instance: WorkflowInstance) -> None:
        if self._persisting(instance):
            await self.store.save(instance)

    def _emit(
        self,
        event_type: EventType,
        instance: WorkflowInstance,
        step_id: Optional[str] = None,
        **data: Any,
    ) -> None:
        self.events.emit(
            WorkflowEvent(
                type=event_type,
                workflow_instance_id=instance.id,
                step_id=step_id,
                data=data,
            )
        )
