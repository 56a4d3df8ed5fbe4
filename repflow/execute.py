"""Step executor: drives a run's steps with memoization, timers and retries."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence, Type, TypeVar

from pydantic import BaseModel
from pydantic_core import to_jsonable_python

from .contracts import (
    Complete,
    Event,
    OutcomeStatus,
    RunFailure,
    RunMessage,
    RunOutcome,
    RunRecord,
    RunStatus,
    Step,
    StepKind,
    StepStatus,
    WorkflowDefinition,
)
from .dispatch import EventRouter
from .errors import ErrorSink, FailureKind, LoggingErrorSink, WorkflowNotFound, describe_error
from .flow import FlowController
from .persistence import WorkflowRepository
from .registry import WorkflowRegistry
from .transports import BaseTransport, InMemoryTransport
from .utils.clock import Clock, SystemClock, ensure_utc
from .utils.retry import RetryPolicy
from .utils.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class _Suspend(Exception):
    def __init__(self, wake_at: datetime) -> None:
        self.wake_at = wake_at


class _Finish(Exception):
    def __init__(self, output: Any) -> None:
        self.output = output


class StepContext:
    """What a step body sees: the event, earlier step results and services."""

    def __init__(
        self,
        run: RunRecord,
        services: Any,
        clock: Clock,
        results: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.run = run
        self.services = services
        self.results: Dict[str, Any] = results if results is not None else {}
        self._clock = clock
        self.logger = logging.LoggerAdapter(
            logging.getLogger(f"repflow.workflows.{run.workflow_id}"),
            {"run_id": run.run_id, "workflow_id": run.workflow_id},
        )

    @property
    def event(self) -> Event:
        return self.run.event

    @property
    def data(self) -> Dict[str, Any]:
        return self.run.event.data

    @property
    def run_id(self) -> str:
        return self.run.run_id

    @property
    def attempt(self) -> int:
        return self.run.attempt

    def now(self) -> datetime:
        return self._clock.now()

    def parse(self, model: Type[ModelT]) -> ModelT:
        """Validate the event data as ``model``."""
        return model.model_validate(self.data)

    def get(self, step_name: str, default: Any = None) -> Any:
        return self.results.get(step_name, default)

    def __getitem__(self, step_name: str) -> Any:
        return self.results[step_name]

    def __contains__(self, step_name: object) -> bool:
        return step_name in self.results


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _user_and_job(event: Event) -> tuple[Optional[str], Optional[str]]:
    data = event.data
    user_id = data.get("user_id") or (data.get("new") or {}).get("user_id")
    return user_id, data.get("job_id")


class StepExecutor:
    """Executes runs from the ledger.

    ``execute`` may be called for the same run any number of times, by any
    number of workers: completed steps are substituted from the ledger,
    a step body runs again only after a recorded failure or a crash before
    its result was saved.
    """

    def __init__(
        self,
        workflows: WorkflowRegistry,
        repository: WorkflowRepository,
        router: EventRouter,
        flow: FlowController,
        retry_policy: Optional[RetryPolicy] = None,
        services: Any = None,
        error_sink: Optional[ErrorSink] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._workflows = workflows
        self._repository = repository
        self._router = router
        self._flow = flow
        self._retry = retry_policy or RetryPolicy()
        self._services = services
        self._error_sink = error_sink or LoggingErrorSink()
        self._clock = clock or SystemClock()

    async def execute(self, run_id: str) -> RunOutcome:
        run = await self._repository.get_run(run_id)
        if run is None:
            logger.warning(f"Run {run_id} not found")
            return RunOutcome(run_id=run_id, status=OutcomeStatus.SKIPPED, error="run not found")
        try:
            defn = self._workflows.get(run.workflow_id)
        except WorkflowNotFound as exc:
            error = describe_error(exc)
            await self._repository.fail_run(run_id, error, FailureKind.FATAL, self._clock.now())
            logger.error(f"Run {run_id} references unknown workflow {run.workflow_id}")
            return RunOutcome(
                run_id=run_id,
                workflow_id=run.workflow_id,
                status=OutcomeStatus.FAILED,
                error=error,
                failure_kind=FailureKind.FATAL,
            )

        if run.is_terminal:
            await self._release(defn, run_id)
            return self._terminal_outcome(run)
        if run.status == RunStatus.RUNNING:
            return RunOutcome(run_id=run_id, workflow_id=defn.id, status=OutcomeStatus.SKIPPED)
        now = self._clock.now()
        if run.wake_at is not None and run.wake_at > now:
            return RunOutcome(
                run_id=run_id, workflow_id=defn.id, status=OutcomeStatus.SUSPENDED, wake_at=run.wake_at
            )

        if not await self._flow.acquire(defn, run_id):
            logger.info(f"Run {run_id} of {defn.id} waiting for a concurrency slot")
            return RunOutcome(run_id=run_id, workflow_id=defn.id, status=OutcomeStatus.WAITING)

        release = True
        try:
            claimed = await self._repository.claim_run(run_id, now)
            if claimed is None:
                current = await self._repository.get_run(run_id)
                release = current is None or current.status != RunStatus.RUNNING
                return RunOutcome(run_id=run_id, workflow_id=defn.id, status=OutcomeStatus.SKIPPED)
            return await self._drive(defn, claimed)
        finally:
            if release:
                await self._release(defn, run_id)

    async def _release(self, defn: WorkflowDefinition, run_id: str) -> None:
        next_run = await self._flow.release(defn, run_id)
        if next_run is not None:
            await self._router.publish(next_run, defn.id, "slot")

    @staticmethod
    def _terminal_outcome(run: RunRecord) -> RunOutcome:
        return RunOutcome(
            run_id=run.run_id,
            workflow_id=run.workflow_id,
            status=OutcomeStatus(run.status.value),
            output=run.output,
            error=run.error,
            failure_kind=run.failure_kind,
        )

    # ------------------------------------------------------------------
    async def _drive(self, defn: WorkflowDefinition, run: RunRecord) -> RunOutcome:
        ctx = StepContext(run, self._services, self._clock)
        stored = await self._repository.get_step_results(run.run_id)
        executed: List[str] = []
        current: Optional[Step] = None
        try:
            for step in defn.steps:
                current = step
                record = stored.get(step.name)
                if record is not None and record.status == StepStatus.COMPLETED:
                    if record.completes_run:
                        raise _Finish(record.output)
                    ctx.results[step.name] = record.output
                    continue
                if step.when is not None and not await _maybe_await(step.when(ctx)):
                    continue
                if step.kind == StepKind.SLEEP:
                    await self._sleep(step, ctx, record)
                    continue
                executed.append(step.name)
                if step.kind == StepKind.SEND_EVENT:
                    value = await self._send_events(step, ctx)
                else:
                    value = await _maybe_await(step.fn(ctx))
                if isinstance(value, Complete):
                    output = to_jsonable_python(value.output)
                    await self._save(ctx, step.name, output, completes_run=True)
                    raise _Finish(output)
                await self._save(ctx, step.name, to_jsonable_python(value))
            current = None
            output = await _maybe_await(defn.finish(ctx)) if defn.finish else ctx.results
        except _Suspend as suspend:
            await self._repository.suspend_run(run.run_id, suspend.wake_at, self._clock.now())
            logger.info(f"Run {run.run_id} of {defn.id} sleeping until {suspend.wake_at.isoformat()}")
            return RunOutcome(
                run_id=run.run_id,
                workflow_id=defn.id,
                status=OutcomeStatus.SUSPENDED,
                wake_at=suspend.wake_at,
                steps_executed=executed,
            )
        except _Finish as finish:
            output = finish.output
        except Exception as exc:
            return await self._handle_failure(defn, ctx, current, exc, executed)

        output = to_jsonable_python(output)
        await self._repository.complete_run(run.run_id, output, self._clock.now())
        logger.info(f"Run {run.run_id} of {defn.id} completed")
        return RunOutcome(
            run_id=run.run_id,
            workflow_id=defn.id,
            status=OutcomeStatus.COMPLETED,
            output=output,
            steps_executed=executed,
        )

    async def _save(
        self, ctx: StepContext, step_name: str, value: Any, completes_run: bool = False
    ) -> None:
        saved = await self._repository.save_step_result(
            ctx.run_id, step_name, value, self._clock.now(), completes_run=completes_run
        )
        if not saved:
            # Another worker recorded this step first; its value wins.
            stored = await self._repository.get_step_results(ctx.run_id)
            if step_name in stored:
                value = stored[step_name].output
        ctx.results[step_name] = value

    async def _sleep(self, step: Step, ctx: StepContext, record: Any) -> None:
        now = self._clock.now()
        if record is not None and record.wake_at is not None:
            wake_at = record.wake_at
        else:
            if step.until is not None:
                target = ensure_utc(await _maybe_await(step.until(ctx)))
            else:
                target = now + timedelta(seconds=step.duration or 0)
            wake_at = await self._repository.mark_step_sleeping(ctx.run_id, step.name, target, now)
        if now < wake_at:
            raise _Suspend(wake_at)
        await self._save(ctx, step.name, None)

    async def _send_events(self, step: Step, ctx: StepContext) -> List[str]:
        built = await _maybe_await(step.build(ctx))
        if built is None:
            specs: Sequence[Any] = []
        elif isinstance(built, (Event, dict, tuple)):
            specs = [built]
        else:
            specs = list(built)

        sent: List[str] = []
        for index, spec in enumerate(specs):
            if isinstance(spec, Event):
                name, data = spec.name, spec.data
            elif isinstance(spec, tuple):
                name, data = spec
            else:
                name, data = spec["name"], spec.get("data", {})
            event = Event(
                id=f"{ctx.run_id}:{step.name}:{index}",
                name=name,
                data=to_jsonable_python(data),
                ts=self._clock.now(),
            )
            await self._router.route(event)
            sent.append(event.id)
        return sent

    async def _handle_failure(
        self,
        defn: WorkflowDefinition,
        ctx: StepContext,
        step: Optional[Step],
        exc: Exception,
        executed: List[str],
    ) -> RunOutcome:
        now = self._clock.now()
        step_name = step.name if step is not None else "finish"
        error = describe_error(exc)
        failures = await self._repository.record_step_failure(ctx.run_id, step_name, error, now)
        decision = self._retry.evaluate(exc, failures, defn.policy.max_retries)

        if decision.retry:
            wake_at = now + timedelta(seconds=decision.delay)
            await self._repository.suspend_run(ctx.run_id, wake_at, now)
            logger.warning(
                f"Step {step_name} of run {ctx.run_id} failed ({error}); "
                f"retry {failures}/{defn.policy.max_retries} at {wake_at.isoformat()}"
            )
            return RunOutcome(
                run_id=ctx.run_id,
                workflow_id=defn.id,
                status=OutcomeStatus.SUSPENDED,
                error=error,
                wake_at=wake_at,
                steps_executed=executed,
            )

        kind = decision.failure_kind or FailureKind.FATAL
        await self._repository.fail_run(ctx.run_id, error, kind, now)
        user_id, job_id = _user_and_job(ctx.event)
        self._error_sink.capture(
            exc,
            {
                "workflow_id": defn.id,
                "event_name": ctx.event.name,
                "run_id": ctx.run_id,
                "step": step_name,
                "failure_kind": kind.value,
                "user_id": user_id,
                "job_id": job_id,
            },
        )
        if defn.on_failure is not None:
            failure = RunFailure(
                run_id=ctx.run_id, step_name=step_name, error=error, failure_kind=kind
            )
            try:
                await _maybe_await(defn.on_failure(ctx, failure))
            except Exception as hook_exc:
                logger.exception(f"on_failure hook of {defn.id} raised: {hook_exc}")
        return RunOutcome(
            run_id=ctx.run_id,
            workflow_id=defn.id,
            status=OutcomeStatus.FAILED,
            error=error,
            failure_kind=kind,
            steps_executed=executed,
        )


class RunWorker:
    """Consumes run wake-up messages and hands them to the executor."""

    def __init__(
        self,
        transport: BaseTransport,
        executor: StepExecutor,
        topic: str = "runs",
        max_in_flight: int = 10,
    ) -> None:
        self._transport = transport
        self._executor = executor
        self._topic = topic
        self._slots = asyncio.Semaphore(max_in_flight)
        self._tasks = BackgroundTasks("worker")
        self.processed = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Process messages until ``lifespan`` seconds pass (forever if None)."""
        async for raw_message, message in self._transport.subscribe(self._topic, lifespan=lifespan):
            await self._slots.acquire()
            self._tasks.spawn(self._handle_released(raw_message, message), label=message.run_id)
        await self._tasks.drain()

    async def _handle_released(self, raw_message: Any, message: RunMessage) -> None:
        try:
            await self.handle(raw_message, message)
        finally:
            self._slots.release()

    async def handle(self, raw_message: Any, message: RunMessage) -> Optional[RunOutcome]:
        try:
            outcome = await self._executor.execute(message.run_id)
        except Exception as exc:
            # The run stays in the ledger; the stale-run sweep or redelivery retries it.
            logger.exception(f"Executing run {message.run_id} crashed: {exc}")
            await self._transport.nack(raw_message)
            return None
        self.processed += 1
        await self._transport.ack(raw_message)
        return outcome

    async def run_until_idle(self, max_rounds: int = 1000) -> List[RunOutcome]:
        """Process queued messages in order until none remain.

        Only supported on :class:`InMemoryTransport`; used by tests and the
        single-process CLI.
        """
        if not isinstance(self._transport, InMemoryTransport):
            raise TypeError("run_until_idle requires an InMemoryTransport")
        outcomes: List[RunOutcome] = []
        for _ in range(max_rounds):
            batch = await self._transport.drain(self._topic)
            if not batch:
                break
            for raw_message, message in batch:
                outcome = await self.handle(raw_message, message)
                if outcome is not None:
                    outcomes.append(outcome)
        return outcomes
