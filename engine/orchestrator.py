"""
Pipeline Orchestrator - walks a validated DAG and runs its steps.

Responsibilities:
- Rate-limit pipeline starts and validate the definition before any work
- Run steps in topological order, sequentially or on a bounded pool of
  concurrent steps when parallel execution is enabled
- Carry ROUTE output forward only along edges labelled with the branch
  each record matched
- Apply the pipeline error policy (FAIL_FAST / CONTINUE / BEST_EFFORT) to
  step failures and the error strategy (SKIP / ABORT / QUARANTINE / RETRY)
  to failed records
- Dead-letter records that exhausted retries or were quarantined
- Publish lifecycle hooks, aggregate metrics and flush checkpoints
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from core.config import settings
from core.exceptions import (
    AdapterError,
    PipelineAbortedError,
    PipelineException,
    PipelineValidationError,
    StepTimeoutError,
    describe_error,
)
from engine.checkpoint import CheckpointStore, InMemoryCheckpointStore
from engine.dead_letter import DeadLetterEntry, DeadLetterSink, InMemoryDeadLetterSink, make_dead_letter_error
from engine.executor import RunContext, StepExecutor
from engine.hooks import HookDispatcher, HookEvent, HookStage, stage_for
from engine.rate_limiter import RateLimiter, RateLimitKey
from engine.registry import AdapterRegistry
from engine.results import RunMetrics, RunResult, RunStatus, StepResult, StepStatus
from engine.validator import DagValidator, topological_order
from schemas.pipeline import (
    TERMINAL_STEP_TYPES,
    Edge,
    ErrorPolicy,
    ErrorStrategy,
    PipelineDefinition,
    Step,
    StepType,
)

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class RunHandle:
    """
    External control over one run.

    `status` is live: PAUSED and CANCEL_REQUESTED are visible while the
    run is in progress. Pause and cancel take effect at step and sub-batch
    boundaries; an in-flight adapter call is never killed.
    """

    def __init__(self, run_id: Optional[str] = None):
        self.run_id = run_id or str(uuid.uuid4())
        self.status = RunStatus.PENDING
        self._cancel_requested = False
        self._resume_gate = asyncio.Event()
        self._resume_gate.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def resume_gate(self) -> asyncio.Event:
        return self._resume_gate

    def request_cancel(self) -> None:
        if self.status.is_terminal:
            return
        self._cancel_requested = True
        self.status = RunStatus.CANCEL_REQUESTED
        # A paused run must wake up to observe the cancellation
        self._resume_gate.set()

    def pause(self) -> bool:
        if self.status != RunStatus.RUNNING:
            return False
        self.status = RunStatus.PAUSED
        self._resume_gate.clear()
        return True

    def resume(self) -> bool:
        if self.status != RunStatus.PAUSED:
            return False
        self.status = RunStatus.RUNNING
        self._resume_gate.set()
        return True


def _issue(code: str, message: str, step_key: Optional[str] = None, error: Optional[BaseException] = None) -> Dict[str, Any]:
    issue: Dict[str, Any] = {"code": code, "message": message}
    if step_key is not None:
        issue["step_key"] = step_key
    if error is not None:
        issue["error"] = describe_error(error)
    return issue


class _RunState:
    """Mutable bookkeeping of one graph walk"""

    def __init__(self, seed_count: int = 0):
        self.seed_count = seed_count
        self.results: Dict[str, StepResult] = {}
        self.failed: Set[str] = set()
        self.skipped: Set[str] = set()
        self.errors: List[Dict[str, Any]] = []
        self.warnings: List[Dict[str, Any]] = []
        self.fatal_error: Optional[BaseException] = None
        self.stop = False
        self.dead_lettered = 0
        # Stand-in results of replay start steps; never reported as executed
        self.seeded: Dict[str, StepResult] = {}

    def halt(self, error: BaseException) -> None:
        if self.fatal_error is None:
            self.fatal_error = error
        self.stop = True


class PipelineOrchestrator:
    """
    Runs pipeline definitions.

    Attributes:
        registry: Adapter registry shared with the step executor
        dead_letter_sink: Where quarantined and exhausted records go;
            in-memory when omitted
        hooks: Dispatcher receiving lifecycle events
        rate_limiter: Limiter for pipeline starts and step pacing
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        dead_letter_sink: Optional[DeadLetterSink] = None,
        hooks: Optional[HookDispatcher] = None,
        rate_limiter: Optional[RateLimiter] = None,
        executor: Optional[StepExecutor] = None,
        validator: Optional[DagValidator] = None,
        max_concurrent_steps: Optional[int] = None,
    ):
        self.registry = registry
        self.dead_letter_sink = dead_letter_sink if dead_letter_sink is not None else InMemoryDeadLetterSink()
        self.hooks = hooks or HookDispatcher()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.executor = executor or StepExecutor(registry)
        self.validator = validator or DagValidator(registry)
        self.max_concurrent_steps = max_concurrent_steps or settings.MAX_CONCURRENT_STEPS

    async def run(
        self,
        definition: PipelineDefinition,
        seed_input: Optional[List[Record]] = None,
        handle: Optional[RunHandle] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        client_ip: Optional[str] = None,
    ) -> RunResult:
        """
        Run a pipeline to completion.

        Args:
            definition: Pipeline to run; the run works on a frozen copy
            seed_input: Records handed to the root TRIGGER step
            handle: Run control (cancel / pause / resume)
            checkpoint_store: Checkpoint state; in-memory when omitted
            client_ip: Caller address, part of the start rate-limit key

        Returns:
            RunResult with the final status, per-step results, metrics and
            every error and warning

        Raises:
            RateLimitExceeded: The pipeline's start rate limit is exhausted
        """
        return await self._execute(definition, seed_input, handle, checkpoint_store, client_ip)

    async def replay_from_step(
        self,
        definition: PipelineDefinition,
        step_key: str,
        seed: List[Record],
        handle: Optional[RunHandle] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        client_ip: Optional[str] = None,
    ) -> RunResult:
        """
        Re-run the part of a pipeline downstream of `step_key`.

        `step_key` itself is not executed: `seed` stands in for its output
        and flows along every outgoing edge, whatever the branch label.
        Only steps reachable from `step_key` run; predecessors outside that
        sub-graph are ignored when gathering input. Everything else in the
        definition is reported as skipped.

        Raises:
            PipelineValidationError: `step_key` is not a step of the pipeline
            RateLimitExceeded: The pipeline's start rate limit is exhausted
        """
        if step_key not in definition.step_map():
            raise PipelineValidationError(
                f"Cannot replay pipeline '{definition.code}' from unknown step '{step_key}'",
                context={"pipeline_code": definition.code, "step_key": step_key}
            )
        return await self._execute(definition, seed, handle, checkpoint_store, client_ip, start=step_key)

    async def _execute(
        self,
        definition: PipelineDefinition,
        seed_input: Optional[List[Record]],
        handle: Optional[RunHandle],
        checkpoint_store: Optional[CheckpointStore],
        client_ip: Optional[str],
        start: Optional[str] = None,
    ) -> RunResult:
        snapshot = definition.frozen_copy()
        self._check_start_rate_limit(snapshot, client_ip)

        handle = handle or RunHandle()
        seed = list(seed_input or [])
        started = time.monotonic()
        result = RunResult(
            run_id=handle.run_id,
            pipeline_code=snapshot.code,
            status=RunStatus.PENDING,
            started_at=datetime.utcnow(),
        )

        validation = self.validator.validate(snapshot)
        result.warnings.extend(
            _issue(w.code.value, w.message, w.step_key) for w in validation.warnings
        )
        if not validation.valid:
            result.errors.extend(
                _issue(e.code.value, e.message, e.step_key) for e in validation.errors
            )
            result.status = RunStatus.FAILED
            handle.status = RunStatus.FAILED
            result.completed_at = datetime.utcnow()
            logger.error(f"Pipeline {snapshot.code} run {handle.run_id} rejected: definition is invalid")
            await self._publish(snapshot, handle, HookStage.PIPELINE_FAILED, data={"errors": result.errors})
            return result

        run_ctx = RunContext(
            pipeline_code=snapshot.code,
            run_id=handle.run_id,
            context=snapshot.context,
            checkpoints=checkpoint_store if checkpoint_store is not None else InMemoryCheckpointStore(),
            rate_limiter=self.rate_limiter,
            hooks=self.hooks,
            cancel_requested=lambda: handle.cancel_requested,
            resume_gate=handle.resume_gate,
        )

        handle.status = RunStatus.RUNNING
        result.status = RunStatus.RUNNING
        started_data: Dict[str, Any] = {"seedRecords": len(seed)}
        if start is None:
            logger.info(f"Pipeline {snapshot.code} run {handle.run_id} started ({len(seed)} seed records)")
        else:
            started_data["replayFrom"] = start
            logger.info(f"Pipeline {snapshot.code} run {handle.run_id} replaying from step {start} ({len(seed)} seed records)")
        await self._publish(snapshot, handle, HookStage.PIPELINE_STARTED, data=started_data)

        state = _RunState(seed_count=len(seed))
        try:
            await self._walk(snapshot, seed, run_ctx, state, start=start)
        finally:
            await self._flush_checkpoints(run_ctx, state)

        result.steps = state.results
        result.errors.extend(state.errors)
        result.warnings.extend(state.warnings)
        result.metrics = self._metrics(snapshot, state)
        result.metrics.duration_ms = (time.monotonic() - started) * 1000
        result.status = self._final_status(handle, state)
        result.completed_at = datetime.utcnow()
        handle.status = result.status

        summary = result.metrics.to_dict()
        if result.status == RunStatus.COMPLETED:
            logger.info(f"Pipeline {snapshot.code} run {handle.run_id} completed: {summary}")
            await self._publish(snapshot, handle, HookStage.PIPELINE_COMPLETED, data=summary)
        else:
            logger.error(f"Pipeline {snapshot.code} run {handle.run_id} ended {result.status.value}: {summary}")
            await self._publish(
                snapshot,
                handle,
                HookStage.PIPELINE_FAILED,
                error=describe_error(state.fatal_error) if state.fatal_error else None,
                data={"status": result.status.value, **summary},
            )
        return result

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------

    async def _walk(
        self,
        definition: PipelineDefinition,
        seed: List[Record],
        run_ctx: RunContext,
        state: _RunState,
        start: Optional[str] = None,
    ) -> None:
        """
        Bounded scheduler over the DAG.

        A step becomes ready once every predecessor has finished; ready
        steps start in topological order while fewer than `limit` steps
        are in flight. When the limit is reached the walk waits for any
        in-flight step to finish before admitting the next.

        With `start` the walk covers only the sub-graph reachable from that
        step, which is treated as already finished with `seed` as output.
        """
        steps = definition.step_map()
        edges = definition.resolved_edges()
        order = topological_order(definition.steps, edges)
        position = {key: i for i, key in enumerate(order)}

        successors: Dict[str, List[str]] = {key: [] for key in steps}
        for edge in edges:
            if edge.target not in successors[edge.source]:
                successors[edge.source].append(edge.target)

        targets = {edge.target for edge in edges}
        root = start or next(k for k in order if steps[k].step_type == StepType.TRIGGER and k not in targets)
        reachable = self._reachable(root, successors)

        # Unreachable steps never run, so their edges feed nothing
        incoming: Dict[str, List[Edge]] = {key: [] for key in steps}
        for edge in edges:
            if edge.source in reachable:
                incoming[edge.target].append(edge)
        waiting = {key: len({e.source for e in incoming[key]}) for key in steps}

        parallel = definition.context.parallel_execution
        limit = 1
        if parallel.enabled:
            limit = parallel.max_concurrent_steps or self.max_concurrent_steps
        policy = parallel.error_policy

        ready: List[str] = []
        in_flight: Dict[asyncio.Task, str] = {}

        def finish(key: str) -> None:
            for target in successors[key]:
                waiting[target] -= 1
                if waiting[target] == 0:
                    ready.append(target)
            ready.sort(key=position.get)

        for key in order:
            if key not in reachable:
                state.skipped.add(key)
                logger.debug(f"Step {key} is not reachable from {root}; skipping")

        if start is None:
            ready.append(root)
        else:
            origin = StepResult(step_key=start, status=StepStatus.SUCCESS, output=list(seed))
            for edge in edges:
                if edge.source == start and edge.branch is not None:
                    origin.branches[edge.branch] = list(seed)
            state.seeded[start] = origin
            finish(start)

        while True:
            while ready and len(in_flight) < limit and not state.stop:
                key = ready.pop(0)
                step = steps[key]

                blocked = self._blocked_by(key, incoming, state)
                if blocked is not None and policy != ErrorPolicy.BEST_EFFORT:
                    state.skipped.add(key)
                    state.results[key] = StepResult(step_key=key, status=StepStatus.SKIPPED)
                    logger.info(f"Step {key} skipped: upstream step {blocked} did not complete")
                    finish(key)
                    continue

                if await run_ctx.boundary():
                    state.stop = True
                    break

                records = seed if key == root else self._gather_input(key, incoming, steps, state)
                task = asyncio.create_task(self._run_step(step, records, run_ctx))
                in_flight[task] = key

            if not in_flight:
                break

            done, _ = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                key = in_flight.pop(task)
                step_result = task.result()
                state.results[key] = step_result
                await self._handle_step_result(definition, steps[key], step_result, run_ctx, state, policy)
                finish(key)

            if state.stop and in_flight and state.fatal_error is not None:
                await self._cancel_in_flight(in_flight, state)

        for key in order:
            if key not in state.results and key not in state.skipped and key not in state.seeded:
                state.skipped.add(key)

    @staticmethod
    def _reachable(root: str, successors: Dict[str, List[str]]) -> Set[str]:
        seen = {root}
        stack = [root]
        while stack:
            for child in successors[stack.pop()]:
                if child not in seen:
                    seen.add(child)
                    stack.append(child)
        return seen

    @staticmethod
    def _blocked_by(key: str, incoming: Dict[str, List[Edge]], state: _RunState) -> Optional[str]:
        """First predecessor that failed or was skipped"""
        for edge in incoming[key]:
            if edge.source in state.failed or edge.source in state.skipped:
                return edge.source
        return None

    @staticmethod
    def _gather_input(
        key: str,
        incoming: Dict[str, List[Edge]],
        steps: Dict[str, Step],
        state: _RunState,
    ) -> List[Record]:
        """Records arriving over every incoming edge; ROUTE edges carry only their branch"""
        records: List[Record] = []
        for edge in incoming[key]:
            upstream = state.results.get(edge.source) or state.seeded.get(edge.source)
            if upstream is None:
                continue
            if steps[edge.source].step_type == StepType.ROUTE:
                if edge.branch is not None:
                    records.extend(upstream.branches.get(edge.branch, []))
            else:
                records.extend(upstream.output)
        return records

    async def _run_step(self, step: Step, records: List[Record], run_ctx: RunContext) -> StepResult:
        before = stage_for(step.step_type, before=True)
        if before is not None:
            await run_ctx.publish(self._event(run_ctx, before, step.key, records=records), timeout_ms=step.timeout_ms)

        try:
            result = await self.executor.execute(step, records, run_ctx)
        except Exception as e:
            error = AdapterError(
                f"Step '{step.key}' crashed",
                context={"step_key": step.key},
                original_exception=e
            )
            logger.error(f"Step {step.key} crashed: {e}", exc_info=True, extra={"error_context": error.to_dict()})
            result = StepResult(step_key=step.key, status=StepStatus.ERROR, error=error)
            result.metrics.records_in = len(records)

        after = stage_for(step.step_type, before=False)
        if after is not None:
            await run_ctx.publish(self._event(run_ctx, after, step.key, records=result.output), timeout_ms=step.timeout_ms)
        return result

    async def _cancel_in_flight(self, in_flight: Dict[asyncio.Task, str], state: _RunState) -> None:
        """FAIL_FAST: stop every other running step now"""
        for task in in_flight:
            task.cancel()
        await asyncio.gather(*in_flight, return_exceptions=True)
        for key in in_flight.values():
            state.results[key] = StepResult(step_key=key, status=StepStatus.CANCELLED)
            logger.warning(f"Step {key} cancelled after a failure elsewhere in the pipeline")
        in_flight.clear()

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_step_result(
        self,
        definition: PipelineDefinition,
        step: Step,
        result: StepResult,
        run_ctx: RunContext,
        state: _RunState,
        policy: ErrorPolicy,
    ) -> None:
        error_handling = definition.context.error_handling
        strategy = step.on_error or error_handling.strategy
        failed = result.failed_outcomes

        if failed:
            await self._dead_letter(definition, step, result, strategy, run_ctx, state)
            state.warnings.append(_issue(
                "RECORDS_FAILED",
                f"{len(failed)} record(s) failed at step '{step.key}' (strategy {strategy.value})",
                step.key
            ))

        if result.error is not None or result.status == StepStatus.ERROR:
            cause = result.error or (failed[0].error if failed else None)
            await run_ctx.publish(
                self._event(
                    run_ctx,
                    HookStage.ON_ERROR,
                    step.key,
                    error=describe_error(cause) if cause is not None else None,
                ),
                timeout_ms=step.timeout_ms
            )

        if result.error is not None:
            state.failed.add(step.key)
            state.errors.append(_issue("STEP_FAILED", f"Step '{step.key}' failed: {describe_error(result.error)['message']}", step.key, result.error))
            if policy == ErrorPolicy.FAIL_FAST:
                state.halt(result.error)
            elif state.fatal_error is None:
                state.fatal_error = result.error
        elif result.status == StepStatus.ERROR and strategy == ErrorStrategy.ABORT:
            abort = PipelineAbortedError(
                f"Step '{step.key}' failed {len(failed)} record(s) under the ABORT strategy",
                context={"step_key": step.key, "failed": len(failed)},
                original_exception=failed[0].error if failed else None
            )
            state.failed.add(step.key)
            state.errors.append(_issue("ABORTED", abort.message, step.key, abort))
            state.halt(abort)

        threshold = error_handling.error_threshold_percent
        if threshold is not None and not state.stop:
            metrics = self._metrics(definition, state)
            if metrics.total_records_processed and metrics.failure_percent > threshold:
                exceeded = PipelineAbortedError(
                    f"Error rate {metrics.failure_percent:.1f}% exceeds threshold {threshold}%",
                    context={"step_key": step.key, "threshold_percent": threshold}
                )
                state.errors.append(_issue("ERROR_THRESHOLD_EXCEEDED", exceeded.message, step.key, exceeded))
                state.halt(exceeded)

    async def _dead_letter(
        self,
        definition: PipelineDefinition,
        step: Step,
        result: StepResult,
        strategy: ErrorStrategy,
        run_ctx: RunContext,
        state: _RunState,
    ) -> None:
        """Send quarantined and retry-exhausted records to the dead-letter sink"""
        quarantine_all = strategy in (ErrorStrategy.QUARANTINE, ErrorStrategy.RETRY)
        outcomes = [o for o in result.failed_outcomes if quarantine_all or o.attempts > 1]
        if not outcomes:
            return

        if not definition.context.error_handling.dead_letter_queue:
            logger.warning(f"Step {step.key}: {len(outcomes)} record(s) to dead-letter but the dead-letter queue is disabled")
            state.warnings.append(_issue(
                "DEAD_LETTER_DISABLED",
                f"{len(outcomes)} record(s) from step '{step.key}' were dropped instead of dead-lettered",
                step.key
            ))
            return

        sent: List[Record] = []
        for outcome in outcomes:
            entry = DeadLetterEntry(
                pipeline_code=definition.code,
                run_id=run_ctx.run_id,
                step_key=step.key,
                record=outcome.record,
                record_id=outcome.record_id,
                attempts=outcome.attempts,
                error=make_dead_letter_error(step.key, outcome.error, outcome.record_id, outcome.attempts),
            )
            try:
                await self.dead_letter_sink.send(entry)
            except Exception as e:
                logger.error(f"Dead-letter sink rejected record {outcome.record_id} from step {step.key}: {e}")
                state.warnings.append(_issue("DEAD_LETTER_FAILED", f"Could not dead-letter record {outcome.record_id}", step.key, e))
                continue
            sent.append(outcome.record)

        result.metrics.dead_lettered += len(sent)
        state.dead_lettered += len(sent)
        if sent:
            await run_ctx.publish(
                self._event(run_ctx, HookStage.ON_DEAD_LETTER, step.key, records=sent),
                timeout_ms=step.timeout_ms
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_start_rate_limit(self, definition: PipelineDefinition, client_ip: Optional[str]) -> None:
        limit = definition.context.rate_limit
        if limit is None:
            return
        key = RateLimitKey(ip=client_ip, pipeline_code=definition.code, identifier=limit.identifier)
        self.rate_limiter.check(key, limit.max_requests, limit.window_ms)

    async def _flush_checkpoints(self, run_ctx: RunContext, state: _RunState) -> None:
        if not run_ctx.checkpoints.is_dirty():
            return
        try:
            await run_ctx.checkpoints.flush(run_id=run_ctx.run_id)
        except PipelineException as e:
            logger.error(f"Checkpoint flush failed for run {run_ctx.run_id}", extra={"error_context": e.to_dict()})
            state.warnings.append(_issue("CHECKPOINT_FLUSH_FAILED", e.message, error=e))

    @staticmethod
    def _final_status(handle: RunHandle, state: _RunState) -> RunStatus:
        if state.fatal_error is not None or state.failed:
            cause = state.fatal_error
            if isinstance(cause, PipelineAbortedError) and cause.original_exception is not None:
                cause = cause.original_exception
            if isinstance(cause, StepTimeoutError):
                return RunStatus.TIMEOUT
            return RunStatus.FAILED
        if handle.cancel_requested:
            return RunStatus.CANCELLED
        return RunStatus.COMPLETED

    @staticmethod
    def _metrics(definition: PipelineDefinition, state: _RunState) -> RunMetrics:
        """Run totals; processed counts seed records plus everything extracted"""
        steps = definition.step_map()
        metrics = RunMetrics(total_records_processed=state.seed_count)

        for key, result in state.results.items():
            step_type = steps[key].step_type
            if result.status == StepStatus.SKIPPED:
                continue
            metrics.steps_executed += 1
            if step_type == StepType.EXTRACT:
                metrics.total_records_processed += result.metrics.records_out
            if step_type in TERMINAL_STEP_TYPES:
                metrics.total_records_succeeded += result.metrics.succeeded
            metrics.total_records_failed += result.metrics.failed
            metrics.total_records_filtered += result.metrics.filtered
            metrics.total_dead_lettered += result.metrics.dead_lettered
            if result.error is not None or key in state.failed:
                metrics.steps_failed += 1

        metrics.steps_skipped = len(state.skipped)
        return metrics

    @staticmethod
    def _event(
        run_ctx: RunContext,
        stage: HookStage,
        step_key: Optional[str] = None,
        records: Optional[List[Record]] = None,
        error: Optional[Dict[str, Any]] = None,
    ) -> HookEvent:
        return HookEvent(
            pipeline_id=run_ctx.pipeline_code,
            run_id=run_ctx.run_id,
            stage=stage,
            step_key=step_key,
            records=records,
            error=error,
        )

    async def _publish(
        self,
        definition: PipelineDefinition,
        handle: RunHandle,
        stage: HookStage,
        error: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self.hooks.publish(HookEvent(
            pipeline_id=definition.code,
            run_id=handle.run_id,
            stage=stage,
            error=error,
            data=data or {},
        ))
