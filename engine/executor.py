"""
Step Executor - runs one pipeline step.

For each step this module:
- Resolves the step's adapter from the registry and validates its config
- Splits the input into sub-batches and runs up to `concurrency` of them
  at once on a bounded worker pool
- Races every adapter call against the step's timeout
- Retries retryable failures with exponential backoff
- Collects per-record outcomes (transformed / filtered / errored ...)
- Persists extractor checkpoints after every pulled batch

Per-record failures are data: they end up in StepResult.outcomes and the
step metrics, never raised. Step-level failures (unknown adapter, invalid
config, an extractor that keeps failing) are reported in StepResult.error.
"""

import asyncio
import copy
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.config import settings
from core.exceptions import (
    AdapterError,
    FatalAdapterError,
    PipelineException,
    PipelineValidationError,
    StepTimeoutError,
    describe_error,
)
from engine.adapters import (
    Adapter,
    AdapterConfig,
    ExecutionContext,
    Extractor,
    Loader,
    LoadOp,
    Operator,
    Writer,
)
from engine.checkpoint import CheckpointStore, InMemoryCheckpointStore
from engine.conditions import extract_record_id, get_path, select_branch
from engine.hooks import HookDispatcher, HookEvent, HookStage
from engine.rate_limiter import RateLimiter, RateLimitKey
from engine.registry import AdapterRegistry
from engine.results import OutcomeKind, RecordOutcome, StepMetrics, StepResult, StepStatus
from engine.retry import RetryPolicy, is_retryable
from schemas.pipeline import PipelineContext, Step, StepType

logger = logging.getLogger(__name__)

Record = Dict[str, Any]

_PASSING_KINDS = frozenset({
    OutcomeKind.TRANSFORMED,
    OutcomeKind.CREATED,
    OutcomeKind.UPDATED,
    OutcomeKind.SKIPPED,
    OutcomeKind.WRITTEN,
})

_LOAD_KINDS = {
    LoadOp.CREATE: OutcomeKind.CREATED,
    LoadOp.UPDATE: OutcomeKind.UPDATED,
    LoadOp.SKIP: OutcomeKind.SKIPPED,
}


@dataclass
class RunContext:
    """Run-scoped state shared by every step of one run"""
    pipeline_code: str
    run_id: str
    context: PipelineContext = field(default_factory=PipelineContext)
    checkpoints: CheckpointStore = field(default_factory=InMemoryCheckpointStore)
    rate_limiter: Optional[RateLimiter] = None
    hooks: Optional[HookDispatcher] = None
    cancel_requested: Callable[[], bool] = lambda: False
    resume_gate: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_requested()

    async def boundary(self) -> bool:
        """Wait while the run is paused; True when the run should stop"""
        if self.resume_gate is not None and not self.cancelled:
            await self.resume_gate.wait()
        return self.cancelled

    def execution_context(self, step: Step, attempt: int = 0) -> ExecutionContext:
        return ExecutionContext(
            pipeline_code=self.pipeline_code,
            run_id=self.run_id,
            step_key=step.key,
            attempt=attempt,
            cancelled=self.cancel_requested,
        )

    async def publish(self, event: HookEvent, timeout_ms: Optional[int] = None) -> None:
        if self.hooks is not None:
            await self.hooks.publish(event, timeout_ms=timeout_ms)


def chunk(records: List[Record], size: int) -> List[List[Record]]:
    size = max(1, size)
    return [records[i:i + size] for i in range(0, len(records), size)]


def _unit_size(unit: Any) -> int:
    return len(unit) if isinstance(unit, list) else 1


class StepExecutor:
    """
    Executes a single step against an input batch.

    Attributes:
        registry: Adapter lookup used to resolve each step's adapter
        default_batch_size: Sub-batch size when neither the step nor the
            pipeline configures throughput.batchSize
        default_concurrency: Worker pool size when the step sets none
        max_extract_batches: Upper bound on pulls per EXTRACT step
    """

    def __init__(
        self,
        registry: AdapterRegistry,
        default_batch_size: Optional[int] = None,
        default_concurrency: Optional[int] = None,
        max_extract_batches: Optional[int] = None,
    ):
        self.registry = registry
        self.default_batch_size = default_batch_size or settings.DEFAULT_BATCH_SIZE
        self.default_concurrency = default_concurrency or settings.DEFAULT_STEP_CONCURRENCY
        self.max_extract_batches = max_extract_batches or settings.MAX_EXTRACT_BATCHES

    async def execute(self, step: Step, input_records: List[Record], run_ctx: RunContext) -> StepResult:
        """
        Run `step` on `input_records`.

        Returns:
            StepResult with the output batch, per-record outcomes, metrics
            and, for step-level failures, the error
        """
        started = time.monotonic()
        records = list(input_records or [])
        step_type = step.step_type

        try:
            if step_type is None:
                raise PipelineValidationError(
                    f"Step '{step.key}' has unknown type '{step.type}'",
                    context={"step_key": step.key, "step_type": step.type}
                )

            if step_type == StepType.TRIGGER:
                result = self._execute_trigger(step, records)
            elif step_type == StepType.ROUTE:
                result = self._execute_route(step, records)
            else:
                adapter = self.registry.resolve(step)
                config = adapter.parse_config(step.config.as_adapter_input(), step_key=step.key)
                policy = RetryPolicy.for_step(step, run_ctx.context.error_handling)

                if step_type == StepType.EXTRACT:
                    result = await self._execute_extract(step, adapter, config, policy, run_ctx)
                elif step_type == StepType.LOAD:
                    result = await self._execute_load(step, adapter, config, records, policy, run_ctx)
                elif step_type in (StepType.EXPORT, StepType.FEED, StepType.SINK):
                    result = await self._execute_write(step, adapter, config, records, policy, run_ctx)
                else:
                    result = await self._execute_operator(step, adapter, config, records, policy, run_ctx)

        except PipelineException as e:
            logger.error(
                f"Step {step.key} failed: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            result = StepResult(step_key=step.key, status=StepStatus.ERROR, error=e)
            result.metrics.records_in = len(records)

        result.metrics.duration_ms = (time.monotonic() - started) * 1000
        if result.status not in (StepStatus.ERROR, StepStatus.CANCELLED):
            result.status = self._status_for(step, result)

        logger.info(
            f"Step {step.key} [{step.type}] {result.status.value}: "
            f"in={result.metrics.records_in} out={result.metrics.records_out} "
            f"failed={result.metrics.failed} filtered={result.metrics.filtered}"
        )
        return result

    @staticmethod
    def _status_for(step: Step, result: StepResult) -> StepStatus:
        if result.metrics.failed == 0:
            return StepStatus.SUCCESS
        if step.continue_on_error:
            return StepStatus.WARNING
        return StepStatus.ERROR

    # ------------------------------------------------------------------
    # Step kinds without adapters
    # ------------------------------------------------------------------

    def _execute_trigger(self, step: Step, records: List[Record]) -> StepResult:
        result = StepResult(step_key=step.key, status=StepStatus.SUCCESS, output=records)
        result.metrics.records_in = len(records)
        result.metrics.records_out = len(records)
        result.metrics.succeeded = len(records)
        return result

    def _execute_route(self, step: Step, records: List[Record]) -> StepResult:
        """Tag each record with the first branch that matches it"""
        declared = step.config.branches or []
        branches: Dict[str, List[Record]] = {b.name: [] for b in declared}
        outcomes: List[RecordOutcome] = []
        output: List[Record] = []

        for record in records:
            record_id = extract_record_id(record)
            name = select_branch(record, declared, step.config.default_branch)
            if name is None:
                outcomes.append(RecordOutcome(
                    kind=OutcomeKind.FILTERED,
                    record=record,
                    record_id=record_id,
                    reason="no branch matched"
                ))
                continue
            branches.setdefault(name, []).append(record)
            output.append(record)
            outcomes.append(RecordOutcome(
                kind=OutcomeKind.TRANSFORMED,
                record=record,
                record_id=record_id,
                branch=name
            ))

        result = StepResult(
            step_key=step.key,
            status=StepStatus.SUCCESS,
            output=output,
            outcomes=outcomes,
            branches=branches,
        )
        self._tally(result, len(records))
        return result

    # ------------------------------------------------------------------
    # Extract
    # ------------------------------------------------------------------

    async def _execute_extract(
        self,
        step: Step,
        adapter: Extractor,
        config: AdapterConfig,
        policy: RetryPolicy,
        run_ctx: RunContext,
    ) -> StepResult:
        """Pull batches until the extractor reports no more, checkpointing each one"""
        checkpointing = run_ctx.context.checkpointing.enabled
        checkpoint = run_ctx.checkpoints.get(step.key) if checkpointing else None
        result = StepResult(step_key=step.key, status=StepStatus.SUCCESS)

        if checkpoint is not None:
            logger.info(f"Step {step.key} resuming from checkpoint {checkpoint}")

        for batch_number in range(self.max_extract_batches):
            if await run_ctx.boundary():
                result.status = StepStatus.CANCELLED
                break

            batch, error = await self._pull_with_retries(step, adapter, config, checkpoint, policy, run_ctx, result.metrics)
            if error is not None:
                result.status = StepStatus.ERROR
                result.error = error
                logger.error(
                    f"Extraction failed at step {step.key} after {batch_number} batches",
                    extra={"error_context": describe_error(error)}
                )
                break

            result.metrics.batches += 1
            for record in batch.records:
                result.output.append(record)
                result.outcomes.append(RecordOutcome(
                    kind=OutcomeKind.TRANSFORMED,
                    record=record,
                    record_id=extract_record_id(record)
                ))

            if checkpointing and batch.checkpoint is not None:
                checkpoint = batch.checkpoint
                run_ctx.checkpoints.set(step.key, checkpoint)

            if not batch.has_more:
                break
        else:
            logger.warning(
                f"Step {step.key} stopped after {self.max_extract_batches} batches "
                f"while the extractor still reported more data"
            )

        extracted = len(result.output)
        result.metrics.records_in = extracted
        result.metrics.records_out = extracted
        result.metrics.succeeded = extracted
        return result

    async def _pull_with_retries(self, step, adapter, config, checkpoint, policy, run_ctx, metrics):
        attempt = 0
        while True:
            try:
                batch = await self._call(
                    step,
                    run_ctx,
                    lambda: adapter.pull(config, copy.deepcopy(checkpoint), run_ctx.execution_context(step, attempt))
                )
                return batch, None
            except Exception as e:
                if not is_retryable(e, adapter) or policy.exhausted(attempt) or run_ctx.cancelled:
                    if isinstance(e, PipelineException):
                        return None, e
                    return None, AdapterError(
                        f"Extractor '{adapter.code}' failed",
                        context={"step_key": step.key, "adapter_code": adapter.code, "attempts": attempt + 1},
                        original_exception=e
                    )
                metrics.retried += 1
                await self._announce_retry(step, run_ctx, e, attempt, 1)
                await policy.wait(attempt)
                attempt += 1

    # ------------------------------------------------------------------
    # Record-level steps
    # ------------------------------------------------------------------

    async def _execute_operator(
        self,
        step: Step,
        adapter: Operator,
        config: AdapterConfig,
        records: List[Record],
        policy: RetryPolicy,
        run_ctx: RunContext,
    ) -> StepResult:
        async def apply(record: Record, attempt: int) -> List[RecordOutcome]:
            output = await self._call(
                step,
                run_ctx,
                lambda: adapter.apply(copy.deepcopy(record), config, run_ctx.execution_context(step, attempt))
            )
            record_id = extract_record_id(record)
            if output is None:
                return [RecordOutcome(kind=OutcomeKind.FILTERED, record=record, record_id=record_id, attempts=attempt + 1)]
            if not isinstance(output, dict):
                raise FatalAdapterError(
                    f"Operator '{adapter.code}' returned {type(output).__name__}, expected a record or None",
                    context={"step_key": step.key, "adapter_code": adapter.code}
                )
            return [RecordOutcome(
                kind=OutcomeKind.TRANSFORMED,
                record=output,
                record_id=extract_record_id(output) or record_id,
                attempts=attempt + 1
            )]

        return await self._execute_records(step, adapter, records, apply, policy, run_ctx)

    async def _execute_load(
        self,
        step: Step,
        adapter: Loader,
        config: AdapterConfig,
        records: List[Record],
        policy: RetryPolicy,
        run_ctx: RunContext,
    ) -> StepResult:
        records, duplicates = self._dedupe(records, run_ctx.context.idempotency_key_field)

        async def load(record: Record, attempt: int) -> List[RecordOutcome]:
            loaded = await self._call(
                step,
                run_ctx,
                lambda: adapter.load(copy.deepcopy(record), config, run_ctx.execution_context(step, attempt))
            )
            record_id = extract_record_id(record)
            if loaded.op == LoadOp.ERROR:
                raise FatalAdapterError(
                    loaded.reason or f"Loader '{adapter.code}' rejected the record",
                    context={"step_key": step.key, "adapter_code": adapter.code, "record_id": record_id}
                )
            return [RecordOutcome(
                kind=_LOAD_KINDS[loaded.op],
                record=record,
                record_id=record_id,
                entity_id=loaded.entity_id,
                reason=loaded.reason,
                attempts=attempt + 1
            )]

        result = await self._execute_records(step, adapter, records, load, policy, run_ctx, extra_outcomes=duplicates)
        return result

    @staticmethod
    def _dedupe(records: List[Record], key_field: Optional[str]) -> Tuple[List[Record], List[RecordOutcome]]:
        """First record per idempotency key wins; later ones are filtered"""
        if not key_field:
            return records, []
        seen = set()
        kept: List[Record] = []
        duplicates: List[RecordOutcome] = []
        for record in records:
            key = get_path(record, key_field)
            if key is not None:
                marker = repr(key)
                if marker in seen:
                    duplicates.append(RecordOutcome(
                        kind=OutcomeKind.FILTERED,
                        record=record,
                        record_id=extract_record_id(record),
                        reason=f"duplicate {key_field}={key!r}"
                    ))
                    continue
                seen.add(marker)
            kept.append(record)
        return kept, duplicates

    async def _execute_write(
        self,
        step: Step,
        adapter: Writer,
        config: AdapterConfig,
        records: List[Record],
        policy: RetryPolicy,
        run_ctx: RunContext,
    ) -> StepResult:
        """Writers take a whole sub-batch per call; a failed call fails every record in it"""
        totals: Dict[str, Any] = defaultdict(int)

        async def write(batch: List[Record], attempt: int) -> List[RecordOutcome]:
            written = await self._call(
                step,
                run_ctx,
                lambda: adapter.write(copy.deepcopy(batch), config, run_ctx.execution_context(step, attempt))
            )
            totals["item_count"] += written.item_count
            if written.bytes_written is not None:
                totals["bytes_written"] += written.bytes_written
            return [
                RecordOutcome(kind=OutcomeKind.WRITTEN, record=r, record_id=extract_record_id(r), attempts=attempt + 1)
                for r in batch
            ]

        result = await self._execute_records(step, adapter, records, write, policy, run_ctx, whole_batches=True)
        logger.debug(f"Step {step.key} wrote {dict(totals)}")
        return result

    async def _execute_records(
        self,
        step: Step,
        adapter: Adapter,
        records: List[Record],
        call: Callable[[Any, int], Awaitable[List[RecordOutcome]]],
        policy: RetryPolicy,
        run_ctx: RunContext,
        whole_batches: bool = False,
        extra_outcomes: Optional[List[RecordOutcome]] = None,
    ) -> StepResult:
        """
        Bounded worker pool over sub-batches.

        Each worker takes the next sub-batch from a queue once the previous
        one is done, so at most `concurrency` sub-batches are in flight.
        Cancellation and pause are honoured before every sub-batch.
        """
        batches = chunk(records, self._batch_size(step, run_ctx))
        concurrency = min(self._concurrency(step, run_ctx), max(1, len(batches)))
        result = StepResult(step_key=step.key, status=StepStatus.SUCCESS)
        per_batch: Dict[int, List[RecordOutcome]] = {}
        cancelled = False

        queue: asyncio.Queue = asyncio.Queue()
        for index, batch in enumerate(batches):
            queue.put_nowait((index, batch))

        async def worker() -> None:
            nonlocal cancelled
            while True:
                if await run_ctx.boundary():
                    cancelled = True
                    return
                try:
                    index, batch = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                units = [batch] if whole_batches else list(batch)
                per_batch[index] = await self._run_with_retries(step, adapter, units, call, policy, run_ctx, result.metrics)
                result.metrics.batches += 1

        tasks = [asyncio.create_task(worker()) for _ in range(concurrency)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        for index in sorted(per_batch):
            result.outcomes.extend(per_batch[index])
        if extra_outcomes:
            result.outcomes.extend(extra_outcomes)
        result.output = [o.record for o in result.outcomes if o.kind in _PASSING_KINDS]

        self._tally(result, len(records) + len(extra_outcomes or []))
        if cancelled:
            result.status = StepStatus.CANCELLED
        return result

    async def _run_with_retries(self, step, adapter, units, call, policy, run_ctx, metrics) -> List[RecordOutcome]:
        """Run each unit; retryable failures are re-run with backoff until the policy is exhausted"""
        outcomes: List[RecordOutcome] = []
        pending = list(units)
        attempt = 0

        while pending:
            failed = []
            for unit in pending:
                try:
                    outcomes.extend(await call(unit, attempt))
                except Exception as e:
                    failed.append((unit, e))

            retry = []
            for unit, error in failed:
                if is_retryable(error, adapter) and not policy.exhausted(attempt) and not run_ctx.cancelled:
                    retry.append((unit, error))
                else:
                    outcomes.extend(self._failed_outcomes(step, unit, error, attempt + 1))

            pending = [unit for unit, _ in retry]
            if pending:
                count = sum(_unit_size(u) for u in pending)
                metrics.retried += count
                await self._announce_retry(step, run_ctx, retry[-1][1], attempt, count)
                await policy.wait(attempt)
                attempt += 1

        return outcomes

    @staticmethod
    def _failed_outcomes(step: Step, unit: Any, error: BaseException, attempts: int) -> List[RecordOutcome]:
        logger.warning(
            f"Step {step.key}: {_unit_size(unit)} record(s) failed after {attempts} attempt(s): {error}"
        )
        records = unit if isinstance(unit, list) else [unit]
        return [
            RecordOutcome(
                kind=OutcomeKind.ERRORED,
                record=r,
                record_id=extract_record_id(r),
                error=error,
                reason=describe_error(error)["message"],
                attempts=attempts
            )
            for r in records
        ]

    # ------------------------------------------------------------------
    # Adapter invocation
    # ------------------------------------------------------------------

    async def _call(self, step: Step, run_ctx: RunContext, factory: Callable[[], Awaitable[Any]]) -> Any:
        """Pace, then race one adapter call against the step timeout"""
        rps = self._rate_limit_rps(step, run_ctx)
        if rps and run_ctx.rate_limiter is not None:
            key = RateLimitKey(pipeline_code=run_ctx.pipeline_code, identifier=step.key)
            await run_ctx.rate_limiter.acquire_rps(key, rps)

        if not step.timeout_ms:
            return await factory()
        try:
            return await asyncio.wait_for(factory(), timeout=step.timeout_ms / 1000)
        except asyncio.TimeoutError as e:
            raise StepTimeoutError(
                f"Step '{step.key}' timed out after {step.timeout_ms}ms",
                context={"step_key": step.key, "timeout_ms": step.timeout_ms},
                original_exception=e
            )

    async def _announce_retry(self, step: Step, run_ctx: RunContext, error: BaseException, attempt: int, count: int) -> None:
        logger.info(f"Step {step.key}: retrying {count} unit(s), attempt {attempt + 2}")
        await run_ctx.publish(
            HookEvent(
                pipeline_id=run_ctx.pipeline_code,
                run_id=run_ctx.run_id,
                stage=HookStage.ON_RETRY,
                step_key=step.key,
                error=describe_error(error),
                data={"attempt": attempt + 1, "count": count},
            ),
            timeout_ms=step.timeout_ms
        )

    # ------------------------------------------------------------------
    # Settings resolution
    # ------------------------------------------------------------------

    def _batch_size(self, step: Step, run_ctx: RunContext) -> int:
        for throughput in (step.throughput, run_ctx.context.throughput):
            if throughput is not None and throughput.batch_size:
                return throughput.batch_size
        return self.default_batch_size

    @staticmethod
    def _rate_limit_rps(step: Step, run_ctx: RunContext) -> Optional[float]:
        for throughput in (step.throughput, run_ctx.context.throughput):
            if throughput is not None and throughput.rate_limit_rps:
                return throughput.rate_limit_rps
        return None

    def _concurrency(self, step: Step, run_ctx: RunContext) -> int:
        if step.concurrency:
            return max(1, step.concurrency)
        if step.run_async:
            pipeline_limit = run_ctx.context.parallel_execution.max_concurrent_steps or settings.MAX_CONCURRENT_STEPS
            return max(self.default_concurrency, pipeline_limit)
        return max(1, self.default_concurrency)

    @staticmethod
    def _tally(result: StepResult, records_in: int) -> None:
        metrics = result.metrics
        metrics.records_in = records_in
        metrics.records_out = len(result.output)
        metrics.succeeded = sum(1 for o in result.outcomes if o.kind in _PASSING_KINDS)
        metrics.failed = sum(1 for o in result.outcomes if o.kind == OutcomeKind.ERRORED)
        metrics.filtered = sum(1 for o in result.outcomes if o.kind == OutcomeKind.FILTERED)
