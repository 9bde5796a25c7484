# ============================================================================
# File: tests/integration/test_failure_policies.py
# ============================================================================

import pytest

from core.exceptions import DeadLetterError
from engine.dead_letter import InMemoryDeadLetterSink
from engine.hooks import HookDispatcher, HookStage
from engine.orchestrator import PipelineOrchestrator
from engine.results import RunStatus, StepStatus
from schemas.pipeline import PipelineDefinition

SEED = [{"id": "ok-1"}, {"id": "bad-1", "bad": True}, {"id": "ok-2"}, {"id": "ok-3"}]


def transform_pipeline(adapter_code, step_options=None, **context):
    """start -> <operator> -> save"""
    return PipelineDefinition.model_validate({
        "code": "policy-check",
        "steps": [
            {"key": "start", "type": "TRIGGER"},
            {"key": "work", "type": "TRANSFORM", "config": {"adapterCode": adapter_code}, **(step_options or {})},
            {"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "out"}},
        ],
        "context": context,
    })


def two_branch_pipeline(error_policy):
    """A failing and a healthy extraction in parallel"""
    return PipelineDefinition.model_validate({
        "code": "two-sources",
        "steps": [
            {"key": "start", "type": "TRIGGER"},
            {"key": "bad_fetch", "type": "EXTRACT", "config": {"adapterCode": "failing-source"}},
            {"key": "good_fetch", "type": "EXTRACT", "config": {"adapterCode": "list-source", "pageSize": 5}},
            {"key": "bad_save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "a"}},
            {"key": "good_save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "b"}},
        ],
        "edges": [
            {"source": "start", "target": "bad_fetch"},
            {"source": "start", "target": "good_fetch"},
            {"source": "bad_fetch", "target": "bad_save"},
            {"source": "good_fetch", "target": "good_save"},
        ],
        "context": {"parallelExecution": {"enabled": True, "errorPolicy": error_policy}},
    })


class TestErrorPolicies:
    @pytest.mark.asyncio
    async def test_fail_fast_stops_the_run(self, registry):
        definition = PipelineDefinition.model_validate({
            "code": "fail-fast",
            "steps": [
                {"key": "start", "type": "TRIGGER"},
                {"key": "fetch", "type": "EXTRACT", "config": {"adapterCode": "failing-source"}},
                {"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "out"}},
            ],
        })

        result = await PipelineOrchestrator(registry).run(definition)

        assert result.status == RunStatus.FAILED
        assert [e["code"] for e in result.errors] == ["STEP_FAILED"]
        assert result.errors[0]["step_key"] == "fetch"
        assert "save" not in result.steps
        assert result.metrics.steps_failed == 1
        assert result.metrics.steps_skipped == 1

    @pytest.mark.asyncio
    async def test_continue_skips_only_dependents(self, registry, loader):
        result = await PipelineOrchestrator(registry).run(two_branch_pipeline("CONTINUE"))

        assert result.status == RunStatus.FAILED
        assert result.steps["bad_save"].status == StepStatus.SKIPPED
        assert result.steps["good_save"].status == StepStatus.SUCCESS
        assert len([k for k in loader.rows if k.startswith("b:")]) == 5
        assert result.metrics.steps_skipped == 1

    @pytest.mark.asyncio
    async def test_best_effort_runs_dependents_anyway(self, registry):
        result = await PipelineOrchestrator(registry).run(two_branch_pipeline("BEST_EFFORT"))

        assert result.status == RunStatus.FAILED
        assert result.steps["bad_save"].status == StepStatus.SUCCESS
        assert result.steps["bad_save"].metrics.records_in == 0
        assert result.steps["good_save"].metrics.succeeded == 5

    @pytest.mark.asyncio
    async def test_error_hook_carries_the_failure(self, registry):
        hooks = HookDispatcher()
        errors = []

        async def on_error(event):
            errors.append(event)

        hooks.subscribe(on_error, [HookStage.ON_ERROR])

        await PipelineOrchestrator(registry, hooks=hooks).run(two_branch_pipeline("CONTINUE"))

        assert [e.step_key for e in errors] == ["bad_fetch"]
        assert errors[0].error["error_type"] == "FatalAdapterError"


class TestErrorStrategies:
    @pytest.mark.asyncio
    async def test_skip_drops_failed_records(self, registry, loader):
        dead_letters = InMemoryDeadLetterSink()

        result = await PipelineOrchestrator(registry, dead_letter_sink=dead_letters).run(
            transform_pipeline("broken"), seed_input=SEED
        )

        assert result.status == RunStatus.COMPLETED
        assert result.metrics.total_records_failed == 1
        assert result.metrics.total_records_succeeded == 3
        assert [w["code"] for w in result.warnings] == ["RECORDS_FAILED"]
        assert sorted(loader.rows) == ["out:ok-1", "out:ok-2", "out:ok-3"]
        assert len(dead_letters) == 0

    @pytest.mark.asyncio
    async def test_quarantine_dead_letters_failed_records(self, registry):
        dead_letters = InMemoryDeadLetterSink()
        hooks = HookDispatcher()
        quarantined = []

        async def on_dead_letter(event):
            quarantined.extend(event.records)

        hooks.subscribe(on_dead_letter, [HookStage.ON_DEAD_LETTER])

        result = await PipelineOrchestrator(registry, dead_letter_sink=dead_letters, hooks=hooks).run(
            transform_pipeline("broken", errorHandling={"strategy": "QUARANTINE"}), seed_input=SEED
        )

        assert result.status == RunStatus.COMPLETED
        assert result.metrics.total_dead_lettered == 1
        entry = dead_letters.entries[0]
        assert entry.record_id == "bad-1"
        assert entry.step_key == "work"
        assert entry.run_id == result.run_id
        assert isinstance(entry.error, DeadLetterError)
        assert entry.error.context["record_id"] == "bad-1"
        assert [r["id"] for r in quarantined] == ["bad-1"]

    @pytest.mark.asyncio
    async def test_dead_letter_queue_disabled(self, registry):
        dead_letters = InMemoryDeadLetterSink()

        result = await PipelineOrchestrator(registry, dead_letter_sink=dead_letters).run(
            transform_pipeline("broken", errorHandling={"strategy": "QUARANTINE", "deadLetterQueue": False}),
            seed_input=SEED,
        )

        assert result.status == RunStatus.COMPLETED
        assert len(dead_letters) == 0
        assert result.metrics.total_dead_lettered == 0
        assert "DEAD_LETTER_DISABLED" in [w["code"] for w in result.warnings]

    @pytest.mark.asyncio
    async def test_quarantine_without_sink_uses_in_memory_sink(self, registry):
        orchestrator = PipelineOrchestrator(registry)

        result = await orchestrator.run(
            transform_pipeline("broken", errorHandling={"strategy": "QUARANTINE"}), seed_input=SEED
        )

        assert result.metrics.total_dead_lettered == 1
        assert [e.record_id for e in orchestrator.dead_letter_sink.entries] == ["bad-1"]
        assert "DEAD_LETTER_DISABLED" not in [w["code"] for w in result.warnings]

    @pytest.mark.asyncio
    async def test_abort_fails_the_run(self, registry, loader):
        result = await PipelineOrchestrator(registry).run(
            transform_pipeline("broken", errorHandling={"strategy": "ABORT"}), seed_input=SEED
        )

        assert result.status == RunStatus.FAILED
        assert "ABORTED" in [e["code"] for e in result.errors]
        assert "save" not in result.steps
        assert loader.rows == {}

    @pytest.mark.asyncio
    async def test_continue_on_error_step_is_not_aborted(self, registry):
        result = await PipelineOrchestrator(registry).run(
            transform_pipeline("broken", {"continueOnError": True}, errorHandling={"strategy": "ABORT"}),
            seed_input=SEED,
        )

        assert result.status == RunStatus.COMPLETED
        assert result.steps["work"].status == StepStatus.WARNING

    @pytest.mark.asyncio
    async def test_retry_recovers_transient_failures(self, registry, flaky):
        dead_letters = InMemoryDeadLetterSink()

        result = await PipelineOrchestrator(registry, dead_letter_sink=dead_letters).run(
            transform_pipeline("flaky", errorHandling={"strategy": "RETRY", "maxRetries": 3, "retryDelayMs": 1}),
            seed_input=[{"id": "r1"}],
        )

        assert result.status == RunStatus.COMPLETED
        assert result.steps["work"].metrics.retried == 2
        assert result.metrics.total_records_succeeded == 1
        assert len(dead_letters) == 0

    @pytest.mark.asyncio
    async def test_retry_exhaustion_dead_letters_record(self, registry, flaky):
        flaky.failures = 10
        dead_letters = InMemoryDeadLetterSink()

        result = await PipelineOrchestrator(registry, dead_letter_sink=dead_letters).run(
            transform_pipeline("flaky", errorHandling={"strategy": "RETRY", "maxRetries": 2, "retryDelayMs": 1}),
            seed_input=[{"id": "r1"}],
        )

        assert result.metrics.total_records_failed == 1
        assert dead_letters.entries[0].attempts == 3
        assert flaky.calls["r1"] == 3

    @pytest.mark.asyncio
    async def test_error_threshold_halts_run(self, registry):
        result = await PipelineOrchestrator(registry).run(
            transform_pipeline("broken", errorHandling={"errorThresholdPercent": 10}), seed_input=SEED
        )

        assert result.status == RunStatus.FAILED
        assert "ERROR_THRESHOLD_EXCEEDED" in [e["code"] for e in result.errors]
        assert "save" not in result.steps

    @pytest.mark.asyncio
    async def test_error_threshold_not_reached(self, registry):
        result = await PipelineOrchestrator(registry).run(
            transform_pipeline("broken", errorHandling={"errorThresholdPercent": 50}), seed_input=SEED
        )

        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_timeout_under_abort_ends_in_timeout_status(self, registry):
        definition = PipelineDefinition.model_validate({
            "code": "slow-step",
            "steps": [
                {"key": "start", "type": "TRIGGER"},
                {
                    "key": "work",
                    "type": "TRANSFORM",
                    "config": {"adapterCode": "slow", "delayMs": 500},
                    "timeoutMs": 20,
                    "retries": 0,
                    "onError": "ABORT",
                },
                {"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "out"}},
            ],
        })

        result = await PipelineOrchestrator(registry).run(definition, seed_input=[{"id": "r1"}])

        assert result.status == RunStatus.TIMEOUT
