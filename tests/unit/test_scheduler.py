from unittest.mock import AsyncMock, MagicMock

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from core.exceptions import ConfigValidationError, RateLimitExceeded
from engine.results import RunResult, RunStatus
from engine.scheduler import PipelineScheduler, trigger_for
from schemas.pipeline import PipelineDefinition


def pipeline(trigger_config=None):
    return PipelineDefinition.model_validate({
        "code": "catalog-sync",
        "steps": [
            {"key": "start", "type": "TRIGGER", "config": trigger_config or {}},
            {"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "products"}},
        ],
    })


class TestTriggerResolution:
    def test_interval_from_trigger_config(self):
        trigger = trigger_for(pipeline({"intervalSeconds": 300}))

        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval.total_seconds() == 300

    def test_cron_from_trigger_config(self):
        assert isinstance(trigger_for(pipeline({"cron": "*/5 * * * *"})), CronTrigger)

    def test_explicit_schedule_wins(self):
        trigger = trigger_for(pipeline({"cron": "*/5 * * * *"}), interval_seconds=60)

        assert isinstance(trigger, IntervalTrigger)
        assert trigger.interval.total_seconds() == 60

    def test_missing_schedule(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            trigger_for(pipeline())

        assert exc_info.value.code == "MISSING_CONFIG"

    def test_invalid_cron(self):
        with pytest.raises(ConfigValidationError) as exc_info:
            trigger_for(pipeline({"cron": "every tuesday"}))

        assert exc_info.value.code == "INVALID_CONFIG"


class TestPipelineScheduler:
    def test_scheduler_initialization(self):
        scheduler = PipelineScheduler(MagicMock())

        assert scheduler.scheduler is not None
        assert scheduler.jobs() == []

    def test_schedule_and_unschedule(self):
        scheduler = PipelineScheduler(MagicMock())
        definition = pipeline({"intervalSeconds": 60})

        job_id = scheduler.schedule(definition)

        assert job_id == "pipeline:catalog-sync"
        assert scheduler.jobs() == [job_id]

        # rescheduling replaces the job
        scheduler.schedule(definition, cron="0 * * * *")
        assert scheduler.jobs() == [job_id]

        assert scheduler.unschedule(definition) is True
        assert scheduler.unschedule(definition) is False
        assert scheduler.jobs() == []

    @pytest.mark.asyncio
    async def test_job_execution(self):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=RunResult(
            run_id="run-1",
            pipeline_code="catalog-sync",
            status=RunStatus.COMPLETED,
        ))
        scheduler = PipelineScheduler(orchestrator)
        definition = pipeline({"intervalSeconds": 60})

        result = await scheduler.run_pipeline_job(definition)

        assert result.status == RunStatus.COMPLETED
        assert scheduler.last_results["catalog-sync"] is result
        orchestrator.run.assert_awaited_once_with(definition, checkpoint_store=None)

    @pytest.mark.asyncio
    async def test_job_loads_checkpoints_from_factory(self):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(return_value=RunResult(
            run_id="run-1",
            pipeline_code="catalog-sync",
            status=RunStatus.COMPLETED,
        ))
        store = MagicMock()
        store.load = AsyncMock(return_value={})
        scheduler = PipelineScheduler(orchestrator)

        await scheduler.run_pipeline_job(pipeline(), checkpoint_store_factory=lambda: store)

        store.load.assert_awaited_once()
        assert orchestrator.run.call_args.kwargs["checkpoint_store"] is store

    @pytest.mark.asyncio
    async def test_job_failures_are_swallowed(self):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=RuntimeError("database down"))
        scheduler = PipelineScheduler(orchestrator)

        assert await scheduler.run_pipeline_job(pipeline()) is None
        assert scheduler.last_results == {}

    @pytest.mark.asyncio
    async def test_rate_limited_job_is_skipped(self):
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=RateLimitExceeded("slow down", retry_after_ms=500))
        scheduler = PipelineScheduler(orchestrator)

        assert await scheduler.run_pipeline_job(pipeline()) is None

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        scheduler = PipelineScheduler(MagicMock())
        scheduler.schedule(pipeline({"intervalSeconds": 3600}))

        scheduler.start()
        assert scheduler.scheduler.running

        scheduler.stop()
        assert not scheduler.scheduler.running
