# ============================================================================
# File: tests/integration/test_run_control.py
# ============================================================================

import asyncio

import pytest

from core.exceptions import RateLimitExceeded
from engine.hooks import HookDispatcher, HookStage
from engine.orchestrator import PipelineOrchestrator, RunHandle
from engine.results import RunStatus
from schemas.pipeline import PipelineDefinition


def catalog_pipeline(**context):
    return PipelineDefinition.model_validate({
        "code": "catalog-sync",
        "steps": [
            {"key": "start", "type": "TRIGGER"},
            {"key": "fetch", "type": "EXTRACT", "config": {"adapterCode": "list-source", "pageSize": 2}},
            {"key": "filter", "type": "TRANSFORM", "config": {"adapterCode": "price-filter"}},
            {"key": "save", "type": "LOAD", "config": {"adapterCode": "memory", "table": "products"}},
        ],
        "context": context,
    })


def hooks_after_extract(callback):
    hooks = HookDispatcher()

    async def handler(event):
        callback()

    hooks.subscribe(handler, [HookStage.AFTER_EXTRACT])
    return hooks


class TestRunHandle:
    def test_pause_requires_running_run(self):
        handle = RunHandle()

        assert handle.pause() is False
        assert handle.resume() is False

    def test_cancel_is_ignored_once_finished(self):
        handle = RunHandle()
        handle.status = RunStatus.COMPLETED

        handle.request_cancel()

        assert handle.status == RunStatus.COMPLETED
        assert not handle.cancel_requested


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_before_start(self, registry, extractor):
        handle = RunHandle()
        handle.request_cancel()

        result = await PipelineOrchestrator(registry).run(catalog_pipeline(), handle=handle)

        assert result.status == RunStatus.CANCELLED
        assert handle.status == RunStatus.CANCELLED
        assert result.steps == {}
        assert extractor.pulls == 0

    @pytest.mark.asyncio
    async def test_cancel_between_steps(self, registry, loader):
        handle = RunHandle()
        hooks = hooks_after_extract(handle.request_cancel)

        result = await PipelineOrchestrator(registry, hooks=hooks).run(catalog_pipeline(), handle=handle)

        assert result.status == RunStatus.CANCELLED
        assert "fetch" in result.steps
        assert "filter" not in result.steps
        assert result.metrics.steps_skipped == 2
        assert loader.rows == {}


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_paused_run_resumes_and_completes(self, registry, loader):
        handle = RunHandle()
        observed = []

        def pause_briefly():
            assert handle.pause() is True
            observed.append(handle.status)
            asyncio.get_running_loop().call_later(0.05, handle.resume)

        hooks = hooks_after_extract(pause_briefly)

        result = await PipelineOrchestrator(registry, hooks=hooks).run(catalog_pipeline(), handle=handle)

        assert observed == [RunStatus.PAUSED]
        assert result.status == RunStatus.COMPLETED
        assert len(loader.rows) == 3

    @pytest.mark.asyncio
    async def test_cancel_wakes_paused_run(self, registry):
        handle = RunHandle()

        def pause_then_cancel():
            handle.pause()
            asyncio.get_running_loop().call_later(0.05, handle.request_cancel)

        hooks = hooks_after_extract(pause_then_cancel)

        result = await asyncio.wait_for(
            PipelineOrchestrator(registry, hooks=hooks).run(catalog_pipeline(), handle=handle),
            timeout=5,
        )

        assert result.status == RunStatus.CANCELLED


class TestStartRateLimit:
    @pytest.mark.asyncio
    async def test_second_start_within_window_is_rejected(self, registry):
        orchestrator = PipelineOrchestrator(registry)
        definition = catalog_pipeline(rateLimit={"maxRequests": 1, "windowMs": 60000})

        first = await orchestrator.run(definition, client_ip="10.0.0.1")

        with pytest.raises(RateLimitExceeded) as exc_info:
            await orchestrator.run(definition, client_ip="10.0.0.1")

        assert first.status == RunStatus.COMPLETED
        assert exc_info.value.retry_after_ms > 0

    @pytest.mark.asyncio
    async def test_limit_is_per_client(self, registry):
        orchestrator = PipelineOrchestrator(registry)
        definition = catalog_pipeline(rateLimit={"maxRequests": 1, "windowMs": 60000})

        await orchestrator.run(definition, client_ip="10.0.0.1")
        result = await orchestrator.run(definition, client_ip="10.0.0.2")

        assert result.status == RunStatus.COMPLETED
