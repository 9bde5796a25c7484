# ============================================================================
# File: tests/integration/test_replay.py
# ============================================================================

import pytest

from core.exceptions import PipelineValidationError
from engine.hooks import HookDispatcher, HookStage
from engine.orchestrator import PipelineOrchestrator
from engine.results import RunStatus
from schemas.pipeline import PipelineDefinition
from test_pipeline_runs import linear_pipeline, routed_pipeline

SEED = [{"id": "s1", "price": 150}, {"id": "s2", "price": 0}, {"id": "s3", "price": 40}]


@pytest.mark.asyncio
async def test_replay_runs_only_downstream_steps(registry, extractor, loader):
    result = await PipelineOrchestrator(registry).replay_from_step(linear_pipeline(), "fetch", SEED)

    assert result.status == RunStatus.COMPLETED
    assert set(result.steps) == {"filter", "save"}
    assert extractor.pulls == 0
    assert result.steps["filter"].metrics.records_in == 3
    assert sorted(loader.rows) == ["products:s1", "products:s3"]

    assert result.metrics.total_records_processed == 3
    assert result.metrics.steps_executed == 2
    assert result.metrics.steps_skipped == 1


@pytest.mark.asyncio
async def test_replay_ignores_predecessors_outside_the_sub_graph(registry, loader):
    result = await PipelineOrchestrator(registry).replay_from_step(linear_pipeline(), "filter", SEED)

    assert result.status == RunStatus.COMPLETED
    assert set(result.steps) == {"save"}
    assert sorted(loader.rows) == ["products:s1", "products:s2", "products:s3"]
    assert result.metrics.steps_skipped == 2


@pytest.mark.asyncio
async def test_replay_from_route_feeds_every_branch(registry, loader, sink):
    result = await PipelineOrchestrator(registry).replay_from_step(routed_pipeline(), "route", SEED)

    assert result.status == RunStatus.COMPLETED
    assert sorted(loader.rows) == ["premium:s1", "premium:s2", "premium:s3"]
    assert [r["id"] for r in sink.written] == ["s1", "s2", "s3"]
    assert "route" not in result.steps


@pytest.mark.asyncio
async def test_replay_skips_sibling_branches(registry, sink):
    definition = PipelineDefinition.model_validate({
        "code": "fan-in",
        "steps": [
            {"key": "start", "type": "TRIGGER"},
            {"key": "fetch", "type": "EXTRACT", "config": {"adapterCode": "list-source", "pageSize": 5}},
            {"key": "cheap", "type": "TRANSFORM", "config": {"adapterCode": "price-filter", "minPrice": 0}},
            {"key": "pricey", "type": "TRANSFORM", "config": {"adapterCode": "price-filter", "minPrice": 100}},
            {"key": "publish", "type": "SINK", "config": {"adapterCode": "memory-sink"}},
        ],
        "edges": [
            {"source": "start", "target": "fetch"},
            {"source": "fetch", "target": "cheap"},
            {"source": "fetch", "target": "pricey"},
            {"source": "cheap", "target": "publish"},
            {"source": "pricey", "target": "publish"},
        ],
    })

    result = await PipelineOrchestrator(registry).replay_from_step(definition, "pricey", SEED)

    assert result.status == RunStatus.COMPLETED
    assert set(result.steps) == {"publish"}
    assert [r["id"] for r in sink.written] == ["s1", "s2", "s3"]


@pytest.mark.asyncio
async def test_replay_is_announced_on_pipeline_started(registry):
    hooks = HookDispatcher()
    started = []

    async def on_started(event):
        started.append(event.data)

    hooks.subscribe(on_started, [HookStage.PIPELINE_STARTED])

    await PipelineOrchestrator(registry, hooks=hooks).replay_from_step(linear_pipeline(), "filter", SEED)

    assert started == [{"seedRecords": 3, "replayFrom": "filter"}]


@pytest.mark.asyncio
async def test_replay_from_unknown_step_raises(registry, loader):
    with pytest.raises(PipelineValidationError) as exc_info:
        await PipelineOrchestrator(registry).replay_from_step(linear_pipeline(), "missing", SEED)

    assert exc_info.value.context["step_key"] == "missing"
    assert loader.rows == {}
