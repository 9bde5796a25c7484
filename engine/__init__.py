"""
Pipeline execution engine.

Modules, leaves first:
    adapters: Adapter contract (roles, config models, capability flags)
    registry: (role, code) -> adapter lookup
    conditions: Branch conditions and record identity
    retry: Backoff and retry classification
    rate_limiter: Keyed in-process rate limiter
    checkpoint: In-memory and SQL checkpoint stores
    dead_letter: Dead-letter sinks
    hooks: Lifecycle event dispatch and webhook delivery
    executor: Runs one step
    validator: Static DAG checks
    orchestrator: Runs a whole pipeline
    scheduler: Scheduled runs

Usage:
    from engine.registry import AdapterRegistry
    from engine.orchestrator import PipelineOrchestrator

    registry = AdapterRegistry()
    registry.register(MyExtractor())
    result = await PipelineOrchestrator(registry).run(definition)
"""

__all__ = [
    "AdapterRegistry",
    "StepExecutor",
    "DagValidator",
    "PipelineOrchestrator",
    "PipelineScheduler",
    "RunHandle",
]
