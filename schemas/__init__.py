"""
Pydantic schemas for pipeline definitions and validation results.

This package defines the declarative models the engine consumes:

Schemas:
    pipeline: PipelineDefinition, Step, Edge, routing branches and the
        execution context (parallelism, error handling, checkpointing)
    validation: ValidationResult, ValidationIssue, ValidationCode, TopologyInfo

Features:
    - camelCase keys as stored by pipeline authors, snake_case accepted
    - Enum coercion for error strategies, policies and run modes
    - Structural permissiveness so that graph defects reach the validator

Usage:
    from schemas.pipeline import PipelineDefinition, StepType
    from schemas.validation import ValidationCode

Example:
    definition = PipelineDefinition.model_validate({
        "code": "product-sync",
        "steps": [
            {"key": "start", "type": "TRIGGER"},
            {"key": "fetch", "type": "EXTRACT", "config": {"adapterCode": "rest"}},
        ],
        "edges": [{"source": "start", "target": "fetch"}],
    })
"""

__all__ = [
    "PipelineDefinition",
    "Step",
    "StepConfig",
    "StepType",
    "Edge",
    "BranchConfig",
    "Condition",
    "PipelineContext",
    "ErrorStrategy",
    "ErrorPolicy",
    "ValidationResult",
    "ValidationIssue",
    "ValidationCode",
    "TopologyInfo",
]
