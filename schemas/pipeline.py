"""
Pydantic schemas for declarative pipeline definitions.

The models accept the camelCase keys used by stored definitions
(``adapterCode``, ``retryDelayMs``...) as well as snake_case field names.
They are deliberately permissive about graph semantics: duplicate keys,
unknown step types and out-of-range options parse successfully so that
the DAG validator can report every defect with its own code.
"""

import enum
from typing import Any, Dict, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class StepType(str, enum.Enum):
    """Kinds of pipeline steps"""
    TRIGGER = "TRIGGER"
    EXTRACT = "EXTRACT"
    TRANSFORM = "TRANSFORM"
    VALIDATE = "VALIDATE"
    ENRICH = "ENRICH"
    ROUTE = "ROUTE"
    LOAD = "LOAD"
    EXPORT = "EXPORT"
    FEED = "FEED"
    SINK = "SINK"


# Steps that never run without a registered adapter
ADAPTER_STEP_TYPES = frozenset({
    StepType.EXTRACT,
    StepType.TRANSFORM,
    StepType.VALIDATE,
    StepType.ENRICH,
    StepType.LOAD,
    StepType.EXPORT,
    StepType.FEED,
    StepType.SINK,
})

# Steps whose output leaves the pipeline
TERMINAL_STEP_TYPES = frozenset({
    StepType.LOAD,
    StepType.EXPORT,
    StepType.FEED,
    StepType.SINK,
})


class ErrorStrategy(str, enum.Enum):
    """What to do with records a step failed on"""
    SKIP = "SKIP"
    ABORT = "ABORT"
    QUARANTINE = "QUARANTINE"
    RETRY = "RETRY"


class ErrorPolicy(str, enum.Enum):
    """What to do with the rest of the run when a step fails"""
    FAIL_FAST = "FAIL_FAST"
    CONTINUE = "CONTINUE"
    BEST_EFFORT = "BEST_EFFORT"


class RunMode(str, enum.Enum):
    SYNC = "SYNC"
    ASYNC = "ASYNC"
    BATCH = "BATCH"
    STREAM = "STREAM"


class CheckpointStrategy(str, enum.Enum):
    COUNT = "COUNT"
    TIMESTAMP = "TIMESTAMP"
    INTERVAL = "INTERVAL"


class ComparisonOperator(str, enum.Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "notIn"
    CONTAINS = "contains"
    NOT_CONTAINS = "notContains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    REGEX = "regex"
    EXISTS = "exists"
    NOT_EXISTS = "notExists"


_SYMBOL_OPERATORS = {
    "==": "eq",
    "=": "eq",
    "!=": "ne",
    ">": "gt",
    ">=": "gte",
    "<": "lt",
    "<=": "lte",
}


class DefinitionModel(BaseModel):
    """Base for definition models: camelCase aliases, snake_case accepted"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ============================================================================
# Routing
# ============================================================================

class Condition(DefinitionModel):
    """A single field comparison evaluated against a record"""
    field: str
    cmp: ComparisonOperator = ComparisonOperator.EQ
    value: Any = None

    @field_validator("cmp", mode="before")
    @classmethod
    def normalize_operator(cls, v):
        """Accept symbolic operators such as '>' or '=='"""
        if isinstance(v, str):
            return _SYMBOL_OPERATORS.get(v.strip(), v.strip())
        return v


class BranchConfig(DefinitionModel):
    """A named outgoing path from a ROUTE step"""
    name: str = ""
    when: List[Condition] = Field(default_factory=list)

    @field_validator("when", mode="before")
    @classmethod
    def normalize_when(cls, v):
        """`when: true` (or nothing) means the branch always matches"""
        if v is None or v is True:
            return []
        if v is False:
            raise ValueError("a branch that never matches must be removed, not disabled")
        if isinstance(v, dict):
            return [v]
        return v


# ============================================================================
# Steps and edges
# ============================================================================

class ThroughputConfig(DefinitionModel):
    batch_size: Optional[int] = None
    rate_limit_rps: Optional[float] = None


class StepConfig(DefinitionModel):
    """
    Step configuration.

    ``adapter_code`` selects the adapter; every other key is adapter
    specific and is validated against the adapter's own config model at
    execution time. ROUTE steps declare ``branches`` and an optional
    ``default_branch`` instead.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    adapter_code: Optional[str] = None
    branches: Optional[List[BranchConfig]] = None
    default_branch: Optional[str] = None

    def adapter_settings(self) -> Dict[str, Any]:
        """Adapter-specific keys, as written in the definition"""
        return dict(self.model_extra or {})

    def as_adapter_input(self) -> Dict[str, Any]:
        """Raw dict handed to an adapter's config model for validation"""
        data = self.adapter_settings()
        if self.adapter_code is not None:
            data["adapterCode"] = self.adapter_code
        return data


class Step(DefinitionModel):
    """One typed unit of work; immutable during a run"""
    key: str
    type: str
    config: StepConfig = Field(default_factory=StepConfig)
    run_async: bool = Field(default=False, alias="async")
    concurrency: Optional[int] = None
    retries: Optional[int] = None
    retry_delay_ms: Optional[int] = None
    timeout_ms: Optional[int] = None
    continue_on_error: bool = False
    on_error: Optional[ErrorStrategy] = None
    throughput: Optional[ThroughputConfig] = None
    name: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v):
        if isinstance(v, StepType):
            return v.value
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("concurrency", mode="before")
    @classmethod
    def keep_bad_concurrency(cls, v):
        """Unusable values become 0 so the validator reports them as out of range"""
        if v is None:
            return None
        if isinstance(v, bool):
            return 0
        if isinstance(v, int):
            return v
        if isinstance(v, float):
            return int(v) if v.is_integer() else 0
        if isinstance(v, str):
            try:
                return int(v.strip())
            except ValueError:
                return 0
        return 0

    @property
    def step_type(self) -> Optional[StepType]:
        """The StepType, or None when the declared type is unknown"""
        try:
            return StepType(self.type)
        except ValueError:
            return None

    @property
    def adapter_code(self) -> Optional[str]:
        return self.config.adapter_code


class Edge(DefinitionModel):
    """Directed connection between two steps"""
    source: str = Field(validation_alias=AliasChoices("source", "from"))
    target: str = Field(validation_alias=AliasChoices("target", "to"))
    branch: Optional[str] = None

    def describe(self) -> str:
        label = f"[{self.branch}]" if self.branch else ""
        return f"{self.source}->{self.target}{label}"


# ============================================================================
# Execution context
# ============================================================================

class ParallelExecutionConfig(DefinitionModel):
    enabled: bool = False
    max_concurrent_steps: Optional[int] = None
    error_policy: ErrorPolicy = ErrorPolicy.FAIL_FAST


class ErrorHandlingConfig(DefinitionModel):
    strategy: ErrorStrategy = ErrorStrategy.SKIP
    max_retries: Optional[int] = None
    retry_delay_ms: Optional[int] = None
    max_retry_delay_ms: Optional[int] = None
    backoff_multiplier: Optional[float] = None
    dead_letter_queue: bool = True
    error_threshold_percent: Optional[float] = None


class CheckpointingConfig(DefinitionModel):
    enabled: bool = True
    strategy: CheckpointStrategy = CheckpointStrategy.COUNT
    interval_records: Optional[int] = None
    interval_ms: Optional[int] = None
    field: Optional[str] = None


class RateLimitConfig(DefinitionModel):
    max_requests: Optional[int] = None
    window_ms: Optional[int] = None
    identifier: Optional[str] = None


class PipelineContext(DefinitionModel):
    channel: Optional[str] = None
    run_mode: RunMode = RunMode.BATCH
    parallel_execution: ParallelExecutionConfig = Field(default_factory=ParallelExecutionConfig)
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    checkpointing: CheckpointingConfig = Field(default_factory=CheckpointingConfig)
    throughput: Optional[ThroughputConfig] = None
    rate_limit: Optional[RateLimitConfig] = None
    idempotency_key_field: Optional[str] = None


class Capabilities(DefinitionModel):
    required_permissions: List[str] = Field(default_factory=list)
    write_domains: List[str] = Field(default_factory=list)


# ============================================================================
# Pipeline
# ============================================================================

class PipelineDefinition(DefinitionModel):
    """
    A versioned, declarative DAG of steps.

    A definition without edges is a linear pipeline: its steps are chained
    in declaration order.
    """
    code: str = "pipeline"
    version: Union[int, str] = 1
    steps: List[Step] = Field(default_factory=list)
    edges: List[Edge] = Field(default_factory=list)
    capabilities: Optional[Capabilities] = None
    context: PipelineContext = Field(default_factory=PipelineContext)

    @property
    def is_linear(self) -> bool:
        return not self.edges

    def resolved_edges(self) -> List[Edge]:
        """Declared edges, or the implicit chain of a linear pipeline"""
        if self.edges:
            return list(self.edges)
        return [
            Edge(source=a.key, target=b.key)
            for a, b in zip(self.steps, self.steps[1:])
        ]

    def step_map(self) -> Dict[str, Step]:
        """First step declared under each key"""
        by_key: Dict[str, Step] = {}
        for step in self.steps:
            by_key.setdefault(step.key, step)
        return by_key

    def frozen_copy(self) -> "PipelineDefinition":
        """Snapshot a run operates on; later edits do not leak into it"""
        return self.model_copy(deep=True)
