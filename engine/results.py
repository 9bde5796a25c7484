"""
Step and run result types produced by the executor and orchestrator
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.exceptions import describe_error

Record = Dict[str, Any]


class StepStatus(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, enum.Enum):
    """Run lifecycle; PAUSED and CANCEL_REQUESTED are transient"""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    CANCEL_REQUESTED = "CANCEL_REQUESTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    TIMEOUT = "TIMEOUT"

    @property
    def is_terminal(self) -> bool:
        return self in (
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
            RunStatus.TIMEOUT,
        )


class OutcomeKind(str, enum.Enum):
    """Per-record outcome of a step"""
    TRANSFORMED = "transformed"
    FILTERED = "filtered"
    ERRORED = "errored"
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    WRITTEN = "written"


@dataclass
class RecordOutcome:
    kind: OutcomeKind
    record: Optional[Record] = None
    record_id: Optional[str] = None
    branch: Optional[str] = None
    entity_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[BaseException] = None
    attempts: int = 1

    @property
    def is_error(self) -> bool:
        return self.kind == OutcomeKind.ERRORED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "record_id": self.record_id,
            "branch": self.branch,
            "entity_id": self.entity_id,
            "reason": self.reason,
            "attempts": self.attempts,
            "error": describe_error(self.error) if self.error else None,
        }


@dataclass
class StepMetrics:
    """Counters for one step"""
    records_in: int = 0
    records_out: int = 0
    succeeded: int = 0
    failed: int = 0
    filtered: int = 0
    retried: int = 0
    dead_lettered: int = 0
    batches: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "records_in": self.records_in,
            "records_out": self.records_out,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "filtered": self.filtered,
            "retried": self.retried,
            "dead_lettered": self.dead_lettered,
            "batches": self.batches,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class StepResult:
    """
    Result of executing one step.

    `error` holds a step-level fatal error (bad config, adapter crash,
    timeout after retries); per-record failures live in `outcomes`.
    For ROUTE steps `branches` maps each branch name to the records
    routed along it.
    """
    step_key: str
    status: StepStatus
    output: List[Record] = field(default_factory=list)
    outcomes: List[RecordOutcome] = field(default_factory=list)
    metrics: StepMetrics = field(default_factory=StepMetrics)
    error: Optional[BaseException] = None
    branches: Dict[str, List[Record]] = field(default_factory=dict)

    @property
    def failed_outcomes(self) -> List[RecordOutcome]:
        return [o for o in self.outcomes if o.is_error]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_key": self.step_key,
            "status": self.status.value,
            "metrics": self.metrics.to_dict(),
            "error": describe_error(self.error) if self.error else None,
            "branches": {name: len(records) for name, records in self.branches.items()},
        }


@dataclass
class RunMetrics:
    """Run-wide totals, summed over steps"""
    total_records_processed: int = 0
    total_records_succeeded: int = 0
    total_records_failed: int = 0
    total_records_filtered: int = 0
    total_dead_lettered: int = 0
    steps_executed: int = 0
    steps_failed: int = 0
    steps_skipped: int = 0
    duration_ms: float = 0.0

    @property
    def failure_percent(self) -> float:
        if not self.total_records_processed:
            return 0.0
        return 100.0 * self.total_records_failed / self.total_records_processed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records_processed": self.total_records_processed,
            "total_records_succeeded": self.total_records_succeeded,
            "total_records_failed": self.total_records_failed,
            "total_records_filtered": self.total_records_filtered,
            "total_dead_lettered": self.total_dead_lettered,
            "steps_executed": self.steps_executed,
            "steps_failed": self.steps_failed,
            "steps_skipped": self.steps_skipped,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class RunResult:
    """Final status of a run plus every error and warning it produced"""
    run_id: str
    pipeline_code: str
    status: RunStatus
    steps: Dict[str, StepResult] = field(default_factory=dict)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline_code": self.pipeline_code,
            "status": self.status.value,
            "steps": {key: result.to_dict() for key, result in self.steps.items()},
            "metrics": self.metrics.to_dict(),
            "errors": self.errors,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
