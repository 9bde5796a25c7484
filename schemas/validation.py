"""
Pydantic schemas for DAG validation results
"""

import enum
from typing import List, Optional

from pydantic import BaseModel, Field

from schemas.pipeline import Edge


class ValidationCode(str, enum.Enum):
    """One code per structural defect"""
    EMPTY_PIPELINE = "EMPTY_PIPELINE"
    INVALID_VERSION = "INVALID_VERSION"
    DUPLICATE_STEP_KEY = "DUPLICATE_STEP_KEY"
    UNKNOWN_STEP_TYPE = "UNKNOWN_STEP_TYPE"
    MISSING_CONFIG = "MISSING_CONFIG"
    INVALID_CONFIG = "INVALID_CONFIG"
    UNKNOWN_ADAPTER = "UNKNOWN_ADAPTER"
    INVALID_CONCURRENCY = "INVALID_CONCURRENCY"
    INVALID_STEP_OPTION = "INVALID_STEP_OPTION"
    UNKNOWN_EDGE_SOURCE = "UNKNOWN_EDGE_SOURCE"
    UNKNOWN_EDGE_TARGET = "UNKNOWN_EDGE_TARGET"
    SELF_LOOP = "SELF_LOOP"
    DUPLICATE_EDGE = "DUPLICATE_EDGE"
    UNLABELED_ROUTE_EDGE = "UNLABELED_ROUTE_EDGE"
    BRANCH_ON_NON_ROUTE = "BRANCH_ON_NON_ROUTE"
    UNDECLARED_BRANCH = "UNDECLARED_BRANCH"
    ROUTE_WITHOUT_BRANCHES = "ROUTE_WITHOUT_BRANCHES"
    EMPTY_BRANCH_NAME = "EMPTY_BRANCH_NAME"
    DUPLICATE_BRANCH_NAME = "DUPLICATE_BRANCH_NAME"
    INVALID_DEFAULT_BRANCH = "INVALID_DEFAULT_BRANCH"
    NO_ROOT = "NO_ROOT"
    MULTIPLE_ROOTS = "MULTIPLE_ROOTS"
    CYCLE_DETECTED = "CYCLE_DETECTED"
    UNREACHABLE_STEP = "UNREACHABLE_STEP"

    # Warnings
    ORPHAN_STEP = "ORPHAN_STEP"
    NO_TERMINAL_STEP = "NO_TERMINAL_STEP"


class ValidationIssue(BaseModel):
    """A single validation error or warning"""
    code: ValidationCode
    message: str
    step_key: Optional[str] = None
    edge: Optional[Edge] = None


class TopologyInfo(BaseModel):
    """Shape of a valid step graph"""
    root: str
    leaves: List[str] = Field(default_factory=list)
    execution_order: List[str] = Field(default_factory=list)
    max_depth: int = 0
    has_parallel_paths: bool = False


class ValidationResult(BaseModel):
    """
    Outcome of validating a pipeline definition.

    All errors found in the single pass are listed; `valid` is true only
    when there are none. Warnings never affect validity.
    """
    valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    topology: Optional[TopologyInfo] = None

    @property
    def error_codes(self) -> List[ValidationCode]:
        return [issue.code for issue in self.errors]

    def has_error(self, code: ValidationCode) -> bool:
        return code in self.error_codes
