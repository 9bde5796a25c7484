"""
Custom exceptions for the pipeline engine with structured error context.

This module provides the exception hierarchy used by the DAG validator,
the step executor and the orchestrator. Each exception carries context
information for debugging, dead-lettering and run reporting.

Exception Hierarchy:
    PipelineException (base)
    ├── PipelineValidationError
    │   ├── CycleDetectedError
    │   └── UnreachableStepError
    ├── ConfigValidationError
    ├── AdapterRegistrationError
    ├── AdapterNotFoundError
    ├── AdapterError
    │   ├── TransientAdapterError
    │   ├── FatalAdapterError
    │   └── StepTimeoutError
    ├── RateLimitExceeded
    ├── DeadLetterError
    ├── CheckpointError
    ├── HookDeliveryError
    ├── PipelineAbortedError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any, List
from datetime import datetime


class PipelineException(Exception):
    """
    Base exception for all pipeline engine errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (pipeline, step, record, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        # Add timestamp to context
        self.context["error_timestamp"] = self.timestamp.isoformat()

        # Chain original exception if provided
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


def describe_error(error: BaseException) -> Dict[str, Any]:
    """Dictionary form of any exception, engine or foreign."""
    if isinstance(error, PipelineException):
        return error.to_dict()
    return {
        "error_type": type(error).__name__,
        "message": str(error),
        "context": {},
        "timestamp": datetime.utcnow().isoformat(),
        "original_error": None
    }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Step or adapter timeouts
    - Upstream rate limiting (HTTP 429)
    - Temporary connection issues
    - Service unavailable (HTTP 503)
    """


class NonRetryableError(PipelineException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Malformed adapter configuration
    - Schema violations
    - Authentication failures
    """


# ============================================================================
# Validation Errors
# ============================================================================

class PipelineValidationError(NonRetryableError):
    """
    Raised when a pipeline definition fails structural validation.

    Attributes:
        issues: Every validation issue discovered in the single pass
    """

    def __init__(
        self,
        message: str,
        issues: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.issues = list(issues or [])
        self.context["issue_codes"] = [getattr(i, "code", str(i)) for i in self.issues]


class CycleDetectedError(PipelineValidationError):
    """The step graph contains at least one cycle."""
    pass


class UnreachableStepError(PipelineValidationError):
    """A terminal step can never run because the root does not reach it."""
    pass


class ConfigValidationError(NonRetryableError):
    """
    Exception raised when a step's adapter configuration is invalid.

    Attributes:
        code: MISSING_CONFIG when required fields are absent, INVALID_CONFIG otherwise

    Context should include:
        - step_key: Key of the step being configured
        - adapter_code: Adapter the config was checked against
        - field_errors: Field-level error details
    """

    def __init__(
        self,
        message: str,
        code: str = "INVALID_CONFIG",
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None
    ):
        super().__init__(message, context, original_exception)
        self.code = code
        self.context["code"] = code


# ============================================================================
# Registry Errors
# ============================================================================

class AdapterRegistrationError(NonRetryableError):
    """
    Exception raised when an adapter cannot be registered.

    Context should include:
        - role: Adapter role
        - adapter_code: Offending adapter code
    """
    pass


class AdapterNotFoundError(NonRetryableError):
    """No adapter is registered under the requested (role, code)."""
    pass


# ============================================================================
# Adapter Errors
# ============================================================================

class AdapterError(PipelineException):
    """
    Base exception for failures raised by adapter calls.

    Adapters raise TransientAdapterError or FatalAdapterError to state
    whether the engine may retry the call.
    """
    pass


class TransientAdapterError(RetryableError, AdapterError):
    """Adapter failure that may succeed when retried."""
    pass


class FatalAdapterError(NonRetryableError, AdapterError):
    """Adapter failure that will not succeed when retried."""
    pass


class StepTimeoutError(RetryableError, AdapterError):
    """
    An adapter invocation (or hook) exceeded the step's timeout.

    Context should include:
        - step_key: Key of the timed-out step
        - timeout_ms: Configured timeout
    """
    pass


# ============================================================================
# Runtime Errors
# ============================================================================

class RateLimitExceeded(PipelineException):
    """
    Raised when a rate-limited resource is exhausted.

    The caller must back off; this is not a pipeline failure.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[BaseException] = None,
        retry_after_ms: Optional[float] = None,
        reset_at: Optional[float] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after_ms = retry_after_ms
        self.reset_at = reset_at
        if retry_after_ms is not None:
            self.context["retry_after_ms"] = retry_after_ms


class DeadLetterError(PipelineException):
    """
    Terminal error attached to a record sent to the dead-letter sink.

    Context should include:
        - step_key: Step that gave up on the record
        - record_id: Identity of the record (if any)
        - attempts: Number of attempts made
    """
    pass


class CheckpointError(PipelineException):
    """
    Exception raised when checkpoint persistence fails.

    Context should include:
        - pipeline_code: Pipeline owning the checkpoint
        - step_key: Step owning the checkpoint
        - operation: Operation that failed (load, flush, clear)
    """
    pass


class HookDeliveryError(PipelineException):
    """A hook handler could not deliver an event."""
    pass


class PipelineAbortedError(PipelineException):
    """A step failed under the ABORT error strategy."""
    pass
