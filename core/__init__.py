"""
Core utilities and configuration for the pipeline engine.

This package provides foundational components used throughout the engine:

Modules:
    config: Engine configuration and environment variable management
    database: Async database session factory for checkpoint persistence
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities

Usage:
    from core.config import settings
    from core.database import create_session_factory
    from core.exceptions import AdapterError, StepTimeoutError
    from core.logging import setup_logging

Example:
    # Initialize logging
    setup_logging()

    # Build a session factory for the SQL checkpoint store
    session_factory = create_session_factory()
"""

__all__ = [
    "settings",
    "create_session_factory",
    "setup_logging",
    # Exceptions
    "PipelineException",
    "PipelineValidationError",
    "CycleDetectedError",
    "UnreachableStepError",
    "ConfigValidationError",
    "AdapterRegistrationError",
    "AdapterNotFoundError",
    "AdapterError",
    "TransientAdapterError",
    "FatalAdapterError",
    "StepTimeoutError",
    "RateLimitExceeded",
    "DeadLetterError",
    "CheckpointError",
    "HookDeliveryError",
    "PipelineAbortedError",
    "RetryableError",
    "NonRetryableError",
]
