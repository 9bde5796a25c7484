"""
SQLAlchemy ORM models for database tables.

The engine persists a single table, used by the SQL checkpoint store:

Models:
    base: Base declarative class and the portable JSON column type
    checkpoint: Per-step checkpoint rows for resumable extraction

Database Schema:
    Models inherit from the Base declarative class. JSON payloads use
    JSONB on PostgreSQL and plain JSON on other dialects.

Usage:
    from models import Base, PipelineCheckpoint

Example:
    row = PipelineCheckpoint(
        pipeline_code="product-sync",
        step_key="fetch",
        checkpoint_data={"offset": 42}
    )
    session.add(row)
    await session.commit()
"""

from models.base import Base
from models.checkpoint import PipelineCheckpoint

__all__ = [
    "Base",
    "PipelineCheckpoint",
]
