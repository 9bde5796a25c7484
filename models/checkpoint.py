from sqlalchemy import Column, Integer, String, DateTime, Index
from datetime import datetime
from models.base import Base, JSONType


class PipelineCheckpoint(Base):
    """
    Durable per-step checkpoint state for resumable extraction.

    Purpose:
    - Resume EXTRACT steps from their last persisted position
    - Avoid re-fetching data already seen by an interrupted run

    Design:
    - One row per (pipeline, step)
    - checkpoint_data holds the step's JSON object as written by the executor
    - run_id records which run last flushed the row
    """
    __tablename__ = "pipeline_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # Ownership
    pipeline_code = Column(String(100), nullable=False)
    step_key = Column(String(100), nullable=False)

    # Checkpoint data
    checkpoint_data = Column(JSONType, nullable=False, default=dict)
    run_id = Column(String(64), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Constraints
    __table_args__ = (
        Index("idx_checkpoint_pipeline_step", "pipeline_code", "step_key", unique=True),
    )
