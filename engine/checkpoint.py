"""
Checkpoint stores: per-step JSON state that lets EXTRACT steps resume.

The executor calls `set` after every extractor batch, which marks the
store dirty; the orchestrator flushes a dirty store when the run ends.
"""

import asyncio
import copy
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import CheckpointError
from models.checkpoint import PipelineCheckpoint

logger = logging.getLogger(__name__)

CheckpointData = Dict[str, Dict[str, Any]]


class CheckpointStore(ABC):
    """
    Per-step key-value checkpoint state.

    Values are copied on the way in and out, so a step can never mutate
    the stored state through a reference it holds.
    """

    def __init__(self, initial: Optional[CheckpointData] = None):
        self._data: CheckpointData = copy.deepcopy(initial) if initial else {}
        self._dirty_keys: Set[str] = set()

    def get(self, step_key: str) -> Optional[Dict[str, Any]]:
        value = self._data.get(step_key)
        return copy.deepcopy(value) if value is not None else None

    def set(self, step_key: str, value: Optional[Dict[str, Any]]) -> None:
        if value is None:
            self._data.pop(step_key, None)
        else:
            self._data[step_key] = copy.deepcopy(value)
        self._dirty_keys.add(step_key)

    def is_dirty(self) -> bool:
        return bool(self._dirty_keys)

    def mark_dirty(self, step_key: Optional[str] = None) -> None:
        """Flag a key (or every key) for the next flush"""
        if step_key is None:
            self._dirty_keys.update(self._data)
        else:
            self._dirty_keys.add(step_key)

    def snapshot(self) -> CheckpointData:
        return copy.deepcopy(self._data)

    @abstractmethod
    async def flush(self, run_id: Optional[str] = None) -> int:
        """Persist dirty keys; returns how many were written"""
        pass


class InMemoryCheckpointStore(CheckpointStore):
    """Checkpoint store without persistence; flushing only clears the dirty flag"""

    async def flush(self, run_id: Optional[str] = None) -> int:
        flushed = len(self._dirty_keys)
        self._dirty_keys.clear()
        return flushed


class SqlCheckpointStore(CheckpointStore):
    """
    Checkpoint store backed by the pipeline_checkpoints table.

    One row per (pipeline_code, step_key). Writes to the same step key are
    serialized by a per-key asyncio.Lock; different keys do not contend.
    """

    def __init__(self, session_factory: async_sessionmaker, pipeline_code: str):
        super().__init__()
        self.session_factory = session_factory
        self.pipeline_code = pipeline_code
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self) -> CheckpointData:
        """Read every persisted checkpoint of the pipeline into memory"""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(PipelineCheckpoint).where(
                        PipelineCheckpoint.pipeline_code == self.pipeline_code
                    )
                )
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to load checkpoints",
                context={"pipeline_code": self.pipeline_code, "operation": "load"},
                original_exception=e
            )

        self._data = {row.step_key: copy.deepcopy(row.checkpoint_data) for row in rows}
        self._dirty_keys.clear()
        logger.debug(f"Loaded {len(rows)} checkpoints for pipeline {self.pipeline_code}")
        return self.snapshot()

    async def flush(self, run_id: Optional[str] = None) -> int:
        flushed = 0
        for step_key in sorted(self._dirty_keys):
            async with self._locks[step_key]:
                await self._flush_key(step_key, run_id)
                self._dirty_keys.discard(step_key)
                flushed += 1
        if flushed:
            logger.info(f"Flushed {flushed} checkpoints for pipeline {self.pipeline_code}")
        return flushed

    async def _flush_key(self, step_key: str, run_id: Optional[str]) -> None:
        value = self._data.get(step_key)
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(PipelineCheckpoint).where(
                        PipelineCheckpoint.pipeline_code == self.pipeline_code,
                        PipelineCheckpoint.step_key == step_key
                    )
                )
                row = result.scalar_one_or_none()

                if value is None:
                    if row is not None:
                        await session.delete(row)
                elif row is None:
                    session.add(PipelineCheckpoint(
                        pipeline_code=self.pipeline_code,
                        step_key=step_key,
                        checkpoint_data=copy.deepcopy(value),
                        run_id=run_id
                    ))
                else:
                    row.checkpoint_data = copy.deepcopy(value)
                    row.run_id = run_id
                    row.updated_at = datetime.utcnow()

                await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to flush checkpoint",
                context={
                    "pipeline_code": self.pipeline_code,
                    "step_key": step_key,
                    "operation": "flush"
                },
                original_exception=e
            )

    async def clear(self, step_key: Optional[str] = None) -> None:
        """Remove persisted state for one step, or for the whole pipeline"""
        statement = delete(PipelineCheckpoint).where(
            PipelineCheckpoint.pipeline_code == self.pipeline_code
        )
        if step_key is not None:
            statement = statement.where(PipelineCheckpoint.step_key == step_key)

        try:
            async with self.session_factory() as session:
                await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to clear checkpoints",
                context={
                    "pipeline_code": self.pipeline_code,
                    "step_key": step_key,
                    "operation": "clear"
                },
                original_exception=e
            )

        if step_key is None:
            self._data.clear()
            self._dirty_keys.clear()
        else:
            self._data.pop(step_key, None)
            self._dirty_keys.discard(step_key)
