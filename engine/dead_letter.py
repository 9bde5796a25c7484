"""
Dead-letter sinks for records that exhausted retries or were quarantined
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from core.exceptions import DeadLetterError, describe_error

logger = logging.getLogger(__name__)


@dataclass
class DeadLetterEntry:
    """A record the pipeline gave up on, with the error that ended it"""
    pipeline_code: str
    run_id: str
    step_key: str
    record: Optional[Dict[str, Any]]
    error: DeadLetterError
    record_id: Optional[str] = None
    attempts: int = 1
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pipeline_code": self.pipeline_code,
            "run_id": self.run_id,
            "step_key": self.step_key,
            "record_id": self.record_id,
            "record": self.record,
            "attempts": self.attempts,
            "error": self.error.to_dict(),
            "created_at": self.created_at.isoformat(),
        }


def make_dead_letter_error(
    step_key: str,
    error: Optional[BaseException],
    record_id: Optional[str] = None,
    attempts: int = 1,
) -> DeadLetterError:
    """Wrap the final error of a record in a DeadLetterError"""
    reason = describe_error(error)["message"] if error else "record quarantined"
    return DeadLetterError(
        f"Record dead-lettered at step '{step_key}': {reason}",
        context={
            "step_key": step_key,
            "record_id": record_id,
            "attempts": attempts,
        },
        original_exception=error
    )


class DeadLetterSink(ABC):
    """Terminal storage for dead-lettered records"""

    @abstractmethod
    async def send(self, entry: DeadLetterEntry) -> None:
        pass


class InMemoryDeadLetterSink(DeadLetterSink):
    """Keeps entries in a list; useful for tests and single-run tooling"""

    def __init__(self):
        self.entries: List[DeadLetterEntry] = []

    async def send(self, entry: DeadLetterEntry) -> None:
        self.entries.append(entry)
        logger.warning(
            f"Dead-lettered record {entry.record_id or '<no id>'} "
            f"from step {entry.step_key} after {entry.attempts} attempt(s)",
            extra={"error_context": entry.error.to_dict()}
        )

    def for_step(self, step_key: str) -> List[DeadLetterEntry]:
        return [e for e in self.entries if e.step_key == step_key]

    def __len__(self) -> int:
        return len(self.entries)
