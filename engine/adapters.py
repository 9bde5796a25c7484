"""
Adapter contract: the typed interfaces every extractor, operator, loader
and writer implements to plug into the engine.

Each adapter declares a role, a code (unique within the role), a pydantic
config model used to validate a step's config before execution, and
capability flags:

    pure        operator with no side effects; safe to retry on the same input
    paginated   extractor that returns data over several pulls
    cancellable adapter call may be abandoned between batches
    streaming   adapter produces output incrementally
"""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from core.exceptions import ConfigValidationError
from schemas.pipeline import StepType

Record = Dict[str, Any]


class AdapterRole(str, enum.Enum):
    """Closed set of adapter roles"""
    EXTRACTOR = "EXTRACTOR"
    OPERATOR = "OPERATOR"
    VALIDATOR = "VALIDATOR"
    ENRICHER = "ENRICHER"
    LOADER = "LOADER"
    EXPORTER = "EXPORTER"
    FEED = "FEED"
    SINK = "SINK"


STEP_ROLES: Dict[StepType, AdapterRole] = {
    StepType.EXTRACT: AdapterRole.EXTRACTOR,
    StepType.TRANSFORM: AdapterRole.OPERATOR,
    StepType.VALIDATE: AdapterRole.VALIDATOR,
    StepType.ENRICH: AdapterRole.ENRICHER,
    StepType.LOAD: AdapterRole.LOADER,
    StepType.EXPORT: AdapterRole.EXPORTER,
    StepType.FEED: AdapterRole.FEED,
    StepType.SINK: AdapterRole.SINK,
}


class AdapterConfig(BaseModel):
    """
    Base for adapter config models.

    Subclasses declare the adapter-specific fields; unknown keys are
    rejected so typos surface as INVALID_CONFIG.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
    )

    adapter_code: Optional[str] = None


class AdapterDefinition(BaseModel):
    """Registry view of an adapter"""
    role: AdapterRole
    code: str
    version: str = "1.0.0"
    description: Optional[str] = None
    config_schema: Dict[str, Any] = {}
    pure: bool = False
    paginated: bool = False
    cancellable: bool = False
    streaming: bool = False


@dataclass
class ExecutionContext:
    """What an adapter knows about the invocation it is part of"""
    pipeline_code: str
    run_id: str
    step_key: str
    attempt: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)
    cancelled: Callable[[], bool] = lambda: False

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled()


# ============================================================================
# Adapter results
# ============================================================================

@dataclass
class ExtractBatch:
    """One pull from an extractor"""
    records: List[Record]
    checkpoint: Optional[Dict[str, Any]] = None
    has_more: bool = False


class LoadOp(str, enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"
    ERROR = "error"


@dataclass
class LoadResult:
    op: LoadOp
    entity_id: Optional[str] = None
    reason: Optional[str] = None


@dataclass
class WriteResult:
    item_count: int = 0
    bytes_written: Optional[int] = None
    content_type: Optional[str] = None


# ============================================================================
# Adapter base classes
# ============================================================================

class Adapter(ABC):
    """Abstract base for every adapter"""

    code: ClassVar[str] = ""
    role: ClassVar[AdapterRole]
    config_model: ClassVar[Type[AdapterConfig]] = AdapterConfig
    version: ClassVar[str] = "1.0.0"
    description: ClassVar[Optional[str]] = None

    pure: ClassVar[bool] = False
    paginated: ClassVar[bool] = False
    cancellable: ClassVar[bool] = False
    streaming: ClassVar[bool] = False

    @classmethod
    def schema(cls) -> Dict[str, Any]:
        """JSON schema of the adapter's config"""
        return cls.config_model.model_json_schema(by_alias=True)

    @classmethod
    def definition(cls) -> AdapterDefinition:
        return AdapterDefinition(
            role=cls.role,
            code=cls.code,
            version=cls.version,
            description=cls.description,
            config_schema=cls.schema(),
            pure=cls.pure,
            paginated=cls.paginated,
            cancellable=cls.cancellable,
            streaming=cls.streaming,
        )

    def parse_config(self, raw: Optional[Dict[str, Any]], step_key: Optional[str] = None) -> AdapterConfig:
        """
        Validate a step's raw config against the adapter's config model.

        Raises:
            ConfigValidationError: MISSING_CONFIG when a required field is
                absent, INVALID_CONFIG for any other violation
        """
        try:
            return self.config_model.model_validate(raw or {})
        except ValidationError as e:
            field_errors = [
                {
                    "field": ".".join(str(part) for part in err["loc"]),
                    "type": err["type"],
                    "message": err["msg"],
                }
                for err in e.errors()
            ]
            missing = any(err["type"] == "missing" for err in e.errors())
            code = "MISSING_CONFIG" if missing else "INVALID_CONFIG"
            raise ConfigValidationError(
                f"Config for adapter '{self.code}' is invalid",
                code=code,
                context={
                    "step_key": step_key,
                    "adapter_code": self.code,
                    "field_errors": field_errors,
                },
                original_exception=e,
            )


class Extractor(Adapter):
    """Pulls records from a source in successive batches"""

    role = AdapterRole.EXTRACTOR

    @abstractmethod
    async def pull(
        self,
        config: AdapterConfig,
        checkpoint: Optional[Dict[str, Any]],
        context: ExecutionContext,
    ) -> ExtractBatch:
        """
        Fetch the next batch.

        Args:
            config: Validated adapter config
            checkpoint: Last persisted checkpoint for the step, or None
            context: Invocation context

        Returns:
            ExtractBatch with the records, the updated checkpoint fragment
            and whether more batches remain
        """
        pass


class Operator(Adapter):
    """Transforms one record; returning None filters the record out"""

    role = AdapterRole.OPERATOR

    @abstractmethod
    async def apply(
        self,
        record: Record,
        config: AdapterConfig,
        context: ExecutionContext,
    ) -> Optional[Record]:
        pass


class RecordValidator(Operator):
    """Operator that passes valid records through and drops the rest"""

    role = AdapterRole.VALIDATOR
    pure = True


class Enricher(Operator):
    role = AdapterRole.ENRICHER


class Loader(Adapter):
    """Writes one record to a target system"""

    role = AdapterRole.LOADER

    @abstractmethod
    async def load(
        self,
        record: Record,
        config: AdapterConfig,
        context: ExecutionContext,
    ) -> LoadResult:
        pass


class Writer(Adapter):
    """Writes a whole batch: exporters, feeds and sinks"""

    role = AdapterRole.SINK

    @abstractmethod
    async def write(
        self,
        records: List[Record],
        config: AdapterConfig,
        context: ExecutionContext,
    ) -> WriteResult:
        pass


class Exporter(Writer):
    role = AdapterRole.EXPORTER


class FeedGenerator(Writer):
    role = AdapterRole.FEED


class Sink(Writer):
    role = AdapterRole.SINK


ROLE_INTERFACES: Dict[AdapterRole, Type[Adapter]] = {
    AdapterRole.EXTRACTOR: Extractor,
    AdapterRole.OPERATOR: Operator,
    AdapterRole.VALIDATOR: Operator,
    AdapterRole.ENRICHER: Operator,
    AdapterRole.LOADER: Loader,
    AdapterRole.EXPORTER: Writer,
    AdapterRole.FEED: Writer,
    AdapterRole.SINK: Writer,
}
