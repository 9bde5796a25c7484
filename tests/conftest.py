"""
Pytest configuration and fixtures
"""

import asyncio
from collections import defaultdict
from typing import Any, AsyncGenerator, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker

from core.database import create_engine, create_session_factory
from core.exceptions import FatalAdapterError, TransientAdapterError
from engine.adapters import (
    AdapterConfig,
    ExecutionContext,
    ExtractBatch,
    Extractor,
    Loader,
    LoadOp,
    LoadResult,
    Operator,
    Sink,
    WriteResult,
)
from engine.registry import AdapterRegistry
from models.base import Base


# ============================================================================
# Test adapters
# ============================================================================

class ListSourceConfig(AdapterConfig):
    page_size: int = 2


class ListExtractor(Extractor):
    """Serves `records` page by page; the checkpoint is the next offset"""

    code = "list-source"
    config_model = ListSourceConfig
    paginated = True

    def __init__(self, records: List[Dict[str, Any]]):
        self.records = records
        self.pulls = 0
        self.fail_at_offset: Optional[int] = None

    async def pull(self, config, checkpoint, context: ExecutionContext) -> ExtractBatch:
        offset = (checkpoint or {}).get("offset", 0)
        if self.fail_at_offset is not None and offset >= self.fail_at_offset:
            raise FatalAdapterError(f"source unavailable at offset {offset}")
        self.pulls += 1
        page = self.records[offset:offset + config.page_size]
        next_offset = offset + len(page)
        return ExtractBatch(
            records=[dict(r) for r in page],
            checkpoint={"offset": next_offset},
            has_more=next_offset < len(self.records)
        )


class FailingExtractor(Extractor):
    code = "failing-source"

    async def pull(self, config, checkpoint, context):
        raise FatalAdapterError("upstream rejected credentials")


class PriceFilterConfig(AdapterConfig):
    min_price: float = 0


class PriceFilter(Operator):
    """Drops records priced at or below min_price"""

    code = "price-filter"
    config_model = PriceFilterConfig
    pure = True

    async def apply(self, record, config, context):
        if record.get("price", 0) <= config.min_price:
            return None
        record["priced"] = True
        return record


class BrokenOperator(Operator):
    """Fails every record flagged `bad`"""

    code = "broken"

    async def apply(self, record, config, context):
        if record.get("bad"):
            raise FatalAdapterError(f"cannot transform {record.get('id')}")
        return record


class FlakyOperator(Operator):
    """Fails each record `failures` times before passing it through"""

    code = "flaky"

    def __init__(self, failures: int = 2):
        self.failures = failures
        self.calls: Dict[str, int] = defaultdict(int)

    async def apply(self, record, config, context):
        self.calls[record["id"]] += 1
        if self.calls[record["id"]] <= self.failures:
            raise TransientAdapterError("connection reset")
        return record


class SlowConfig(AdapterConfig):
    delay_ms: int = 200


class SlowOperator(Operator):
    """Sleeps per record; `peak` is the most calls seen in flight at once"""

    code = "slow"
    config_model = SlowConfig

    def __init__(self):
        self.in_flight = 0
        self.peak = 0

    async def apply(self, record, config, context):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(config.delay_ms / 1000)
        finally:
            self.in_flight -= 1
        return record


class MemoryLoaderConfig(AdapterConfig):
    table: str


class MemoryLoader(Loader):
    """Upserts records by id into a dict"""

    code = "memory"
    config_model = MemoryLoaderConfig

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}

    async def load(self, record, config, context) -> LoadResult:
        key = f"{config.table}:{record['id']}"
        op = LoadOp.UPDATE if key in self.rows else LoadOp.CREATE
        self.rows[key] = record
        return LoadResult(op=op, entity_id=key)


class MemorySink(Sink):
    code = "memory-sink"

    def __init__(self):
        self.batches: List[List[Dict[str, Any]]] = []

    async def write(self, records, config, context) -> WriteResult:
        self.batches.append(records)
        return WriteResult(item_count=len(records), content_type="application/json")

    @property
    def written(self) -> List[Dict[str, Any]]:
        return [r for batch in self.batches for r in batch]


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def products():
    """Catalogue records; two of them carry no usable price"""
    return [
        {"id": "p1", "name": "Desk Lamp", "price": 10},
        {"id": "p2", "name": "Gift Card", "price": 0},
        {"id": "p3", "name": "Office Chair", "price": 25},
        {"id": "p4", "name": "Refund", "price": -3},
        {"id": "p5", "name": "Standing Desk", "price": 40},
    ]


@pytest.fixture
def extractor(products):
    return ListExtractor(products)


@pytest.fixture
def loader():
    return MemoryLoader()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def flaky():
    return FlakyOperator(failures=2)


@pytest.fixture
def slow():
    return SlowOperator()


@pytest.fixture
def registry(extractor, loader, sink, flaky, slow):
    """Registry holding one instance of every test adapter"""
    registry = AdapterRegistry()
    registry.register(extractor)
    registry.register(FailingExtractor())
    registry.register(PriceFilter())
    registry.register(BrokenOperator())
    registry.register(flaky)
    registry.register(slow)
    registry.register(loader)
    registry.register(sink)
    return registry


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite engine with the checkpoint table created"""
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkpoints.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine) -> AsyncGenerator[async_sessionmaker, None]:
    """Session factory for the SQL checkpoint store"""
    yield create_session_factory(engine=test_engine)
