"""
Pytest configuration and fixtures
"""

import json
import re
import httpx
import pytest
import pytest_asyncio
from typing import Any, AsyncGenerator, Dict, List, Optional
from unittest.mock import Mock
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import build_engine, build_session_maker
from ingestion.checkpoint import CheckpointStore, RunTracker
from ingestion.extractors.api_extractor import PaginatedAPISource
from ingestion.filters.dedup import DedupFilter
from ingestion.loaders.postgres_loader import BatchWriter
from ingestion.media import MediaStore
from ingestion.runner import PipelineDriver
from ingestion.transformers.categories import CategoryResolver
from ingestion.transformers.normalizer import ApiProductTransformer
from models.base import Base, SourceType
from models.catalog import Product, ProductImage
import models  # noqa: F401  registers every table on Base.metadata


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite file database with every table created"""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    """Session factory shared by the pipeline components under test"""
    return build_session_maker(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for arranging and inspecting rows in tests"""
    async with session_factory() as session:
        yield session


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays instead of waiting"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def no_sleep():
    return RecordingSleep()


def make_hit(index: int, **overrides: Any) -> Dict[str, Any]:
    """One catalog search hit as the API returns it"""
    hit = {
        "product_template_id": 1000 + index,
        "sku": f"AB{index:04d}-100",
        "name": f"Air Runner {index}",
        "brand_name": "Nike",
        "slug": f"air-runner-{index}",
        "story_html": "<p>Classic runner</p>",
        "original_picture_url": None,
        "lowest_price_cents_usd": 12000 + index,
        "retail_price_cents_usd": 15000,
        "single_gender": "men",
        "color": "White",
        "designer": "Tinker Hatfield",
        "details": "White/Black",
        "release_date": "2020-01-01",
        "midsole": "Air",
        "nickname": "Runner",
        "upper_material": "Leather",
        "silhouette": "Air Max",
        "collection_slugs": ["runners"],
    }
    hit.update(overrides)
    return hit


@pytest.fixture
def api_hits() -> List[Dict[str, Any]]:
    """A full page of 50 catalog hits"""
    return [make_hit(i) for i in range(50)]


@pytest.fixture
def hit_factory():
    return make_hit


def page_of(request: httpx.Request) -> int:
    """Page number a catalog search request asks for (POST body or GET params)"""
    if request.method == "GET":
        return int(request.url.params.get("page", 0))
    match = re.search(r"(?:^|&)page=(\d+)", json.loads(request.content)["params"])
    return int(match.group(1))


@pytest.fixture
def requested_page():
    return page_of


@pytest_asyncio.fixture
async def catalog_driver(session_factory, no_sleep):
    """
    Factory for a catalog API driver wired to an in-process HTTP handler.

    Example:
        driver = catalog_driver(handler, source_kwargs={"max_page": 1}, max_retries=2)
        stats = await driver.run()
    """
    clients = []

    def build(handler, source_kwargs: Optional[Dict[str, Any]] = None, **driver_kwargs: Any) -> PipelineDriver:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        source_kwargs = {"pacing_seconds": 0, **(source_kwargs or {})}
        source = PaginatedAPISource(
            source_name="goat", api_url="https://search.test/query", client=client, **source_kwargs
        )
        transformer = ApiProductTransformer(
            categories=CategoryResolver(session_factory),
            media=Mock(spec=MediaStore),
            products=DedupFilter(session_factory, Product),
            main_images=DedupFilter(session_factory, ProductImage),
        )
        driver_kwargs.setdefault("sleep", no_sleep)
        driver_kwargs.setdefault("dedup", DedupFilter(session_factory, Product))
        driver_kwargs.setdefault("writer", BatchWriter(session_factory))
        driver_kwargs.setdefault(
            "checkpoints",
            CheckpointStore(session_factory, SourceType.API, "goat", checkpoint_type=source.checkpoint_type)
        )
        driver_kwargs.setdefault("tracker", RunTracker(session_factory, SourceType.API, "goat"))
        return PipelineDriver(source=source, transformer=transformer, **driver_kwargs)

    yield build

    for client in clients:
        await client.aclose()
