"""
Named pipelines: each wires a source, its dedup filter, transformer and the
shared writer/checkpoint/notification plumbing into a PipelineDriver.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy.ext.asyncio import async_sessionmaker
from ingestion.base import SourceAdapter
from ingestion.checkpoint import CheckpointStore, RunTracker
from ingestion.extractors.api_extractor import build_catalog_source, build_collections_source
from ingestion.extractors.page_extractor import RenderedPageSource
from ingestion.extractors.table_extractor import ProductTableSource
from ingestion.extractors.tracking_extractor import TrackingPageSource
from ingestion.filters.dedup import DedupFilter
from ingestion.loaders.postgres_loader import BatchWriter, WriteResult
from ingestion.media import MediaStore
from ingestion.runner import PipelineDriver
from ingestion.transformers.categories import CategoryResolver
from ingestion.transformers.normalizer import (
    ApiProductTransformer, FeatureImageTransformer, PageProductTransformer, TrackingTransformer,
    SizeTransformer, ProductTypeTransformer
)
from ingestion.state import NaturalKey
from models.base import ImageType, TrackingStatus
from models.catalog import Product, ProductImage
from models.tracking import OrderTracking
from schemas.entities import TrackingEntity
from schemas.records import ProductRowRecord
from core.config import settings
from core.database import async_session_maker
from core.notifications import Notifier
import logging

logger = logging.getLogger(__name__)

DEFAULT_STORE_ID = "1184043"
CATALOG_SOURCE_NAME = "goat"


@dataclass
class PipelineOptions:
    """Run options shared by every pipeline (mirrors the CLI flags)."""
    force: bool = False
    target: Optional[str] = None
    page: Optional[int] = None
    store_id: str = DEFAULT_STORE_ID
    reviews: bool = False
    description: bool = False


@dataclass
class Pipeline:
    """A ready-to-run driver plus the resources to release afterwards."""
    name: str
    driver: PipelineDriver
    resources: List[Any] = field(default_factory=list)

    async def run(self) -> Dict[str, Any]:
        try:
            return await self.driver.run()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        for resource in self.resources:
            await resource.aclose()


def _checkpoint_name(source: SourceAdapter, target: Optional[str]) -> str:
    # Targeted runs keep their own cursor so they never reset a full crawl
    return f"{source.source_name}:{target}" if target else source.source_name


def _driver(
    source: SourceAdapter,
    transformer,
    session_factory: async_sessionmaker,
    options: PipelineOptions,
    notifier: Optional[Notifier],
    dedup: Optional[DedupFilter] = None,
    initial_cursor: Optional[int] = None,
    sleep: Callable = asyncio.sleep,
    after_commit=None,
    **driver_kwargs: Any
) -> PipelineDriver:
    checkpoint_name = _checkpoint_name(source, options.target)
    return PipelineDriver(
        source=source,
        transformer=transformer,
        writer=BatchWriter(session_factory),
        checkpoints=CheckpointStore(
            session_factory,
            source_type=source.source_type,
            source_name=checkpoint_name,
            checkpoint_type=source.checkpoint_type,
            initial_cursor=source.initial_cursor if initial_cursor is None else initial_cursor,
        ),
        dedup=dedup,
        tracker=RunTracker(session_factory, source.source_type, checkpoint_name),
        notifier=notifier,
        sleep=sleep,
        after_commit=after_commit,
        **driver_kwargs
    )


# ============================================================================
# Crawls
# ============================================================================

def build_catalog_api(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    source = build_catalog_source(query=options.target or "")
    media = MediaStore()
    transformer = ApiProductTransformer(
        categories=CategoryResolver(session_factory),
        media=media,
        products=DedupFilter(session_factory, Product),
        main_images=DedupFilter(session_factory, ProductImage),
    )
    driver = _driver(
        source, transformer, session_factory, options, notifier,
        dedup=DedupFilter(session_factory, Product, enabled=not options.force),
        initial_cursor=options.page,
        **kwargs
    )
    return Pipeline("catalog-api", driver, [source, media])


def feature_image_key(record: ProductRowRecord) -> NaturalKey:
    return NaturalKey(product_id=record.id, image_type=ImageType.FEATURE)


def build_catalog_images(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    criteria = [Product.source_name == CATALOG_SOURCE_NAME]
    if options.target:
        criteria.append(Product.external_id == options.target)
    source = ProductTableSource(
        session_factory,
        source_name="goat-images",
        criteria=criteria,
        pacing_seconds=settings.API_PACING_SECONDS,
    )
    collections = build_collections_source()
    media = MediaStore()
    driver = _driver(
        source, FeatureImageTransformer(collections, media), session_factory, options, notifier,
        dedup=DedupFilter(session_factory, ProductImage, key=feature_image_key, enabled=not options.force),
        **kwargs
    )
    return Pipeline("catalog-images", driver, [collections, media])


def build_catalog_store(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    source = RenderedPageSource(
        store_id=options.store_id,
        item_id=options.target,
        include_reviews=options.reviews,
        include_description=options.description,
    )
    media = MediaStore()
    transformer = PageProductTransformer(source, CategoryResolver(session_factory), media)
    driver = _driver(
        source, transformer, session_factory, options, notifier,
        dedup=DedupFilter(session_factory, Product, enabled=not options.force),
        initial_cursor=options.page,
        **kwargs
    )
    return Pipeline("catalog-store", driver, [source, media])


def delivered_notifier(notifier: Optional[Notifier]):
    """after_commit hook announcing orders that reached DELIVERED."""

    async def hook(entities: List[Any], result: WriteResult) -> None:
        if notifier is None:
            return
        for entity in entities:
            if isinstance(entity, TrackingEntity) and entity.delivered:
                await notifier.notify(
                    text=f"Order {entity.order_id or '-'} ({entity.tracking_code}) delivered in {entity.total_days} days",
                    title="Order delivered",
                    severity="success"
                )

    return hook


def build_tracking(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    source = TrackingPageSource(session_factory, tracking_code=options.target)
    driver = _driver(
        source, TrackingTransformer(), session_factory, options, notifier,
        dedup=DedupFilter(
            session_factory, OrderTracking,
            criteria=[OrderTracking.status == int(TrackingStatus.DELIVERED)],
            enabled=not options.force,
        ),
        after_commit=delivered_notifier(notifier),
        **kwargs
    )
    return Pipeline("tracking", driver, [source])


# ============================================================================
# Maintenance
# ============================================================================

def build_fix_sizes(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    criteria = [Product.size.isnot(None)]
    if options.target:
        criteria.append(Product.id == int(options.target))
    source = ProductTableSource(session_factory, source_name="fix-sizes", criteria=criteria)
    driver = _driver(source, SizeTransformer(), session_factory, options, notifier, **kwargs)
    return Pipeline("fix-sizes", driver)


def build_product_types(session_factory, options: PipelineOptions, notifier=None, **kwargs) -> Pipeline:
    criteria = [] if options.force else [Product.product_type_id.is_(None)]
    if options.target:
        criteria.append(Product.id == int(options.target))
    source = ProductTableSource(session_factory, source_name="product-types", criteria=criteria)
    driver = _driver(source, ProductTypeTransformer(session_factory), session_factory, options, notifier, **kwargs)
    return Pipeline("product-types", driver)


PIPELINES = {
    "catalog-api": build_catalog_api,
    "catalog-store": build_catalog_store,
    "catalog-images": build_catalog_images,
    "tracking": build_tracking,
    "fix-sizes": build_fix_sizes,
    "product-types": build_product_types,
}


def build_pipeline(
    name: str,
    options: Optional[PipelineOptions] = None,
    session_factory: Optional[async_sessionmaker] = None,
    notifier: Optional[Notifier] = None,
    **kwargs: Any
) -> Pipeline:
    """
    Build a named pipeline.

    Args:
        name: One of PIPELINES
        options: Run options (defaults when omitted)
        session_factory: Session factory (the application's by default)
        notifier: Terminal-state notifier (webhook from settings by default)
        **kwargs: Passed through to PipelineDriver (sleep, max_retries, ...)
    """
    if name not in PIPELINES:
        raise ValueError(f"Unknown pipeline '{name}', expected one of {', '.join(PIPELINES)}")
    return PIPELINES[name](
        session_factory or async_session_maker,
        options or PipelineOptions(),
        notifier if notifier is not None else Notifier(),
        **kwargs
    )
