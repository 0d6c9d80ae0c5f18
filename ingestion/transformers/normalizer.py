"""
Transform raw records into normalized entity graphs.

One transformer per raw record variant. transform() returns the entities
to write (an empty list when there is nothing to change) or raises
RecordSkipped when the single record cannot be used.
"""

import hashlib
import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Tuple
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from ingestion.extractors.api_extractor import PaginatedAPISource
from ingestion.filters.dedup import DedupFilter
from ingestion.media import MediaStore
from ingestion.state import NaturalKey
from ingestion.transformers.categories import CategoryResolver
from ingestion.transformers.sizes import normalize_sizes
from models.base import ImageType, TrackingStatus, TrackingRegion
from models.catalog import MasterProductType
from schemas.records import (
    ApiProductRecord, ListingItemRecord, PageProductDetail, ReviewDetail,
    TrackingRecord, ProductRowRecord, CollectionPicture
)
from schemas.entities import (
    SupplierEntity, ProductEntity, ImageEntity, ReviewEntity, ReviewImageEntity,
    TrackingEntity, TrackingDetailEntity, ProductPatch, ProductImageSet
)
from core.config import settings
from core.exceptions import RecordSkipped, DatabaseConnectionError, ResourceNotFoundError
import logging

logger = logging.getLogger(__name__)

SKU_SEPARATOR = re.compile(r"[\s-]+")
CENT = Decimal("0.01")


# ============================================================================
# Field rules
# ============================================================================

def split_sku(value: str) -> str:
    """
    Parent SKU of a variant SKU.

    The value is split on whitespace or hyphens; with more than one token
    the first token is the parent, otherwise the whole value is.
    """
    value = value.strip()
    tokens = [t for t in SKU_SEPARATOR.split(value) if t]
    return tokens[0] if len(tokens) > 1 else value


def cents_to_decimal(cents: Optional[int]) -> Optional[Decimal]:
    """Integer cents to a two-place Decimal amount."""
    if cents is None:
        return None
    return (Decimal(int(cents)) / 100).quantize(CENT, rounding=ROUND_HALF_UP)


def review_key(sku: str, date_text: Optional[str], comment: str) -> str:
    return hashlib.sha1(f"{sku}|{date_text or ''}|{comment}".encode("utf-8")).hexdigest()


def pseudonym(key: str, length: int = 5) -> str:
    """Deterministic display name for an anonymous reviewer."""
    letters = "".join(chr(ord("a") + int(key[i * 2:i * 2 + 2], 16) % 26) for i in range(length))
    return letters.capitalize()


def star_from_width(width: Optional[str]) -> Optional[float]:
    """Rating bar width ("width: 80%") to stars out of 5."""
    if not width:
        return None
    match = re.search(r"(\d+(?:\.\d+)?)\s*%", width)
    if not match:
        return None
    return round(min(float(match.group(1)), 100.0) / 20, 1)


def parse_event_date(text: Optional[str]) -> Optional[date]:
    if not text:
        return None
    text = text.strip()
    for fmt in ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M", "%Y-%m-%d", "%d %b %Y %H:%M", "%b %d, %Y"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text[:10]).date()
    except ValueError:
        return None


class RecordTransformer(ABC):
    """Maps one raw record variant to entities."""

    @abstractmethod
    async def transform(self, record: Any) -> List[Any]:
        pass

    async def aclose(self) -> None:
        return None


# ============================================================================
# Catalog API products
# ============================================================================

class ApiProductTransformer(RecordTransformer):
    """
    Catalog API hit -> ProductEntity with its main image.

    The brand becomes the category. The main image is only downloaded when
    the stored product does not already have one.
    """

    ATTRIBUTE_FIELDS = (
        "slug", "color", "designer", "details", "release_date", "midsole",
        "nickname", "upper_material", "silhouette", "collection_slugs",
    )

    def __init__(
        self,
        categories: CategoryResolver,
        media: MediaStore,
        products: DedupFilter,
        main_images: DedupFilter,
        source_url: Optional[str] = None
    ):
        self.categories = categories
        self.media = media
        self.products = products
        self.main_images = main_images
        self.source_url = (source_url or settings.CATALOG_SOURCE_URL).rstrip("/")

    async def _main_image(self, record: ApiProductRecord, parent_sku: str) -> List[ImageEntity]:
        if not record.original_picture_url:
            return []

        product_id = await self.products.lookup_id(
            NaturalKey(source_name=record.source_name, external_id=record.external_id, sku=record.sku)
        )
        if product_id is not None and await self.main_images.should_skip(
            NaturalKey(product_id=product_id, image_type=ImageType.MAIN)
        ):
            return []

        ref = await self.media.save(record.original_picture_url, prefix=parent_sku)
        if ref is None:
            return []
        return [ImageEntity(
            image_type=ImageType.MAIN,
            url=ref.local_name,
            thumb_url=ref.local_name,
            source_url=ref.source_url,
        )]

    async def transform(self, record: ApiProductRecord) -> List[ProductEntity]:
        parent_sku = split_sku(record.sku)
        brand = record.brand_name.lower() if record.brand_name else None
        category_id = await self.categories.resolve(brand)

        attributes = {f: getattr(record, f) for f in self.ATTRIBUTE_FIELDS if getattr(record, f)}
        try:
            product = ProductEntity(
                source_name=record.source_name,
                external_id=record.external_id,
                sku=record.sku,
                parent_sku=parent_sku,
                name=record.name,
                category_id=category_id,
                source_url=f"{self.source_url}/{record.slug}" if record.slug else None,
                description=record.story_html,
                gender=record.single_gender,
                attributes=attributes or None,
                price=cents_to_decimal(record.retail_price_cents_usd),
                sale_price=cents_to_decimal(record.lowest_price_cents_usd),
                images=await self._main_image(record, parent_sku),
            )
        except PydanticValidationError as e:
            raise RecordSkipped(f"product {record.external_id}: {e.error_count()} invalid field(s)")
        return [product]


class FeatureImageTransformer(RecordTransformer):
    """
    Stored catalog product -> its feature images.

    The recommendation collections of the product's template list one
    web_picture per angle; each is downloaded and attached to the stored
    product as a FEATURE image. A template the endpoint does not know, or
    one whose pictures all fail to download, is skipped.
    """

    def __init__(self, collections: PaginatedAPISource, media: MediaStore):
        self.collections = collections
        self.media = media

    def _picture_urls(self, items: List[Any], record: ProductRowRecord) -> List[str]:
        urls: List[str] = []
        for index, item in enumerate(items):
            try:
                url = CollectionPicture(**item).picture_url if isinstance(item, dict) else None
            except PydanticValidationError:
                url = None
            if url is None:
                logger.debug(f"Template {record.external_id}: collection entry {index} has no picture")
            elif url not in urls:
                urls.append(url)
        return urls

    async def transform(self, record: ProductRowRecord) -> List[ProductImageSet]:
        try:
            items = await self.collections.lookup(productTemplateId=record.external_id)
        except ResourceNotFoundError:
            raise RecordSkipped(f"template {record.external_id}: no collections")

        images = []
        for url in self._picture_urls(items, record):
            ref = await self.media.save(url, prefix=record.external_id)
            if ref is not None:
                images.append(ImageEntity(
                    image_type=ImageType.FEATURE,
                    url=ref.local_name,
                    thumb_url=ref.local_name,
                    source_url=ref.source_url,
                ))

        if not images:
            raise RecordSkipped(f"product {record.id}: no feature image could be stored")
        logger.info(f"Template {record.external_id}: {len(images)} feature image(s) for product {record.id}")
        return [ProductImageSet(product_id=record.id, images=images)]


# ============================================================================
# Rendered store products
# ============================================================================

class PageProductTransformer(RecordTransformer):
    """
    Listing item -> one ProductEntity per SKU variant.

    Opens the detail page through the source (secondary fetch), downloads
    the variant main images, the feature images (attached to the first
    variant only) and the review images.
    """

    def __init__(self, source, categories: CategoryResolver, media: MediaStore):
        self.source = source
        self.categories = categories
        self.media = media

    def _supplier(self) -> Optional[SupplierEntity]:
        supplier = getattr(self.source, "supplier", None)
        if supplier is None:
            return None
        return SupplierEntity(source_name=self.source.source_name, **supplier.model_dump())

    async def _reviews(self, reviews: List[ReviewDetail]) -> List[ReviewEntity]:
        entities = []
        for review in reviews:
            key = review_key(review.sku, review.date, review.comment)
            images = []
            for url in review.image_urls:
                ref = await self.media.save(url)
                if ref is not None:
                    images.append(ReviewImageEntity(url=ref.local_name, thumb_url=ref.local_name, source_url=ref.source_url))
            entities.append(ReviewEntity(
                review_key=key,
                user_name=pseudonym(key),
                user_review=review.comment,
                star=star_from_width(review.rating_width),
                review_date=review.date,
                images=images,
            ))
        return entities

    async def transform(self, item: ListingItemRecord) -> List[ProductEntity]:
        raw = await self.source.fetch_detail(item)
        try:
            detail = PageProductDetail(**raw)
        except PydanticValidationError as e:
            fields = ",".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
            raise RecordSkipped(f"product {item.external_id}: invalid fields {fields}")

        category_id = await self.categories.resolve(detail.specifications.get("brand name"))
        supplier = self._supplier()

        feature_images = []
        for index, url in enumerate(detail.feature_image_urls):
            ref = await self.media.save(url, prefix=str(index))
            if ref is not None:
                feature_images.append(ImageEntity(
                    image_type=ImageType.FEATURE, url=ref.local_name,
                    thumb_url=ref.local_name, source_url=ref.source_url,
                ))

        single_variant = len(detail.variants) == 1
        products = []
        for index, variant in enumerate(detail.variants):
            images = []
            ref = await self.media.save(variant.main_image_url, prefix=variant.sku)
            if ref is not None:
                images.append(ImageEntity(
                    image_type=ImageType.MAIN, url=ref.local_name,
                    thumb_url=ref.local_name, source_url=ref.source_url,
                ))
            if index == 0:
                images.extend(feature_images)

            reviews = [r for r in detail.reviews if single_variant or r.sku == variant.sku]
            kind, sizes = normalize_sizes(variant.sizes)

            products.append(ProductEntity(
                source_name=detail.source_name,
                external_id=detail.external_id,
                sku=variant.sku,
                parent_sku=split_sku(variant.sku),
                name=detail.name,
                supplier=supplier,
                category_id=category_id,
                source_url=detail.url,
                description=detail.description,
                gender=detail.specifications.get("gender"),
                size=sizes or None,
                size_kind=kind.value if sizes else None,
                specification=detail.specifications or None,
                price=variant.price,
                sale_price=variant.sale_price,
                star_point=variant.star_point,
                like_number=variant.like_number,
                number_of_purchased=variant.number_of_purchased,
                quantity=variant.quantity,
                is_top=item.is_top,
                images=images,
                reviews=await self._reviews(reviews),
            ))

        return products


# ============================================================================
# Tracking
# ============================================================================

STATUS_PREFIXES: Tuple[Tuple[str, TrackingStatus], ...] = (
    ("Undelivered", TrackingStatus.UNDELIVERED),
    ("Delivered", TrackingStatus.DELIVERED),
    ("In transit", TrackingStatus.IN_TRANSIT),
    ("Pick up", TrackingStatus.PICK_UP),
)


def map_tracking_status(text: str) -> Optional[TrackingStatus]:
    for prefix, status in STATUS_PREFIXES:
        if text.startswith(prefix):
            return status
    return None


class TrackingTransformer(RecordTransformer):
    """Tracking page state -> TrackingEntity with its carrier events."""

    async def transform(self, record: TrackingRecord) -> List[TrackingEntity]:
        if record.status_text.startswith("Not found"):
            raise RecordSkipped(f"{record.tracking_code}: not found at carrier")

        status = map_tracking_status(record.status_text)
        if status is None:
            raise RecordSkipped(f"{record.tracking_code}: unknown status '{record.status_text}'")

        total_days = None
        if status == TrackingStatus.DELIVERED:
            match = re.search(r"\d+", record.status_text)
            total_days = int(match.group(0)) if match else 0

        # Events are listed newest first; the oldest origin event dates the order
        order_date = parse_event_date(record.origin_events[-1].time) if record.origin_events else None

        details = [
            TrackingDetailEntity(event_time=e.time, status_text=e.text, region=TrackingRegion.DESTINATION)
            for e in record.destination_events
        ] + [
            TrackingDetailEntity(event_time=e.time, status_text=e.text, region=TrackingRegion.ORIGIN)
            for e in record.origin_events
        ]

        return [TrackingEntity(
            tracking_code=record.tracking_code,
            order_id=record.order_id,
            site=record.site,
            status=status,
            original_region=record.original_region,
            destination_region=record.destination_region,
            current_process=record.current_process,
            total_days=total_days,
            order_date=order_date,
            details=details,
        )]


# ============================================================================
# Maintenance
# ============================================================================

class SizeTransformer(RecordTransformer):
    """Re-normalize the stored size list of a product."""

    async def transform(self, record: ProductRowRecord) -> List[ProductPatch]:
        if not record.size:
            return []
        kind, sizes = normalize_sizes(record.size)
        if sizes == record.size and record.size_kind == kind.value:
            return []
        return [ProductPatch(
            source_name=record.source_name,
            external_id=record.external_id,
            sku=record.sku,
            values={"size": sizes, "size_kind": kind.value},
        )]


class ProductTypeTransformer(RecordTransformer):
    """
    Classify a product by name against the m_types keyword lists.

    The first type (by id) with a keyword contained in the lower-cased
    product name wins. Types are loaded once per transformer.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self._types: Optional[List[Tuple[int, re.Pattern]]] = None

    async def load_types(self) -> List[Tuple[int, re.Pattern]]:
        if self._types is None:
            try:
                async with self.session_factory() as session:
                    result = await session.execute(select(MasterProductType).order_by(MasterProductType.id))
                    rows = result.scalars().all()
            except SQLAlchemyError as e:
                raise DatabaseConnectionError(
                    "Failed to load product types",
                    context={"operation": "SELECT", "table_name": "m_types"},
                    original_exception=e
                )
            self._types = []
            for row in rows:
                keywords = [str(k).lower() for k in (row.keywords or []) if str(k).strip()]
                if keywords:
                    self._types.append((row.id, re.compile("|".join(re.escape(k) for k in keywords))))
        return self._types

    async def transform(self, record: ProductRowRecord) -> List[ProductPatch]:
        name = record.name.lower()
        for type_id, pattern in await self.load_types():
            if pattern.search(name):
                if record.product_type_id == type_id:
                    return []
                return [ProductPatch(
                    source_name=record.source_name,
                    external_id=record.external_id,
                    sku=record.sku,
                    values={"product_type_id": type_id},
                )]
        logger.debug(f"No product type matches '{record.name}'")
        return []
