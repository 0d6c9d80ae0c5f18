"""
Raw record variants produced by source adapters.

Each variant carries a `kind` tag and declares which fields must be present.
A payload that does not satisfy its variant is rejected at the source and
never reaches the transform stage.
"""

from abc import ABC, abstractmethod
from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any, Literal, Union
from decimal import Decimal
from ingestion.state import NaturalKey


class RawRecord(BaseModel, ABC):
    """Common base: every raw record knows its source and natural key."""
    source_name: str = Field(..., min_length=1, max_length=100)

    @property
    @abstractmethod
    def natural_key(self) -> NaturalKey:
        pass

    class Config:
        extra = "ignore"


# ============================================================================
# Paginated catalog API
# ============================================================================

class ApiProductRecord(RawRecord):
    """
    One hit of the catalog search API.

    Required: product_template_id, sku, name. Prices are integer cents.
    """
    kind: Literal["api_product"] = "api_product"

    product_template_id: Union[int, str]
    sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    brand_name: Optional[str] = None
    slug: Optional[str] = None
    story_html: Optional[str] = None
    original_picture_url: Optional[str] = None
    lowest_price_cents_usd: Optional[int] = None
    retail_price_cents_usd: Optional[int] = None

    # Descriptive attributes kept as JSON on the product
    single_gender: Optional[str] = None
    color: Optional[str] = None
    designer: Optional[str] = None
    details: Optional[str] = None
    release_date: Optional[str] = None
    midsole: Optional[str] = None
    nickname: Optional[str] = None
    upper_material: Optional[str] = None
    silhouette: Optional[str] = None
    collection_slugs: List[str] = Field(default_factory=list)

    @validator("sku", "name")
    def strip_required(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @validator("collection_slugs", pre=True)
    def clean_slugs(cls, v):
        if v is None:
            return []
        return v

    @property
    def external_id(self) -> str:
        return str(self.product_template_id)

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id)


class CollectionPicture(BaseModel):
    """One entry of the recommendation collections of a product template."""
    web_picture: str = Field(..., min_length=1)

    @property
    def picture_url(self) -> str:
        # Query string only selects a resize preset
        return self.web_picture.split("?", 1)[0]

    class Config:
        extra = "ignore"


# ============================================================================
# Rendered store pages
# ============================================================================

class ListingItemRecord(RawRecord):
    """An item link found on a store listing page."""
    kind: Literal["listing_item"] = "listing_item"

    external_id: str = Field(..., pattern=r"^\d+$")
    url: str
    supplier_external_id: str
    page_index: int = Field(..., ge=0)
    is_top: bool = False

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id)


class SupplierDetail(BaseModel):
    external_id: str
    name: Optional[str] = None
    home_page_url: Optional[str] = None
    all_product_url: Optional[str] = None
    top_rated_product_url: Optional[str] = None
    positive_number: Optional[str] = None


class VariantDetail(BaseModel):
    """One purchasable SKU as shown on the product page."""
    sku: str = Field(..., min_length=1)
    price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    quantity: Optional[int] = None
    star_point: Optional[float] = None
    like_number: Optional[int] = None
    number_of_purchased: Optional[int] = None
    main_image_url: Optional[str] = None
    sizes: List[str] = Field(default_factory=list)


class ReviewDetail(BaseModel):
    sku: str
    rating_width: Optional[str] = None  # star bar width, e.g. "80%"
    comment: str = Field(..., min_length=1)
    date: Optional[str] = None
    image_urls: List[str] = Field(default_factory=list)


class PageProductDetail(RawRecord):
    """
    Everything read from a product detail page (secondary fetch).

    Required: name and at least one variant.
    """
    kind: Literal["page_product"] = "page_product"

    external_id: str
    url: str
    name: str = Field(..., min_length=1)
    variants: List[VariantDetail] = Field(..., min_length=1)
    feature_image_urls: List[str] = Field(default_factory=list)
    specifications: Dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None
    reviews: List[ReviewDetail] = Field(default_factory=list)

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id)


# ============================================================================
# Tracking pages
# ============================================================================

class TrackingEvent(BaseModel):
    time: Optional[str] = None
    text: str


class TrackingRecord(RawRecord):
    """
    Tracking page state for one order.

    Required: the order row id, its tracking code and the status title shown
    on the page.
    """
    kind: Literal["tracking"] = "tracking"

    order_tracking_id: int
    tracking_code: str = Field(..., min_length=1)
    order_id: Optional[str] = None
    site: Optional[str] = None
    status_text: str = Field(..., min_length=1)
    original_region: Optional[str] = None
    destination_region: Optional[str] = None
    current_process: Optional[str] = None
    origin_events: List[TrackingEvent] = Field(default_factory=list)
    destination_events: List[TrackingEvent] = Field(default_factory=list)

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(tracking_code=self.tracking_code)


# ============================================================================
# Stored products (maintenance pipelines)
# ============================================================================

class ProductRowRecord(RawRecord):
    """A stored product read back for re-normalization."""
    kind: Literal["product_row"] = "product_row"

    id: int
    external_id: str
    sku: str
    name: str
    gender: Optional[str] = None
    size: Optional[List[str]] = None
    size_kind: Optional[str] = None
    category_name: Optional[str] = None
    product_type_id: Optional[int] = None

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id, sku=self.sku)


AnyRawRecord = Union[
    ApiProductRecord, ListingItemRecord, PageProductDetail, TrackingRecord, ProductRowRecord
]
