"""
Normalized entity graphs handed to the batch writer.

Parents own their children: a ProductEntity carries its images and reviews,
a ReviewEntity its images, a TrackingEntity its carrier events. The writer
walks each graph parent-first and resolves child foreign keys from the ids
it gets back for the parent.
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from decimal import Decimal
from datetime import date
from models.base import ImageType, TrackingStatus, TrackingRegion
from ingestion.state import NaturalKey


class SupplierEntity(BaseModel):
    source_name: str
    external_id: str
    name: Optional[str] = None
    home_page_url: Optional[str] = None
    all_product_url: Optional[str] = None
    top_rated_product_url: Optional[str] = None
    positive_number: Optional[str] = None

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id)


class ImageEntity(BaseModel):
    """Image file stored locally (url) with its external provenance (source_url)."""
    image_type: ImageType = ImageType.MAIN
    url: Optional[str] = None
    thumb_url: Optional[str] = None
    source_url: str


class ReviewImageEntity(BaseModel):
    url: Optional[str] = None
    thumb_url: Optional[str] = None
    source_url: str


class ReviewEntity(BaseModel):
    review_key: str = Field(..., min_length=1, max_length=64)
    user_name: Optional[str] = None
    user_review: Optional[str] = None
    star: Optional[float] = Field(None, ge=0, le=5)
    review_date: Optional[str] = None
    images: List[ReviewImageEntity] = Field(default_factory=list)


class ProductEntity(BaseModel):
    """
    One SKU variant with its owned images and reviews.

    supplier, when set, is upserted before the product and its id fills
    supplier_id.
    """
    source_name: str
    external_id: str
    sku: str = Field(..., min_length=1)
    parent_sku: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)

    supplier: Optional[SupplierEntity] = None
    category_id: Optional[int] = None
    product_type_id: Optional[int] = None

    source_url: Optional[str] = None
    description: Optional[str] = None
    gender: Optional[str] = None
    size: Optional[List[str]] = None
    size_kind: Optional[str] = None
    specification: Optional[Dict[str, Any]] = None
    attributes: Optional[Dict[str, Any]] = None

    price: Optional[Decimal] = None
    sale_price: Optional[Decimal] = None
    star_point: Optional[float] = None
    like_number: Optional[int] = None
    number_of_purchased: Optional[int] = None
    quantity: Optional[int] = None
    is_top: bool = False

    images: List[ImageEntity] = Field(default_factory=list)
    reviews: List[ReviewEntity] = Field(default_factory=list)

    @validator("name")
    def clean_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Name cannot be empty after stripping")
        return v

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id, sku=self.sku)

    def column_values(self) -> Dict[str, Any]:
        """Scalar columns of the products row (children and supplier excluded)."""
        return self.model_dump(exclude={"supplier", "images", "reviews"}, exclude_none=True)


class ProductImageSet(BaseModel):
    """Images to attach to an already stored product, addressed by its id."""
    product_id: int
    images: List[ImageEntity] = Field(..., min_length=1)

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(product_id=self.product_id)


class TrackingDetailEntity(BaseModel):
    event_time: Optional[str] = None
    status_text: str
    region: TrackingRegion


class TrackingEntity(BaseModel):
    """
    Refreshed state of an order tracking. Its details replace whatever
    events were stored for the same tracking code.
    """
    tracking_code: str = Field(..., min_length=1)
    order_id: Optional[str] = None
    site: Optional[str] = None
    status: TrackingStatus
    original_region: Optional[str] = None
    destination_region: Optional[str] = None
    current_process: Optional[str] = None
    total_days: Optional[int] = None
    order_date: Optional[date] = None
    details: List[TrackingDetailEntity] = Field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.status == TrackingStatus.DELIVERED

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(tracking_code=self.tracking_code)

    def column_values(self) -> Dict[str, Any]:
        values = self.model_dump(exclude={"details"}, exclude_none=True)
        values["status"] = int(self.status)
        return values


class ProductPatch(BaseModel):
    """Partial update of an existing product, matched by natural key."""
    source_name: str
    external_id: str
    sku: str
    values: Dict[str, Any]

    @validator("values")
    def not_empty(cls, v):
        if not v:
            raise ValueError("Patch must change at least one column")
        return v

    @property
    def natural_key(self) -> NaturalKey:
        return NaturalKey(source_name=self.source_name, external_id=self.external_id, sku=self.sku)
