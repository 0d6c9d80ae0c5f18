"""
SQLAlchemy ORM models for database tables.

Models:
    base: Declarative Base, portable column types and shared enums
    catalog: Categories, suppliers, products and their images and reviews
    tracking: Order trackings and their carrier events
    etl_run: Run audit trail
    checkpoint: Resumable cursor per source

Database Schema:
    Every table with external data carries a unique constraint on its
    natural key so writes can upsert with ON CONFLICT DO UPDATE. JSON
    columns use JSONB on PostgreSQL and plain JSON elsewhere.

Usage:
    from models import Product, ProductImage, ETLCheckpoint
    from models.base import SourceType, ETLStatus

Relationships:
    - Supplier → Product (one-to-many)
    - Product → ProductImage (one-to-many)
    - Product → ProductReview → ProductReviewImage (one-to-many each)
    - OrderTracking → OrderTrackingDetail (one-to-many)
"""

from models.base import Base, SourceType, ETLStatus, ImageType, TrackingStatus, TrackingRegion
from models.catalog import (
    Category, Supplier, MasterProductType, Product,
    ProductImage, ProductReview, ProductReviewImage
)
from models.tracking import OrderTracking, OrderTrackingDetail
from models.etl_run import ETLRun
from models.checkpoint import ETLCheckpoint

__all__ = [
    "Base",
    "SourceType",
    "ETLStatus",
    "ImageType",
    "TrackingStatus",
    "TrackingRegion",
    "Category",
    "Supplier",
    "MasterProductType",
    "Product",
    "ProductImage",
    "ProductReview",
    "ProductReviewImage",
    "OrderTracking",
    "OrderTrackingDetail",
    "ETLRun",
    "ETLCheckpoint",
]
