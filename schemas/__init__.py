"""
Pydantic schemas for data validation and serialization.

Schemas:
    records: Raw record variants produced by source adapters, one per
        source kind, each with an explicit field-presence contract
    entities: Normalized entity graphs consumed by the batch writer
    api: Status API response models

Features:
    - Payloads that violate their variant are rejected at the source
    - Entities carry their natural key so writes can upsert
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.records import ApiProductRecord, TrackingRecord
    from schemas.entities import ProductEntity, TrackingEntity
    from schemas.api import HealthCheckResponse, RunListResponse
"""

__all__ = [
    "ApiProductRecord",
    "ListingItemRecord",
    "PageProductDetail",
    "TrackingRecord",
    "ProductRowRecord",
    "SupplierEntity",
    "ProductEntity",
    "ImageEntity",
    "ReviewEntity",
    "ReviewImageEntity",
    "TrackingEntity",
    "TrackingDetailEntity",
    "ProductPatch",
    "HealthCheckResponse",
    "RunListResponse",
]
