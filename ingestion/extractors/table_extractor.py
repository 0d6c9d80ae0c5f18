"""
Stored products as a source, for the maintenance pipelines.
"""

from typing import Any, Optional, Sequence
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from pydantic import ValidationError as PydanticValidationError
from ingestion.base import SourceAdapter
from ingestion.state import FetchResult
from models.base import SourceType
from models.catalog import Product, Category
from schemas.records import ProductRowRecord
from core.config import settings
from core.exceptions import DatabaseConnectionError
import logging

logger = logging.getLogger(__name__)


class ProductTableSource(SourceAdapter):
    """
    Keyset batches over the products table.

    Cursor is the last processed products.id. criteria narrow the walk
    (e.g. only products without a type, or a single target id).
    """

    checkpoint_type = "id"

    def __init__(
        self,
        session_factory: async_sessionmaker,
        source_name: str,
        criteria: Sequence[Any] = (),
        batch_size: Optional[int] = None,
        pacing_seconds: float = 0.0
    ):
        super().__init__(source_type=SourceType.DATABASE, source_name=source_name, pacing_seconds=pacing_seconds)
        self.session_factory = session_factory
        self.criteria = tuple(criteria)
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE

    async def fetch(self, cursor: int) -> FetchResult:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Product, Category.name)
                    .outerjoin(Category, Product.category_id == Category.id)
                    .where(and_(Product.id > cursor, *self.criteria))
                    .order_by(Product.id)
                    .limit(self.batch_size)
                )
                rows = result.all()
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                "Failed to read products",
                context={"operation": "SELECT", "table_name": "products", "cursor": cursor},
                original_exception=e
            )

        if not rows:
            return FetchResult(records=[], has_more=False, next_cursor=cursor)

        records, rejected = [], []
        for product, category_name in rows:
            try:
                records.append(ProductRowRecord(
                    source_name=product.source_name,
                    id=product.id,
                    external_id=product.external_id,
                    sku=product.sku,
                    name=product.name,
                    gender=product.gender,
                    size=product.size if isinstance(product.size, list) else None,
                    size_kind=product.size_kind,
                    category_name=category_name,
                    product_type_id=product.product_type_id,
                ))
            except PydanticValidationError as e:
                rejected.append(f"product {product.id}: {e.error_count()} invalid field(s)")

        return FetchResult(
            records=records,
            has_more=len(rows) == self.batch_size,
            next_cursor=rows[-1][0].id,
            rejected=rejected,
        )
