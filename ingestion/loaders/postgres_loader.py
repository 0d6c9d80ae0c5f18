"""
Write entity graphs in one transaction with upsert logic (idempotency)
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Sequence
from sqlalchemy import delete, update, and_
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from models.catalog import Supplier, Product, ProductImage, ProductReview, ProductReviewImage
from models.tracking import OrderTracking, OrderTrackingDetail
from schemas.entities import (
    ProductEntity, TrackingEntity, ProductPatch, SupplierEntity, ImageEntity, ProductImageSet
)
from ingestion.state import NaturalKey
from core.exceptions import TransactionError, UpsertError
import logging

logger = logging.getLogger(__name__)

DIALECT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


@dataclass
class WriteResult:
    """
    Outcome of a committed batch.

    keys maps the natural key of every top-level entity to its local id;
    counts holds the number of rows upserted per table.
    """
    keys: Dict[NaturalKey, int] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)

    def add(self, table: str, n: int = 1) -> None:
        self.counts[table] = self.counts.get(table, 0) + n


class BatchWriter:
    """
    Persist a batch of entity graphs.

    Ensures:
    - No duplicate rows on repeated runs (INSERT .. ON CONFLICT DO UPDATE
      on each table's natural key)
    - A child row is only written once its parent's id is known
    - The whole batch commits or rolls back together
    """

    # Columns never overwritten on conflict
    INSERT_ONLY = {"is_top", "created_at"}

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    def _insert(self, session: AsyncSession, model):
        dialect = session.get_bind().dialect.name
        insert = DIALECT_INSERTS.get(dialect)
        if insert is None:
            raise UpsertError(
                f"Upsert is not supported on dialect '{dialect}'",
                context={"table_name": model.__tablename__}
            )
        return insert(model)

    async def _upsert(
        self,
        session: AsyncSession,
        model,
        values: Dict[str, Any],
        index_elements: Sequence[str]
    ) -> int:
        """INSERT .. ON CONFLICT (natural key) DO UPDATE, returning the row id."""
        stmt = self._insert(session, model).values(**values)

        set_ = {
            column: stmt.excluded[column]
            for column in values
            if column not in index_elements and column not in self.INSERT_ONLY
        }
        set_["updated_at"] = datetime.utcnow()

        stmt = stmt.on_conflict_do_update(
            index_elements=list(index_elements),
            set_=set_
        ).returning(model.id)

        result = await session.execute(stmt)
        return result.scalar_one()

    # ------------------------------------------------------------------
    # Catalog graphs
    # ------------------------------------------------------------------

    async def _write_supplier(self, session: AsyncSession, supplier: SupplierEntity, result: WriteResult) -> int:
        supplier_id = await self._upsert(
            session, Supplier, supplier.model_dump(exclude_none=True),
            index_elements=["source_name", "external_id"]
        )
        result.add(Supplier.__tablename__)
        return supplier_id

    async def _write_images(
        self, session: AsyncSession, product_id: int, images: Sequence[ImageEntity], result: WriteResult
    ) -> None:
        for image in images:
            await self._upsert(
                session, ProductImage,
                {"product_id": product_id, **image.model_dump(exclude_none=True)},
                index_elements=["product_id", "source_url"]
            )
            result.add(ProductImage.__tablename__)

    async def _write_product(self, session: AsyncSession, product: ProductEntity, result: WriteResult) -> int:
        values = product.column_values()
        if product.supplier is not None:
            values["supplier_id"] = await self._write_supplier(session, product.supplier, result)

        product_id = await self._upsert(
            session, Product, values,
            index_elements=["source_name", "external_id", "sku"]
        )
        result.add(Product.__tablename__)

        await self._write_images(session, product_id, product.images, result)

        for review in product.reviews:
            review_id = await self._upsert(
                session, ProductReview,
                {"product_id": product_id, **review.model_dump(exclude={"images"}, exclude_none=True)},
                index_elements=["product_id", "review_key"]
            )
            result.add(ProductReview.__tablename__)

            for image in review.images:
                await self._upsert(
                    session, ProductReviewImage,
                    {"review_id": review_id, **image.model_dump(exclude_none=True)},
                    index_elements=["review_id", "source_url"]
                )
                result.add(ProductReviewImage.__tablename__)

        return product_id

    async def _write_patch(self, session: AsyncSession, patch: ProductPatch, result: WriteResult) -> None:
        key = patch.natural_key
        stmt = (
            update(Product)
            .where(and_(*[getattr(Product, column) == value for column, value in key.items()]))
            .values(**patch.values, updated_at=datetime.utcnow())
            .returning(Product.id)
        )
        row = (await session.execute(stmt)).first()
        if row is None:
            logger.warning(f"No stored product for patch {key}")
            return
        result.keys[key] = row[0]
        result.add(Product.__tablename__)

    # ------------------------------------------------------------------
    # Tracking graphs
    # ------------------------------------------------------------------

    async def _write_tracking(self, session: AsyncSession, tracking: TrackingEntity, result: WriteResult) -> int:
        tracking_id = await self._upsert(
            session, OrderTracking, tracking.column_values(),
            index_elements=["tracking_code"]
        )
        result.add(OrderTracking.__tablename__)

        # Stored events are replaced by the freshly read ones
        await session.execute(
            delete(OrderTrackingDetail).where(OrderTrackingDetail.order_tracking_id == tracking_id)
        )
        if tracking.details:
            await session.execute(
                self._insert(session, OrderTrackingDetail),
                [
                    {
                        "order_tracking_id": tracking_id,
                        "event_time": detail.event_time,
                        "status_text": detail.status_text,
                        "region": int(detail.region),
                        "created_at": datetime.utcnow(),
                    }
                    for detail in tracking.details
                ]
            )
            result.add(OrderTrackingDetail.__tablename__, len(tracking.details))
        return tracking_id

    async def _write_entity(self, session: AsyncSession, entity: Any, result: WriteResult) -> None:
        if isinstance(entity, ProductEntity):
            result.keys[entity.natural_key] = await self._write_product(session, entity, result)
        elif isinstance(entity, TrackingEntity):
            result.keys[entity.natural_key] = await self._write_tracking(session, entity, result)
        elif isinstance(entity, ProductPatch):
            await self._write_patch(session, entity, result)
        elif isinstance(entity, ProductImageSet):
            await self._write_images(session, entity.product_id, entity.images, result)
            result.keys[entity.natural_key] = entity.product_id
        else:
            raise UpsertError(
                f"No writer for entity type {type(entity).__name__}",
                context={"entity_type": type(entity).__name__}
            )

    async def write(self, entities: Iterable[Any]) -> WriteResult:
        """
        Write a batch of entities in a single transaction.

        Args:
            entities: ProductEntity, TrackingEntity, ProductPatch or ProductImageSet
                instances

        Returns:
            WriteResult with the natural key -> id mapping and row counts

        Raises:
            TransactionError: any failure; nothing of the batch was committed
        """
        entities: List[Any] = list(entities)
        result = WriteResult()
        if not entities:
            return result

        position = 0
        try:
            async with self.session_factory() as session, session.begin():
                for position, entity in enumerate(entities, start=1):
                    await self._write_entity(session, entity, result)
        except Exception as e:
            logger.error(f"Batch write failed at entity {position}/{len(entities)}, rolled back: {e}")
            raise TransactionError(
                "Batch write rolled back",
                context={
                    "operation": "UPSERT",
                    "batch_size": len(entities),
                    "failed_at": position,
                },
                original_exception=e
            )

        logger.info(f"Committed batch of {len(entities)} entities: {result.counts}")
        return result
