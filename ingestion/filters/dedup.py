"""
Skip records whose natural key is already stored
"""

from typing import Any, Callable, Optional, Sequence
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.exceptions import DatabaseConnectionError
from ingestion.state import NaturalKey
import logging

logger = logging.getLogger(__name__)


class DedupFilter:
    """
    Looks a natural key up against already persisted rows of one model.

    Every call queries the store; nothing is cached, so a resumed or
    concurrent run always sees the rows committed since.

    Args:
        session_factory: Session factory for the lookup
        model: ORM model holding the persisted entities
        criteria: Extra WHERE clauses a match must satisfy (e.g. only
            delivered orders count as done)
        enabled: False disables skipping (force refresh)
        key: Maps a raw record to the key looked up in model (the
            record's own natural key by default)

    Example:
        products = DedupFilter(async_session_maker, Product)
        await products.should_skip(NaturalKey(source_name="goat", external_id="42"))

        main_images = DedupFilter(async_session_maker, ProductImage)
        await main_images.should_skip(NaturalKey(product_id=7, image_type=ImageType.MAIN))

        feature_images = DedupFilter(
            async_session_maker, ProductImage,
            key=lambda row: NaturalKey(product_id=row.id, image_type=ImageType.FEATURE)
        )
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        model: Any,
        criteria: Sequence[Any] = (),
        enabled: bool = True,
        key: Optional[Callable[[Any], NaturalKey]] = None
    ):
        self.session_factory = session_factory
        self.model = model
        self.criteria = tuple(criteria)
        self.enabled = enabled
        self.key = key

    def key_of(self, record: Any) -> NaturalKey:
        return self.key(record) if self.key is not None else record.natural_key

    async def lookup_id(self, key: NaturalKey) -> Optional[int]:
        """Id of the first stored row matching key, or None."""
        clauses = [getattr(self.model, column) == value for column, value in key.items()]
        clauses.extend(self.criteria)

        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(self.model.id).where(and_(*clauses)).limit(1)
                )
                return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                f"Dedup lookup failed on {self.model.__tablename__}",
                context={"operation": "SELECT", "table_name": self.model.__tablename__, "natural_key": repr(key)},
                original_exception=e
            )

    async def should_skip(self, key: NaturalKey) -> bool:
        if not self.enabled:
            return False
        exists = await self.lookup_id(key) is not None
        if exists:
            logger.debug(f"Already stored in {self.model.__tablename__}: {key}")
        return exists
