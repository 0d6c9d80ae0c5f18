"""
Category lookup-or-create by case-insensitive name
"""

from typing import Optional
from sqlalchemy import select, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
from models.catalog import Category
from core.exceptions import DatabaseConnectionError
import logging

logger = logging.getLogger(__name__)


class CategoryResolver:
    """
    Resolve a category name to its id, creating the category when absent.

    The create runs in its own short transaction ahead of the batch, so a
    category survives a rolled back batch and is found again on retry.
    There is no guard against two runs creating the same name at once; the
    oldest row wins on lookup.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _find(self, session, name: str) -> Optional[int]:
        result = await session.execute(
            select(Category.id)
            .where(func.lower(Category.name) == name.lower())
            .order_by(Category.id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def resolve(self, name: Optional[str]) -> Optional[int]:
        if name is None or not name.strip():
            return None
        name = name.strip()

        try:
            async with self.session_factory() as session, session.begin():
                category_id = await self._find(session, name)
                if category_id is not None:
                    return category_id

                category = Category(name=name, parent_id=None)
                session.add(category)
                await session.flush()
                logger.info(f"Created category '{name}' (id={category.id})")
                return category.id
        except SQLAlchemyError as e:
            raise DatabaseConnectionError(
                f"Failed to resolve category '{name}'",
                context={"operation": "UPSERT", "table_name": "categories"},
                original_exception=e
            )
