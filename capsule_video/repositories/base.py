"""Base repository for string-keyed records."""

from typing import Any, Dict, Generic, Optional, TypeVar
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase

ModelType = TypeVar("ModelType", bound=DeclarativeBase)


class BaseRepository(Generic[ModelType]):
    """
    Shared lookups and writes for models with a string ``id`` column.
    Rows are returned as plain dicts so callers never hold ORM state
    across sessions.
    """

    def __init__(self, session: AsyncSession, model: type[ModelType]):
        self.session = session
        self.model = model

    async def get_entity(self, id: str) -> Optional[ModelType]:
        """ORM entity by id, refreshed from the database."""
        result = await self.session.execute(
            select(self.model)
            .where(self.model.id == id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, id: str) -> Optional[Dict[str, Any]]:
        return self._to_dict(await self.get_entity(id))

    async def create(self, **values: Any) -> Dict[str, Any]:
        """Insert a row and return it with server defaults filled in."""
        entity = self.model(**values)
        self.session.add(entity)
        await self.session.flush()
        await self.session.refresh(entity)
        return self._to_dict(entity)

    async def update_values(self, id: str, values: Dict[str, Any]) -> bool:
        """Write the given columns. False when no row has this id."""
        if not values:
            return False
        result = await self.session.execute(
            update(self.model).where(self.model.id == id).values(**values)
        )
        await self.session.flush()
        return result.rowcount > 0

    async def update(self, id: str, **values: Any) -> Optional[Dict[str, Any]]:
        """Write the given columns and return the updated row, or None."""
        await self.update_values(id, values)
        return await self.get_by_id(id)

    def _to_dict(self, entity: Optional[ModelType]) -> Optional[Dict[str, Any]]:
        if entity is None:
            return None
        return {
            column.name: getattr(entity, column.name)
            for column in entity.__table__.columns
        }
