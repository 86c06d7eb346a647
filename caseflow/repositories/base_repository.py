from typing import Any, Dict, Generic, List, Optional, Type, TypeVar
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from caseflow.utils.logging import get_logger

# Define a generic type for SQLAlchemy models
ModelType = TypeVar("ModelType")

LOGGER = get_logger(__name__)


class BaseRepository(Generic[ModelType]):
    """Base repository implementing common tenant-scoped operations.

    Repositories only flush; the unit of work that owns the session
    decides when to commit.
    """

    def __init__(self, session: AsyncSession, model: Type[ModelType], firm_id: Optional[UUID] = None):
        """Initialize the repository.

        Args:
            session: SQLAlchemy async session
            model: The SQLAlchemy model class this repository manages
            firm_id: Tenant every query is restricted to
        """
        self.session = session
        self.model = model
        self.firm_id = firm_id
        self.logger = LOGGER

    def _scoped(self, query):
        if self.firm_id is not None and hasattr(self.model, "firm_id"):
            query = query.where(self.model.firm_id == self.firm_id)
        return query

    async def get_record(self, id: UUID, populate_existing: bool = False) -> Optional[ModelType]:
        """Get a record by its ID.

        Args:
            id: The UUID of the record
            populate_existing: Reload the row even if the session already holds it

        Returns:
            The record if found, None otherwise
        """
        try:
            query = self._scoped(select(self.model).where(self.model.id == id))
            if populate_existing:
                query = query.execution_options(populate_existing=True)
            result = await self.session.execute(query)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving {self.model.__name__} by ID {id}: {str(e)}",
                exc_info=True
            )
            raise

    async def list_records(self, filters: Optional[Dict[str, Any]] = None, order_by=None) -> List[ModelType]:
        """Get all records matching ``filters`` (field_name: value)."""
        try:
            query = self._scoped(select(self.model))

            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)

            if order_by is not None:
                query = query.order_by(order_by)

            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error retrieving all {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise

    async def add_record(self, **kwargs) -> ModelType:
        """Stage a new record in the session.

        Args:
            **kwargs: Fields and values for the new record

        Returns:
            The flushed record
        """
        try:
            instance = self.model(**kwargs)
            self.session.add(instance)
            await self.session.flush()
            return instance
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error creating {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise

    async def add_records(self, rows: List[Dict[str, Any]]) -> List[ModelType]:
        try:
            instances = [self.model(**row) for row in rows]
            self.session.add_all(instances)
            await self.session.flush()
            return instances
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error creating {len(rows)} {self.model.__name__} records: {str(e)}",
                exc_info=True
            )
            raise

    async def update_record(self, id: UUID, **kwargs) -> Optional[ModelType]:
        """Update an existing record.

        Args:
            id: The UUID of the record to update
            **kwargs: Fields and values to update

        Returns:
            The updated record if found, None otherwise
        """
        try:
            instance = await self.get_record(id)
            if not instance:
                return None

            for key, value in kwargs.items():
                if hasattr(instance, key):
                    setattr(instance, key, value)

            await self.session.flush()
            return instance
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error updating {self.model.__name__} {id}: {str(e)}",
                exc_info=True
            )
            raise

    async def update_where(self, id: UUID, conditions: Dict[str, Any], **kwargs) -> bool:
        """Update a record only while its current columns match ``conditions``.

        The check and the write are one ``UPDATE`` statement.

        Returns:
            True if the row was updated, False if it is missing or no longer matches
        """
        try:
            statement = self._scoped(update(self.model).where(self.model.id == id))
            for field, value in conditions.items():
                statement = statement.where(getattr(self.model, field) == value)

            result = await self.session.execute(
                statement.values(**kwargs).execution_options(synchronize_session=False)
            )
            return result.rowcount == 1
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error conditionally updating {self.model.__name__} {id}: {str(e)}",
                exc_info=True
            )
            raise

    async def count(self, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count records matching filters."""
        try:
            query = self._scoped(select(func.count()).select_from(self.model))

            if filters:
                for field, value in filters.items():
                    if hasattr(self.model, field):
                        query = query.where(getattr(self.model, field) == value)

            result = await self.session.execute(query)
            return result.scalar_one()
        except SQLAlchemyError as e:
            self.logger.error(
                f"Error counting {self.model.__name__}: {str(e)}",
                exc_info=True
            )
            raise
