"""
Base Data Access Object (DAO) class.

WHY: The DAO pattern separates database operations from business logic,
making the services testable against a real session without SQL leaking
into the reconciler or the lifecycle tracker.
"""

from typing import Generic, TypeVar, Type, Optional, List, Any

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from partner_access.core.exceptions import ConcurrencyConflict
from partner_access.models.base import Base

# Type variable for model class
ModelType = TypeVar("ModelType", bound=Base)


class BaseDAO(Generic[ModelType]):
    """
    Base Data Access Object providing CRUD operations for all models.

    WHY: Using generics allows type-safe reuse across different models.
    Writes go through the unit of work (session.add + flush) rather than
    bulk UPDATE statements so the mapper's version_id_col check applies.

    Type Parameters:
        ModelType: The SQLAlchemy model class this DAO manages
    """

    def __init__(self, model: Type[ModelType], session: AsyncSession):
        """
        Initialize DAO with model class and database session.

        Args:
            model: The SQLAlchemy model class
            session: Async database session
        """
        self.model = model
        self.session = session

    async def create(self, **kwargs: Any) -> ModelType:
        """
        Create a new record.

        Args:
            **kwargs: Field values for the new record

        Returns:
            The created model instance with database-generated fields populated

        Raises:
            IntegrityError: If unique constraints are violated
        """
        instance = self.model(**kwargs)
        self.session.add(instance)
        await self.session.flush()  # Flush to get auto-generated fields
        await self.session.refresh(instance)
        return instance

    async def get_by_id(self, id: int) -> Optional[ModelType]:
        """
        Retrieve a single record by primary key.

        Args:
            id: Primary key value

        Returns:
            The model instance if found, None otherwise
        """
        result = await self.session.execute(select(self.model).where(self.model.id == id))
        return result.scalar_one_or_none()

    async def get_all(self, skip: int = 0, limit: int = 100, **filters: Any) -> List[ModelType]:
        """
        Retrieve multiple records with optional pagination and filtering.

        Args:
            skip: Number of records to skip (for pagination)
            limit: Maximum number of records to return
            **filters: Field name to value filters (e.g., organization_id=1)

        Returns:
            List of model instances matching the filters
        """
        query = self._filtered(select(self.model), filters)
        query = query.order_by(self.model.id).offset(skip).limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_by_field(self, field_name: str, value: Any) -> Optional[ModelType]:
        """
        Retrieve a single record by any field.

        Args:
            field_name: Name of the field to search
            value: Value to match

        Returns:
            The model instance if found, None otherwise

        Raises:
            AttributeError: If field_name doesn't exist on the model
        """
        if not hasattr(self.model, field_name):
            raise AttributeError(f"{self.model.__name__} has no field '{field_name}'")

        result = await self.session.execute(
            select(self.model).where(getattr(self.model, field_name) == value)
        )
        return result.scalar_one_or_none()

    async def update(self, instance: ModelType, **kwargs: Any) -> ModelType:
        """
        Assign fields on a loaded instance and flush.

        WHY: All fields are assigned before a single flush, so the row is
        written in one UPDATE guarded by the version column. A concurrent
        writer that bumped the version first makes the flush match zero
        rows; that surfaces here as ConcurrencyConflict.

        Args:
            instance: Loaded model instance
            **kwargs: Fields to update

        Returns:
            The updated instance

        Raises:
            ConcurrencyConflict: If the row changed since it was loaded
        """
        for field, value in kwargs.items():
            setattr(instance, field, value)
        await self.flush()
        return instance

    async def flush(self) -> None:
        """Flush pending changes, translating version mismatches."""
        try:
            await self.session.flush()
        except StaleDataError as e:
            raise ConcurrencyConflict(
                f"{self.model.__name__} was modified concurrently",
                model=self.model.__name__,
            ) from e

    async def count(self, **filters: Any) -> int:
        """
        Count records matching filters.

        Args:
            **filters: Field name to value filters

        Returns:
            Number of records matching the filters
        """
        query = self._filtered(select(func.count()).select_from(self.model), filters)
        result = await self.session.execute(query)
        return result.scalar_one()

    async def exists(self, **filters: Any) -> bool:
        """
        Check if any records matching filters exist.

        Args:
            **filters: Field name to value filters

        Returns:
            True if at least one matching record exists
        """
        query = self._filtered(select(self.model.id), filters).limit(1)
        result = await self.session.execute(query)
        return result.scalar_one_or_none() is not None

    def _filtered(self, query, filters: dict):
        for field, value in filters.items():
            if not hasattr(self.model, field):
                raise AttributeError(f"{self.model.__name__} has no field '{field}'")
            query = query.where(getattr(self.model, field) == value)
        return query
