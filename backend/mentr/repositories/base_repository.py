# backend/mentr/repositories/base_repository.py
"""
Base Repository Pattern for the Mentr settlement engine.

Provides the foundation for all repository classes with:
- Common CRUD operations
- Type safety with generics
- Transaction support (managed by services)

Repositories flush but never commit; the owning service decides the
transaction boundary.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException

# Type variable for generic model support
T = TypeVar("T")

logger = logging.getLogger(__name__)


class IRepository(ABC, Generic[T]):
    """
    Abstract repository interface defining core data access methods.
    """

    @abstractmethod
    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        """
        Retrieve an entity by its primary key.

        Args:
            id: The primary key value
            for_update: Take a row lock where the dialect supports it

        Returns:
            The entity if found, None otherwise
        """

    @abstractmethod
    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        Raises:
            RepositoryException: If creation fails
        """

    @abstractmethod
    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """Update an existing entity; returns None if it does not exist."""

    @abstractmethod
    def exists(self, **kwargs: Any) -> bool:
        """Check if an entity exists with given criteria."""

    @abstractmethod
    def count(self, **kwargs: Any) -> int:
        """Count entities matching given criteria."""


class BaseRepository(IRepository[T]):
    """
    Concrete base repository implementation with common data access patterns.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        bind = self.db.get_bind()
        return bind.dialect.name if bind is not None else ""

    def _lock(self, query: Query) -> Query:
        """Row-lock a query on PostgreSQL; SQLite serializes writers itself."""
        if self.dialect_name == "postgresql":
            return query.with_for_update()
        return query

    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if for_update:
                query = self._lock(query)
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def refresh(self, instance: T) -> None:
        """Refresh an instance from the database."""
        self.db.refresh(instance)

    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        Note: Does NOT commit - transaction management is handled by service layer.
        """
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()  # Get ID without committing
            return entity
        except IntegrityError as exc:
            self.logger.error(
                "Integrity error creating %s: %s", self.model.__name__, exc, exc_info=True
            )
            raise RepositoryException(f"Integrity constraint violated: {exc}") from exc
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}")

    def flush(self) -> None:
        """Flush pending ORM changes."""
        self.db.flush()

    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """Only updates provided fields, preserves others."""
        try:
            entity = self.get_by_id(id)
            if not entity:
                return None

            for key, value in kwargs.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)

            self.db.flush()
            return entity
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating {self.model.__name__} {id}: {str(e)}")
            raise RepositoryException(f"Failed to update {self.model.__name__}: {str(e)}")

    def exists(self, **kwargs: Any) -> bool:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first() is not None
        except SQLAlchemyError as e:
            self.logger.error(f"Error checking existence: {str(e)}")
            raise RepositoryException(f"Failed to check existence: {str(e)}")

    def count(self, **kwargs: Any) -> int:
        try:
            return self.db.query(self.model).filter_by(**kwargs).count()
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting records: {str(e)}")
            raise RepositoryException(f"Failed to count records: {str(e)}")

    def find_by(self, **kwargs: Any) -> List[T]:
        """
        Find entities by given criteria.

        Args:
            **kwargs: Filter criteria (exact match)

        Returns:
            List of matching entities
        """
        try:
            return self.db.query(self.model).filter_by(**kwargs).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find records: {str(e)}")

    def find_one_by(self, **kwargs: Any) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**kwargs).first()
        except SQLAlchemyError as e:
            self.logger.error(f"Error finding one by criteria: {str(e)}")
            raise RepositoryException(f"Failed to find record: {str(e)}")

    def _execute_query(self, query: Query) -> List[T]:
        """Execute query with error handling."""
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}")
