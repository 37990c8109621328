# bangbuy/repositories/base_repository.py
"""
Base Repository Pattern for the BangBuy messaging core.

Provides the foundation for all repository classes with:
- Primary-key lookup, partial update and counting
- Type safety with generics
- Transaction support (managed by services)
- Uniform translation of SQLAlchemy errors into RepositoryException

Repositories never commit on their own; the calling service owns the
transaction boundary.
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Generic repository with common data access patterns.

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
        return str(self.db.get_bind().dialect.name)

    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an entity by its primary key."""
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}") from e

    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        """Update only the provided fields of an existing entity."""
        try:
            entity = self.get_by_id(id)
            if entity is None:
                return None
            for key, value in kwargs.items():
                if hasattr(entity, key):
                    setattr(entity, key, value)
            self.db.flush()
            return entity
        except SQLAlchemyError as e:
            self.logger.error(f"Error updating {self.model.__name__} {id}: {str(e)}")
            raise RepositoryException(f"Failed to update {self.model.__name__}: {str(e)}") from e

    def count(self, **kwargs: Any) -> int:
        try:
            return self.db.query(self.model).filter_by(**kwargs).count()
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting records: {str(e)}")
            raise RepositoryException(f"Failed to count records: {str(e)}") from e

    # Protected helper methods for use by subclasses

    def _execute_query(self, query: Query) -> List[Any]:
        """Execute query with error handling."""
        try:
            return query.all()
        except SQLAlchemyError as e:
            self.logger.error(f"Query execution error: {str(e)}")
            raise RepositoryException(f"Query failed: {str(e)}") from e

    def _execute_scalar(self, query: Query) -> Any:
        """Execute scalar query with error handling."""
        try:
            return query.scalar()
        except SQLAlchemyError as e:
            self.logger.error(f"Scalar query error: {str(e)}")
            raise RepositoryException(f"Scalar query failed: {str(e)}") from e

    def _execute_rowcount(self, stmt: Any, params: Optional[dict[str, Any]] = None) -> int:
        """Execute a DML statement and return the affected row count."""
        try:
            result = self.db.execute(stmt, params or {})
            return int(getattr(result, "rowcount", 0) or 0)
        except SQLAlchemyError as e:
            self.logger.error(f"Statement execution error: {str(e)}")
            raise RepositoryException(f"Statement failed: {str(e)}") from e

    def _insert_if_absent(self, values: dict[str, Any]) -> bool:
        """
        Insert a row unless it would violate a unique constraint.

        Returns True when the row was inserted, False when an existing row
        already holds the unique key. Uses ON CONFLICT DO NOTHING where the
        dialect supports it and a SAVEPOINT elsewhere.
        """
        dialect = self.dialect_name.lower()
        try:
            if dialect == "postgresql":
                stmt = pg_insert(self.model).values(**values).on_conflict_do_nothing()
                return self._execute_rowcount(stmt) == 1
            if dialect == "sqlite":
                stmt = sqlite_insert(self.model).values(**values).on_conflict_do_nothing()
                return self._execute_rowcount(stmt) == 1

            try:
                with self.db.begin_nested():
                    self.db.execute(insert(self.model).values(**values))
                return True
            except IntegrityError:
                return False
        except SQLAlchemyError as e:
            self.logger.error(f"Error inserting {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to insert {self.model.__name__}: {str(e)}") from e
