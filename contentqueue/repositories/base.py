"""Base repository for the queue tables.

Subclasses set model_class and not_found_error. Reads go through
_base_query(), which refreshes rows already in the session: job and alert
rows are changed by conditional UPDATEs that bypass the identity map.
"""

from typing import TypeVar, Generic, Optional, Type
from sqlalchemy.orm import Session, Query

from ..database import Base
from ..exceptions import QueueException

ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Shared lookups and inserts. Repositories flush; services commit.

    Class variables to set in subclasses:
        model_class:     The SQLAlchemy model (e.g., Job)
        id_column:       Name of the primary-key column (default "id")
        not_found_error: QueueException raised by get_by_id
    """

    model_class: Type[ModelT]
    id_column: str = "id"
    not_found_error: Type[QueueException]

    def __init__(self, db: Session):
        self.db = db

    def _base_query(self) -> Query:
        return self.db.query(self.model_class).populate_existing()

    def get_by_id(self, entity_id: str) -> ModelT:
        """Load by primary key. Raises not_found_error if missing."""
        col = getattr(self.model_class, self.id_column)
        entity = self._base_query().filter(col == entity_id).first()
        if entity is None:
            raise self.not_found_error(entity_id)
        return entity

    def _add(self, entity):
        self.db.add(entity)
        self.db.flush()
        return entity

    def get_by_id_optional(self, entity_id: str) -> Optional[ModelT]:
        col = getattr(self.model_class, self.id_column)
        return self._base_query().filter(col == entity_id).first()
