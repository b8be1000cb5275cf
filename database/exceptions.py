"""Database exceptions."""

from typing import Any, Optional

class DatabaseError(Exception):
    """Base exception for database operations."""
    pass

class DatabaseSchemaError(DatabaseError):
    """Raised when schema loading or migration fails."""
    pass

class DuplicateKeyError(DatabaseError):
    """Raised when a write violates a unique index.

    Attributes:
        collection: Collection the write targeted
        field: Document field covered by the violated index
        value: Offending value, when known
    """

    def __init__(self, collection: str, field: str, value: Optional[Any] = None):
        self.collection = collection
        self.field = field
        self.value = value
        super().__init__(f"Duplicate value for {collection}.{field}: {value!r}")
