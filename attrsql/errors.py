"""
Error taxonomy for saves and queries.

Planning-phase errors (ValidationError, UnresolvableDependencyError) are raised
before any database call. Execution-phase errors are raised after the
transaction has been rolled back.
"""
from typing import Any, Optional


class AttrSqlError(Exception):
    """
    Base class for every failure surfaced by attrsql.

    Attributes:
        entity_ref: The EntityRef the failure is attributed to, when known
        condition: Semantic condition name (e.g. "unique-violation")
    """

    def __init__(self, message: str, entity_ref: Optional[Any] = None,
                 condition: Optional[str] = None) -> None:
        super().__init__(message)
        self.entity_ref = entity_ref
        self.condition = condition

    def __str__(self) -> str:
        base = super().__str__()
        if self.entity_ref is not None:
            return f"{base} (entity: {self.entity_ref})"
        return base


class ValidationError(AttrSqlError):
    """Malformed delta, unknown attribute or type mismatch."""


class UnresolvableDependencyError(AttrSqlError):
    """Newly created entities reference each other in a cycle."""

    def __init__(self, message: str, cycle: Optional[list] = None) -> None:
        super().__init__(message, condition="dependency-cycle")
        self.cycle = cycle or []


class SequenceAllocationError(AttrSqlError):
    """A batched sequence allocation failed or returned too few values."""


class ConstraintViolationError(AttrSqlError):
    """The storage engine rejected a write (foreign key, uniqueness, not-null)."""


class DatabaseConnectionError(AttrSqlError):
    """Pool exhaustion or connectivity failure."""


class ValueConversionError(AttrSqlError):
    """A model value could not be converted to its storage representation."""
