"""sqla_eagerloads exception hierarchy.

Every error raised by the loading engine derives from ``EagerLoadError``.
Driver and SQLAlchemy exceptions are translated by the executor and chained
with ``raise ... from``.
"""

from __future__ import annotations

import builtins
from typing import Any


class EagerLoadError(Exception):
    """Base exception for all sqla_eagerloads errors."""


# --- Declaration ---


class ConfigurationError(EagerLoadError):
    """Raised for an invalid relationship declaration or load path.

    Always raised before any query is issued.
    """


# --- Execution ---


class QueryError(EagerLoadError):
    """Raised when the execution collaborator fails to run a request."""


class ConnectionError(QueryError, builtins.ConnectionError):  # noqa: A001
    """Raised when the database connection is lost or unusable."""


class TimeoutError(QueryError, builtins.TimeoutError):  # noqa: A001
    """Raised when a request or a whole load exceeds its time budget."""


class LoadCancelledError(QueryError):
    """Stored on slots whose load was cancelled before it completed."""

    def __init__(self, relationship: str) -> None:
        self.relationship = relationship
        super().__init__(f"Loading of '{relationship}' was cancelled")


# --- Access ---


class LazyAccessViolation(EagerLoadError):
    """Raised in strict mode when an unloaded relationship is accessed."""

    def __init__(self, entity_type: type[Any], relationship: str) -> None:
        self.entity_type = entity_type
        self.relationship = relationship
        super().__init__(
            f"Attempted to lazy load '{relationship}' on {entity_type.__name__} "
            "but lazy loading is disabled"
        )


class RelationshipNotLoadedError(EagerLoadError):
    """Raised on synchronous access to a relationship that is not loaded yet."""

    def __init__(self, entity_type: type[Any], relationship: str) -> None:
        self.entity_type = entity_type
        self.relationship = relationship
        super().__init__(
            f"'{relationship}' on {entity_type.__name__} is not loaded; eager-load it "
            f"or use `await entity.awaitable_attrs.{relationship}`"
        )


class DetachedEntityError(EagerLoadError):
    """Raised when a lazy load is requested for an entity without a session."""


class MissingAttributeError(EagerLoadError, AttributeError):
    """Raised in strict mode when a column attribute was never set."""

    def __init__(self, entity_type: type[Any], attribute: str) -> None:
        self.entity_type = entity_type
        self.attribute = attribute
        super().__init__(
            f"The attribute '{attribute}' either does not exist or was not retrieved "
            f"for {entity_type.__name__}"
        )


# --- Mapping ---


class MappingError(EagerLoadError):
    """Raised when a raw row cannot be converted into an entity."""

    def __init__(self, entity_type: type[Any], detail: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Cannot map row to {entity_type.__name__}: {detail}")
