"""Batched eager loading of entity relationships on SQLAlchemy Core.

sqla_eagerloads resolves declared relationships (has-many, belongs-to,
one-of-many, has-many-through, ...) for whole sets of entities with one
query per relationship hop, instead of one query per row.  Declare entities
on a shared base, build a ``Registry`` with ``get_registry(Base)``, then
``await session.fetch(Model, loads=("orders.items", ...))``.  Relationships
that were not eagerly loaded are either loaded on demand through
``await entity.awaitable_attrs.name`` or rejected in strict mode.
"""

from ._version import __version__, __version_tuple__
from .config import Config
from .datastructures import Slot, SlotState, frozendict
from .entity import Entity, EntityFactory, is_loaded, reset_relations, set_relation
from .exceptions import (
    ConfigurationError,
    ConnectionError,  # noqa: A004
    DetachedEntityError,
    EagerLoadError,
    LazyAccessViolation,
    LoadCancelledError,
    MappingError,
    MissingAttributeError,
    QueryError,
    RelationshipNotLoadedError,
    TimeoutError,  # noqa: A004
)
from .executor import Executor, FetchRequest, SQLAlchemyExecutor, build_statement
from .guard import LazyLoader
from .hydrator import Hydrator, Observer
from .keys import get_primary_key, get_table_name
from .loader import BatchLoader
from .planner import EagerLoadPlanner
from .registry import Registry, cache_clear, cache_info, get_registry
from .relationship import (
    Relationship,
    RelationshipKind,
    SelectionRule,
    belongs_to,
    has_many,
    has_many_through,
    has_one,
    has_one_of_many,
    has_one_through,
    latest,
    latest_of_many,
    oldest,
    oldest_of_many,
)
from .session import Session


__all__ = (
    "BatchLoader",
    "Config",
    "ConfigurationError",
    "ConnectionError",
    "DetachedEntityError",
    "EagerLoadError",
    "EagerLoadPlanner",
    "Entity",
    "EntityFactory",
    "Executor",
    "FetchRequest",
    "Hydrator",
    "LazyAccessViolation",
    "LazyLoader",
    "LoadCancelledError",
    "MappingError",
    "MissingAttributeError",
    "Observer",
    "QueryError",
    "Registry",
    "Relationship",
    "RelationshipKind",
    "RelationshipNotLoadedError",
    "SQLAlchemyExecutor",
    "SelectionRule",
    "Session",
    "Slot",
    "SlotState",
    "TimeoutError",
    "__version__",
    "__version_tuple__",
    "belongs_to",
    "build_statement",
    "cache_clear",
    "cache_info",
    "frozendict",
    "get_primary_key",
    "get_registry",
    "get_table_name",
    "has_many",
    "has_many_through",
    "has_one",
    "has_one_of_many",
    "has_one_through",
    "is_loaded",
    "latest",
    "latest_of_many",
    "oldest",
    "oldest_of_many",
    "reset_relations",
    "set_relation",
)
