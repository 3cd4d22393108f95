from __future__ import annotations

from collections.abc import Iterable, Sequence
from functools import lru_cache
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .entity import Entity


E = TypeVar("E", bound="Entity")


@lru_cache
def _get_primary_key(entity_type: type[Entity]) -> sa.Column[Any]:
    """Return the first primary-key column of *entity_type*'s table (cached)."""
    table = get_table(entity_type)
    try:
        return next(iter(table.primary_key))
    except StopIteration:
        raise ConfigurationError(f"Table {table.name!r} has no primary key") from None


@lru_cache
def _get_table_name(entity_type: type[Entity]) -> str:
    """Return the table name of *entity_type* (cached)."""
    return get_table(entity_type).name


def get_table(entity_type: type[Entity]) -> sa.Table:
    """Return the ``sa.Table`` an entity type is mapped onto.

    Raises:
        ConfigurationError: If the class declares no ``__table__``.
    """
    table = getattr(entity_type, "__table__", None)
    if not isinstance(table, sa.Table):
        raise ConfigurationError(f"{entity_type.__name__} does not declare a __table__")

    return table


def get_table_name(entity_type: type[Entity]) -> str:
    """Get the table name for an entity type.

    Args:
        entity_type: Entity subclass with a ``__table__``.

    Returns:
        The table name as a string.
    """
    return _get_table_name(entity_type)


def get_primary_key(entity_type: type[Entity]) -> sa.Column[Any]:
    """Get the primary key column for an entity type.

    Args:
        entity_type: Entity subclass with a ``__table__``.

    Returns:
        The primary key column.
    """
    return _get_primary_key(entity_type)


def get_column(table: sa.Table, name: str) -> sa.Column[Any]:
    """Look up column *name* on *table*, raising ``ConfigurationError`` if absent."""
    try:
        return table.c[name]
    except KeyError:
        raise ConfigurationError(
            f"Column {name!r} not found on table {table.name!r}. "
            f"Available: {[c.key for c in table.c]}"
        ) from None


def extract_key(entity: Entity, column: str) -> Any:
    """Return the value *entity* holds for *column*, ``None`` if it was never set."""
    return vars(entity).get(column)


def distinct_keys(entities: Iterable[Entity], column: str) -> tuple[Any, ...]:
    """Collect the distinct non-null values of *column*, keeping first-seen order."""
    seen: dict[Any, None] = {}
    for entity in entities:
        value = extract_key(entity, column)
        if value is not None:
            seen.setdefault(value, None)

    return tuple(seen)


def group_by_key(entities: Iterable[E], column: str) -> dict[Any, list[E]]:
    """Group *entities* by their value of *column*, preserving order within groups."""
    groups: dict[Any, list[E]] = {}
    for entity in entities:
        groups.setdefault(extract_key(entity, column), []).append(entity)

    return groups


def unique(entities: Iterable[E]) -> list[E]:
    """Drop repeated instances (by identity) keeping first-seen order."""
    seen: set[int] = set()
    out: list[E] = []
    for entity in entities:
        if id(entity) not in seen:
            seen.add(id(entity))
            out.append(entity)

    return out


def flatten(values: Iterable[Any]) -> Sequence[Any]:
    """Flatten loaded relationship values (entities, lists or ``None``) into entities."""
    out: list[Any] = []
    for value in values:
        if value is None:
            continue
        if isinstance(value, list):
            out.extend(value)
        else:
            out.append(value)

    return unique(out)
