from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from functools import lru_cache
from typing import Any, final

from .datastructures import frozendict
from .entity import Entity
from .exceptions import ConfigurationError
from .keys import _get_primary_key, _get_table_name, get_column, get_primary_key, get_table
from .relationship import Relationship


@final
class Registry:
    """Explicit lookup of entity types and their relationship descriptors.

    The registry is the single place relationship names are resolved: the
    planner, the batch loader and the lazy-access guard all ask it instead
    of inspecting entity classes. Every descriptor is validated when the
    registry is built, so a bad declaration fails before any query runs.

    Args:
        entities: Entity classes (with a ``__table__``) to register.

    Raises:
        ConfigurationError: On unresolvable targets, unknown columns
            (default-model attributes included), mismatched intermediate
            descriptors or invalid inverses.
    """

    __slots__ = ("_by_name", "_relationships", "_targets")

    def __init__(self, entities: Iterable[type[Entity]]) -> None:
        by_name: dict[str, type[Entity]] = {}
        for entity_type in entities:
            get_primary_key(entity_type)
            for name in (entity_type.__name__, get_table(entity_type).name):
                known = by_name.setdefault(name, entity_type)
                if known is not entity_type:
                    raise ConfigurationError(
                        f"Name {name!r} is used by both {known.__name__} and {entity_type.__name__}"
                    )

        self._by_name: Mapping[str, type[Entity]] = frozendict(by_name)
        self._relationships: Mapping[type[Entity], Mapping[str, Relationship]] = frozendict({
            entity_type: entity_type.__relationships__ for entity_type in set(by_name.values())
        })
        self._targets: dict[int, type[Entity]] = {}

        for relationships in self._relationships.values():
            for relationship in relationships.values():
                self._validate(relationship)

    @property
    def entities(self) -> Sequence[type[Entity]]:
        """Registered entity types."""
        return tuple(self._relationships)

    def entity(self, name: str) -> type[Entity]:
        """Look up an entity type by class name or table name."""
        try:
            return self._by_name[name]
        except KeyError:
            raise ConfigurationError(f"Unknown entity {name!r}") from None

    def get(self, entity_type: type[Entity]) -> Mapping[str, Relationship]:
        """Get relationships of *entity_type*, empty if it is not registered."""
        return self._relationships.get(entity_type, frozendict())

    def __getitem__(self, entity_type: type[Entity]) -> Mapping[str, Relationship]:
        """Look up relationships of *entity_type*, raising ``KeyError`` if unknown."""
        return self._relationships[entity_type]

    def __contains__(self, entity_type: object) -> bool:
        return entity_type in self._relationships

    def relationship(self, entity_type: type[Entity], name: str) -> Relationship:
        """Resolve relationship *name* declared on *entity_type*.

        Raises:
            ConfigurationError: If the type is unregistered or has no such relationship.
        """
        if entity_type not in self._relationships:
            raise ConfigurationError(f"{entity_type.__name__} is not registered")
        try:
            return self._relationships[entity_type][name]
        except KeyError:
            raise ConfigurationError(
                f"No relationship {name!r} on {entity_type.__name__}. "
                f"Available: {sorted(self._relationships[entity_type])}"
            ) from None

    def target(self, relationship: Relationship) -> type[Entity]:
        """Return the entity type *relationship* points at."""
        try:
            return self._targets[id(relationship)]
        except KeyError:
            return self._resolve_target(relationship)

    def intermediate(self, relationship: Relationship) -> type[Entity]:
        """Return the intermediate entity type of a through relationship."""
        if relationship.through is None:
            raise ConfigurationError(f"{relationship!r} has no intermediate relationship")

        return self.target(relationship.through)

    def resolve_path(self, entity_type: type[Entity], path: str) -> tuple[Relationship, ...]:
        """Resolve a dotted path like ``'orders.items.product'`` into descriptors.

        Every segment must be a relationship of the entity reached by the
        previous segment. Results are cached module-wide, which keeps this
        registry alive until :func:`cache_clear`.
        """
        return _resolve_dotted_path(self, entity_type, path)

    def _resolve_target(self, relationship: Relationship) -> type[Entity]:
        target = relationship.target
        entity_type = self.entity(target) if isinstance(target, str) else target
        if entity_type not in self._relationships:
            raise ConfigurationError(f"Target {entity_type.__name__} is not registered")

        self._targets[id(relationship)] = entity_type
        return entity_type

    def _validate(self, relationship: Relationship) -> None:
        owner = relationship.owner
        if owner is None:
            raise ConfigurationError(f"{relationship!r} is not bound to an entity")

        if relationship.through is not None:
            self._validate(relationship.through)
            source = self.intermediate(relationship)
        else:
            source = owner

        target = self.target(relationship)
        get_column(get_table(source), relationship.local_key)
        target_table = get_table(target)
        get_column(target_table, relationship.foreign_key)
        for column in relationship.where:
            get_column(target_table, column)
        for column in relationship.order_by:
            get_column(target_table, column.lstrip("-"))
        if relationship.selection is not None:
            get_column(target_table, relationship.selection.column)
        if isinstance(relationship.default, Mapping):
            for column in relationship.default:
                get_column(target_table, column)

        if relationship.inverse is not None:
            inverse = self.get(target).get(relationship.inverse)
            if inverse is None:
                raise ConfigurationError(
                    f"Inverse {relationship.inverse!r} of {relationship!r} is not a "
                    f"relationship of {target.__name__}"
                )
            if not issubclass(owner, self.target(inverse)):
                raise ConfigurationError(
                    f"Inverse {inverse!r} does not point back at {owner.__name__}"
                )


@lru_cache(maxsize=1028)
def _resolve_dotted_path(
    registry: Registry,
    entity_type: type[Entity],
    dotted: str,
) -> tuple[Relationship, ...]:
    """Resolve *dotted* from *entity_type* into a tuple of descriptors (cached).

    The cache is keyed on the registry instance, so a registry stays
    referenced here until it is evicted or :func:`cache_clear` is called.
    """
    if not dotted or any(not part for part in dotted.split(".")):
        raise ConfigurationError(f"Invalid relationship path {dotted!r}")

    result: list[Relationship] = []
    current = entity_type
    for segment in dotted.split("."):
        relationship = registry.get(current).get(segment)
        if relationship is None:
            raise ConfigurationError(
                f"No relationship '{segment}' on {current.__name__} "
                f"(resolving '{dotted}' from {entity_type.__name__})"
            )
        result.append(relationship)
        current = registry.target(relationship)

    return tuple(result)


def _mapped_subclasses(base: type[Entity]) -> list[type[Entity]]:
    found: list[type[Entity]] = []
    stack = [base]
    seen: set[type[Entity]] = set()
    while stack:
        cls = stack.pop()
        for sub in cls.__subclasses__():
            if sub in seen:
                continue
            seen.add(sub)
            stack.append(sub)
            if "__table__" in vars(sub):
                found.append(sub)

    return sorted(found, key=lambda cls: cls.__qualname__)


def get_registry(base: type[Entity]) -> Registry:
    """Build a registry from every table-bearing subclass of *base*.

    Args:
        base: Abstract entity base class shared by the application's entities.

    Returns:
        Validated registry.

    Example:
        >>> class Base(Entity):
        ...     pass
        >>> registry = get_registry(Base)
    """
    assert issubclass(base, Entity), "base must be a subclass of Entity"

    return Registry(_mapped_subclasses(base))


def cache_info() -> dict[str, Any]:
    """Return LRU cache statistics for all internal caches."""
    return {
        fn.__name__: fn.cache_info()
        for fn in (_resolve_dotted_path, _get_primary_key, _get_table_name)
    }


def cache_clear() -> None:
    """Clear all internal LRU caches."""
    for fn in (_resolve_dotted_path, _get_primary_key, _get_table_name):
        fn.cache_clear()
