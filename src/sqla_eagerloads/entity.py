from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar

import sqlalchemy as sa

from .datastructures import Slot, SlotState, frozendict
from .exceptions import (
    ConfigurationError,
    DetachedEntityError,
    LazyAccessViolation,
    MappingError,
    MissingAttributeError,
    RelationshipNotLoadedError,
)
from .keys import get_primary_key
from .relationship import Relationship


if TYPE_CHECKING:
    from .session import Session


logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Entity")


class Entity:
    """Base class for mapped entities.

    Subclasses map onto a SQLAlchemy Core table and declare relationships as
    class attributes::

        class Order(Entity):
            __table__ = orders_table
            __defaults__ = {"status": "pending"}

            customer = belongs_to("Customer", foreign_key="customer_id")

    Column values live in the instance ``__dict__``; relationship values live
    in per-instance :class:`~sqla_eagerloads.datastructures.Slot` objects.
    Classes without a ``__table__`` act as abstract bases.
    """

    __table__: ClassVar[sa.Table]
    __defaults__: ClassVar[Mapping[str, Any]] = frozendict()
    __relationships__: ClassVar[Mapping[str, Relationship]] = frozendict()

    _slots: dict[str, Slot]
    _session: Session | None
    _strict_attributes: bool

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        table = vars(cls).get("__table__")
        relationships = dict(cls.__relationships__)
        declared: dict[int, Relationship] = {}

        for name, value in list(vars(cls).items()):
            if not isinstance(value, Relationship):
                continue
            if table is not None and name in table.c:
                raise ConfigurationError(
                    f"{cls.__name__}.{name} is both a column and a relationship"
                )
            bound = value.bind(name, cls, declared)
            declared[id(value)] = bound
            relationships[name] = bound
            setattr(cls, name, bound)

        cls.__relationships__ = frozendict(relationships)
        if not isinstance(cls.__defaults__, frozendict):
            cls.__defaults__ = frozendict(cls.__defaults__)

    def __init__(self, **attrs: Any) -> None:
        table = getattr(type(self), "__table__", None)
        if table is None:
            raise TypeError(f"{type(self).__name__} is abstract: it declares no __table__")

        for key in attrs:
            if key not in table.c:
                raise TypeError(f"{key!r} is an invalid keyword argument for {type(self).__name__}")

        values = {
            key: default() if callable(default) else default
            for key, default in self.__defaults__.items()
            if key not in attrs
        }
        values.update(attrs)

        state = self.__dict__
        state.update(values)
        state["_slots"] = {}
        state["_session"] = None
        state["_strict_attributes"] = False

    def __getattr__(self, name: str) -> Any:
        # Only reached for names missing from __dict__ and the class.
        table = getattr(type(self), "__table__", None)
        if name.startswith("_") or table is None or name not in table.c:
            raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")
        if self.__dict__.get("_strict_attributes"):
            raise MissingAttributeError(type(self), name)

        return None

    def __repr__(self) -> str:
        pk = get_primary_key(type(self)).key
        return f"<{type(self).__name__} {pk}={self.__dict__.get(pk)!r}>"

    @property
    def awaitable_attrs(self) -> AwaitableAttrs:
        """Awaitable accessor that lazy loads relationships through the session.

        Example::

            orders = await customer.awaitable_attrs.orders
        """
        return AwaitableAttrs(self)

    def _slot(self, name: str) -> Slot:
        try:
            return self._slots[name]
        except KeyError:
            slot = self._slots[name] = Slot()
            return slot

    def _read_relation(self, name: str) -> Any:
        slot = self._slot(name)
        state = slot.state
        if state is SlotState.LOADED:
            return slot.value
        if state is SlotState.FAILED and slot.error is not None:
            raise slot.error

        session = self._session
        if session is not None and session.config.strict_lazy_loading:
            raise LazyAccessViolation(type(self), name)

        raise RelationshipNotLoadedError(type(self), name)

    def _write_relation(self, name: str, value: Any) -> None:
        if isinstance(value, (list, tuple)):
            value = list(value)

        self._slot(name).set(value)


class AwaitableAttrs:
    """Proxy returned by :attr:`Entity.awaitable_attrs`."""

    __slots__ = ("_entity",)

    def __init__(self, entity: Entity) -> None:
        self._entity = entity

    def __getattr__(self, name: str) -> Awaitable[Any]:
        entity = self._entity
        if name not in type(entity).__relationships__:
            raise AttributeError(f"{type(entity).__name__!r} has no relationship {name!r}")

        session = entity._session  # noqa: SLF001
        if session is None:
            raise DetachedEntityError(
                f"{entity!r} is not attached to a session; cannot load {name!r}"
            )

        return session.access(entity, name)


def get_slot(entity: Entity, name: str) -> Slot:
    """Return the relationship slot *name* of *entity*, creating it if needed."""
    return entity._slot(name)  # noqa: SLF001


def is_loaded(entity: Entity, name: str) -> bool:
    """Whether relationship *name* of *entity* is loaded."""
    return get_slot(entity, name).state is SlotState.LOADED


def set_relation(entity: Entity, name: str, value: Any) -> None:
    """Mark relationship *name* of *entity* loaded with *value*, without a query."""
    entity._write_relation(name, value)  # noqa: SLF001


def set_back_reference(child: Entity, name: str, parent: Entity) -> None:
    """Point *child*'s relationship *name* at *parent* through a weak reference."""
    get_slot(child, name).set(parent, weak=True)


def reset_relations(entity: Entity, *names: str) -> None:
    """Reset the given relationship slots (all of them when none given) to unloaded."""
    for name in names or tuple(entity._slots):  # noqa: SLF001
        get_slot(entity, name).reset()


class EntityFactory:
    """Converts raw rows into entity instances.

    Args:
        strict_attributes: Raise ``MappingError`` for row columns the table
            does not declare instead of discarding them.
        strict_missing_attributes: Make built entities raise when an unset
            column is read instead of returning ``None``.
        on_build: Callbacks run, in order, on every built entity.
    """

    def __init__(
        self,
        *,
        strict_attributes: bool = False,
        strict_missing_attributes: bool = False,
        on_build: Sequence[Callable[[Entity], None]] = (),
    ) -> None:
        self.strict_attributes = strict_attributes
        self.strict_missing_attributes = strict_missing_attributes
        self.on_build = tuple(on_build)

    def build(self, entity_type: type[E], row: Mapping[str, Any]) -> E:
        table = entity_type.__table__
        pk = get_primary_key(entity_type).key
        if row.get(pk) is None:
            raise MappingError(entity_type, f"row has no value for primary key {pk!r}")

        attrs: dict[str, Any] = {}
        for key, value in row.items():
            if key in table.c:
                attrs[key] = value
            elif self.strict_attributes:
                raise MappingError(entity_type, f"unknown column {key!r}")
            else:
                logger.debug("Discarding column %r while building %s", key, entity_type.__name__)

        try:
            entity = entity_type(**attrs)
        except (TypeError, ValueError) as exc:
            raise MappingError(entity_type, str(exc)) from exc

        entity.__dict__["_strict_attributes"] = self.strict_missing_attributes
        for callback in self.on_build:
            callback(entity)

        return entity

    def build_all(self, entity_type: type[E], rows: Sequence[Mapping[str, Any]]) -> list[E]:
        return [self.build(entity_type, row) for row in rows]
