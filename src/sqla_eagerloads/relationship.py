"""Declarative relationship descriptors.

A ``Relationship`` is declared once as a class attribute of an entity and is
shared, read-only, by every instance::

    class Customer(Base):
        __table__ = customers

        orders = has_many("Order", foreign_key="customer_id", inverse="customer")
        latest_order = latest_of_many("Order", foreign_key="customer_id")


    class Branch(Base):
        __table__ = branches

        employees = has_many("Employee", foreign_key="branch_id")
        sales = has_many_through("Sale", through=employees, second_key="employee_id")

Descriptors are bound to their owner class (name + owner) when the class is
created; column names are checked against the tables once per
:class:`~sqla_eagerloads.registry.Registry`.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Literal, Union, overload

from .datastructures import frozendict
from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .entity import Entity


Target = Union[str, "type[Entity]"]
Aggregate = Literal["max", "min"]


class RelationshipKind(Enum):
    """Recognized relationship kinds."""

    MANY = "many"
    ONE = "one"
    ONE_OF_MANY = "one_of_many"
    ONE_THROUGH = "one_through"
    MANY_THROUGH = "many_through"

    @property
    def uselist(self) -> bool:
        return self in (RelationshipKind.MANY, RelationshipKind.MANY_THROUGH)

    @property
    def is_through(self) -> bool:
        return self in (RelationshipKind.ONE_THROUGH, RelationshipKind.MANY_THROUGH)


@dataclass(frozen=True, slots=True)
class SelectionRule:
    """Pick one row per foreign-key group: the one with the max/min *column*."""

    column: str
    aggregate: Aggregate = "max"

    def __post_init__(self) -> None:
        if not self.column:
            raise ConfigurationError("Selection rule column must not be empty")
        if self.aggregate not in ("max", "min"):
            raise ConfigurationError(
                f"Unknown selection aggregate {self.aggregate!r}; expected 'max' or 'min'"
            )


def latest(column: str = "id") -> SelectionRule:
    """Selection rule keeping the row with the greatest *column*."""
    return SelectionRule(column, "max")


def oldest(column: str = "id") -> SelectionRule:
    """Selection rule keeping the row with the smallest *column*."""
    return SelectionRule(column, "min")


@dataclass(frozen=True, eq=False)
class Relationship:
    """Immutable declaration of one relationship.

    For direct kinds, ``local_key`` is a column of the owner and
    ``foreign_key`` a column of the target. For through kinds, ``through``
    describes the first hop (owner -> intermediate) and ``local_key`` /
    ``foreign_key`` describe the second hop (intermediate -> target).

    Accessing the attribute on an instance returns the loaded value; see
    :meth:`__get__`.
    """

    kind: RelationshipKind
    target: Target
    local_key: str
    foreign_key: str
    through: Relationship | None = None
    selection: SelectionRule | None = None
    inverse: str | None = None
    where: Mapping[str, Any] = dataclasses.field(default_factory=frozendict)
    order_by: tuple[str, ...] = ()
    default: Mapping[str, Any] | bool | None = None
    name: str = ""
    owner: type[Entity] | None = None

    def __post_init__(self) -> None:
        if not self.local_key or not self.foreign_key:
            raise ConfigurationError(
                f"Relationship to {self.target_name} needs non-empty local and foreign keys"
            )
        if self.kind.is_through:
            if self.through is None:
                raise ConfigurationError(
                    f"{self.kind.value} relationship to {self.target_name} needs an "
                    "intermediate relationship"
                )
            if self.through.kind.is_through:
                raise ConfigurationError("The intermediate relationship cannot itself be a through")
            if self.inverse is not None:
                raise ConfigurationError("Through relationships cannot declare an inverse")
        elif self.through is not None:
            raise ConfigurationError(
                f"Only through kinds take an intermediate relationship, not {self.kind.value}"
            )
        if self.kind is RelationshipKind.ONE_OF_MANY and self.selection is None:
            raise ConfigurationError("one_of_many relationships need a selection rule")
        if self.kind is not RelationshipKind.ONE_OF_MANY and self.selection is not None:
            raise ConfigurationError("Only one_of_many relationships take a selection rule")
        if self.has_default and self.kind.uselist:
            raise ConfigurationError("Default models only apply to singular relationships")
        if not isinstance(self.where, frozendict):
            object.__setattr__(self, "where", frozendict(self.where))
        object.__setattr__(self, "order_by", tuple(self.order_by))

    @property
    def target_name(self) -> str:
        return self.target if isinstance(self.target, str) else self.target.__name__

    @property
    def uselist(self) -> bool:
        return self.kind.uselist

    @property
    def has_default(self) -> bool:
        return self.default is not None and self.default is not False

    def bind(
        self,
        name: str,
        owner: type[Entity],
        declared: Mapping[int, Relationship] | None = None,
    ) -> Relationship:
        """Return a copy bound to attribute *name* of class *owner*.

        *declared* maps ``id()`` of unbound descriptors of the same class body to
        their bound copies, so ``through=employees`` reuses the bound ``employees``.
        """
        through = self.through
        if through is not None:
            if through.owner is None:
                through = (declared or {}).get(id(through)) or through.bind(f"{name}_through", owner)
            elif not issubclass(owner, through.owner):
                raise ConfigurationError(
                    f"Intermediate relationship of {owner.__name__}.{name} starts at "
                    f"{through.owner.__name__}, expected {owner.__name__}"
                )

        return dataclasses.replace(self, name=name, owner=owner, through=through)

    @overload
    def __get__(self, instance: None, owner: type[Any]) -> Relationship: ...

    @overload
    def __get__(self, instance: Entity, owner: type[Any]) -> Any: ...

    def __get__(self, instance: Entity | None, owner: type[Any]) -> Any:
        if instance is None:
            return self

        return instance._read_relation(self.name)  # noqa: SLF001

    def __set__(self, instance: Entity, value: Any) -> None:
        instance._write_relation(self.name, value)  # noqa: SLF001

    def __repr__(self) -> str:
        owner = self.owner.__name__ if self.owner is not None else "?"
        return f"<Relationship {owner}.{self.name or '?'} {self.kind.value} -> {self.target_name}>"


def has_many(
    target: Target,
    foreign_key: str,
    local_key: str = "id",
    *,
    inverse: str | None = None,
    where: Mapping[str, Any] | None = None,
    order_by: tuple[str, ...] = (),
) -> Relationship:
    """One-to-many: target rows whose *foreign_key* equals the owner's *local_key*.

    Args:
        target: Target entity class, or its class/table name.
        foreign_key: Column on the target referencing the owner.
        local_key: Column on the owner. Defaults to ``"id"``.
        inverse: Relationship on the target to fill with a back-reference
            to the owner during hydration.
        where: Extra equality constraints on the target.
        order_by: Target columns to order each collection by; prefix with
            ``-`` for descending.
    """
    return Relationship(
        RelationshipKind.MANY,
        target,
        local_key,
        foreign_key,
        inverse=inverse,
        where=frozendict(where or {}),
        order_by=order_by,
    )


def has_one(
    target: Target,
    foreign_key: str,
    local_key: str = "id",
    *,
    inverse: str | None = None,
    where: Mapping[str, Any] | None = None,
    default: Mapping[str, Any] | bool | None = None,
) -> Relationship:
    """One-to-one, the target holding the foreign key.

    ``default`` builds an unsaved target (with the given attributes when a
    mapping is passed) for owners that have no related row.
    """
    return Relationship(
        RelationshipKind.ONE,
        target,
        local_key,
        foreign_key,
        inverse=inverse,
        where=frozendict(where or {}),
        default=default,
    )


def belongs_to(
    target: Target,
    foreign_key: str,
    owner_key: str = "id",
    *,
    default: Mapping[str, Any] | bool | None = None,
) -> Relationship:
    """Inverse of ``has_many``/``has_one``: the owner holds *foreign_key*."""
    return Relationship(RelationshipKind.ONE, target, foreign_key, owner_key, default=default)


def has_one_of_many(
    target: Target,
    foreign_key: str,
    rule: SelectionRule,
    local_key: str = "id",
    *,
    inverse: str | None = None,
    where: Mapping[str, Any] | None = None,
) -> Relationship:
    """A single row out of a one-to-many group, chosen by *rule*."""
    return Relationship(
        RelationshipKind.ONE_OF_MANY,
        target,
        local_key,
        foreign_key,
        selection=rule,
        inverse=inverse,
        where=frozendict(where or {}),
    )


def latest_of_many(
    target: Target, foreign_key: str, column: str = "id", local_key: str = "id", **kw: Any
) -> Relationship:
    return has_one_of_many(target, foreign_key, latest(column), local_key, **kw)


def oldest_of_many(
    target: Target, foreign_key: str, column: str = "id", local_key: str = "id", **kw: Any
) -> Relationship:
    return has_one_of_many(target, foreign_key, oldest(column), local_key, **kw)


def _through(
    kind: RelationshipKind,
    target: Target,
    through: Target | Relationship,
    first_key: str | None,
    second_key: str,
    local_key: str,
    second_local_key: str,
) -> Relationship:
    if isinstance(through, Relationship):
        first = through
    else:
        if not first_key:
            raise ConfigurationError(
                f"first_key is required when {target!r} goes through an entity name"
            )
        first = Relationship(RelationshipKind.MANY, through, local_key, first_key)

    return Relationship(kind, target, second_local_key, second_key, through=first)


def has_one_through(
    target: Target,
    through: Target | Relationship,
    second_key: str,
    first_key: str | None = None,
    local_key: str = "id",
    second_local_key: str = "id",
) -> Relationship:
    """Single target reached through an intermediate entity.

    Args:
        target: Final entity.
        through: Intermediate entity (class or name), or a relationship of
            the owner leading to it.
        second_key: Column on the target referencing the intermediate.
        first_key: Column on the intermediate referencing the owner;
            required when *through* is not a relationship.
        local_key: Owner column matched by *first_key*.
        second_local_key: Intermediate column matched by *second_key*.
    """
    return _through(
        RelationshipKind.ONE_THROUGH,
        target,
        through,
        first_key,
        second_key,
        local_key,
        second_local_key,
    )


def has_many_through(
    target: Target,
    through: Target | Relationship,
    second_key: str,
    first_key: str | None = None,
    local_key: str = "id",
    second_local_key: str = "id",
) -> Relationship:
    """Collection of targets reached through an intermediate entity.

    Same arguments as :func:`has_one_through`.
    """
    return _through(
        RelationshipKind.MANY_THROUGH,
        target,
        through,
        first_key,
        second_key,
        local_key,
        second_local_key,
    )
