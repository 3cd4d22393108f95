from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .datastructures import SlotState
from .entity import Entity, get_slot, set_back_reference
from .exceptions import MappingError
from .keys import extract_key, unique
from .registry import Registry
from .relationship import Relationship


logger = logging.getLogger(__name__)


class Observer:
    """Base class for hydration observers.

    Override the hooks you need; observers are called in registration order
    and their failures are logged, never propagated.
    """

    def retrieved(self, entity: Entity) -> None:
        """Called after *entity* was built from a fetched row."""

    def hydrated(self, relationship: Relationship, parents: Sequence[Entity]) -> None:
        """Called after *relationship* was attached to *parents*."""


class Hydrator:
    """Attaches batch-loaded values to their parents.

    Args:
        registry: Registry used to resolve default-model targets.
        observers: Observers notified after every hydrated relationship.
    """

    def __init__(self, registry: Registry, observers: Sequence[Observer] = ()) -> None:
        self.registry = registry
        self.observers = tuple(observers)

    def hydrate(
        self,
        parents: Sequence[Entity],
        groups: Mapping[Any, Entity | list[Entity]],
        relationship: Relationship,
    ) -> None:
        """Mark *relationship* loaded on every parent.

        A parent whose key is absent from *groups* gets an empty list or
        ``None`` (or its default model). When the descriptor declares an
        inverse, every child gets a back-reference to the parent instance.
        Either every parent is hydrated or, if a value cannot be built, none
        is.
        """
        self.apply(self.resolve(parents, groups, relationship), relationship)

    def resolve(
        self,
        parents: Sequence[Entity],
        groups: Mapping[Any, Entity | list[Entity]],
        relationship: Relationship,
    ) -> list[tuple[Entity, Any]]:
        """Compute the value of *relationship* for every parent without attaching it.

        Raises:
            MappingError: If a default model cannot be built.
        """
        return [(parent, self._value_for(parent, groups, relationship)) for parent in unique(parents)]

    def apply(self, staged: Sequence[tuple[Entity, Any]], relationship: Relationship) -> None:
        """Attach values computed by :meth:`resolve` and notify observers."""
        for parent, value in staged:
            get_slot(parent, relationship.name).set(value)
            if relationship.inverse is not None:
                children = value if isinstance(value, list) else (value,) if value is not None else ()
                for child in children:
                    set_back_reference(child, relationship.inverse, parent)

        self.notify(relationship, [parent for parent, _ in staged])

    def fail(
        self,
        parents: Sequence[Entity],
        relationship: Relationship,
        error: BaseException,
    ) -> None:
        """Mark *relationship* failed on every parent that is not already loaded."""
        for parent in unique(parents):
            slot = get_slot(parent, relationship.name)
            if slot.state is not SlotState.LOADED:
                slot.fail(error)

    def notify(self, relationship: Relationship, parents: Sequence[Entity]) -> None:
        for observer in self.observers:
            try:
                observer.hydrated(relationship, parents)
            except Exception:  # noqa: BLE001
                logger.warning(
                    "Observer %r failed after hydrating %r", observer, relationship, exc_info=True
                )

    def _value_for(
        self,
        parent: Entity,
        groups: Mapping[Any, Entity | list[Entity]],
        relationship: Relationship,
    ) -> Any:
        hop = relationship.through or relationship
        key = extract_key(parent, hop.local_key)
        found = groups.get(key) if key is not None else None

        if relationship.uselist:
            return list(found) if isinstance(found, list) else []
        if found is not None:
            return found
        if relationship.has_default:
            target = self.registry.target(relationship)
            attrs = relationship.default if isinstance(relationship.default, Mapping) else {}
            try:
                return target(**attrs)
            except (TypeError, ValueError) as exc:
                raise MappingError(target, f"default model failed: {exc}") from exc

        return None
