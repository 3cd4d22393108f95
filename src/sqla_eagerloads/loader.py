from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from .datastructures import frozendict
from .entity import Entity, EntityFactory
from .executor import Executor, FetchRequest
from .keys import distinct_keys, extract_key, get_column, get_table, group_by_key, unique
from .registry import Registry
from .relationship import Relationship, SelectionRule


logger = logging.getLogger(__name__)


class BatchLoader:
    """Fetches one relationship for a whole set of parents at once.

    Direct kinds (many, one, one-of-many) cost one request; through kinds
    cost two: intermediates by the parents' key, then targets by the
    intermediates' key. An intermediate declared as one-of-many keeps only
    its selected row per parent. Nothing is attached to the parents here; the result
    maps each parent key to its related value(s) and is handed to the
    :class:`~sqla_eagerloads.hydrator.Hydrator`.
    """

    def __init__(self, executor: Executor, registry: Registry, factory: EntityFactory) -> None:
        self.executor = executor
        self.registry = registry
        self.factory = factory

    async def load(
        self,
        parents: Sequence[Entity],
        relationship: Relationship,
    ) -> Mapping[Any, Entity | list[Entity]]:
        """Load *relationship* for every entity in *parents*.

        Args:
            parents: Parent entities; duplicates are allowed.
            relationship: Bound descriptor declared on the parents' type.

        Returns:
            Mapping parent key -> list of entities (collection kinds) or
            single entity (singular kinds). Parents with no related rows are
            absent from the mapping.

        Raises:
            ConfigurationError: If a join key names a non-existent column.
            QueryError: Propagated unchanged from the executor.
            MappingError: If a row cannot be converted into an entity.
        """
        if relationship.through is not None:
            grouped = await self._load_through(parents, relationship)
        else:
            grouped = await self._fetch_grouped(
                parents,
                local_key=relationship.local_key,
                target=self.registry.target(relationship),
                foreign_key=relationship.foreign_key,
                where=relationship.where,
                order_by=relationship.order_by,
                selection=relationship.selection,
            )

        if relationship.uselist:
            return grouped

        return {key: children[0] for key, children in grouped.items() if children}

    async def _load_through(
        self,
        parents: Sequence[Entity],
        relationship: Relationship,
    ) -> dict[Any, list[Entity]]:
        first = relationship.through
        assert first is not None

        intermediates = await self._fetch_grouped(
            parents,
            local_key=first.local_key,
            target=self.registry.target(first),
            foreign_key=first.foreign_key,
            where=first.where,
            order_by=first.order_by,
            selection=first.selection,
        )
        if not intermediates:
            return {}

        finals = await self._fetch_grouped(
            unique(child for children in intermediates.values() for child in children),
            local_key=relationship.local_key,
            target=self.registry.target(relationship),
            foreign_key=relationship.foreign_key,
            where=relationship.where,
            order_by=relationship.order_by,
        )

        composed: dict[Any, list[Entity]] = {}
        for key, through_children in intermediates.items():
            reached = unique(
                final
                for child in through_children
                for final in finals.get(extract_key(child, relationship.local_key), ())
            )
            if reached:
                composed[key] = reached

        return composed

    async def _fetch_grouped(
        self,
        parents: Sequence[Entity],
        *,
        local_key: str,
        target: type[Entity],
        foreign_key: str,
        where: Mapping[str, Any] = frozendict(),
        order_by: tuple[str, ...] = (),
        selection: SelectionRule | None = None,
    ) -> dict[Any, list[Entity]]:
        table = get_table(target)
        get_column(table, foreign_key)
        for parent_type in {type(parent) for parent in parents}:
            get_column(get_table(parent_type), local_key)

        keys = distinct_keys(parents, local_key)
        if not keys:
            logger.debug("No %s keys to load %s for; skipping query", local_key, table.name)
            return {}

        request = FetchRequest(
            table=table,
            where=frozendict({**where, foreign_key: keys}),
            partition_by=foreign_key if selection is not None else None,
            selection=selection,
            order_by=order_by,
        )
        rows = await self.executor.fetch(request)
        children = self.factory.build_all(target, rows)
        logger.debug("Loaded %d %s rows for %d keys", len(children), table.name, len(keys))

        return group_by_key(children, foreign_key)
