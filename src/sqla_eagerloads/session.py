from __future__ import annotations

import builtins
import logging
from collections.abc import AsyncIterator, Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any, TypeVar

import anyio

from .config import Config
from .datastructures import frozendict
from .entity import Entity, EntityFactory, reset_relations
from .exceptions import TimeoutError  # noqa: A004
from .executor import Executor, FetchRequest
from .guard import LazyLoader
from .hydrator import Hydrator, Observer
from .keys import extract_key, get_primary_key, get_table
from .loader import BatchLoader
from .planner import EagerLoadPlanner
from .registry import Registry


logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


class Session:
    """Entry point tying the loading components together.

    Example::

        registry = get_registry(Base)
        session = Session(SQLAlchemyExecutor(engine), registry, config=Config.strict())

        customers = await session.fetch(Customer, loads=("orders", "latest_order"))
        branches = await session.fetch(Branch, where={"region": "eu"}, loads=("sales",))

    Args:
        executor: Query execution collaborator.
        registry: Registry of the entities this session handles.
        config: Strictness and timeout settings.
        observers: Observers notified, in order, on retrieval and hydration.
    """

    def __init__(
        self,
        executor: Executor,
        registry: Registry,
        *,
        config: Config = Config(),
        observers: Sequence[Observer] = (),
    ) -> None:
        self.executor = executor
        self.registry = registry
        self.config = config
        self.observers = tuple(observers)
        self.factory = EntityFactory(
            strict_attributes=config.strict_attributes,
            strict_missing_attributes=config.strict_missing_attributes,
            on_build=(self._attach, self._retrieved),
        )
        self.loader = BatchLoader(executor, registry, self.factory)
        self.hydrator = Hydrator(registry, self.observers)
        self.planner = EagerLoadPlanner(
            registry, self.loader, self.hydrator, concurrent=config.concurrent_paths
        )
        self.guard = LazyLoader(
            registry, self.loader, self.hydrator, strict=config.strict_lazy_loading
        )

    def create(self, entity_type: type[E], **attrs: Any) -> E:
        """Instantiate *entity_type* with its defaults and attach it to this session."""
        entity = entity_type(**attrs)
        entity.__dict__["_strict_attributes"] = self.config.strict_missing_attributes
        self._attach(entity)

        return entity

    async def fetch(
        self,
        entity_type: type[E],
        *,
        where: Mapping[str, Any] | None = None,
        loads: Sequence[str] = (),
        order_by: tuple[str, ...] = (),
        limit: int | None = None,
    ) -> list[E]:
        """Fetch root entities and eager-load *loads* on them.

        Args:
            entity_type: Root entity type.
            where: Column filters; list/tuple/set values become IN-sets.
            loads: Dotted relationship paths to eager-load.
            order_by: Root columns to order by, ``-`` prefix for descending.
            limit: Maximum number of roots.
        """
        self._check_paths(entity_type, loads)
        request = FetchRequest(
            table=get_table(entity_type),
            where=_normalize_where(where),
            order_by=order_by,
            limit=limit,
        )
        with self._time_budget():
            entities = self.factory.build_all(entity_type, await self.executor.fetch(request))
            await self.planner.load(entities, loads)

        return entities

    async def load(self, entities: Sequence[E], *paths: str) -> Sequence[E]:
        """Eager-load *paths* on already materialized *entities*.

        Only slots that are not loaded yet are queried.
        """
        with self._time_budget():
            await self.planner.load(entities, paths)

        return entities

    async def access(self, entity: Entity, name: str) -> Any:
        """Return relationship *name* of *entity*, lazy loading it if allowed."""
        with self._time_budget():
            return await self.guard.access(entity, name)

    def invalidate(self, entity: Entity, *names: str) -> None:
        """Reset relationship slots so the next access or eager load queries again."""
        reset_relations(entity, *names)

    async def chunk_by_id(
        self,
        entity_type: type[E],
        size: int,
        *,
        where: Mapping[str, Any] | None = None,
        loads: Sequence[str] = (),
    ) -> AsyncIterator[list[E]]:
        """Yield lists of at most *size* entities in primary-key order.

        Uses keyset pagination, so rows inserted behind the cursor are never
        returned twice. Each chunk is eager loaded before it is yielded.
        """
        if size < 1:
            raise ValueError("chunk size must be at least 1")

        self._check_paths(entity_type, loads)
        table = get_table(entity_type)
        pk = get_primary_key(entity_type).key
        after: Any = None
        while True:
            request = FetchRequest(
                table=table, where=_normalize_where(where), after=after, limit=size
            )
            with self._time_budget():
                chunk = self.factory.build_all(entity_type, await self.executor.fetch(request))
                if not chunk:
                    return
                await self.planner.load(chunk, loads)

            yield chunk
            if len(chunk) < size:
                return
            after = extract_key(chunk[-1], pk)

    async def lazy_by_id(
        self,
        entity_type: type[E],
        size: int = 1000,
        *,
        where: Mapping[str, Any] | None = None,
        loads: Sequence[str] = (),
    ) -> AsyncIterator[E]:
        """Yield entities one at a time, fetching them in chunks of *size*."""
        async for chunk in self.chunk_by_id(entity_type, size, where=where, loads=loads):
            for entity in chunk:
                yield entity

    def _check_paths(self, entity_type: type[Entity], paths: Sequence[str]) -> None:
        # Bad paths must fail before the root query runs.
        for path in paths:
            self.registry.resolve_path(entity_type, path)

    @contextmanager
    def _time_budget(self) -> Iterator[None]:
        if self.config.timeout is None:
            yield
            return

        try:
            with anyio.fail_after(self.config.timeout):
                yield
        except builtins.TimeoutError as exc:
            if isinstance(exc, TimeoutError):
                raise
            raise TimeoutError(f"Operation exceeded {self.config.timeout}s") from exc

    def _attach(self, entity: Entity) -> None:
        entity.__dict__["_session"] = self

    def _retrieved(self, entity: Entity) -> None:
        for observer in self.observers:
            try:
                observer.retrieved(entity)
            except Exception:  # noqa: BLE001
                logger.warning("Observer %r failed on retrieval of %r", observer, entity, exc_info=True)


def _normalize_where(where: Mapping[str, Any] | None) -> frozendict[str, Any]:
    return frozendict({
        column: tuple(value) if isinstance(value, (list, tuple, set, frozenset)) else value
        for column, value in (where or {}).items()
    })
