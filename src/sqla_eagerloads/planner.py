from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

import anyio

from .datastructures import LoadBatch
from .entity import Entity, get_slot, is_loaded
from .exceptions import ConfigurationError, LoadCancelledError
from .hydrator import Hydrator
from .keys import extract_key, flatten, unique
from .loader import BatchLoader
from .registry import Registry


logger = logging.getLogger(__name__)


class EagerLoadPlanner:
    """Orders batch loads for a set of dotted relationship paths.

    Paths are merged into a trie of :class:`LoadBatch` nodes, so
    ``("orders.items", "orders.payments")`` loads ``orders`` once. The trie is
    walked breadth-first: every batch at depth N+1 receives the children
    produced by its parent batch at depth N, and batches at the same depth
    may run concurrently. Query count is therefore the number of distinct
    (path prefix, relationship) pairs, whatever the number of rows.

    Loading is atomic per path: results are staged and only committed for
    batches lying on a path whose every hop succeeded. Other attempted
    batches are marked failed and the first path error is raised.
    """

    def __init__(
        self,
        registry: Registry,
        loader: BatchLoader,
        hydrator: Hydrator,
        *,
        concurrent: bool = True,
    ) -> None:
        self.registry = registry
        self.loader = loader
        self.hydrator = hydrator
        self.concurrent = concurrent

    def plan(
        self,
        entity_type: type[Entity],
        paths: Sequence[str],
    ) -> tuple[list[LoadBatch], dict[str, LoadBatch]]:
        """Build the batch trie for *paths* starting at *entity_type*.

        Returns:
            ``(top-level batches, {requested path: its last batch})``.

        Raises:
            ConfigurationError: If a path does not resolve.
        """
        top: dict[str, LoadBatch] = {}
        terminals: dict[str, LoadBatch] = {}

        for path in paths:
            siblings = top
            batch: LoadBatch | None = None
            prefix = ""
            for depth, relationship in enumerate(self.registry.resolve_path(entity_type, path)):
                prefix = f"{prefix}.{relationship.name}" if prefix else relationship.name
                batch = siblings.get(relationship.name)
                if batch is None:
                    batch = siblings[relationship.name] = LoadBatch(
                        path=prefix, relationship=relationship, depth=depth
                    )
                siblings = batch.children

            assert batch is not None
            terminals.setdefault(path, batch)

        return list(top.values()), terminals

    async def load(self, roots: Sequence[Entity], paths: Sequence[str]) -> None:
        """Eager-load *paths* on *roots*.

        Parents whose slot is already loaded are not queried again.

        Raises:
            ConfigurationError: Bad path or mixed root types, before any query.
            EagerLoadError: The first error of a failed path, after the
                independent paths were committed.
        """
        entities = unique(roots)
        if not entities or not paths:
            return

        entity_type = type(entities[0])
        if any(type(entity) is not entity_type for entity in entities):
            raise ConfigurationError("Eager-loaded roots must all share one entity type")

        top, terminals = self.plan(entity_type, paths)
        for batch in top:
            batch.parents = entities

        attempted: list[LoadBatch] = []
        level = top
        try:
            while level:
                attempted.extend(level)
                await self._run_level(level)
                level = [child for batch in level if batch.succeeded for child in self._descend(batch)]
        except anyio.get_cancelled_exc_class():
            for batch in attempted:
                self.hydrator.fail(self._unloaded(batch), batch.relationship, LoadCancelledError(batch.path))
            logger.debug("Eager load of %s cancelled", list(terminals))
            raise

        committed = self._commit(top, terminals)
        errors = [error for path in terminals if (error := self._path_error(path, top)) is not None]
        for batch in attempted:
            if id(batch) not in committed:
                error = self._subtree_error(batch)
                if error is not None:
                    self.hydrator.fail(self._unloaded(batch), batch.relationship, error)
                    logger.debug("Batch %s failed: %r", batch.path, error)

        if errors:
            raise errors[0]

    async def _run_level(self, level: Sequence[LoadBatch]) -> None:
        if self.concurrent and len(level) > 1:
            async with anyio.create_task_group() as tg:
                for batch in level:
                    tg.start_soon(self._run_batch, batch)
        else:
            for batch in level:
                await self._run_batch(batch)

    async def _run_batch(self, batch: LoadBatch) -> None:
        batch.started = True
        batch.pending = self._unloaded(batch)
        if not batch.pending:
            logger.debug("Batch %s already loaded; skipping", batch.path)
            batch.groups = {}
            return

        try:
            batch.groups = await self.loader.load(batch.pending, batch.relationship)
        except Exception as exc:  # noqa: BLE001
            batch.error = exc

    def _unloaded(self, batch: LoadBatch) -> list[Entity]:
        return [
            parent
            for parent in batch.parents
            if id(parent) not in batch.covered and not is_loaded(parent, batch.relationship.name)
        ]

    def _descend(self, batch: LoadBatch) -> list[LoadBatch]:
        if not batch.children:
            return []

        relationship = batch.relationship
        hop = relationship.through or relationship
        groups = batch.groups or {}
        pending = {id(parent) for parent in batch.pending}
        values = [
            groups.get(extract_key(parent, hop.local_key))
            if id(parent) in pending
            else batch.covered.get(id(parent)) or get_slot(parent, relationship.name).value
            for parent in batch.parents
        ]
        children = list(flatten(values))
        # Children of queried parents get their inverse as a back-reference on commit.
        inverse_covered: dict[int, Entity] = {}
        if relationship.inverse is not None:
            for parent in batch.pending:
                for child in flatten([groups.get(extract_key(parent, hop.local_key))]):
                    inverse_covered[id(child)] = parent
        for child in batch.children.values():
            child.parents = children
            if relationship.inverse is not None and child.relationship.name == relationship.inverse:
                child.covered = inverse_covered

        return list(batch.children.values())

    def _commit(self, top: Sequence[LoadBatch], terminals: dict[str, LoadBatch]) -> set[int]:
        ordered = sorted(_walk(top), key=lambda b: b.depth)
        # Values are resolved before any slot is touched; a batch whose
        # values cannot be built fails like a batch whose query failed.
        staged: dict[int, list[tuple[Entity, Any]]] = {}
        for batch in ordered:
            if batch.succeeded and batch.pending:
                try:
                    staged[id(batch)] = self.hydrator.resolve(
                        batch.pending, batch.groups or {}, batch.relationship
                    )
                except Exception as exc:  # noqa: BLE001
                    batch.error = exc

        committed: set[int] = set()
        for path in terminals:
            chain = self._chain(path, top)
            if all(batch.succeeded for batch in chain):
                committed.update(id(batch) for batch in chain)

        for batch in ordered:
            if id(batch) in committed and id(batch) in staged:
                self.hydrator.apply(staged[id(batch)], batch.relationship)

        return committed

    def _chain(self, path: str, top: Sequence[LoadBatch]) -> list[LoadBatch]:
        siblings = {batch.relationship.name: batch for batch in top}
        chain: list[LoadBatch] = []
        for segment in path.split("."):
            batch = siblings[segment]
            chain.append(batch)
            siblings = batch.children

        return chain

    def _path_error(self, path: str, top: Sequence[LoadBatch]) -> Exception | None:
        return next((batch.error for batch in self._chain(path, top) if batch.error), None)

    def _subtree_error(self, batch: LoadBatch) -> Exception | None:
        return next((b.error for b in _walk([batch]) if b.error is not None), None)


def _walk(batches: Sequence[LoadBatch]) -> list[LoadBatch]:
    out: list[LoadBatch] = []
    stack = list(reversed(batches))
    while stack:
        batch = stack.pop()
        out.append(batch)
        stack.extend(reversed(list(batch.children.values())))

    return out
