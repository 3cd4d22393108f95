from __future__ import annotations

import logging
from typing import Any

import anyio

from .datastructures import SlotState
from .entity import Entity, get_slot
from .exceptions import LazyAccessViolation, LoadCancelledError
from .hydrator import Hydrator
from .loader import BatchLoader
from .registry import Registry


logger = logging.getLogger(__name__)


class LazyLoader:
    """Guards access to relationships that were not eagerly loaded.

    Per relationship slot::

        UNLOADED --access (permissive)--> LOADING --> LOADED | FAILED
        UNLOADED --access (strict)------> LazyAccessViolation, stays UNLOADED

    ``LOADED`` and ``FAILED`` are terminal until the slot is reset. The
    ``UNLOADED -> LOADING`` transition holds the slot's lock, so concurrent
    accessors of one slot share a single query.

    Args:
        registry: Registry resolving relationship names.
        loader: Batch loader used with a single parent.
        hydrator: Hydrator attaching the loaded value.
        strict: Fail fast instead of loading.
    """

    def __init__(
        self,
        registry: Registry,
        loader: BatchLoader,
        hydrator: Hydrator,
        *,
        strict: bool = False,
    ) -> None:
        self.registry = registry
        self.loader = loader
        self.hydrator = hydrator
        self.strict = strict

    async def access(self, entity: Entity, name: str) -> Any:
        relationship = self.registry.relationship(type(entity), name)
        slot = get_slot(entity, name)

        state = slot.state
        if state is SlotState.LOADED:
            return slot.value
        if state is SlotState.FAILED and slot.error is not None:
            raise slot.error
        if self.strict:
            raise LazyAccessViolation(type(entity), name)

        async with slot.lock:
            # Another accessor may have finished while we waited.
            state = slot.state
            if state is SlotState.LOADED:
                return slot.value
            if state is SlotState.FAILED and slot.error is not None:
                raise slot.error

            logger.debug("Lazy loading %s.%s for %r", type(entity).__name__, name, entity)
            slot.begin()
            try:
                groups = await self.loader.load([entity], relationship)
                self.hydrator.hydrate([entity], groups, relationship)
            except anyio.get_cancelled_exc_class():
                slot.fail(LoadCancelledError(name))
                raise
            except Exception as exc:
                slot.fail(exc)
                raise

            return slot.value
