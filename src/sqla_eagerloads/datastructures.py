from __future__ import annotations

import sys
import weakref
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeVar

import anyio


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self

if TYPE_CHECKING:
    from .relationship import Relationship


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Read-only mapping used for declarations shared between instances.

    Relationship constraints, entity defaults and registry tables are stored
    as ``frozendict`` so a declaration can never be mutated after the class
    that owns it is created. Hashing is computed on first use, so values only
    need to be hashable when the mapping itself is hashed.

    Example:
        >>> fd = frozendict({"status": "paid"})
        >>> fd.copy(region="eu")
        <frozendict {'status': 'paid', 'region': 'eu'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Return a new frozendict with *add_or_replace* merged in."""
        return type(self)(self, **add_or_replace)

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash


class SlotState(Enum):
    """Load state of one relationship on one entity instance."""

    UNLOADED = "unloaded"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"


class Slot:
    """Relationship slot of a single entity.

    Transitions: ``UNLOADED -> LOADING -> LOADED | FAILED``. ``LOADED`` and
    ``FAILED`` only go back to ``UNLOADED`` through :meth:`reset`. A slot
    holding a back-reference keeps a weak reference to its parent and falls
    back to ``UNLOADED`` once that parent is garbage collected.
    """

    __slots__ = ("_lock", "_state", "_value", "_weak", "error")

    def __init__(self) -> None:
        self._state = SlotState.UNLOADED
        self._value: Any = None
        self._weak = False
        self._lock: anyio.Lock | None = None
        self.error: BaseException | None = None

    @property
    def state(self) -> SlotState:
        if self._state is SlotState.LOADED and self._weak and self._value() is None:
            self.reset()

        return self._state

    @property
    def value(self) -> Any:
        if self.state is not SlotState.LOADED:
            return None

        return self._value() if self._weak else self._value

    @property
    def lock(self) -> anyio.Lock:
        """Per-slot mutex serializing the ``UNLOADED -> LOADING`` transition."""
        if self._lock is None:
            self._lock = anyio.Lock()

        return self._lock

    def begin(self) -> None:
        if self._state is SlotState.LOADING:
            raise RuntimeError("slot is already loading")

        self._state = SlotState.LOADING
        self.error = None

    def set(self, value: Any, *, weak: bool = False) -> None:
        self._weak = weak and value is not None
        self._value = weakref.ref(value) if self._weak else value
        self._state = SlotState.LOADED
        self.error = None

    def fail(self, error: BaseException) -> None:
        self._value = None
        self._weak = False
        self._state = SlotState.FAILED
        self.error = error

    def reset(self) -> None:
        self._value = None
        self._weak = False
        self._state = SlotState.UNLOADED
        self.error = None

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._state.value}>"


@dataclass(eq=False)
class LoadBatch:
    """Parents sharing one path prefix and descriptor during a planner pass.

    Batches form a trie keyed by relationship name; ``children`` holds the
    next hop of every requested path that continues through this batch.
    """

    path: str
    relationship: Relationship
    depth: int
    children: dict[str, LoadBatch] = field(default_factory=dict)
    parents: list[Any] = field(default_factory=list)
    pending: list[Any] = field(default_factory=list)
    covered: dict[int, Any] = field(default_factory=dict)
    groups: Mapping[Any, Any] | None = None
    error: Exception | None = None
    started: bool = False

    @property
    def succeeded(self) -> bool:
        return self.started and self.error is None and self.groups is not None
