"""Query execution collaborator.

The loading engine never builds SQL strings itself: it describes each fetch
as a :class:`FetchRequest` and hands it to an :class:`Executor`.
:class:`SQLAlchemyExecutor` compiles requests to SQLAlchemy Core selects and
runs them on an async engine, connection or session.
"""

from __future__ import annotations

import builtins
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Final, Protocol, Union, runtime_checkable

import anyio
import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from .datastructures import frozendict
from .exceptions import ConnectionError, QueryError, TimeoutError  # noqa: A004
from .keys import get_column
from .relationship import SelectionRule


logger = logging.getLogger(__name__)

_RANK_LABEL: Final[str] = "_sqla_rn"

Bind = Union[AsyncEngine, AsyncConnection, AsyncSession]


@dataclass(frozen=True, slots=True)
class FetchRequest:
    """Structured description of one fetch.

    Attributes:
        table: Table to read.
        where: Column filters; a tuple value is an IN-set, ``None`` is
            ``IS NULL``, anything else is an equality.
        partition_by: Column grouping rows for ``selection``.
        selection: Keep one row per ``partition_by`` group.
        order_by: Columns to order by, ``-`` prefix for descending.
            Defaults to primary key ascending.
        after: Keyset cursor: only rows whose primary key is greater.
        limit: Maximum number of rows.
    """

    table: sa.Table
    where: Mapping[str, Any] = field(default_factory=frozendict)
    partition_by: str | None = None
    selection: SelectionRule | None = None
    order_by: tuple[str, ...] = ()
    after: Any = None
    limit: int | None = None

    def __post_init__(self) -> None:
        if (self.selection is None) != (self.partition_by is None):
            raise ValueError("selection and partition_by must be given together")

    @property
    def in_size(self) -> int:
        """Total number of values in the IN-set filters."""
        return sum(len(value) for value in self.where.values() if isinstance(value, tuple))


@runtime_checkable
class Executor(Protocol):
    """Asynchronous query execution protocol."""

    async def fetch(self, request: FetchRequest) -> Sequence[Mapping[str, Any]]:
        """Run *request* and return its rows, in order, as column mappings."""
        ...


def _primary_key(table: sa.Table) -> sa.Column[Any]:
    return next(iter(table.primary_key))


def _clause(column: sa.ColumnElement[Any], value: Any) -> sa.ColumnElement[bool]:
    if value is None:
        return column.is_(None)
    if isinstance(value, tuple):
        return column.in_(value)

    return column == value


def _ordering(
    columns: Mapping[str, sa.ColumnElement[Any]] | sa.ColumnCollection[str, Any],
    table: sa.Table,
    order_by: tuple[str, ...],
) -> list[sa.ColumnElement[Any]]:
    out: list[sa.ColumnElement[Any]] = []
    for key in order_by:
        name = key.lstrip("-")
        get_column(table, name)
        out.append(columns[name].desc() if key.startswith("-") else columns[name].asc())

    pk = _primary_key(table)
    if pk.key not in {key.lstrip("-") for key in order_by}:
        out.append(columns[pk.key].asc())

    return out


def build_statement(request: FetchRequest) -> sa.Select[Any]:
    """Compile *request* into a SQLAlchemy ``Select``.

    One-of-many selections rank rows per partition with ``ROW_NUMBER()`` and
    keep rank 1, so a single statement covers every group.
    """
    table = request.table
    pk = _primary_key(table)
    clauses = [_clause(get_column(table, name), value) for name, value in request.where.items()]
    if request.after is not None:
        clauses.append(pk > request.after)

    if request.selection is None or request.partition_by is None:
        query = sa.select(table).where(*clauses).order_by(*_ordering(table.c, table, request.order_by))
        return query.limit(request.limit) if request.limit is not None else query

    rule = request.selection
    ranked_by = get_column(table, rule.column)
    direction = sa.desc if rule.aggregate == "max" else sa.asc
    rank = (
        sa.func.row_number()
        .over(
            partition_by=get_column(table, request.partition_by),
            order_by=(direction(ranked_by), direction(pk)),
        )
        .label(_RANK_LABEL)
    )
    ranked = sa.select(table, rank).where(*clauses).subquery("ranked")
    query = (
        sa.select(*(ranked.c[column.key] for column in table.c))
        .where(ranked.c[_RANK_LABEL] == 1)
        .order_by(*_ordering(ranked.c, table, request.order_by))
    )

    return query.limit(request.limit) if request.limit is not None else query


def translate_error(exc: sa.exc.SQLAlchemyError) -> QueryError:
    """Map a SQLAlchemy exception onto the sqla_eagerloads taxonomy."""
    if isinstance(exc, sa.exc.TimeoutError):
        return TimeoutError(f"Timed out acquiring a connection: {exc}")
    if isinstance(exc, (sa.exc.DisconnectionError, sa.exc.InterfaceError)) or (
        isinstance(exc, sa.exc.DBAPIError) and exc.connection_invalidated
    ):
        return ConnectionError(f"Database connection failed: {exc}")

    return QueryError(f"Query failed: {exc}")


class SQLAlchemyExecutor:
    """Executor running requests through SQLAlchemy's asyncio extension.

    Bound to an ``AsyncEngine``, every request checks out its own connection,
    so requests from sibling load paths run concurrently. Bound to an
    ``AsyncConnection`` or ``AsyncSession``, requests are serialized with a
    lock because a single connection cannot run two statements at once.

    Args:
        bind: Engine, connection or session to execute on.
        timeout: Seconds allowed per request; ``None`` waits indefinitely.
    """

    def __init__(self, bind: Bind, *, timeout: float | None = None) -> None:
        self.bind = bind
        self.timeout = timeout
        self._lock = anyio.Lock()

    async def fetch(self, request: FetchRequest) -> Sequence[Mapping[str, Any]]:
        statement = build_statement(request)
        logger.debug(
            "Fetching from %s (%d keys, selection=%s)",
            request.table.name,
            request.in_size,
            request.selection,
        )
        try:
            with anyio.fail_after(self.timeout):
                return await self._execute(statement)
        except builtins.TimeoutError as exc:
            if isinstance(exc, QueryError):
                raise
            raise TimeoutError(
                f"Fetching from {request.table.name!r} exceeded {self.timeout}s"
            ) from exc
        except sa.exc.SQLAlchemyError as exc:
            raise translate_error(exc) from exc

    async def _execute(self, statement: sa.Select[Any]) -> Sequence[Mapping[str, Any]]:
        if isinstance(self.bind, AsyncEngine):
            async with self.bind.connect() as connection:
                result = await connection.execute(statement)
                return result.mappings().all()

        async with self._lock:
            result = await self.bind.execute(statement)
            return result.mappings().all()
