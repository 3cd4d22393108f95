"""Basic sqla-eagerloads usage examples.

Demonstrates setup, eager loads, dotted paths, one-of-many and through
relationships, lazy access and chunked retrieval.

NOTE: This file is illustrative; it won't run standalone
without a database and seeded data.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import create_async_engine

from sqla_eagerloads import Config, Session, SQLAlchemyExecutor, get_registry

from .models import Base, Branch, Customer, Order, metadata


# 1. Build the registry and a session once at startup

engine = create_async_engine("sqlite+aiosqlite:///shop.db")
registry = get_registry(Base)
session = Session(SQLAlchemyExecutor(engine, timeout=5), registry)

logging.getLogger("sqla_eagerloads").setLevel(logging.DEBUG)


async def setup() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


# 2. Eager loads: one query per relationship hop


async def customers_with_orders() -> list[Customer]:
    # 2 queries however many customers there are
    return await session.fetch(Customer, loads=("orders",))


async def customers_with_everything() -> list[Customer]:
    return await session.fetch(
        Customer,
        where={"region": "eu"},
        loads=("orders", "latest_order", "address"),
    )


# 3. Dotted paths and inverses


async def orders_with_customers() -> list[Order]:
    # order.customer is filled from the inverse, no third query
    customers = await session.fetch(Customer, loads=("orders.customer",))
    return [order for customer in customers for order in customer.orders]


# 4. Through relationships


async def branch_sales(region: str) -> dict[int, int]:
    branches = await session.fetch(Branch, where={"region": region}, loads=("sales",))
    return {branch.id: sum(sale.amount for sale in branch.sales) for branch in branches}


# 5. Lazy access


async def latest_order_of(customer: Customer) -> Order | None:
    return await customer.awaitable_attrs.latest_order


# 6. Strict mode for tests and development


def strict_session() -> Session:
    return Session(SQLAlchemyExecutor(engine), registry, config=Config.strict())


# 7. Chunked retrieval


async def total_revenue() -> int:
    revenue = 0
    async for chunk in session.chunk_by_id(Customer, 500, loads=("orders",)):
        revenue += sum(order.total for customer in chunk for order in customer.orders)
    return revenue
