from __future__ import annotations

from typing import Any

import anyio
import pytest

from sqla_eagerloads import (
    Config,
    ConfigurationError,
    LazyAccessViolation,
    LoadCancelledError,
    MappingError,
    QueryError,
    Registry,
    RelationshipNotLoadedError,
    Session,
    SlotState,
)
from sqla_eagerloads.entity import get_slot

from ..badges import Person, badge_registry, badge_rows
from ..executors import InMemoryExecutor
from ..models import Branch, Customer, Mechanic, Order


pytestmark = pytest.mark.anyio


@pytest.fixture
def strict_session(executor: InMemoryExecutor, registry: Registry) -> Session:
    return Session(executor, registry, config=Config.strict())


class TestStrict:
    async def test_sync_access_raises_without_request(
        self, strict_session: Session, executor: InMemoryExecutor
    ) -> None:
        customers = await strict_session.fetch(Customer)
        requests = len(executor.requests)

        with pytest.raises(LazyAccessViolation) as exc_info:
            customers[0].orders  # noqa: B018

        assert exc_info.value.entity_type is Customer
        assert exc_info.value.relationship == "orders"
        assert len(executor.requests) == requests

    async def test_awaitable_access_raises_without_request(
        self, strict_session: Session, executor: InMemoryExecutor
    ) -> None:
        customers = await strict_session.fetch(Customer)
        requests = len(executor.requests)

        with pytest.raises(LazyAccessViolation):
            await customers[0].awaitable_attrs.orders

        assert len(executor.requests) == requests
        assert get_slot(customers[0], "orders").state is SlotState.UNLOADED

    async def test_eager_loaded_is_readable(self, strict_session: Session) -> None:
        customers = await strict_session.fetch(Customer, loads=("orders",))

        assert len(customers[0].orders) == 4
        assert await customers[0].awaitable_attrs.orders is customers[0].orders

    async def test_back_reference_readable_in_strict_mode(self, strict_session: Session) -> None:
        customers = await strict_session.fetch(Customer, loads=("orders",))
        assert customers[0].orders[0].customer is customers[0]


class TestPermissive:
    async def test_sync_access_needs_await(self, session: Session) -> None:
        customers = await session.fetch(Customer)
        with pytest.raises(RelationshipNotLoadedError):
            customers[0].orders  # noqa: B018

    async def test_lazy_load_once(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer)

        orders = await customers[0].awaitable_attrs.orders
        again = await customers[0].awaitable_attrs.orders

        assert [order.id for order in orders] == [1, 2, 3, 4]
        assert again is orders
        assert customers[0].orders is orders
        assert executor.tables == ["customers", "orders"]
        assert executor.requests[1].where == {"customer_id": (1,)}

    async def test_lazy_load_fills_inverse(self, session: Session) -> None:
        customers = await session.fetch(Customer, where={"id": 2})
        orders = await session.access(customers[0], "orders")

        assert all(order.customer is customers[0] for order in orders)

    async def test_lazy_singular_and_through(self, session: Session) -> None:
        mechanics = await session.fetch(Mechanic)

        owner = await mechanics[0].awaitable_attrs.car_owner
        nobody = await mechanics[2].awaitable_attrs.car_owner

        assert owner.name == "olivia"
        assert nobody is None

    async def test_lazy_collection_through(self, session: Session, executor: InMemoryExecutor) -> None:
        branches = await session.fetch(Branch, where={"id": 2})
        sales = await branches[0].awaitable_attrs.sales

        assert [sale.id for sale in sales] == [7, 8, 9, 10, 11, 12]
        assert executor.tables == ["branches", "employees", "sales"]

    async def test_concurrent_access_shares_one_request(
        self, session: Session, executor: InMemoryExecutor
    ) -> None:
        customers = await session.fetch(Customer)
        executor.delay = 0.05
        results: list[Any] = []

        async def _read() -> None:
            results.append(await customers[0].awaitable_attrs.orders)

        async with anyio.create_task_group() as tg:
            for _ in range(5):
                tg.start_soon(_read)

        assert executor.tables == ["customers", "orders"]
        assert all(result is results[0] for result in results)

    async def test_failure_is_stored(self, session: Session, executor: InMemoryExecutor) -> None:
        orders = await session.fetch(Order, where={"id": 1})
        error = QueryError("customers unavailable")
        executor.failures["customers"] = error

        with pytest.raises(QueryError):
            await orders[0].awaitable_attrs.customer

        slot = get_slot(orders[0], "customer")
        assert slot.state is SlotState.FAILED
        assert slot.error is error
        with pytest.raises(QueryError):
            orders[0].customer  # noqa: B018

    async def test_cancelled_lazy_load(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer)
        executor.delay = 1

        with anyio.move_on_after(0.05):
            await customers[0].awaitable_attrs.orders

        assert isinstance(get_slot(customers[0], "orders").error, LoadCancelledError)

    async def test_unknown_relationship(self, session: Session) -> None:
        customers = await session.fetch(Customer)
        with pytest.raises(ConfigurationError):
            await session.access(customers[0], "invoices")


class TestDefaultModelFailure:
    async def test_failed_default_model_fails_the_slot(self) -> None:
        executor = InMemoryExecutor(badge_rows())
        session = Session(executor, badge_registry())
        ann, ben = session.factory.build_all(Person, badge_rows()["people"])

        with pytest.raises(MappingError, match="badges need a colour"):
            await ben.awaitable_attrs.badge

        slot = get_slot(ben, "badge")
        assert slot.state is SlotState.FAILED
        assert isinstance(slot.error, MappingError)
        with pytest.raises(MappingError):
            await ben.awaitable_attrs.badge
        assert executor.tables == ["badges"]

        badge = await ann.awaitable_attrs.badge
        assert badge.colour == "red"
