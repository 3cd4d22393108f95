from __future__ import annotations

import gc

import anyio
import pytest

from sqla_eagerloads import (
    Config,
    ConfigurationError,
    LoadCancelledError,
    MappingError,
    QueryError,
    Registry,
    Session,
    SlotState,
    TimeoutError,  # noqa: A004
    is_loaded,
)
from sqla_eagerloads.entity import get_slot

from ..badges import Person, badge_registry, badge_rows
from ..dataset import CUSTOMERS
from ..executors import InMemoryExecutor
from ..models import Branch, Customer, Mechanic, Order


pytestmark = pytest.mark.anyio


class TestPlan:
    def test_shared_prefix_is_one_batch(self, session: Session) -> None:
        top, terminals = session.planner.plan(Branch, ["employees", "employees.sales", "employees.branch"])

        assert [batch.path for batch in top] == ["employees"]
        assert sorted(top[0].children) == ["branch", "sales"]
        assert terminals["employees"] is top[0]
        assert terminals["employees.sales"] is top[0].children["sales"]
        assert top[0].children["sales"].depth == 1

    def test_bad_path(self, session: Session) -> None:
        with pytest.raises(ConfigurationError):
            session.planner.plan(Customer, ["orders.items"])


class TestQueryCounts:
    async def test_one_request_per_hop(self, session: Session, executor: InMemoryExecutor) -> None:
        branches = await session.fetch(Branch, loads=("employees.sales",))

        assert executor.tables == ["branches", "employees", "sales"]
        assert all(len(employee.sales) == 3 for branch in branches for employee in branch.employees)

    async def test_shared_prefix_loaded_once(self, session: Session, executor: InMemoryExecutor) -> None:
        await session.fetch(Branch, loads=("employees", "employees.sales", "sales"))

        assert sorted(executor.tables) == ["branches", "employees", "employees", "sales", "sales"]

    async def test_siblings(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer, loads=("orders", "latest_order", "profile"))

        assert sorted(executor.tables) == ["customers", "orders", "orders", "profiles"]
        alice = customers[0]
        assert len(alice.orders) == 4
        assert alice.latest_order.id == 4
        assert alice.profile.bio == "Alice bio"

    async def test_sequential_siblings(self, registry: Registry, executor: InMemoryExecutor) -> None:
        session = Session(executor, registry, config=Config(concurrent_paths=False))
        await session.fetch(Customer, loads=("orders", "profile"))

        assert executor.tables == ["customers", "orders", "profiles"]

    async def test_no_roots_no_requests(self, session: Session, executor: InMemoryExecutor) -> None:
        await session.load([], "orders", "orders.customer")
        assert executor.requests == []

    async def test_empty_root_fetch(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer, where={"region": "apac"}, loads=("orders",))

        assert customers == []
        assert executor.tables == ["customers"]

    async def test_through_path(self, session: Session, executor: InMemoryExecutor) -> None:
        mechanics = await session.fetch(Mechanic, loads=("car_owner",))

        assert executor.tables == ["mechanics", "cars", "owners"]
        assert [m.car_owner.name if m.car_owner else None for m in mechanics] == ["olivia", None, None]


class TestIdempotence:
    async def test_reload_issues_no_requests(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer, loads=("orders",))
        before = len(executor.requests)
        orders = customers[0].orders

        await session.load(customers, "orders")

        assert len(executor.requests) == before
        assert customers[0].orders is orders

    async def test_only_unloaded_parents_queried(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = session.factory.build_all(Customer, CUSTOMERS)
        customers[0].orders = []

        await session.load(customers, "orders")

        assert executor.requests[0].where == {"customer_id": (2, 3, 4)}
        assert customers[0].orders == []

    async def test_extending_loaded_path(self, session: Session, executor: InMemoryExecutor) -> None:
        branches = await session.fetch(Branch, loads=("employees",))
        await session.load(branches, "employees.sales")

        assert executor.tables == ["branches", "employees", "sales"]


class TestBackReferences:
    async def test_inverse_fills_parent(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer, loads=("orders",))

        for customer in customers:
            assert all(order.customer is customer for order in customer.orders)
        assert executor.tables == ["customers", "orders"]

    async def test_inverse_path_is_not_queried(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = await session.fetch(Customer, loads=("orders.customer",))

        assert executor.tables == ["customers", "orders"]
        assert customers[1].orders[0].customer is customers[1]

    async def test_back_reference_released_with_parent(self, session: Session) -> None:
        customers = await session.fetch(Customer, where={"id": 1}, loads=("orders",))
        order = customers[0].orders[0]

        del customers
        gc.collect()

        assert not is_loaded(order, "customer")

    async def test_belongs_to_shares_instances(self, session: Session) -> None:
        orders = await session.fetch(Order, where={"customer_id": 1}, loads=("customer",))

        assert len({id(order.customer) for order in orders}) == 1


class TestAtomicity:
    async def test_independent_path_committed(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = session.factory.build_all(Customer, CUSTOMERS)
        error = QueryError("profiles unavailable")
        executor.failures["profiles"] = error

        with pytest.raises(QueryError) as exc_info:
            await session.load(customers, "orders", "profile")

        assert exc_info.value is error
        assert len(customers[0].orders) == 4
        assert get_slot(customers[0], "profile").state is SlotState.FAILED
        with pytest.raises(QueryError):
            customers[0].profile  # noqa: B018

    async def test_failed_hop_rolls_back_its_prefix(
        self, session: Session, executor: InMemoryExecutor
    ) -> None:
        branches = await session.fetch(Branch)
        executor.failures["sales"] = QueryError("sales unavailable")

        with pytest.raises(QueryError):
            await session.load(branches, "employees.sales")

        assert all(get_slot(branch, "employees").state is SlotState.FAILED for branch in branches)

    async def test_prefix_requested_on_its_own_survives(
        self, session: Session, executor: InMemoryExecutor
    ) -> None:
        branches = await session.fetch(Branch)
        executor.failures["sales"] = QueryError("sales unavailable")

        with pytest.raises(QueryError):
            await session.load(branches, "employees", "employees.sales")

        employee = branches[0].employees[0]
        assert get_slot(employee, "sales").state is SlotState.FAILED

    async def test_failed_slot_is_sticky(self, session: Session, executor: InMemoryExecutor) -> None:
        customers = session.factory.build_all(Customer, CUSTOMERS)
        executor.failures["orders"] = QueryError("down")
        with pytest.raises(QueryError):
            await session.load(customers, "orders")

        del executor.failures["orders"]
        requests = len(executor.requests)
        with pytest.raises(QueryError):
            await session.access(customers[0], "orders")

        assert len(executor.requests) == requests

        session.invalidate(customers[0], "orders")
        assert len(await session.access(customers[0], "orders")) == 4

    async def test_unbuildable_default_fails_every_parent(self) -> None:
        session = Session(InMemoryExecutor(badge_rows()), badge_registry())
        people = session.factory.build_all(Person, badge_rows()["people"])

        with pytest.raises(MappingError, match="badges need a colour"):
            await session.load(people, "badge", "badges")

        for person in people:
            assert get_slot(person, "badge").state is SlotState.FAILED
        assert [[badge.id for badge in person.badges] for person in people] == [[1], []]

    async def test_mixed_root_types(self, session: Session) -> None:
        with pytest.raises(ConfigurationError, match="one entity type"):
            await session.load([Customer(id=1), Order(id=1)], "customer")

    async def test_bad_path_fails_before_any_request(
        self, session: Session, executor: InMemoryExecutor
    ) -> None:
        with pytest.raises(ConfigurationError):
            await session.fetch(Customer, loads=("orders", "invoices"))

        assert executor.requests == []


class TestCancellation:
    async def test_cancelled_load_marks_slots(self, registry: Registry, executor: InMemoryExecutor) -> None:
        executor.delay = 1
        session = Session(executor, registry)
        customers = session.factory.build_all(Customer, CUSTOMERS)

        with anyio.move_on_after(0.05):
            await session.load(customers, "orders", "profile")

        for customer in customers:
            slot = get_slot(customer, "orders")
            assert slot.state is SlotState.FAILED
            assert isinstance(slot.error, LoadCancelledError)

    async def test_timeout(self, registry: Registry, executor: InMemoryExecutor) -> None:
        executor.delay = 1
        session = Session(executor, registry, config=Config(timeout=0.05))
        customers = session.factory.build_all(Customer, CUSTOMERS)

        with pytest.raises(TimeoutError, match="exceeded"):
            await session.load(customers, "orders")

        assert isinstance(get_slot(customers[0], "orders").error, LoadCancelledError)
