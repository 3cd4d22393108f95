"""Example entities for the usage snippets."""

from __future__ import annotations

import sqlalchemy as sa

from sqla_eagerloads import Entity, belongs_to, has_many, has_many_through, has_one, latest_of_many


metadata = sa.MetaData()


class Base(Entity):
    pass


customers = sa.Table(
    "customers",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("name", sa.String(100)),
    sa.Column("region", sa.String(20)),
)

orders = sa.Table(
    "orders",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("customer_id", sa.ForeignKey("customers.id")),
    sa.Column("status", sa.String(20)),
    sa.Column("total", sa.Integer),
)

addresses = sa.Table(
    "addresses",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("customer_id", sa.ForeignKey("customers.id")),
    sa.Column("city", sa.String(100)),
)

branches = sa.Table(
    "branches",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("region", sa.String(20)),
)

employees = sa.Table(
    "employees",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("branch_id", sa.ForeignKey("branches.id")),
)

sales = sa.Table(
    "sales",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("employee_id", sa.ForeignKey("employees.id")),
    sa.Column("amount", sa.Integer),
)


class Customer(Base):
    __table__ = customers

    orders = has_many("Order", foreign_key="customer_id", inverse="customer")
    open_orders = has_many("Order", foreign_key="customer_id", where={"status": "open"})
    latest_order = latest_of_many("Order", foreign_key="customer_id")
    address = has_one("Address", foreign_key="customer_id", default={"city": "unknown"})


class Order(Base):
    __table__ = orders
    __defaults__ = {"status": "open", "total": 0}

    customer = belongs_to("Customer", foreign_key="customer_id")


class Address(Base):
    __table__ = addresses


class Branch(Base):
    __table__ = branches

    staff = has_many("Employee", foreign_key="branch_id")
    sales = has_many_through("Sale", through=staff, second_key="employee_id")


class Employee(Base):
    __table__ = employees

    sales = has_many("Sale", foreign_key="employee_id")


class Sale(Base):
    __table__ = sales
