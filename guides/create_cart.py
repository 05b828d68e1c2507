"""Example: a create-cart workflow using every composition primitive.

Run with ``python guides/create_cart.py``. Carts are stored in ``carts.db``
through the SQLModel entity store; regions and customers come from an
in-memory remote query.
"""

import asyncio
import logging
from typing import Optional

from sqlmodel import Field, SQLModel

from ledgerflow import (
    WorkflowEngine,
    WorkflowRegistry,
    create_hook,
    create_step,
    create_workflow,
    parallelize,
    transform,
    when,
)
from ledgerflow.db import EntityStore
from ledgerflow.events import InMemoryEventBus
from ledgerflow.query import InMemoryRemoteQuery
from ledgerflow.steps import emit_event_step, use_remote_query_step


class Cart(SQLModel, table=True):
    id: str = Field(primary_key=True)
    region_id: str
    currency_code: str
    customer_id: Optional[str] = None
    email: Optional[str] = None


class LineItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    cart_id: str = Field(index=True)
    variant_id: str
    quantity: int


async def create_cart(data, context):
    return await context.entities.repository(Cart).create(data)


async def delete_cart(cart, context):
    await context.entities.repository(Cart).delete(cart.id)


async def add_line_items(data, context):
    items = context.entities.repository(LineItem)
    async with context.entities.unit_of_work():
        created = [
            await items.create({"cart_id": data["cart_id"], **item}) for item in data["items"]
        ]
    return [item.id for item in created]


async def remove_line_items(item_ids, context):
    items = context.entities.repository(LineItem)
    for item_id in item_ids:
        await items.delete(item_id)


create_cart_step = create_step("create-cart", create_cart, delete_cart)
add_line_items_step = create_step("add-line-items", add_line_items, remove_line_items)


def prepare_cart(values):
    input, region, customer = values["input"], values["region"], values["customer"]
    data = {
        "id": input["cart_id"],
        "region_id": region["id"],
        "currency_code": input.get("currency_code") or region["currency_code"],
    }
    if customer:
        data["customer_id"] = customer["id"]
        data["email"] = customer["email"]
    return data


@create_workflow("create-carts")
def create_carts(input):
    region = use_remote_query_step(
        {
            "entry_point": "region",
            "fields": ["id", "currency_code"],
            "variables": {"id": input.region_id},
            "list": False,
            "throw_if_key_not_found": True,
        },
        name="find-region",
    )
    customer = when(input, lambda data: bool(data.get("customer_id"))).then(
        lambda: use_remote_query_step(
            {
                "entry_point": "customer",
                "fields": ["id", "email"],
                "variables": {"id": input.customer_id},
                "list": False,
                "throw_if_key_not_found": True,
            },
            name="find-customer",
        )
    )
    cart = create_cart_step(
        transform({"input": input, "region": region, "customer": customer}, prepare_cart)
    )
    parallelize(
        add_line_items_step({"cart_id": cart.id, "items": input.items}),
        emit_event_step({"event_name": "cart.created", "data": {"id": cart.id}}),
    )
    create_hook("cartCreated", {"cart_id": cart.id})
    return cart


async def main():
    logging.basicConfig(level=logging.INFO)

    query = InMemoryRemoteQuery()
    query.register_records("region", [{"id": "reg-eu", "currency_code": "eur"}])
    query.register_records("customer", [{"id": "cus-1", "email": "ada@example.com"}])
    events = InMemoryEventBus()
    entities = EntityStore("sqlite+aiosqlite:///carts.db")
    await entities.init_db()

    registry = WorkflowRegistry()
    registry.register_workflow(create_carts)
    registry.register_hook_handler(
        "create-carts", "cartCreated", lambda data, context: print(f"hook: {data}")
    )
    engine = WorkflowEngine(
        registry, services={"query": query, "events": events, "entities": entities}
    )

    report = await engine.run(
        "create-carts",
        {
            "cart_id": "cart-1",
            "region_id": "reg-eu",
            "customer_id": "cus-1",
            "items": [{"variant_id": "var-shirt", "quantity": 2}],
        },
    )
    print(f"{report.transaction_id}: {report.status.value}")
    print(f"cart: {report.result}")
    print(f"events: {events.names()}")

    failed = await engine.run("create-carts", {"cart_id": "cart-2", "region_id": "reg-mars"})
    print(f"{failed.transaction_id}: {failed.status.value} ({failed.error.message})")

    await entities.dispose()


if __name__ == "__main__":
    asyncio.run(main())
