"""Example: an asynchronous step completed through a transport signal.

The ``approve`` step records itself as waiting. Another process (here, the
same one) publishes a step signal, and the :class:`SignalConsumer` applies it
to the engine, which then finishes the transaction. With
``LEDGERFLOW_TRANSPORT=redis`` the publisher and the worker can live in
different processes; see ``ledgerflow worker --help``.
"""

import asyncio
import logging

from ledgerflow import (
    StepSignal,
    WorkflowEngine,
    WorkflowRegistry,
    create_step,
    create_workflow,
    get_transport,
)
from ledgerflow.worker import SignalConsumer, publish_signal


def request_approval(data, context):
    print(f"approval requested for order {data['order']} ({context.idempotency_key})")


approve = create_step("approve", request_approval, async_=True)
confirm = create_step("confirm", lambda data, context: {"confirmed": data})


@create_workflow("approve-order")
def approve_order(input):
    decision = approve({"order": input.order_id})
    return confirm({"order": input.order_id, "by": decision.by})


registry = WorkflowRegistry()
registry.register_workflow(approve_order)


async def main():
    logging.basicConfig(level=logging.INFO)
    transport = get_transport()
    engine = WorkflowEngine(registry)

    report = await engine.run("approve-order", {"order_id": "o-42"})
    print(f"{report.transaction_id}: {report.status.value}")

    await publish_signal(
        transport,
        StepSignal(
            workflow_id="approve-order",
            transaction_id=report.transaction_id,
            step_id="approve",
            response={"by": "ops"},
        ),
    )
    await SignalConsumer(engine, transport).start(lifespan=1)

    final = await engine.get_report(report.transaction_id)
    print(f"{final.transaction_id}: {final.status.value} -> {final.result}")


if __name__ == "__main__":
    asyncio.run(main())
