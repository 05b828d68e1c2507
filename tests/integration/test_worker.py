import pytest
from fixtures.approvals import Shipments, build_fulfilment

from ledgerflow.contracts import Envelope, StepSignal, TransactionState
from ledgerflow.transports.inmemory import InMemoryTransport
from ledgerflow.worker import SignalConsumer, publish_signal

TOPIC = "test.signals"


def _approve(transaction_id="tx-1"):
    return StepSignal(
        workflow_id="fulfil-order", transaction_id=transaction_id, step_id="approve", response={"by": "bot"}
    )


@pytest.fixture
def transport():
    return InMemoryTransport(poll_interval=0.01)


@pytest.fixture
def fulfilment(registry):
    registry.register_workflow(build_fulfilment(Shipments()))


@pytest.mark.asyncio
async def test_consumer_applies_published_signals(engine, transport, fulfilment):
    await engine.run("fulfil-order", {"order_id": "o-1"}, transaction_id="tx-1")
    envelope = await publish_signal(transport, _approve(), topic=TOPIC)
    await transport.publish(TOPIC, Envelope(kind="event", name="noise"))

    consumer = SignalConsumer(engine, transport, topic=TOPIC)
    await consumer.start(lifespan=0.2)

    assert consumer.processed == 1
    assert envelope.message_id in transport.acked
    assert len(transport.acked) == 2
    report = await engine.get_report("tx-1")
    assert report.status == TransactionState.DONE
    assert report.result["approved_by"] == "bot"


@pytest.mark.asyncio
async def test_duplicates_and_unknown_transactions_are_not_redelivered(engine, transport, fulfilment):
    await engine.run("fulfil-order", {"order_id": "o-1"}, transaction_id="tx-1")
    await publish_signal(transport, _approve(), topic=TOPIC)
    await publish_signal(transport, _approve(), topic=TOPIC)
    await publish_signal(transport, _approve("missing"), topic=TOPIC)

    consumer = SignalConsumer(engine, transport, topic=TOPIC)
    await consumer.start(lifespan=0.2)

    assert consumer.processed == 1
    assert len(transport.acked) == 3
    assert transport.pending(TOPIC) == []


@pytest.mark.asyncio
async def test_unexpected_failures_are_retried_then_dropped(engine, transport, monkeypatch):
    calls = []

    async def flaky(signal):
        calls.append(signal.transaction_id)
        raise RuntimeError("log unavailable")

    monkeypatch.setattr(engine, "signal", flaky)
    await publish_signal(transport, _approve(), topic=TOPIC)

    consumer = SignalConsumer(engine, transport, topic=TOPIC, max_attempts=3)
    await consumer.start(lifespan=0.2)

    assert calls == ["tx-1", "tx-1", "tx-1"]
    assert consumer.processed == 0
    assert transport.pending(TOPIC) == []
