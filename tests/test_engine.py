"""Transaction engine behaviour: ordering, retries, compensation."""

import asyncio
import time

import pytest
from fixtures.shop import Ledger, build_checkout

from ledgerflow import (
    ABSENT,
    StepResponse,
    StepStatus,
    TransactionState,
    create_hook,
    create_step,
    create_workflow,
    parallelize,
    transform,
    when,
)
from ledgerflow.contracts import StepAction
from ledgerflow.errors import (
    NotFoundError,
    TransactionFailedError,
    TransientError,
    ValidationError,
)


@pytest.mark.asyncio
async def test_checkout_succeeds_after_transient_charge_failure(registry, engine):
    ledger = Ledger()
    registry.register_workflow(build_checkout(ledger, charge_failures=1))

    report = await engine.run("checkout", {"amount": 10})

    assert report.status == TransactionState.DONE
    assert report.result == {
        "reservation": {"reservation_id": "res-1", "amount": 10},
        "charge": {"charge_id": "ch-1", "amount": 10},
    }
    assert ledger.invoked("charge") == 2
    assert ledger.compensated("reserve") == []


@pytest.mark.asyncio
async def test_charge_exhausting_retries_reverts_reservation(registry, engine, log):
    ledger = Ledger()
    registry.register_workflow(build_checkout(ledger, charge_failures=5, charge_retries=2))

    report = await engine.run("checkout", {"amount": 10})

    assert report.status == TransactionState.REVERTED
    assert report.error.type == "TransientError"
    assert ledger.invoked("charge") == 3
    assert ledger.compensated("reserve") == [{"reservation_id": "res-1", "amount": 10}]
    assert ledger.compensated("charge") == []

    records = {(r.step_id, r.action): r for r in await log.load(report.transaction_id)}
    assert records[("charge", StepAction.INVOKE)].status == StepStatus.FAILED
    assert records[("charge", StepAction.INVOKE)].attempts == 3
    assert ("charge", StepAction.COMPENSATE) not in records


@pytest.mark.asyncio
async def test_failure_compensates_only_completed_steps_in_reverse(registry, engine):
    ledger = Ledger()

    def make(name, fail=False):
        def invoke(data, context):
            ledger.record("invoke", name)
            if fail:
                raise ValidationError(f"{name} rejected the input")
            return name

        def compensate(data, context):
            ledger.record("compensate", name, data)

        return create_step(name, invoke, compensate)

    first, second, third = make("first"), make("second", fail=True), make("third")

    @create_workflow("three-steps")
    def three_steps(input):
        a = first(input)
        b = second(a)
        return third(b)

    registry.register_workflow(three_steps)
    report = await engine.run("three-steps", {})

    assert report.status == TransactionState.REVERTED
    assert ledger.order("invoke") == ["first", "second"]
    assert ledger.compensated("first") == ["first"]
    assert ledger.compensated("second") == []
    assert ledger.compensated("third") == []
    assert [c.step_id for c in report.compensations] == ["first"]


@pytest.mark.asyncio
async def test_compensations_run_in_reverse_completion_order(registry, engine):
    ledger = Ledger()

    def make(name):
        return create_step(
            name,
            lambda data, context: ledger.record("invoke", name) or name,
            lambda data, context: ledger.record("compensate", name),
        )

    a, b, c = make("a"), make("b"), make("c")
    boom = create_step("boom", lambda data, context: 1 / 0)

    @create_workflow("reverse-order")
    def reverse_order(input):
        a(input)
        b(input)
        c(input)
        boom(input, max_retries=0)

    registry.register_workflow(reverse_order)
    report = await engine.run("reverse-order")

    assert report.status == TransactionState.REVERTED
    assert ledger.order("compensate") == ["c", "b", "a"]
    assert [o.step_id for o in report.compensations] == ["c", "b", "a"]


@pytest.mark.asyncio
async def test_parallel_steps_are_each_invoked_once(registry, engine, log):
    invocations = []
    running = {"now": 0, "peak": 0}

    def make(name):
        async def invoke(data, context):
            invocations.append((context.transaction_id, context.step_id))
            running["now"] += 1
            running["peak"] = max(running["peak"], running["now"])
            await asyncio.sleep(0.01)
            running["now"] -= 1
            return name

        return create_step(name, invoke)

    steps = [make(f"ship-{i}") for i in range(4)]

    @create_workflow("fan-out")
    def fan_out(input):
        outputs = parallelize(*(step(input) for step in steps))
        return transform(list(outputs), lambda names: sorted(names))

    registry.register_workflow(fan_out)
    report = await engine.run("fan-out", {})

    assert report.status == TransactionState.DONE
    assert report.result == ["ship-0", "ship-1", "ship-2", "ship-3"]
    assert len(invocations) == 4
    assert len(set(invocations)) == 4
    assert running["peak"] > 1
    assert {r.step_id for r in await log.load(report.transaction_id)} == {
        f"ship-{i}" for i in range(4)
    }


@pytest.mark.asyncio
async def test_parallel_failure_lets_siblings_settle_then_compensates(registry, engine):
    ledger = Ledger()

    async def slow(data, context):
        await asyncio.sleep(0.02)
        ledger.record("invoke", "slow")
        return "slow"

    async def broken(data, context):
        raise ValidationError("bad address")

    slow_step = create_step(
        "slow", slow, lambda data, context: ledger.record("compensate", "slow")
    )
    broken_step = create_step("broken", broken)

    @create_workflow("parallel-failure")
    def parallel_failure(input):
        parallelize(slow_step(input), broken_step(input))

    registry.register_workflow(parallel_failure)
    report = await engine.run("parallel-failure")

    assert report.status == TransactionState.REVERTED
    assert ledger.order("invoke") == ["slow"]
    assert ledger.order("compensate") == ["slow"]


@pytest.mark.asyncio
async def test_false_condition_skips_step_and_yields_absent(registry, engine, log):
    calls = []
    seen = {}
    notify = create_step("notify", lambda data, context: calls.append(data) or "sent")

    def summarize(data):
        seen["notified"] = data["notified"]
        return {"notified": bool(data["notified"]), "status": data["notified"].status}

    @create_workflow("maybe-notify")
    def maybe_notify(input):
        notified = when(input, lambda data: data["notify"]).then(lambda: notify(input))
        return transform({"notified": notified}, summarize)

    registry.register_workflow(maybe_notify)
    report = await engine.run("maybe-notify", {"notify": False})

    assert report.status == TransactionState.DONE
    assert calls == []
    assert seen["notified"] is ABSENT
    assert report.result == {"notified": False, "status": None}
    records = await log.load(report.transaction_id)
    assert [(r.step_id, r.status) for r in records] == [("notify", StepStatus.SKIPPED)]


@pytest.mark.asyncio
async def test_true_condition_runs_branch(registry, engine):
    notify = create_step("notify", lambda data, context: "sent")

    @create_workflow("maybe-notify")
    def maybe_notify(input):
        return when(input, lambda data: data["notify"]).then(lambda: notify(input))

    registry.register_workflow(maybe_notify)
    report = await engine.run("maybe-notify", {"notify": True})

    assert report.result == "sent"


@pytest.mark.asyncio
async def test_transform_error_is_not_retried_and_compensates(registry, engine):
    ledger = Ledger()
    reserve = create_step(
        "reserve",
        lambda data, context: ledger.record("invoke", "reserve") or {"qty": 1},
        lambda data, context: ledger.record("compensate", "reserve"),
    )
    calls = {"transform": 0}

    def explode(data):
        calls["transform"] += 1
        raise KeyError("missing")

    @create_workflow("bad-transform")
    def bad_transform(input):
        reserved = reserve(input)
        return transform(reserved, explode)

    registry.register_workflow(bad_transform)
    report = await engine.run("bad-transform")

    assert report.status == TransactionState.REVERTED
    assert report.error.type == "TransformError"
    assert calls["transform"] == 1
    assert ledger.order("compensate") == ["reserve"]


@pytest.mark.asyncio
async def test_validation_error_is_never_retried(registry, engine):
    attempts = []

    def validate(data, context):
        attempts.append(context.attempt)
        raise ValueError("amount must be positive")

    registry.register_workflow(
        create_workflow(
            "validate", lambda input: create_step("validate", validate, max_retries=3)(input)
        )
    )
    report = await engine.run("validate", {"amount": -1})

    assert report.status == TransactionState.REVERTED
    assert report.error.type == "ValidationError"
    assert attempts == [1]


@pytest.mark.asyncio
async def test_not_found_retried_only_when_step_opts_in(registry, engine):
    attempts = {"strict": 0, "lenient": 0}

    def strict(data, context):
        attempts["strict"] += 1
        raise NotFoundError("no such region")

    def lenient(data, context):
        attempts["lenient"] += 1
        if attempts["lenient"] < 3:
            raise NotFoundError("replica lagging")
        return "found"

    strict_step = create_step("strict", strict, max_retries=2)
    lenient_step = create_step("lenient", lenient, max_retries=2, retry_on_not_found=True)
    registry.register_workflow(create_workflow("strict", lambda input: strict_step(input)))
    registry.register_workflow(create_workflow("lenient", lambda input: lenient_step(input)))

    strict_report = await engine.run("strict")
    lenient_report = await engine.run("lenient")

    assert strict_report.status == TransactionState.REVERTED
    assert attempts["strict"] == 1
    assert lenient_report.result == "found"
    assert attempts["lenient"] == 3


@pytest.mark.asyncio
async def test_step_timeout_is_transient(registry, engine):
    async def hang(data, context):
        await asyncio.sleep(1)

    step = create_step("hang", hang, timeout=0.01, max_retries=1)
    registry.register_workflow(create_workflow("hang", lambda input: step(input)))

    report = await engine.run("hang")

    assert report.status == TransactionState.REVERTED
    assert report.error.type == "StepTimeoutError"
    assert report.steps[0].attempts == 2


@pytest.mark.asyncio
async def test_compensation_failure_is_reported_and_sweep_continues(registry, engine):
    ledger = Ledger()

    def failing_release(data, context):
        ledger.record("compensate", "second")
        raise RuntimeError("warehouse offline")

    first = create_step(
        "first",
        lambda data, context: "1",
        lambda data, context: ledger.record("compensate", "first"),
    )
    second = create_step("second", lambda data, context: "2", failing_release)
    third = create_step("third", lambda data, context: 1 / 0)

    @create_workflow("partial")
    def partial(input):
        first(input)
        second(input)
        third(input)

    registry.register_workflow(partial)
    report = await engine.run("partial")

    assert report.status == TransactionState.FAILED
    assert report.partially_compensated
    assert ledger.order("compensate") == ["second", "first"]
    outcomes = {o.step_id: o.status for o in report.compensations}
    assert outcomes == {"second": StepStatus.FAILED, "first": StepStatus.COMPENSATED}


@pytest.mark.asyncio
async def test_compensable_step_without_handler_fails_transaction(registry, engine):
    charge = create_step("charge", lambda data, context: "ch-1", compensable=True)
    boom = create_step("boom", lambda data, context: 1 / 0)

    @create_workflow("no-handler")
    def no_handler(input):
        charge(input)
        boom(input)

    registry.register_workflow(no_handler)
    report = await engine.run("no-handler")

    assert report.status == TransactionState.FAILED
    assert report.compensations[0].error.type == "CompensationError"


@pytest.mark.asyncio
async def test_non_compensable_steps_are_skipped_in_sweep(registry, engine):
    notify = create_step("notify", lambda data, context: "sent")
    boom = create_step("boom", lambda data, context: 1 / 0)

    @create_workflow("notify-then-fail")
    def notify_then_fail(input):
        notify(input)
        boom(input)

    registry.register_workflow(notify_then_fail)
    report = await engine.run("notify-then-fail")

    assert report.status == TransactionState.REVERTED
    assert [(o.step_id, o.status) for o in report.compensations] == [
        ("notify", StepStatus.SKIPPED)
    ]


@pytest.mark.asyncio
async def test_throw_on_error_raises_with_report(registry, engine):
    ledger = Ledger()
    registry.register_workflow(build_checkout(ledger, charge_failures=5, charge_retries=0))

    with pytest.raises(TransactionFailedError) as excinfo:
        await engine.run("checkout", {"amount": 10}, throw_on_error=True)

    assert excinfo.value.report.status == TransactionState.REVERTED


@pytest.mark.asyncio
async def test_hook_errors_do_not_change_outcome(registry, engine):
    received = []
    create = create_step("create-cart", lambda data, context: {"id": "cart-1"})

    @create_workflow("create-cart")
    def create_cart(input):
        cart = create(input)
        create_hook("cartCreated", {"cart": cart})
        return cart

    registry.register_workflow(create_cart)

    def broken_handler(data, context):
        raise RuntimeError("crm unavailable")

    async def recording_handler(data, context):
        received.append(data["cart"]["id"])

    registry.register_hook_handler("create-cart", "cartCreated", broken_handler)
    registry.register_hook_handler("create-cart", "cartCreated", recording_handler)

    report = await engine.run("create-cart", {})

    assert report.status == TransactionState.DONE
    assert report.result == {"id": "cart-1"}
    assert received == ["cart-1"]
    assert [e.message for e in report.hook_errors] == ["crm unavailable"]


@pytest.mark.asyncio
async def test_transaction_deadline_triggers_compensation(registry, engine):
    ledger = Ledger()
    first = create_step(
        "first",
        lambda data, context: "1",
        lambda data, context: ledger.record("compensate", "first"),
    )

    async def slow(data, context):
        await asyncio.sleep(0.05)
        return "late"

    slow_step = create_step("slow", slow)

    @create_workflow("deadline")
    def deadline(input):
        first(input)
        slow_step(input)
        first(input, name="first-again")

    registry.register_workflow(deadline)
    report = await engine.run("deadline", timeout=0.01)

    assert report.status == TransactionState.REVERTED
    assert report.error.type == "TransactionTimeoutError"
    assert ledger.order("compensate") == ["first"]


@pytest.mark.asyncio
async def test_compensate_done_transaction(registry, engine):
    ledger = Ledger()
    registry.register_workflow(build_checkout(ledger))

    done = await engine.run("checkout", {"amount": 5})
    reverted = await engine.compensate(done.transaction_id)

    assert done.status == TransactionState.DONE
    assert reverted.status == TransactionState.REVERTED
    assert ledger.order("compensate") == ["charge", "reserve"]


@pytest.mark.asyncio
async def test_step_response_separates_output_from_compensate_input(registry, engine):
    released = []
    reserve = create_step(
        "reserve",
        lambda data, context: StepResponse({"ok": True}, compensate_input="res-9"),
        lambda data, context: released.append(data),
    )
    boom = create_step("boom", lambda data, context: 1 / 0)

    @create_workflow("explicit-compensate-input")
    def explicit(input):
        reserve(input)
        boom(input)

    registry.register_workflow(explicit)
    await engine.run("explicit-compensate-input")

    assert released == ["res-9"]


@pytest.mark.asyncio
async def test_services_reach_steps_through_context(registry, log, config):
    from ledgerflow.engine import WorkflowEngine

    seen = {}

    def lookup(data, context):
        seen["pricing"] = context.resolve("pricing")
        seen["key"] = context.idempotency_key
        return None

    registry.register_workflow(
        create_workflow("lookup", lambda input: create_step("lookup", lookup)(input))
    )
    engine = WorkflowEngine(registry, log, config=config, services={"pricing": "eur"})
    report = await engine.run("lookup", transaction_id="tx-1")

    assert seen == {"pricing": "eur", "key": "tx-1:lookup:invoke"}
    assert report.status == TransactionState.DONE


@pytest.mark.asyncio
async def test_engine_defaults_apply_to_steps_without_policy(registry, log):
    from ledgerflow.config import EngineConfig, LedgerflowConfig
    from ledgerflow.engine import WorkflowEngine

    attempts = []

    def flaky(data, context):
        attempts.append(context.attempt)
        raise TransientError("lock timeout")

    registry.register_workflow(
        create_workflow("flaky", lambda input: create_step("flaky", flaky)(input))
    )
    config = LedgerflowConfig(
        engine=EngineConfig(default_max_retries=2, default_retry_backoff=0.0)
    )
    engine = WorkflowEngine(registry, log, config=config)
    await engine.run("flaky")

    assert attempts == [1, 2, 3]


@pytest.mark.asyncio
async def test_blocking_step_times_out(registry, engine):
    ledger = Ledger()
    reserve = create_step(
        "reserve",
        lambda data, context: "res-1",
        lambda data, context: ledger.record("compensate", "reserve", data),
    )

    def sluggish(data, context):
        time.sleep(0.3)
        return "late"

    sluggish_step = create_step("sluggish", sluggish, timeout=0.05, max_retries=0)

    @create_workflow("sluggish")
    def sluggish_workflow(input):
        reserve(input)
        return sluggish_step(input)

    registry.register_workflow(sluggish_workflow)
    started = time.monotonic()
    report = await engine.run("sluggish")

    assert time.monotonic() - started < 0.25
    assert report.status == TransactionState.REVERTED
    assert report.error.type == "StepTimeoutError"
    assert ledger.compensated("reserve") == ["res-1"]


@pytest.mark.asyncio
async def test_blocking_parallel_steps_overlap(registry, engine):
    def make(name):
        def invoke(data, context):
            time.sleep(0.2)
            return name

        return create_step(name, invoke)

    left, right = make("left"), make("right")

    @create_workflow("blocking-fan-out")
    def blocking_fan_out(input):
        return parallelize(left(input), right(input))

    registry.register_workflow(blocking_fan_out)
    started = time.monotonic()
    report = await engine.run("blocking-fan-out")

    assert time.monotonic() - started < 0.35
    assert report.status == TransactionState.DONE
    assert list(report.result) == ["left", "right"]


@pytest.mark.asyncio
async def test_downstream_mutation_leaves_recorded_output_intact(registry, engine, log):
    ledger = Ledger()
    reserve = create_step(
        "reserve",
        lambda data, context: {"items": [1]},
        lambda data, context: ledger.record("compensate", "reserve", data),
    )

    def pack(data, context):
        data["items"].append(99)
        return data

    def label(data, context):
        raise ValidationError("no label printer")

    pack_step = create_step("pack", pack)
    label_step = create_step("label", label)

    @create_workflow("mutating")
    def mutating(input):
        reserved = reserve(input)
        packed = pack_step(reserved)
        label_step(packed)

    registry.register_workflow(mutating)
    report = await engine.run("mutating")

    assert report.status == TransactionState.REVERTED
    assert ledger.compensated("reserve") == [{"items": [1]}]
    records = {(r.step_id, r.action): r for r in await log.load(report.transaction_id)}
    assert records[("reserve", StepAction.INVOKE)].response == {"items": [1]}
    assert records[("pack", StepAction.INVOKE)].response == {"items": [1, 99]}


@pytest.mark.asyncio
async def test_cancel_while_step_in_flight_compensates_after_it_settles(registry, engine):
    ledger = Ledger()
    slow_started = asyncio.Event()

    async def slow(data, context):
        slow_started.set()
        await asyncio.sleep(0.05)
        ledger.record("invoke", "slow")
        return "slow"

    first = create_step(
        "first",
        lambda data, context: ledger.record("invoke", "first") or "first",
        lambda data, context: ledger.record("compensate", "first"),
    )
    slow_step = create_step(
        "slow", slow, lambda data, context: ledger.record("compensate", "slow")
    )
    third = create_step("third", lambda data, context: ledger.record("invoke", "third"))

    @create_workflow("abortable")
    def abortable(input):
        first(input)
        slow_step(input)
        third(input)

    registry.register_workflow(abortable)
    running = asyncio.create_task(engine.run("abortable", transaction_id="tx-abort"))
    await slow_started.wait()

    pending = await engine.cancel("tx-abort")
    report = await running

    assert not pending.status.is_terminal
    assert report.status == TransactionState.REVERTED
    assert report.error.type == "TransactionAbortedError"
    assert ledger.order("invoke") == ["first", "slow"]
    assert ledger.order("compensate") == ["slow", "first"]


@pytest.mark.asyncio
async def test_queued_caller_keeps_the_transaction_lock(registry, engine):
    registry.register_workflow(
        create_workflow("noop", lambda input: create_step("noop", lambda data, context: "ok")(input))
    )
    held = engine._lock("tx-queued")
    await held.acquire()
    first = asyncio.create_task(engine.run("noop", transaction_id="tx-queued"))
    second = asyncio.create_task(engine.run("noop", transaction_id="tx-queued"))
    await asyncio.sleep(0)
    held.release()

    assert (await first).status == TransactionState.DONE
    assert engine._lock("tx-queued") is held
    assert (await second).status == TransactionState.DONE
