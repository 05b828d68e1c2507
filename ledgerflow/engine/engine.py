"""Transaction engine driving workflow definitions to a terminal state."""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import uuid
import weakref
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from ..composer.nodes import ConditionalNode, ParallelNode, StepNode, TransformNode
from ..composer.refs import resolve, strip_absent
from ..composer.step import StepDefinition
from ..composer.workflow import WorkflowDefinition
from ..config import LedgerflowConfig, load_config
from ..constants import CHILD_TRANSACTION_SEPARATOR
from ..context import StepContext
from ..contracts import (
    CompensationOutcome,
    ErrorInfo,
    StepAction,
    StepResponse,
    StepSignal,
    StepStatus,
    StepSummary,
    TransactionReport,
    TransactionState,
)
from ..errors import (
    CompensationError,
    EngineConsistencyError,
    InvalidSignalError,
    NotFoundError,
    StepConflictError,
    StepFailedError,
    StepNotFoundError,
    TransactionAbortedError,
    TransactionFailedError,
    TransactionNotFoundError,
    TransactionTimeoutError,
    TransformError,
    ValidationError,
    WorkflowError,
    classify_error,
    error_from_info,
)
from ..persistence import ExecutionLog, get_execution_log
from ..persistence.models import StepRecord, TransactionRecord, utcnow
from ..registry import WorkflowRegistry
from ..utils.retry import schedule_retry
from .state import ExecutionState, NodeState

logger = logging.getLogger(__name__)


def child_transaction_id(parent_transaction_id: str, step_id: str) -> str:
    """Deterministic id of the transaction a sub-workflow step starts."""
    return f"{parent_transaction_id}{CHILD_TRANSACTION_SEPARATOR}{step_id}"


@dataclass
class _Outcome:
    status: StepStatus
    output: Any = None
    error: Optional[WorkflowError] = None


@dataclass(frozen=True)
class _Policy:
    max_retries: int
    backoff: float
    factor: float
    jitter: float
    timeout: Optional[float]


class WorkflowEngine:
    """Runs, resumes and compensates transactions of registered workflows.

    All state needed to continue a transaction lives in the execution log;
    the engine only keeps per-transaction locks, the in-flight step set and
    pending abort requests in memory.
    """

    def __init__(
        self,
        registry: WorkflowRegistry,
        log: ExecutionLog | None = None,
        *,
        config: Optional[LedgerflowConfig] = None,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.registry = registry
        self.config = config or load_config()
        self.log = log or get_execution_log(config=self.config)
        self.services: Dict[str, Any] = dict(services or {})
        # Locks live only while a caller or waiter holds them.
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )
        self._inflight: Set[Tuple[str, str, str]] = set()
        self._abort_requests: Set[str] = set()

    # ------------------------------------------------------------------
    # Public API
    async def run(
        self,
        workflow_id: str,
        input: Any = None,
        *,
        transaction_id: Optional[str] = None,
        timeout: Optional[float] = None,
        throw_on_error: bool = False,
        parent: Optional[Tuple[str, str]] = None,
    ) -> TransactionReport:
        """Start a transaction, or continue it when ``transaction_id`` already exists."""
        definition = self.registry.get_workflow(workflow_id)
        transaction_id = transaction_id or str(uuid.uuid4())

        async with self._lock(transaction_id):
            record = await self.log.get_transaction(transaction_id)
            if record is None:
                record = TransactionRecord(
                    transaction_id=transaction_id,
                    workflow_id=workflow_id,
                    input=input,
                    deadline=self._deadline(definition, timeout),
                    parent_transaction_id=parent[0] if parent else None,
                    parent_step_id=parent[1] if parent else None,
                )
                await self.log.create_transaction(record)
                logger.info(f"Started transaction {transaction_id} of workflow {workflow_id}")
            elif record.workflow_id != workflow_id:
                raise ValidationError(
                    f"Transaction {transaction_id} belongs to workflow {record.workflow_id}"
                )
            report = await self._drive(record, definition)

        self._forget(report)
        if throw_on_error and report.status in (
            TransactionState.FAILED,
            TransactionState.REVERTED,
        ):
            raise TransactionFailedError(report)
        return report

    async def resume(self, transaction_id: str) -> TransactionReport:
        """Continue a transaction purely from its execution log."""
        record = await self._require_transaction(transaction_id)
        definition = self.registry.get_workflow(record.workflow_id)
        async with self._lock(transaction_id):
            record = await self._require_transaction(transaction_id)
            report = await self._drive(record, definition)
        self._forget(report)
        await self._propagate_to_parent(report)
        return report

    async def recover(self) -> List[TransactionReport]:
        """Resume every non-terminal transaction found in the log, e.g. after a restart."""
        reports: List[TransactionReport] = []
        for record in await self.log.list_pending():
            if record.frozen:
                logger.warning(
                    f"Skipping frozen transaction {record.transaction_id}; operator attention required"
                )
                continue
            if not self.registry.has_workflow(record.workflow_id):
                logger.error(
                    f"Cannot recover {record.transaction_id}: workflow "
                    f"{record.workflow_id} is not registered"
                )
                continue
            try:
                reports.append(await self.resume(record.transaction_id))
            except EngineConsistencyError as exc:
                logger.error(f"Recovery of {record.transaction_id} froze it: {exc}")
        return reports

    async def signal(self, signal: StepSignal) -> TransactionReport:
        """Record an externally reported step outcome and continue the transaction."""
        record = await self._require_transaction(signal.transaction_id)
        if record.workflow_id != signal.workflow_id:
            raise InvalidSignalError(
                f"Transaction {signal.transaction_id} belongs to workflow "
                f"{record.workflow_id}, not {signal.workflow_id}"
            )
        definition = self.registry.get_workflow(record.workflow_id)
        if not isinstance(definition.node(signal.step_id), StepNode):
            raise StepNotFoundError(
                f"Workflow {record.workflow_id} has no step '{signal.step_id}'",
                step_id=signal.step_id,
            )

        async with self._lock(signal.transaction_id):
            record = await self._require_transaction(signal.transaction_id)
            if record.frozen:
                raise EngineConsistencyError(
                    f"Transaction {record.transaction_id} is frozen and accepts no signals"
                )
            state = ExecutionState.from_log(
                record, definition, await self.log.load(record.transaction_id)
            )
            records = (
                state.invoke_records
                if signal.action == StepAction.INVOKE
                else state.compensate_records
            )
            current = records.get(signal.step_id)
            if current is None:
                raise InvalidSignalError(
                    f"Step '{signal.step_id}' has no pending {signal.action.value} action",
                    step_id=signal.step_id,
                )
            if current.status.is_terminal:
                raise StepConflictError(
                    f"Step '{signal.step_id}' {signal.action.value} is already "
                    f"{current.status.value}",
                    step_id=signal.step_id,
                )
            if current.status != StepStatus.WAITING:
                raise InvalidSignalError(
                    f"Step '{signal.step_id}' is {current.status.value}, not awaiting a signal",
                    step_id=signal.step_id,
                )

            updated = self._apply_signal(state, current, signal)
            if not await self.log.append(updated):
                raise StepConflictError(
                    f"Step '{signal.step_id}' was concluded concurrently",
                    step_id=signal.step_id,
                )
            logger.info(
                f"Applied {signal.outcome} signal to {signal.action.value} of step "
                f"{signal.step_id} in {signal.transaction_id}"
            )
            report = await self._drive(record, definition)

        self._forget(report)
        await self._propagate_to_parent(report)
        return report

    async def set_step_success(
        self,
        workflow_id: str,
        transaction_id: str,
        step_id: str,
        *,
        action: StepAction = StepAction.INVOKE,
        response: Any = None,
        compensate_input: Any = None,
    ) -> TransactionReport:
        return await self.signal(
            StepSignal(
                workflow_id=workflow_id,
                transaction_id=transaction_id,
                step_id=step_id,
                action=action,
                outcome="success",
                response=response,
                compensate_input=compensate_input,
            )
        )

    async def set_step_failure(
        self,
        workflow_id: str,
        transaction_id: str,
        step_id: str,
        *,
        action: StepAction = StepAction.INVOKE,
        error: Optional[ErrorInfo] = None,
        response: Any = None,
    ) -> TransactionReport:
        return await self.signal(
            StepSignal(
                workflow_id=workflow_id,
                transaction_id=transaction_id,
                step_id=step_id,
                action=action,
                outcome="failure",
                response=response,
                error=error,
            )
        )

    async def cancel(self, transaction_id: str) -> TransactionReport:
        """Abort a running or suspended transaction.

        In-flight steps are not interrupted; compensation starts once they settle.
        """
        record = await self._require_transaction(transaction_id)
        if record.status.is_terminal:
            raise InvalidSignalError(
                f"Transaction {transaction_id} already finished as {record.status.value}"
            )
        self._abort_requests.add(transaction_id)
        lock = self._lock(transaction_id)
        if lock.locked():
            logger.info(f"Abort of {transaction_id} requested; it compensates at the next checkpoint")
            return await self.get_report(transaction_id)

        definition = self.registry.get_workflow(record.workflow_id)
        async with lock:
            record = await self._require_transaction(transaction_id)
            report = await self._drive(record, definition)
        self._forget(report)
        await self._propagate_to_parent(report)
        return report

    async def compensate(self, transaction_id: str) -> TransactionReport:
        """Run the reverse sweep of a transaction, including one that is done."""
        record = await self._require_transaction(transaction_id)
        definition = self.registry.get_workflow(record.workflow_id)
        async with self._lock(transaction_id):
            record = await self._require_transaction(transaction_id)
            if record.status == TransactionState.DONE:
                record.status = TransactionState.COMPENSATING
                await self.log.update_transaction(record)
                logger.info(f"Compensating finished transaction {transaction_id}")
            elif not record.status.is_terminal:
                self._abort_requests.add(transaction_id)
            report = await self._drive(record, definition)
        self._forget(report)
        await self._propagate_to_parent(report)
        return report

    async def get_report(self, transaction_id: str) -> TransactionReport:
        record = await self._require_transaction(transaction_id)
        return self._report(record, await self.log.load(transaction_id))

    async def purge_finished(self, older_than: Optional[float] = None) -> int:
        """Delete terminal transactions past the configured retention window."""
        seconds = older_than if older_than is not None else self.config.engine.retention_seconds
        if seconds is None:
            return 0
        removed = await self.log.purge_finished(timedelta(seconds=seconds))
        if removed:
            logger.info(f"Purged {removed} finished transaction(s)")
        return removed

    # ------------------------------------------------------------------
    # Driving
    async def _drive(
        self, record: TransactionRecord, definition: WorkflowDefinition
    ) -> TransactionReport:
        if record.frozen:
            raise EngineConsistencyError(
                f"Transaction {record.transaction_id} is frozen; resolve it manually"
            )
        try:
            state = ExecutionState.from_log(
                record, definition, await self.log.load(record.transaction_id)
            )
            if record.status == TransactionState.PENDING:
                await self._set_status(state, TransactionState.INVOKING)
            if record.status == TransactionState.INVOKING:
                await self._invoke_phase(state)
            if record.status == TransactionState.COMPENSATING:
                await self._compensate_phase(state)
        except EngineConsistencyError as exc:
            await self._freeze(record, exc)
            raise
        return self._report(
            record,
            list(state.invoke_records.values()) + list(state.compensate_records.values()),
        )

    async def _invoke_phase(self, state: ExecutionState) -> None:
        record = state.record
        tasks: Dict[asyncio.Task, str] = {}
        failure = state.failure
        fatal: Optional[EngineConsistencyError] = None

        try:
            while True:
                if failure is None:
                    failure = self._interruption(record)
                if failure is None:
                    failure = await self._schedule(state, tasks)
                if not tasks:
                    break

                timeout = None if failure is not None else self._remaining(record)
                done, _ = await asyncio.wait(
                    tasks.keys(), timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                for task in done:
                    node_id = tasks.pop(task)
                    try:
                        outcome = task.result()
                    except Exception as exc:
                        outcome = _Outcome(StepStatus.FAILED, error=classify_error(exc, node_id))
                    if outcome.status == StepStatus.SUCCESS:
                        state.mark_done(node_id, outcome.output)
                    elif outcome.status == StepStatus.WAITING:
                        state.nodes[node_id] = NodeState.WAITING
                    else:
                        state.nodes[node_id] = NodeState.FAILED
                        if isinstance(outcome.error, EngineConsistencyError):
                            fatal = fatal or outcome.error
                        failure = failure or outcome.error
        finally:
            for task in tasks:
                task.cancel()

        if fatal is not None:
            raise fatal
        if failure is not None:
            state.failure = failure
            await self._abandon_waiting(state, failure)
            await self._set_status(state, TransactionState.COMPENSATING, failure)
        elif state.all_resolved():
            await self._complete(state)
        else:
            logger.info(
                f"Transaction {record.transaction_id} suspended; waiting on {state.waiting_steps()}"
            )

    async def _schedule(
        self, state: ExecutionState, tasks: Dict[asyncio.Task, str]
    ) -> Optional[WorkflowError]:
        """Start every ready node; pure nodes are evaluated inline."""
        progressed = True
        while progressed:
            progressed = False
            for node in state.pending_nodes():
                if not state.is_ready(node):
                    continue
                if state.is_guarded_off(node):
                    await self._skip(state, node)
                    progressed = True
                    continue
                if isinstance(node, StepNode):
                    state.nodes[node.id] = NodeState.RUNNING
                    task = asyncio.create_task(self._invoke_step(state, node))
                    tasks[task] = node.id
                    continue
                try:
                    if isinstance(node, TransformNode):
                        values = copy.deepcopy(resolve(node.deps, state.outputs))
                        state.mark_done(node.id, node.fn(values))
                    elif isinstance(node, ConditionalNode):
                        value = resolve(node.deps, state.outputs)
                        passed = node.predicate(value) if node.predicate else value
                        state.mark_done(node.id, bool(passed))
                        logger.debug(
                            f"Condition {node.id} of {state.record.transaction_id} is {bool(passed)}"
                        )
                    elif isinstance(node, ParallelNode):
                        state.mark_done(
                            node.id, tuple(state.outputs.get(m) for m in node.members)
                        )
                except Exception as exc:
                    state.nodes[node.id] = NodeState.FAILED
                    error = TransformError(
                        f"{node.kind.capitalize()} '{node.id}' failed: {type(exc).__name__}: {exc}",
                        step_id=node.id,
                    )
                    error.__cause__ = exc
                    logger.warning(f"{error.message} in {state.record.transaction_id}")
                    return error
                progressed = True
        return None

    async def _skip(self, state: ExecutionState, node: Any) -> None:
        state.mark_skipped(node.id)
        if isinstance(node, StepNode):
            await self._write(
                state,
                StepRecord(
                    transaction_id=state.record.transaction_id,
                    step_id=node.id,
                    status=StepStatus.SKIPPED,
                ),
            )
            logger.debug(f"Skipped step {node.id} of {state.record.transaction_id}")

    async def _invoke_step(self, state: ExecutionState, node: StepNode) -> _Outcome:
        tx_id = state.record.transaction_id
        key = (tx_id, node.id, StepAction.INVOKE.value)
        existing = state.invoke_records.get(node.id)
        if existing is not None and existing.status == StepStatus.SUCCESS:
            return _Outcome(StepStatus.SUCCESS, existing.response)
        if key in self._inflight:
            logger.warning(f"Step {node.id} of {tx_id} is already in flight; not invoking twice")
            return _Outcome(StepStatus.WAITING)

        self._inflight.add(key)
        try:
            step_input = copy.deepcopy(resolve(node.input, state.outputs))
            attempts = existing.attempts if existing is not None else 0
            if node.workflow is not None:
                return await self._invoke_sub_workflow(state, node, step_input, attempts)

            definition = self.registry.get_step(node.step_name)
            if definition is None:
                return _Outcome(
                    StepStatus.FAILED,
                    error=EngineConsistencyError(
                        f"Step '{node.step_name}' is not registered", step_id=node.id
                    ),
                )
            policy = self._policy(definition, node)

            while True:
                attempts += 1
                running = StepRecord(
                    transaction_id=tx_id,
                    step_id=node.id,
                    status=StepStatus.RUNNING,
                    input=strip_absent(step_input),
                    attempts=attempts,
                )
                if not await self._write(state, running):
                    return await self._outcome_from_log(state, node.id)

                context = self._context(state, node.id, StepAction.INVOKE, attempts)
                try:
                    raw = await self._call(definition.invoke, step_input, context, policy.timeout)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    error = classify_error(exc, node.id)
                    if self._should_retry(error, definition, attempts, policy):
                        logger.warning(
                            f"Step {node.id} of {tx_id} failed on attempt {attempts}: "
                            f"{error.message}; retrying"
                        )
                        await schedule_retry(
                            attempts, base=policy.backoff, factor=policy.factor, jitter=policy.jitter
                        )
                        continue
                    logger.error(
                        f"Step {node.id} of {tx_id} failed after {attempts} attempt(s): {error.message}"
                    )
                    await self._write(
                        state,
                        running.model_copy(
                            update={"status": StepStatus.FAILED, "error": error.to_info()}
                        ),
                    )
                    return _Outcome(StepStatus.FAILED, error=error)

                response = raw if isinstance(raw, StepResponse) else StepResponse(raw)
                if definition.async_:
                    await self._write(
                        state, running.model_copy(update={"status": StepStatus.WAITING})
                    )
                    logger.info(f"Step {node.id} of {tx_id} awaits an external signal")
                    return _Outcome(StepStatus.WAITING)
                return await self._succeed(
                    state, running, response.output, response.resolved_compensate_input()
                )
        finally:
            self._inflight.discard(key)

    async def _invoke_sub_workflow(
        self, state: ExecutionState, node: StepNode, step_input: Any, attempts: int
    ) -> _Outcome:
        tx_id = state.record.transaction_id
        child_id = child_transaction_id(tx_id, node.id)
        running = StepRecord(
            transaction_id=tx_id,
            step_id=node.id,
            status=StepStatus.RUNNING,
            input=strip_absent(step_input),
            attempts=attempts + 1,
        )
        if not await self._write(state, running):
            return await self._outcome_from_log(state, node.id)

        try:
            report = await self.run(
                node.workflow.workflow_id,
                step_input,
                transaction_id=child_id,
                parent=(tx_id, node.id),
            )
        except EngineConsistencyError as exc:
            return _Outcome(StepStatus.FAILED, error=exc)

        if report.status == TransactionState.DONE:
            return await self._succeed(state, running, report.result, child_id)
        if report.status.is_terminal:
            error = (
                error_from_info(report.error)
                if report.error
                else StepFailedError(f"Sub-workflow {child_id} ended {report.status.value}")
            )
            error.retryable = False
            error.step_id = node.id
            await self._write(
                state,
                running.model_copy(update={"status": StepStatus.FAILED, "error": error.to_info()}),
            )
            return _Outcome(StepStatus.FAILED, error=error)

        await self._write(state, running.model_copy(update={"status": StepStatus.WAITING}))
        logger.info(f"Step {node.id} of {tx_id} waits for sub-workflow {child_id}")
        return _Outcome(StepStatus.WAITING)

    async def _succeed(
        self, state: ExecutionState, running: StepRecord, output: Any, compensate_input: Any
    ) -> _Outcome:
        done = running.model_copy(
            update={
                "status": StepStatus.SUCCESS,
                "response": output,
                "compensate_input": compensate_input,
                "completion_index": state.next_completion_index(),
            }
        )
        if not await self._write(state, done):
            return await self._outcome_from_log(state, running.step_id)
        logger.debug(f"Step {running.step_id} of {running.transaction_id} succeeded")
        return _Outcome(StepStatus.SUCCESS, output)

    async def _complete(self, state: ExecutionState) -> None:
        record = state.record
        record.result = strip_absent(resolve(state.definition.result, state.outputs))
        await self._set_status(state, TransactionState.DONE)
        hook_errors = await self._run_hooks(state)
        if hook_errors:
            record.hook_errors = hook_errors
            await self.log.update_transaction(record)

    async def _run_hooks(self, state: ExecutionState) -> List[ErrorInfo]:
        errors: List[ErrorInfo] = []
        record = state.record
        for hook in state.definition.hooks:
            handlers = self.registry.hook_handlers(record.workflow_id, hook.name)
            if not handlers:
                continue
            if hook.guards and (
                state.nodes.get(hook.guards[-1]) == NodeState.SKIPPED
                or state.outputs.get(hook.guards[-1]) is False
            ):
                continue
            data = resolve(hook.data, state.outputs)
            context = StepContext(
                transaction_id=record.transaction_id,
                workflow_id=record.workflow_id,
                step_id=hook.name,
                services=self.services,
            )
            for handler in handlers:
                try:
                    await self._call(handler, data, context, None)
                except Exception as exc:
                    logger.error(
                        f"Hook {hook.name} handler failed for {record.transaction_id}: {exc}"
                    )
                    errors.append(
                        ErrorInfo(type=type(exc).__name__, message=str(exc), step_id=hook.name)
                    )
        return errors

    async def _abandon_waiting(self, state: ExecutionState, failure: WorkflowError) -> None:
        """Close steps still awaiting a signal so late signals are rejected."""
        for step_id in state.waiting_steps():
            current = state.invoke_records.get(step_id)
            if current is None:
                continue
            error = StepFailedError(
                f"Abandoned because the transaction is compensating: {failure.message}",
                retryable=False,
                step_id=step_id,
            )
            await self._write(
                state,
                current.model_copy(update={"status": StepStatus.FAILED, "error": error.to_info()}),
            )
            state.nodes[step_id] = NodeState.FAILED
            node = state.definition.node(step_id)
            if isinstance(node, StepNode) and node.workflow is not None:
                child_id = child_transaction_id(state.record.transaction_id, step_id)
                try:
                    await self.cancel(child_id)
                except WorkflowError as exc:
                    logger.warning(f"Could not abort sub-workflow {child_id}: {exc}")

    # ------------------------------------------------------------------
    # Compensation
    async def _compensate_phase(self, state: ExecutionState) -> None:
        record = state.record
        for invoked in state.succeeded_steps():
            current = state.compensate_records.get(invoked.step_id)
            if current is not None and current.status.is_terminal:
                continue
            if current is not None and current.status == StepStatus.WAITING:
                logger.info(
                    f"Transaction {record.transaction_id} waits for compensation of {invoked.step_id}"
                )
                return
            outcome = await self._compensate_step(state, invoked)
            if outcome.status == StepStatus.WAITING:
                return

        failed = [
            r.step_id
            for r in state.compensate_records.values()
            if r.status == StepStatus.FAILED
        ]
        if failed:
            logger.error(
                f"Transaction {record.transaction_id} could not be fully reverted; "
                f"failed compensations: {failed}"
            )
            await self._set_status(state, TransactionState.FAILED)
        else:
            await self._set_status(state, TransactionState.REVERTED)

    async def _compensate_step(self, state: ExecutionState, invoked: StepRecord) -> _Outcome:
        tx_id = state.record.transaction_id
        step_id = invoked.step_id
        node = state.definition.node(step_id)
        previous = state.compensate_records.get(step_id)
        attempts = previous.attempts if previous is not None else 0
        base = StepRecord(
            transaction_id=tx_id,
            step_id=step_id,
            action=StepAction.COMPENSATE,
            status=StepStatus.RUNNING,
            input=invoked.compensate_input,
        )
        key = (tx_id, step_id, StepAction.COMPENSATE.value)
        self._inflight.add(key)
        try:
            if isinstance(node, StepNode) and node.workflow is not None:
                return await self._compensate_sub_workflow(state, node, base, attempts)

            definition = self.registry.get_step(node.step_name) if node else None
            if definition is None:
                return await self._compensation_failed(
                    state,
                    base,
                    CompensationError(f"Step '{step_id}' is not registered", step_id=step_id),
                )
            if not definition.compensable:
                await self._write(state, base.model_copy(update={"status": StepStatus.SKIPPED}))
                return _Outcome(StepStatus.SKIPPED)
            if definition.compensate is None:
                return await self._compensation_failed(
                    state,
                    base,
                    CompensationError(
                        f"Step '{step_id}' must be reversed but has no compensate action",
                        step_id=step_id,
                    ),
                )

            policy = self._policy(definition, node)
            while True:
                attempts += 1
                running = base.model_copy(update={"attempts": attempts})
                await self._write(state, running)
                context = self._context(state, step_id, StepAction.COMPENSATE, attempts)
                try:
                    await self._call(
                        definition.compensate, invoked.compensate_input, context, policy.timeout
                    )
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    error = classify_error(exc, step_id)
                    if error.retryable and attempts <= policy.max_retries:
                        logger.warning(
                            f"Compensation of {step_id} in {tx_id} failed on attempt "
                            f"{attempts}: {error.message}; retrying"
                        )
                        await schedule_retry(
                            attempts, base=policy.backoff, factor=policy.factor, jitter=policy.jitter
                        )
                        continue
                    return await self._compensation_failed(state, running, error)

                if definition.compensate_async:
                    await self._write(state, running.model_copy(update={"status": StepStatus.WAITING}))
                    logger.info(f"Compensation of {step_id} in {tx_id} awaits an external signal")
                    return _Outcome(StepStatus.WAITING)
                await self._write(state, running.model_copy(update={"status": StepStatus.COMPENSATED}))
                logger.info(f"Compensated step {step_id} of {tx_id}")
                return _Outcome(StepStatus.COMPENSATED)
        finally:
            self._inflight.discard(key)

    async def _compensate_sub_workflow(
        self, state: ExecutionState, node: StepNode, base: StepRecord, attempts: int
    ) -> _Outcome:
        child_id = child_transaction_id(state.record.transaction_id, node.id)
        running = base.model_copy(update={"attempts": attempts + 1})
        await self._write(state, running)
        try:
            report = await self.compensate(child_id)
        except WorkflowError as exc:
            return await self._compensation_failed(state, running, exc)

        if report.status == TransactionState.REVERTED:
            await self._write(state, running.model_copy(update={"status": StepStatus.COMPENSATED}))
            return _Outcome(StepStatus.COMPENSATED)
        if report.status == TransactionState.FAILED:
            return await self._compensation_failed(
                state,
                running,
                CompensationError(
                    f"Sub-workflow {child_id} could not be reverted", step_id=node.id
                ),
            )
        await self._write(state, running.model_copy(update={"status": StepStatus.WAITING}))
        return _Outcome(StepStatus.WAITING)

    async def _compensation_failed(
        self, state: ExecutionState, running: StepRecord, error: WorkflowError
    ) -> _Outcome:
        if not isinstance(error, CompensationError):
            wrapped = CompensationError(
                f"Compensation of '{running.step_id}' failed: {error.message}",
                step_id=running.step_id,
            )
            wrapped.__cause__ = error
            error = wrapped
        logger.error(f"{error.message} in {running.transaction_id}")
        await self._write(
            state,
            running.model_copy(update={"status": StepStatus.FAILED, "error": error.to_info()}),
        )
        return _Outcome(StepStatus.FAILED, error=error)

    # ------------------------------------------------------------------
    # Signals and parents
    def _apply_signal(
        self, state: ExecutionState, current: StepRecord, signal: StepSignal
    ) -> StepRecord:
        if signal.outcome == "success":
            if signal.action == StepAction.INVOKE:
                return current.model_copy(
                    update={
                        "status": StepStatus.SUCCESS,
                        "response": signal.response,
                        "compensate_input": (
                            signal.compensate_input
                            if signal.compensate_input is not None
                            else signal.response
                        ),
                        "completion_index": state.next_completion_index(),
                    }
                )
            return current.model_copy(update={"status": StepStatus.COMPENSATED})

        error = signal.error or ErrorInfo(
            type="CompensationError" if signal.action == StepAction.COMPENSATE else "StepFailedError",
            message=f"Step '{signal.step_id}' reported failure",
            step_id=signal.step_id,
        )
        return current.model_copy(update={"status": StepStatus.FAILED, "error": error})

    async def _propagate_to_parent(self, report: TransactionReport) -> None:
        """Report a suspended child's conclusion to the parent step waiting for it."""
        if not report.status.is_terminal:
            return
        record = await self.log.get_transaction(report.transaction_id)
        if record is None or not record.parent_transaction_id:
            return
        parent = await self.log.get_transaction(record.parent_transaction_id)
        if parent is None:
            return
        steps = {
            (r.step_id, r.action): r for r in await self.log.load(parent.transaction_id)
        }
        invoked = steps.get((record.parent_step_id, StepAction.INVOKE))
        compensated = steps.get((record.parent_step_id, StepAction.COMPENSATE))

        signal: Optional[StepSignal] = None
        common = dict(
            workflow_id=parent.workflow_id,
            transaction_id=parent.transaction_id,
            step_id=record.parent_step_id,
        )
        if invoked is not None and invoked.status == StepStatus.WAITING:
            if report.status == TransactionState.DONE:
                signal = StepSignal(
                    **common,
                    response=report.result,
                    compensate_input=report.transaction_id,
                )
            else:
                signal = StepSignal(**common, outcome="failure", error=report.error)
        elif compensated is not None and compensated.status == StepStatus.WAITING:
            if report.status == TransactionState.REVERTED:
                signal = StepSignal(**common, action=StepAction.COMPENSATE)
            elif report.status == TransactionState.FAILED:
                signal = StepSignal(
                    **common, action=StepAction.COMPENSATE, outcome="failure"
                )
        if signal is None:
            return
        try:
            await self.signal(signal)
        except StepConflictError:
            logger.debug(f"Parent {parent.transaction_id} already concluded {record.parent_step_id}")

    # ------------------------------------------------------------------
    # Helpers
    def _lock(self, transaction_id: str) -> asyncio.Lock:
        lock = self._locks.get(transaction_id)
        if lock is None:
            lock = self._locks[transaction_id] = asyncio.Lock()
        return lock

    def _forget(self, report: TransactionReport) -> None:
        if report.status.is_terminal:
            self._abort_requests.discard(report.transaction_id)

    async def _require_transaction(self, transaction_id: str) -> TransactionRecord:
        record = await self.log.get_transaction(transaction_id)
        if record is None:
            raise TransactionNotFoundError(f"Transaction {transaction_id} not found")
        return record

    async def _write(self, state: ExecutionState, record: StepRecord) -> bool:
        accepted = await self.log.append(record)
        if accepted:
            target = (
                state.invoke_records
                if record.action == StepAction.INVOKE
                else state.compensate_records
            )
            target[record.step_id] = record
        else:
            logger.warning(
                f"Ignored {record.status.value} write for {record.step_id} of "
                f"{record.transaction_id}: record already terminal"
            )
        return accepted

    async def _outcome_from_log(self, state: ExecutionState, step_id: str) -> _Outcome:
        for stored in await self.log.load(state.record.transaction_id):
            if stored.step_id == step_id and stored.action == StepAction.INVOKE:
                state.invoke_records[step_id] = stored
                if stored.status == StepStatus.SUCCESS:
                    return _Outcome(StepStatus.SUCCESS, stored.response)
                if stored.status == StepStatus.FAILED:
                    error = (
                        error_from_info(stored.error)
                        if stored.error
                        else StepFailedError("Step failed", step_id=step_id)
                    )
                    return _Outcome(StepStatus.FAILED, error=error)
                return _Outcome(StepStatus.WAITING)
        return _Outcome(StepStatus.WAITING)

    async def _set_status(
        self,
        state: ExecutionState,
        status: TransactionState,
        error: Optional[WorkflowError] = None,
    ) -> None:
        record = state.record
        previous = record.status
        record.status = status
        if error is not None and record.error is None:
            record.error = error.to_info()
        await self.log.update_transaction(record)
        logger.info(
            f"Transaction {record.transaction_id} of workflow {record.workflow_id}: "
            f"{previous.value} -> {status.value}"
        )

    async def _freeze(self, record: TransactionRecord, exc: EngineConsistencyError) -> None:
        record.frozen = True
        if record.error is None:
            record.error = exc.to_info()
        await self.log.update_transaction(record)
        logger.error(
            f"Froze transaction {record.transaction_id}: {exc.message}; operator attention required"
        )

    def _interruption(self, record: TransactionRecord) -> Optional[WorkflowError]:
        if record.transaction_id in self._abort_requests:
            return TransactionAbortedError(f"Transaction {record.transaction_id} was aborted")
        if record.deadline is not None and utcnow() >= record.deadline:
            return TransactionTimeoutError(
                f"Transaction {record.transaction_id} exceeded its deadline"
            )
        return None

    def _remaining(self, record: TransactionRecord) -> Optional[float]:
        if record.deadline is None:
            return None
        return max((record.deadline - utcnow()).total_seconds(), 0.0)

    def _deadline(self, definition: WorkflowDefinition, timeout: Optional[float]):
        seconds = timeout or definition.timeout or self.config.engine.transaction_timeout
        return utcnow() + timedelta(seconds=seconds) if seconds else None

    def _policy(self, definition: StepDefinition, node: Optional[StepNode]) -> _Policy:
        defaults = self.config.engine
        overrides = node.overrides if node is not None else {}
        retry = definition.retry
        max_retries = overrides.get("max_retries", retry.max_retries)
        return _Policy(
            max_retries=defaults.default_max_retries if max_retries is None else max_retries,
            backoff=defaults.default_retry_backoff if retry.backoff is None else retry.backoff,
            factor=defaults.default_backoff_factor
            if retry.backoff_factor is None
            else retry.backoff_factor,
            jitter=defaults.default_jitter if retry.jitter is None else retry.jitter,
            timeout=overrides.get("timeout")
            or definition.timeout
            or defaults.default_step_timeout,
        )

    @staticmethod
    def _should_retry(
        error: WorkflowError, definition: StepDefinition, attempts: int, policy: _Policy
    ) -> bool:
        if attempts > policy.max_retries:
            return False
        if isinstance(error, ValidationError):
            return False
        if isinstance(error, NotFoundError):
            return definition.retry_on_not_found
        return error.retryable

    def _context(
        self, state: ExecutionState, step_id: str, action: StepAction, attempt: int
    ) -> StepContext:
        return StepContext(
            transaction_id=state.record.transaction_id,
            workflow_id=state.record.workflow_id,
            step_id=step_id,
            action=action,
            attempt=attempt,
            services=self.services,
            metadata={"parent_transaction_id": state.record.parent_transaction_id},
        )

    @staticmethod
    async def _call(fn: Any, arg: Any, context: StepContext, timeout: Optional[float]) -> Any:
        async def invoke() -> Any:
            if inspect.iscoroutinefunction(fn):
                return await fn(arg, context)
            # Plain functions run on a worker thread.
            result = await asyncio.to_thread(fn, arg, context)
            if inspect.isawaitable(result):
                result = await result
            return result

        if timeout:
            return await asyncio.wait_for(invoke(), timeout)
        return await invoke()

    @staticmethod
    def _report(record: TransactionRecord, steps: Iterable[StepRecord]) -> TransactionReport:
        steps = list(steps)
        order = {
            r.step_id: r.completion_index or 0
            for r in steps
            if r.action == StepAction.INVOKE
        }
        compensations = sorted(
            (r for r in steps if r.action == StepAction.COMPENSATE),
            key=lambda r: order.get(r.step_id, 0),
            reverse=True,
        )
        return TransactionReport(
            transaction_id=record.transaction_id,
            workflow_id=record.workflow_id,
            status=record.status,
            result=record.result,
            error=record.error,
            compensations=[
                CompensationOutcome(step_id=r.step_id, status=r.status, error=r.error)
                for r in compensations
            ],
            hook_errors=list(record.hook_errors),
            steps=[
                StepSummary(
                    step_id=r.step_id, action=r.action, status=r.status, attempts=r.attempts
                )
                for r in steps
            ],
            frozen=record.frozen,
        )
