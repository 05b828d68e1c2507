"""Step definitions: the atomic units of work a workflow is composed of."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..errors import WorkflowDefinitionError
from .refs import Ref

InvokeFn = Callable[[Any, Any], Any]
CompensateFn = Callable[[Any, Any], Any]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for a step. ``None`` fields fall back to engine defaults."""

    max_retries: Optional[int] = None
    backoff: Optional[float] = None
    backoff_factor: Optional[float] = None
    jitter: Optional[float] = None


@dataclass(frozen=True, eq=False)
class StepDefinition:
    """Immutable description of a step.

    ``invoke(input, context)`` performs the work and may return a plain value
    or a :class:`~ledgerflow.contracts.StepResponse`. ``compensate(input,
    context)`` undoes it and must tolerate being called more than once.
    """

    name: str
    invoke: InvokeFn
    compensate: Optional[CompensateFn] = None
    retry: RetryPolicy = RetryPolicy()
    timeout: Optional[float] = None
    async_: bool = False
    compensate_async: bool = False
    compensable: bool = False
    retry_on_not_found: bool = False

    def __call__(
        self,
        input: Any = None,
        *,
        name: Optional[str] = None,
        max_retries: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Ref:
        """Add this step to the workflow currently being composed."""
        from .builder import current_builder

        overrides = {}
        if max_retries is not None:
            overrides["max_retries"] = max_retries
        if timeout is not None:
            overrides["timeout"] = timeout
        return current_builder().add_step(self, input, name=name, overrides=overrides)

    @property
    def has_compensation(self) -> bool:
        return self.compensate is not None


def create_step(
    name: str,
    invoke: Optional[InvokeFn] = None,
    compensate: Optional[CompensateFn] = None,
    *,
    max_retries: Optional[int] = None,
    retry_backoff: Optional[float] = None,
    retry: Optional[RetryPolicy] = None,
    timeout: Optional[float] = None,
    async_: bool = False,
    compensate_async: bool = False,
    compensable: Optional[bool] = None,
    retry_on_not_found: bool = False,
):
    """Define a step. Usable directly or as a decorator over the invoke function.

    Example::

        reserve = create_step("reserve", reserve_stock, release_stock, max_retries=2)

        @create_step("notify", compensable=False)
        async def notify(data, context):
            ...
    """
    if not name:
        raise WorkflowDefinitionError("Step name must be a non-empty string")

    policy = retry or RetryPolicy()
    if max_retries is not None or retry_backoff is not None:
        policy = RetryPolicy(
            max_retries=max_retries if max_retries is not None else policy.max_retries,
            backoff=retry_backoff if retry_backoff is not None else policy.backoff,
            backoff_factor=policy.backoff_factor,
            jitter=policy.jitter,
        )

    def build(fn: InvokeFn) -> StepDefinition:
        return StepDefinition(
            name=name,
            invoke=fn,
            compensate=compensate,
            retry=policy,
            timeout=timeout,
            async_=async_,
            compensate_async=compensate_async,
            compensable=compensate is not None if compensable is None else compensable,
            retry_on_not_found=retry_on_not_found,
        )

    if invoke is None:
        return build
    return build(invoke)
