import pytest

from ledgerflow import create_hook, create_step, create_workflow
from ledgerflow.errors import WorkflowDefinitionError, WorkflowNotFoundError
from ledgerflow.registry import WorkflowRegistry


def test_register_workflow_registers_steps_and_children():
    inner = create_step("inner", lambda data, context: data)
    outer = create_step("outer", lambda data, context: data)
    child = create_workflow("child", lambda input: inner(input))
    parent = create_workflow("parent", lambda input: outer(child.run_as_step(input)))

    registry = WorkflowRegistry()
    registry.register_workflow(parent)

    assert registry.get_step("inner") is inner
    assert registry.get_step("outer") is outer
    assert registry.get_workflow("child") is child
    assert {w.workflow_id for w in registry.workflows()} == {"child", "parent"}


def test_conflicting_definitions_are_rejected():
    registry = WorkflowRegistry()
    registry.register_step(create_step("charge", lambda data, context: 1))

    with pytest.raises(WorkflowDefinitionError):
        registry.register_step(create_step("charge", lambda data, context: 2))

    flow = create_workflow("flow", lambda input: None)
    registry.register_workflow(flow)
    registry.register_workflow(flow)
    with pytest.raises(WorkflowDefinitionError):
        registry.register_workflow(create_workflow("flow", lambda input: None))


def test_unknown_workflow_and_undeclared_hook():
    registry = WorkflowRegistry()
    with pytest.raises(WorkflowNotFoundError):
        registry.get_workflow("missing")

    def body(input):
        create_hook("created", input)

    registry.register_workflow(create_workflow("hooked", body))
    registry.register_hook_handler("hooked", "created", lambda data, context: None)
    assert len(registry.hook_handlers("hooked", "created")) == 1
    with pytest.raises(WorkflowDefinitionError):
        registry.register_hook_handler("hooked", "deleted", lambda data, context: None)


def test_clear_forgets_everything():
    registry = WorkflowRegistry()
    registry.register_workflow(
        create_workflow("flow", lambda input: create_step("s", lambda d, c: d)(input))
    )
    registry.clear()
    assert registry.workflows() == []
    assert registry.steps() == []
    assert not registry.has_workflow("flow")
