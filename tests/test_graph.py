"""Graph compilation and registry tests."""

import pytest

from sagaflow.contracts import StepDefinition, WorkflowDefinition
from sagaflow.errors import (
    CycleDetected,
    DefinitionError,
    DuplicateStepName,
    UnknownDefinition,
    UnknownPredecessor,
)
from sagaflow.graph import compile_definition
from sagaflow.registry import DefinitionRegistry


def noop(ctx):
    return None


def diamond() -> WorkflowDefinition:
    return (
        WorkflowDefinition(name="diamond")
        .with_step("A", noop)
        .with_step("B", noop, after="A")
        .with_step("C", noop, after="A")
        .with_step("D", noop, after=["B", "C"])
    )


def test_diamond_order_and_edges():
    graph = compile_definition(diamond())
    assert graph.order == ("A", "B", "C", "D")
    assert graph.predecessors["D"] == ("B", "C")
    assert graph.dependents["A"] == ("B", "C")
    assert graph.dependencies() == {"A": [], "B": ["A"], "C": ["A"], "D": ["B", "C"]}


def test_ties_follow_declaration_order():
    definition = WorkflowDefinition(
        name="ties",
        steps=(
            StepDefinition(name="z", handler=noop),
            StepDefinition(name="late", handler=noop, after=("a",)),
            StepDefinition(name="a", handler=noop),
        ),
    )
    graph = compile_definition(definition)
    assert graph.order == ("z", "a", "late")


def test_every_step_comes_after_its_predecessors():
    graph = compile_definition(diamond())
    for name, preds in graph.predecessors.items():
        for pred in preds:
            assert graph.index(pred) < graph.index(name)


def test_cycle_is_reported_with_its_path():
    definition = (
        WorkflowDefinition(name="loop")
        .with_step("start", noop)
        .with_step("a", noop, after=["start", "c"])
        .with_step("b", noop, after="a")
        .with_step("c", noop, after="b")
    )
    with pytest.raises(CycleDetected) as exc_info:
        compile_definition(definition)
    cycle = exc_info.value.cycle
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}
    assert "start" not in cycle


def test_duplicate_step_name():
    definition = WorkflowDefinition(name="dup").with_step("a", noop).with_step("a", noop)
    with pytest.raises(DuplicateStepName):
        compile_definition(definition)


def test_unknown_and_self_predecessor():
    with pytest.raises(UnknownPredecessor):
        compile_definition(WorkflowDefinition(name="x").with_step("a", noop, after="ghost"))
    with pytest.raises(UnknownPredecessor) as exc_info:
        compile_definition(WorkflowDefinition(name="x").with_step("a", noop, after="a"))
    assert "itself" in str(exc_info.value)


def test_with_step_leaves_original_untouched():
    base = WorkflowDefinition(name="base").with_step("a", noop)
    extended = base.with_step("b", noop, after="a")
    assert len(base.steps) == 1
    assert len(extended.steps) == 2


def test_registry_resolves_latest_version():
    registry = DefinitionRegistry()
    v1 = WorkflowDefinition(name="order", version=1).with_step("a", noop)
    v2 = WorkflowDefinition(name="order", version=2).with_step("a", noop)
    registry.register(v1)
    registry.register(v2)

    assert registry.get("order@1").definition is v1
    assert registry.get("order").definition is v2
    assert registry.register(v1) is registry.get("order@1")
    with pytest.raises(UnknownDefinition):
        registry.get("missing")


def test_registry_rejects_conflicting_definition():
    registry = DefinitionRegistry()
    registry.register(WorkflowDefinition(name="order").with_step("a", noop))
    with pytest.raises(DefinitionError):
        registry.register(WorkflowDefinition(name="order").with_step("b", noop))
