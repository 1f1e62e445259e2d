import pytest

from stagehand_automation.errors import CycleError, PlanValidationError
from stagehand_automation.graph import DependencyGraph
from stagehand_automation.types import Resource


def test_declaration_order_breaks_ties():
    graph = DependencyGraph(["c", "a", "b"], {"b": ["c"]})
    assert graph.ordered_names() == ["c", "a", "b"]


def test_references_imply_dependencies():
    resources = [
        Resource("instance", "web", {"subnet_id": "${public.id}"}),
        Resource("subnet", "public", {"vpc_id": "${main.id}"}),
        Resource("vpc", "main", {"cidr_block": "10.0.0.0/16"}),
    ]
    graph = DependencyGraph.from_resources(resources)
    assert graph.ordered_names() == ["main", "public", "web"]


def test_cycle_is_reported_with_path():
    graph = DependencyGraph(["a", "b", "c"], {"a": ["b"], "b": ["c"], "c": ["a"]})
    with pytest.raises(CycleError) as excinfo:
        graph.order()
    assert excinfo.value.cycle == ["a", "b", "c", "a"]
    assert "a -> b -> c -> a" in str(excinfo.value)


def test_self_reference_is_a_cycle():
    graph = DependencyGraph.from_resources([Resource("vpc", "main", {"tags": {"peer": "${main.id}"}})])
    with pytest.raises(CycleError):
        graph.order()


def test_unknown_dependency_rejected():
    with pytest.raises(PlanValidationError, match="unknown resource 'ghost'"):
        DependencyGraph.from_resources([Resource("vpc", "main", depends_on=["ghost"])])


def test_duplicate_names_rejected():
    with pytest.raises(PlanValidationError):
        DependencyGraph.from_resources([Resource("vpc", "main"), Resource("subnet", "main")])
