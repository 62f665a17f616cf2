from __future__ import annotations

import pytest

from agentcore.services.errors import ValidationError
from agentcore.services.workflow_graph import (
    descendants,
    find_start_nodes,
    topological_order,
    validate_definition,
)

TYPES = ["ai_call", "condition", "data_transform"]


def _node(node_id, node_type="data_transform"):
    return {"id": node_id, "type": node_type, "config": {}}


def _edge(source, target):
    return {"source": source, "target": target}


def _linear(*ids):
    return {
        "nodes": [_node(i) for i in ids],
        "edges": [_edge(a, b) for a, b in zip(ids, ids[1:])],
    }


class TestValidateDefinition:
    def test_valid_linear_graph(self):
        assert validate_definition(_linear("a", "b", "c"), TYPES) == []

    def test_missing_edges_array(self):
        assert validate_definition({"nodes": [_node("a")]}, TYPES) == ["Workflow must have edges array"]

    def test_not_a_mapping(self):
        assert validate_definition(None, TYPES) == [
            "Workflow must have nodes array",
            "Workflow must have edges array",
        ]

    def test_empty_nodes(self):
        assert validate_definition({"nodes": [], "edges": []}, TYPES) == ["Workflow must have at least one node"]

    def test_collects_every_violation(self):
        definition = {
            "nodes": [_node("a"), _node("a"), {"id": "b"}, _node("c", "teleport")],
            "edges": [_edge("a", "ghost"), {"source": "a"}],
        }
        assert validate_definition(definition, TYPES) == [
            "Duplicate node id: a",
            "Each node must have id and type",
            "Unknown node type: teleport",
            "Edge target node not found: ghost",
            "Each edge must have source and target",
        ]

    def test_missing_source_is_named(self):
        definition = {"nodes": [_node("a")], "edges": [_edge("nowhere", "a")]}
        assert validate_definition(definition, TYPES) == ["Edge source node not found: nowhere"]

    def test_cycle_detected(self):
        definition = _linear("a", "b", "c")
        definition["edges"].append(_edge("c", "b"))
        assert validate_definition(definition, TYPES) == ["Workflow graph contains a cycle involving: b, c"]


class TestTraversal:
    def test_start_nodes_in_definition_order(self):
        definition = {
            "nodes": [_node("z"), _node("join"), _node("a")],
            "edges": [_edge("z", "join"), _edge("a", "join")],
        }
        assert find_start_nodes(definition) == ["z", "a"]

    def test_topological_order_respects_edges(self):
        definition = {
            "nodes": [_node("d"), _node("b"), _node("a"), _node("c")],
            "edges": [_edge("a", "b"), _edge("b", "d"), _edge("c", "d")],
        }
        order = topological_order(definition)
        assert order == ["a", "c", "b", "d"]

    def test_topological_order_rejects_cycle(self):
        definition = _linear("a", "b")
        definition["edges"].append(_edge("b", "a"))
        with pytest.raises(ValidationError, match="cycle"):
            topological_order(definition)

    def test_descendants(self):
        definition = {
            "nodes": [_node(i) for i in "abcde"],
            "edges": [_edge("a", "b"), _edge("b", "c"), _edge("a", "d")],
        }
        assert descendants(definition, "a") == {"b", "c", "d"}
        assert descendants(definition, "b") == {"c"}
        assert descendants(definition, "e") == set()
