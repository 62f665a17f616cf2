"""
Workflow graph helpers.

A definition is ``{"nodes": [{"id", "type", "config"}], "edges": [{"source", "target"}]}``.
Validation collects every violation instead of stopping at the first one.
"""
from __future__ import annotations

from collections import deque
from collections.abc import Iterable
from typing import Any

from agentcore.services.errors import ValidationError


def validate_definition(definition: Any, node_types: Iterable[str]) -> list[str]:
    errors: list[str] = []
    if not isinstance(definition, dict):
        return ["Workflow must have nodes array", "Workflow must have edges array"]

    known_types = set(node_types)
    nodes = definition.get("nodes")
    edges = definition.get("edges")

    node_ids: set[str] = set()
    if not isinstance(nodes, list):
        errors.append("Workflow must have nodes array")
    elif not nodes:
        errors.append("Workflow must have at least one node")
    else:
        for node in nodes:
            if not isinstance(node, dict) or not node.get("id") or not node.get("type"):
                errors.append("Each node must have id and type")
                continue
            if node["type"] not in known_types:
                errors.append(f"Unknown node type: {node['type']}")
            if node["id"] in node_ids:
                errors.append(f"Duplicate node id: {node['id']}")
            node_ids.add(node["id"])

    if not isinstance(edges, list):
        errors.append("Workflow must have edges array")
    else:
        for edge in edges:
            if not isinstance(edge, dict) or not edge.get("source") or not edge.get("target"):
                errors.append("Each edge must have source and target")
                continue
            if edge["source"] not in node_ids:
                errors.append(f"Edge source node not found: {edge['source']}")
            if edge["target"] not in node_ids:
                errors.append(f"Edge target node not found: {edge['target']}")

    if not errors:
        cyclic = _cyclic_nodes(definition)
        if cyclic:
            errors.append(f"Workflow graph contains a cycle involving: {', '.join(cyclic)}")
    return errors


def node_ids(definition: dict) -> list[str]:
    return [node["id"] for node in definition.get("nodes") or []]


def nodes_by_id(definition: dict) -> dict[str, dict]:
    return {node["id"]: node for node in definition.get("nodes") or []}


def successors(definition: dict) -> dict[str, list[str]]:
    result: dict[str, list[str]] = {node_id: [] for node_id in node_ids(definition)}
    for edge in definition.get("edges") or []:
        result.setdefault(edge["source"], []).append(edge["target"])
    return result


def predecessors(definition: dict) -> dict[str, list[str]]:
    result: dict[str, list[str]] = {node_id: [] for node_id in node_ids(definition)}
    for edge in definition.get("edges") or []:
        result.setdefault(edge["target"], []).append(edge["source"])
    return result


def find_start_nodes(definition: dict) -> list[str]:
    """Nodes with no incoming edge, in definition order."""
    preds = predecessors(definition)
    return [node_id for node_id in node_ids(definition) if not preds.get(node_id)]


def descendants(definition: dict, node_id: str) -> set[str]:
    succ = successors(definition)
    seen: set[str] = set()
    stack = list(succ.get(node_id, []))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(succ.get(current, []))
    return seen


def topological_order(definition: dict) -> list[str]:
    """Kahn's algorithm seeded with the start nodes in definition order."""
    order, remaining = _kahn(definition)
    if remaining:
        raise ValidationError(f"Workflow graph contains a cycle involving: {', '.join(remaining)}")
    return order


def _kahn(definition: dict) -> tuple[list[str], list[str]]:
    succ = successors(definition)
    in_degree = {node_id: len(preds) for node_id, preds in predecessors(definition).items()}
    ready = deque(find_start_nodes(definition))
    order: list[str] = []
    while ready:
        current = ready.popleft()
        order.append(current)
        for target in succ.get(current, []):
            in_degree[target] -= 1
            if in_degree[target] == 0:
                ready.append(target)
    remaining = [node_id for node_id in node_ids(definition) if in_degree.get(node_id, 0) > 0]
    return order, remaining


def _cyclic_nodes(definition: dict) -> list[str]:
    return _kahn(definition)[1]
