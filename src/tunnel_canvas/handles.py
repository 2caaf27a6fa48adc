"""Handle orientation: which side of each node an edge attaches to."""

from __future__ import annotations

from typing import Iterable, Mapping, Optional

from .models import (
    INITIAL_ACTIVE_HANDLES,
    LEAF_ROLES,
    ActiveHandles,
    TopologyEdge,
    TopologyNode,
)


def absolute_position(node: TopologyNode, nodes_by_id: Optional[Mapping[str, TopologyNode]] = None) -> tuple[float, float]:
    """Return the canvas position of ``node``, offsetting children by their container."""
    x, y = node.x, node.y
    if node.parent and nodes_by_id:
        parent = nodes_by_id.get(node.parent)
        if parent is not None:
            x += parent.x
            y += parent.y
    return x, y


def resolve_handles(
    source: TopologyNode,
    target: TopologyNode,
    nodes_by_id: Optional[Mapping[str, TopologyNode]] = None,
) -> tuple[str, str]:
    """Pick ``(source_handle, target_handle)`` for an edge.

    The target at or below the source gets ``bottom -> top``, otherwise
    ``top -> bottom``.  A user entry always emits from its bottom and a
    target service always receives on its top.
    """
    _, source_y = absolute_position(source, nodes_by_id)
    _, target_y = absolute_position(target, nodes_by_id)
    dy = (target_y + target.height / 2) - (source_y + source.height / 2)

    if dy >= 0:
        source_handle, target_handle = "bottom", "top"
    else:
        source_handle, target_handle = "top", "bottom"

    if source.role == "U":
        source_handle = "bottom"
        if target.role in ("S", "C"):
            target_handle = "top"
    if target.role == "T":
        target_handle = "top"

    if source.role == "U" and target.role == "T":
        source_handle, target_handle = "bottom", "top"

    return source_handle, target_handle


def active_handles_for(
    node: TopologyNode,
    edges: Iterable[TopologyEdge],
    nodes_by_id: Mapping[str, TopologyNode],
) -> ActiveHandles:
    """Derive the live handle set of ``node`` from its edges.

    Left/right handles are never live on leaf nodes; masters keep all four.
    """
    initial = INITIAL_ACTIVE_HANDLES[node.role].model_copy()
    if node.role not in LEAF_ROLES:
        return initial

    connected = False
    for edge in edges:
        if not edge.touches(node.id):
            continue
        other = nodes_by_id.get(edge.target if edge.source == node.id else edge.source)
        if other is not None and other.role in LEAF_ROLES:
            connected = True
            break

    if not connected:
        handles = initial
    elif node.role == "U":
        handles = ActiveHandles(bottom=True)
    elif node.role == "T":
        handles = ActiveHandles(top=True)
    else:
        handles = ActiveHandles(top=True, bottom=True)

    handles.left = False
    handles.right = False
    return handles
