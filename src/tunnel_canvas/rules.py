"""
Connection rules for Tunnel-Canvas.

``can_connect`` decides whether a proposed ``source -> target`` edge is
legal given the edges already on the canvas.  Rules are checked in
order and the first failure wins:

  1. No self-loops.
  2. No second edge between the same pair, in either direction.
  3. Masters are containers: only their children connect.
  4. A user entry is never a target; a target is never a source.
  5. A user entry feeds exactly one server or client.
  6. A target is fed by exactly one server or client.
  7. A server feeds a client or a target.
  8. A client feeds a server, another client, or a target.
  9. Inside one master the only legal link is client -> server.

Decoration is computed separately by ``edge_style_for`` and never
affects the verdict.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from .models import EDGE_STYLES, EdgeStyle, TopologyEdge, TopologyNode


@dataclass
class ConnectionCheck:
    """Verdict for a proposed connection."""
    ok: bool
    reason: str = ""
    style: Optional[EdgeStyle] = None


def edge_style_for(source_role: str, target_role: str) -> EdgeStyle:
    """Return the decoration for an edge between the two roles."""
    if source_role == "S" and target_role == "C":
        key = "server-client"
    elif source_role == "C" and target_role == "S":
        key = "client-server"
    elif (source_role == "U" and target_role in ("S", "C")) or (
        source_role in ("S", "C") and target_role == "T"
    ):
        key = "traffic"
    else:
        key = "default"
    return EDGE_STYLES[key].model_copy()


def _reject(reason: str) -> ConnectionCheck:
    return ConnectionCheck(ok=False, reason=reason)


def can_connect(
    source: TopologyNode,
    target: TopologyNode,
    edges: Iterable[TopologyEdge],
) -> ConnectionCheck:
    """Check a proposed ``source -> target`` connection against the rules."""
    edges = list(edges)
    src, dst = source.role, target.role

    if source.id == target.id:
        return _reject("A node cannot connect to itself.")

    if any(edge.joins(source.id, target.id) for edge in edges):
        return _reject("These two nodes are already connected.")

    if src == "M" or dst == "M":
        return _reject("Master (M) nodes are containers; connect the S/C nodes inside them.")

    if dst == "U":
        return _reject("A user entry (U) cannot be the target of a connection.")
    if src == "T":
        return _reject("A target service (T) cannot be the source of a connection.")

    if src == "U":
        if dst not in ("S", "C"):
            return _reject("A user entry (U) can only connect to a server (S) or client (C).")
        if any(edge.source == source.id for edge in edges):
            return _reject("A user entry (U) can only have one outgoing connection.")

    if dst == "T":
        if src not in ("S", "C"):
            return _reject("A target service (T) can only be reached from a server (S) or client (C).")
        if any(edge.target == target.id for edge in edges):
            return _reject("A target service (T) can only have one incoming connection.")

    if src == "S" and dst not in ("C", "T"):
        return _reject("A server (S) can only connect to a client (C) or target service (T).")
    if src == "C" and dst not in ("S", "C", "T"):
        return _reject("A client (C) can only connect to a server (S), client (C) or target service (T).")

    if source.parent and source.parent == target.parent:
        if not (src == "C" and dst == "S"):
            return _reject("Inside one master only a client (C) may connect to a server (S).")

    return ConnectionCheck(ok=True, style=edge_style_for(src, dst))
