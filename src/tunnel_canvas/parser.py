"""YAML recipe parser for Tunnel-Canvas.

A recipe describes a topology to build:

    title: Edge relay
    masters:                      # optional, merged over the masters file
      - id: alpha
        api_url: https://alpha.example.com:9090
        token: secret
    nodes:
      - {id: m1, role: M, master: alpha, x: 0, y: 0}
      - {id: s1, role: S, parent: m1, tunnel_address: "0.0.0.0:10000", target_address: "127.0.0.1:8080"}
      - {id: t1, role: T, x: 40, y: 400, target_address: "127.0.0.1:8080"}
    edges:
      - [s1, t1]
      - {source: u1, target: s1}

Nodes go through the graph store's placement commands and edges through
``connect``, so a loaded graph obeys the same rules as one built by hand.
Recipes are only read; nothing writes them back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import yaml

from .config import merge_masters, parse_masters
from .errors import ValidationError
from .models import MasterConfig
from .store import Notifier, TopologyGraph

logger = logging.getLogger(__name__)

# Keys with a structural meaning; everything else on a node entry is a node field
_NODE_KEYS = ("id", "role", "parent", "master", "x", "y")


@dataclass
class Recipe:
    """A loaded recipe: the graph plus any edges the rules refused."""
    title: str
    graph: TopologyGraph
    rejected: list[ValidationError] = field(default_factory=list)


def parse_yaml(
    yaml_str: str,
    masters: Iterable[MasterConfig] = (),
    strict: bool = True,
    notify: Optional[Notifier] = None,
) -> Recipe:
    """Parse a YAML recipe string into a graph.

    With ``strict`` an illegal edge raises ``ValidationError``; otherwise it
    is skipped and collected in ``Recipe.rejected``.
    """
    try:
        data = yaml.safe_load(yaml_str)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML: {e}") from e
    if not data:
        raise ValueError("Empty YAML input")
    if not isinstance(data, dict):
        raise ValueError("A recipe must be a mapping with 'nodes' and 'edges'")

    title = data.get("title", "Untitled Topology")
    graph = TopologyGraph(merge_masters(masters, parse_masters(data.get("masters"))), notify=notify, title=title)
    recipe = Recipe(title=title, graph=graph)

    node_entries = data.get("nodes") or []
    # Containers first so children can reference them regardless of order
    for entry in [e for e in node_entries if _role(e) == "M"]:
        _add_master(graph, entry)
    for entry in [e for e in node_entries if _role(e) != "M"]:
        _add_leaf(graph, entry)

    for pair in data.get("edges") or []:
        source, target = _edge_ends(pair)
        try:
            graph.connect(source, target)
        except ValidationError as e:
            if strict:
                raise
            logger.warning(f"Skipping edge {source} -> {target}: {e.reason}")
            recipe.rejected.append(e)

    logger.info(f"Loaded recipe '{title}': {len(graph.nodes)} nodes, {len(graph.edges)} edges")
    return recipe


def parse_file(
    path: str | Path,
    masters: Iterable[MasterConfig] = (),
    strict: bool = True,
    notify: Optional[Notifier] = None,
) -> Recipe:
    """Parse a YAML recipe file."""
    content = Path(path).read_text(encoding="utf-8")
    return parse_yaml(content, masters=masters, strict=strict, notify=notify)


def _role(entry: dict) -> str:
    if not isinstance(entry, dict) or "role" not in entry:
        raise ValueError(f"Node entry without a role: {entry!r}")
    return str(entry["role"]).upper()


def _fields(entry: dict) -> dict:
    fields = {k: v for k, v in entry.items() if k not in _NODE_KEYS}
    # YAML reads an unquoted tls mode as an int
    if isinstance(fields.get("tls_mode"), int):
        fields["tls_mode"] = str(fields["tls_mode"])
    return fields


def _add_master(graph: TopologyGraph, entry: dict) -> None:
    master_id = entry.get("master")
    if not master_id:
        raise ValueError(f"Master node {entry.get('id')!r} needs a 'master' reference")
    graph.add_master(
        master_id,
        x=float(entry.get("x", 0)),
        y=float(entry.get("y", 0)),
        node_id=entry.get("id"),
        label=entry.get("label"),
    )


def _add_leaf(graph: TopologyGraph, entry: dict) -> None:
    graph.add_node(
        _role(entry),
        x=float(entry.get("x", 0)),
        y=float(entry.get("y", 0)),
        parent=entry.get("parent"),
        node_id=entry.get("id"),
        **_fields(entry),
    )


def _edge_ends(pair) -> tuple[str, str]:
    if isinstance(pair, dict):
        source, target = pair.get("source"), pair.get("target")
    elif isinstance(pair, (list, tuple)) and len(pair) == 2:
        source, target = pair
    else:
        raise ValueError(f"Edge must be [source, target] or {{source, target}}: {pair!r}")
    if not source or not target:
        raise ValueError(f"Edge with a missing end: {pair!r}")
    return str(source), str(target)
