"""
Container layout engine for Tunnel-Canvas.

Three independent concerns live here:

  1. **Container sizing**: a master's footprint is a function of its
     direct child count only.  Each extra child multiplies the footprint
     by a fixed growth factor, which keeps children visually separated
     without tracking per-child positions.
  2. **Leaf sizing**: S/C/T/U nodes are an icon-sized square when
     collapsed; expanded they grow one detail line per populated field.
  3. **Arrangement**: when existing remote instances are imported, the
     top-level items (master containers and free T/U nodes) are layered
     by a topological sort over their edges and laid out as centred rows.

Sizing constants (see ``models``):
  - Masters: 200x120 minimum, growth 1.2 per child
  - Leaves: 48px collapsed; 200 wide, 40 + 18/line expanded
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from .models import (
    CHILD_PADDING,
    DETAIL_LINE_HEIGHT,
    EXPANDED_NODE_BASE_HEIGHT,
    EXPANDED_NODE_WIDTH,
    ICON_NODE_SIZE,
    LEAF_ROLES,
    MASTER_GROWTH_PER_CHILD,
    MIN_MASTER_HEIGHT,
    MIN_MASTER_WIDTH,
    STATUS_EXTRA_HEIGHT,
    TopologyEdge,
    TopologyNode,
)


# --- Arrangement spacing ---

ROW_SPACING = 180
COLUMN_SPACING = 175
GRID_COLUMNS = 3


# ---------------------------------------------------------------------------
# Container sizing
# ---------------------------------------------------------------------------

def container_size(child_count: int) -> tuple[int, int]:
    """Return ``(width, height)`` for a master with ``child_count`` children."""
    if child_count <= 0:
        return MIN_MASTER_WIDTH, MIN_MASTER_HEIGHT
    factor = MASTER_GROWTH_PER_CHILD ** child_count
    return round(MIN_MASTER_WIDTH * factor), round(MIN_MASTER_HEIGHT * factor)


def resize_container(master_id: str, nodes: list[TopologyNode]) -> list[TopologyNode]:
    """Recompute the size of master ``master_id`` from its child count.

    Returns ``nodes`` itself when nothing changes (unknown id, not a
    master, or the stored size already matches), otherwise a new list in
    which only the master has been replaced.
    """
    master = next((n for n in nodes if n.id == master_id), None)
    if master is None or master.role != "M":
        return nodes

    child_count = sum(1 for n in nodes if n.parent == master_id)
    width, height = container_size(child_count)

    if master.width == width and master.height == height:
        return nodes

    resized = master.model_copy(update={"width": width, "height": height})
    return [resized if n.id == master_id else n for n in nodes]


# ---------------------------------------------------------------------------
# Leaf sizing
# ---------------------------------------------------------------------------

def expanded_height(node: TopologyNode) -> int:
    """Height of an expanded leaf: one line per populated detail field."""
    lines = 1
    if node.tunnel_address:
        lines += 1
    if node.target_address:
        lines += 1
    if node.submission_status:
        lines += 1
    extra = STATUS_EXTRA_HEIGHT if node.submission_status else 0
    return EXPANDED_NODE_BASE_HEIGHT + lines * DETAIL_LINE_HEIGHT + extra


def leaf_size(node: TopologyNode) -> tuple[int, int]:
    if not node.is_expanded:
        return ICON_NODE_SIZE, ICON_NODE_SIZE
    return EXPANDED_NODE_WIDTH, expanded_height(node)


def apply_leaf_size(node: TopologyNode) -> TopologyNode:
    """Return ``node`` with its derived leaf size, or unchanged for masters."""
    if node.role not in LEAF_ROLES:
        return node
    width, height = leaf_size(node)
    if node.width == width and node.height == height:
        return node
    return node.model_copy(update={"width": width, "height": height})


# ---------------------------------------------------------------------------
# Child placement
# ---------------------------------------------------------------------------

def contains_point(container: TopologyNode, x: float, y: float) -> bool:
    return (
        container.x <= x <= container.x + container.width
        and container.y <= y <= container.y + container.height
    )


def clamp_child_position(container: TopologyNode, x: float, y: float) -> tuple[float, float]:
    """Convert a canvas drop point into a position relative to ``container``.

    The child is centred on the drop point and kept inside the
    container's padding.
    """
    max_x = container.width - ICON_NODE_SIZE - CHILD_PADDING
    max_y = container.height - ICON_NODE_SIZE - CHILD_PADDING
    rel_x = max(CHILD_PADDING, min(x - container.x - ICON_NODE_SIZE / 2, max_x))
    rel_y = max(CHILD_PADDING, min(y - container.y - ICON_NODE_SIZE / 2, max_y))
    return rel_x, rel_y


def grid_child_position(index: int) -> tuple[float, float]:
    """Relative position for the ``index``-th imported child of a container."""
    step = ICON_NODE_SIZE + CHILD_PADDING
    return CHILD_PADDING + (index % GRID_COLUMNS) * step, CHILD_PADDING + (index // GRID_COLUMNS) * step


# ---------------------------------------------------------------------------
# Arrangement of top-level items
# ---------------------------------------------------------------------------

@dataclass
class ArrangeItem:
    """A top-level item to be arranged (a container or a free node)."""
    id: str
    width: float
    height: float
    x: float
    y: float
    member_ids: list[str] = field(default_factory=list)


@dataclass
class LayoutPosition:
    """Computed position for an item."""
    x: float
    y: float


def _resolve_edges_upward(
    edges: list[TopologyEdge],
    owner: dict[str, str],
) -> list[tuple[str, str]]:
    """Map node-level edges to edges between top-level items, deduplicated."""
    resolved: list[tuple[str, str]] = []
    seen: set[tuple[str, str]] = set()
    for edge in edges:
        src = owner.get(edge.source)
        dst = owner.get(edge.target)
        if src is None or dst is None or src == dst:
            continue
        if (src, dst) not in seen:
            seen.add((src, dst))
            resolved.append((src, dst))
    return resolved


def compute_levels(items: list[ArrangeItem], edges: list[tuple[str, str]]) -> dict[str, int]:
    """Kahn's topological sort; cyclic leftovers go one level below their parents."""
    adjacency: dict[str, list[str]] = {item.id: [] for item in items}
    indegree: dict[str, int] = {item.id: 0 for item in items}
    for src, dst in edges:
        adjacency[src].append(dst)
        indegree[dst] += 1

    levels: dict[str, int] = {}
    queue: list[str] = []
    for item in sorted(items, key=lambda it: (it.x, it.y, it.id)):
        if indegree[item.id] == 0:
            levels[item.id] = 0
            queue.append(item.id)

    while queue:
        current = queue.pop(0)
        for target in adjacency[current]:
            candidate = levels[current] + 1
            if levels.get(target) is None or candidate > levels[target]:
                levels[target] = candidate
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    for item in sorted(items, key=lambda it: (it.y, it.x, it.id)):
        if item.id in levels:
            continue
        incoming = [levels[src] for src, dst in edges if dst == item.id and src in levels]
        levels[item.id] = max(incoming) + 1 if incoming else 0

    return levels


def compute_arrangement(
    items: list[ArrangeItem],
    edges: list[tuple[str, str]],
    start_y: float = 0.0,
    center_x: float = 0.0,
) -> dict[str, LayoutPosition]:
    """Lay items out as centred rows, one row per topological level."""
    if not items:
        return {}

    if edges:
        levels = compute_levels(items, edges)
    else:
        ordered = sorted(items, key=lambda it: (it.y, it.x, it.id))
        levels = {item.id: idx // GRID_COLUMNS for idx, item in enumerate(ordered)}

    rows: dict[int, list[ArrangeItem]] = {}
    for item in items:
        rows.setdefault(levels[item.id], []).append(item)

    layout: dict[str, LayoutPosition] = {}
    current_y = start_y
    for level in sorted(rows):
        row = sorted(rows[level], key=lambda it: (it.x, it.id))
        total_width = sum(it.width for it in row) + (len(row) - 1) * COLUMN_SPACING
        cursor_x = center_x - total_width / 2
        row_height = 0.0
        for item in row:
            layout[item.id] = LayoutPosition(x=round(cursor_x), y=round(current_y))
            cursor_x += item.width + COLUMN_SPACING
            row_height = max(row_height, item.height)
        current_y += row_height + ROW_SPACING

    return layout


def arrange_top_level(
    nodes: list[TopologyNode],
    edges: list[TopologyEdge],
    only_ids: Optional[set[str]] = None,
) -> list[TopologyNode]:
    """Position top-level nodes by topological level.

    Children keep their container-relative positions and move with their
    container.  ``only_ids`` restricts which top-level items are moved.
    """
    top_level = [n for n in nodes if not n.parent]
    owner: dict[str, str] = {}
    items: list[ArrangeItem] = []
    for node in top_level:
        members = [node.id] + [n.id for n in nodes if n.parent == node.id]
        for member in members:
            owner[member] = node.id
        if only_ids is None or node.id in only_ids:
            items.append(ArrangeItem(
                id=node.id, width=node.width, height=node.height,
                x=node.x, y=node.y, member_ids=members,
            ))

    item_ids = {item.id for item in items}
    resolved = [(s, d) for s, d in _resolve_edges_upward(edges, owner) if s in item_ids and d in item_ids]
    layout = compute_arrangement(items, resolved)

    arranged = []
    for node in nodes:
        pos = layout.get(node.id)
        if pos is not None and (node.x != pos.x or node.y != pos.y):
            node = node.model_copy(update={"x": pos.x, "y": pos.y})
        arranged.append(node)
    return arranged
