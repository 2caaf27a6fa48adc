"""
Graph store for Tunnel-Canvas.

``TopologyGraph`` owns the canonical node and edge collections.  Every
mutation goes through one of its commands (``add_node``, ``connect``,
``remove_node``, ``reparent``, ``update_node`` ...).  A command works on
copies of the collections, runs the derived-state passes, and swaps the
result in at the very end, so a failed command leaves the graph exactly
as it was and a successful one never leaves it half-updated.

Derived state refreshed after every command:

  - leaf sizes (collapsed icon / expanded detail card)
  - container sizes (from child count)
  - active handles (from actual edges)

Address side effects (client tunnel address inference, target address
sync) are applied by the commands that can trigger them.

Operator-facing notices go to the ``notify`` callback as
``(level, title, message)`` and to the module logger.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Mapping, Optional

from .addressing import (
    client_dials_server,
    client_local_target_address,
    extract_hostname,
    is_single_ended_address,
    resolution_failed,
    resolve_client_tunnel_address,
    sync_target_address,
)
from .errors import ConfigurationError, ValidationError
from .handles import active_handles_for, resolve_handles
from .instance_url import parse_instance_url
from .layout import (
    COLUMN_SPACING,
    apply_leaf_size,
    arrange_top_level,
    clamp_child_position,
    contains_point,
    grid_child_position,
    resize_container,
)
from .models import (
    CHILD_PADDING,
    ENDPOINT_ROLES,
    ICON_NODE_SIZE,
    INITIAL_ACTIVE_HANDLES,
    MASTER_DEFAULT,
    MIN_MASTER_HEIGHT,
    MIN_MASTER_WIDTH,
    MasterConfig,
    TopologyEdge,
    TopologyNode,
    new_node_id,
)
from .rules import can_connect

logger = logging.getLogger(__name__)

Notifier = Callable[[str, str, str], None]

ROLE_NAMES = {
    "M": "Master",
    "S": "Server",
    "C": "Client",
    "T": "Target",
    "U": "User",
}

# Fields that only dedicated commands may change
_DERIVED_FIELDS = frozenset({"id", "role", "parent", "width", "height", "active_handles", "x", "y"})

# The control API reports instances the token may not see under this id
MASKED_INSTANCE_ID = "********"

_LOG_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}

NodeMap = dict[str, TopologyNode]
EdgeMap = dict[str, TopologyEdge]


@dataclass(frozen=True)
class GraphSnapshot:
    """An immutable view of the graph after a command."""
    nodes: tuple[TopologyNode, ...]
    edges: tuple[TopologyEdge, ...]

    def node(self, node_id: str) -> Optional[TopologyNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def nodes_by_id(self) -> dict[str, TopologyNode]:
        return {n.id: n for n in self.nodes}

    def children_of(self, master_id: str) -> list[TopologyNode]:
        return [n for n in self.nodes if n.parent == master_id]


class TopologyGraph:
    """The canonical topology graph and its mutation commands."""

    def __init__(
        self,
        masters: Optional[Iterable[MasterConfig]] = None,
        notify: Optional[Notifier] = None,
        title: str = "Untitled Topology",
    ):
        self.title = title
        self.masters: dict[str, MasterConfig] = {m.id: m for m in (masters or [])}
        self._nodes: NodeMap = {}
        self._edges: EdgeMap = {}
        self._notify_cb = notify

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def snapshot(self) -> GraphSnapshot:
        return GraphSnapshot(nodes=tuple(self._nodes.values()), edges=tuple(self._edges.values()))

    @property
    def nodes(self) -> list[TopologyNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[TopologyEdge]:
        return list(self._edges.values())

    def get_node(self, node_id: str) -> Optional[TopologyNode]:
        return self._nodes.get(node_id)

    def children_of(self, master_id: str) -> list[TopologyNode]:
        return [n for n in self._nodes.values() if n.parent == master_id]

    def edges_of(self, node_id: str) -> list[TopologyEdge]:
        return [e for e in self._edges.values() if e.touches(node_id)]

    def master_node_for(self, master_id: str) -> Optional[TopologyNode]:
        """Return the first container on the canvas for ``master_id``."""
        return next((n for n in self._nodes.values() if n.role == "M" and n.master_id == master_id), None)

    def effective_master(self, container: Optional[TopologyNode]) -> Optional[MasterConfig]:
        """Master config behind ``container``, with the container's own API URL applied."""
        if container is None or container.role != "M" or not container.master_id:
            return None
        config = self.masters.get(container.master_id)
        if config is None:
            return None
        if container.api_url and container.api_url != config.api_url:
            config = config.model_copy(update={"api_url": container.api_url})
        return config

    def master_for_node(self, node: TopologyNode) -> Optional[MasterConfig]:
        """Master config owning an ``S``/``C`` node, or None."""
        if not node.parent:
            return None
        return self.effective_master(self._nodes.get(node.parent))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _notify(self, level: str, title: str, message: str = "") -> None:
        logger.log(_LOG_LEVELS.get(level, logging.INFO), f"{title}: {message}" if message else title)
        if self._notify_cb is not None:
            self._notify_cb(level, title, message)

    def _working_copy(self) -> tuple[NodeMap, EdgeMap]:
        return dict(self._nodes), dict(self._edges)

    def _commit(self, nodes: NodeMap, edges: EdgeMap) -> GraphSnapshot:
        """Run the derived-state passes and swap the new collections in."""
        node_list = [apply_leaf_size(n) for n in nodes.values()]
        for master_id in [n.id for n in node_list if n.role == "M"]:
            node_list = resize_container(master_id, node_list)

        by_id = {n.id: n for n in node_list}
        edge_list = list(edges.values())
        refreshed: NodeMap = {}
        for node in node_list:
            handles = active_handles_for(node, edge_list, by_id)
            if handles != node.active_handles:
                node = node.model_copy(update={"active_handles": handles})
            refreshed[node.id] = node

        self._nodes = refreshed
        self._edges = dict(edges)
        return self.snapshot()

    def _require(self, nodes: NodeMap, node_id: str) -> TopologyNode:
        node = nodes.get(node_id)
        if node is None:
            raise KeyError(f"Unknown node: {node_id}")
        return node

    def _container_at(self, nodes: NodeMap, x: float, y: float) -> Optional[TopologyNode]:
        return next((n for n in nodes.values() if n.role == "M" and contains_point(n, x, y)), None)

    def _refresh_edge_handles(self, nodes: NodeMap, edges: EdgeMap, node_ids: set[str]) -> None:
        """Recompute handles of every edge touching ``node_ids`` (or their children)."""
        involved = set(node_ids)
        involved.update(n.id for n in nodes.values() if n.parent in node_ids)
        for edge in list(edges.values()):
            if edge.source not in involved and edge.target not in involved:
                continue
            source, target = nodes.get(edge.source), nodes.get(edge.target)
            if source is None or target is None:
                continue
            source_handle, target_handle = resolve_handles(source, target, nodes)
            if edge.source_handle != source_handle or edge.target_handle != target_handle:
                edges[edge.id] = edge.model_copy(update={"source_handle": source_handle, "target_handle": target_handle})

    def _is_cross_master(self, a: TopologyNode, b: TopologyNode, nodes: NodeMap) -> bool:
        pa = nodes.get(a.parent) if a.parent else None
        pb = nodes.get(b.parent) if b.parent else None
        return pa is not None and pb is not None and pa.master_id != pb.master_id

    def _tunnel_links(
        self,
        nodes: NodeMap,
        edges: EdgeMap,
        server_ids: Optional[set[str]] = None,
        client_ids: Optional[set[str]] = None,
    ) -> Iterator[tuple[str, str]]:
        """Yield ``(client_id, server_id)`` for cross-master S/C edges."""
        for edge in list(edges.values()):
            a, b = nodes.get(edge.source), nodes.get(edge.target)
            if a is None or b is None or {a.role, b.role} != {"S", "C"}:
                continue
            server, client = (a, b) if a.role == "S" else (b, a)
            if server_ids is not None and server.id not in server_ids:
                continue
            if client_ids is not None and client.id not in client_ids:
                continue
            if self._is_cross_master(server, client, nodes):
                yield client.id, server.id

    def _readdress_client(self, nodes: NodeMap, client_id: str, server_id: str) -> None:
        """Point a cross-master client at its server's reachable address."""
        client, server = nodes[client_id], nodes[server_id]
        master = self.effective_master(nodes.get(server.parent)) if server.parent else None
        address = resolve_client_tunnel_address(server, master)

        if resolution_failed(address):
            if client.single_ended:
                nodes[client_id] = client.model_copy(update={"single_ended": False})
            self._notify(
                "warning",
                "Tunnel address unresolved",
                f"Could not infer how {client.get_label()} reaches {server.get_label()}; set its tunnel address manually.",
            )
            return

        if address == client.tunnel_address:
            if client.single_ended:
                nodes[client_id] = client.model_copy(update={"single_ended": False})
            return

        nodes[client_id] = client.model_copy(update={
            "tunnel_address": address,
            "target_address": client_local_target_address(server),
            "single_ended": False,
        })
        self._notify("info", "Client address updated", f"{client.get_label()} now dials {server.get_label()} at {address}.")

    def _sync_targets(self, nodes: NodeMap, edges: EdgeMap, node_id: str, prefer: str = "upstream") -> None:
        """One-shot target address copy along every S/C -> T edge at ``node_id``."""
        for edge in list(edges.values()):
            if not edge.touches(node_id):
                continue
            upstream, target = nodes.get(edge.source), nodes.get(edge.target)
            if upstream is None or target is None:
                continue
            if upstream.role not in ENDPOINT_ROLES or target.role != "T":
                continue
            decision = sync_target_address(upstream, target, prefer=prefer)
            if decision is None:
                continue
            update_id, value = decision
            nodes[update_id] = nodes[update_id].model_copy(update={"target_address": value})
            self._notify("info", "Target address synchronized", f"{nodes[update_id].get_label()} now targets {value}.")

    # ------------------------------------------------------------------
    # Masters
    # ------------------------------------------------------------------

    def update_master(self, config: MasterConfig) -> GraphSnapshot:
        """Register or replace a master config and cascade to its containers.

        When the API URL changes, every client wired across masters to a
        server inside one of its containers is re-addressed.
        """
        previous = self.masters.get(config.id)
        self.masters[config.id] = config

        nodes, edges = self._working_copy()
        servers: set[str] = set()
        for node in list(nodes.values()):
            if node.role == "M" and node.master_id == config.id:
                nodes[node.id] = node.model_copy(update={
                    "api_url": config.api_url,
                    "master_name": config.get_label(),
                    "default_log_level": config.default_log_level,
                    "default_tls_mode": config.default_tls_mode,
                })
                servers.update(c.id for c in nodes.values() if c.parent == node.id and c.role == "S")

        if previous is None or previous.api_url != config.api_url:
            for client_id, server_id in list(self._tunnel_links(nodes, edges, server_ids=servers)):
                self._readdress_client(nodes, client_id, server_id)

        return self._commit(nodes, edges)

    def add_master(
        self,
        master_id: str,
        x: float = 0.0,
        y: float = 0.0,
        node_id: Optional[str] = None,
        label: Optional[str] = None,
    ) -> TopologyNode:
        """Drop a container for a known master at ``(x, y)``."""
        config = self.masters.get(master_id)
        if config is None:
            raise ConfigurationError(f"Unknown master: {master_id}")

        nodes, edges = self._working_copy()
        if self._container_at(nodes, x, y) is not None:
            self._notify("error", "Invalid placement", "Master (M) containers cannot be nested.")
            raise ValidationError("Master (M) containers cannot be nested.")

        node = TopologyNode(
            id=node_id or new_node_id("M"),
            role="M",
            label=label or f"Master: {config.get_label()}",
            x=x,
            y=y,
            width=MIN_MASTER_WIDTH,
            height=MIN_MASTER_HEIGHT,
            master_id=config.id,
            master_name=config.get_label(),
            api_url=config.api_url,
            default_log_level=config.default_log_level,
            default_tls_mode=config.default_tls_mode,
            active_handles=INITIAL_ACTIVE_HANDLES["M"].model_copy(),
        )
        if node.id in nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        nodes[node.id] = node
        self._commit(nodes, edges)
        self._notify("info", "Master container created", node.get_label())
        return self._nodes[node.id]

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(
        self,
        role: str,
        x: float = 0.0,
        y: float = 0.0,
        parent: Optional[str] = None,
        node_id: Optional[str] = None,
        **fields,
    ) -> TopologyNode:
        """Place a leaf node.

        Without ``parent``, ``(x, y)`` is a canvas drop point: an ``S``/``C``
        must land inside a master container and becomes its child; ``T``/``U``
        stay top-level wherever they land.  With ``parent``, ``(x, y)`` is
        already relative to that container.
        """
        if role not in ("S", "C", "T", "U"):
            raise ValueError(f"Cannot place a node with role {role!r}; use add_master for containers")

        nodes, edges = self._working_copy()
        container: Optional[TopologyNode] = None

        if role in ENDPOINT_ROLES:
            if parent is not None:
                container = nodes.get(parent)
                if container is None or container.role != "M":
                    raise ValidationError(f"Parent {parent} is not a master (M) container.")
                if x == 0 and y == 0:
                    x, y = grid_child_position(len(self.children_of(container.id)))
            else:
                container = self._container_at(nodes, x, y)
                if container is None:
                    message = f"{ROLE_NAMES[role]} ({role}) nodes must be dropped inside a master (M) container."
                    self._notify("error", "Invalid placement", message)
                    raise ValidationError(message)
                x, y = clamp_child_position(container, x, y)
        elif parent is not None:
            raise ValidationError(f"{ROLE_NAMES[role]} ({role}) nodes are always top-level.")

        defaults: dict = {}
        if container is not None:
            defaults["log_level"] = container.default_log_level or MASTER_DEFAULT
            if role == "S":
                defaults["tls_mode"] = container.default_tls_mode or MASTER_DEFAULT
        defaults.update(fields)

        node = TopologyNode.model_validate({
            "id": node_id or new_node_id(role),
            "role": role,
            "label": defaults.pop("label", None) or f"{ROLE_NAMES[role]} {len(nodes) + 1}",
            "parent": container.id if container is not None else None,
            "x": x,
            "y": y,
            "active_handles": INITIAL_ACTIVE_HANDLES[role].model_copy(),
            **defaults,
        })
        if node.id in nodes:
            raise ValueError(f"Duplicate node id: {node.id}")
        nodes[node.id] = node
        self._commit(nodes, edges)
        where = f" to {container.get_label()}" if container is not None else ""
        self._notify("info", "Node added", f"{node.get_label()} added{where}.")
        return self._nodes[node.id]

    def remove_node(self, node_id: str) -> GraphSnapshot:
        """Delete a node; a master takes its children and all their edges with it."""
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)

        doomed = {node_id}
        if node.role == "M":
            doomed.update(n.id for n in nodes.values() if n.parent == node_id)

        for doomed_id in doomed:
            del nodes[doomed_id]
        for edge in list(edges.values()):
            if edge.source in doomed or edge.target in doomed:
                del edges[edge.id]

        snapshot = self._commit(nodes, edges)
        self._notify("info", "Node deleted", node.get_label())
        return snapshot

    def move_node(self, node_id: str, x: float, y: float) -> GraphSnapshot:
        """Finish a drag: store the new position and re-orient attached edges."""
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)
        nodes[node_id] = node.model_copy(update={"x": x, "y": y})
        self._refresh_edge_handles(nodes, edges, {node_id})
        return self._commit(nodes, edges)

    def reparent(self, node_id: str, new_parent: str) -> GraphSnapshot:
        """Move an ``S``/``C`` node into another master container."""
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)
        if node.role not in ENDPOINT_ROLES:
            raise ValidationError(f"Only server (S) and client (C) nodes live inside a master; {node.get_label()} is {node.role}.")
        container = nodes.get(new_parent)
        if container is None or container.role != "M":
            raise ValidationError(f"Parent {new_parent} is not a master (M) container.")
        if node.parent == new_parent:
            return self.snapshot()

        for edge in edges.values():
            if not edge.touches(node_id):
                continue
            other = nodes.get(edge.target if edge.source == node_id else edge.source)
            if other is None or other.parent != new_parent:
                continue
            source_role = node.role if edge.source == node_id else other.role
            target_role = other.role if edge.source == node_id else node.role
            if not (source_role == "C" and target_role == "S"):
                raise ValidationError(
                    "Inside one master only a client (C) may connect to a server (S).",
                    edge.source,
                    edge.target,
                )

        x, y = grid_child_position(len(self.children_of(new_parent)))
        nodes[node_id] = node.model_copy(update={"parent": new_parent, "x": x, "y": y})

        moved = nodes[node_id]
        if moved.role == "S":
            links = self._tunnel_links(nodes, edges, server_ids={node_id})
        else:
            links = self._tunnel_links(nodes, edges, client_ids={node_id})
        for client_id, server_id in list(links):
            self._readdress_client(nodes, client_id, server_id)

        self._refresh_edge_handles(nodes, edges, {node_id})
        return self._commit(nodes, edges)

    def update_node(self, node_id: str, **changes) -> TopologyNode:
        """Apply edited fields to a node and propagate address side effects.

        - a cross-master client can never be single-ended
        - a server tunnel address change re-addresses its cross-master clients
        - a target address change is copied along S/C -> T edges
        - a container API URL change re-addresses clients of its servers
        """
        illegal = _DERIVED_FIELDS.intersection(changes)
        if illegal:
            raise ValueError(f"Fields {sorted(illegal)} are managed by dedicated commands")

        nodes, edges = self._working_copy()
        original = self._require(nodes, node_id)
        edited = TopologyNode.model_validate({**original.model_dump(), **changes})

        if edited.role == "C" and edited.single_ended:
            if any(True for _ in self._tunnel_links({**nodes, node_id: edited}, edges, client_ids={node_id})):
                edited = edited.model_copy(update={"single_ended": False})
        nodes[node_id] = edited

        if edited.role == "S" and edited.tunnel_address != original.tunnel_address:
            for client_id, server_id in list(self._tunnel_links(nodes, edges, server_ids={node_id})):
                self._readdress_client(nodes, client_id, server_id)
        elif edited.role == "M" and edited.api_url != original.api_url:
            servers = {n.id for n in nodes.values() if n.parent == node_id and n.role == "S"}
            for client_id, server_id in list(self._tunnel_links(nodes, edges, server_ids=servers)):
                self._readdress_client(nodes, client_id, server_id)

        if edited.target_address != original.target_address:
            prefer = "target" if edited.role == "T" else "upstream"
            self._sync_targets(nodes, edges, node_id, prefer=prefer)

        self._commit(nodes, edges)
        return self._nodes[node_id]

    def change_role(self, node_id: str, new_role: str) -> GraphSnapshot:
        """Flip a node between server (S) and client (C)."""
        if new_role not in ENDPOINT_ROLES:
            raise ValueError("Only server (S) and client (C) roles can be swapped")
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)
        if node.role not in ENDPOINT_ROLES:
            raise ValidationError(f"{node.get_label()} is not a server or client.")
        if node.role == new_role:
            return self.snapshot()

        update: dict = {"role": new_role, "active_handles": INITIAL_ACTIVE_HANDLES[new_role].model_copy()}
        if new_role == "S":
            update.update({"single_ended": False, "min_pool_size": None, "max_pool_size": None})
        nodes[node_id] = node.model_copy(update=update)

        # Every existing edge must stay legal under the new role
        for edge in list(edges.values()):
            if not edge.touches(node_id):
                continue
            others = [e for e in edges.values() if e.id != edge.id]
            check = can_connect(nodes[edge.source], nodes[edge.target], others)
            if not check.ok:
                self._notify("error", "Role change rejected", check.reason)
                raise ValidationError(check.reason, edge.source, edge.target)
            edges[edge.id] = edge.model_copy(update={"style": check.style})

        self._refresh_edge_handles(nodes, edges, {node_id})
        snapshot = self._commit(nodes, edges)
        self._notify("info", "Role changed", f"{node.get_label()} is now a {ROLE_NAMES[new_role].lower()}.")
        return snapshot

    def set_expanded(self, node_id: str, expanded: bool) -> GraphSnapshot:
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)
        if node.role == "M" or node.is_expanded == expanded:
            return self.snapshot()
        nodes[node_id] = node.model_copy(update={"is_expanded": expanded})
        return self._commit(nodes, edges)

    def toggle_expanded(self, node_id: str) -> GraphSnapshot:
        node = self._require(self._nodes, node_id)
        return self.set_expanded(node_id, not node.is_expanded)

    def collapse_all(self) -> GraphSnapshot:
        nodes, edges = self._working_copy()
        for node in list(nodes.values()):
            if node.is_expanded:
                nodes[node.id] = node.model_copy(update={"is_expanded": False})
        return self._commit(nodes, edges)

    def clear(self) -> GraphSnapshot:
        snapshot = self._commit({}, {})
        self._notify("info", "Canvas cleared")
        return snapshot

    # ------------------------------------------------------------------
    # Edges
    # ------------------------------------------------------------------

    def connect(self, source_id: str, target_id: str) -> TopologyEdge:
        """Add a ``source -> target`` edge if the connection rules allow it.

        Raises ``ValidationError`` (graph unchanged) when they do not.
        """
        nodes, edges = self._working_copy()
        source, target = nodes.get(source_id), nodes.get(target_id)
        if source is None or target is None:
            self._notify("error", "Connection error", "Source or target node not found.")
            raise ValidationError("Source or target node not found.", source_id, target_id)

        check = can_connect(source, target, edges.values())
        if not check.ok:
            self._notify("error", "Invalid connection", check.reason)
            raise ValidationError(check.reason, source_id, target_id)

        source_handle, target_handle = resolve_handles(source, target, nodes)
        edge = TopologyEdge(
            source=source_id,
            target=target_id,
            source_handle=source_handle,
            target_handle=target_handle,
            style=check.style,
        )
        edges[edge.id] = edge

        if {source.role, target.role} == {"S", "C"} and self._is_cross_master(source, target, nodes):
            server, client = (source, target) if source.role == "S" else (target, source)
            self._readdress_client(nodes, client.id, server.id)
        elif source.role in ENDPOINT_ROLES and target.role == "T":
            self._sync_targets(nodes, {edge.id: edge}, source_id)

        self._commit(nodes, edges)
        return self._edges[edge.id]

    def disconnect(self, edge_id: str) -> GraphSnapshot:
        nodes, edges = self._working_copy()
        if edge_id not in edges:
            raise KeyError(f"Unknown edge: {edge_id}")
        del edges[edge_id]
        snapshot = self._commit(nodes, edges)
        self._notify("info", "Link deleted")
        return snapshot

    # ------------------------------------------------------------------
    # Submission status
    # ------------------------------------------------------------------

    def reset_submission_status(self) -> GraphSnapshot:
        nodes, edges = self._working_copy()
        for node in list(nodes.values()):
            if node.submission_status is not None or node.submission_message is not None:
                nodes[node.id] = node.model_copy(update={"submission_status": None, "submission_message": None})
        return self._commit(nodes, edges)

    def set_submission_status(
        self,
        node_id: str,
        status: Optional[str],
        message: Optional[str] = None,
        **extra,
    ) -> TopologyNode:
        """Record a submission outcome (and e.g. ``instance_id``) on a node."""
        nodes, edges = self._working_copy()
        node = self._require(nodes, node_id)
        nodes[node_id] = node.model_copy(update={"submission_status": status, "submission_message": message, **extra})
        self._commit(nodes, edges)
        return self._nodes[node_id]

    # ------------------------------------------------------------------
    # Import of existing remote instances
    # ------------------------------------------------------------------

    def import_instances(
        self,
        master_id: str,
        instances: Iterable[Mapping],
        x: float = 0.0,
        y: float = 0.0,
        arrange: bool = True,
    ) -> GraphSnapshot:
        """Render the existing instances of a master as nodes.

        Each instance (``{"id", "url", ...}`` as listed by the control API)
        becomes an ``S`` or ``C`` child of the master's container, which is
        created at ``(x, y)`` if needed.  Instances already on the canvas
        and instances whose id the API masks are skipped.  A client bound
        on all interfaces is imported as single-ended.  The new nodes are
        then wired up by ``_wire_imported``.
        """
        if master_id not in self.masters:
            raise ConfigurationError(f"Unknown master: {master_id}")

        container = self.master_node_for(master_id)
        if container is None:
            if self._container_at(self._nodes, x, y) is not None:
                top_level = [n for n in self._nodes.values() if not n.parent]
                x = max(n.x + n.width for n in top_level) + COLUMN_SPACING
            container = self.add_master(master_id, x, y)
        nodes, edges = self._working_copy()
        known = {n.instance_id for n in nodes.values() if n.instance_id}

        added: list[str] = []
        child_index = sum(1 for n in nodes.values() if n.parent == container.id)
        for instance in instances:
            instance_id = str(instance.get("id") or "")
            url = str(instance.get("url") or "")
            if instance_id == MASKED_INSTANCE_ID:
                logger.debug(f"Skipping masked instance on master {master_id}")
                continue
            if not url or (instance_id and instance_id in known):
                continue
            params = parse_instance_url(url)
            role = "S" if params.scheme == "server" else "C"
            cx, cy = grid_child_position(child_index)
            child_index += 1
            node = TopologyNode(
                id=new_node_id(role),
                role=role,
                label=instance.get("alias") or f"{ROLE_NAMES[role]} {instance_id[:8]}".strip(),
                parent=container.id,
                x=cx,
                y=cy,
                tunnel_address=params.tunnel_address,
                target_address=params.target_address,
                tunnel_key=params.tunnel_key,
                log_level=params.log_level,
                tls_mode=params.tls_mode,
                cert_path=params.cert_path,
                key_path=params.key_path,
                min_pool_size=params.min_pool_size,
                max_pool_size=params.max_pool_size,
                single_ended=role == "C" and is_single_ended_address(params.tunnel_address),
                instance_id=instance_id or None,
                instance_url=url,
                active_handles=INITIAL_ACTIVE_HANDLES[role].model_copy(),
            )
            nodes[node.id] = node
            added.append(node.id)

        self._commit(nodes, edges)
        logger.info(f"Imported {len(added)} instance(s) from master {master_id}")

        if added:
            self._wire_imported(container.id, added)
        if arrange:
            return self.arrange()
        return self.snapshot()

    def _wire_imported(self, container_id: str, added: list[str]) -> None:
        """Draw links, user entries and targets around imported instances.

          - a double-ended client is linked to the server it dials, looking
            inside its own master first
          - a single-ended client lands on a target at its target address;
            a client dialing a server that is not on the canvas lands on
            an external exit target
          - every client, and every server no client of this master
            feeds, gets a user entry
          - every server with a target address lands on a local service

        Everything goes through ``connect``.  Users and targets take one
        link each, so each entry and landing gets its own node.
        """
        container = self._nodes[container_id]
        imported = [self._nodes[node_id] for node_id in added]
        local_servers = [n for n in self._nodes.values() if n.role == "S" and n.parent == container_id]
        remote_servers = [n for n in self._nodes.values() if n.role == "S" and n.parent and n.parent != container_id]

        entries: list[str] = []
        landings: list[tuple[str, str, str]] = []
        fed: set[str] = set()

        for client in (n for n in imported if n.role == "C"):
            entries.append(client.id)
            if client.single_ended:
                landings.append((client.id, f"Remote target @ {client.target_address}", client.target_address))
                continue
            if not client.tunnel_address:
                continue
            server = self._dialed_server(client, local_servers) or self._dialed_server(client, remote_servers)
            if server is not None and self._try_connect(client.id, server.id):
                fed.add(server.id)
                continue
            landings.append((client.id, self._exit_label(client.tunnel_address, container.master_id), ""))

        for server in (n for n in imported if n.role == "S"):
            if server.id not in fed:
                entries.append(server.id)
            if server.target_address:
                landings.append((server.id, f"Local service @ {server.target_address}", server.target_address))

        step = ICON_NODE_SIZE + CHILD_PADDING
        for index, node_id in enumerate(entries):
            user = self.add_node(
                "U",
                container.x - ICON_NODE_SIZE - COLUMN_SPACING,
                container.y + index * step,
                label="User entry",
            )
            self._try_connect(user.id, node_id)

        for index, (upstream_id, label, address) in enumerate(landings):
            target = self.add_node(
                "T",
                container.x + container.width + COLUMN_SPACING,
                container.y + index * step,
                label=label,
                target_address=address,
            )
            self._try_connect(upstream_id, target.id)

    def _dialed_server(self, client: TopologyNode, servers: list[TopologyNode]) -> Optional[TopologyNode]:
        for server in servers:
            if client_dials_server(
                client.tunnel_address,
                server.tunnel_address,
                self.master_for_node(server),
                same_master=server.parent == client.parent,
            ):
                return server
        return None

    def _exit_label(self, address: str, own_master_id: Optional[str]) -> str:
        host = extract_hostname(address)
        for config in self.masters.values():
            if config.id != own_master_id and host and host == extract_hostname(config.api_url):
                return f"Exit @ {config.get_label()} ({address})"
        return f"External exit @ {address}"

    def _try_connect(self, source_id: str, target_id: str) -> bool:
        try:
            self.connect(source_id, target_id)
        except ValidationError as e:
            logger.debug(f"Skipped imported link {source_id} -> {target_id}: {e.reason}")
            return False
        return True

    def arrange(self) -> GraphSnapshot:
        """Lay out every top-level item by topological level."""
        nodes, edges = self._working_copy()
        arranged = {n.id: n for n in arrange_top_level(list(nodes.values()), list(edges.values()))}
        self._refresh_edge_handles(arranged, edges, set(arranged))
        return self._commit(arranged, edges)
