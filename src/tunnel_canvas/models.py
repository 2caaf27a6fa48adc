"""
Data models for Tunnel-Canvas: the topology ontology.

A topology is a flat set of typed nodes joined by directed edges, with a
single level of containment:

    Topology
    ├── Master (M)    : a container for one remote control API
    │   ├── Server (S): listens for inbound tunnels, forwards to a target
    │   └── Client (C): dials a server, or forwards locally (single-ended)
    ├── Target (T)    : the final service address traffic is delivered to
    └── User (U)      : the traffic originator

Only ``S`` and ``C`` nodes live inside a master; ``M``, ``T`` and ``U``
are always top-level.  Masters are never edge endpoints themselves.

Each node has an ``id`` (unique identifier) and an optional ``label``
(human-readable display name).  ``get_label()`` provides the fallback so
calling code never has to.

This module also carries the **edge style system**, the decoration an
edge gets is a pure function of its (source role, target role) pair and
never influences whether the edge is legal.
"""

from __future__ import annotations

import uuid
from typing import Literal, Optional

from pydantic import BaseModel, Field


NodeRole = Literal["M", "S", "C", "T", "U"]
LogLevel = Literal["debug", "info", "warn", "error", "event", "master"]
TlsMode = Literal["0", "1", "2", "master"]
SubmissionStatus = Literal["pending", "success", "error"]
HandlePosition = Literal["top", "bottom", "left", "right"]

# "Inherit from the master's default" sentinel for log level / TLS mode
MASTER_DEFAULT = "master"

ENDPOINT_ROLES = ("S", "C")
LEAF_ROLES = ("S", "C", "T", "U")


# --- Geometry constants ---

MIN_MASTER_WIDTH = 200
MIN_MASTER_HEIGHT = 120
MASTER_GROWTH_PER_CHILD = 1.2

ICON_NODE_SIZE = 48
EXPANDED_NODE_WIDTH = 200
EXPANDED_NODE_BASE_HEIGHT = 40
DETAIL_LINE_HEIGHT = 18
STATUS_EXTRA_HEIGHT = 5

CHILD_PADDING = 25


def new_node_id(role: str) -> str:
    """Generate a node id such as ``s-1f2e3d4c``."""
    return f"{role.lower()}-{uuid.uuid4().hex[:8]}"


def new_edge_id() -> str:
    return f"edge-{uuid.uuid4()}"


# ---------------------------------------------------------------------------
# Handles
# ---------------------------------------------------------------------------

class ActiveHandles(BaseModel):
    """Which connection points of a node are currently live.

    Derived from the node's role and its actual edges (see
    ``handles.active_handles_for``); never authored directly.
    """
    top: bool = False
    bottom: bool = False
    left: bool = False
    right: bool = False


INITIAL_ACTIVE_HANDLES: dict[str, ActiveHandles] = {
    "S": ActiveHandles(top=True, bottom=True),
    "C": ActiveHandles(top=True, bottom=True),
    "U": ActiveHandles(bottom=True),
    "T": ActiveHandles(top=True),
    "M": ActiveHandles(top=True, bottom=True, left=True, right=True),
}


# ---------------------------------------------------------------------------
# Edge styling
# ---------------------------------------------------------------------------

class EdgeStyle(BaseModel):
    """Visual decoration for an edge.

    Attributes:
        animated:     Whether the renderer animates flow along the edge.
        dashed:       Draw the stroke as a dash pattern (tunnel links).
        color:        Stroke color.
        stroke_width: Width of the stroke in pixels.
    """
    animated: bool = False
    dashed: bool = False
    color: str = "#6c7086"
    stroke_width: float = 3.5


# Decoration per link kind (Catppuccin Mocha palette)
EDGE_STYLES: dict[str, EdgeStyle] = {
    "server-client": EdgeStyle(animated=True, dashed=True, color="#89b4fa"),  # Blue
    "client-server": EdgeStyle(animated=True, dashed=True, color="#f5c2e7"),  # Pink
    "traffic":       EdgeStyle(animated=True, color="#f9e2af"),               # Yellow
    "default":       EdgeStyle(),                                             # Muted
}


# ---------------------------------------------------------------------------
# Master configuration
# ---------------------------------------------------------------------------

class MasterConfig(BaseModel):
    """Connection settings for one remote control API.

    ``api_url`` is the base URL the operator uses to reach the master;
    ``prefix_path`` (for example ``/api``) is appended to form the API
    root.  ``default_log_level`` / ``default_tls_mode`` are the master's
    own defaults, used when a node inherits.
    """
    id: str
    name: str = ""
    api_url: str
    token: str = ""
    prefix_path: Optional[str] = None
    default_log_level: LogLevel = "master"
    default_tls_mode: TlsMode = "master"

    def get_label(self) -> str:
        return self.name if self.name else self.id

    def api_root(self) -> str:
        root = self.api_url.rstrip("/")
        if self.prefix_path:
            root += "/" + self.prefix_path.strip("/")
        return root

    def instances_url(self) -> str:
        return f"{self.api_root()}/instances"

    def events_url(self) -> str:
        return f"{self.api_root()}/events"


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------

class TopologyNode(BaseModel):
    """A node of the topology graph.

    Roles
    -----
    ``role`` selects one of the five node kinds (see module docstring).
    Fields that only make sense for some roles are simply left unset on
    the others: ``master_id``/``api_url`` belong to ``M``, tunnel and TLS
    settings to ``S``/``C``, and ``target_address`` is shared by
    ``S``/``C``/``T``.

    Geometry
    --------
    ``x``/``y`` are relative to the parent container for ``S``/``C``
    children and absolute otherwise.  ``width``/``height`` are derived
    (``layout.resize_container`` for masters, ``layout.leaf_size`` for
    everything else) and should not be edited by hand.

    Submission
    ----------
    ``submission_status``/``submission_message`` are written by the
    submission orchestrator and cleared at the start of every pass.
    ``instance_id``/``instance_url`` record the remote instance a node
    was created as (or imported from).
    """
    id: str
    role: NodeRole
    label: Optional[str] = None
    parent: Optional[str] = None
    x: float = 0.0
    y: float = 0.0
    width: float = ICON_NODE_SIZE
    height: float = ICON_NODE_SIZE

    # Master container
    master_id: Optional[str] = None
    master_name: Optional[str] = None
    api_url: Optional[str] = None
    default_log_level: Optional[LogLevel] = None
    default_tls_mode: Optional[TlsMode] = None

    # Tunnel endpoint settings
    tunnel_address: str = ""
    target_address: str = ""
    tunnel_key: str = ""
    log_level: LogLevel = "master"
    tls_mode: TlsMode = "master"
    cert_path: str = ""
    key_path: str = ""
    min_pool_size: Optional[int] = None
    max_pool_size: Optional[int] = None
    single_ended: bool = False

    is_expanded: bool = False
    active_handles: ActiveHandles = Field(default_factory=ActiveHandles)

    submission_status: Optional[SubmissionStatus] = None
    submission_message: Optional[str] = None
    instance_id: Optional[str] = None
    instance_url: Optional[str] = None

    def get_label(self) -> str:
        """Return ``label`` if explicitly set, otherwise ``id``."""
        return self.label if self.label else self.id


# ---------------------------------------------------------------------------
# Edge
# ---------------------------------------------------------------------------

class TopologyEdge(BaseModel):
    """A directed connection between two leaf nodes.

    ``source_handle``/``target_handle`` name the side of each node the
    edge attaches to; they are recomputed by
    ``handles.resolve_handles`` whenever an endpoint moves.
    """
    id: str = Field(default_factory=new_edge_id)
    source: str
    target: str
    source_handle: HandlePosition = "bottom"
    target_handle: HandlePosition = "top"
    style: EdgeStyle = Field(default_factory=EdgeStyle)

    def touches(self, node_id: str) -> bool:
        return self.source == node_id or self.target == node_id

    def joins(self, a: str, b: str) -> bool:
        """True when this edge connects ``a`` and ``b`` in either direction."""
        return {self.source, self.target} == {a, b}
