"""Address resolution for cross-master tunnels.

A client wired to a server needs a ``host:port`` it can actually dial.
The server's own listen address is often a wildcard bind (``0.0.0.0`` or
``[::]``) that means nothing to a remote peer, so the host is inferred
from the server's master: "reach me at the address you already use to
talk to my control plane".

Everything here is a pure function of its arguments.
"""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit

from .errors import ResolutionError
from .models import MasterConfig, TopologyNode

logger = logging.getLogger(__name__)

WILDCARD_HOSTS = frozenset({"0.0.0.0", "::", "[::]"})
LOOPBACK_HOSTS = frozenset({"localhost", "127.0.0.1", "::1"})

# Local listen port used for an auto-configured client when the server port is unknown
FALLBACK_CLIENT_LOCAL_PORT = 3001


# ---------------------------------------------------------------------------
# host/port helpers
# ---------------------------------------------------------------------------

def _split(url_or_host_port: str):
    full = url_or_host_port if "://" in url_or_host_port else f"http://{url_or_host_port}"
    return urlsplit(full)


def extract_hostname(url_or_host_port: Optional[str]) -> Optional[str]:
    """Return the host part of a URL or ``host:port`` string.

    IPv6 brackets are removed.  Returns None when no host is present.
    """
    if not url_or_host_port:
        return None
    try:
        host = _split(url_or_host_port.strip()).hostname
    except ValueError:
        host = None
        text = url_or_host_port.strip()
        if text.startswith("[") and "]" in text:
            host = text[1:text.index("]")]
        elif text:
            host = text.split(":")[0]
    return host or None


def extract_port(address: Optional[str]) -> Optional[int]:
    """Return the port of a URL or ``host:port`` string, or None."""
    if not address:
        return None
    try:
        return _split(address.strip()).port
    except ValueError:
        return None


def is_wildcard_hostname(host: Optional[str]) -> bool:
    if not host:
        return False
    return host.lower() in WILDCARD_HOSTS


def format_host_for_url(host: str) -> str:
    """Wrap bare IPv6 literals in brackets for ``host:port`` composition."""
    if ":" in host and not host.startswith("["):
        return f"[{host}]"
    return host


# ---------------------------------------------------------------------------
# Client tunnel address
# ---------------------------------------------------------------------------

def resolve_client_tunnel_address(
    server: TopologyNode,
    master: Optional[MasterConfig],
) -> str:
    """Compute the address a client must dial to reach ``server``.

    1. Extract host and port from the server's listen address.
    2. A wildcard host is replaced by the hostname of the master's API URL.
    3. A specific host is kept verbatim.
    4. No host at all falls back to the master's API hostname.
    5. IPv6 hosts are bracketed.
    6. Without a port the server's raw address is returned unchanged;
       ``resolution_failed`` reports that case to the caller.
    """
    raw = server.tunnel_address or ""
    port = extract_port(raw)
    if port is None:
        logger.warning(f"No listen port on server {server.get_label()} ('{raw}'); client address left unresolved")
        return raw

    listen_host = extract_hostname(raw)
    master_host = extract_hostname(master.api_url) if master and master.api_url else None

    if listen_host and not is_wildcard_hostname(listen_host):
        host = listen_host
    else:
        host = master_host

    if not host:
        logger.warning(f"No reachable host for server {server.get_label()}: listen host '{listen_host}' and no master API host")
        return raw

    return f"{format_host_for_url(host)}:{port}"


def require_client_tunnel_address(server: TopologyNode, master: Optional[MasterConfig]) -> str:
    """Like ``resolve_client_tunnel_address`` but raise ``ResolutionError`` on failure."""
    address = resolve_client_tunnel_address(server, master)
    if resolution_failed(address):
        raise ResolutionError(f"Cannot infer a reachable address for server {server.get_label()} from '{address}'")
    return address


def resolution_failed(address: Optional[str]) -> bool:
    """True when ``address`` is not something a remote client can dial."""
    if extract_port(address) is None:
        return True
    host = extract_hostname(address)
    return not host or is_wildcard_hostname(host)


def client_local_target_address(server: TopologyNode) -> str:
    """Local listen address for a client auto-wired to ``server``.

    The client listens on all interfaces at the server port + 1.
    """
    port = extract_port(server.tunnel_address)
    local_port = port + 1 if port else FALLBACK_CLIENT_LOCAL_PORT
    return f"[::]:{local_port}"


# ---------------------------------------------------------------------------
# Target address synchronization
# ---------------------------------------------------------------------------

def sync_target_address(
    upstream: TopologyNode,
    target: TopologyNode,
    prefer: str = "upstream",
) -> Optional[tuple[str, str]]:
    """Decide the one-shot target address copy along an ``S/C -> T`` edge.

    Returns ``(node_id_to_update, new_value)`` or None when both sides
    already agree.  A non-empty value always beats an empty one; when
    both hold different non-empty values the ``prefer`` side wins
    (the upstream S/C node unless the target was the one just edited).
    """
    up = (upstream.target_address or "").strip()
    down = (target.target_address or "").strip()
    if up == down:
        return None
    if prefer == "target":
        if down:
            return upstream.id, target.target_address
        return target.id, upstream.target_address
    if up:
        return target.id, upstream.target_address
    return upstream.id, target.target_address


# ---------------------------------------------------------------------------
# Matching imported instances
# ---------------------------------------------------------------------------

def is_single_ended_address(address: Optional[str]) -> bool:
    """A client tunnel address bound on all interfaces forwards locally."""
    return bool(address) and (address.startswith("[::]:") or address.startswith("0.0.0.0:"))


def client_dials_server(
    client_address: Optional[str],
    server_address: Optional[str],
    master: Optional[MasterConfig],
    same_master: bool = True,
) -> bool:
    """True when a client dialing ``client_address`` lands on a server
    listening on ``server_address`` inside ``master``.

    Ports must match.  A wildcard listen host is reached through the
    master's API host, or through loopback from the same master.
    Loopback on both sides only counts within one master.
    """
    client_port = extract_port(client_address)
    if client_port is None or client_port != extract_port(server_address):
        return False

    client_host = (extract_hostname(client_address) or "").lower()
    server_host = (extract_hostname(server_address) or "").lower()
    master_host = (extract_hostname(master.api_url) or "").lower() if master and master.api_url else ""
    server_wildcard = not server_host or is_wildcard_hostname(server_host)

    if same_master and client_host in LOOPBACK_HOSTS and (server_wildcard or server_host in LOOPBACK_HOSTS):
        return True
    if server_wildcard:
        return bool(client_host) and client_host == master_host
    return client_host == server_host and client_host not in LOOPBACK_HOSTS
