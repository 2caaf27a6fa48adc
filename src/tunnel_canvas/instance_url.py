"""Instance URL encoding and parsing.

The control API takes a single URL as the whole definition of a tunnel
instance::

    <scheme>://[<key>@]<tunnel address>/<target address>[?log=..&tls=..&crt=..&key=..&min=..&max=..]

Only non-default parameters are emitted, so a URL stays as short as the
configuration allows.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional
from urllib.parse import parse_qs, quote, unquote, urlencode

from .models import MASTER_DEFAULT, MasterConfig, TopologyNode

Scheme = Literal["server", "client"]

LOG_LEVELS = ("debug", "info", "warn", "error", "event")

# Each role's silent TLS default, never written to the URL
IMPLICIT_TLS = {"server": "1", "client": "0"}


@dataclass
class InstanceParams:
    """Structured parameters of one tunnel instance."""
    scheme: Scheme
    tunnel_address: str
    target_address: str
    tunnel_key: str = ""
    log_level: str = MASTER_DEFAULT
    tls_mode: str = MASTER_DEFAULT
    cert_path: str = ""
    key_path: str = ""
    min_pool_size: Optional[int] = None
    max_pool_size: Optional[int] = None


def params_from_node(node: TopologyNode) -> InstanceParams:
    """Build instance parameters from an ``S`` or ``C`` node."""
    if node.role not in ("S", "C"):
        raise ValueError(f"Node {node.id} with role {node.role} does not map to an instance")
    scheme: Scheme = "server" if node.role == "S" else "client"
    tls_mode = node.tls_mode
    if scheme == "client" and node.single_ended:
        tls_mode = "0"
    return InstanceParams(
        scheme=scheme,
        tunnel_address=node.tunnel_address.strip(),
        target_address=node.target_address.strip(),
        tunnel_key=node.tunnel_key.strip(),
        log_level=node.log_level,
        tls_mode=tls_mode,
        cert_path=node.cert_path,
        key_path=node.key_path,
        min_pool_size=node.min_pool_size if scheme == "client" else None,
        max_pool_size=node.max_pool_size if scheme == "client" else None,
    )


def build_instance_url(params: InstanceParams, master: Optional[MasterConfig] = None) -> str:
    """Encode ``params`` as an instance URL for ``master``.

    ``log`` is left out when it inherits, or equals the master's own
    default.  ``tls`` is left out when it inherits or is the role's
    implicit default; ``crt``/``key`` accompany ``tls=2`` only.  Pool
    bounds are client-only and only emitted when positive.
    """
    prefix = f"{quote(params.tunnel_key, safe='')}@" if params.tunnel_key else ""
    url = f"{params.scheme}://{prefix}{params.tunnel_address}/{params.target_address}"

    query: list[tuple[str, str]] = []

    log_level = params.log_level or MASTER_DEFAULT
    master_log = master.default_log_level if master else MASTER_DEFAULT
    if log_level != MASTER_DEFAULT and log_level != master_log and log_level in LOG_LEVELS:
        query.append(("log", log_level))

    tls_mode = params.tls_mode or MASTER_DEFAULT
    if tls_mode in ("0", "1", "2") and tls_mode != IMPLICIT_TLS[params.scheme]:
        query.append(("tls", tls_mode))
        if tls_mode == "2":
            if params.cert_path.strip():
                query.append(("crt", params.cert_path.strip()))
            if params.key_path.strip():
                query.append(("key", params.key_path.strip()))

    if params.scheme == "client":
        if params.min_pool_size and params.min_pool_size > 0:
            query.append(("min", str(params.min_pool_size)))
        if params.max_pool_size and params.max_pool_size > 0:
            query.append(("max", str(params.max_pool_size)))

    if query:
        url += "?" + urlencode(query)
    return url


def parse_instance_url(url: str) -> InstanceParams:
    """Parse an instance URL back into its parameters.

    URLs without a scheme are taken as servers when they carry a ``tls``
    parameter and as clients otherwise.
    """
    text = (url or "").strip()
    if "://" in text:
        scheme_text, rest = text.split("://", 1)
    else:
        scheme_text, rest = "", text
    if scheme_text in ("server", "client"):
        scheme: Scheme = scheme_text  # type: ignore[assignment]
    else:
        scheme = "server" if ("?tls=" in text or "&tls=" in text) else "client"

    tunnel_key = ""
    path, _, query_text = rest.partition("?")
    if "@" in path:
        key_part, path = path.split("@", 1)
        tunnel_key = unquote(key_part)

    tunnel_address, _, target_address = path.partition("/")
    query = {k: v[0] for k, v in parse_qs(query_text).items()}

    log_level = query.get("log", MASTER_DEFAULT)
    if log_level not in LOG_LEVELS:
        log_level = MASTER_DEFAULT
    tls_mode = query.get("tls", MASTER_DEFAULT)
    if tls_mode not in ("0", "1", "2"):
        tls_mode = MASTER_DEFAULT

    def _pool(name: str) -> Optional[int]:
        value = query.get(name)
        if scheme != "client" or not value or not value.isdigit():
            return None
        return int(value)

    return InstanceParams(
        scheme=scheme,
        tunnel_address=tunnel_address.strip(),
        target_address=target_address.strip(),
        tunnel_key=tunnel_key,
        log_level=log_level,
        tls_mode=tls_mode,
        cert_path=query.get("crt", "") if tls_mode == "2" else "",
        key_path=query.get("key", "") if tls_mode == "2" else "",
        min_pool_size=_pool("min"),
        max_pool_size=_pool("max"),
    )
