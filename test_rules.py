"""Connection rules: the full role-pair table and the per-node limits."""

import pytest

from tunnel_canvas.models import EDGE_STYLES, TopologyEdge, TopologyNode
from tunnel_canvas.rules import can_connect, edge_style_for

ROLES = ["M", "S", "C", "T", "U"]

# Legal source -> target role pairs between nodes of different containers
LEGAL_PAIRS = {
    ("S", "C"), ("S", "T"),
    ("C", "S"), ("C", "C"), ("C", "T"),
    ("U", "S"), ("U", "C"),
}


def _node(node_id: str, role: str, parent: str | None = None) -> TopologyNode:
    if role not in ("S", "C"):
        parent = None
    return TopologyNode(id=node_id, role=role, parent=parent)


@pytest.mark.parametrize("src_role", ROLES)
@pytest.mark.parametrize("dst_role", ROLES)
def test_role_pair_table(src_role, dst_role):
    source = _node("a", src_role, parent="m1")
    target = _node("b", dst_role, parent="m2")
    check = can_connect(source, target, [])
    assert check.ok == ((src_role, dst_role) in LEGAL_PAIRS), check.reason
    if check.ok:
        assert check.style is not None
    else:
        assert check.reason


def test_self_loop_rejected():
    node = _node("c1", "C", parent="m1")
    check = can_connect(node, node, [])
    assert not check.ok
    assert "itself" in check.reason


def test_duplicate_in_either_direction_rejected():
    client = _node("c1", "C", parent="m1")
    server = _node("s1", "S", parent="m2")
    edges = [TopologyEdge(source="s1", target="c1")]
    assert not can_connect(server, client, edges).ok
    assert not can_connect(client, server, edges).ok


def test_user_entry_has_single_outgoing_edge():
    user = _node("u1", "U")
    first = _node("s1", "S", parent="m1")
    second = _node("c1", "C", parent="m2")
    edges = [TopologyEdge(source="u1", target="s1")]
    check = can_connect(user, second, edges)
    assert not check.ok
    assert "one outgoing" in check.reason
    assert can_connect(user, first, []).ok


def test_target_has_single_incoming_edge():
    target = _node("t1", "T")
    server = _node("s1", "S", parent="m1")
    other = _node("c1", "C", parent="m2")
    edges = [TopologyEdge(source="s1", target="t1")]
    check = can_connect(other, target, edges)
    assert not check.ok
    assert "one incoming" in check.reason
    assert can_connect(server, target, []).ok


@pytest.mark.parametrize("src_role,dst_role,legal", [
    ("C", "S", True),
    ("S", "C", False),
    ("C", "C", False),
    ("S", "S", False),
])
def test_internal_connections_only_client_to_server(src_role, dst_role, legal):
    source = _node("a", src_role, parent="m1")
    target = _node("b", dst_role, parent="m1")
    assert can_connect(source, target, []).ok is legal


def test_first_failing_rule_wins():
    # A master is checked before the user-entry rule
    master = _node("m1", "M")
    user = _node("u1", "U")
    assert "Master" in can_connect(user, master, []).reason


def test_edge_decoration_is_role_pair_function():
    assert edge_style_for("S", "C") == EDGE_STYLES["server-client"]
    assert edge_style_for("C", "S") == EDGE_STYLES["client-server"]
    assert edge_style_for("U", "C") == EDGE_STYLES["traffic"]
    assert edge_style_for("C", "T") == EDGE_STYLES["traffic"]
    assert edge_style_for("C", "C") == EDGE_STYLES["default"]
    assert edge_style_for("S", "C").dashed and edge_style_for("S", "C").animated
    assert edge_style_for("S", "C").color != edge_style_for("C", "S").color


def test_decoration_does_not_alias_shared_styles():
    style = edge_style_for("S", "C")
    style.color = "#000000"
    assert EDGE_STYLES["server-client"].color != "#000000"
