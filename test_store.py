"""Graph store commands: placement, cascades, limits and address side effects."""

import pytest

from tunnel_canvas.errors import ConfigurationError, ValidationError
from tunnel_canvas.models import INITIAL_ACTIVE_HANDLES, ActiveHandles
from tunnel_canvas.store import TopologyGraph


@pytest.fixture
def notices():
    return []


@pytest.fixture
def graph(masters, notices):
    graph = TopologyGraph(masters, notify=lambda level, title, message: notices.append((level, title, message)))
    graph.add_master("alpha", 0, 0, node_id="m1")
    graph.add_master("beta", 600, 0, node_id="m2")
    return graph


def _tunnel(graph):
    """Server in alpha wired to a client in beta."""
    graph.add_node("S", parent="m1", node_id="s1", tunnel_address="0.0.0.0:10000", target_address="127.0.0.1:8080")
    graph.add_node("C", parent="m2", node_id="c1")
    graph.connect("s1", "c1")


# ---------------------------------------------------------------------------
# Placement
# ---------------------------------------------------------------------------

def test_endpoint_dropped_in_container_becomes_child(graph):
    node = graph.add_node("S", 50, 50)
    assert node.parent == "m1"
    assert (node.x, node.y) == (26, 26)
    master = graph.get_node("m1")
    assert (master.width, master.height) == (240, 144)


def test_endpoint_outside_container_is_rejected(graph, notices):
    before = graph.snapshot()
    with pytest.raises(ValidationError):
        graph.add_node("C", 5000, 5000)
    assert graph.snapshot() == before
    assert notices[-1][0] == "error"


def test_target_and_user_are_always_top_level(graph):
    with pytest.raises(ValidationError):
        graph.add_node("T", parent="m1")
    user = graph.add_node("U", 50, 50)
    assert user.parent is None


def test_masters_cannot_nest_or_be_unknown(graph):
    with pytest.raises(ValidationError):
        graph.add_master("beta", 20, 20)
    with pytest.raises(ConfigurationError):
        graph.add_master("gamma", 2000, 2000)


def test_child_inherits_master_defaults(masters):
    masters[0] = masters[0].model_copy(update={"default_log_level": "warn", "default_tls_mode": "2"})
    graph = TopologyGraph(masters)
    graph.add_master("alpha", 0, 0, node_id="m1")
    server = graph.add_node("S", parent="m1")
    client = graph.add_node("C", parent="m1")
    assert (server.log_level, server.tls_mode) == ("warn", "2")
    assert (client.log_level, client.tls_mode) == ("warn", "master")


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------

def test_cross_master_link_addresses_the_client(graph, notices):
    _tunnel(graph)
    client = graph.get_node("c1")
    assert client.tunnel_address == "master1.example.com:10000"
    assert client.target_address == "[::]:10001"
    assert client.single_ended is False
    assert any(title == "Client address updated" for _, title, _ in notices)

    edge = graph.edges[0]
    assert edge.style.dashed and edge.style.animated


def test_rejected_connection_leaves_graph_unchanged(graph, notices):
    _tunnel(graph)
    before = graph.snapshot()
    with pytest.raises(ValidationError) as exc:
        graph.connect("c1", "s1")
    assert exc.value.source == "c1" and exc.value.target == "s1"
    assert graph.snapshot() == before
    assert notices[-1][1] == "Invalid connection"


def test_user_and_target_limits(graph):
    graph.add_node("S", parent="m1", node_id="s1")
    graph.add_node("C", parent="m2", node_id="c1")
    graph.add_node("U", 300, 400, node_id="u1")
    graph.add_node("T", 300, 800, node_id="t1")

    graph.connect("u1", "s1")
    with pytest.raises(ValidationError):
        graph.connect("u1", "c1")

    graph.connect("c1", "t1")
    with pytest.raises(ValidationError):
        graph.connect("s1", "t1")

    assert graph.get_node("u1").active_handles == ActiveHandles(bottom=True)
    assert graph.get_node("t1").active_handles == ActiveHandles(top=True)


def test_unresolvable_server_warns_and_keeps_client(graph, notices):
    graph.add_node("S", parent="m1", node_id="s1", tunnel_address="0.0.0.0")
    graph.add_node("C", parent="m2", node_id="c1", tunnel_address="manual.example.com:7000")
    graph.connect("s1", "c1")
    assert graph.get_node("c1").tunnel_address == "manual.example.com:7000"
    assert ("warning", "Tunnel address unresolved") in [(level, title) for level, title, _ in notices]


def test_unresolved_warning_not_repeated_on_label_edit(graph, notices):
    graph.add_node("S", parent="m1", node_id="s1", tunnel_address="0.0.0.0")
    graph.add_node("C", parent="m2", node_id="c1")
    graph.connect("s1", "c1")

    def unresolved():
        return sum(1 for _, title, _ in notices if title == "Tunnel address unresolved")

    assert unresolved() == 1
    graph.update_node("s1", label="renamed")
    assert unresolved() == 1
    graph.update_node("s1", tunnel_address="10.0.0.1")
    assert unresolved() == 2


def test_target_address_copied_along_traffic_edge(graph):
    graph.add_node("S", parent="m1", node_id="s1", target_address="127.0.0.1:8080")
    graph.add_node("T", 100, 600, node_id="t1")
    graph.connect("s1", "t1")
    assert graph.get_node("t1").target_address == "127.0.0.1:8080"

    graph.update_node("t1", target_address="10.0.0.9:22")
    assert graph.get_node("s1").target_address == "10.0.0.9:22"


# ---------------------------------------------------------------------------
# Cascading updates
# ---------------------------------------------------------------------------

def test_server_change_readdresses_client_once(graph, notices):
    _tunnel(graph)
    graph.update_node("s1", tunnel_address="0.0.0.0:20000")
    assert graph.get_node("c1").tunnel_address == "master1.example.com:20000"

    count = sum(1 for _, title, _ in notices if title == "Client address updated")
    graph.update_node("s1", label="renamed")
    assert sum(1 for _, title, _ in notices if title == "Client address updated") == count


def test_master_api_change_readdresses_clients(graph, masters):
    _tunnel(graph)
    graph.update_master(masters[0].model_copy(update={"api_url": "https://relay.example.net:9090"}))
    assert graph.get_node("m1").api_url == "https://relay.example.net:9090"
    assert graph.get_node("c1").tunnel_address == "relay.example.net:10000"


def test_container_api_override_readdresses_clients(graph):
    _tunnel(graph)
    graph.update_node("m1", api_url="http://10.20.30.40:9090")
    assert graph.get_node("c1").tunnel_address == "10.20.30.40:10000"


def test_cross_master_client_is_never_single_ended(graph):
    _tunnel(graph)
    assert graph.update_node("c1", single_ended=True).single_ended is False


def test_derived_fields_cannot_be_edited(graph):
    with pytest.raises(ValueError):
        graph.update_node("m1", width=999)


def test_deleting_master_cascades(graph):
    _tunnel(graph)
    graph.add_node("U", 300, 400, node_id="u1")
    graph.connect("u1", "s1")

    graph.remove_node("m1")
    assert graph.get_node("s1") is None
    assert graph.get_node("c1") is not None
    assert graph.edges == []
    assert graph.get_node("u1").active_handles == ActiveHandles(bottom=True)
    assert (graph.get_node("m2").width, graph.get_node("m2").height) == (240, 144)


def test_reparent_rejects_illegal_internal_link(graph):
    _tunnel(graph)
    with pytest.raises(ValidationError):
        graph.reparent("c1", "m1")
    assert graph.get_node("c1").parent == "m2"


def test_reparent_moves_child_and_resizes_both_containers(graph):
    graph.add_node("C", parent="m2", node_id="c1")
    graph.reparent("c1", "m1")
    assert graph.get_node("c1").parent == "m1"
    assert graph.get_node("m1").width == 240
    assert graph.get_node("m2").width == 200


def test_role_change_must_keep_edges_legal(graph):
    _tunnel(graph)
    before = graph.snapshot()
    with pytest.raises(ValidationError):
        graph.change_role("c1", "S")
    assert graph.snapshot() == before

    graph.add_node("S", parent="m2", node_id="s2")
    graph.change_role("s2", "C")
    assert graph.get_node("s2").role == "C"


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------

def test_expand_and_collapse_resize_leaf(graph):
    graph.add_node("T", 100, 600, node_id="t1", target_address="127.0.0.1:80")
    graph.toggle_expanded("t1")
    node = graph.get_node("t1")
    assert (node.width, node.height) == (200, 40 + 2 * 18)
    graph.collapse_all()
    assert graph.get_node("t1").width == 48


def test_move_reorients_edge_handles(graph):
    graph.add_node("S", parent="m1", node_id="s1")
    graph.add_node("C", parent="m2", node_id="c1")
    graph.connect("c1", "s1")
    graph.move_node("m2", 600, -500)
    edge = graph.edges[0]
    assert (edge.source_handle, edge.target_handle) == ("bottom", "top")
    graph.move_node("m2", 600, 500)
    edge = graph.edges[0]
    assert (edge.source_handle, edge.target_handle) == ("top", "bottom")


# ---------------------------------------------------------------------------
# Import of remote instances
# ---------------------------------------------------------------------------

def _links(graph):
    return sorted((graph.get_node(e.source).role, graph.get_node(e.target).role) for e in graph.edges)


def test_import_instances_builds_children_and_links(masters):
    graph = TopologyGraph(masters)
    graph.import_instances("alpha", [
        {"id": "srv00001", "url": "server://0.0.0.0:10000/127.0.0.1:8080"},
    ])
    graph.import_instances("beta", [
        {"id": "cli00001", "url": "client://master1.example.com:10000/[::]:10001?min=2"},
    ])

    servers = [n for n in graph.nodes if n.role == "S"]
    clients = [n for n in graph.nodes if n.role == "C"]
    assert len(servers) == 1 and len(clients) == 1
    assert clients[0].min_pool_size == 2
    assert servers[0].instance_id == "srv00001"
    assert _links(graph) == [("C", "S"), ("S", "T"), ("U", "C"), ("U", "S")]
    tunnel = next(e for e in graph.edges if e.source == clients[0].id)
    assert tunnel.target == servers[0].id
    assert tunnel.style.dashed

    graph.import_instances("alpha", [{"id": "srv00001", "url": "server://0.0.0.0:10000/127.0.0.1:8080"}])
    assert len([n for n in graph.nodes if n.role == "S"]) == 1


def test_import_links_client_to_server_in_same_master(masters):
    graph = TopologyGraph(masters)
    graph.import_instances("alpha", [
        {"id": "srv00001", "url": "server://0.0.0.0:10000/127.0.0.1:8080"},
        {"id": "cli00001", "url": "client://master1.example.com:10000/[::]:10001"},
        {"id": "********", "url": "server://0.0.0.0:20000/127.0.0.1:9090"},
    ])

    assert len([n for n in graph.nodes if n.role in ("S", "C")]) == 2
    assert all(n.instance_id != "********" for n in graph.nodes)
    server = next(n for n in graph.nodes if n.role == "S")
    client = next(n for n in graph.nodes if n.role == "C")
    assert client.single_ended is False

    # The server is fed by the client, so only the client gets a user entry
    assert _links(graph) == [("C", "S"), ("S", "T"), ("U", "C")]
    assert any(e.source == client.id and e.target == server.id for e in graph.edges)
    landing = next(n for n in graph.nodes if n.role == "T")
    assert landing.target_address == "127.0.0.1:8080"
    assert graph.edges_of(landing.id)[0].source == server.id


def test_import_single_ended_client_lands_on_its_target(masters):
    graph = TopologyGraph(masters)
    graph.import_instances("beta", [{"id": "cli00002", "url": "client://[::]:9000/10.0.0.1:22"}])

    client = next(n for n in graph.nodes if n.role == "C")
    assert client.single_ended is True
    assert _links(graph) == [("C", "T"), ("U", "C")]
    landing = next(n for n in graph.nodes if n.role == "T")
    assert landing.target_address == "10.0.0.1:22"


def test_import_client_with_unknown_server_gets_external_exit(masters):
    graph = TopologyGraph(masters)
    graph.import_instances("beta", [{"id": "cli00003", "url": "client://relay.example.org:4000/[::]:4001"}])

    landing = next(n for n in graph.nodes if n.role == "T")
    assert landing.label == "External exit @ relay.example.org:4000"
    assert _links(graph) == [("C", "T"), ("U", "C")]


def test_disconnect_frees_handles(graph):
    graph.add_node("S", parent="m1", node_id="s1")
    graph.add_node("U", 300, 400, node_id="u1")
    edge = graph.connect("u1", "s1")
    assert graph.edges_of("s1") == [edge]

    graph.disconnect(edge.id)
    assert graph.edges_of("s1") == []
    assert graph.get_node("s1").active_handles == INITIAL_ACTIVE_HANDLES["S"]
    with pytest.raises(KeyError):
        graph.disconnect(edge.id)


def test_clear_empties_graph(graph):
    _tunnel(graph)
    graph.clear()
    assert graph.nodes == [] and graph.edges == []
