"""Recipe parsing, masters file loading, the CLI and the MCP tools."""

import asyncio
import json
from pathlib import Path

import pytest

from tunnel_canvas.cli import _ask_confirmation, main as cli_main
from tunnel_canvas.config import load_masters, merge_masters, parse_masters
from tunnel_canvas.errors import ConfigurationError, ValidationError
from tunnel_canvas.parser import parse_file, parse_yaml
from tunnel_canvas.server import call_tool, plan_payload

RECIPE = """
title: Edge relay
masters:
  - {id: alpha, api_url: 'https://master1.example.com:9090', token: a-token}
  - {id: beta, api_url: 'https://master2.example.com:9090', token: b-token}
nodes:
  - {id: s1, role: S, parent: m1, tunnel_address: '0.0.0.0:10000', target_address: '127.0.0.1:8080', tls_mode: 2}
  - {id: c1, role: C, parent: m2}
  - {id: u1, role: U, x: 700, y: 500}
  - {id: m1, role: M, master: alpha, x: 0, y: 0}
  - {id: m2, role: M, master: beta, x: 600, y: 0}
edges:
  - [s1, c1]
  - {source: u1, target: c1}
"""

BROKEN_EDGES = """
masters:
  - {id: alpha, api_url: 'https://master1.example.com:9090', token: a-token}
nodes:
  - {id: m1, role: M, master: alpha}
  - {id: s1, role: S, parent: m1, tunnel_address: '0.0.0.0:10000', target_address: '127.0.0.1:80'}
  - {id: t1, role: T, x: 40, y: 400}
edges:
  - [t1, s1]
  - [s1, t1]
"""


# ---------------------------------------------------------------------------
# Recipes
# ---------------------------------------------------------------------------

def test_recipe_builds_graph_with_masters_first():
    recipe = parse_yaml(RECIPE)
    graph = recipe.graph
    assert recipe.title == "Edge relay"
    assert graph.get_node("s1").parent == "m1"
    assert graph.get_node("c1").tunnel_address == "master1.example.com:10000"
    assert len(graph.edges) == 2


def test_unquoted_tls_mode_becomes_string():
    recipe = parse_yaml(RECIPE)
    assert recipe.graph.get_node("s1").tls_mode == "2"


def test_strict_recipe_raises_on_illegal_edge():
    with pytest.raises(ValidationError):
        parse_yaml(BROKEN_EDGES)


def test_lenient_recipe_collects_rejected_edges():
    recipe = parse_yaml(BROKEN_EDGES, strict=False)
    assert [(e.source, e.target) for e in recipe.rejected] == [("t1", "s1")]
    assert len(recipe.graph.edges) == 1
    assert recipe.graph.get_node("t1").target_address == "127.0.0.1:80"


@pytest.mark.parametrize("text", ["", "- just\n- a list\n", "nodes:\n  - {id: x}\n"])
def test_malformed_recipes_raise_value_error(text):
    with pytest.raises(ValueError):
        parse_yaml(text)


def test_recipe_masters_override_configured_ones():
    configured = parse_masters([{"id": "alpha", "api_url": "https://old.example.com:9090", "token": "x"}])
    recipe = parse_yaml(RECIPE, masters=configured)
    assert recipe.graph.masters["alpha"].api_url == "https://master1.example.com:9090"


def test_plan_payload_groups_by_master():
    plan = plan_payload(parse_yaml(RECIPE))
    assert set(plan["masters"]) == {"alpha", "beta"}
    assert plan["masters"]["alpha"][0]["url"].startswith("server://0.0.0.0:10000/127.0.0.1:8080")
    assert plan["masters"]["beta"][0]["kind"] == "entry client"
    assert plan["excluded"] == {}


# ---------------------------------------------------------------------------
# Masters file
# ---------------------------------------------------------------------------

def test_load_masters_from_file(tmp_path):
    path = tmp_path / "masters.yaml"
    path.write_text("masters:\n  - {id: alpha, api_url: 'http://10.0.0.1:9090', token: t, name: Alpha}\n")
    masters = load_masters(path)
    assert [m.id for m in masters] == ["alpha"]
    assert masters[0].get_label() == "Alpha"


def test_explicit_missing_masters_file_is_an_error(tmp_path):
    with pytest.raises(ConfigurationError):
        load_masters(tmp_path / "nope.yaml")


def test_invalid_master_entry_is_reported():
    with pytest.raises(ConfigurationError):
        parse_masters([{"api_url": "http://x"}])
    with pytest.raises(ConfigurationError):
        parse_masters("alpha")


def test_merge_masters_prefers_override():
    base = parse_masters([{"id": "a", "api_url": "http://1"}, {"id": "b", "api_url": "http://2"}])
    override = parse_masters([{"id": "a", "api_url": "http://3"}])
    merged = {m.id: m.api_url for m in merge_masters(base, override)}
    assert merged == {"a": "http://3", "b": "http://2"}


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def _write(tmp_path: Path, text: str) -> str:
    path = tmp_path / "recipe.yaml"
    path.write_text(text)
    return str(path)


def test_cli_check_passes_clean_recipe(tmp_path, capsys):
    assert cli_main(["check", _write(tmp_path, RECIPE)]) == 0
    assert "0 problem(s)" in capsys.readouterr().out


def test_cli_check_reports_problems(tmp_path, capsys):
    assert cli_main(["check", _write(tmp_path, BROKEN_EDGES)]) == 1
    assert "edge t1 -> s1" in capsys.readouterr().out


def test_cli_plan_prints_json(tmp_path, capsys):
    assert cli_main(["plan", _write(tmp_path, RECIPE)]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["title"] == "Edge relay"


def test_cli_missing_recipe_fails(tmp_path):
    assert cli_main(["check", str(tmp_path / "missing.yaml")]) == 1


def test_confirmation_prompt_reads_answer_off_the_loop(monkeypatch, capsys):
    monkeypatch.setattr("builtins.input", lambda prompt: " Yes ")
    assert asyncio.run(_ask_confirmation({})) is True
    assert "About to create 0 instance(s)" in capsys.readouterr().out

    def closed_stdin(prompt):
        raise EOFError

    monkeypatch.setattr("builtins.input", closed_stdin)
    assert asyncio.run(_ask_confirmation({})) is False


# ---------------------------------------------------------------------------
# MCP tools
# ---------------------------------------------------------------------------

def _call(name: str, arguments: dict):
    result = asyncio.run(call_tool(name, arguments))
    return result[0].text


def test_check_topology_tool_reports_rejected_edges():
    payload = json.loads(_call("check_topology", {"yaml_recipe": BROKEN_EDGES}))
    assert payload["status"] == "invalid"
    assert payload["rejected_edges"][0]["source"] == "t1"


def test_submit_without_confirmation_returns_plan():
    payload = json.loads(_call("submit_topology", {"yaml_recipe": RECIPE}))
    assert payload["status"] == "not_submitted"
    assert set(payload["masters"]) == {"alpha", "beta"}


def test_unknown_tool_and_bad_recipe():
    assert _call("draw", {}) == "Unknown tool: draw"
    assert _call("plan_topology", {"yaml_recipe": "[1, 2"}).startswith("Failed to load")
