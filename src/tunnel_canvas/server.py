"""Tunnel-Canvas MCP server: tools for checking, planning and submitting tunnel topologies."""

from __future__ import annotations

import json
import logging

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from .config import load_masters
from .errors import PreflightError, TopologyError
from .parser import Recipe, parse_yaml
from .submission import SubmissionOrchestrator, enumerate_instances, group_by_master

logger = logging.getLogger(__name__)

server = Server("tunnel-canvas")

RECIPE_DESCRIPTION = (
    "YAML string defining the topology. Example:\n"
    "title: Edge relay\n"
    "masters:\n"
    "  - {id: alpha, api_url: 'https://alpha.example.com:9090', token: secret}\n"
    "  - {id: beta, api_url: 'https://beta.example.com:9090', token: secret}\n"
    "nodes:\n"
    "  - {id: m1, role: M, master: alpha, x: 0, y: 0}\n"
    "  - {id: m2, role: M, master: beta, x: 400, y: 0}\n"
    "  - {id: s1, role: S, parent: m1, tunnel_address: '0.0.0.0:10000', target_address: '127.0.0.1:8080'}\n"
    "  - {id: c1, role: C, parent: m2}\n"
    "edges:\n"
    "  - [s1, c1]\n"
    "\n"
    "Roles: M (master container), S (server), C (client), T (target service), U (user entry). "
    "S/C nodes need a parent M. Masters may also come from the masters file."
)


def _recipe_schema(**extra) -> dict:
    properties = {
        "yaml_recipe": {"type": "string", "description": RECIPE_DESCRIPTION},
    }
    properties.update(extra)
    return {"type": "object", "properties": properties, "required": ["yaml_recipe"]}


# --- Tool definitions ---

@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(
            name="check_topology",
            description=(
                "Load a topology recipe and report every problem: connections refused by the "
                "connection rules and nodes that could not be submitted (missing master config, "
                "incomplete or unresolved addresses). Makes no network calls."
            ),
            inputSchema=_recipe_schema(),
        ),
        Tool(
            name="plan_topology",
            description=(
                "Show the tunnel instances a recipe would create, grouped by master, "
                "with the exact instance URL for each. Makes no network calls."
            ),
            inputSchema=_recipe_schema(),
        ),
        Tool(
            name="submit_topology",
            description=(
                "Create the recipe's tunnel instances on their masters and wait for the "
                "tunnel handshake. Requires confirm: true; without it only the plan is returned."
            ),
            inputSchema=_recipe_schema(
                confirm={
                    "type": "boolean",
                    "description": "Must be true to actually create instances.",
                    "default": False,
                },
                listen_master={
                    "type": "string",
                    "description": "Master id whose event stream confirms the handshake (default: the first master on the canvas).",
                },
            ),
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    if name == "check_topology":
        return await _check_topology(arguments)
    elif name == "plan_topology":
        return await _plan_topology(arguments)
    elif name == "submit_topology":
        return await _submit_topology(arguments)
    else:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]


def _text(payload: dict) -> list[TextContent]:
    return [TextContent(type="text", text=json.dumps(payload, indent=2))]


def _load(args: dict) -> Recipe:
    return parse_yaml(args["yaml_recipe"], masters=load_masters(), strict=False)


def plan_payload(recipe: Recipe) -> dict:
    plans, exclusions = enumerate_instances(recipe.graph)
    return {
        "title": recipe.title,
        "masters": {
            master_id: [
                {"node": p.node_id, "label": p.node_label, "kind": p.kind, "url": p.url}
                for p in group
            ]
            for master_id, group in group_by_master(plans).items()
        },
        "excluded": {e.node_id: e.message for e in exclusions},
        "rejected_edges": [
            {"source": e.source, "target": e.target, "reason": e.reason} for e in recipe.rejected
        ],
    }


async def _check_topology(args: dict) -> list[TextContent]:
    try:
        recipe = _load(args)
    except (ValueError, TopologyError) as e:
        return [TextContent(type="text", text=f"Failed to load topology recipe: {e}")]

    plan = plan_payload(recipe)
    problems = len(plan["excluded"]) + len(plan["rejected_edges"])
    return _text({
        "status": "ok" if problems == 0 else "invalid",
        "title": recipe.title,
        "nodes": len(recipe.graph.nodes),
        "edges": len(recipe.graph.edges),
        "excluded": plan["excluded"],
        "rejected_edges": plan["rejected_edges"],
    })


async def _plan_topology(args: dict) -> list[TextContent]:
    try:
        recipe = _load(args)
    except (ValueError, TopologyError) as e:
        return [TextContent(type="text", text=f"Failed to load topology recipe: {e}")]
    return _text(plan_payload(recipe))


async def _submit_topology(args: dict) -> list[TextContent]:
    try:
        recipe = _load(args)
    except (ValueError, TopologyError) as e:
        return [TextContent(type="text", text=f"Failed to load topology recipe: {e}")]

    if not args.get("confirm", False):
        payload = plan_payload(recipe)
        payload["status"] = "not_submitted"
        payload["message"] = "Review the plan and call again with confirm: true to create these instances."
        return _text(payload)

    orchestrator = SubmissionOrchestrator(recipe.graph, listen_master_id=args.get("listen_master"))
    try:
        report = await orchestrator.run(confirm=lambda groups: True)
    except PreflightError as e:
        return _text({"status": "aborted", "message": f"Connection check failed: {e}"})
    finally:
        await orchestrator.close()

    payload = report.to_dict()
    payload["status"] = "submitted" if not report.failed else "partial"
    return _text(payload)


def main():
    """Entry point for the MCP server."""
    import asyncio
    asyncio.run(_run())


async def _run():
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    main()
