"""Command line for Tunnel-Canvas.

    tunnel-canvas check  RECIPE
    tunnel-canvas plan   RECIPE
    tunnel-canvas submit RECIPE [--yes] [--listen MASTER]
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

from .config import LOG_LEVEL, load_masters
from .errors import PreflightError, TopologyError
from .parser import parse_file
from .server import plan_payload
from .submission import InstancePlan, SubmissionOrchestrator

logger = logging.getLogger(__name__)


def _print_notice(level: str, title: str, message: str) -> None:
    marker = {"error": "!!", "warning": "! "}.get(level, "--")
    print(f"{marker} {title}" + (f": {message}" if message else ""), file=sys.stderr)


async def _ask_confirmation(groups: dict[str, list[InstancePlan]]) -> bool:
    total = sum(len(plans) for plans in groups.values())
    print(f"About to create {total} instance(s):")
    for master_id, plans in groups.items():
        print(f"  master {master_id}:")
        for plan in plans:
            print(f"    [{plan.kind}] {plan.node_label}: {plan.url}")
    try:
        answer = await asyncio.to_thread(input, "Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def cmd_check(args) -> int:
    recipe = parse_file(args.recipe, masters=load_masters(args.masters), strict=False)
    plan = plan_payload(recipe)
    for edge in plan["rejected_edges"]:
        print(f"edge {edge['source']} -> {edge['target']}: {edge['reason']}")
    for node_id, message in plan["excluded"].items():
        print(f"node {node_id}: {message}")
    problems = len(plan["rejected_edges"]) + len(plan["excluded"])
    print(f"{recipe.title}: {len(recipe.graph.nodes)} nodes, {len(recipe.graph.edges)} edges, {problems} problem(s)")
    return 1 if problems else 0


def cmd_plan(args) -> int:
    recipe = parse_file(args.recipe, masters=load_masters(args.masters), strict=False)
    print(json.dumps(plan_payload(recipe), indent=2))
    return 0


async def _submit(args) -> int:
    recipe = parse_file(args.recipe, masters=load_masters(args.masters), notify=_print_notice)
    orchestrator = SubmissionOrchestrator(
        recipe.graph,
        listen_master_id=args.listen,
        notify=_print_notice,
    )
    confirm = (lambda groups: True) if args.yes else _ask_confirmation
    try:
        report = await orchestrator.run(confirm=confirm)
    except PreflightError as e:
        logger.error(f"Submission aborted: {e}")
        return 2
    finally:
        await orchestrator.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 1 if report.failed else 0


def cmd_submit(args) -> int:
    return asyncio.run(_submit(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tunnel-canvas", description="Tunnel topology checker and submitter")
    parser.add_argument("--masters", help="Masters YAML file (default: $TUNNEL_CANVAS_MASTERS)")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Logging level (default: %(default)s)")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Validate a recipe without network calls")
    check.add_argument("recipe")
    check.set_defaults(func=cmd_check)

    plan = sub.add_parser("plan", help="Print the instances a recipe would create")
    plan.add_argument("recipe")
    plan.set_defaults(func=cmd_plan)

    submit = sub.add_parser("submit", help="Create the recipe's instances on their masters")
    submit.add_argument("recipe")
    submit.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    submit.add_argument("--listen", metavar="MASTER", help="Master id whose event stream confirms the handshake")
    submit.set_defaults(func=cmd_submit)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    try:
        return args.func(args)
    except (ValueError, OSError, TopologyError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
