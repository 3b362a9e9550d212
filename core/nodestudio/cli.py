"""
Command-line interface for NodeStudio.

Usage:
    nodestudio new "Poster studio" --path posters.studio.json
    nodestudio validate posters.studio.json
    nodestudio run posters.studio.json
    nodestudio run posters.studio.json --from textgen-1 --force textgen-1
    nodestudio runs posters.studio.json
    nodestudio nodes
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from nodestudio.config import StudioSettings
from nodestudio.errors import StudioError
from nodestudio.graph.executor import GraphExecutor
from nodestudio.graph.scope import scope_for_run
from nodestudio.nodes import create_default_registry
from nodestudio.observability import configure_logging
from nodestudio.runtime.progress import RunProgressAggregator
from nodestudio.runtime.run_events import RunEvent
from nodestudio.runtime.studio_runtime import RunOptions, StudioRuntime
from nodestudio.storage.project_store import PROJECT_SUFFIX, ProjectStore
from nodestudio.storage.run_store import RunStore


def register_commands(subparsers: argparse._SubParsersAction) -> None:
    run_parser = subparsers.add_parser("run", help="Run a project")
    run_parser.add_argument("project", type=Path, help="Path to a .studio.json project")
    run_parser.add_argument("--from", dest="from_node", help="Run only the nodes feeding this node")
    run_parser.add_argument(
        "--force",
        action="append",
        default=[],
        metavar="NODE_ID",
        help="Execute this node even if its cached output is still valid (repeatable)",
    )
    run_parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Check a project without running it")
    validate_parser.add_argument("project", type=Path)
    validate_parser.set_defaults(func=cmd_validate)

    new_parser = subparsers.add_parser("new", help="Create an empty project")
    new_parser.add_argument("name")
    new_parser.add_argument("--path", type=Path, help=f"Output file (default: <name>{PROJECT_SUFFIX})")
    new_parser.set_defaults(func=cmd_new)

    runs_parser = subparsers.add_parser("runs", help="List recorded runs of a project")
    runs_parser.add_argument("project", type=Path)
    runs_parser.set_defaults(func=cmd_runs)

    nodes_parser = subparsers.add_parser("nodes", help="List the built-in node kinds")
    nodes_parser.set_defaults(func=cmd_nodes)


def cmd_run(args: argparse.Namespace) -> int:
    return asyncio.run(_run(args))


async def _run(args: argparse.Namespace) -> int:
    try:
        runtime = await StudioRuntime.open(args.project, create_default_registry())
    except (OSError, StudioError) as e:
        print(f"Cannot open {args.project}: {e}", file=sys.stderr)
        return 1

    progress = RunProgressAggregator()

    def on_event(event: RunEvent) -> None:
        progress.apply_event(event)
        if args.json:
            return
        if event.type == "node.failed":
            print(f"  ✗ {event.node_id}: {event.error}")
        elif event.type == "node.output":
            marker = "↺" if event.source == "cache" else "✓"
            print(f"  {marker} {event.node_id}")

    options = RunOptions(force_node_ids=args.force, on_event=on_event)
    try:
        scope = scope_for_run(runtime.session.project.graph, [args.from_node] if args.from_node else None)
        progress.begin_run(sorted(scope.node_ids()), from_node_id=args.from_node)
        if args.from_node:
            result = await runtime.run_project_from_node(args.from_node, options)
        else:
            result = await runtime.run_project(options)
    except StudioError as e:
        progress.fail_before_run(str(e))
        print(f"Run rejected: {e}", file=sys.stderr)
        return 1
    finally:
        await runtime.close()

    if args.json:
        print(json.dumps(result.to_summary(), indent=2))
    else:
        print(progress.get_progress().message)
        for warning in result.warnings:
            print(f"  warning: {warning}")
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    try:
        project = asyncio.run(ProjectStore().load_project(args.project))
        GraphExecutor(create_default_registry()).preflight(project.graph)
    except (OSError, StudioError) as e:
        print(f"✗ {args.project}: {e}", file=sys.stderr)
        return 1
    print(f"✓ {args.project}: {len(project.graph.nodes)} nodes, {len(project.graph.edges)} edges")
    return 0


def cmd_new(args: argparse.Namespace) -> int:
    path = args.path or Path(f"{args.name}{PROJECT_SUFFIX}")
    try:
        project = asyncio.run(ProjectStore().create_project(args.name, path))
    except FileExistsError:
        print(f"{path} already exists", file=sys.stderr)
        return 1
    print(f"Created {path} ({project.project_id})")
    return 0


def cmd_runs(args: argparse.Namespace) -> int:
    runs = asyncio.run(RunStore.for_project(args.project).list_runs())
    if not runs:
        print("No runs recorded")
        return 0
    for run in runs:
        print(f"{run['runId']}  {run['status']:<9}  {run['startedAt']}  {run.get('error') or ''}".rstrip())
    return 0


def cmd_nodes(args: argparse.Namespace) -> int:
    for definition in create_default_registry().definitions():
        inputs = ", ".join(p.id for p in definition.input_ports) or "-"
        outputs = ", ".join(p.id for p in definition.output_ports) or "-"
        name = f"{definition.kind}@{definition.version}"
        print(f"{name:<32} {definition.title or ''}")
        print(f"    in: {inputs}    out: {outputs}    cache: {definition.cache_policy}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="nodestudio",
        description="NodeStudio - run typed node graphs",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    register_commands(subparsers)

    args = parser.parse_args()
    configure_logging(StudioSettings().log_level)

    if hasattr(args, "func"):
        sys.exit(args.func(args))


if __name__ == "__main__":
    main()
