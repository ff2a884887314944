#!/usr/bin/env python3
"""
Shipyard command line.

Validate pipeline files, show their stage graph, run a pipeline locally
(no Redis, no API) or start the API server.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table

from shipyard.logging_config import configure_logging, parse_module_levels
from shipyard.modules.executor import ToolRunner
from shipyard.modules.pipeline import PipelineValidationError, StageGraph, load_pipeline
from shipyard.modules.rollout import HealthChecker, KubectlClient, RolloutCoordinator
from shipyard.modules.runner import PipelineRunner, RunResult, RunStatus, StageStatus

logger = logging.getLogger("shipyard.cli")

console = Console()

STATUS_STYLES = {
    StageStatus.SUCCESS: "green",
    StageStatus.UNSTABLE: "yellow",
    StageStatus.FAILED: "red",
    StageStatus.CANCELLED: "red",
    StageStatus.SKIPPED: "dim",
    StageStatus.NOT_BUILT: "dim",
}


def parse_params(values: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` arguments into a dict."""
    params = {}
    for value in values or []:
        if "=" not in value:
            raise argparse.ArgumentTypeError(f"Parameter must be KEY=VALUE: {value}")
        key, val = value.split("=", 1)
        params[key.strip()] = val
    return params


def print_result(result: RunResult) -> None:
    table = Table(title=f"{result.pipeline} #{result.build_number}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Steps", justify="right")
    table.add_column("Detail")

    for stage in result.stages.values():
        style = STATUS_STYLES.get(stage.status, "white")
        detail = stage.reason or ""
        if stage.rollout:
            detail = f"rollout {stage.rollout['state']}" + (f": {detail}" if detail else "")
        table.add_row(
            stage.name,
            f"[{style}]{stage.status.value}[/{style}]",
            str(len(stage.steps)),
            detail,
        )

    console.print(table)
    for condition, steps in result.post.items():
        failed = [s for s in steps if not s.success]
        marker = "[red]failed[/red]" if failed else "[green]ok[/green]"
        console.print(f"post/{condition}: {len(steps)} step(s) {marker}")

    colour = {
        RunStatus.SUCCESS: "green",
        RunStatus.UNSTABLE: "yellow",
    }.get(result.status, "red")
    console.print(f"\n[bold {colour}]Result: {result.status.value.upper()}[/bold {colour}]")


def cmd_validate(args) -> int:
    try:
        pipeline = load_pipeline(args.file)
    except (PipelineValidationError, OSError) as e:
        console.print(f"[red]Invalid pipeline:[/red] {e}")
        return 1
    console.print(
        f"[green]Pipeline '{pipeline.name}' is valid[/green] ({len(pipeline.stages)} stages)"
    )
    return 0


def cmd_graph(args) -> int:
    try:
        pipeline = load_pipeline(args.file)
    except (PipelineValidationError, OSError) as e:
        console.print(f"[red]Invalid pipeline:[/red] {e}")
        return 1

    graph = StageGraph(pipeline.stages, pipeline.groups)
    table = Table(title=f"{pipeline.name} stage graph")
    table.add_column("Level", justify="right")
    table.add_column("Stages (run concurrently)", style="cyan")
    for level, stages in enumerate(graph.layers(), start=1):
        table.add_row(str(level), ", ".join(stages))
    console.print(table)
    return 0


async def _run_local(args) -> RunResult:
    params = parse_params(args.param)
    pipeline = load_pipeline(args.file)
    workspace = args.workspace or os.getcwd()
    tool_runner = ToolRunner(workspace=workspace, default_timeout=args.step_timeout)
    kubectl = KubectlClient(
        tool_runner,
        kubectl_bin=os.getenv("KUBECTL_BIN", "kubectl"),
        base_args=["--context", args.context] if args.context else None,
        context=args.context,
    )
    coordinator = RolloutCoordinator(kubectl, HealthChecker(), manifest_root=workspace)
    runner = PipelineRunner(tool_runner, coordinator, max_parallel_stages=args.max_parallel)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    async def on_stage_update(stage):
        if stage.status == StageStatus.RUNNING:
            console.print(f"[blue]>[/blue] {stage.name}")

    return await runner.run(
        pipeline,
        build_number=args.build_number,
        params=params,
        branch=args.branch,
        cancel_event=cancel_event,
        on_stage_update=on_stage_update,
    )


def cmd_run(args) -> int:
    try:
        result = asyncio.run(_run_local(args))
    except (PipelineValidationError, OSError) as e:
        console.print(f"[red]Cannot run pipeline:[/red] {e}")
        return 1
    print_result(result)
    return 0 if result.status in (RunStatus.SUCCESS, RunStatus.UNSTABLE) else 1


def cmd_serve(args) -> int:
    if args.port:
        os.environ["API_PORT"] = str(args.port)
    from shipyard.main import main as serve

    serve()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", description="Pipeline runner and rollout coordinator")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"))
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Validate a pipeline file")
    validate.add_argument("file")
    validate.set_defaults(func=cmd_validate)

    graph = sub.add_parser("graph", help="Show the stage graph")
    graph.add_argument("file")
    graph.set_defaults(func=cmd_graph)

    run = sub.add_parser("run", help="Run a pipeline locally")
    run.add_argument("file")
    run.add_argument("--branch", default=None)
    run.add_argument("--param", "-p", action="append", metavar="KEY=VALUE")
    run.add_argument("--workspace", default=None)
    run.add_argument("--build-number", type=int, default=1)
    run.add_argument("--max-parallel", type=int, default=4)
    run.add_argument("--step-timeout", type=int, default=600)
    run.add_argument("--context", default=os.getenv("KUBE_CONTEXT"))
    run.set_defaults(func=cmd_run)

    serve = sub.add_parser("serve", help="Start the API server")
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=cmd_serve)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, parse_module_levels(os.getenv("LOG_LEVELS")))
    try:
        return args.func(args)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
