"""Command-line entry point for running planning stages.

Usage:
    # Create a project
    ai-toolkit init "Recipe Planner" --description "Plan weekly meals from a pantry list"

    # Run the first stage, streaming output as it arrives
    ai-toolkit run recipe-planner 1 --stream

    # Progress assessment needs the current status as input
    ai-toolkit run recipe-planner 4 --var current_status="Auth and pantry sync done"

    # Run every stage whose inputs are available
    ai-toolkit run-all recipe-planner
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from .config import Config, load_config, mask_api_key
from .errors import ToolkitError
from .pipeline.orchestrator import RunOptions
from .pipeline.stages import STAGES, get_stage, stage_names
from .project_store import JsonProjectStore
from .runtime import build_runtime

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def parse_vars(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn ``KEY=VALUE`` arguments into a dict."""
    result: Dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{pair}'")
        result[key.strip()] = value
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ai-toolkit",
        description="Run AI-assisted planning stages for a project",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="\n".join(f"  stage {n}: {name}" for n, name in stage_names()),
    )
    parser.add_argument("--config", type=Path, help="Path to a JSON config file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create a new project")
    init.add_argument("name", help="Project name")
    init.add_argument("--description", "-d", default="", help="Short project description")
    init.add_argument("--idea-file", type=Path, help="File with the full project idea")
    init.add_argument("--id", dest="project_id", help="Explicit project id")

    sub.add_parser("list", help="List projects")

    status = sub.add_parser("status", help="Show stage status for a project")
    status.add_argument("project", help="Project id")

    run = sub.add_parser("run", help="Run one stage")
    run.add_argument("project", help="Project id")
    run.add_argument("stage", help="Stage number or key (e.g. 2 or architecture_design)")
    _add_run_options(run)
    run.add_argument("--stream", action="store_true", help="Print output as it is generated")

    run_all = sub.add_parser("run-all", help="Run every stage whose dependencies and inputs are available")
    run_all.add_argument("project", help="Project id")
    run_all.add_argument("--skip-completed", action="store_true", help="Do not re-run completed stages")
    _add_run_options(run_all)

    return parser


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--var", action="append", metavar="KEY=VALUE", help="Template variable override")
    parser.add_argument("--no-cache", action="store_true", help="Bypass the response cache")
    parser.add_argument("--model", help="Override the configured model")
    parser.add_argument("--max-tokens", type=int, help="Maximum tokens to generate")
    parser.add_argument("--temperature", type=float, help="Sampling temperature")


def _run_options(args: argparse.Namespace) -> RunOptions:
    return RunOptions(
        overrides=parse_vars(args.var),
        model=args.model,
        max_tokens=args.max_tokens,
        temperature=args.temperature,
        use_cache=not args.no_cache,
    )


def cmd_init(config: Config, args: argparse.Namespace) -> int:
    store = JsonProjectStore(config.projects_dir)
    idea = args.idea_file.read_text(encoding="utf-8") if args.idea_file else None
    project = store.create_project(
        args.name,
        args.description,
        idea=idea,
        project_id=args.project_id,
        stages=stage_names(),
    )
    print(f"Created project '{project.name}' with id {project.id}")
    print(f"Next: ai-toolkit run {project.id} 1")
    return 0


def cmd_list(config: Config, args: argparse.Namespace) -> int:
    projects = JsonProjectStore(config.projects_dir).list_projects()
    if not projects:
        print("No projects yet. Create one with: ai-toolkit init NAME")
        return 0
    for project in projects:
        done = len(project.completed_stages())
        print(f"{project.id:<30} {project.name:<30} {done}/{len(STAGES)} stages")
    return 0


def cmd_status(config: Config, args: argparse.Namespace) -> int:
    store = JsonProjectStore(config.projects_dir)
    project = store.get_project(args.project)
    print(f"{project.name} ({project.id})")
    if project.description:
        print(f"  {project.description}")
    for definition in STAGES.values():
        record = project.find_stage(definition.id)
        status = record.status.value if record else "pending"
        deps = ", ".join(str(int(d)) for d in definition.dependencies) or "-"
        print(f"  [{status:^9}] {int(definition.id)}. {definition.name} (needs: {deps})")
    return 0


async def _run(config: Config, args: argparse.Namespace) -> int:
    options = _run_options(args)
    runtime = build_runtime(config)
    logger.debug("Using %s with key %s", config.provider.provider, mask_api_key(config.provider.api_key))
    orchestrator = runtime.orchestrator()
    try:
        if args.command == "run-all":
            results = await orchestrator.run_stages(args.project, options=options, skip_completed=args.skip_completed)
            for stage_id, run in results.items():
                note = " (cached)" if run.cached else ""
                print(f"Stage {int(stage_id)} ({STAGES[stage_id].name}) completed{note}")
            return 0

        definition = get_stage(args.stage)
        if args.stream:
            stream = await orchestrator.run_stage_streaming(args.project, definition.id, options)
            async with stream:
                async for chunk in stream:
                    sys.stdout.write(chunk.text)
                    sys.stdout.flush()
            sys.stdout.write("\n")
        else:
            run = await orchestrator.run_stage(args.project, definition.id, options)
            print(run.text)
        return 0
    finally:
        await runtime.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
        configure_logging("DEBUG" if args.verbose else config.log_level)
        if args.command == "init":
            return cmd_init(config, args)
        if args.command == "list":
            return cmd_list(config, args)
        if args.command == "status":
            return cmd_status(config, args)
        return asyncio.run(_run(config, args))
    except ToolkitError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        print(json.dumps(exc.to_dict(), default=str), file=sys.stderr)
        return 1
    except argparse.ArgumentTypeError as exc:
        parser.error(str(exc))
        return 2
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
