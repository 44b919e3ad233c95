import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from lifecycle_hooks import __version__
from lifecycle_hooks.hook_engine import EventKind, HookEngine, Scope
from lifecycle_hooks.hook_engine.engine import validate_config_file
from lifecycle_hooks.hook_sources import load_hooks_file, load_scoped_configs

logger = logging.getLogger(__name__)


def build_engine(project_dir: Optional[str] = None) -> HookEngine:
    """An engine loaded with every configured scope, skipping invalid hooks."""
    engine = HookEngine(strict_validation=False)
    engine.load_scopes(load_scoped_configs(project_dir))
    return engine


def _cmd_validate(args: argparse.Namespace, console: Console) -> int:
    if args.file:
        sources = {args.file: load_hooks_file(Path(args.file), allow_bare=True)}
    else:
        sources = {
            scope.value: config
            for scope, config in load_scoped_configs(args.project_dir).items()
        }

    if not sources:
        console.print("No hooks configured.")
        return 0

    all_valid = True
    for source, config in sources.items():
        report = validate_config_file(config)
        all_valid = all_valid and report.startswith("✓")
        console.print(f"[bold]{source}[/bold]")
        console.print(report, markup=False)
    return 0 if all_valid else 1


def _cmd_list(args: argparse.Namespace, console: Console) -> int:
    engine = build_engine(args.project_dir)
    if engine.count_hooks() == 0:
        console.print("No hooks configured.")
        return 0

    table = Table(title="Registered hooks")
    table.add_column("Event")
    table.add_column("Scope")
    table.add_column("Matcher")
    table.add_column("Type")
    table.add_column("Target", overflow="fold")
    table.add_column("Timeout")
    table.add_column("Flags")

    for kind in EventKind:
        for handler in engine.get_hooks_for_event(kind):
            flags = [
                name
                for name, on in (
                    ("async", handler.run_async),
                    ("once", handler.once),
                    ("disabled", not handler.enabled),
                )
                if on
            ]
            scope = handler.scope.value
            if handler.scope is Scope.COMPONENT and handler.owner:
                scope = f"{scope}:{handler.owner}"
            table.add_row(
                kind.value,
                scope,
                handler.matcher or "*",
                handler.type.value,
                handler.target,
                f"{handler.effective_timeout:g}s",
                ", ".join(flags),
            )
    console.print(table)
    return 0


async def _fire(engine: HookEngine, args: argparse.Namespace, payload: dict):
    decision = await engine.process_event(
        args.event,
        payload,
        session_id=args.session_id,
        cwd=args.project_dir,
    )
    await engine.wait_for_background()
    decision.deferred.extend(engine.drain_pending())
    return decision


def _cmd_fire(args: argparse.Namespace, console: Console) -> int:
    try:
        payload = json.loads(args.payload) if args.payload else {}
    except json.JSONDecodeError as e:
        console.print(f"[red]Invalid --payload JSON: {e}[/red]")
        return 1
    if not isinstance(payload, dict):
        console.print("[red]--payload must be a JSON object[/red]")
        return 1

    engine = build_engine(args.project_dir)
    try:
        decision = asyncio.run(_fire(engine, args, payload))
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        return 1

    console.print_json(data=decision.to_dict())
    return 2 if decision.blocked else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lifecycle-hooks",
        description="Inspect, validate and fire lifecycle hooks",
    )
    parser.add_argument("--version", "-v", action="version", version=__version__)
    parser.add_argument(
        "--project-dir",
        "-C",
        type=str,
        default=None,
        help="Project directory holding .claude/settings.json (default: cwd)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Log engine activity to stderr"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    validate = subparsers.add_parser("validate", help="Validate hook configuration")
    validate.add_argument("--file", "-f", type=str, help="Validate a single JSON file")
    validate.set_defaults(func=_cmd_validate)

    listing = subparsers.add_parser("list", help="List registered hooks")
    listing.set_defaults(func=_cmd_list)

    fire = subparsers.add_parser("fire", help="Dispatch one event and print the decision")
    fire.add_argument(
        "event", choices=[kind.value for kind in EventKind], help="Event kind"
    )
    fire.add_argument("--payload", "-p", type=str, help="Event payload as a JSON object")
    fire.add_argument("--session-id", type=str, default="cli-session")
    fire.set_defaults(func=_cmd_fire)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    # stdout is reserved for command output
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    console = Console()
    return args.func(args, console)


def main_entry():
    sys.exit(main())
