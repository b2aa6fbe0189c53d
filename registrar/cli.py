from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.table import Table

from .core.config import get_settings
from .core.logging import configure_logging, level_from_name
from .core.storage import StorageRequestError
from .domain import ItemState, ValidationError
from .ingest.thumbnails import ffmpeg_available
from .services.queue import ItemTransition
from .workers.tasks import list_anchors, list_orphans, load_items, run_local_batch

console = Console()

_STATE_STYLE = {
    ItemState.queued: "dim",
    ItemState.classifying_uploading: "cyan",
    ItemState.reconciling: "blue",
    ItemState.complete: "green",
    ItemState.failed: "red",
}


def main(argv: Optional[list[str]] = None) -> None:
    """The main entry point for the CLI.

    Args:
        argv: The command-line arguments.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    if getattr(args, "check", False):
        _run_environment_check()
        return

    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    configure_logging(level=level_from_name(settings.log_level), json=False)
    args.func(args)


def _build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the CLI.

    Returns:
        The argument parser.
    """
    parser = argparse.ArgumentParser(description="Registrar media ingestion CLI")
    parser.add_argument("--check", action="store_true", help="Report ffmpeg and provider configuration")

    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Classify, upload and archive media files")
    ingest_parser.add_argument("files", nargs="+", help="Image or video files to ingest")
    ingest_parser.add_argument("--agent", default=None, help="Assign every file to this agent")
    ingest_parser.add_argument("--slot", type=int, default=None, help="Assign every file to this identity slot")
    ingest_parser.set_defaults(func=_cmd_ingest)

    anchors_parser = subparsers.add_parser("anchors", help="List the identity anchors of an agent")
    anchors_parser.add_argument("agent", help="Agent whose slots to list")
    anchors_parser.set_defaults(func=_cmd_anchors)

    orphans_parser = subparsers.add_parser("orphans", help="List provisional uploads that were never reconciled")
    orphans_parser.set_defaults(func=_cmd_orphans)
    return parser


def _print_transition(transition: ItemTransition) -> None:
    style = _STATE_STYLE[transition.state]
    line = f"[{style}]{transition.state.value:>9}[/] {transition.item_id[:8]} {transition.message}"
    if transition.error:
        line += f" [red]({transition.error_kind})[/]"
    console.print(line)


def _cmd_ingest(args: argparse.Namespace) -> None:
    """Run the given files through the pipeline as one batch.

    Args:
        args: The command-line arguments.
    """
    paths = [Path(name).expanduser().resolve() for name in args.files]
    missing = [path for path in paths if not path.is_file()]
    if missing:
        for path in missing:
            console.print(f"[red]File not found: {path}[/]")
        sys.exit(2)

    items = load_items(paths, override_agent=args.agent, override_slot=args.slot)
    try:
        state = run_local_batch(items, on_transition=_print_transition)
    except ValidationError as exc:
        console.print(f"[red]Batch rejected:[/] {exc.message}")
        sys.exit(2)

    console.rule("[bold]Activity log")
    for line in state.log:
        console.print(line, markup=False)

    counts = state.counts()
    metrics = state.metrics
    console.print(
        f"[green]{counts[ItemState.complete.value]} archived[/], "
        f"[red]{counts[ItemState.failed.value]} failed[/] "
        f"in {metrics.elapsed_s:.1f}s ({metrics.throughput_bps / 1024:.1f} KiB/s)"
    )
    if counts[ItemState.failed.value]:
        sys.exit(1)


def _cmd_anchors(args: argparse.Namespace) -> None:
    """Print the slot table of one agent.

    Args:
        args: The command-line arguments.
    """
    try:
        anchors = list_anchors(args.agent)
    except ValidationError as exc:
        console.print(f"[red]{exc.message}[/]")
        sys.exit(2)

    table = Table(title=f"Identity anchors: {args.agent}")
    table.add_column("Slot", justify="right")
    table.add_column("Public id")
    table.add_column("Kind")
    table.add_column("Tags")
    for asset in anchors:
        table.add_row(str(asset.identity_slot), asset.public_id, asset.resource_kind.value, ", ".join(asset.tags or []))
    console.print(table)


def _cmd_orphans(args: argparse.Namespace) -> None:
    """Print provisional keys still present in the object store.

    Args:
        args: The command-line arguments.
    """
    try:
        keys = list_orphans()
    except StorageRequestError as exc:
        console.print(f"[red]Storage listing failed:[/] {exc}")
        sys.exit(3)

    if not keys:
        console.print("[green]No orphaned provisional objects.[/]")
        return
    for key in keys:
        console.print(key, markup=False)
    console.print(f"[yellow]{len(keys)} orphaned provisional object(s).[/]")


def _run_environment_check() -> None:
    """Check for the presence of required external dependencies."""
    settings = get_settings()
    results = {
        "ffmpeg": ffmpeg_available(),
        f"storage ({settings.storage_backend})": settings.storage_configured,
        f"classifier ({settings.classifier_backend})": settings.classifier_configured,
    }

    console.rule("[bold]Environment Check")
    for label, ok in results.items():
        console.print(f"[bold]{label}[/]: {'✅' if ok else '❌'}")

    if not all(results.values()):
        console.print("[red]Missing dependencies detected. Check the REGISTRAR_ settings and that ffmpeg is on PATH.[/]")
        sys.exit(1)
    console.print("[green]Environment looks good![/]")


if __name__ == "__main__":
    main()
