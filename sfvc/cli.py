"""
sfvc.cli — Command-line interface for Single-File Version Control.

Usage:
    sfvc add -m "message" [--base N] FILE    Commit FILE's content as a new version
    sfvc commits [FILE]                       List versions (of FILE, or of every file)
    sfvc tree [FILE]                          Show the version forest
    sfvc cat FILE N                           Write version N of FILE to stdout
    sfvc diff FILE --from A --to B            Unified diff (0 = file on disk)
    sfvc list                                 List tracked files and their signatures

Every file is identified by its absolute path.  All versions live in a single
store directory: $SFVC_HOME, or <user cache dir>/sfvc.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from sfvc import __version__
from sfvc.core.errors import SfvcError
from sfvc.core.models import SfvcConfig, format_timestamp, format_version
from sfvc.core.tree import TreeNode, VersionTree
from sfvc.operations.engine import SfvcEngine

console = Console()
err_console = Console(stderr=True)


def _setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(name)s] %(levelname)s — %(message)s",
        datefmt="%H:%M:%S",
    )


@contextmanager
def _failures() -> Iterator[None]:
    """Report a failed operation and exit non-zero."""
    try:
        yield
    except SfvcError as exc:
        err_console.print(f"[red]✗[/red] {exc.kind}: {escape(str(exc))}")
        sys.exit(1)
    except OSError as exc:
        err_console.print(f"[red]✗[/red] io failure: {escape(str(exc))}")
        sys.exit(1)


def _get_config(ctx: click.Context) -> SfvcConfig:
    opts = ctx.find_root().obj or {}
    return SfvcConfig.for_user(
        store_dir=opts.get("store"),
        strict_load=opts.get("strict", True),
    )


def _get_engine(ctx: click.Context) -> SfvcEngine:
    return SfvcEngine.open(_get_config(ctx))


@click.group()
@click.version_option(__version__, prog_name="sfvc")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option(
    "--store",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Store directory (default: $SFVC_HOME or the user cache dir).",
)
@click.option(
    "--skip-malformed",
    is_flag=True,
    help="Skip malformed index lines instead of aborting.",
)
@click.pass_context
def main(ctx: click.Context, verbose: bool, store: Path | None, skip_malformed: bool) -> None:
    """SFVC — version control for single files, without repositories."""
    _setup_logging(verbose)
    ctx.obj = {"store": store, "strict": not skip_malformed}


# ---------------------------------------------------------------------------
# add
# ---------------------------------------------------------------------------

@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("-m", "--message", required=True, help="Small description of the change.")
@click.option("-b", "--base", "based_on", default=0, type=int, help="Parent version (0 = none).")
@click.pass_context
def add(ctx: click.Context, file: str, message: str, based_on: int) -> None:
    """Commit the current content of FILE as a new version."""
    with _failures():
        engine = _get_engine(ctx)
        record = engine.commit(file, based_on=based_on, message=message)

    base = f" (based on {format_version(record.based_on)})" if record.based_on else ""
    console.print(f"[green]✓[/green] Committed {escape(record.path)} @{record.label}{base}")


# ---------------------------------------------------------------------------
# commits
# ---------------------------------------------------------------------------

@main.command()
@click.argument("file", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def commits(ctx: click.Context, file: str | None) -> None:
    """List the versions of FILE, or of every tracked file."""
    with _failures():
        records = _get_engine(ctx).history(file)

    if not records:
        console.print("[dim]No versions recorded.[/dim]")
        return

    table = Table(title="Versions")
    table.add_column("Version", style="yellow", no_wrap=True)
    table.add_column("Base", style="dim", no_wrap=True)
    table.add_column("Time", no_wrap=True)
    table.add_column("Description")
    table.add_column("Path", style="cyan")
    for r in records:
        table.add_row(
            r.label,
            format_version(r.based_on),
            format_timestamp(r.timestamp),
            escape(r.description),
            escape(r.path),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# tree
# ---------------------------------------------------------------------------

def _node_label(node: TreeNode) -> str:
    r = node.record
    label = f"[yellow]{r.label}[/yellow]  {format_timestamp(r.timestamp)}  {escape(r.description)}"
    if node.orphan:
        label += f"  [red](missing base {format_version(r.based_on)})[/red]"
    return label


def _add_subtree(branch: Tree, vtree: VersionTree, node: TreeNode) -> None:
    child = branch.add(_node_label(node))
    for sub in vtree.children(node):
        _add_subtree(child, vtree, sub)


@main.command()
@click.argument("file", required=False, type=click.Path(dir_okay=False))
@click.pass_context
def tree(ctx: click.Context, file: str | None) -> None:
    """Show the version tree of FILE, or of every tracked file."""
    with _failures():
        vtree = _get_engine(ctx).tree(file)

    if not len(vtree):
        console.print("[dim]No versions recorded.[/dim]")
        return

    view = Tree("versions", hide_root=True)
    for path in vtree.paths():
        branch = view.add(f"[bold cyan]{escape(path)}[/bold cyan]")
        for root in vtree.roots_for(path):
            _add_subtree(branch, vtree, root)
    console.print(view)


# ---------------------------------------------------------------------------
# cat
# ---------------------------------------------------------------------------

@main.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.argument("version", type=click.IntRange(min=1))
@click.pass_context
def cat(ctx: click.Context, file: str, version: int) -> None:
    """Write the content of VERSION of FILE to standard output."""
    with _failures():
        data = _get_engine(ctx).extract(file, version)
    out = click.get_binary_stream("stdout")
    out.write(data)
    out.flush()


# ---------------------------------------------------------------------------
# diff
# ---------------------------------------------------------------------------

@main.command()
@click.argument("file", type=click.Path(dir_okay=False))
@click.option("--from", "from_version", default=0, type=click.IntRange(min=0),
              help="Version to diff from (0 = file on disk).")
@click.option("--to", "to_version", default=0, type=click.IntRange(min=0),
              help="Version to diff to (0 = file on disk).")
@click.pass_context
def diff(ctx: click.Context, file: str, from_version: int, to_version: int) -> None:
    """Show a unified diff between two versions of FILE."""
    with _failures():
        output = _get_engine(ctx).diff(file, from_version, to_version)
    out = click.get_binary_stream("stdout")
    out.write(output)
    out.flush()


# ---------------------------------------------------------------------------
# list
# ---------------------------------------------------------------------------

@main.command("list")
@click.pass_context
def list_files(ctx: click.Context) -> None:
    """List tracked files with their path signatures."""
    with _failures():
        tracked = _get_engine(ctx).list_tracked()

    if not tracked:
        console.print("[dim]No tracked files.[/dim]")
        return

    table = Table(title="Tracked files")
    table.add_column("Path", style="cyan")
    table.add_column("Signature", style="dim", no_wrap=True, min_width=40)
    for t in tracked:
        table.add_row(escape(t.path), t.path_signature)
    console.print(table)


if __name__ == "__main__":
    main()
