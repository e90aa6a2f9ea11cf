# === NAVMAP v1 ===
# {
#   "module": "Detonater.cli",
#   "purpose": "Typer CLI exposing the file and folder recompression modes",
#   "sections": [
#     {"id": "clicontext", "name": "CliContext", "anchor": "class-clicontext", "kind": "class"},
#     {"id": "get-context", "name": "get_context", "anchor": "function-get-context", "kind": "function"},
#     {"id": "main-callback", "name": "main_callback", "anchor": "function-main-callback", "kind": "function"},
#     {"id": "file-cmd", "name": "file_cmd", "anchor": "function-file-cmd", "kind": "function"},
#     {"id": "folder-cmd", "name": "folder_cmd", "anchor": "function-folder-cmd", "kind": "function"},
#     {"id": "main", "name": "main", "anchor": "function-main", "kind": "function"}
#   ]
# }
# === /NAVMAP ===

"""Command-line interface for Detonater.

Global options apply to both subcommands and go before them::

    detonater file path/to/mod.jar
    detonater -o out --workers 4 folder path/to/mods
    detonater --no-optimize -vv file mod.jar

Results land in the output directory (``detonatedmods`` by default) under the
input's base name. A summary table lists sizes before and after.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .batch import BatchOutcome, discover_archives, run_batch
from .errors import UserConfigError
from .io.filesystem import format_bytes
from .logging_utils import setup_logging
from .optimizer import ImageOptimizer, NullOptimizer
from .settings import DetonaterSettings, build_settings, load_config

__all__ = ["app", "CliContext", "get_context", "main"]

_console = Console()


class CliContext:
    """Shared state for one CLI invocation: settings, console, and flags."""

    def __init__(
        self,
        settings: DetonaterSettings,
        *,
        verbosity: int = 0,
        optimize: bool = True,
        console: Optional[Console] = None,
    ) -> None:
        self.settings = settings
        self.verbosity = verbosity
        self.optimize = optimize
        self.console = console or _console

    def optimizer(self) -> Optional[ImageOptimizer]:
        """Return an optimiser override, or ``None`` to build one from settings."""
        return None if self.optimize else NullOptimizer()


app = typer.Typer(
    name="detonater",
    help="Detonater - recompress JAR/ZIP archives for minimum size",
    no_args_is_help=True,
)

_context: Optional[CliContext] = None


def get_context() -> CliContext:
    """Return the current CLI context.

    Raises:
        RuntimeError: If the callback has not run yet.
    """
    if _context is None:
        raise RuntimeError("CLI context not initialized")
    return _context


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"detonater {__version__}")
        raise typer.Exit(0)


def _resolve_settings(
    config: Optional[Path],
    *,
    output_dir: Optional[Path],
    workers: Optional[int],
    keep_scratch: bool,
) -> DetonaterSettings:
    settings = load_config(config) if config is not None else build_settings({})
    scratch = None
    if keep_scratch:
        scratch = {**settings.scratch.model_dump(), "keep": True}
    return settings.with_overrides(output_dir=output_dir, workers=workers, scratch=scratch)


@app.callback()
def main_callback(
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="DETONATER_CONFIG",
        help="Path to config file (YAML or JSON)",
    ),
    output_dir: Optional[Path] = typer.Option(
        None,
        "--output-dir",
        "-o",
        help="Directory receiving recompressed archives [default: detonatedmods]",
    ),
    workers: Optional[int] = typer.Option(
        None,
        "--workers",
        "-w",
        min=1,
        help="Archives processed in parallel in folder mode",
    ),
    no_optimize: bool = typer.Option(
        False,
        "--no-optimize",
        help="Skip the external PNG optimiser",
    ),
    keep_scratch: bool = typer.Option(
        False,
        "--keep-scratch",
        help="Keep the scratch directory after the run",
    ),
    verbosity: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase verbosity (-v for INFO, -vv for DEBUG)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Detonater - recompress JAR/ZIP archives for minimum size."""
    global _context

    try:
        settings = _resolve_settings(
            config,
            output_dir=output_dir,
            workers=workers,
            keep_scratch=keep_scratch,
        )
    except UserConfigError as exc:
        _console.print(f"[red]Error loading settings: {escape(str(exc))}[/red]")
        raise typer.Exit(2)

    level = settings.logging.level
    if verbosity >= 2:
        level = "DEBUG"
    elif verbosity == 1 and level not in {"DEBUG", "INFO"}:
        level = "INFO"
    setup_logging(
        level=level,
        retention_days=settings.logging.retention_days,
        max_log_size_mb=settings.logging.max_log_size_mb,
        log_dir=settings.logging.log_dir,
        emit_json_logs=settings.logging.emit_json_logs,
    )

    _context = CliContext(settings, verbosity=verbosity, optimize=not no_optimize)


def _render_summary(ctx: CliContext, outcomes: List[BatchOutcome]) -> None:
    table = Table(title="Detonater")
    table.add_column("Archive")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right")
    table.add_column("Saved", justify="right")
    table.add_column("Status")
    for outcome in outcomes:
        if outcome.ok:
            table.add_row(
                outcome.source.name,
                format_bytes(outcome.source_size),
                format_bytes(outcome.output_size),
                format_bytes(outcome.saved_bytes),
                "[green]ok[/green]",
            )
        else:
            error = escape(outcome.error or "")
            table.add_row(outcome.source.name, "-", "-", "-", f"[red]{error}[/red]")
    ctx.console.print(table)


def _run(ctx: CliContext, sources: List[Path]) -> None:
    outcomes = run_batch(sources, ctx.settings, optimizer=ctx.optimizer())
    _render_summary(ctx, outcomes)
    failures = [outcome for outcome in outcomes if not outcome.ok]
    if failures:
        ctx.console.print(f"[red]{len(failures)} of {len(outcomes)} archive(s) failed[/red]")
        raise typer.Exit(1)


@app.command("file")
def file_cmd(
    path: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        readable=True,
        resolve_path=True,
        help="Archive to recompress",
    ),
) -> None:
    """Recompress a single archive.

    Example:
        $ detonater file mods/example.jar
    """
    ctx = get_context()
    _run(ctx, [path])


@app.command("folder")
def folder_cmd(
    path: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=False,
        resolve_path=True,
        help="Directory whose archives are recompressed",
    ),
) -> None:
    """Recompress every archive directly inside a directory.

    Example:
        $ detonater --workers 4 folder mods/
    """
    ctx = get_context()
    sources = discover_archives(path, ctx.settings.recompression.archive_suffixes)
    if not sources:
        ctx.console.print(f"[yellow]No archives found in {path}[/yellow]")
        return
    _run(ctx, sources)


def main() -> None:
    """Console-script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
