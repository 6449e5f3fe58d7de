"""Typer-based CLI for the site pipeline."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer
from loguru import logger

from .builder import BuildError
from .compilers import CompileError
from .config import ConfigError
from .pages import LAYOUT_KINDS
from .pipeline import run_build, run_core, run_new, run_pages, run_serve
from .reporting import console, set_quiet

app = typer.Typer(help="Build, serve and deploy a static website project.")


@dataclass(slots=True)
class CliOptions:
    root: Path = Path(".")
    verbose: bool = False


def _options(ctx: typer.Context) -> CliOptions:
    return ctx.obj if isinstance(ctx.obj, CliOptions) else CliOptions()


def _console_sink(message: str) -> None:
    console.print(message.rstrip("\n"), markup=False, highlight=False)


def _configure_logging(level: str, log_file: Path | None) -> None:
    logger.remove()
    logger.add(_console_sink, level=level, format="{message}", colorize=False)
    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(log_file, level="DEBUG")


def _fail(exc: Exception, verbose: bool) -> None:
    stage = getattr(exc, "stage", None) or "config"
    logger.opt(exception=exc if verbose else None).error("{}: {}", stage, exc)
    raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    root: Path = typer.Option(Path("."), "--root", file_okay=False, dir_okay=True, help="Website project root"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Only show warnings and errors"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show per-file and per-task detail"),
    log_file: Optional[Path] = typer.Option(None, "--log-file", help="Also write a debug log to this file"),
) -> None:
    """Runs ``serve`` when no command is given."""

    level = "DEBUG" if verbose else "WARNING" if quiet else "INFO"
    _configure_logging(level, log_file)
    set_quiet(quiet and not verbose)
    ctx.obj = CliOptions(root=root, verbose=verbose)
    if ctx.invoked_subcommand is None:
        serve(ctx, port=None)


@app.command()
def core(ctx: typer.Context) -> None:
    """Build vendor bundles and copy static assets."""

    options = _options(ctx)
    try:
        asyncio.run(run_core(options.root))
    except (ConfigError, BuildError, CompileError) as exc:
        _fail(exc, options.verbose)


@app.command()
def build(ctx: typer.Context) -> None:
    """Run one full build and exit."""

    options = _options(ctx)
    try:
        asyncio.run(run_build(options.root))
    except (ConfigError, BuildError, CompileError) as exc:
        _fail(exc, options.verbose)


@app.command()
def pages(ctx: typer.Context) -> None:
    """Add page templates missing from pages.json."""

    options = _options(ctx)
    try:
        run_pages(options.root)
    except ConfigError as exc:
        _fail(exc, options.verbose)


@app.command()
def serve(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port", help="Preferred dev server port"),
) -> None:
    """Build, serve with live reload, watch for changes and accept shortcuts."""

    options = _options(ctx)
    try:
        code = asyncio.run(run_serve(options.root, port=port, verbose=options.verbose))
    except ConfigError as exc:
        _fail(exc, options.verbose)
    raise typer.Exit(code=code)


@app.command()
def new(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Component name"),
    layout: str = typer.Option("single", "--layout", help=f"One of: {', '.join(LAYOUT_KINDS)}"),
    sections: int = typer.Option(1, "--sections", min=1, help="Number of sections for --layout sections"),
) -> None:
    """Scaffold a component module and the page that includes it."""

    try:
        run_new(_options(ctx).root, name, layout_kind=layout, sections=sections)
    except (ValueError, FileExistsError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
