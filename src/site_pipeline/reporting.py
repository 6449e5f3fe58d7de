"""Console reporting for builds, the dev server and deployments."""

from __future__ import annotations

from datetime import datetime
from typing import Mapping, Sequence

from rich.console import Console, Group
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .config import ShortcutConfig
from .models import BuildStats

console = Console(highlight=False)
_quiet = False

_SIZE_UNITS = ("B", "KB", "MB", "GB")
_BAR_WIDTH = 12


def set_quiet(value: bool) -> None:
    """Suppress panels and banners; log output is filtered by level instead."""

    global _quiet
    _quiet = value


def format_file_size(size: int) -> str:
    """Human readable size with one decimal, e.g. ``1.5 KB``."""

    if size <= 0:
        return "0 B"
    exponent = 0
    value = float(size)
    while value >= 1024 and exponent < len(_SIZE_UNITS) - 1:
        value /= 1024
        exponent += 1
    text = f"{round(value, 1):.1f}".rstrip("0").rstrip(".")
    return f"{text} {_SIZE_UNITS[exponent]}"


def _bar(share: float) -> Text:
    filled = max(1, min(_BAR_WIDTH, int(share * 100 * 0.15)))
    bar = Text("█" * filled, style="cyan")
    bar.append("░" * (_BAR_WIDTH - filled), style="grey50")
    return bar


def slowest_tasks(stats: BuildStats, limit: int = 4) -> Sequence[tuple[str, int]]:
    return sorted(stats.tasks.items(), key=lambda item: item[1], reverse=True)[:limit]


def render_build_stats(stats: BuildStats, target: Console | None = None) -> None:
    """Print the performance panel for the last build."""

    if not stats.tasks or _quiet:
        return
    out = target or console
    total = max(stats.duration_ms, 1)
    finished = (stats.finished_at or datetime.now()).strftime("%H:%M:%S")

    table = Table.grid(padding=(0, 1))
    table.add_column(no_wrap=True)
    table.add_column()
    table.add_column(justify="right", style="yellow")
    table.add_column(style="grey50")
    for name, elapsed in slowest_tasks(stats):
        share = elapsed / total
        table.add_row(name[:14], _bar(share), f"{elapsed}ms", f"({share * 100:.1f}%)")

    header = Text.assemble(
        ("✓ Build Completed\n\n", "green"),
        ("time: ", "bold"),
        (f"{stats.duration_ms}ms\n", "yellow"),
        ("finished: ", "bold"),
        (f"{finished}\n\n", "grey50"),
        ("⚡ Performance", "bold"),
    )
    out.print(Panel(Group(header, table), title="Performance", border_style="cyan", expand=False))


def render_ready(build_ms: int | None, urls: Mapping[str, str] | None = None, target: Console | None = None) -> None:
    if _quiet and not urls:
        return
    out = target or console
    body = Text("✓ Development Ready", style="green")
    if urls:
        body.append("\n\n🌍 Access URLs:", style="bold")
        for label, url in urls.items():
            body.append(f"\n{label}: ")
            body.append(url, style="cyan")
    if build_ms is not None:
        body.append("\n\nbuilt in ")
        body.append(f"{build_ms}ms", style="grey50")
    out.print(Panel(body, title="Server" if urls else None, border_style="green", expand=False))


def render_watch_status(auto_deploy: bool, *, deploy_enabled: bool = True, target: Console | None = None) -> None:
    if _quiet:
        return
    out = target or console
    out.print(
        Panel(
            "[blue]🔍 Watch[/blue] monitoring files for changes\n[grey50]press[/grey50] [cyan]ctrl+c[/cyan] [grey50]to exit[/grey50]",
            border_style="blue",
            expand=False,
        )
    )
    if deploy_enabled:
        render_auto_deploy(auto_deploy, boxed=True, target=out)


def render_auto_deploy(enabled: bool, *, boxed: bool = False, target: Console | None = None) -> None:
    if _quiet:
        return
    out = target or console
    status = "[green]on[/green]" if enabled else "[red]off[/red]"
    if boxed:
        out.print(
            Panel(
                f"[cyan]🚀 Deploy[/cyan] auto-deploy: {status}",
                title="AUTO-DEPLOY" if enabled else "MANUAL-DEPLOY",
                border_style="green" if enabled else "red",
                expand=False,
            )
        )
        return
    mark = "[green]ON ✓[/green]" if enabled else "[red]OFF ✗[/red]"
    out.print(f"[cyan]🚀[/cyan] Auto-Deploy: {mark}")


def render_shortcuts(shortcuts: Mapping[str, ShortcutConfig], target: Console | None = None) -> None:
    if not shortcuts or _quiet:
        return
    out = target or console
    table = Table.grid(padding=(0, 1))
    table.add_column(no_wrap=True)
    table.add_column()
    for key, shortcut in shortcuts.items():
        table.add_row(Text(f" {key.upper()} ", style="black on white"), shortcut.description or shortcut.action)
    out.print(Panel(table, title="Keyboard Shortcuts", border_style="yellow", expand=False))


__all__ = [
    "console",
    "format_file_size",
    "render_auto_deploy",
    "render_build_stats",
    "render_ready",
    "render_shortcuts",
    "render_watch_status",
    "set_quiet",
    "slowest_tasks",
]
