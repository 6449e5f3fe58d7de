"""High level command routines wiring configuration, builds, watching and deployment."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .builder import BuildError, Builder
from .compilers import Compilers
from .config import ConfigStore
from .deploy import DeploymentManager, FtpTransport, Transport
from .devserver import DEFAULT_PORT, LiveReloadServer, ReloadTransport, find_available_port, local_addresses
from .models import BuildResult, PipelineState, ProjectLayout
from .pages import scaffold_component, sync_pages_manifest
from .reporting import (
    render_auto_deploy,
    render_build_stats,
    render_ready,
    render_shortcuts,
    render_watch_status,
)
from .session import SessionController, TerminalInput
from .tasks import SiteTasks
from .watcher import FileWatcher, WatchDispatcher

DEPLOY_ACTIONS = {
    "deployStyles": "styles",
    "deployScripts": "scripts",
    "deployImages": "images",
    "deployFonts": "fonts",
    "deployAll": "all",
}


@dataclass
class Pipeline:
    layout: ProjectLayout
    store: ConfigStore
    state: PipelineState
    compilers: Compilers
    tasks: SiteTasks
    builder: Builder


def create_pipeline(root: Path, *, compilers: Compilers | None = None) -> Pipeline:
    """Load configuration for the project at ``root`` and assemble the build stack."""

    layout = ProjectLayout(root.resolve())
    store = ConfigStore.load(layout)
    state = PipelineState()
    compilers = compilers or Compilers(layout.root)
    tasks = SiteTasks(layout, store, state, compilers)
    return Pipeline(layout, store, state, compilers, tasks, Builder(tasks, state))


async def run_core(root: Path, *, compilers: Compilers | None = None) -> BuildResult:
    pipeline = create_pipeline(root, compilers=compilers)
    result = await pipeline.builder.run_core_build()
    logger.info("Core assets built in {}ms", result.duration_ms)
    return result


async def run_build(root: Path, *, compilers: Compilers | None = None, show_stats: bool = True) -> BuildResult:
    pipeline = create_pipeline(root, compilers=compilers)
    result = await pipeline.builder.run_build()
    if show_stats:
        render_build_stats(result.stats)
    return result


def run_pages(root: Path) -> int:
    layout = ProjectLayout(root.resolve())
    added = sync_pages_manifest(layout)
    if added:
        logger.info("Added {} new page(s) to {}", added, layout.pages_manifest.name)
    else:
        logger.info("{} is up to date", layout.pages_manifest.name)
    return added


def run_new(root: Path, name: str, *, layout_kind: str = "single", sections: int = 1) -> List[Path]:
    layout = ProjectLayout(root.resolve())
    created = scaffold_component(layout, name, layout_kind=layout_kind, sections=sections)
    for path in created:
        logger.info("Created {}", path.relative_to(layout.root))
    return created


def build_actions(
    builder: Builder,
    deployer: DeploymentManager,
    state: PipelineState,
    reload: ReloadTransport,
) -> Dict[str, Callable[[], Any]]:
    """Map shortcut action names to callables for the session controller."""

    async def build() -> None:
        result = await builder.run_build()
        render_build_stats(result.stats)
        reload.reload("all")

    def toggle_auto_deploy() -> None:
        render_auto_deploy(state.toggle_auto_deploy())

    actions: Dict[str, Callable[[], Any]] = {"build": build, "toggleAutoDeploy": toggle_auto_deploy}
    for action, mapping in DEPLOY_ACTIONS.items():
        actions[action] = lambda mapping=mapping: deployer.deploy(mapping)
    return actions


async def run_serve(
    root: Path,
    *,
    compilers: Compilers | None = None,
    port: Optional[int] = None,
    verbose: bool = False,
    interactive: bool = True,
    transport_factory: Callable[[], Transport] = FtpTransport,
) -> int:
    """Build, serve ``dist`` with live reload and watch sources until shutdown."""

    loop = asyncio.get_running_loop()
    pipeline = create_pipeline(root, compilers=compilers)
    layout, store, state, builder = pipeline.layout, pipeline.store, pipeline.state, pipeline.builder

    build_ms: Optional[int] = None
    try:
        result = await builder.run_build()
    except BuildError as exc:
        logger.opt(exception=exc if verbose else None).error("Initial build failed: {}", exc)
    else:
        build_ms = result.duration_ms
        render_build_stats(result.stats)

    server = LiveReloadServer(layout.dist, find_available_port(port or DEFAULT_PORT))
    server.start()
    deployer = DeploymentManager(layout, store, state, transport_factory)
    dispatcher = WatchDispatcher(builder, deployer, state, store, server, verbose=verbose)
    watcher = FileWatcher(layout, dispatcher, loop)
    watcher.start()

    render_ready(build_ms, local_addresses(server.port))
    render_watch_status(state.auto_deploy, deploy_enabled=deployer.enabled)

    shortcuts = store.deploy.shortcuts if store.deploy else {}
    if not deployer.enabled:
        logger.warning("FTP config not loaded. Keyboard shortcuts for deployment disabled.")
    render_shortcuts(shortcuts)

    session = SessionController(
        state,
        build_actions(builder, deployer, state, server),
        shortcuts,
        cleanup=[dispatcher.cancel_pending, watcher.stop, server.stop],
        verbose=verbose,
    )
    session.start(loop, TerminalInput(session.handle_key) if interactive else None)
    await session.wait_terminated()
    return 0


__all__ = [
    "Pipeline",
    "build_actions",
    "create_pipeline",
    "run_build",
    "run_core",
    "run_new",
    "run_pages",
    "run_serve",
]
