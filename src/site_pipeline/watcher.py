"""Source watching and per-category rebuild dispatch."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .builder import BuildError, Builder
from .compilers import CompileError
from .config import ConfigError, ConfigStore
from .deploy import DeploymentManager
from .devserver import ReloadTransport
from .models import IMAGE_EXTENSIONS, PipelineState, ProjectLayout
from .reporting import render_build_stats
from .tasks import STYLE_SUFFIXES, TEMPLATE_SUFFIX

SCRIPTS = "scripts"
TEMPLATES = "templates"
STYLES = "styles"
IMAGES = "images"
CONFIG = "config"
CATEGORIES = (SCRIPTS, TEMPLATES, STYLES, IMAGES, CONFIG)

MODIFIED = "modified"
CREATED = "created"
DELETED = "deleted"

SCRIPT_DEBOUNCE = 0.150
# Writes that land right after an image is created belong to that add.
ADD_SETTLE = 2.0

_LABELS = {
    SCRIPTS: "JS changed",
    TEMPLATES: "Template changed",
    STYLES: "Styles changed",
    IMAGES: "Image changed",
    CONFIG: "Config changed",
}


class WatchDispatcher:
    """Turns file events into rebuilds, reloads and auto-deploys.

    Runs on the event loop. Script changes are debounced and superseded
    triggers are dropped; every other category queues its events behind a
    per-category lock so handlers for the same category never interleave.
    """

    def __init__(
        self,
        builder: Builder,
        deployer: DeploymentManager,
        state: PipelineState,
        store: ConfigStore,
        reload: ReloadTransport,
        *,
        debounce: float = SCRIPT_DEBOUNCE,
        add_settle: float = ADD_SETTLE,
        verbose: bool = False,
    ) -> None:
        self.builder = builder
        self.deployer = deployer
        self.state = state
        self.store = store
        self.reload = reload
        self.debounce = debounce
        self.add_settle = add_settle
        self.verbose = verbose
        self._locks: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in CATEGORIES}
        self._tasks: Set[asyncio.Task] = set()
        self._script_timer: Optional[asyncio.TimerHandle] = None
        self._created: Dict[Path, float] = {}

    def dispatch(self, category: str, kind: str, path: Path) -> None:
        if category == SCRIPTS:
            self._debounce_scripts(path)
            return
        if category == IMAGES:
            kind = self._settle_image_event(kind, path)
        handler = self._handler_for(category, kind, path)
        if handler is None:
            return
        self._spawn(category, path, handler)

    def _settle_image_event(self, kind: str, path: Path) -> str:
        """Fold the write events that follow a create into that create."""

        now = asyncio.get_running_loop().time()
        self._created = {seen: at for seen, at in self._created.items() if now - at < self.add_settle}
        if kind == CREATED:
            self._created[path] = now
        elif kind == DELETED:
            self._created.pop(path, None)
        elif kind == MODIFIED and path in self._created:
            return CREATED
        return kind

    def _debounce_scripts(self, path: Path) -> None:
        if self._script_timer is not None:
            self._script_timer.cancel()
        loop = asyncio.get_running_loop()
        self._script_timer = loop.call_later(self.debounce, self._fire_scripts, path)

    def _fire_scripts(self, path: Path) -> None:
        self._script_timer = None
        self._spawn(SCRIPTS, path, lambda: self._on_scripts(path))

    def _handler_for(self, category: str, kind: str, path: Path) -> Optional[Callable[[], Awaitable[None]]]:
        if category == TEMPLATES:
            return self._on_templates
        if category == STYLES:
            return self._on_styles
        if category == CONFIG:
            return self._on_config
        if category == IMAGES:
            if kind == CREATED:
                return lambda: self.builder.add_image(path)
            if kind == DELETED:
                return lambda: self.builder.remove_image(path)
            return self.builder.refresh_images
        logger.debug("Ignoring event for unknown category {}", category)
        return None

    def _spawn(self, category: str, path: Path, handler: Callable[[], Awaitable[object]]) -> None:
        task = asyncio.get_running_loop().create_task(self._run(category, path, handler))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, category: str, path: Path, handler: Callable[[], Awaitable[object]]) -> None:
        async with self._locks[category]:
            started = time.perf_counter()
            try:
                await handler()
            except (BuildError, CompileError, ConfigError, OSError) as exc:
                elapsed = int((time.perf_counter() - started) * 1000)
                logger.opt(exception=exc if self.verbose else None).error(
                    "{}: {} - ✗ {}ms ({})", _LABELS[category], path.name, elapsed, exc
                )
                return
            elapsed = int((time.perf_counter() - started) * 1000)
            logger.info("{}: {} - {}ms", _LABELS[category], path.name, elapsed)

    async def _on_scripts(self, path: Path) -> None:
        await self.builder.rebuild_scripts()
        self.reload.reload("js")
        await self.deployer.auto_deploy("scripts", path)

    async def _on_templates(self) -> None:
        await self.builder.rebuild_templates()
        self.reload.reload("all")
        await self.deployer.auto_deploy("styles")

    async def _on_styles(self) -> None:
        await self.builder.rebuild_styles()
        self.reload.reload("css")
        await self.deployer.auto_deploy("styles")

    async def _on_config(self) -> None:
        self.store.reload()
        result = await self.builder.run_build()
        render_build_stats(result.stats)
        self.reload.reload("all")

    async def drain(self) -> None:
        """Wait for the pending debounce and every in-flight handler."""

        if self._script_timer is not None:
            remaining = self._script_timer.when() - asyncio.get_running_loop().time()
            await asyncio.sleep(max(remaining, 0) + 0.01)
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def cancel_pending(self) -> None:
        if self._script_timer is not None:
            self._script_timer.cancel()
            self._script_timer = None


def classify(layout: ProjectLayout, path: Path) -> Optional[str]:
    """Category of a changed path, or ``None`` when it is not watched."""

    if path.parent == layout.root and path.name in (layout.build_config.name, layout.pages_manifest.name):
        return CONFIG
    if path.parent == layout.scripts_dir and path.suffix == ".js":
        return SCRIPTS
    if layout.images_dir in path.parents and path.suffix.lstrip(".").lower() in IMAGE_EXTENSIONS:
        return IMAGES
    if layout.components_dir in path.parents and path.suffix in STYLE_SUFFIXES:
        return STYLES
    if layout.src in path.parents and path.name.endswith(TEMPLATE_SUFFIX):
        return TEMPLATES
    return None


class _EventBridge(FileSystemEventHandler):
    """Forwards observer-thread events onto the event loop."""

    def __init__(self, watcher: "FileWatcher") -> None:
        self.watcher = watcher

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.forward(MODIFIED, event.src_path)

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.forward(CREATED, event.src_path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.forward(DELETED, event.src_path)

    def on_moved(self, event: FileSystemEvent) -> None:
        if not event.is_directory:
            self.watcher.forward(DELETED, event.src_path)
            self.watcher.forward(CREATED, event.dest_path)


class FileWatcher:
    """watchdog observer over the project sources and config files."""

    def __init__(self, layout: ProjectLayout, dispatcher: WatchDispatcher, loop: asyncio.AbstractEventLoop) -> None:
        self.layout = layout
        self.dispatcher = dispatcher
        self.loop = loop
        self.observer: Optional[Observer] = None

    def forward(self, kind: str, raw_path: str | bytes) -> None:
        path = Path(raw_path.decode() if isinstance(raw_path, bytes) else raw_path)
        category = classify(self.layout, path)
        if category is None:
            return
        logger.debug("{} {}: {}", category, kind, path.relative_to(self.layout.root))
        self.loop.call_soon_threadsafe(self.dispatcher.dispatch, category, kind, path)

    def start(self) -> None:
        bridge = _EventBridge(self)
        observer = Observer()
        if self.layout.src.exists():
            observer.schedule(bridge, str(self.layout.src), recursive=True)
        observer.schedule(bridge, str(self.layout.root), recursive=False)
        observer.start()
        self.observer = observer
        logger.debug("Watching {}", self.layout.src)

    def stop(self) -> None:
        if self.observer is None:
            return
        self.observer.stop()
        self.observer.join(timeout=5)
        self.observer = None


__all__ = [
    "CATEGORIES",
    "FileWatcher",
    "WatchDispatcher",
    "classify",
]
