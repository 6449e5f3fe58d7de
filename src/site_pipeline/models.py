"""Shared models for build state, project layout and build results."""

from __future__ import annotations

import asyncio
import itertools
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, Optional, Set


class AssetType(str, Enum):
    """Granularity at which build success is tracked."""

    SCRIPTS = "scripts"
    STYLES = "styles"
    IMAGES = "images"
    FONTS = "fonts"


IMAGE_EXTENSIONS = ("svg", "png", "jpg", "jpeg", "gif", "webp", "mp4")
OUTPUT_SKELETON = ("js", "css", "img", "fonts")


@dataclass(slots=True)
class ProjectLayout:
    """Conventional paths of a website project."""

    root: Path

    @property
    def src(self) -> Path:
        return self.root / "src"

    @property
    def pages_dir(self) -> Path:
        return self.src / "pages"

    @property
    def scripts_dir(self) -> Path:
        return self.src / "js"

    @property
    def main_script(self) -> Path:
        return self.scripts_dir / "main.js"

    @property
    def components_dir(self) -> Path:
        return self.src / "components"

    @property
    def images_dir(self) -> Path:
        return self.src / "assets" / "img"

    @property
    def favicon(self) -> Path:
        return self.src / "assets" / "favicon.ico"

    @property
    def dist(self) -> Path:
        return self.root / "dist"

    @property
    def dist_js(self) -> Path:
        return self.dist / "js"

    @property
    def dist_css(self) -> Path:
        return self.dist / "css"

    @property
    def dist_img(self) -> Path:
        return self.dist / "img"

    @property
    def dist_fonts(self) -> Path:
        return self.dist / "fonts"

    @property
    def build_config(self) -> Path:
        return self.root / "config.json"

    @property
    def pages_manifest(self) -> Path:
        return self.root / "pages.json"

    @property
    def deploy_config(self) -> Path:
        return self.root / "config-ftp.json"


@dataclass(slots=True)
class BuildStats:
    """Timing information owned by the build orchestrator."""

    tasks: Dict[str, int] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    build_count: int = 0
    last_success_at: Optional[datetime] = None
    duration_ms: int = 0

    def reset(self) -> None:
        self.tasks = {}
        self.started_at = datetime.now()
        self.finished_at = None
        self.duration_ms = 0
        self.build_count += 1

    @property
    def is_first_build(self) -> bool:
        return self.build_count == 1


@dataclass(slots=True)
class LastSuccessfulBuild:
    """Per-asset readiness flags consulted before deploying."""

    scripts: bool = False
    styles: bool = False

    def mark(self, asset: AssetType, succeeded: bool) -> None:
        if asset == AssetType.SCRIPTS:
            self.scripts = succeeded
        elif asset == AssetType.STYLES:
            self.styles = succeeded
        else:
            raise ValueError(f"Build success is not tracked for {asset.value}")

    def is_ready(self, asset: AssetType) -> bool:
        if asset == AssetType.SCRIPTS:
            return self.scripts
        if asset == AssetType.STYLES:
            return self.styles
        return True


class ActiveOperations:
    """Tokens for in-flight operations that shutdown waits on."""

    def __init__(self) -> None:
        self._tokens: Set[str] = set()
        self._counter = itertools.count(1)
        self._idle = asyncio.Event()
        self._idle.set()

    def __len__(self) -> int:
        return len(self._tokens)

    def register(self, label: str) -> str:
        token = f"{label}#{next(self._counter)}"
        self._tokens.add(token)
        self._idle.clear()
        return token

    def unregister(self, token: str) -> None:
        self._tokens.discard(token)
        if not self._tokens:
            self._idle.set()

    @contextmanager
    def track(self, label: str) -> Iterator[str]:
        token = self.register(label)
        try:
            yield token
        finally:
            self.unregister(token)

    async def wait_idle(self, timeout: float) -> bool:
        """Wait until no operation is registered; False when the timeout hit first."""

        if not self._tokens:
            return True
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class PipelineState:
    """Process-wide mutable state, passed explicitly to every component."""

    stats: BuildStats = field(default_factory=BuildStats)
    last_successful: LastSuccessfulBuild = field(default_factory=LastSuccessfulBuild)
    active_operations: ActiveOperations = field(default_factory=ActiveOperations)
    auto_deploy: bool = False

    def toggle_auto_deploy(self) -> bool:
        self.auto_deploy = not self.auto_deploy
        return self.auto_deploy


@dataclass(slots=True)
class BuildResult:
    """Outcome of a successful build run."""

    duration_ms: int
    stats: BuildStats


__all__ = [
    "ActiveOperations",
    "AssetType",
    "BuildResult",
    "BuildStats",
    "IMAGE_EXTENSIONS",
    "LastSuccessfulBuild",
    "OUTPUT_SKELETON",
    "PipelineState",
    "ProjectLayout",
]
