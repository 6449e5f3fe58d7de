"""Build orchestration: ordered task execution, timings and serialization."""

from __future__ import annotations

import asyncio
import dataclasses
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Dict, Sequence

from loguru import logger

from .compilers import CompileError
from .models import BuildResult, PipelineState
from .tasks import SiteTasks


class BuildError(Exception):
    """A build task failed; wraps the underlying cause."""

    def __init__(self, task: str, cause: BaseException) -> None:
        super().__init__(f"{task}: {cause}")
        self.task = task
        self.cause = cause

    @property
    def stage(self) -> str:
        if isinstance(self.cause, CompileError):
            return self.cause.stage
        return "build"


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


class Builder:
    """Runs site tasks in their fixed order and records per-task timings.

    Every public entry point takes the same lock, so a full build and a
    watcher-triggered partial rebuild never write into ``dist`` at the same
    time. Callers that arrive while a run is in progress wait their turn.
    """

    def __init__(self, tasks: SiteTasks, state: PipelineState) -> None:
        self.tasks = tasks
        self.state = state
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def _tracked(self, name: str, awaitable: Awaitable[Any]) -> Any:
        started = time.perf_counter()
        try:
            return await awaitable
        except BuildError:
            raise
        except Exception as exc:
            raise BuildError(name, exc) from exc
        finally:
            self.state.stats.tasks[name] = _elapsed_ms(started)

    async def _concurrently(self, steps: Dict[str, Awaitable[Any]]) -> Sequence[Any]:
        """Run steps together; all of them finish before the first error is raised."""

        results = await asyncio.gather(
            *(self._tracked(name, step) for name, step in steps.items()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    def _begin(self) -> float:
        self.state.stats.reset()
        return time.perf_counter()

    def _finish(self, started: float) -> BuildResult:
        stats = self.state.stats
        stats.finished_at = datetime.now()
        stats.duration_ms = _elapsed_ms(started)
        stats.last_success_at = stats.finished_at
        return BuildResult(stats.duration_ms, dataclasses.replace(stats, tasks=dict(stats.tasks)))

    def _fail(self, started: float) -> None:
        stats = self.state.stats
        stats.finished_at = datetime.now()
        stats.duration_ms = _elapsed_ms(started)

    async def run_build(self) -> BuildResult:
        """Full build: clean, static assets, core bundles, pages, main bundles."""

        async with self._lock:
            with self.state.active_operations.track("build"):
                started = self._begin()
                logger.debug("Build #{} started", self.state.stats.build_count)
                try:
                    await self._tracked("Clean", self.tasks.clean_output())
                    await self._concurrently(
                        {
                            "Copy Images": self.tasks.copy_images(),
                            "Copy Fonts": self.tasks.copy_fonts(),
                            "Copy Favicon": self.tasks.copy_favicon(),
                        }
                    )
                    await self._concurrently(
                        {
                            "Core JS": self.tasks.build_core_js(),
                            "Core CSS": self.tasks.build_core_css(),
                        }
                    )
                    await self._tracked("Templates", self.tasks.build_templates())
                    await self._tracked("Main CSS", self.tasks.build_main_css())
                    await self._tracked("Main JS", self.tasks.build_main_js())
                except BuildError:
                    self._fail(started)
                    raise
                result = self._finish(started)
        logger.debug("Build #{} finished in {}ms", result.stats.build_count, result.duration_ms)
        return result

    async def run_core_build(self) -> BuildResult:
        """Vendor bundles and static assets only."""

        async with self._lock:
            with self.state.active_operations.track("core"):
                started = self._begin()
                try:
                    await self._tracked("Clean", self.tasks.clean_output())
                    await self._concurrently(
                        {
                            "Copy Images": self.tasks.copy_images(),
                            "Copy Fonts": self.tasks.copy_fonts(),
                            "Copy Favicon": self.tasks.copy_favicon(),
                        }
                    )
                    await self._concurrently(
                        {
                            "Core JS": self.tasks.build_core_js(),
                            "Core CSS": self.tasks.build_core_css(),
                        }
                    )
                except BuildError:
                    self._fail(started)
                    raise
                return self._finish(started)

    async def rebuild_scripts(self) -> None:
        async with self._lock:
            with self.state.active_operations.track("scripts"):
                await self._tracked("Main JS", self.tasks.build_main_js())

    async def rebuild_templates(self) -> None:
        """Pages may introduce new utility classes, so styles follow."""

        async with self._lock:
            with self.state.active_operations.track("templates"):
                await self._tracked("Templates", self.tasks.build_templates())
                await self._tracked("Main CSS", self.tasks.build_main_css())

    async def rebuild_styles(self) -> None:
        async with self._lock:
            with self.state.active_operations.track("styles"):
                await self._tracked("Main CSS", self.tasks.build_main_css())

    async def refresh_images(self) -> None:
        async with self._lock:
            with self.state.active_operations.track("images"):
                await self._tracked("Clean Images", self.tasks.clean_images())
                await self._tracked("Copy Images", self.tasks.copy_images())

    async def add_image(self, path: Path) -> Path:
        async with self._lock:
            with self.state.active_operations.track("images"):
                return await self._tracked("Copy Image", self.tasks.copy_image(path))

    async def remove_image(self, path: Path) -> bool:
        async with self._lock:
            with self.state.active_operations.track("images"):
                return await self._tracked("Remove Image", self.tasks.remove_image(path))


__all__ = ["BuildError", "Builder"]
