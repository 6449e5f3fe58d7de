"""Build tasks that run the compilers and write the output tree."""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path
from typing import Dict, List

from loguru import logger

from .compilers import CompileError, Compilers, StyleError
from .config import ConfigStore, PageEntry
from .models import IMAGE_EXTENSIONS, OUTPUT_SKELETON, AssetType, PipelineState, ProjectLayout

TEMPLATE_SUFFIX = ".j2"

# Order matters: core partials first, the catch-all last.
MAIN_STYLE_GLOBS = (
    "_core/_*",
    "_tailwind/*",
    "_core/**/*",
    "_global/**/*",
    "**/*",
)
STYLE_SUFFIXES = (".sass", ".scss")


def output_name(template: Path) -> str:
    """``index.html.j2`` and ``index.j2`` both render to ``index.html``."""

    name = template.name
    if name.endswith(TEMPLATE_SUFFIX):
        name = name[: -len(TEMPLATE_SUFFIX)]
    if not name.endswith(".html"):
        name = f"{Path(name).stem}.html"
    return name


def page_context(template: Path, entry: PageEntry | None = None) -> Dict[str, str]:
    slug = output_name(template)[: -len(".html")]
    title = entry.title if entry and entry.title else slug.replace("-", " ").replace("_", " ").title()
    body_class = entry.body_class if entry and entry.body_class else f"page-{slug}"
    return {"page_title": title, "body_class": body_class}


def _is_image(path: Path) -> bool:
    return path.suffix.lstrip(".").lower() in IMAGE_EXTENSIONS


def _copy_tree(source: Path, destination: Path, *, images_only: bool = False) -> int:
    copied = 0
    for path in sorted(source.rglob("*")):
        if not path.is_file() or (images_only and not _is_image(path)):
            continue
        target = destination / path.relative_to(source)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(path, target)
        copied += 1
    return copied


class SiteTasks:
    """Thin adapters around :class:`Compilers` that own the ``dist`` layout."""

    def __init__(
        self,
        layout: ProjectLayout,
        store: ConfigStore,
        state: PipelineState,
        compilers: Compilers,
    ) -> None:
        self.layout = layout
        self.store = store
        self.state = state
        self.compilers = compilers

    # Output directory ----------------------------------------------------

    async def clean_output(self) -> None:
        await asyncio.to_thread(self._clean_output_sync)

    def _clean_output_sync(self) -> None:
        dist = self.layout.dist
        if dist.exists():
            shutil.rmtree(dist)
        for name in OUTPUT_SKELETON:
            (dist / name).mkdir(parents=True, exist_ok=True)

    # Static assets -------------------------------------------------------

    async def copy_images(self) -> int:
        return await asyncio.to_thread(self._copy_images_sync)

    def _copy_images_sync(self) -> int:
        source = self.layout.images_dir
        if not source.exists():
            return 0
        copied = _copy_tree(source, self.layout.dist_img, images_only=True)
        logger.debug("Copied {} image(s) to {}", copied, self.layout.dist_img)
        return copied

    async def clean_images(self) -> None:
        await asyncio.to_thread(self._clean_images_sync)

    def _clean_images_sync(self) -> None:
        if self.layout.dist_img.exists():
            shutil.rmtree(self.layout.dist_img)
        self.layout.dist_img.mkdir(parents=True, exist_ok=True)

    async def copy_image(self, path: Path) -> Path:
        """Copy a single image, preserving its path below the image source dir."""

        target = self.layout.dist_img / path.relative_to(self.layout.images_dir)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, path, target)
        logger.debug("Copied image {}", target.relative_to(self.layout.dist))
        return target

    async def remove_image(self, path: Path) -> bool:
        target = self.layout.dist_img / path.relative_to(self.layout.images_dir)
        if not target.exists():
            return False
        target.unlink()
        logger.debug("Removed image {}", target.relative_to(self.layout.dist))
        return True

    async def copy_fonts(self) -> int:
        return await asyncio.to_thread(self._copy_fonts_sync)

    def _copy_fonts_sync(self) -> int:
        copied = 0
        destination = self.layout.dist_fonts
        for pattern in self.store.build.font_globs:
            if pattern.endswith("/**"):
                source = self.layout.root / pattern[: -len("/**")]
                if source.is_dir():
                    copied += _copy_tree(source, destination)
                continue
            for path in sorted(self.layout.root.glob(pattern)):
                if path.is_file():
                    destination.mkdir(parents=True, exist_ok=True)
                    shutil.copyfile(path, destination / path.name)
                    copied += 1
        logger.debug("Copied {} font file(s)", copied)
        return copied

    async def copy_favicon(self) -> bool:
        favicon = self.layout.favicon
        if not favicon.exists():
            return False
        await asyncio.to_thread(shutil.copyfile, favicon, self.layout.dist / "favicon.ico")
        return True

    # Scripts -------------------------------------------------------------

    def _mark(self, asset: AssetType, succeeded: bool) -> None:
        self.state.last_successful.mark(asset, succeeded)
        if succeeded:
            logger.debug("{} build marked ready for deployment", asset.value.title())

    async def build_core_js(self) -> Path:
        """Concatenate the configured scripts into ``core.min.js``."""

        config = self.store.build
        output = self.layout.dist_js / "core.min.js"
        try:
            chunks: List[str] = []
            for source in config.script_sources:
                path = self.layout.root / source
                if not path.exists():
                    logger.warning("File not found: skipping missing script {}", source)
                    continue
                chunks.append(f"\n// === {source} ===\n")
                chunks.append(path.read_text(encoding="utf-8"))
                chunks.append("\n")
            code = "".join(chunks)
            if config.minify:
                code = (await self.compilers.transform_script(code, minify=True, source_map=config.source_maps)).content
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(code, encoding="utf-8")
        except Exception:
            self._mark(AssetType.SCRIPTS, False)
            raise
        self._mark(AssetType.SCRIPTS, True)
        logger.debug("Core JS bundle created: {}", output.relative_to(self.layout.root))
        return output

    async def build_main_js(self) -> Path:
        config = self.store.build
        output = self.layout.dist_js / "main.min.js"
        try:
            bundled = await self.compilers.bundle_script(
                self.layout.main_script, minify=config.minify, source_map=config.source_maps
            )
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(bundled.content, encoding="utf-8")
        except Exception:
            self._mark(AssetType.SCRIPTS, False)
            raise
        self._mark(AssetType.SCRIPTS, True)
        logger.debug("Main JS bundle created: {}", output.relative_to(self.layout.root))
        return output

    # Styles --------------------------------------------------------------

    async def build_core_css(self) -> Path:
        """Concatenate the configured vendor stylesheets into ``core.min.css``."""

        config = self.store.build
        output = self.layout.dist_css / "core.min.css"
        try:
            chunks: List[str] = []
            for source in config.style_sources:
                path = self.layout.root / source
                if not path.exists():
                    raise StyleError(f"Could not resolve import: {source}", source=path)
                chunks.append(path.read_text(encoding="utf-8"))
            css = "\n".join(chunks)
            if config.minify:
                css = await asyncio.to_thread(self.compilers.minify_css, css)
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(css, encoding="utf-8")
        except Exception:
            self._mark(AssetType.STYLES, False)
            raise
        self._mark(AssetType.STYLES, True)
        logger.debug("Core CSS bundle created: {}", output.relative_to(self.layout.root))
        return output

    def main_style_sources(self) -> List[Path]:
        base = self.layout.components_dir
        if not base.exists():
            return []
        seen: set[Path] = set()
        ordered: List[Path] = []
        for pattern in MAIN_STYLE_GLOBS:
            for path in sorted(base.glob(pattern)):
                if path.suffix in STYLE_SUFFIXES and path.is_file() and path not in seen:
                    seen.add(path)
                    ordered.append(path)
        return ordered

    async def build_main_css(self) -> Path:
        config = self.store.build
        output = self.layout.dist_css / "main.min.css"
        try:
            compiled = await self.compilers.compile_sass(
                self.main_style_sources(),
                minify=config.minify,
                output_path=output,
                source_map=config.source_maps,
            )
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(compiled.content, encoding="utf-8")
            if compiled.source_map:
                output.with_name(output.name + ".map").write_text(compiled.source_map, encoding="utf-8")
        except Exception:
            self._mark(AssetType.STYLES, False)
            raise
        self._mark(AssetType.STYLES, True)
        logger.debug("CSS compiled: {}", output.relative_to(self.layout.root))
        return output

    # Templates -----------------------------------------------------------

    def enabled_pages(self) -> List[tuple[Path, PageEntry | None]]:
        manifest = self.store.pages
        pages_dir = self.layout.pages_dir
        if manifest.build_all or not manifest.pages:
            if not pages_dir.exists():
                return []
            return [
                (path, None)
                for path in sorted(pages_dir.glob(f"*{TEMPLATE_SUFFIX}"))
                if not path.name.startswith("_")
            ]
        selected: List[tuple[Path, PageEntry | None]] = []
        for entry in manifest.pages:
            path = pages_dir / entry.src
            if entry.enabled and path.exists():
                selected.append((path, entry))
        return selected

    async def build_templates(self) -> List[Path]:
        """Render enabled pages; a broken page is reported and skipped."""

        env = self.compilers.template_environment([self.layout.pages_dir, self.layout.src])
        self.layout.dist.mkdir(parents=True, exist_ok=True)
        rendered: List[Path] = []
        for template, entry in self.enabled_pages():
            output = self.layout.dist / output_name(template)
            try:
                html = self.compilers.render_template(env, template.name, page_context(template, entry))
            except CompileError as exc:
                logger.error("Template compilation failed for {}: {}", template.name, exc)
                continue
            output.write_text(html, encoding="utf-8")
            rendered.append(output)
            logger.debug("Compiled: {} -> {}", template.name, output.name)
        return rendered


__all__ = ["SiteTasks", "output_name", "page_context", "MAIN_STYLE_GLOBS"]
