"""Bridges to the template engine, style compiler and script bundler."""

from __future__ import annotations

import asyncio
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Mapping, Optional, Sequence

import sass
from jinja2 import Environment, FileSystemLoader, TemplateError as JinjaTemplateError


class CompileError(Exception):
    """Raised when an external compiler rejects its input."""

    stage = "compile"

    def __init__(self, message: str, *, source: Path | None = None) -> None:
        super().__init__(message)
        self.source = source


class TemplateError(CompileError):
    stage = "template"


class StyleError(CompileError):
    stage = "style"


class ScriptError(CompileError):
    stage = "script"


@dataclass(slots=True)
class CompiledAsset:
    """Compiler output and its optional source map."""

    content: str
    source_map: Optional[str] = None


class Compilers:
    """Default toolchain: Jinja2 for pages, libsass for styles, esbuild for scripts."""

    def __init__(self, root: Path, *, esbuild: str | None = None) -> None:
        self.root = root
        self._esbuild = esbuild

    # Templates -----------------------------------------------------------

    def template_environment(self, search_paths: Sequence[Path]) -> Environment:
        loader = FileSystemLoader([str(path) for path in search_paths])
        return Environment(loader=loader, autoescape=False)

    def render_template(self, env: Environment, name: str, context: Mapping[str, Any]) -> str:
        try:
            template = env.get_template(name)
            return template.render(**context)
        except JinjaTemplateError as exc:
            raise TemplateError(f"{name}: {exc}") from exc

    # Styles --------------------------------------------------------------

    async def compile_sass(
        self,
        sources: Sequence[Path],
        *,
        minify: bool,
        output_path: Path,
        source_map: bool,
    ) -> CompiledAsset:
        """Compile ordered style sources into a single stylesheet."""

        return await asyncio.to_thread(
            self._compile_sass_sync, list(sources), minify, output_path, source_map
        )

    def _compile_sass_sync(
        self, sources: List[Path], minify: bool, output_path: Path, source_map: bool
    ) -> CompiledAsset:
        imports = []
        for source in sources:
            if not source.exists():
                raise StyleError(f"Missing style import: {source}", source=source)
            imports.append(f'@import "{source.with_suffix("").as_posix()}";')

        style = "compressed" if minify else "expanded"
        with tempfile.TemporaryDirectory(prefix="site-pipeline-") as tmp:
            entry = Path(tmp) / "main.scss"
            entry.write_text("\n".join(imports) + "\n", encoding="utf-8")
            options: dict[str, Any] = {
                "filename": str(entry),
                "output_style": style,
                "include_paths": [str(self.root), str(self.root / "src"), str(self.root / "node_modules")],
            }
            if source_map:
                options.update(
                    source_map_filename=str(output_path.with_name(output_path.name + ".map")),
                    output_filename_hint=str(output_path),
                    source_map_contents=True,
                )
            try:
                result = sass.compile(**options)
            except sass.CompileError as exc:
                raise StyleError(str(exc).strip()) from exc

        if source_map:
            css, map_text = result
            return CompiledAsset(css, map_text)
        return CompiledAsset(result)

    def minify_css(self, text: str) -> str:
        try:
            return sass.compile(string=text, output_style="compressed")
        except sass.CompileError as exc:
            raise StyleError(str(exc).strip()) from exc

    # Scripts -------------------------------------------------------------

    def esbuild_executable(self) -> str:
        if self._esbuild:
            return self._esbuild
        local = self.root / "node_modules" / ".bin" / "esbuild"
        if local.exists():
            return str(local)
        found = shutil.which("esbuild")
        if found is None:
            raise ScriptError("esbuild executable not found; install it with `npm install esbuild`")
        return found

    async def _run_esbuild(self, args: Sequence[str], stdin: str | None = None) -> str:
        executable = self.esbuild_executable()
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(self.root),
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate(stdin.encode("utf-8") if stdin is not None else None)
        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise ScriptError(message[:500] or f"esbuild exited with code {process.returncode}")
        return stdout.decode("utf-8")

    async def transform_script(self, code: str, *, minify: bool, source_map: bool) -> CompiledAsset:
        """Minify already concatenated code without injecting module wrappers."""

        args = ["--loader=js", "--target=es2015"]
        if minify:
            args.append("--minify")
        if source_map:
            args.append("--sourcemap=inline")
        return CompiledAsset(await self._run_esbuild(args, stdin=code))

    async def bundle_script(self, entry: Path, *, minify: bool, source_map: bool) -> CompiledAsset:
        """Bundle an entry module into a browser IIFE exposed as ``App``."""

        if not entry.exists():
            raise ScriptError(f"Script entry not found: {entry}", source=entry)
        mode = '"development"' if source_map else '"production"'
        args = [
            str(entry),
            "--bundle",
            "--format=iife",
            "--global-name=App",
            "--target=es2015",
            "--platform=browser",
            "--main-fields=browser,module,main",
            f"--define:process.env.NODE_ENV={mode}",
        ]
        if minify:
            args.append("--minify")
        if source_map:
            args.append("--sourcemap=inline")
        return CompiledAsset(await self._run_esbuild(args))


__all__ = [
    "CompileError",
    "CompiledAsset",
    "Compilers",
    "ScriptError",
    "StyleError",
    "TemplateError",
]
