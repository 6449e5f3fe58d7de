from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from site_pipeline.builder import Builder
from site_pipeline.compilers import CompiledAsset, Compilers, ScriptError, StyleError
from site_pipeline.config import ConfigStore
from site_pipeline.deploy import RemoteConnectionError, UploadError
from site_pipeline.models import PipelineState, ProjectLayout
from site_pipeline.tasks import SiteTasks


BUILD_CONFIG = {
    "js": ["src/vendor/a.js", "src/vendor/b.js"],
    "css": ["src/vendor/vendor.css"],
    "font": ["src/assets/fonts/**"],
    "minify": False,
    "sourceMaps": False,
}

PAGES_MANIFEST = {
    "all": False,
    "pages": [
        {"src": "index.j2", "enabled": True, "title": "Home"},
        {"src": "about-us.j2", "enabled": True},
        {"src": "draft.j2", "enabled": False},
    ],
}

DEPLOY_CONFIG = {
    "connection": {"host": "ftp.example.com", "user": "deploy", "password": "secret", "secure": False},
    "deployment": {
        "localFolder": "dist",
        "basePath": "/public_html",
        "mappings": {
            "styles": {"local": "css", "remote": "css", "exclude": ["*.map"], "description": "Styles"},
            "scripts": {"local": "js", "remote": "js", "exclude": ["*.map"], "description": "Scripts"},
            "images": {"local": "img", "remote": "img", "description": "Images"},
            "fonts": {"local": "fonts", "remote": "fonts", "description": "Fonts"},
            "all": {"local": ".", "remote": "", "exclude": ["*.map"], "description": "Everything"},
        },
    },
    "shortcuts": {
        "b": {"action": "build", "description": "Build"},
        "s": {"action": "deployStyles", "description": "Deploy styles"},
        "j": {"action": "deployScripts", "description": "Deploy scripts"},
        "D": {"action": "toggleAutoDeploy", "description": "Toggle auto-deploy"},
    },
}

LAYOUT_TEMPLATE = (
    "<html><head><title>{{ page_title }}</title></head>"
    '<body class="{{ body_class }}">{% block main %}{% endblock %}</body></html>\n'
)


def _write(path: Path, content: str | bytes) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content, encoding="utf-8")
    return path


@pytest.fixture()
def site_root(tmp_path: Path) -> Path:
    root = tmp_path / "site"
    _write(root / "config.json", json.dumps(BUILD_CONFIG, indent=2))
    _write(root / "pages.json", json.dumps(PAGES_MANIFEST, indent=2))
    _write(root / "config-ftp.json", json.dumps(DEPLOY_CONFIG, indent=2))

    _write(root / "src/vendor/a.js", "window.a = 1;")
    _write(root / "src/vendor/b.js", "window.b = 2;")
    _write(root / "src/vendor/vendor.css", ".vendor { margin: 0; }")
    _write(root / "src/js/main.js", "import './header.js';\nconsole.log('main');")
    _write(root / "src/js/header.js", "export const header = true;")

    _write(root / "src/pages/_layout/_default.j2", LAYOUT_TEMPLATE)
    _write(
        root / "src/pages/index.j2",
        '{% extends "_layout/_default.j2" %}{% block main %}{% include "components/modules/hero/hero.j2" %}{% endblock %}',
    )
    _write(root / "src/pages/about-us.j2", '{% extends "_layout/_default.j2" %}{% block main %}About{% endblock %}')
    _write(root / "src/pages/draft.j2", '{% extends "_layout/_default.j2" %}{% block main %}Draft{% endblock %}')
    _write(root / "src/components/modules/hero/hero.j2", '<section class="hero">Hero</section>')

    _write(root / "src/components/_core/_variables.scss", "/* variables */")
    _write(root / "src/components/_global/base.scss", "/* global */")
    _write(root / "src/components/modules/hero/hero.sass", "/* hero */")

    _write(root / "src/assets/img/logo.svg", "<svg></svg>")
    _write(root / "src/assets/img/icons/arrow.png", b"\x89PNG arrow")
    _write(root / "src/assets/img/readme.txt", "not an image")
    _write(root / "src/assets/fonts/Inter/inter.woff2", b"wOF2")
    _write(root / "src/assets/favicon.ico", b"\x00\x00\x01\x00")
    return root


@pytest.fixture()
def layout(site_root: Path) -> ProjectLayout:
    return ProjectLayout(site_root)


@pytest.fixture()
def store(layout: ProjectLayout) -> ConfigStore:
    return ConfigStore.load(layout)


@pytest.fixture()
def state() -> PipelineState:
    return PipelineState()


class FakeCompilers(Compilers):
    """Deterministic stand-in for libsass and esbuild."""

    def __init__(self, root: Path) -> None:
        super().__init__(root, esbuild="esbuild")
        self.fail_scripts = False
        self.fail_styles = False
        self.bundle_delay = 0.0
        self.calls = {"sass": 0, "transform": 0, "bundle": 0}

    async def compile_sass(self, sources, *, minify, output_path, source_map):
        self.calls["sass"] += 1
        if self.fail_styles:
            raise StyleError("Invalid CSS after \"a\": expected \"{\"")
        css = "\n".join(Path(source).read_text(encoding="utf-8") for source in sources)
        return CompiledAsset(css, '{"version": 3}' if source_map else None)

    def minify_css(self, text: str) -> str:
        return " ".join(text.split())

    async def transform_script(self, code, *, minify, source_map):
        self.calls["transform"] += 1
        if self.fail_scripts:
            raise ScriptError("Unexpected end of file")
        return CompiledAsset(" ".join(code.split()))

    async def bundle_script(self, entry, *, minify, source_map):
        self.calls["bundle"] += 1
        if self.bundle_delay:
            await asyncio.sleep(self.bundle_delay)
        if self.fail_scripts:
            raise ScriptError("Unexpected token (3:4)")
        return CompiledAsset(f"var App = (() => {{\n{entry.read_text(encoding='utf-8')}\n}})();\n")


@pytest.fixture()
def compilers(layout: ProjectLayout) -> FakeCompilers:
    return FakeCompilers(layout.root)


@pytest.fixture()
def tasks(layout: ProjectLayout, store: ConfigStore, state: PipelineState, compilers: FakeCompilers) -> SiteTasks:
    return SiteTasks(layout, store, state, compilers)


@pytest.fixture()
def builder(tasks: SiteTasks, state: PipelineState) -> Builder:
    return Builder(tasks, state)


class FakeTransport:
    """Records the remote operations a deploy performs."""

    def __init__(self) -> None:
        self.connected = False
        self.closed = False
        self.refuse_connection = False
        self.fail_on: Optional[str] = None
        self.directories: List[str] = []
        self.uploads: List[Tuple[Path, str]] = []
        self.connections = 0

    async def connect(self, connection) -> None:
        self.connections += 1
        if self.refuse_connection:
            raise RemoteConnectionError("FTP connection failed: [Errno 111] Connection refused")
        self.connected = True

    async def ensure_dir(self, path: str) -> None:
        self.directories.append(path)

    async def upload_file(self, local: Path, remote: str) -> None:
        if self.fail_on and local.name == self.fail_on:
            raise UploadError("553 Could not create file.", path=local)
        self.uploads.append((local, remote))

    async def close(self) -> None:
        self.closed = True

    @property
    def uploaded_names(self) -> List[str]:
        return [local.name for local, _ in self.uploads]


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


class RecordingReload:
    def __init__(self) -> None:
        self.scopes: List[str] = []
        self.stopped = False

    def reload(self, scope: str = "all") -> None:
        self.scopes.append(scope)

    def stop(self) -> None:
        self.stopped = True


@pytest.fixture()
def reload() -> RecordingReload:
    return RecordingReload()
