"""Page manifest upkeep and component scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import List

from loguru import logger

from .config import PageEntry, load_pages_manifest, save_pages_manifest
from .models import ProjectLayout
from .tasks import TEMPLATE_SUFFIX

LAYOUT_KINDS = ("single", "list", "sections")

PAGE_HEADER = """{% extends "_layout/_default.j2" %}
{% block main %}
"""
PAGE_FOOTER = "{% endblock %}\n"


def discover_pages(pages_dir: Path) -> List[str]:
    """Renderable page templates, partials and layouts excluded."""

    if not pages_dir.exists():
        return []
    return sorted(
        path.name
        for path in pages_dir.glob(f"*{TEMPLATE_SUFFIX}")
        if path.is_file() and not path.name.startswith("_")
    )


def sync_pages_manifest(layout: ProjectLayout) -> int:
    """Append newly found pages to ``pages.json`` as disabled entries."""

    manifest = load_pages_manifest(layout.pages_manifest)
    known = {entry.src for entry in manifest.pages}
    added = 0
    for name in discover_pages(layout.pages_dir):
        if name in known:
            continue
        manifest.pages.append(PageEntry(src=name, enabled=False))
        added += 1
        logger.debug("Added page {}", name)
    save_pages_manifest(manifest, layout.pages_manifest)
    return added


def _page(includes: List[str]) -> str:
    lines = [f'  {{% include "{include}" %}}' for include in includes]
    return PAGE_HEADER + "\n".join(lines) + "\n" + PAGE_FOOTER


def _module(folder: Path, stem: str) -> List[Path]:
    folder.mkdir(parents=True)
    created = []
    for suffix in (TEMPLATE_SUFFIX, ".sass"):
        path = folder / f"{stem}{suffix}"
        path.write_text("", encoding="utf-8")
        created.append(path)
    return created


def scaffold_component(
    layout: ProjectLayout,
    name: str,
    *,
    layout_kind: str = "single",
    sections: int = 1,
) -> List[Path]:
    """Create a component module folder and the page(s) that include it.

    ``single`` makes one module and one page, ``list`` makes ``List`` and
    ``Detail`` modules with a page each, ``sections`` makes numbered
    sub-modules included by one page.
    """

    if layout_kind not in LAYOUT_KINDS:
        raise ValueError(f"Unknown layout '{layout_kind}', expected one of {', '.join(LAYOUT_KINDS)}")
    if layout_kind == "sections" and sections < 1:
        raise ValueError("Sections must be a positive number")

    base = layout.components_dir / "modules" / name
    if base.exists():
        raise FileExistsError(f"Component folder already exists: {base}")
    layout.pages_dir.mkdir(parents=True, exist_ok=True)
    include_root = f"components/modules/{name}"
    created: List[Path] = []

    if layout_kind == "single":
        pages = {f"{name}{TEMPLATE_SUFFIX}": [f"{include_root}/{name}{TEMPLATE_SUFFIX}"]}
        created += _module(base, name)
    elif layout_kind == "list":
        pages = {}
        for variant in ("List", "Detail"):
            stem = f"{name}{variant}"
            pages[f"{stem}{TEMPLATE_SUFFIX}"] = [f"{include_root}/{variant}/{stem}{TEMPLATE_SUFFIX}"]
            created += _module(base / variant, stem)
    else:
        includes = []
        for index in range(1, sections + 1):
            stem = f"{name}-{index}"
            includes.append(f"{include_root}/{stem}/{stem}{TEMPLATE_SUFFIX}")
            created += _module(base / stem, stem)
        pages = {f"{name}{TEMPLATE_SUFFIX}": includes}

    for filename, includes in pages.items():
        page = layout.pages_dir / filename
        if page.exists():
            logger.warning("Page {} already exists, leaving it untouched", filename)
            continue
        page.write_text(_page(includes), encoding="utf-8")
        created.append(page)
    return created


__all__ = ["LAYOUT_KINDS", "discover_pages", "scaffold_component", "sync_pages_manifest"]
