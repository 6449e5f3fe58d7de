from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict

import pytest

from site_pipeline.builder import BuildError, Builder
from site_pipeline.compilers import ScriptError, StyleError
from site_pipeline.models import PipelineState, ProjectLayout
from site_pipeline.tasks import SiteTasks, output_name, page_context


def _snapshot(directory: Path) -> Dict[str, bytes]:
    return {
        path.relative_to(directory).as_posix(): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


def test_full_build_writes_expected_outputs(builder: Builder, layout: ProjectLayout, state: PipelineState) -> None:
    result = asyncio.run(builder.run_build())

    dist = layout.dist
    for relative in ("js/core.min.js", "js/main.min.js", "css/core.min.css", "css/main.min.css"):
        assert (dist / relative).exists(), relative
    assert (dist / "index.html").exists()
    assert (dist / "about-us.html").exists()
    assert not (dist / "draft.html").exists()
    assert (dist / "img/logo.svg").exists()
    assert (dist / "img/icons/arrow.png").exists()
    assert not (dist / "img/readme.txt").exists()
    assert (dist / "fonts/Inter/inter.woff2").exists()
    assert (dist / "favicon.ico").exists()

    assert result.duration_ms >= 0
    assert result.stats.build_count == 1
    assert set(result.stats.tasks) >= {"Copy Images", "Core JS", "Core CSS", "Templates", "Main CSS", "Main JS"}
    assert state.last_successful.scripts is True
    assert state.last_successful.styles is True


def test_build_is_idempotent(builder: Builder, layout: ProjectLayout) -> None:
    async def scenario():
        await builder.run_build()
        first = _snapshot(layout.dist)
        (layout.dist / "stale.html").write_text("left over", encoding="utf-8")
        await builder.run_build()
        return first, _snapshot(layout.dist)

    first, second = asyncio.run(scenario())
    assert first == second


def test_core_js_concatenates_sources_in_order(builder: Builder, layout: ProjectLayout) -> None:
    asyncio.run(builder.run_build())

    bundle = (layout.dist / "js/core.min.js").read_text(encoding="utf-8")
    marker_a = "// === src/vendor/a.js ==="
    marker_b = "// === src/vendor/b.js ==="
    assert marker_a in bundle and marker_b in bundle
    assert bundle.index(marker_a) < bundle.index("window.a = 1;") < bundle.index(marker_b) < bundle.index("window.b = 2;")
    assert "(function" not in bundle
    assert "=>" not in bundle


def test_core_js_skips_missing_sources(tasks: SiteTasks, layout: ProjectLayout, compilers) -> None:
    tasks.store.build.script_sources = ["src/vendor/a.js", "src/vendor/missing.js"]
    output = asyncio.run(tasks.build_core_js())
    bundle = output.read_text(encoding="utf-8")
    assert "missing.js" not in bundle
    assert "window.a = 1;" in bundle
    assert compilers.calls["transform"] == 0


def test_core_js_minifies_only_when_configured(tasks: SiteTasks, compilers) -> None:
    tasks.store.build.minify = True
    asyncio.run(tasks.build_core_js())
    assert compilers.calls["transform"] == 1


def test_script_failure_clears_flag_and_records_timer(builder: Builder, state: PipelineState, compilers) -> None:
    compilers.fail_scripts = True
    with pytest.raises(BuildError) as excinfo:
        asyncio.run(builder.run_build())

    assert excinfo.value.task == "Main JS"
    assert isinstance(excinfo.value.cause, ScriptError)
    assert excinfo.value.stage == "script"
    assert str(excinfo.value).startswith("Main JS: ")
    assert "Main JS" in state.stats.tasks
    assert state.last_successful.scripts is False
    assert state.last_successful.styles is True


def test_style_failure_aborts_remaining_steps(builder: Builder, state: PipelineState, layout: ProjectLayout, compilers) -> None:
    compilers.fail_styles = True
    with pytest.raises(BuildError) as excinfo:
        asyncio.run(builder.run_build())

    assert excinfo.value.task == "Main CSS"
    assert isinstance(excinfo.value.cause, StyleError)
    assert state.last_successful.styles is False
    assert "Main JS" not in state.stats.tasks
    assert compilers.calls["bundle"] == 0
    assert not (layout.dist / "js/main.min.js").exists()


def test_missing_core_style_source_fails_build(builder: Builder, tasks: SiteTasks, state: PipelineState) -> None:
    tasks.store.build.style_sources = ["src/vendor/nope.css"]
    with pytest.raises(BuildError) as excinfo:
        asyncio.run(builder.run_build())
    assert excinfo.value.task == "Core CSS"
    assert state.last_successful.styles is False
    # Core JS runs alongside Core CSS and still finishes.
    assert "Core JS" in state.stats.tasks


def test_broken_template_is_skipped(builder: Builder, layout: ProjectLayout) -> None:
    (layout.pages_dir / "about-us.j2").write_text("{% block main %}{% endfor %}", encoding="utf-8")

    asyncio.run(builder.run_build())

    assert (layout.dist / "index.html").exists()
    assert not (layout.dist / "about-us.html").exists()


def test_template_context_defaults(builder: Builder, layout: ProjectLayout) -> None:
    asyncio.run(builder.run_build())

    index = (layout.dist / "index.html").read_text(encoding="utf-8")
    about = (layout.dist / "about-us.html").read_text(encoding="utf-8")
    assert "<title>Home</title>" in index
    assert '<section class="hero">Hero</section>' in index
    assert "<title>About Us</title>" in about
    assert 'class="page-about-us"' in about


def test_build_all_renders_every_page(builder: Builder, store, layout: ProjectLayout) -> None:
    store.pages.build_all = True
    asyncio.run(builder.run_build())
    assert (layout.dist / "draft.html").exists()
    assert not (layout.dist / "_default.html").exists()


def test_main_css_follows_glob_order(tasks: SiteTasks, layout: ProjectLayout) -> None:
    names = [path.name for path in tasks.main_style_sources()]
    assert names == ["_variables.scss", "base.scss", "hero.sass"]


def test_main_css_writes_source_map(tasks: SiteTasks, layout: ProjectLayout) -> None:
    tasks.store.build.source_maps = True
    asyncio.run(tasks.build_main_css())
    assert (layout.dist_css / "main.min.css.map").exists()


def test_builds_never_overlap(builder: Builder, compilers) -> None:
    compilers.bundle_delay = 0.05
    events = []

    original = builder.tasks.clean_output

    async def tracking_clean():
        events.append("clean")
        await original()

    builder.tasks.clean_output = tracking_clean

    original_main_js = builder.tasks.build_main_js

    async def tracking_main_js():
        result = await original_main_js()
        events.append("main-js")
        return result

    builder.tasks.build_main_js = tracking_main_js

    async def scenario():
        await asyncio.gather(builder.run_build(), builder.run_build())

    asyncio.run(scenario())
    assert events == ["clean", "main-js", "clean", "main-js"]
    assert builder.state.stats.build_count == 2


def test_image_add_copies_exactly_one_file(builder: Builder, layout: ProjectLayout) -> None:
    async def scenario():
        await builder.run_build()
        before = _snapshot(layout.dist_img)
        new_image = layout.images_dir / "logo-dark.svg"
        new_image.write_text("<svg id='dark'></svg>", encoding="utf-8")
        await builder.add_image(new_image)
        return before, _snapshot(layout.dist_img)

    before, after = asyncio.run(scenario())
    assert set(after) - set(before) == {"logo-dark.svg"}
    for name, content in before.items():
        assert after[name] == content


def test_image_remove_deletes_only_mirrored_file(builder: Builder, layout: ProjectLayout) -> None:
    async def scenario():
        await builder.run_build()
        source = layout.images_dir / "icons" / "arrow.png"
        source.unlink()
        return await builder.remove_image(source)

    assert asyncio.run(scenario()) is True
    assert not (layout.dist_img / "icons/arrow.png").exists()
    assert (layout.dist_img / "logo.svg").exists()


def test_output_name_and_context() -> None:
    assert output_name(Path("index.j2")) == "index.html"
    assert output_name(Path("index.html.j2")) == "index.html"
    assert page_context(Path("contact-form.j2")) == {"page_title": "Contact Form", "body_class": "page-contact-form"}


def test_rebuild_is_tracked_until_it_finishes(builder: Builder, compilers, state: PipelineState) -> None:
    async def scenario():
        await builder.run_build()
        compilers.bundle_delay = 0.2
        rebuild = asyncio.ensure_future(builder.rebuild_scripts())
        await asyncio.sleep(0.05)
        busy = len(state.active_operations)
        timed_out = await state.active_operations.wait_idle(0.01)
        idle = await state.active_operations.wait_idle(2)
        await rebuild
        return busy, timed_out, idle

    assert asyncio.run(scenario()) == (1, False, True)
