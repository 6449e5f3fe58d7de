from __future__ import annotations

import asyncio
import time

from site_pipeline.config import ShortcutConfig
from site_pipeline.models import PipelineState
from site_pipeline.session import CTRL_C, SessionController, SessionState


SHORTCUTS = {
    "b": ShortcutConfig(action="build", description="Build"),
    "x": ShortcutConfig(action="explode", description="Unknown action"),
}


def test_keys_dispatch_without_waiting() -> None:
    state = PipelineState()
    ran = []

    async def slow_build():
        await asyncio.sleep(0.05)
        ran.append("build")

    async def scenario():
        session = SessionController(state, {"build": slow_build}, SHORTCUTS, shutdown_timeout=1.0)
        session.start()
        started = time.perf_counter()
        assert session.handle_key(" B\n") == "build"
        assert session.handle_key("q") is None
        assert session.handle_key("   ") is None
        assert session.handle_key("b") == "build"
        elapsed = time.perf_counter() - started
        await asyncio.sleep(0.2)
        await session.shutdown()
        return elapsed

    elapsed = asyncio.run(scenario())
    assert elapsed < 0.05
    assert ran == ["build", "build"]


def test_command_failures_are_contained() -> None:
    state = PipelineState()
    calls = []

    def broken():
        calls.append("broken")
        raise RuntimeError("boom")

    async def scenario():
        session = SessionController(state, {"build": broken}, SHORTCUTS, shutdown_timeout=1.0)
        session.start()
        session.handle_key("x")
        session.handle_key("b")
        session.handle_key("b")
        await asyncio.sleep(0.05)
        alive = session.session_state
        await session.shutdown()
        return alive

    assert asyncio.run(scenario()) is SessionState.RUNNING
    assert calls == ["broken", "broken"]


def test_ctrl_c_shuts_down_once() -> None:
    state = PipelineState()
    cleaned = []

    async def scenario():
        session = SessionController(state, {}, SHORTCUTS, cleanup=[lambda: cleaned.append("watcher")])
        session.start()
        session.handle_key(CTRL_C)
        session.handle_key(CTRL_C)
        session.request_shutdown()
        assert session.session_state is SessionState.SHUTTING_DOWN
        assert session.handle_key("b") is None
        await session.wait_terminated()
        await session.shutdown()
        return session.session_state

    assert asyncio.run(scenario()) is SessionState.TERMINATED
    assert cleaned == ["watcher"]


def test_shutdown_waits_for_operations_that_finish() -> None:
    state = PipelineState()

    async def scenario():
        first = state.active_operations.register("deploy")
        second = state.active_operations.register("deploy")
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, state.active_operations.unregister, first)
        loop.call_later(0.2, state.active_operations.unregister, second)
        session = SessionController(state, {}, {}, shutdown_timeout=5.0)
        started = time.perf_counter()
        await session.shutdown()
        return time.perf_counter() - started

    elapsed = asyncio.run(scenario())
    assert 0.15 <= elapsed < 1.0
    assert len(state.active_operations) == 0


def test_shutdown_forces_exit_at_timeout() -> None:
    state = PipelineState()
    cleaned = []

    async def scenario():
        state.active_operations.register("deploy")
        state.active_operations.register("deploy")
        session = SessionController(state, {}, {}, shutdown_timeout=0.3, cleanup=[lambda: cleaned.append("server")])
        started = time.perf_counter()
        await session.shutdown()
        return time.perf_counter() - started, session.session_state

    elapsed, final = asyncio.run(scenario())
    assert 0.3 <= elapsed < 1.0
    assert final is SessionState.TERMINATED
    assert len(state.active_operations) == 2
    assert cleaned == ["server"]


def test_track_unregisters_on_error() -> None:
    state = PipelineState()
    try:
        with state.active_operations.track("deploy"):
            assert len(state.active_operations) == 1
            raise ValueError("upload failed")
    except ValueError:
        pass
    assert len(state.active_operations) == 0
