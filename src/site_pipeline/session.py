"""Interactive session: keyboard shortcuts and graceful shutdown."""

from __future__ import annotations

import asyncio
import inspect
import os
import signal
import sys
from contextlib import suppress
from enum import Enum
from typing import Any, Callable, List, Mapping, Optional, Sequence, TextIO

from loguru import logger

from .config import ShortcutConfig
from .models import PipelineState

CTRL_C = "\x03"
DEFAULT_SHUTDOWN_TIMEOUT = 5.0

Action = Callable[[], Any]
CleanupHook = Callable[[], Any]


class SessionState(str, Enum):
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


class TerminalInput:
    """Single-keystroke input from a TTY stdin, read on the event loop."""

    def __init__(self, on_key: Callable[[str], Any], stream: TextIO | None = None) -> None:
        self.on_key = on_key
        self.stream = stream or sys.stdin
        self._fd: Optional[int] = None
        self._saved: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def active(self) -> bool:
        return self._fd is not None

    def start(self, loop: asyncio.AbstractEventLoop) -> bool:
        """Enter cbreak mode; ``False`` when stdin is not an interactive terminal."""

        if sys.platform == "win32" or not self.stream.isatty():
            return False
        import termios
        import tty

        fd = self.stream.fileno()
        self._saved = termios.tcgetattr(fd)
        tty.setcbreak(fd)
        loop.add_reader(fd, self._on_readable)
        self._fd = fd
        self._loop = loop
        return True

    def _on_readable(self) -> None:
        if self._fd is None:
            return
        data = os.read(self._fd, 32)
        if data:
            self.on_key(data.decode("utf-8", errors="ignore"))

    def release(self) -> None:
        if self._fd is None:
            return
        import termios

        fd, self._fd = self._fd, None
        if self._loop is not None:
            self._loop.remove_reader(fd)
        termios.tcsetattr(fd, termios.TCSADRAIN, self._saved)


class SessionController:
    """Owns the running/shutting-down/terminated lifecycle of ``serve``.

    Keystrokes become queued action names. A single consumer runs them in
    order, so the key handler itself never waits on a deploy or a build.
    """

    def __init__(
        self,
        state: PipelineState,
        actions: Mapping[str, Action],
        shortcuts: Mapping[str, ShortcutConfig],
        *,
        shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT,
        cleanup: Sequence[CleanupHook] = (),
        verbose: bool = False,
    ) -> None:
        self.state = state
        self.actions = dict(actions)
        self.shortcuts = dict(shortcuts)
        self.shutdown_timeout = shutdown_timeout
        self.cleanup: List[CleanupHook] = list(cleanup)
        self.verbose = verbose
        self.session_state = SessionState.RUNNING
        self.terminal: Optional[TerminalInput] = None
        self._commands: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._terminated = asyncio.Event()
        self._consumer: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None

    @property
    def accepting(self) -> bool:
        return self.session_state is SessionState.RUNNING

    def handle_key(self, text: str) -> Optional[str]:
        """Queue the action bound to a keystroke; returns the action name."""

        if not self.accepting:
            return None
        if CTRL_C in text:
            self.request_shutdown()
            return None
        key = text.strip().lower()[:1]
        if not key:
            return None
        shortcut = self.shortcuts.get(key)
        if shortcut is None:
            return None
        logger.info("Command received: {}", shortcut.description or shortcut.action)
        self._commands.put_nowait(shortcut.action)
        return shortcut.action

    def start(self, loop: asyncio.AbstractEventLoop | None = None, terminal: TerminalInput | None = None) -> None:
        loop = loop or asyncio.get_running_loop()
        self._consumer = loop.create_task(self.run())
        self.install_signal_handlers(loop)
        if terminal is not None and terminal.start(loop):
            self.terminal = terminal

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGINT, signal.SIGTERM):
            with suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, self.request_shutdown)

    async def run(self) -> None:
        while True:
            action = await self._commands.get()
            if action is None or not self.accepting:
                return
            await self.execute(action)

    async def execute(self, action: str) -> None:
        handler = self.actions.get(action)
        if handler is None:
            logger.error("Unknown action: {}", action)
            return
        try:
            result = handler()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.opt(exception=exc if self.verbose else None).error("Command failed: {}", exc)

    def request_shutdown(self) -> None:
        if not self.accepting:
            return
        self.session_state = SessionState.SHUTTING_DOWN
        self._commands.put_nowait(None)
        self._shutdown_task = asyncio.get_running_loop().create_task(self._shutdown())

    async def shutdown(self) -> None:
        """Shut down once; later calls wait for the first shutdown to finish."""

        self.request_shutdown()
        if self._shutdown_task is not None:
            await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> None:
        logger.info("Shutting down...")
        pending = len(self.state.active_operations)
        if pending:
            logger.info("Waiting for {} operation(s) to complete...", pending)
        if not await self.state.active_operations.wait_idle(self.shutdown_timeout):
            logger.warning(
                "Forcing exit ({} operation(s) still active)", len(self.state.active_operations)
            )
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
            with suppress(asyncio.CancelledError):
                await self._consumer
        if self.terminal is not None:
            self.terminal.release()
        for hook in self.cleanup:
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("Cleanup step failed: {}", exc)
        self.session_state = SessionState.TERMINATED
        self._terminated.set()
        logger.info("Goodbye")

    async def wait_terminated(self) -> None:
        await self._terminated.wait()


__all__ = [
    "CTRL_C",
    "SessionController",
    "SessionState",
    "TerminalInput",
]
