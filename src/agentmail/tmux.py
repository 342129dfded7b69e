# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Terminal multiplexer adapter.

Recipients are tmux window names. The daemon needs four operations from the
multiplexer: list windows, check that one exists, type text into one, and
submit (press Enter). ``TerminalMultiplexer`` is the protocol the daemon
depends on; ``TmuxMultiplexer`` implements it by shelling out to ``tmux``.
"""

from __future__ import annotations

import asyncio
import os
import re
import shutil
from typing import Protocol, runtime_checkable

from .errors import MultiplexerError
from .logger import get_logger

PANE_ID_RE = re.compile(r"^%\d+$")

logger = get_logger("agentmail.tmux")


@runtime_checkable
class TerminalMultiplexer(Protocol):
    """Operations the daemon needs from a terminal multiplexer."""

    async def list_windows(self) -> list[str]: ...

    async def window_exists(self, name: str) -> bool: ...

    async def send_text(self, window: str, text: str) -> None: ...

    async def send_submit(self, window: str) -> None: ...


def in_tmux() -> bool:
    """Whether the current process runs inside a tmux session."""
    return bool(os.environ.get("TMUX"))


class TmuxMultiplexer:
    """``TerminalMultiplexer`` backed by the ``tmux`` command-line client.

    Args:
        binary: Executable name or path. Resolved through ``PATH`` on first use.
        timeout: Seconds allowed for a single tmux invocation.
    """

    def __init__(self, binary: str = "tmux", timeout: float = 5.0):
        self.binary = binary
        self.timeout = timeout

    def _executable(self) -> str:
        path = shutil.which(self.binary)
        if path is None:
            raise MultiplexerError(f"{self.binary} executable not found in PATH")
        return path

    async def _run(self, *args: str) -> str:
        proc = await asyncio.create_subprocess_exec(
            self._executable(),
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise MultiplexerError(f"tmux {args[0]} timed out after {self.timeout}s") from None
        if proc.returncode != 0:
            detail = stderr.decode(errors="replace").strip() or f"exit status {proc.returncode}"
            raise MultiplexerError(f"tmux {args[0]} failed: {detail}")
        return stdout.decode(errors="replace")

    async def list_windows(self) -> list[str]:
        output = await self._run("list-windows", "-F", "#{window_name}")
        return [line.strip() for line in output.splitlines() if line.strip()]

    async def window_exists(self, name: str) -> bool:
        return name in await self.list_windows()

    async def send_text(self, window: str, text: str) -> None:
        # -l sends the text literally so key names in it are not interpreted
        await self._run("send-keys", "-t", window, "-l", text)

    async def send_submit(self, window: str) -> None:
        await self._run("send-keys", "-t", window, "Enter")

    async def current_window(self) -> str:
        """Name of the window that owns ``$TMUX_PANE``.

        Raises:
            MultiplexerError: Outside tmux or when the pane id is malformed.
        """
        if not in_tmux():
            raise MultiplexerError("not running inside a tmux session")
        pane = os.environ.get("TMUX_PANE", "")
        if not PANE_ID_RE.match(pane):
            raise MultiplexerError(f"invalid TMUX_PANE value: {pane!r}")
        output = await self._run("display-message", "-t", pane, "-p", "#W")
        name = output.strip()
        if not name:
            raise MultiplexerError("tmux returned an empty window name")
        return name


__all__ = ["PANE_ID_RE", "TerminalMultiplexer", "TmuxMultiplexer", "in_tmux"]
