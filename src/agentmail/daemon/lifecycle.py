# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Singleton lifecycle of the mailman daemon.

One daemon may run per store. Ownership is recorded in ``<root>/mailman.pid``
(the PID followed by a newline) and verified with a signal-0 liveness probe:

- a live PID means another daemon owns the store: the start fails with
  ``SingletonConflictError`` (exit code 2) and the file is left untouched;
- a dead PID is stale: a warning is logged, the file is removed and the
  start proceeds;
- no file: the start proceeds.

In foreground mode the manager writes its own PID, runs the startup
stale-state pass and the monitor loop until SIGTERM/SIGINT or the stop
token, then removes the PID file. In background mode a ``ProcessLauncher``
spawns a detached child that goes through the same foreground start; the
parent returns immediately and never writes a PID.

If the watch backend fails, the monitor loop is restarted in polling mode
so the fallback tick keeps notifications flowing.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
import subprocess
import sys
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Any, Protocol

from ..config import MailmanConfig
from ..errors import EXIT_OK, AgentMailError, ConfigurationError, PidFileError, SingletonConflictError, WatchBackendError
from ..logger import get_logger
from ..prometheus import MailmanMetrics
from ..store import MailStore
from ..tmux import TmuxMultiplexer
from .dispatcher import MultiplexerNotifier, NotificationDispatcher, StatelessTracker
from .monitor import MonitorEngine, MonitoringMode
from .retention import RetentionEngine

DAEMON_CHILD_ENV = "AGENTMAIL_DAEMON_CHILD"
LOG_FILE = "mailman.log"
STOP_POLL_INTERVAL = 0.1

logger = get_logger("agentmail.mailman")


class DaemonStatus(str, Enum):
    """Result of inspecting the PID file."""

    NONE = "none"
    RUNNING = "running"
    STALE = "stale"


class PidFile:
    """Plain-text PID file at a fixed path."""

    def __init__(self, path: Path | str):
        self.path = Path(path)

    def read(self) -> int | None:
        """Return the recorded PID, or None when the file does not exist.

        Raises:
            PidFileError: If the file cannot be read or holds no valid PID.
        """
        try:
            raw = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PidFileError(f"cannot read PID file {self.path}: {exc}") from exc
        try:
            pid = int(raw.strip())
        except ValueError:
            raise PidFileError(f"corrupted PID file {self.path}: {raw.strip()!r}") from None
        if pid <= 0:
            raise PidFileError(f"corrupted PID file {self.path}: {pid}")
        return pid

    def write(self, pid: int) -> None:
        self.path.write_text(f"{pid}\n")

    def remove(self, expected: int | None = None) -> None:
        """Delete the file; with ``expected``, only if it still records that PID."""
        if expected is not None:
            try:
                if self.read() != expected:
                    return
            except PidFileError:
                return
        self.path.unlink(missing_ok=True)

    @staticmethod
    def is_alive(pid: int) -> bool:
        """Probe ``pid`` with signal 0; a process we may not signal is alive."""
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        except OSError:
            return False
        return True


def is_daemon_child() -> bool:
    """Whether this process was spawned by ``SubprocessLauncher``."""
    return os.environ.get(DAEMON_CHILD_ENV) == "1"


class ProcessLauncher(Protocol):
    """Spawns a detached daemon process for a store root."""

    def launch(self, root: Path) -> int:
        """Start the child and return its PID."""
        ...


class SubprocessLauncher:
    """Re-executes the interpreter as ``python -m agentmail --root <root> mailman``.

    The child runs in its own session with stdin/stdout detached and stderr
    appended to ``<root>/mailman.log``. ``AGENTMAIL_DAEMON_CHILD=1`` marks it
    as the background child.
    """

    def __init__(self, executable: str | None = None):
        self.executable = executable or sys.executable

    def command(self, root: Path) -> list[str]:
        return [self.executable, "-m", "agentmail", "--root", str(root), "mailman"]

    def launch(self, root: Path) -> int:
        if not self.executable or not os.path.isfile(self.executable):
            raise ConfigurationError(f"cannot locate Python executable: {self.executable!r}")
        env = os.environ.copy()
        env[DAEMON_CHILD_ENV] = "1"
        root = Path(root)
        with open(root / LOG_FILE, "ab") as log:
            proc = subprocess.Popen(
                self.command(root),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=log,
                start_new_session=True,
                env=env,
            )
        return proc.pid


def stop_daemon(store: MailStore, timeout: float = 5.0, force: bool = False) -> int | None:
    """Signal the store's daemon and wait for it to exit.

    Args:
        store: Store whose daemon should stop.
        timeout: Seconds to wait for the process to exit.
        force: Send SIGKILL instead of SIGTERM.

    Returns:
        The PID that was stopped, or None when no daemon was running (a stale
        PID file is removed).

    Raises:
        AgentMailError: If the process is still alive after ``timeout``.
    """
    pid_file = PidFile(store.pid_path)
    pid = pid_file.read()
    if pid is None:
        return None
    if not PidFile.is_alive(pid):
        pid_file.remove()
        return None

    try:
        os.kill(pid, signal.SIGKILL if force else signal.SIGTERM)
    except ProcessLookupError:
        pid_file.remove(expected=pid)
        return pid

    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not PidFile.is_alive(pid):
            # a SIGKILLed daemon cannot clean up after itself
            pid_file.remove(expected=pid)
            return pid
        time.sleep(0.1)
    raise AgentMailError(f"mailman daemon (PID {pid}) did not exit within {timeout:.0f}s")


class DaemonLifecycleManager:
    """Starts, runs and stops the mailman daemon for one store.

    Args:
        store: The mail store the daemon serves.
        config: Daemon configuration. Defaults to MailmanConfig for the store root.
        dispatcher: Notification dispatcher. Defaults to one driving tmux.
        retention: Retention engine used for the startup stale-state pass.
        launcher: Spawns the background child. Defaults to SubprocessLauncher.
        stop_token: Event that, once set, stops the running daemon.
        metrics: Optional Prometheus collector; written to
            ``config.metrics_file`` after each cycle when configured.
        observer_factory: Watchdog observer factory passed to the monitor.
    """

    def __init__(
        self,
        store: MailStore,
        config: MailmanConfig | None = None,
        *,
        dispatcher: NotificationDispatcher | None = None,
        retention: RetentionEngine | None = None,
        launcher: ProcessLauncher | None = None,
        stop_token: threading.Event | None = None,
        metrics: MailmanMetrics | None = None,
        observer_factory: Any = None,
    ):
        self.store = store
        self.config = config or MailmanConfig(root=store.root)
        self.metrics = metrics
        if dispatcher is None:
            timing = self.config.timing
            notifier = MultiplexerNotifier(TmuxMultiplexer(), self.config.notify_text, timing.submit_delay)
            dispatcher = NotificationDispatcher(
                store, notifier, StatelessTracker(timing.stateless_notify_interval), metrics=metrics
            )
        self.dispatcher = dispatcher
        self.retention = retention or RetentionEngine(store, metrics=metrics)
        self.launcher = launcher or SubprocessLauncher()
        self.stop_token = stop_token or threading.Event()
        self.observer_factory = observer_factory
        self.pid_file = PidFile(store.pid_path)
        self._monitor: MonitorEngine | None = None

    @property
    def mode(self) -> MonitoringMode | None:
        """Mode of the running monitor, None when not running."""
        monitor = self._monitor
        return monitor.mode if monitor is not None else None

    def check_existing_daemon(self) -> tuple[DaemonStatus, int | None]:
        """Inspect the PID file without side effects.

        Raises:
            PidFileError: If the PID file is corrupted.
        """
        pid = self.pid_file.read()
        if pid is None:
            return DaemonStatus.NONE, None
        if PidFile.is_alive(pid):
            return DaemonStatus.RUNNING, pid
        return DaemonStatus.STALE, pid

    async def start(self, *, background: bool = False) -> int:
        """Start the daemon in the foreground or background.

        Returns:
            Exit status (0) once the foreground loop stops, or immediately
            after spawning the background child.

        Raises:
            SingletonConflictError: If a live daemon already owns the store.
            PidFileError: If the PID file is corrupted.
            ConfigurationError: If the store or the child cannot be set up.
        """
        status, pid = self.check_existing_daemon()
        if status is DaemonStatus.RUNNING:
            raise SingletonConflictError(pid)
        if status is DaemonStatus.STALE:
            logger.warning("Stale PID file found (PID %d), cleaning up", pid)
            self.pid_file.remove()

        self.store.ensure_dirs()
        if background:
            child = self.launcher.launch(self.store.root)
            logger.info("Mailman daemon started in background (PID %d)", child)
            return EXIT_OK
        return await self.run_foreground()

    async def run_foreground(self) -> int:
        """Own the PID file and run the monitor loop until stopped."""
        self.store.ensure_dirs()
        pid = os.getpid()
        self.pid_file.write(pid)
        logger.info("Mailman daemon started (PID %d, root %s)", pid, self.store.root)

        loop = asyncio.get_running_loop()
        installed = self._install_signal_handlers(loop)
        watcher = asyncio.create_task(self._watch_stop_token())
        try:
            try:
                self.retention.clean_stale(self.config.retention.startup_stale_threshold)
            except (AgentMailError, OSError) as exc:
                logger.warning("Startup stale-state cleanup failed: %s", exc)
            await self._run_monitor()
        finally:
            watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
            for signum in installed:
                loop.remove_signal_handler(signum)
            self.pid_file.remove(expected=pid)
            logger.info("Mailman daemon stopped")
        return EXIT_OK

    def stop(self) -> None:
        """Request shutdown; safe to call from any thread or a signal handler."""
        self.stop_token.set()
        monitor = self._monitor
        if monitor is not None:
            monitor.close()

    async def _run_monitor(self) -> None:
        timing = self.config.timing
        mode = MonitoringMode.WATCHING
        while not self.stop_token.is_set():
            kwargs: dict[str, Any] = {}
            if self.observer_factory is not None:
                kwargs["observer_factory"] = self.observer_factory
            monitor = MonitorEngine(
                self.store.root,
                self.store.mailbox_dir,
                self.store.registry_path,
                debounce_window=timing.debounce_window,
                fallback_interval=timing.fallback_interval,
                mode=mode,
                metrics=self.metrics,
                **kwargs,
            )
            self._monitor = monitor
            if self.stop_token.is_set():
                monitor.close()
            try:
                await monitor.run(self._dispatch_cycle)
                return
            except WatchBackendError as exc:
                if mode is MonitoringMode.POLLING:
                    raise
                logger.warning(
                    "%s; falling back to polling every %.0fs", exc.message, timing.fallback_interval
                )
                mode = MonitoringMode.POLLING
            finally:
                self._monitor = None

    async def _dispatch_cycle(self) -> None:
        await self.dispatcher.dispatch()
        if self.metrics is not None and self.config.metrics_file is not None:
            try:
                self.metrics.write_textfile(self.config.metrics_file)
            except OSError as exc:
                logger.warning("Cannot write metrics file %s: %s", self.config.metrics_file, exc)

    async def _watch_stop_token(self) -> None:
        while not self.stop_token.is_set():
            await asyncio.sleep(STOP_POLL_INTERVAL)
        monitor = self._monitor
        if monitor is not None:
            monitor.close()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> list[int]:
        if threading.current_thread() is not threading.main_thread():
            return []
        installed = []
        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(signum)
        return installed


__all__ = [
    "DAEMON_CHILD_ENV",
    "DaemonLifecycleManager",
    "DaemonStatus",
    "PidFile",
    "ProcessLauncher",
    "SubprocessLauncher",
    "is_daemon_child",
    "stop_daemon",
]
