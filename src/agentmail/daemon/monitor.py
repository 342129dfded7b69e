# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Filesystem monitoring loop for the mailman daemon.

The engine turns filesystem activity under the store root into dispatch
calls:

- A watchdog observer watches the store root (for ``recipients.jsonl``) and
  the mailbox directory, both non-recursively. If the mailbox directory does
  not exist yet, it is watched as soon as its creation is seen.
- Relevant events restart a trailing-edge ``Debouncer``; the dispatch runs
  once the window passes with no further event.
- A fallback tick runs the dispatch unconditionally every
  ``fallback_interval`` seconds, bounding notification latency when events
  are missed.

Observer callbacks run on watchdog's thread; they only post into an
``asyncio.Queue`` through ``call_soon_threadsafe``. All dispatches happen on
the event loop, one at a time.

In ``POLLING`` mode no observer is started and only the fallback tick runs.
"""

from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Awaitable, Callable
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..errors import WatchBackendError
from ..logger import get_logger

if TYPE_CHECKING:
    from ..prometheus import MailmanMetrics

DEFAULT_DEBOUNCE_WINDOW = 0.5
DEFAULT_FALLBACK_INTERVAL = 60.0

_MAILBOX = "mailbox"
_REGISTRY = "registry"
_MAILBOX_DIR_CREATED = "mailbox_dir_created"
_DEBOUNCED = "debounced"
_CLOSE = "close"

logger = get_logger("agentmail.mailman")


class MonitoringMode(str, Enum):
    """How the engine learns about changes."""

    WATCHING = "watching"
    POLLING = "polling"


class Debouncer:
    """Trailing-edge debouncer bound to the running event loop.

    Every ``trigger`` cancels the pending timer and arms a new one, so the
    callback fires once, ``window`` seconds after the last trigger of a burst.
    Must be used from the event loop thread.
    """

    def __init__(self, window: float = DEFAULT_DEBOUNCE_WINDOW):
        self.window = window
        self._handle: asyncio.TimerHandle | None = None

    def trigger(self, callback: Callable[[], Any]) -> None:
        if self._handle is not None:
            self._handle.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(self.window, self._fire, callback)

    def _fire(self, callback: Callable[[], Any]) -> None:
        self._handle = None
        callback()

    def stop(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    @property
    def pending(self) -> bool:
        return self._handle is not None


class _StoreEventHandler(FileSystemEventHandler):
    """Forwards relevant watchdog events to the engine (runs on watchdog's thread)."""

    def __init__(self, engine: MonitorEngine):
        super().__init__()
        self.engine = engine

    def on_any_event(self, event: FileSystemEvent) -> None:
        kind = self.engine.classify(event)
        if kind is not None:
            self.engine._post(kind)


class MonitorEngine:
    """Hybrid event/poll loop that invokes a dispatch callback.

    Args:
        root: Store root; holds the registry file.
        mailbox_dir: Directory holding the mailbox files.
        registry_path: Path of the registry file.
        debounce_window: Seconds of quiet before an event-driven dispatch.
        fallback_interval: Seconds between unconditional dispatches.
        mode: Initial monitoring mode.
        observer_factory: Builds the watchdog observer.
        metrics: Optional Prometheus collector.
    """

    def __init__(
        self,
        root: Path | str,
        mailbox_dir: Path | str,
        registry_path: Path | str,
        *,
        debounce_window: float = DEFAULT_DEBOUNCE_WINDOW,
        fallback_interval: float = DEFAULT_FALLBACK_INTERVAL,
        mode: MonitoringMode = MonitoringMode.WATCHING,
        observer_factory: Callable[[], Any] = Observer,
        metrics: MailmanMetrics | None = None,
    ):
        self.root = Path(root)
        self.mailbox_dir = Path(mailbox_dir)
        self.registry_path = Path(registry_path)
        self.fallback_interval = fallback_interval
        self.debouncer = Debouncer(debounce_window)
        self.observer_factory = observer_factory
        self.metrics = metrics
        self._mode = MonitoringMode(mode)
        self._closing = threading.Event()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[Any] | None = None
        self._observer: Any = None
        self._handler = _StoreEventHandler(self)
        self._mailbox_watch: Any = None
        self._pending_error: BaseException | None = None

    @property
    def mode(self) -> MonitoringMode:
        return self._mode

    # ----------------------------------------------------------- thread-safe
    def close(self) -> None:
        """Stop the engine; ``run`` returns after the current dispatch, if any."""
        self._closing.set()
        self._post(_CLOSE)

    def report_error(self, exc: BaseException) -> None:
        """Report a watch backend failure; ``run`` raises WatchBackendError."""
        if not self._post(exc):
            self._pending_error = exc

    def _post(self, item: Any) -> bool:
        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            return False
        try:
            loop.call_soon_threadsafe(queue.put_nowait, item)
        except RuntimeError:
            # loop already closed
            return False
        return True

    def classify(self, event: FileSystemEvent) -> str | None:
        """Map a watchdog event to an engine signal, or None when irrelevant."""
        if event.event_type not in ("created", "modified", "moved"):
            return None
        raw = event.dest_path if event.event_type == "moved" else event.src_path
        path = os.path.normpath(os.fsdecode(raw))
        if event.is_directory:
            if event.event_type in ("created", "moved") and path == os.path.normpath(self.mailbox_dir):
                return _MAILBOX_DIR_CREATED
            return None
        if path == os.path.normpath(self.registry_path):
            return _REGISTRY
        if path.endswith(".jsonl") and os.path.dirname(path) == os.path.normpath(self.mailbox_dir):
            return _MAILBOX
        return None

    # -------------------------------------------------------------- watches
    def _start_observer(self) -> None:
        observer = self.observer_factory()
        try:
            observer.schedule(self._handler, str(self.root), recursive=False)
            if self.mailbox_dir.is_dir():
                self._mailbox_watch = observer.schedule(self._handler, str(self.mailbox_dir), recursive=False)
            else:
                logger.info("Mailbox directory %s does not exist yet, waiting for it", self.mailbox_dir)
            observer.start()
        except OSError as exc:
            raise WatchBackendError(f"cannot watch {self.root}: {exc}") from exc
        self._observer = observer

    def _watch_mailbox_dir(self) -> None:
        observer = self._observer
        if observer is None:
            return
        if self._mailbox_watch is not None:
            try:
                observer.unschedule(self._mailbox_watch)
            except KeyError:
                pass
        try:
            self._mailbox_watch = observer.schedule(self._handler, str(self.mailbox_dir), recursive=False)
        except OSError as exc:
            raise WatchBackendError(f"cannot watch {self.mailbox_dir}: {exc}") from exc
        logger.info("Watching mailbox directory %s", self.mailbox_dir)

    def _stop_observer(self) -> None:
        observer, self._observer = self._observer, None
        self._mailbox_watch = None
        if observer is None:
            return
        try:
            observer.stop()
            observer.join(timeout=2.0)
        except RuntimeError:
            # never started
            pass

    # ------------------------------------------------------------------ loop
    async def run(self, dispatch: Callable[[], Awaitable[Any]]) -> None:
        """Run until ``close`` is called.

        Args:
            dispatch: Coroutine function invoked once per wake. Exceptions it
                raises are logged and do not stop the loop.

        Raises:
            WatchBackendError: If the watch backend fails; watches are
                released before the error propagates.
        """
        loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._loop = loop
        if self._pending_error is not None:
            self._queue.put_nowait(self._pending_error)
            self._pending_error = None

        try:
            if self._mode is MonitoringMode.WATCHING:
                self._start_observer()
            if self.metrics is not None:
                self.metrics.set_watching(self._mode is MonitoringMode.WATCHING)
            logger.info(
                "Monitoring %s (mode=%s, fallback every %.0fs)", self.root, self._mode.value, self.fallback_interval
            )

            next_tick = loop.time() + self.fallback_interval
            while not self._closing.is_set():
                timeout = max(0.0, next_tick - loop.time())
                try:
                    item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
                except asyncio.TimeoutError:
                    item = None

                if item == _CLOSE:
                    break
                if isinstance(item, BaseException):
                    raise WatchBackendError(f"watch backend failed: {item}") from item
                if item is None:
                    if self._observer is not None and not self._observer.is_alive():
                        raise WatchBackendError("watch observer thread stopped unexpectedly")
                    await self._dispatch(dispatch, "fallback")
                    next_tick = loop.time() + self.fallback_interval
                elif item == _DEBOUNCED:
                    await self._dispatch(dispatch, "event")
                elif item == _MAILBOX_DIR_CREATED:
                    self._watch_mailbox_dir()
                    self.debouncer.trigger(self._debounce_fired)
                elif item in (_MAILBOX, _REGISTRY):
                    self.debouncer.trigger(self._debounce_fired)
        finally:
            self.debouncer.stop()
            self._stop_observer()
            self._loop = None
            self._queue = None
            logger.debug("Monitor loop stopped")

    def _debounce_fired(self) -> None:
        if self._queue is not None:
            self._queue.put_nowait(_DEBOUNCED)

    async def _dispatch(self, dispatch: Callable[[], Awaitable[Any]], trigger: str) -> None:
        if self.metrics is not None:
            self.metrics.inc_cycle(trigger)
        logger.debug("Dispatch triggered by %s", trigger)
        try:
            await dispatch()
        except Exception:
            logger.exception("Notification cycle failed")


__all__ = [
    "DEFAULT_DEBOUNCE_WINDOW",
    "DEFAULT_FALLBACK_INTERVAL",
    "Debouncer",
    "MonitorEngine",
    "MonitoringMode",
]
