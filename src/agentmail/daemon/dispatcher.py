# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Notification dispatch for the mailman daemon.

Each wake of the monitor runs one dispatch cycle in two phases:

Phase 1, registered recipients (rows in ``recipients.jsonl``):
    A ``ready`` recipient with unread mail and ``notified == False`` gets one
    notification; on success the flag is persisted. A failed notification
    leaves the flag unchanged so the next wake retries. The flag is cleared
    only by a status change to ``work`` or ``offline``, never by time.

Phase 2, unregistered recipients (a mailbox but no registry row):
    Notifications are rate-limited per name by an in-memory
    ``StatelessTracker``. The tracker advances on success, on failure and
    when the target window is gone, so a dead target is not probed on every
    wake. Entries for names that no longer have a mailbox are pruned after
    the scan.

Example:
    Wiring the dispatcher against tmux::

        notifier = MultiplexerNotifier(TmuxMultiplexer())
        dispatcher = NotificationDispatcher(store, notifier, StatelessTracker())
        report = await dispatcher.dispatch()
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from ..config import DEFAULT_NOTIFY_TEXT
from ..logger import get_logger
from ..models import RecipientState, RecipientStatus

if TYPE_CHECKING:
    from ..prometheus import MailmanMetrics
    from ..store import MailStore
    from ..tmux import TerminalMultiplexer

PHASE_REGISTERED = "registered"
PHASE_STATELESS = "stateless"

logger = get_logger("agentmail.mailman")


class Notifier(Protocol):
    """Capability used by the dispatcher to reach a recipient's window."""

    async def notify(self, window: str) -> None:
        """Deliver a notification; raise on failure."""
        ...

    async def window_exists(self, window: str) -> bool: ...


class MultiplexerNotifier:
    """Notifier that types a fixed line into a multiplexer window and submits it.

    Args:
        multiplexer: The terminal multiplexer to drive.
        text: Line typed into the recipient's window.
        submit_delay: Seconds between typing the text and pressing Enter.
    """

    def __init__(
        self,
        multiplexer: TerminalMultiplexer,
        text: str = DEFAULT_NOTIFY_TEXT,
        submit_delay: float = 1.0,
    ):
        self.multiplexer = multiplexer
        self.text = text
        self.submit_delay = submit_delay

    async def notify(self, window: str) -> None:
        await self.multiplexer.send_text(window, self.text)
        await asyncio.sleep(self.submit_delay)
        await self.multiplexer.send_submit(window)

    async def window_exists(self, window: str) -> bool:
        return await self.multiplexer.window_exists(window)


class StatelessTracker:
    """Per-name notification timestamps for unregistered recipients.

    Entries live in memory only and are lost when the daemon restarts. All
    reads and writes go through one lock, so the tracker can be inspected
    from another thread while the dispatch loop uses it.

    Attributes:
        interval: Minimum seconds between two notifications to the same name.
    """

    def __init__(self, interval: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.interval = interval
        self._clock = clock
        self._lock = threading.Lock()
        self._last: dict[str, float] = {}

    def should_notify(self, name: str) -> bool:
        """True when ``name`` was never notified or the interval has elapsed."""
        with self._lock:
            last = self._last.get(name)
            if last is None:
                return True
            return self._clock() - last >= self.interval

    def mark_notified(self, name: str) -> None:
        with self._lock:
            self._last[name] = self._clock()

    def cleanup(self, active_names: Iterable[str]) -> int:
        """Drop entries whose name is not in ``active_names``.

        Returns:
            Number of entries removed.
        """
        active = set(active_names)
        with self._lock:
            stale = [name for name in self._last if name not in active]
            for name in stale:
                del self._last[name]
            return len(stale)

    def snapshot(self) -> dict[str, float]:
        """Copy of the current ``name -> last attempt`` map."""
        with self._lock:
            return dict(self._last)

    def __len__(self) -> int:
        with self._lock:
            return len(self._last)


@dataclass
class DispatchReport:
    """Outcome of one dispatch cycle."""

    notified: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    stateless_notified: list[str] = field(default_factory=list)
    stateless_failed: list[str] = field(default_factory=list)
    windows_missing: list[str] = field(default_factory=list)
    skipped: int = 0

    @property
    def attempts(self) -> int:
        return (
            len(self.notified)
            + len(self.failed)
            + len(self.stateless_notified)
            + len(self.stateless_failed)
        )


class NotificationDispatcher:
    """Decides who to notify on each wake and performs the notifications.

    Args:
        store: Mail store to scan.
        notifier: Capability used to notify and to probe windows. ``None``
            runs in dry mode: every eligible recipient counts as notified
            and flags and tracker are updated without contacting anyone.
        tracker: Rate limiter for unregistered recipients. ``None`` disables
            Phase 2.
        check_windows: Probe window existence before notifying unregistered
            recipients.
        metrics: Optional Prometheus collector.
    """

    def __init__(
        self,
        store: MailStore,
        notifier: Notifier | None,
        tracker: StatelessTracker | None = None,
        *,
        check_windows: bool = True,
        metrics: MailmanMetrics | None = None,
    ):
        self.store = store
        self.notifier = notifier
        self.tracker = tracker
        self.check_windows = check_windows
        self.metrics = metrics

    async def dispatch(self) -> DispatchReport:
        """Run one notification cycle.

        Raises:
            AgentMailError: If the registry cannot be read; no Phase 2 runs.
        """
        logger.debug("Starting notification cycle")
        report = DispatchReport()
        recipients = self.store.read_all_recipients()
        logger.debug("Found %d registered recipients", len(recipients))
        for state in recipients:
            await self._process_registered(state, report)
        await self._notify_stateless({state.recipient for state in recipients}, report)
        logger.debug("Notification cycle complete (%d attempts)", report.attempts)
        return report

    async def _process_registered(self, state: RecipientState, report: DispatchReport) -> None:
        name = state.recipient
        if state.status is not RecipientStatus.READY:
            logger.debug("Skipping %s: status=%s", name, state.status.value)
            report.skipped += 1
            return
        if state.notified:
            logger.debug("Skipping %s: already notified this session", name)
            report.skipped += 1
            return
        try:
            unread = self.store.find_unread(name)
        except Exception as exc:
            logger.warning("Cannot read mailbox for %s: %s", name, exc)
            report.skipped += 1
            return
        if not unread:
            report.skipped += 1
            return

        logger.debug("%s has %d unread message(s)", name, len(unread))
        if self.notifier is not None:
            try:
                await self.notifier.notify(name)
            except Exception as exc:
                logger.warning("Notification failed for %s: %s", name, exc)
                report.failed.append(name)
                self._count(PHASE_REGISTERED, ok=False)
                return
        try:
            self.store.set_notified_flag(name, True)
        except Exception as exc:
            logger.warning("Cannot persist notified flag for %s: %s", name, exc)
        logger.info("Notified %s (%d unread)", name, len(unread))
        report.notified.append(name)
        self._count(PHASE_REGISTERED, ok=True)

    async def _notify_stateless(self, registered: set[str], report: DispatchReport) -> None:
        if self.tracker is None:
            logger.debug("Stateless tracking disabled, skipping unregistered recipients")
            return
        try:
            mailboxes = self.store.list_mailbox_recipients()
        except OSError as exc:
            logger.warning("Cannot list mailboxes: %s", exc)
            return
        for name in mailboxes:
            if name not in registered:
                await self._process_stateless(name, report)
        removed = self.tracker.cleanup(mailboxes)
        if removed:
            logger.debug("Pruned %d tracker entries", removed)

    async def _process_stateless(self, name: str, report: DispatchReport) -> None:
        tracker = self.tracker
        try:
            unread = self.store.find_unread(name)
        except Exception as exc:
            logger.warning("Cannot read mailbox for %s: %s", name, exc)
            report.skipped += 1
            return
        if not unread:
            report.skipped += 1
            return
        if not tracker.should_notify(name):
            logger.debug("Skipping %s: notify interval not elapsed", name)
            report.skipped += 1
            return

        notifier = self.notifier
        if notifier is not None and self.check_windows:
            try:
                exists = await notifier.window_exists(name)
            except Exception as exc:
                logger.warning("Cannot check window for %s: %s", name, exc)
                report.skipped += 1
                return
            if not exists:
                logger.debug("Skipping %s: window does not exist", name)
                tracker.mark_notified(name)
                report.windows_missing.append(name)
                return

        if notifier is not None:
            try:
                await notifier.notify(name)
            except Exception as exc:
                logger.warning("Notification failed for %s: %s", name, exc)
                tracker.mark_notified(name)
                report.stateless_failed.append(name)
                self._count(PHASE_STATELESS, ok=False)
                return
        tracker.mark_notified(name)
        logger.info("Notified unregistered recipient %s (%d unread)", name, len(unread))
        report.stateless_notified.append(name)
        self._count(PHASE_STATELESS, ok=True)

    def _count(self, phase: str, *, ok: bool) -> None:
        if self.metrics is None:
            return
        if ok:
            self.metrics.inc_notification(phase)
        else:
            self.metrics.inc_failure(phase)


__all__ = [
    "DispatchReport",
    "MultiplexerNotifier",
    "NotificationDispatcher",
    "Notifier",
    "StatelessTracker",
]
