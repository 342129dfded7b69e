# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Threshold-based retention for the registry and mailboxes.

A retention run executes four passes in order:

1. Offline recipients: registry rows whose name is not a current
   multiplexer window. Skipped with a warning when the window list cannot
   be obtained.
2. Stale states: registry rows not updated within ``stale_threshold``.
3. Aged messages: read messages older than ``delivered_threshold``.
4. Empty mailboxes: mailbox files with no messages left after pass 3.

A mailbox that stays locked by another process in pass 3 or pass 4 is
skipped and counted once in ``files_skipped``; any other error aborts the
run.

Example:
    Dry-run from the command line layer::

        engine = RetentionEngine(store, TmuxMultiplexer())
        result = await engine.run(RetentionOptions(dry_run=True))
        print(result.recipients_removed, result.messages_removed)
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from ..errors import LockContentionError, MultiplexerError
from ..logger import get_logger
from ..models import utc_now

if TYPE_CHECKING:
    from ..prometheus import MailmanMetrics
    from ..store import MailStore
    from ..tmux import TerminalMultiplexer

logger = get_logger("agentmail.retention")


@dataclass
class RetentionOptions:
    """Thresholds and mode for one retention run."""

    stale_threshold: timedelta = field(default_factory=lambda: timedelta(hours=48))
    delivered_threshold: timedelta = field(default_factory=lambda: timedelta(hours=2))
    dry_run: bool = False


@dataclass
class RetentionResult:
    """Counts produced by a retention run (would-be counts in dry-run)."""

    offline_removed: int = 0
    stale_removed: int = 0
    messages_removed: int = 0
    mailboxes_removed: int = 0
    files_skipped: int = 0
    offline_checked: bool = False

    @property
    def recipients_removed(self) -> int:
        return self.offline_removed + self.stale_removed


class RetentionEngine:
    """Runs the retention passes against a MailStore.

    Args:
        store: Store to prune.
        multiplexer: Source of the currently valid recipient names for the
            offline pass. Without one the pass needs explicit ``valid_names``.
        metrics: Optional Prometheus collector.
    """

    def __init__(
        self,
        store: MailStore,
        multiplexer: TerminalMultiplexer | None = None,
        metrics: MailmanMetrics | None = None,
    ):
        self.store = store
        self.multiplexer = multiplexer
        self.metrics = metrics

    async def run(
        self, options: RetentionOptions | None = None, valid_names: Iterable[str] | None = None
    ) -> RetentionResult:
        """Execute all four passes.

        Args:
            options: Thresholds and dry-run flag. Defaults to RetentionOptions().
            valid_names: Names to keep in the offline pass. Defaults to the
                multiplexer's window list.

        Returns:
            Per-pass counts.

        Raises:
            AgentMailError: Any failure other than mailbox lock contention.
            OSError: Unrecoverable filesystem errors.
        """
        options = options or RetentionOptions()
        result = RetentionResult()
        now = utc_now()

        names = await self._valid_names(valid_names)
        if names is None:
            logger.warning("Cannot list multiplexer windows, skipping offline recipient check")
        else:
            result.offline_checked = True
            result.offline_removed = self.store.clean_offline_recipients(names, dry_run=options.dry_run)

        result.stale_removed = self.store.clean_stale_states(
            options.stale_threshold, dry_run=options.dry_run, now=now
        )

        skipped: list[str] = []
        emptied: set[str] = set()
        for recipient in self.store.list_mailbox_recipients():
            try:
                removed = self.store.clean_old_messages(
                    recipient, options.delivered_threshold, dry_run=options.dry_run, now=now
                )
                if options.dry_run and removed and removed == len(self.store.read_mailbox(recipient)):
                    emptied.add(recipient)
            except LockContentionError:
                logger.warning("Mailbox %s is locked, skipping", recipient)
                skipped.append(recipient)
                continue
            result.messages_removed += removed

        if options.dry_run:
            emptied.update(self.store.empty_mailboxes(skipped))
            result.mailboxes_removed = len(emptied)
        else:
            result.mailboxes_removed = self.store.remove_empty_mailboxes(skipped=skipped)
        result.files_skipped = len(set(skipped))

        logger.info(
            "Retention%s: %d offline, %d stale, %d messages, %d mailboxes removed, %d skipped",
            " (dry run)" if options.dry_run else "",
            result.offline_removed,
            result.stale_removed,
            result.messages_removed,
            result.mailboxes_removed,
            result.files_skipped,
        )
        if self.metrics is not None and not options.dry_run:
            self.metrics.add_removed("offline", result.offline_removed)
            self.metrics.add_removed("stale", result.stale_removed)
            self.metrics.add_removed("message", result.messages_removed)
            self.metrics.add_removed("mailbox", result.mailboxes_removed)
        return result

    def clean_stale(self, threshold: timedelta) -> int:
        """Run the stale-state pass alone (used at daemon startup)."""
        removed = self.store.clean_stale_states(threshold)
        if removed:
            logger.info("Removed %d stale recipient state(s) older than %s", removed, threshold)
        if self.metrics is not None:
            self.metrics.add_removed("stale", removed)
        return removed

    async def _valid_names(self, valid_names: Iterable[str] | None) -> list[str] | None:
        if valid_names is not None:
            return list(valid_names)
        if self.multiplexer is None:
            return None
        try:
            return await self.multiplexer.list_windows()
        except MultiplexerError as exc:
            logger.debug("Window listing failed: %s", exc)
            return None


__all__ = ["RetentionEngine", "RetentionOptions", "RetentionResult"]
