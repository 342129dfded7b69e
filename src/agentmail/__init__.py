# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""agentmail: file-backed mail between agents sharing a tmux session.

Agents exchange messages through per-recipient JSONL mailboxes under a store
root (``.agentmail`` at the git root by default). The mailman daemon watches
the store and types a short notice into a recipient's tmux window when
unread mail is waiting.

Main components:
    - MailStore: locked access to the recipient registry and mailboxes.
    - DaemonLifecycleManager: singleton start/stop of the mailman daemon.
    - MonitorEngine: debounced filesystem watching with a fallback tick.
    - NotificationDispatcher: decides who gets notified on each wake.
    - RetentionEngine: prunes stale registry rows, old mail and empty mailboxes.

Example:
    Running the daemon from a shell::

        agentmail mailman --daemon
        agentmail send reviewer "patch ready"
        agentmail cleanup --dry-run
"""

from .daemon import (
    DaemonLifecycleManager,
    MonitorEngine,
    NotificationDispatcher,
    RetentionEngine,
    StatelessTracker,
)
from .models import Message, RecipientState, RecipientStatus
from .store import MailStore

__version__ = "0.4.0"

__all__ = [
    "DaemonLifecycleManager",
    "MailStore",
    "Message",
    "MonitorEngine",
    "NotificationDispatcher",
    "RecipientState",
    "RecipientStatus",
    "RetentionEngine",
    "StatelessTracker",
    "__version__",
]
