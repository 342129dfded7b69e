# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""The mailman daemon: lifecycle, monitoring, dispatch and retention."""

from .dispatcher import DispatchReport, MultiplexerNotifier, NotificationDispatcher, Notifier, StatelessTracker
from .lifecycle import (
    DAEMON_CHILD_ENV,
    DaemonLifecycleManager,
    DaemonStatus,
    PidFile,
    ProcessLauncher,
    SubprocessLauncher,
    is_daemon_child,
    stop_daemon,
)
from .monitor import Debouncer, MonitorEngine, MonitoringMode
from .retention import RetentionEngine, RetentionOptions, RetentionResult

__all__ = [
    "DAEMON_CHILD_ENV",
    "DaemonLifecycleManager",
    "DaemonStatus",
    "Debouncer",
    "DispatchReport",
    "MonitorEngine",
    "MonitoringMode",
    "MultiplexerNotifier",
    "NotificationDispatcher",
    "Notifier",
    "PidFile",
    "ProcessLauncher",
    "RetentionEngine",
    "RetentionOptions",
    "RetentionResult",
    "StatelessTracker",
    "SubprocessLauncher",
    "is_daemon_child",
    "stop_daemon",
]
