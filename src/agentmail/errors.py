# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for agentmail.

Every error carries a short machine-readable ``code`` and the process exit
code the command-line boundary maps it to (0 success, 1 environment or I/O
error, 2 singleton conflict).
"""

from __future__ import annotations

from pathlib import Path

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFLICT = 2


class AgentMailError(Exception):
    """Base class for all agentmail errors."""

    code = "agentmail_error"
    exit_code = EXIT_ERROR

    def __init__(self, message: str = "agentmail error"):
        super().__init__(message)
        self.message = message


class ConfigurationError(AgentMailError):
    """Raised when the store root is unusable or its directories cannot be created."""

    code = "configuration_error"


class PidFileError(AgentMailError):
    """Raised when the PID file exists but cannot be read or parsed."""

    code = "corrupted_pid_file"


class SingletonConflictError(AgentMailError):
    """Raised when a live daemon already owns the store."""

    code = "singleton_conflict"
    exit_code = EXIT_CONFLICT

    def __init__(self, pid: int):
        super().__init__(f"mailman daemon already running (PID: {pid})")
        self.pid = pid


class LockContentionError(AgentMailError):
    """Raised when an exclusive file lock cannot be acquired in time."""

    code = "lock_contention"

    def __init__(self, path: Path | str, timeout: float):
        super().__init__(f"file is locked by another process: {path} (waited {timeout:.2f}s)")
        self.path = Path(path)
        self.timeout = timeout


class WatchBackendError(AgentMailError):
    """Raised when the filesystem watch backend fails."""

    code = "watch_backend_failure"


class MultiplexerError(AgentMailError):
    """Raised when a terminal multiplexer command fails."""

    code = "multiplexer_failure"


class InvalidRecipientError(AgentMailError, ValueError):
    """Raised when a recipient name cannot be used as a mailbox file stem."""

    code = "invalid_recipient"

    def __init__(self, name: str):
        super().__init__(f"invalid recipient name: {name!r}")
        self.name = name


__all__ = [
    "EXIT_CONFLICT",
    "EXIT_ERROR",
    "EXIT_OK",
    "AgentMailError",
    "ConfigurationError",
    "InvalidRecipientError",
    "LockContentionError",
    "MultiplexerError",
    "PidFileError",
    "SingletonConflictError",
    "WatchBackendError",
]
