# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration dataclasses and loader for agentmail.

Provides a nested configuration structure for the mailman daemon and the
cleanup command:

- config.timing.debounce_window
- config.timing.fallback_interval
- config.retention.stale_hours

Values come from built-in defaults, then an optional INI file
(``<root>/config.ini``), then ``AGENTMAIL_*`` environment variables.

Example:
    Configuration file format (config.ini)::

        [mailman]
        debounce_window_ms = 500
        fallback_interval = 60
        stateless_notify_interval = 60
        submit_delay = 1.0
        notify_text = Check your agentmail
        metrics_file = /tmp/agentmail.prom

        [cleanup]
        stale_hours = 48
        delivered_hours = 2

    Loading it::

        root = resolve_root(None)
        config = load_config(root)
        window = config.timing.debounce_window
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from .errors import ConfigurationError
from .logger import get_logger

ROOT_DIR_NAME = ".agentmail"
CONFIG_FILE_NAME = "config.ini"
IGNORE_FILE_NAME = ".agentmailignore"
ENV_ROOT = "AGENTMAIL_ROOT"
DEFAULT_NOTIFY_TEXT = "Check your agentmail"

logger = get_logger("agentmail.config")


@dataclass
class TimingConfig:
    """Timing and interval settings for the mailman daemon."""

    debounce_window: float = 0.5
    """Seconds of filesystem quiet before a debounced dispatch fires."""

    fallback_interval: float = 60.0
    """Seconds between unconditional safety-net dispatches."""

    stateless_notify_interval: float = 60.0
    """Minimum seconds between notifications to an unregistered recipient."""

    submit_delay: float = 1.0
    """Seconds to wait between typing the notification text and submitting it."""

    lock_timeout: float = 2.0
    """Seconds to retry a file lock before reporting contention."""


@dataclass
class RetentionConfig:
    """Retention thresholds for the cleanup passes."""

    stale_hours: float = 48.0
    """Registry rows not updated for longer than this are removed."""

    delivered_hours: float = 2.0
    """Read messages older than this are removed."""

    startup_stale_seconds: int = 3600
    """Stale-state threshold applied by the daemon at startup."""

    @property
    def stale_threshold(self) -> timedelta:
        return timedelta(hours=self.stale_hours)

    @property
    def delivered_threshold(self) -> timedelta:
        return timedelta(hours=self.delivered_hours)

    @property
    def startup_stale_threshold(self) -> timedelta:
        return timedelta(seconds=self.startup_stale_seconds)


@dataclass
class MailmanConfig:
    """Main configuration container.

    Example:
        config = MailmanConfig(
            root=Path("/repo/.agentmail"),
            timing=TimingConfig(debounce_window=0.1),
        )
    """

    root: Path = field(default_factory=lambda: Path.cwd() / ROOT_DIR_NAME)
    """Store root holding recipients.jsonl, mailboxes/ and mailman.pid."""

    timing: TimingConfig = field(default_factory=TimingConfig)
    """Timing and interval settings."""

    retention: RetentionConfig = field(default_factory=RetentionConfig)
    """Retention thresholds."""

    notify_text: str = DEFAULT_NOTIFY_TEXT
    """Text typed into a recipient's window when mail arrives."""

    metrics_file: Path | None = None
    """Optional Prometheus textfile written after each dispatch cycle."""


def find_git_root(start: Path | None = None) -> Path | None:
    """Walk up from ``start`` looking for a directory containing ``.git``."""
    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / ".git").exists():
            return candidate
    return None


def load_ignore_list(git_root: Path | None) -> set[str]:
    """Read the window names listed in ``<git_root>/.agentmailignore``.

    One name per line; blank lines are skipped and surrounding whitespace is
    stripped. A missing or unreadable file, or no git root at all, yields an
    empty set.
    """
    if git_root is None:
        return set()
    path = Path(git_root) / IGNORE_FILE_NAME
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except (FileNotFoundError, PermissionError, IsADirectoryError):
        return set()
    return {line.strip() for line in text.splitlines() if line.strip()}


def resolve_root(explicit: str | Path | None = None) -> Path:
    """Resolve the store root.

    Order: explicit argument, ``$AGENTMAIL_ROOT``, ``<git root>/.agentmail``,
    ``<cwd>/.agentmail``.
    """
    if explicit:
        return Path(explicit).expanduser().resolve()
    env_root = os.environ.get(ENV_ROOT)
    if env_root:
        return Path(env_root).expanduser().resolve()
    git_root = find_git_root()
    base = git_root if git_root is not None else Path.cwd()
    return base / ROOT_DIR_NAME


def _float_option(parser: configparser.ConfigParser, section: str, key: str, default: float) -> float:
    try:
        return parser.getfloat(section, key, fallback=default)
    except ValueError as exc:
        raise ConfigurationError(f"invalid value for [{section}] {key}: {exc}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"invalid value for {name}: {raw!r}") from exc


def load_config(root: Path, path: Path | None = None) -> MailmanConfig:
    """Build a MailmanConfig for ``root``.

    Args:
        root: Store root directory.
        path: Explicit INI file. Defaults to ``<root>/config.ini`` when present.

    Returns:
        The resolved configuration.

    Raises:
        ConfigurationError: If the file is unreadable or a value is malformed.
    """
    config = MailmanConfig(root=Path(root))
    ini_path = Path(path) if path else Path(root) / CONFIG_FILE_NAME

    parser = configparser.ConfigParser()
    if ini_path.exists():
        try:
            parser.read(ini_path)
        except configparser.Error as exc:
            raise ConfigurationError(f"cannot parse {ini_path}: {exc}") from exc
        logger.debug("Loaded configuration from %s", ini_path)
    elif path:
        raise ConfigurationError(f"configuration file not found: {ini_path}")

    timing = config.timing
    if parser.has_section("mailman"):
        debounce_ms = _float_option(parser, "mailman", "debounce_window_ms", timing.debounce_window * 1000)
        timing.debounce_window = debounce_ms / 1000.0
        timing.fallback_interval = _float_option(parser, "mailman", "fallback_interval", timing.fallback_interval)
        timing.stateless_notify_interval = _float_option(
            parser, "mailman", "stateless_notify_interval", timing.stateless_notify_interval
        )
        timing.submit_delay = _float_option(parser, "mailman", "submit_delay", timing.submit_delay)
        timing.lock_timeout = _float_option(parser, "mailman", "lock_timeout", timing.lock_timeout)
        config.notify_text = parser.get("mailman", "notify_text", fallback=config.notify_text)
        metrics_file = parser.get("mailman", "metrics_file", fallback="").strip()
        if metrics_file:
            config.metrics_file = Path(metrics_file).expanduser()

    retention = config.retention
    if parser.has_section("cleanup"):
        retention.stale_hours = _float_option(parser, "cleanup", "stale_hours", retention.stale_hours)
        retention.delivered_hours = _float_option(parser, "cleanup", "delivered_hours", retention.delivered_hours)

    timing.debounce_window = _env_float("AGENTMAIL_DEBOUNCE_MS", timing.debounce_window * 1000) / 1000.0
    timing.fallback_interval = _env_float("AGENTMAIL_FALLBACK_INTERVAL", timing.fallback_interval)
    timing.stateless_notify_interval = _env_float(
        "AGENTMAIL_STATELESS_INTERVAL", timing.stateless_notify_interval
    )
    env_metrics = os.environ.get("AGENTMAIL_METRICS_FILE")
    if env_metrics:
        config.metrics_file = Path(env_metrics).expanduser()

    if timing.debounce_window < 0 or timing.fallback_interval <= 0:
        raise ConfigurationError("debounce window must be >= 0 and fallback interval > 0")
    return config


__all__ = [
    "CONFIG_FILE_NAME",
    "DEFAULT_NOTIFY_TEXT",
    "ENV_ROOT",
    "IGNORE_FILE_NAME",
    "ROOT_DIR_NAME",
    "MailmanConfig",
    "RetentionConfig",
    "TimingConfig",
    "find_git_root",
    "load_ignore_list",
    "load_config",
    "resolve_root",
]
