# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""File-backed persistence for the recipient registry and mailboxes.

Layout under the store root::

    <root>/recipients.jsonl         one RecipientState per line
    <root>/mailboxes/<name>.jsonl   one Message per line, per recipient
    <root>/mailman.pid              daemon PID (see agentmail.daemon.lifecycle)

Every file is guarded by a POSIX advisory lock (``fcntl.flock``) taken on the
data file itself: shared for reads, exclusive for each read-modify-write.
Locks are acquired non-blocking with a bounded retry and raise
``LockContentionError`` instead of waiting forever. Rewrites happen in place
(truncate, write, fsync) while the exclusive lock is held, so concurrent CLI
processes and the daemon never observe a partial update.

Files are read as bytes and each line is decoded and validated on its own.
Malformed lines (bad JSON, bad fields or invalid UTF-8) are skipped one at a
time with a warning; the remainder of the file is still processed.

Example:
    Typical daemon-side usage::

        store = MailStore("/repo/.agentmail")
        for state in store.read_all_recipients():
            unread = store.find_unread(state.recipient)
"""

from __future__ import annotations

import fcntl
import os
import time
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import IO, Any, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import ConfigurationError, InvalidRecipientError, LockContentionError
from .logger import get_logger
from .models import Message, RecipientState, RecipientStatus, utc_now

REGISTRY_FILE = "recipients.jsonl"
MAILBOX_DIR = "mailboxes"
PID_FILE = "mailman.pid"
MAILBOX_SUFFIX = ".jsonl"

DEFAULT_LOCK_TIMEOUT = 2.0
LOCK_RETRY_STEP = 0.01

logger = get_logger("agentmail.store")

RecordT = TypeVar("RecordT", bound=BaseModel)
ResultT = TypeVar("ResultT")


def _acquire_lock(handle: IO[Any], path: Path, exclusive: bool, timeout: float) -> None:
    """Take an advisory lock, retrying every 10 ms until ``timeout``."""
    operation = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
    deadline = time.monotonic() + max(0.0, timeout)
    while True:
        try:
            fcntl.flock(handle.fileno(), operation)
            return
        except BlockingIOError:
            if time.monotonic() >= deadline:
                raise LockContentionError(path, timeout) from None
            time.sleep(LOCK_RETRY_STEP)


def _as_timedelta(value: timedelta | float) -> timedelta:
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


class MailStore:
    """Registry and mailbox files under one store root.

    Attributes:
        root: The store root directory.
        lock_timeout: Seconds to retry a lock before raising LockContentionError.
    """

    def __init__(self, root: Path | str, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.root = Path(root)
        self.lock_timeout = lock_timeout

    def __repr__(self) -> str:
        return f"MailStore({str(self.root)!r})"

    # ------------------------------------------------------------------ paths
    @property
    def registry_path(self) -> Path:
        return self.root / REGISTRY_FILE

    @property
    def mailbox_dir(self) -> Path:
        return self.root / MAILBOX_DIR

    @property
    def pid_path(self) -> Path:
        return self.root / PID_FILE

    def mailbox_path(self, recipient: str) -> Path:
        """Return the mailbox file for ``recipient``.

        Raises:
            InvalidRecipientError: If the name is empty or would escape the
                mailbox directory.
        """
        if (
            not recipient
            or recipient in (".", "..")
            or "/" in recipient
            or "\\" in recipient
            or "\x00" in recipient
        ):
            raise InvalidRecipientError(recipient)
        return self.mailbox_dir / f"{recipient}{MAILBOX_SUFFIX}"

    def ensure_dirs(self) -> None:
        """Create the store root and mailbox directory if missing.

        Raises:
            ConfigurationError: If the directories cannot be created.
        """
        try:
            self.root.mkdir(mode=0o750, parents=True, exist_ok=True)
            self.mailbox_dir.mkdir(mode=0o750, exist_ok=True)
        except OSError as exc:
            raise ConfigurationError(f"cannot create store directories under {self.root}: {exc}") from exc

    # -------------------------------------------------------------- locking
    @contextmanager
    def _locked(
        self,
        path: Path,
        *,
        exclusive: bool = True,
        create: bool = False,
        timeout: float | None = None,
    ) -> Iterator[IO[bytes]]:
        """Open ``path`` and hold an advisory lock for the duration of the block.

        Raises:
            FileNotFoundError: If the file is missing and ``create`` is False.
            LockContentionError: If the lock is not acquired within the timeout.
        """
        if exclusive:
            flags = os.O_RDWR | (os.O_CREAT if create else 0)
            mode = "r+b"
        else:
            flags = os.O_RDONLY
            mode = "rb"
        fd = os.open(path, flags, 0o600)
        with os.fdopen(fd, mode) as handle:
            _acquire_lock(handle, path, exclusive, self.lock_timeout if timeout is None else timeout)
            try:
                yield handle
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    # ---------------------------------------------------------------- codec
    @staticmethod
    def _decode(data: bytes, model: type[RecordT], path: Path) -> list[RecordT]:
        """Parse one record per line; lines are decoded as UTF-8 individually."""
        records: list[RecordT] = []
        for lineno, raw in enumerate(data.split(b"\n"), start=1):
            if not raw.strip():
                continue
            try:
                line = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                logger.warning("Skipping corrupted record %s:%d (%s)", path.name, lineno, exc.reason)
                continue
            try:
                records.append(model.model_validate_json(line))
            except ValidationError as exc:
                first = exc.errors()[0] if exc.errors() else {}
                logger.warning(
                    "Skipping corrupted record %s:%d (%s)", path.name, lineno, first.get("msg", "invalid")
                )
        return records

    @staticmethod
    def _encode(records: Iterable[BaseModel]) -> bytes:
        return "".join(r.model_dump_json(by_alias=True, exclude_none=True) + "\n" for r in records).encode("utf-8")

    @staticmethod
    def _read_handle(handle: IO[bytes]) -> bytes:
        handle.seek(0)
        return handle.read()

    @staticmethod
    def _rewrite(handle: IO[bytes], records: Iterable[BaseModel]) -> None:
        handle.seek(0)
        handle.truncate()
        handle.write(MailStore._encode(records))
        handle.flush()
        os.fsync(handle.fileno())

    # ------------------------------------------------------------- registry
    def read_all_recipients(self) -> list[RecipientState]:
        """Read every registry row; a missing registry is an empty one."""
        path = self.registry_path
        try:
            with self._locked(path, exclusive=False) as handle:
                data = self._read_handle(handle)
        except FileNotFoundError:
            return []
        return self._decode(data, RecipientState, path)

    def write_all_recipients(self, rows: Iterable[RecipientState]) -> None:
        """Replace the whole registry under an exclusive lock."""
        self.ensure_dirs()
        rows = list(rows)
        with self._locked(self.registry_path, create=True) as handle:
            self._rewrite(handle, rows)

    def _mutate_registry(
        self,
        mutate: Callable[[list[RecipientState]], tuple[list[RecipientState] | None, ResultT]],
        *,
        create: bool,
    ) -> ResultT | None:
        """Locked read-modify-write of the registry.

        ``mutate`` receives the current rows and returns ``(new_rows, result)``;
        the file is rewritten only when ``new_rows`` is not None. Returns None
        without calling ``mutate`` when the registry is missing and ``create``
        is False.
        """
        path = self.registry_path
        if create:
            self.ensure_dirs()
        try:
            with self._locked(path, create=create) as handle:
                rows = self._decode(self._read_handle(handle), RecipientState, path)
                new_rows, result = mutate(rows)
                if new_rows is not None:
                    self._rewrite(handle, new_rows)
                return result
        except FileNotFoundError:
            return None

    def update_recipient_state(
        self, name: str, status: RecipientStatus | str, reset_notified: bool
    ) -> RecipientState:
        """Set ``name``'s status, creating the row on first write.

        ``notified`` is cleared when ``reset_notified`` is set and whenever the
        new status is not ``ready``; a transition to ``ready`` alone leaves it
        unchanged.
        """
        status = RecipientStatus(status)
        now = utc_now()

        def mutate(rows: list[RecipientState]) -> tuple[list[RecipientState], RecipientState]:
            for index, row in enumerate(rows):
                if row.recipient == name:
                    notified = row.notified and not reset_notified and status is RecipientStatus.READY
                    updated = row.model_copy(update={"status": status, "updated_at": now, "notified": notified})
                    rows[index] = updated
                    return rows, updated
            created = RecipientState(recipient=name, status=status, updated_at=now)
            rows.append(created)
            return rows, created

        return self._mutate_registry(mutate, create=True)

    def set_notified_flag(self, name: str, notified: bool) -> bool:
        """Set the notified flag of an existing row.

        Returns False without writing when the row does not exist, or when
        ``notified`` is True but the row is no longer ``ready`` (the status
        changed after the caller read it).
        """

        def mutate(rows: list[RecipientState]) -> tuple[list[RecipientState] | None, bool]:
            for index, row in enumerate(rows):
                if row.recipient != name:
                    continue
                if notified and row.status is not RecipientStatus.READY:
                    return None, False
                if row.notified == notified:
                    return None, True
                rows[index] = row.model_copy(update={"notified": notified})
                return rows, True
            return None, False

        return bool(self._mutate_registry(mutate, create=False))

    def update_last_read_at(self, name: str, timestamp_ms: int) -> None:
        """Record a receive time, creating a ``ready`` row when none exists."""

        def mutate(rows: list[RecipientState]) -> tuple[list[RecipientState], None]:
            for index, row in enumerate(rows):
                if row.recipient == name:
                    rows[index] = row.model_copy(update={"last_read_at": timestamp_ms})
                    return rows, None
            rows.append(
                RecipientState(
                    recipient=name,
                    status=RecipientStatus.READY,
                    updated_at=utc_now(),
                    last_read_at=timestamp_ms,
                )
            )
            return rows, None

        self._mutate_registry(mutate, create=True)

    def clean_stale_states(
        self,
        threshold: timedelta | float,
        *,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> int:
        """Remove registry rows whose ``updated_at`` is older than ``threshold``.

        A row aged exactly ``threshold`` is kept.

        Returns:
            Number of rows removed (or that would be removed in dry-run).
        """
        limit = _as_timedelta(threshold)
        current = now or utc_now()

        def mutate(rows: list[RecipientState]) -> tuple[list[RecipientState] | None, int]:
            fresh = [row for row in rows if current - row.updated_at <= limit]
            removed = len(rows) - len(fresh)
            if removed == 0 or dry_run:
                return None, removed
            return fresh, removed

        return self._mutate_registry(mutate, create=False) or 0

    def clean_offline_recipients(self, valid_names: Iterable[str], *, dry_run: bool = False) -> int:
        """Remove registry rows whose name is not in ``valid_names``.

        Returns:
            Number of rows removed (or that would be removed in dry-run).
        """
        valid = set(valid_names)

        def mutate(rows: list[RecipientState]) -> tuple[list[RecipientState] | None, int]:
            remaining = [row for row in rows if row.recipient in valid]
            removed = len(rows) - len(remaining)
            if removed == 0 or dry_run:
                return None, removed
            return remaining, removed

        return self._mutate_registry(mutate, create=False) or 0

    # ------------------------------------------------------------ mailboxes
    def append(self, message: Message) -> Message:
        """Append ``message`` to its recipient's mailbox, stamping ``created_at``."""
        self.ensure_dirs()
        path = self.mailbox_path(message.to)
        if message.created_at is None:
            message = message.model_copy(update={"created_at": utc_now()})
        line = self._encode([message])
        # An empty mailbox may be unlinked by retention between our open and
        # our lock; retry on a fresh inode when that happens.
        for _ in range(3):
            fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
            with os.fdopen(fd, "ab") as handle:
                _acquire_lock(handle, path, True, self.lock_timeout)
                try:
                    if os.fstat(handle.fileno()).st_nlink == 0:
                        continue
                    handle.write(line)
                    handle.flush()
                    return message
                finally:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        raise LockContentionError(path, self.lock_timeout)

    def read_mailbox(self, recipient: str) -> list[Message]:
        """Read all messages for ``recipient`` in arrival order."""
        path = self.mailbox_path(recipient)
        try:
            with self._locked(path, exclusive=False) as handle:
                data = self._read_handle(handle)
        except FileNotFoundError:
            return []
        return self._decode(data, Message, path)

    def find_unread(self, recipient: str) -> list[Message]:
        """Return unread messages for ``recipient`` in FIFO order."""
        return [message for message in self.read_mailbox(recipient) if not message.read_flag]

    def mark_as_read(self, recipient: str, message_id: str) -> bool:
        """Flip ``read_flag`` on one message.

        Returns:
            True if the message was found (already-read messages included).
        """
        path = self.mailbox_path(recipient)
        try:
            with self._locked(path) as handle:
                messages = self._decode(self._read_handle(handle), Message, path)
                for index, message in enumerate(messages):
                    if message.id != message_id:
                        continue
                    if not message.read_flag:
                        messages[index] = message.model_copy(update={"read_flag": True})
                        self._rewrite(handle, messages)
                    return True
                return False
        except FileNotFoundError:
            return False

    def list_mailbox_recipients(self) -> list[str]:
        """Names of all recipients that have a mailbox file, sorted."""
        try:
            entries = list(self.mailbox_dir.iterdir())
        except FileNotFoundError:
            return []
        return sorted(
            entry.name[: -len(MAILBOX_SUFFIX)]
            for entry in entries
            if entry.name.endswith(MAILBOX_SUFFIX) and entry.is_file()
        )

    def clean_old_messages(
        self,
        recipient: str,
        threshold: timedelta | float,
        *,
        dry_run: bool = False,
        now: datetime | None = None,
    ) -> int:
        """Remove read messages older than ``threshold`` from one mailbox.

        Unread messages and messages without ``created_at`` are never removed.

        Returns:
            Number of messages removed (or that would be removed in dry-run).

        Raises:
            LockContentionError: If the mailbox is locked by another process.
        """
        limit = _as_timedelta(threshold)
        current = now or utc_now()
        path = self.mailbox_path(recipient)
        try:
            with self._locked(path) as handle:
                messages = self._decode(self._read_handle(handle), Message, path)
                remaining = [
                    message
                    for message in messages
                    if not message.read_flag
                    or message.created_at is None
                    or current - message.created_at <= limit
                ]
                removed = len(messages) - len(remaining)
                if removed and not dry_run:
                    self._rewrite(handle, remaining)
                return removed
        except FileNotFoundError:
            return 0

    def empty_mailboxes(self, skipped: list[str] | None = None) -> list[str]:
        """Names of mailboxes holding no parseable message.

        Args:
            skipped: When given, names of mailboxes that stayed locked and
                could not be checked are appended to it.
        """
        empty: list[str] = []
        for recipient in self.list_mailbox_recipients():
            path = self.mailbox_path(recipient)
            try:
                if path.stat().st_size == 0 or not self.read_mailbox(recipient):
                    empty.append(recipient)
            except FileNotFoundError:
                continue
            except LockContentionError:
                logger.warning("Mailbox %s is locked, not checking for emptiness", recipient)
                if skipped is not None:
                    skipped.append(recipient)
        return empty

    def remove_empty_mailboxes(self, *, dry_run: bool = False, skipped: list[str] | None = None) -> int:
        """Delete mailbox files that hold no messages.

        Emptiness is re-checked under an exclusive lock right before unlinking.

        Args:
            dry_run: Count candidates without unlinking them.
            skipped: When given, names of mailboxes left in place because
                they stayed locked are appended to it.

        Returns:
            Number of files removed (or that would be removed in dry-run).
        """
        candidates = self.empty_mailboxes(skipped)
        if dry_run:
            return len(candidates)
        removed = 0
        for recipient in candidates:
            path = self.mailbox_path(recipient)
            try:
                with self._locked(path) as handle:
                    if self._decode(self._read_handle(handle), Message, path):
                        continue
                    path.unlink()
                    removed += 1
            except FileNotFoundError:
                continue
            except LockContentionError:
                logger.warning("Mailbox %s is locked, leaving it in place", recipient)
                if skipped is not None:
                    skipped.append(recipient)
        return removed


__all__ = [
    "DEFAULT_LOCK_TIMEOUT",
    "MAILBOX_DIR",
    "PID_FILE",
    "REGISTRY_FILE",
    "MailStore",
]
