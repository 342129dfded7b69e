"""Shared fixtures and test doubles."""

from datetime import datetime, timedelta, timezone

import pytest

from agentmail.errors import MultiplexerError
from agentmail.models import Message, RecipientState, RecipientStatus
from agentmail.store import MailStore

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeNotifier:
    """Records notifications; names in ``fail`` raise, ``windows`` limits existing windows."""

    def __init__(self, windows=None, fail=()):
        self.calls = []
        self.window_checks = []
        self.windows = set(windows) if windows is not None else None
        self.fail = set(fail)

    async def notify(self, window):
        self.calls.append(window)
        if window in self.fail:
            raise MultiplexerError(f"send-keys failed for {window}")

    async def window_exists(self, window):
        self.window_checks.append(window)
        return self.windows is None or window in self.windows


class FakeMultiplexer:
    def __init__(self, windows=(), broken=False, current=None):
        self.windows = list(windows)
        self.broken = broken
        self.current = current
        self.sent = []

    async def list_windows(self):
        if self.broken:
            raise MultiplexerError("no server running")
        return list(self.windows)

    async def window_exists(self, name):
        return name in await self.list_windows()

    async def send_text(self, window, text):
        self.sent.append(("text", window, text))

    async def send_submit(self, window):
        self.sent.append(("submit", window))

    async def current_window(self):
        if self.current is None:
            raise MultiplexerError("not running inside a tmux session")
        return self.current


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FakeObserver:
    """Stands in for a watchdog Observer; ``emit`` feeds events to the handler."""

    def __init__(self, fail_on_start=False):
        self.watches = []
        self.handler = None
        self.started = False
        self.stopped = False
        self.alive = True
        self.fail_on_start = fail_on_start

    def schedule(self, handler, path, recursive=False):
        self.handler = handler
        watch = (path, recursive)
        self.watches.append(watch)
        return watch

    def unschedule(self, watch):
        self.watches.remove(watch)

    def start(self):
        if self.fail_on_start:
            raise OSError(28, "inotify watch limit reached")
        self.started = True

    def stop(self):
        self.stopped = True

    def join(self, timeout=None):
        pass

    def is_alive(self):
        return self.started and not self.stopped and self.alive

    def emit(self, event):
        self.handler.dispatch(event)


@pytest.fixture
def store(tmp_path):
    s = MailStore(tmp_path / ".agentmail", lock_timeout=0.05)
    s.ensure_dirs()
    return s


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def observers():
    """Factory producing FakeObservers; the list collects every instance made."""
    made = []

    def factory():
        observer = FakeObserver()
        made.append(observer)
        return observer

    factory.made = made
    return factory


@pytest.fixture
def add_message(store):
    def _add(to, body="hello", sender="alice", read=False, created_at=None):
        message = Message.compose(sender, to, body)
        message = message.model_copy(update={"read_flag": read, "created_at": created_at or NOW})
        return store.append(message)

    return _add


@pytest.fixture
def set_states(store):
    def _set(*rows):
        states = []
        for row in rows:
            name, status = row[0], row[1]
            notified = row[2] if len(row) > 2 else False
            updated_at = row[3] if len(row) > 3 else datetime.now(timezone.utc)
            states.append(
                RecipientState(
                    recipient=name, status=RecipientStatus(status), updated_at=updated_at, notified=notified
                )
            )
        store.write_all_recipients(states)
        return states

    return _set


def hours_ago(hours, now=NOW):
    return now - timedelta(hours=hours)
