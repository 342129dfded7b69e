"""Tests for CLI commands and helper functions."""

import os

import pytest
from click.testing import CliRunner

from agentmail.cli import main, run_async
from agentmail.store import MailStore
from conftest import FakeMultiplexer


@pytest.fixture(autouse=True)
def outside_tmux(monkeypatch, tmp_path):
    monkeypatch.delenv("TMUX", raising=False)
    monkeypatch.delenv("AGENTMAIL_DAEMON_CHILD", raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture
def root(tmp_path):
    return tmp_path / ".agentmail"


@pytest.fixture
def repo(tmp_path):
    """Make the working directory a git root with an .agentmailignore file."""
    (tmp_path / ".git").mkdir()

    def _ignore(*names):
        (tmp_path / ".agentmailignore").write_text("".join(f"{n}\n" for n in names))

    return _ignore


@pytest.fixture
def tmux_session(monkeypatch):
    """Pretend to run in tmux window ``alice`` alongside ``bob`` and ``monitor``."""
    session = FakeMultiplexer(windows=["alice", "bob", "monitor"], current="alice")
    monkeypatch.setenv("TMUX", "/tmp/tmux-1000/default,123,0")
    monkeypatch.setattr("agentmail.cli.TmuxMultiplexer", lambda: session)
    return session


@pytest.fixture
def invoke(root):
    runner = CliRunner()

    def _invoke(*args, **kwargs):
        return runner.invoke(main, ["--root", str(root), *args], **kwargs)

    return _invoke


def test_run_async():
    async def answer():
        return 42

    assert run_async(answer()) == 42


class TestStatus:
    def test_sets_status(self, invoke, root):
        result = invoke("status", "ready", "--window", "alice")

        assert result.exit_code == 0, result.output
        rows = MailStore(root).read_all_recipients()
        assert [(r.recipient, r.status.value) for r in rows] == [("alice", "ready")]

    def test_work_resets_notified(self, invoke, root):
        invoke("status", "ready", "--window", "alice")
        MailStore(root).set_notified_flag("alice", True)

        invoke("status", "work", "--window", "alice")

        assert MailStore(root).read_all_recipients()[0].notified is False

    def test_rejects_unknown_status(self, invoke):
        result = invoke("status", "sleeping", "--window", "alice")

        assert result.exit_code != 0

    def test_requires_tmux_without_window(self, invoke):
        result = invoke("status", "ready")

        assert result.exit_code == 1
        assert "not running inside a tmux session" in result.output


class TestSendReceive:
    def test_roundtrip(self, invoke):
        sent = invoke("send", "bob", "hello there", "--sender", "alice")
        assert sent.exit_code == 0, sent.output

        received = invoke("receive", "--window", "bob")
        assert received.exit_code == 0, received.output
        assert "From: alice" in received.output
        assert "hello there" in received.output

        again = invoke("receive", "--window", "bob")
        assert "No unread messages" in again.output

    def test_send_from_stdin(self, invoke, root):
        result = invoke("send", "bob", "--sender", "alice", input="piped body\n")

        assert result.exit_code == 0, result.output
        assert MailStore(root).find_unread("bob")[0].body == "piped body\n"

    def test_send_empty_message(self, invoke):
        result = invoke("send", "bob", "--sender", "alice", input="  \n")

        assert result.exit_code == 1

    def test_receive_records_last_read(self, invoke, root):
        invoke("receive", "--window", "bob")

        assert MailStore(root).read_all_recipients()[0].last_read_at is not None


def test_info(invoke, root):
    invoke("send", "bob", "hi", "--sender", "alice")

    result = invoke("info")

    assert result.exit_code == 0
    assert "none" in result.output
    assert "1 unread" in result.output


class TestRecipients:
    def test_lists_windows_and_marks_current(self, invoke, tmux_session):
        invoke("status", "ready", "--window", "bob")
        invoke("send", "bob", "ping", "--sender", "alice")

        result = invoke("recipients")

        assert result.exit_code == 0, result.output
        assert "alice [you]" in result.output
        assert "bob" in result.output
        assert "ready" in result.output
        assert "monitor" in result.output

    def test_hides_ignored_windows_but_not_current(self, invoke, tmux_session, repo):
        repo("monitor", "alice")

        result = invoke("recipients")

        assert result.exit_code == 0, result.output
        assert "monitor" not in result.output
        assert "alice [you]" in result.output
        assert "bob" in result.output

    def test_requires_tmux(self, invoke):
        result = invoke("recipients")

        assert result.exit_code == 1
        assert "not running inside a tmux session" in result.output


class TestIgnoreList:
    def test_send_refuses_ignored_recipient(self, invoke, root, repo):
        repo("monitor")

        result = invoke("send", "monitor", "hello", "--sender", "alice")

        assert result.exit_code == 1
        assert "not found" in result.output
        assert MailStore(root).list_mailbox_recipients() == []

    def test_send_outside_repo_has_no_ignore_list(self, invoke, root, tmp_path):
        (tmp_path / ".agentmailignore").write_text("monitor\n")

        result = invoke("send", "monitor", "hello", "--sender", "alice")

        assert result.exit_code == 0, result.output
        assert len(MailStore(root).find_unread("monitor")) == 1


class TestOnboard:
    def test_silent_outside_tmux(self, invoke):
        result = invoke("onboard")

        assert result.exit_code == 0
        assert result.output == ""

    def test_describes_identity_and_other_agents(self, invoke, tmux_session, repo):
        repo("monitor")

        result = invoke("onboard")

        assert result.exit_code == 0, result.output
        assert "You are **alice**" in result.output
        assert "Other agents: bob\n" in result.output
        assert 'agentmail send bob "Hello, are you available?"' in result.output
        assert "marked with [you]" in result.output

    def test_no_other_agents(self, invoke, tmux_session):
        tmux_session.windows = ["alice"]

        result = invoke("onboard")

        assert "No other agents currently available." in result.output
        assert 'agentmail send agent2 "Hello' in result.output

    def test_silent_when_tmux_fails(self, invoke, tmux_session):
        tmux_session.broken = True

        result = invoke("onboard")

        assert result.exit_code == 0
        assert result.output == ""


class TestCleanup:
    def test_dry_run(self, invoke):
        result = invoke("cleanup", "--dry-run")

        assert result.exit_code == 0, result.output
        assert "Would remove" in result.output
        assert "skipped" in result.output

    def test_negative_threshold(self, invoke):
        result = invoke("cleanup", "--stale-hours", "-1")

        assert result.exit_code == 1


class TestDaemonCommands:
    def test_mailman_conflict_exit_code(self, invoke, root):
        root.mkdir(parents=True)
        (root / "mailman.pid").write_text(f"{os.getpid()}\n")

        result = invoke("mailman")

        assert result.exit_code == 2
        assert "already running" in result.output
        assert (root / "mailman.pid").read_text() == f"{os.getpid()}\n"

    def test_mailman_corrupted_pid(self, invoke, root):
        root.mkdir(parents=True)
        (root / "mailman.pid").write_text("nonsense\n")

        result = invoke("mailman")

        assert result.exit_code == 1

    def test_mailman_background(self, invoke, root, monkeypatch):
        launched = []
        monkeypatch.setattr(
            "agentmail.daemon.lifecycle.SubprocessLauncher.launch",
            lambda self, r: launched.append(r) or 4321,
        )

        result = invoke("mailman", "--daemon")

        assert result.exit_code == 0, result.output
        assert launched == [root.resolve()]
        assert "started in background" in result.output

    def test_stop_when_not_running(self, invoke):
        result = invoke("stop")

        assert result.exit_code == 0
        assert "not running" in result.output
