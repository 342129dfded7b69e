"""Tests for the retention passes."""

import fcntl
import logging
from datetime import timedelta

import pytest

from agentmail.daemon.retention import RetentionEngine, RetentionOptions
from agentmail.models import utc_now
from agentmail.prometheus import MailmanMetrics
from conftest import FakeMultiplexer


def ago(**kwargs):
    return utc_now() - timedelta(**kwargs)


@pytest.mark.asyncio
async def test_old_read_message_and_empty_mailbox_removed(store, add_message):
    add_message("m", read=True, created_at=ago(hours=3))

    result = await RetentionEngine(store).run(RetentionOptions(), valid_names=[])

    assert result.messages_removed == 1
    assert result.mailboxes_removed == 1
    assert not (store.mailbox_dir / "m.jsonl").exists()


@pytest.mark.asyncio
async def test_unread_and_recent_messages_kept(store, add_message):
    add_message("m", "unread", read=False, created_at=ago(hours=30))
    add_message("m", "recent", read=True, created_at=ago(minutes=30))

    result = await RetentionEngine(store).run(RetentionOptions(), valid_names=[])

    assert result.messages_removed == 0
    assert result.mailboxes_removed == 0
    assert [m.body for m in store.read_mailbox("m")] == ["unread", "recent"]


@pytest.mark.asyncio
async def test_offline_pass_uses_multiplexer_windows(store, set_states):
    set_states(("alice", "ready"), ("bob", "work"))
    engine = RetentionEngine(store, FakeMultiplexer(windows=["alice"]))

    result = await engine.run()

    assert result.offline_checked is True
    assert result.offline_removed == 1
    assert [r.recipient for r in store.read_all_recipients()] == ["alice"]


@pytest.mark.asyncio
async def test_offline_pass_skipped_without_window_list(store, set_states, caplog):
    set_states(("alice", "ready"))

    with caplog.at_level(logging.WARNING, logger="agentmail.retention"):
        result = await RetentionEngine(store, FakeMultiplexer(broken=True)).run()

    assert result.offline_checked is False
    assert result.offline_removed == 0
    assert len(store.read_all_recipients()) == 1
    assert "skipping offline recipient check" in caplog.text


@pytest.mark.asyncio
async def test_stale_pass(store, set_states):
    set_states(("old", "ready", False, ago(hours=49)), ("fresh", "work", False, ago(hours=47)))

    result = await RetentionEngine(store).run(RetentionOptions(stale_threshold=timedelta(hours=48)))

    assert result.stale_removed == 1
    assert result.recipients_removed == 1
    assert [r.recipient for r in store.read_all_recipients()] == ["fresh"]


@pytest.mark.asyncio
async def test_dry_run_counts_without_changes(store, set_states, add_message):
    set_states(("old", "ready", False, ago(hours=100)), ("gone", "ready"))
    add_message("m", read=True, created_at=ago(hours=5))
    add_message("n", read=True, created_at=ago(hours=5))
    add_message("n", read=False)
    (store.mailbox_dir / "empty.jsonl").write_text("")
    before = {p.name: p.read_text() for p in store.mailbox_dir.iterdir()}

    result = await RetentionEngine(store).run(RetentionOptions(dry_run=True), valid_names=["old"])

    assert result.offline_removed == 1
    assert result.stale_removed == 1
    assert result.messages_removed == 2
    # m would be emptied by the message pass, empty already is
    assert result.mailboxes_removed == 2
    assert {p.name: p.read_text() for p in store.mailbox_dir.iterdir()} == before
    assert len(store.read_all_recipients()) == 2


@pytest.mark.asyncio
async def test_locked_mailbox_skipped_and_counted(store, add_message):
    add_message("busy", read=True, created_at=ago(hours=5))
    add_message("free", read=True, created_at=ago(hours=5))

    with open(store.mailbox_dir / "busy.jsonl", "r+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        result = await RetentionEngine(store).run(valid_names=[])

    assert result.files_skipped == 1
    assert result.messages_removed == 1
    assert store.list_mailbox_recipients() == ["busy"]


@pytest.mark.asyncio
async def test_retention_metrics(store, add_message):
    add_message("m", read=True, created_at=ago(hours=5))
    metrics = MailmanMetrics()

    await RetentionEngine(store, metrics=metrics).run(valid_names=[])

    output = metrics.generate_latest()
    assert b'agentmail_retention_removed_total{kind="message"} 1.0' in output
    assert b'agentmail_retention_removed_total{kind="mailbox"} 1.0' in output


def test_clean_stale_alone(store, set_states):
    set_states(("old", "ready", False, ago(hours=2)), ("new", "ready", False, ago(minutes=5)))

    removed = RetentionEngine(store).clean_stale(timedelta(hours=1))

    assert removed == 1
    assert [r.recipient for r in store.read_all_recipients()] == ["new"]


@pytest.mark.asyncio
async def test_dry_run_with_locked_mailbox_counts_it_once(store, add_message):
    add_message("busy", read=True, created_at=ago(hours=5))
    add_message("free", read=True, created_at=ago(hours=5))

    with open(store.mailbox_dir / "busy.jsonl", "r+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        result = await RetentionEngine(store).run(RetentionOptions(dry_run=True), valid_names=[])

    assert result.files_skipped == 1
    assert result.messages_removed == 1
    assert result.mailboxes_removed == 1
    assert store.list_mailbox_recipients() == ["busy", "free"]


@pytest.mark.asyncio
async def test_locked_empty_mailbox_counted_as_skipped(store, add_message):
    add_message("m", read=True, created_at=ago(hours=5))
    idle = store.mailbox_dir / "idle.jsonl"
    idle.write_text("")

    with open(idle, "r+") as holder:
        fcntl.flock(holder.fileno(), fcntl.LOCK_EX)
        result = await RetentionEngine(store).run(valid_names=[])

    assert result.files_skipped == 1
    assert result.mailboxes_removed == 1
    assert idle.exists()
    assert store.list_mailbox_recipients() == ["idle"]
