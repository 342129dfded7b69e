# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for agentmail.

Usage:
    agentmail mailman [--daemon]          # run the notification daemon
    agentmail stop [--force]              # stop the daemon
    agentmail info                        # store and daemon summary
    agentmail recipients                  # windows you can message
    agentmail onboard                     # agent-facing usage summary
    agentmail status ready|work|offline   # set this window's status
    agentmail send RECIPIENT [MESSAGE]    # append a message (stdin when omitted)
    agentmail receive                     # pop the oldest unread message
    agentmail cleanup [--dry-run]         # run retention

The store root is ``--root``, else ``$AGENTMAIL_ROOT``, else ``.agentmail``
at the git root (or the current directory outside a repository).

Exit codes: 0 success, 1 error, 2 the daemon is already running.

Example:
    $ agentmail status ready
    $ echo "build is green" | agentmail send reviewer
    $ agentmail cleanup --stale-hours 24 --delivered-hours 1 --dry-run
"""

from __future__ import annotations

import asyncio
import sys
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import MailmanConfig, find_git_root, load_config, load_ignore_list, resolve_root
from .daemon import (
    DaemonLifecycleManager,
    DaemonStatus,
    RetentionEngine,
    RetentionOptions,
    is_daemon_child,
    stop_daemon,
)
from .errors import EXIT_ERROR, AgentMailError
from .logger import configure_logging
from .models import Message, RecipientStatus
from .prometheus import MailmanMetrics
from .store import MailStore
from .tmux import TmuxMultiplexer, in_tmux

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print a formatted error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a formatted success message with checkmark."""
    console.print(f"[green]✓[/green] {message}")


def fail(exc: AgentMailError) -> None:
    """Report ``exc`` and exit with its exit code."""
    print_error(exc.message)
    sys.exit(exc.exit_code)


def _store(ctx: click.Context) -> MailStore:
    config: MailmanConfig = ctx.obj["config"]
    return MailStore(config.root, lock_timeout=config.timing.lock_timeout)


def _current_window(window: str | None) -> str:
    if window:
        return window
    return run_async(TmuxMultiplexer().current_window())


@click.group()
@click.version_option(__version__, prog_name="agentmail")
@click.option(
    "--root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Store root (default: $AGENTMAIL_ROOT or <git root>/.agentmail).",
)
@click.option("--verbose", "-v", is_flag=True, help="Log per-recipient decisions.")
@click.option("--quiet", "-q", is_flag=True, help="Only log warnings and errors.")
@click.pass_context
def main(ctx: click.Context, root: Path | None, verbose: bool, quiet: bool) -> None:
    """agentmail - mail between agents sharing a tmux session."""
    configure_logging(verbose=verbose, quiet=quiet)
    try:
        resolved = resolve_root(root)
        config = load_config(resolved)
    except AgentMailError as exc:
        fail(exc)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config


# ============================================================================
# Daemon
# ============================================================================


@main.command("mailman")
@click.option("--daemon", "-d", "background", is_flag=True, help="Run in the background.")
@click.pass_context
def mailman_cmd(ctx: click.Context, background: bool) -> None:
    """Run the mailman notification daemon.

    Example:

        agentmail mailman

        agentmail mailman --daemon
    """
    config: MailmanConfig = ctx.obj["config"]
    store = _store(ctx)
    manager = DaemonLifecycleManager(store, config, metrics=MailmanMetrics())
    spawn = background and not is_daemon_child()
    try:
        code = run_async(manager.start(background=spawn))
    except AgentMailError as exc:
        fail(exc)
    if spawn:
        print_success(f"Mailman daemon started in background (root {store.root})")
    sys.exit(code)


@main.command("stop")
@click.option("--force", "-f", is_flag=True, help="Force kill (SIGKILL) instead of graceful shutdown.")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Seconds to wait for exit.")
@click.pass_context
def stop_cmd(ctx: click.Context, force: bool, timeout: float) -> None:
    """Stop the mailman daemon."""
    try:
        pid = stop_daemon(_store(ctx), timeout=timeout, force=force)
    except AgentMailError as exc:
        fail(exc)
    if pid is None:
        console.print("[yellow]Mailman daemon is not running[/yellow]")
        return
    print_success(f"Mailman daemon stopped (PID {pid})")


@main.command("info")
@click.pass_context
def info_cmd(ctx: click.Context) -> None:
    """Show the store location and daemon state."""
    config: MailmanConfig = ctx.obj["config"]
    store = _store(ctx)
    manager = DaemonLifecycleManager(store, config)
    try:
        status, pid = manager.check_existing_daemon()
        recipients = store.read_all_recipients()
        mailboxes = store.list_mailbox_recipients()
        unread = sum(len(store.find_unread(name)) for name in mailboxes)
    except AgentMailError as exc:
        fail(exc)

    colors = {DaemonStatus.RUNNING: "green", DaemonStatus.STALE: "yellow", DaemonStatus.NONE: "dim"}
    daemon = f"[{colors[status]}]{status.value}[/{colors[status]}]"
    if pid is not None:
        daemon += f" (PID {pid})"
    console.print(f"[bold]Root:[/bold]        {store.root}")
    console.print(f"[bold]Daemon:[/bold]      {daemon}")
    console.print(f"[bold]Recipients:[/bold]  {len(recipients)}")
    console.print(f"[bold]Mailboxes:[/bold]   {len(mailboxes)} ({unread} unread)")
    console.print(
        f"[bold]Timing:[/bold]      debounce {config.timing.debounce_window * 1000:.0f}ms, "
        f"fallback {config.timing.fallback_interval:.0f}s"
    )


# ============================================================================
# Registry and mail
# ============================================================================


def _ignored() -> set[str]:
    return load_ignore_list(find_git_root())


@main.command("recipients")
@click.pass_context
def recipients_cmd(ctx: click.Context) -> None:
    """List the tmux windows you can message.

    Your own window is marked [you] and always shown; windows named in
    .agentmailignore at the git root are hidden. Status and unread counts
    come from the registry and mailboxes.
    """
    if not in_tmux():
        print_error("not running inside a tmux session")
        sys.exit(EXIT_ERROR)
    store = _store(ctx)
    multiplexer = TmuxMultiplexer()
    try:
        windows = run_async(multiplexer.list_windows())
        current = run_async(multiplexer.current_window())
        states = {row.recipient: row for row in store.read_all_recipients()}
    except AgentMailError as exc:
        fail(exc)

    ignored = _ignored()
    visible = [name for name in windows if name == current or name not in ignored]

    table = Table(title="Recipients")
    table.add_column("Recipient", style="cyan")
    table.add_column("Status")
    table.add_column("Unread", justify="right")
    styles = {RecipientStatus.READY: "green", RecipientStatus.WORK: "yellow", RecipientStatus.OFFLINE: "dim"}
    for name in visible:
        label = escape(name) + (" \\[you]" if name == current else "")
        state = states.get(name)
        if state is None:
            status = "[dim]-[/dim]"
        else:
            style = styles[state.status]
            status = f"[{style}]{state.status.value}[/{style}]"
        try:
            unread = str(len(store.find_unread(name)))
        except AgentMailError:
            unread = "?"
        table.add_row(label, status, unread)
    console.print(table)


@main.command("status")
@click.argument("status", type=click.Choice([s.value for s in RecipientStatus]))
@click.option("--window", "-w", default=None, help="Recipient name (default: current tmux window).")
@click.pass_context
def status_cmd(ctx: click.Context, status: str, window: str | None) -> None:
    """Set the availability of this window.

    Moving to work or offline re-arms notification for the next ready session.

    Example:

        agentmail status work
    """
    new_status = RecipientStatus(status)
    try:
        name = _current_window(window)
        _store(ctx).update_recipient_state(name, new_status, reset_notified=new_status.resets_notified)
    except AgentMailError as exc:
        fail(exc)
    print_success(f"{name} is now {new_status.value}")


@main.command("send")
@click.argument("recipient")
@click.argument("message", required=False)
@click.option("--sender", "-s", default=None, help="Sender name (default: current tmux window).")
@click.pass_context
def send_cmd(ctx: click.Context, recipient: str, message: str | None, sender: str | None) -> None:
    """Send MESSAGE to RECIPIENT; reads stdin when MESSAGE is omitted.

    Recipients listed in .agentmailignore are refused.

    Example:

        agentmail send reviewer "patch ready"

        git diff | agentmail send reviewer
    """
    if message is None:
        message = click.get_text_stream("stdin").read()
    if not message.strip():
        print_error("message is empty")
        sys.exit(EXIT_ERROR)
    if recipient in _ignored():
        print_error(f"recipient '{recipient}' not found")
        sys.exit(EXIT_ERROR)
    try:
        from_name = _current_window(sender)
        if in_tmux() and not run_async(TmuxMultiplexer().window_exists(recipient)):
            print_error(f"recipient '{recipient}' not found in tmux session")
            sys.exit(EXIT_ERROR)
        stored = _store(ctx).append(Message.compose(from_name, recipient, message))
    except AgentMailError as exc:
        fail(exc)
    print_success(f"Message {stored.id} sent to {recipient}")


@main.command("receive")
@click.option("--window", "-w", default=None, help="Recipient name (default: current tmux window).")
@click.pass_context
def receive_cmd(ctx: click.Context, window: str | None) -> None:
    """Print the oldest unread message and mark it read."""
    store = _store(ctx)
    try:
        name = _current_window(window)
        unread = store.find_unread(name)
        store.update_last_read_at(name, int(time.time() * 1000))
        if not unread:
            console.print("No unread messages")
            return
        msg = unread[0]
        store.mark_as_read(name, msg.id)
    except AgentMailError as exc:
        fail(exc)
    click.echo(f"From: {msg.sender}")
    click.echo(f"ID: {msg.id}")
    click.echo()
    click.echo(msg.body)


ONBOARD_COMMANDS = """### Commands

**send** - Send a message to another agent
```
agentmail send <recipient> "<message>"
```
Example:
```
agentmail send {example} "Hello, are you available?"
```

**receive** - Read the oldest unread message from your mailbox
```
agentmail receive
```
Returns "No unread messages" if mailbox is empty.

**recipients** - List all agents you can message
```
agentmail recipients
```
Shows all tmux windows. Your window is marked with [you]."""


@main.command("onboard")
def onboard_cmd() -> None:
    """Print agentmail usage context for the agent in this window.

    Meant for session-start hooks: outside tmux, or when tmux cannot be
    queried, it prints nothing and exits 0.
    """
    if not in_tmux():
        return
    multiplexer = TmuxMultiplexer()
    try:
        current = run_async(multiplexer.current_window())
        windows = run_async(multiplexer.list_windows())
    except AgentMailError:
        return

    ignored = _ignored()
    others = [name for name in windows if name != current and name not in ignored]

    click.echo("## AgentMail")
    click.echo()
    click.echo(f"You are **{current}**. AgentMail enables inter-agent communication within this tmux session.")
    click.echo()
    if others:
        click.echo(f"Other agents: {', '.join(others)}")
    else:
        click.echo("No other agents currently available.")
    click.echo()
    click.echo(ONBOARD_COMMANDS.format(example=others[0] if others else "agent2"))


# ============================================================================
# Retention
# ============================================================================


@main.command("cleanup")
@click.option("--stale-hours", type=float, default=None, help="Remove recipients not updated for this long.")
@click.option("--delivered-hours", type=float, default=None, help="Remove read messages older than this.")
@click.option("--dry-run", is_flag=True, help="Report what would be removed without removing it.")
@click.pass_context
def cleanup_cmd(
    ctx: click.Context, stale_hours: float | None, delivered_hours: float | None, dry_run: bool
) -> None:
    """Remove offline and stale recipients, old read messages and empty mailboxes.

    Example:

        agentmail cleanup --dry-run

        agentmail cleanup --stale-hours 24 --delivered-hours 1
    """
    config: MailmanConfig = ctx.obj["config"]
    stale_hours = config.retention.stale_hours if stale_hours is None else stale_hours
    delivered_hours = config.retention.delivered_hours if delivered_hours is None else delivered_hours
    if stale_hours < 0 or delivered_hours < 0:
        print_error("thresholds must not be negative")
        sys.exit(EXIT_ERROR)

    options = RetentionOptions(
        stale_threshold=timedelta(hours=stale_hours),
        delivered_threshold=timedelta(hours=delivered_hours),
        dry_run=dry_run,
    )
    engine = RetentionEngine(_store(ctx), TmuxMultiplexer() if in_tmux() else None)
    try:
        result = run_async(engine.run(options))
    except (AgentMailError, OSError) as exc:
        print_error(getattr(exc, "message", str(exc)))
        sys.exit(EXIT_ERROR)

    verb = "Would remove" if dry_run else "Removed"
    rows: list[tuple[str, Any]] = [
        ("Offline recipients", result.offline_removed if result.offline_checked else "skipped (not in tmux)"),
        ("Stale recipients", result.stale_removed),
        ("Read messages", result.messages_removed),
        ("Empty mailboxes", result.mailboxes_removed),
    ]
    table = Table(title=f"Cleanup{' (dry run)' if dry_run else ''}")
    table.add_column("Category")
    table.add_column(verb, justify="right")
    for label, value in rows:
        table.add_row(label, str(value))
    if result.files_skipped:
        table.add_row("[yellow]Locked mailboxes skipped[/yellow]", str(result.files_skipped))
    console.print(table)


if __name__ == "__main__":
    main()
