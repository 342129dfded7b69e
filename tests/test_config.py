"""Tests for configuration loading and store root resolution."""

from pathlib import Path

import pytest

from agentmail.config import (
    DEFAULT_NOTIFY_TEXT,
    MailmanConfig,
    find_git_root,
    load_config,
    load_ignore_list,
    resolve_root,
)
from agentmail.errors import ConfigurationError


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "AGENTMAIL_ROOT",
        "AGENTMAIL_DEBOUNCE_MS",
        "AGENTMAIL_FALLBACK_INTERVAL",
        "AGENTMAIL_STATELESS_INTERVAL",
        "AGENTMAIL_METRICS_FILE",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path):
    config = load_config(tmp_path)

    assert config.root == tmp_path
    assert config.timing.debounce_window == 0.5
    assert config.timing.fallback_interval == 60.0
    assert config.timing.stateless_notify_interval == 60.0
    assert config.timing.submit_delay == 1.0
    assert config.retention.stale_hours == 48.0
    assert config.retention.delivered_hours == 2.0
    assert config.retention.startup_stale_threshold.total_seconds() == 3600
    assert config.notify_text == DEFAULT_NOTIFY_TEXT
    assert config.metrics_file is None


def test_dataclass_defaults_use_cwd(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)

    assert MailmanConfig().root == Path.cwd() / ".agentmail"


def test_ini_file(tmp_path):
    (tmp_path / "config.ini").write_text(
        "[mailman]\n"
        "debounce_window_ms = 250\n"
        "fallback_interval = 30\n"
        "notify_text = You have mail\n"
        "metrics_file = /tmp/agentmail.prom\n"
        "\n"
        "[cleanup]\n"
        "stale_hours = 24\n"
        "delivered_hours = 0.5\n"
    )

    config = load_config(tmp_path)

    assert config.timing.debounce_window == 0.25
    assert config.timing.fallback_interval == 30.0
    assert config.notify_text == "You have mail"
    assert config.metrics_file == Path("/tmp/agentmail.prom")
    assert config.retention.stale_hours == 24.0
    assert config.retention.delivered_threshold.total_seconds() == 1800


def test_env_overrides_ini(tmp_path, monkeypatch):
    (tmp_path / "config.ini").write_text("[mailman]\nfallback_interval = 30\n")
    monkeypatch.setenv("AGENTMAIL_FALLBACK_INTERVAL", "5")
    monkeypatch.setenv("AGENTMAIL_DEBOUNCE_MS", "100")

    config = load_config(tmp_path)

    assert config.timing.fallback_interval == 5.0
    assert config.timing.debounce_window == pytest.approx(0.1)


def test_invalid_value(tmp_path):
    (tmp_path / "config.ini").write_text("[mailman]\nfallback_interval = soon\n")

    with pytest.raises(ConfigurationError):
        load_config(tmp_path)


def test_non_positive_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENTMAIL_FALLBACK_INTERVAL", "0")

    with pytest.raises(ConfigurationError):
        load_config(tmp_path)


def test_missing_explicit_file(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path, tmp_path / "other.ini")


def test_resolve_root_explicit_and_env(tmp_path, monkeypatch):
    assert resolve_root(tmp_path / "a") == (tmp_path / "a").resolve()

    monkeypatch.setenv("AGENTMAIL_ROOT", str(tmp_path / "b"))
    assert resolve_root(None) == (tmp_path / "b").resolve()


def test_resolve_root_uses_git_root(tmp_path, monkeypatch):
    repo = tmp_path / "repo"
    (repo / ".git").mkdir(parents=True)
    nested = repo / "src" / "pkg"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)

    assert find_git_root() == repo.resolve()
    assert resolve_root(None) == repo.resolve() / ".agentmail"


def test_load_ignore_list(tmp_path):
    (tmp_path / ".agentmailignore").write_text("monitor\n\n  logs  \n")

    assert load_ignore_list(tmp_path) == {"monitor", "logs"}


def test_load_ignore_list_missing(tmp_path):
    assert load_ignore_list(tmp_path) == set()
    assert load_ignore_list(None) == set()
