from agentmail.prometheus import MailmanMetrics


def test_mailman_metrics_counters_and_gauge():
    metrics = MailmanMetrics()

    metrics.inc_notification("registered")
    metrics.inc_failure("stateless")
    metrics.inc_cycle("event")
    metrics.add_removed("message", 3)
    metrics.add_removed("stale", 0)
    metrics.set_watching(True)

    output = metrics.generate_latest()
    assert b'agentmail_notifications_total{phase="registered"} 1.0' in output
    assert b'agentmail_notification_failures_total{phase="stateless"} 1.0' in output
    assert b'agentmail_dispatch_cycles_total{trigger="event"} 1.0' in output
    assert b'agentmail_retention_removed_total{kind="message"} 3.0' in output
    assert b'kind="stale"' not in output
    assert b"agentmail_monitoring_watching 1.0" in output


def test_separate_registries_do_not_collide():
    first, second = MailmanMetrics(), MailmanMetrics()
    first.inc_cycle("fallback")

    assert b'trigger="fallback"' not in second.generate_latest()


def test_write_textfile(tmp_path):
    metrics = MailmanMetrics()
    metrics.inc_cycle("fallback")
    target = tmp_path / "agentmail.prom"

    metrics.write_textfile(target)

    assert b"agentmail_dispatch_cycles_total" in target.read_bytes()
    assert [p.name for p in tmp_path.iterdir()] == ["agentmail.prom"]
