import logging

from leadfinder.config import settings
from leadfinder.observability.metrics import MetricsReporter


class StubStatsClient:
    def __init__(self):
        self.calls = []

    def timing(self, name, value, rate=1.0):
        self.calls.append(("timing", name, value, rate))

    def gauge(self, name, value):
        self.calls.append(("gauge", name, value))

    def incr(self, name, value, rate=1.0):
        self.calls.append(("incr", name, value, rate))


def test_metrics_are_namespaced_and_logged(caplog):
    reporter = MetricsReporter()
    caplog.set_level(logging.DEBUG, logger="leadfinder.metrics")

    reporter.increment("collector.company_accepted", tags={"repository": "memory"})
    reporter.timing("discovery.latency_ms", 12.34567)

    payloads = [record.metrics for record in caplog.records if hasattr(record, "metrics")]
    assert payloads[0]["metric"] == "discovery.collector.company_accepted"
    assert payloads[0]["type"] == "counter"
    assert payloads[0]["tags"] == {"repository": "memory"}
    assert payloads[1]["metric"] == "discovery.latency_ms"
    assert payloads[1]["value"] == 12.3457


def test_statsd_backend_receives_metrics(monkeypatch):
    reporter = MetricsReporter()
    stub = StubStatsClient()
    monkeypatch.setattr(reporter, "_statsd", stub)

    reporter.gauge("collector.pages", 3)
    reporter.increment("contacts.resolved", value=2)

    assert stub.calls == [
        ("gauge", "discovery.collector.pages", 3),
        ("incr", "discovery.contacts.resolved", 2, 1.0),
    ]


def test_disabled_metrics_emit_nothing(monkeypatch):
    monkeypatch.setattr(settings, "metrics_disable", True)
    reporter = MetricsReporter()
    stub = StubStatsClient()
    monkeypatch.setattr(reporter, "_statsd", stub)

    reporter.increment("anything")

    assert stub.calls == []
