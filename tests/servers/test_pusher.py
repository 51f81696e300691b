"""
Brief: Tests for push-mode delivery to a Pushgateway.

Inputs:
  - None

Outputs:
  - None
"""

import threading
import time

import pytest
import requests

from portmaster_prometheus.errors import ConfigError, TransmitError
from portmaster_prometheus.reporter import PrometheusReporter
from portmaster_prometheus.servers.pusher import MetricsPusher


class _FakeResponse:
    def __init__(self, status_code=200, text=""):
        self.status_code = status_code
        self.text = text


class _FakeSession:
    """Records every request; responses are taken from a script, then default to 200."""

    def __init__(self, script=None):
        self.calls = []
        self.script = list(script or [])
        self.closed = False
        self.lock = threading.Lock()

    def request(self, method, url, data=None, headers=None, timeout=None):
        with self.lock:
            self.calls.append({"method": method, "url": url, "data": data, "headers": headers, "timeout": timeout})
            outcome = self.script.pop(0) if self.script else _FakeResponse(200)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def close(self):
        self.closed = True


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


@pytest.mark.parametrize(
    "address,job,expected",
    [
        ("127.0.0.1:9091", "portmaster", "http://127.0.0.1:9091/metrics/job/portmaster"),
        ("https://gw.example/", "portmaster", "https://gw.example/metrics/job/portmaster"),
        ("gw:9091", "a/b", "http://gw:9091/metrics/job@base64/YS9i"),
    ],
)
def test_push_url_per_gateway_and_job(registry, address, job, expected):
    session = _FakeSession()
    pusher = MetricsPusher(PrometheusReporter(registry=registry), address, job=job, session=session)
    pusher.push_once()
    assert session.calls[0]["url"] == expected
    assert session.calls[0]["method"] == "PUT"
    assert pusher.last_url == expected


def test_push_once_sends_current_exposition(registry, make_event):
    rep = PrometheusReporter("pm", "", registry=registry)
    rep.record(make_event())
    session = _FakeSession()
    pusher = MetricsPusher(rep, "gw:9091", job="laptop", session=session, timeout=1.5)

    pusher.push_once()

    (call,) = session.calls
    assert call["url"] == "http://gw:9091/metrics/job/laptop"
    assert call["timeout"] == 1.5
    assert call["headers"]["Content-Type"].startswith("text/plain")
    assert b'pm_portmaster_connections_total{type="ip",verdict="accept"} 1.0' in call["data"]


def test_push_once_non_2xx_raises(registry):
    rep = PrometheusReporter(registry=registry)
    pusher = MetricsPusher(rep, "gw:9091", session=_FakeSession([_FakeResponse(500, "boom")]))
    with pytest.raises(TransmitError) as excinfo:
        pusher.push_once()
    assert "500" in str(excinfo.value)


def test_push_once_request_exception_raises(registry):
    rep = PrometheusReporter(registry=registry)
    session = _FakeSession([requests.ConnectionError("refused")])
    pusher = MetricsPusher(rep, "gw:9091", session=session)
    with pytest.raises(TransmitError):
        pusher.push_once()


def test_pusher_loop_pushes_each_tick_with_latest_snapshot(registry, make_event):
    """
    Brief: Each tick pushes the snapshot current at that moment.

    Inputs:
      - interval of 0.05s, one event recorded after the first push

    Outputs:
      - None: Asserts >= 3 pushes and that a later push carries the new count
    """
    rep = PrometheusReporter("pm", "", registry=registry)
    session = _FakeSession()
    stop = threading.Event()
    pusher = MetricsPusher(rep, "gw:9091", interval_seconds=0.05, stop_event=stop, session=session)
    pusher.start()
    try:
        assert _wait_for(lambda: len(session.calls) >= 1)
        rep.record(make_event())
        assert _wait_for(lambda: len(session.calls) >= 3)
    finally:
        pusher.stop(timeout=2)

    assert not pusher.is_alive()
    assert session.closed
    assert b"} 1.0" in session.calls[-1]["data"]
    assert pusher.attempts == len(session.calls)
    assert pusher.failures == 0


def test_pusher_continues_after_failures(registry, caplog):
    rep = PrometheusReporter(registry=registry)
    session = _FakeSession(
        [_FakeResponse(503, "unavailable"), requests.Timeout("slow"), _FakeResponse(200)]
    )
    stop = threading.Event()
    pusher = MetricsPusher(rep, "gw:9091", interval_seconds=0.02, stop_event=stop, session=session)

    with caplog.at_level("ERROR", logger="portmaster_prometheus.servers.pusher"):
        pusher.start()
        try:
            assert _wait_for(lambda: len(session.calls) >= 4)
        finally:
            stop.set()
            pusher.join(timeout=2)

    assert pusher.failures == 2
    assert pusher.attempts >= 4
    messages = [r.getMessage() for r in caplog.records]
    assert any("503" in m for m in messages)
    assert any("slow" in m for m in messages)


def test_pusher_exits_only_on_stop_event(registry):
    rep = PrometheusReporter(registry=registry)
    stop = threading.Event()
    pusher = MetricsPusher(rep, "gw:9091", interval_seconds=60, stop_event=stop, session=_FakeSession())
    pusher.start()
    time.sleep(0.05)
    assert pusher.is_alive()
    assert pusher.attempts == 0

    stop.set()
    pusher.join(timeout=2)
    assert not pusher.is_alive()


def test_stop_before_start_does_not_block(registry):
    pusher = MetricsPusher(PrometheusReporter(registry=registry), "gw:9091", session=_FakeSession())
    pusher.stop(timeout=0.1)


@pytest.mark.parametrize("interval", [0, -1, float("nan"), float("inf"), threading.TIMEOUT_MAX * 2])
def test_invalid_interval_rejected_at_construction(registry, interval):
    with pytest.raises(ConfigError):
        MetricsPusher(PrometheusReporter(registry=registry), "gw:9091", interval_seconds=interval)


def test_timer_rejecting_interval_does_not_end_loop(registry, caplog):
    """
    Brief: An interval the timer cannot wait on falls back to the default.

    Inputs:
      - interval forced past threading.TIMEOUT_MAX after construction

    Outputs:
      - None: Asserts the thread survives, logs, and exits on the stop event
    """
    stop = threading.Event()
    pusher = MetricsPusher(
        PrometheusReporter(registry=registry), "gw:9091", stop_event=stop, session=_FakeSession()
    )
    pusher.interval_seconds = threading.TIMEOUT_MAX * 2

    with caplog.at_level("ERROR", logger="portmaster_prometheus.servers.pusher"):
        pusher.start()
        assert _wait_for(lambda: pusher.interval_seconds == 10.0)
        time.sleep(0.05)
        assert pusher.is_alive()

    assert any("rejected by the timer" in r.getMessage() for r in caplog.records)
    stop.set()
    pusher.join(timeout=2)
    assert not pusher.is_alive()
