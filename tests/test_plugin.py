"""
Brief: Tests for the PrometheusPlugin lifecycle hooks.

Inputs:
  - None

Outputs:
  - None
"""

import logging
import os
import threading

import pytest
import requests

import portmaster_prometheus.delivery as delivery_mod
from portmaster_prometheus.connection import ConnectionEvent, ProcessInfo, Verdict
from portmaster_prometheus.errors import BindError, ConfigError, RegistrationConflict
from portmaster_prometheus.plugin import PrometheusPlugin


class _Session:
    def __init__(self):
        self.bodies = []

    def request(self, method, url, data=None, headers=None, timeout=None):
        self.bodies.append(data)

        class _Resp:
            status_code = 200
            text = ""

        return _Resp()

    def close(self):
        pass


def test_bogus_mode_fails_before_registration_or_network(registry, monkeypatch):
    """
    Brief: An unknown mode aborts init() without touching registry or sockets.

    Inputs:
      - static config with mode "bogus"

    Outputs:
      - None: Asserts ConfigError, no server start, empty registry
    """

    def _boom(*a, **kw):
        raise AssertionError("server must not start")

    monkeypatch.setattr(delivery_mod, "start_metrics_server", _boom)

    plugin = PrometheusPlugin({"mode": "bogus"}, registry=registry)
    with pytest.raises(ConfigError):
        plugin.init()
    assert list(registry.collect()) == []
    assert plugin.reporter is None


def test_bind_failure_unregisters_metrics(registry, monkeypatch):
    def _fail(*a, **kw):
        raise BindError("address in use")

    monkeypatch.setattr(delivery_mod, "start_metrics_server", _fail)

    plugin = PrometheusPlugin({"namespace": "pm"}, registry=registry)
    with pytest.raises(BindError):
        plugin.init()
    assert list(registry.collect()) == []

    # A retry with a working listener can register the same names again
    plugin2 = PrometheusPlugin({"namespace": "pm", "mode": "push", "listenAddress": "gw:1"},
                               registry=registry, session=_Session())
    plugin2.init()
    plugin2.shutdown(timeout=2)


def test_second_plugin_same_names_conflicts(registry):
    cfg = {"mode": "push", "listenAddress": "gw:9091", "push": {"interval": 60}}
    first = PrometheusPlugin(cfg, registry=registry, session=_Session())
    first.init()
    try:
        with pytest.raises(RegistrationConflict):
            PrometheusPlugin(cfg, registry=registry, session=_Session()).init()
    finally:
        first.shutdown(timeout=2)


def test_pull_mode_end_to_end(registry):
    plugin = PrometheusPlugin(
        {"namespace": "pm", "subsystem": "fw", "listenAddress": "127.0.0.1:0"},
        registry=registry,
    )
    plugin.init()
    try:
        assert plugin.delivery.mode == "pull"
        assert plugin.report_connection({"type": "CONNECTION_TYPE_DNS", "verdict": "VERDICT_BLOCK"})
        assert plugin.report_connection(
            {"type": 1, "verdict": 4, "entity": {"domain": "example.com."}}
        )
        resp = requests.get(f"http://{plugin.delivery.address}/metrics", timeout=2)
    finally:
        plugin.shutdown(timeout=2)

    assert resp.status_code == 200
    assert 'pm_fw_portmaster_connections_total{type="dns",verdict="block"} 1.0' in resp.text
    assert 'pm_fw_portmaster_connections_total{type="ip",verdict="block"} 1.0' in resp.text
    assert 'pm_fw_prometheus_domains_total{domain="example.com.",verdict="block"} 1.0' in resp.text


def test_push_mode_pushes_reported_counts(registry):
    session = _Session()
    shutdown = threading.Event()
    plugin = PrometheusPlugin(
        {"mode": "push", "listenAddress": "gw:9091", "push": {"interval": 0.02}},
        registry=registry,
        session=session,
        shutdown_event=shutdown,
    )
    plugin.init()
    assert plugin.delivery.address == "gw:9091"
    plugin.report_connection(ConnectionEvent(verdict=Verdict.VERDICT_DROP))

    pusher = plugin.delivery.transport
    deadline = threading.Event()
    for _ in range(200):
        if any(b'verdict="drop"} 1.0' in body for body in session.bodies):
            break
        deadline.wait(0.01)
    plugin.shutdown(timeout=2)

    assert shutdown.is_set()
    assert not pusher.is_alive()
    assert any(b'verdict="drop"} 1.0' in body for body in session.bodies)


def test_self_connections_are_skipped(registry):
    plugin = PrometheusPlugin(
        {"mode": "push", "listenAddress": "gw:9091", "push": {"interval": 60}},
        registry=registry,
        session=_Session(),
    )
    plugin.init()
    try:
        own = ConnectionEvent(verdict=Verdict.VERDICT_ACCEPT, process=ProcessInfo(pid=os.getpid()))
        assert plugin.report_connection(own) is True
        assert plugin.report_connection({"verdict": 4, "process": {"pid": os.getpid()}}) is True
        assert plugin.reporter.snapshot().total_connections == 0

        other = ConnectionEvent(verdict=Verdict.VERDICT_ACCEPT, process=ProcessInfo(pid=os.getpid() + 1))
        plugin.report_connection(other)
        assert plugin.reporter.snapshot().total_connections == 1
    finally:
        plugin.shutdown(timeout=2)


def test_report_before_init_returns_false(caplog):
    plugin = PrometheusPlugin({})
    with caplog.at_level(logging.ERROR):
        assert plugin.report_connection(ConnectionEvent()) is False
    assert any("before init" in r.getMessage() for r in caplog.records)


def test_report_failures_are_logged_not_raised(registry, caplog, monkeypatch):
    plugin = PrometheusPlugin(
        {"mode": "push", "listenAddress": "gw:9091", "push": {"interval": 60}},
        registry=registry,
        session=_Session(),
    )
    plugin.init()
    try:
        def _broken(event):
            raise RuntimeError("counter exploded")

        monkeypatch.setattr(plugin.reporter, "record", _broken)
        with caplog.at_level(logging.ERROR):
            assert plugin.report_connection(ConnectionEvent(id="c1")) is False
            assert plugin.report_connection(["not", "a", "mapping"]) is False
        assert any("c1" in r.getMessage() for r in caplog.records)
    finally:
        plugin.shutdown(timeout=2)


def test_from_config_round_trips_aliases(registry):
    from portmaster_prometheus.config.config_parser import load_static_config

    cfg = load_static_config({"listenAddress": "127.0.0.1:0", "maxDomains": 3})
    plugin = PrometheusPlugin.from_config(cfg, registry=registry)
    assert plugin.raw_config["listenAddress"] == "127.0.0.1:0"
    assert plugin.raw_config["maxDomains"] == 3
