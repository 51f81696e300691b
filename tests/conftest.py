"""
Brief: Global pytest configuration: src on sys.path, per-test 10s timeout and
shared fixtures for reporter tests.

Inputs:
  - None

Outputs:
  - None
"""

import os
import signal
import sys

import pytest

# Ensure 'src' is on sys.path so 'portmaster_prometheus' is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from prometheus_client import CollectorRegistry  # noqa: E402

from portmaster_prometheus.connection import (  # noqa: E402
    ConnectionEvent,
    ConnectionType,
    Entity,
    Verdict,
)


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


@pytest.fixture
def registry():
    """
    Brief: Fresh CollectorRegistry so tests never touch the global registry.

    Outputs:
      - CollectorRegistry without default collectors.
    """
    return CollectorRegistry()


@pytest.fixture
def make_event():
    """
    Brief: Factory for ConnectionEvent instances.

    Inputs (factory):
      - conn_type: ConnectionType or raw value (default IP)
      - verdict: Verdict or raw value (default ACCEPT)
      - domain: Optional entity domain

    Outputs:
      - Callable returning ConnectionEvent.
    """

    def _make(
        conn_type=ConnectionType.CONNECTION_TYPE_IP,
        verdict=Verdict.VERDICT_ACCEPT,
        domain=None,
        **kwargs,
    ):
        entity = Entity(domain=domain) if domain is not None else None
        return ConnectionEvent(type=conn_type, verdict=verdict, entity=entity, **kwargs)

    return _make
