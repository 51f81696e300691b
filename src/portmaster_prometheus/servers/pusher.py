"""Push-mode delivery to a Prometheus Pushgateway.

Inputs:
  - A PrometheusReporter, the gateway address and job name, and the shared
    shutdown event.

Outputs:
  - A daemon thread that pushes the reporter's registry with
    ``prometheus_client.push_to_gateway`` (HTTP PUT to
    ``{address}/metrics/job/{job}``) on every tick until shutdown.

Notes:
  - Failed pushes are logged and retried on the next tick only. There is no
    backoff and the loop never stops on its own.
"""

from __future__ import annotations

import logging
import math
import threading
from typing import Any, Callable, List, Optional, Tuple

import requests
from prometheus_client import push_to_gateway

from ..config.config_parser import DEFAULT_PUSH_INTERVAL
from ..errors import ConfigError, TransmitError
from ..reporter import PrometheusReporter

logger = logging.getLogger(__name__)


class MetricsPusher(threading.Thread):
    """
    Background daemon thread pushing metrics on a fixed interval.

    Inputs (constructor):
        reporter: PrometheusReporter whose registry is pushed
        address: Pushgateway address ("gw:9091" or "https://gw.example")
        job: Job name the metrics are grouped under
        interval_seconds: Seconds between pushes
        stop_event: Shared shutdown event; a private one is created when None
        timeout: Per-request timeout in seconds
        session: Optional requests.Session (tests inject a fake one)

    Outputs:
        MetricsPusher thread instance (call start() to begin)

    Raises:
        ConfigError: interval_seconds is not a positive finite number that
            threading.Event.wait() accepts.

    The pusher waits on stop_event for interval_seconds, so it wakes either
    on the timer or on shutdown. Shutdown is its only exit path.

    Example:
        >>> pusher = MetricsPusher(reporter, "127.0.0.1:9091", interval_seconds=10)
        >>> pusher.start()
        >>> # pushes every 10 seconds until stop_event is set
    """

    def __init__(
        self,
        reporter: PrometheusReporter,
        address: str,
        job: str = "portmaster",
        interval_seconds: float = DEFAULT_PUSH_INTERVAL,
        stop_event: Optional[threading.Event] = None,
        timeout: float = 5.0,
        session: Optional[Any] = None,
    ) -> None:
        super().__init__(daemon=True, name="MetricsPusher")
        interval = float(interval_seconds)
        if not math.isfinite(interval) or interval <= 0 or interval > threading.TIMEOUT_MAX:
            raise ConfigError(f"invalid push interval {interval_seconds!r}")

        self.reporter = reporter
        self.address = address
        self.job = job
        self.interval_seconds = interval
        self.timeout = float(timeout)
        self._stop_event = stop_event if stop_event is not None else threading.Event()
        self._session = session if session is not None else requests.Session()

        self.last_url: Optional[str] = None
        self.attempts = 0
        self.failures = 0

    def _session_handler(
        self,
        url: str,
        method: str,
        timeout: Optional[float],
        headers: List[Tuple[str, str]],
        data: bytes,
    ) -> Callable[[], None]:
        """push_to_gateway handler sending through the pusher's requests session."""

        def handle() -> None:
            try:
                resp = self._session.request(
                    method, url, data=data, headers=dict(headers), timeout=timeout
                )
            except requests.RequestException as exc:
                raise TransmitError(f"failed to push metrics to {url}: {exc}") from exc
            if not 200 <= resp.status_code < 300:
                raise TransmitError(
                    f"unexpected status code {resp.status_code} while pushing to {url}: {resp.text}"
                )
            self.last_url = url

        return handle

    def push_once(self) -> None:
        """
        Push the registry's current exposition to the gateway.

        Raises:
            TransmitError: request failed or the gateway answered non-2xx.
        """
        push_to_gateway(
            self.address,
            job=self.job,
            registry=self.reporter.registry,
            timeout=self.timeout,
            handler=self._session_handler,
        )

    def _wait(self) -> bool:
        """Wait one interval; True once shutdown was requested."""
        try:
            return self._stop_event.wait(self.interval_seconds)
        except (OverflowError, ValueError) as exc:
            logger.error(
                "push interval %r rejected by the timer (%s); falling back to %.3gs",
                self.interval_seconds,
                exc,
                DEFAULT_PUSH_INTERVAL,
            )
            self.interval_seconds = DEFAULT_PUSH_INTERVAL
            return self._stop_event.is_set()

    def run(self) -> None:
        logger.info(
            "Pushing metrics to %s (job %s) every %.3gs",
            self.address,
            self.job,
            self.interval_seconds,
        )
        try:
            while not self._wait():
                self.attempts += 1
                try:
                    self.push_once()
                except TransmitError as exc:
                    self.failures += 1
                    logger.error("failed to push metrics: %s", exc)
                except Exception:
                    self.failures += 1
                    logger.exception("MetricsPusher error")
        finally:
            self._session.close()
        logger.info("Metrics pusher stopped after %d attempts", self.attempts)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal shutdown and wait up to timeout for the thread to exit."""
        self._stop_event.set()
        if self.ident is not None:
            self.join(timeout=timeout)
