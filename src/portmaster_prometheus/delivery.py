"""Delivery manager: resolves the configured mode into a running transport.

Brief:
  Exactly one delivery mode is active per process. Pull mode serves the
  reporter on ``GET /metrics``; push mode sends it to a Pushgateway on a timer.
  The mode is resolved once at startup and never changes afterwards.

Inputs:
  - DeliveryConfig (PullConfig or PushConfig), a PrometheusReporter and the
    process-wide shutdown event.

Outputs:
  - DeliveryHandle wrapping the running server or pusher thread.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union

from .config.config_parser import DeliveryConfig, PullConfig, PushConfig
from .errors import ConfigError
from .reporter import PrometheusReporter
from .servers.metrics_server import MetricsServerHandle, start_metrics_server
from .servers.pusher import MetricsPusher

logger = logging.getLogger(__name__)


class DeliveryHandle:
    """Brief: Running delivery transport.

    Inputs (constructor):
      - mode: "pull" or "push".
      - address: Bound listen address (pull) or gateway address (push).
      - transport: MetricsServerHandle or MetricsPusher.

    Outputs:
      - Handle exposing is_running() and stop().
    """

    def __init__(
        self,
        mode: str,
        address: str,
        transport: Union[MetricsServerHandle, MetricsPusher],
    ) -> None:
        self.mode = mode
        self.address = address
        self.transport = transport

    def is_running(self) -> bool:
        if isinstance(self.transport, MetricsPusher):
            return self.transport.is_alive()
        return self.transport.is_running()

    def stop(self, timeout: float = 5.0) -> None:
        """Brief: Stop the transport and wait up to timeout for its thread."""

        logger.debug("Stopping %s delivery", self.mode)
        self.transport.stop(timeout=timeout)


def start_delivery(
    config: DeliveryConfig,
    reporter: PrometheusReporter,
    shutdown_event: Optional[threading.Event] = None,
    *,
    session: Optional[Any] = None,
) -> DeliveryHandle:
    """Brief: Start the delivery transport selected by config.

    Inputs:
      - config: PullConfig or PushConfig from StaticConfig.delivery_config().
      - reporter: PrometheusReporter whose exposition is delivered.
      - shutdown_event: Event the host sets on shutdown; stops push mode.
      - session: Optional requests.Session for push mode.

    Outputs:
      - DeliveryHandle for the running transport.

    Raises:
      - ConfigError: config is neither PullConfig nor PushConfig.
      - BindError / ServeError: pull server could not start.

    Example:
      >>> handle = start_delivery(PullConfig(address="127.0.0.1:0"), reporter)
      >>> handle.mode
      'pull'
    """

    if isinstance(config, PullConfig):
        server = start_metrics_server(
            reporter, config.address, use_asyncio=config.use_asyncio
        )
        host, port = server.address
        return DeliveryHandle(config.mode, f"{host}:{port}", server)

    if isinstance(config, PushConfig):
        pusher = MetricsPusher(
            reporter,
            config.address,
            job=config.job,
            interval_seconds=config.interval,
            stop_event=shutdown_event,
            session=session,
        )
        pusher.start()
        return DeliveryHandle(config.mode, pusher.address, pusher)

    raise ConfigError(f"unsupported delivery configuration {config!r}")
