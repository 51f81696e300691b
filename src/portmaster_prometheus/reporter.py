"""Prometheus counters for Portmaster connection events.

This module owns the aggregation state shared by the event-intake path and
both delivery modes: two labeled counter families registered on a
prometheus_client CollectorRegistry. Callers only interact with it through
PrometheusReporter.record(), snapshot() and render().

Importing this module calls prometheus_client.disable_created_metrics(),
which is process-wide: no counter in any registry of the host process
exports a _created sample afterwards. The exposition then carries exactly one
sample per series, as the Go client library does.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Set, Tuple

import prometheus_client
from prometheus_client import CollectorRegistry, Counter, generate_latest

from .connection import ConnectionEvent
from .errors import RegistrationConflict
from .labels import extract_labels

logger = logging.getLogger(__name__)

# Process-wide; see the module docstring.
prometheus_client.disable_created_metrics()

CONNECTIONS_METRIC = "portmaster_connections_total"
DOMAINS_METRIC = "prometheus_domains_total"

# Domain label used once max_domains distinct domains have been seen.
OVERFLOW_DOMAIN_LABEL = "other"


@dataclass
class ReporterSnapshot:
    """
    Point-in-time copy of every counter series.

    Inputs:
        connections: {(type, verdict): count}
        domains: {(domain, verdict): count}
        timestamp: Unix time the snapshot was taken

    Outputs:
        Plain data safe to inspect or serialize without holding any lock.
    """

    connections: Dict[Tuple[str, str], int] = field(default_factory=dict)
    domains: Dict[Tuple[str, str], int] = field(default_factory=dict)
    timestamp: float = 0.0

    @property
    def total_connections(self) -> int:
        return sum(self.connections.values())


def _metric_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


class PrometheusReporter:
    """
    Aggregates connection events into Prometheus counters.

    Inputs (constructor):
        namespace: Metric namespace prefix (may be empty)
        subsystem: Metric subsystem prefix (may be empty)
        registry: CollectorRegistry to register on (default prometheus_client.REGISTRY)
        max_domains: Cap on distinct domain labels; 0 disables the cap

    Outputs:
        PrometheusReporter with connections_total{type,verdict} and
        domains_total{domain,verdict} registered.

    Raises:
        RegistrationConflict: a metric name is already taken in registry.

    Series are created lazily on the first event carrying a label tuple and
    are never reset. Increments are atomic per series, so concurrent record()
    calls lose no updates and snapshot() never sees a partial increment.

    Example:
        >>> from prometheus_client import CollectorRegistry
        >>> from portmaster_prometheus.connection import ConnectionEvent, ConnectionType, Verdict
        >>> rep = PrometheusReporter("pm", "", registry=CollectorRegistry())
        >>> rep.record(ConnectionEvent(type=ConnectionType.CONNECTION_TYPE_DNS,
        ...                            verdict=Verdict.VERDICT_ACCEPT))
        >>> rep.snapshot().connections
        {('dns', 'accept'): 1}
    """

    def __init__(
        self,
        namespace: str = "",
        subsystem: str = "",
        registry: Optional[CollectorRegistry] = None,
        max_domains: int = 0,
    ) -> None:
        self.namespace = namespace or ""
        self.subsystem = subsystem or ""
        self.registry = registry if registry is not None else prometheus_client.REGISTRY
        self.max_domains = max(0, int(max_domains or 0))

        self._domain_lock = threading.Lock()
        self._seen_domains: Set[str] = set()

        self.connection_counter = Counter(
            CONNECTIONS_METRIC,
            "The total number of processed connections",
            ["type", "verdict"],
            namespace=self.namespace,
            subsystem=self.subsystem,
            registry=None,
        )
        self.domain_counter = Counter(
            DOMAINS_METRIC,
            "The total number of processed connections by domain",
            ["domain", "verdict"],
            namespace=self.namespace,
            subsystem=self.subsystem,
            registry=None,
        )

        self._register(self.connection_counter)
        try:
            self._register(self.domain_counter)
        except RegistrationConflict:
            self.registry.unregister(self.connection_counter)
            raise

        logger.debug(
            "Registered %s and %s",
            self.connection_metric_name,
            self.domain_metric_name,
        )

    @property
    def connection_metric_name(self) -> str:
        return _metric_name(self.namespace, self.subsystem, CONNECTIONS_METRIC)

    @property
    def domain_metric_name(self) -> str:
        return _metric_name(self.namespace, self.subsystem, DOMAINS_METRIC)

    def _register(self, counter: Counter) -> None:
        try:
            self.registry.register(counter)
        except ValueError as exc:
            raise RegistrationConflict(str(exc)) from exc

    def unregister(self) -> None:
        """Remove both counter families from the registry."""

        for counter in (self.connection_counter, self.domain_counter):
            try:
                self.registry.unregister(counter)
            except KeyError:
                logger.debug("Counter %r was not registered", counter)

    def record(self, event: ConnectionEvent) -> None:
        """
        Record one connection event.

        Inputs:
            event: ConnectionEvent from the host

        Outputs:
            None; increments (type, verdict) by one and, for IP connections
            with a domain, (domain, verdict) by one.
        """
        labels = extract_labels(event)
        self.connection_counter.labels(labels.type, labels.verdict).inc()

        if labels.domain:
            domain = self._bounded_domain(labels.domain)
            self.domain_counter.labels(domain, labels.verdict).inc()

    def _bounded_domain(self, domain: str) -> str:
        if not self.max_domains:
            return domain
        with self._domain_lock:
            if domain in self._seen_domains:
                return domain
            if len(self._seen_domains) < self.max_domains:
                self._seen_domains.add(domain)
                return domain
        return OVERFLOW_DOMAIN_LABEL

    def snapshot(self) -> ReporterSnapshot:
        """
        Copy the current value of every series that has been incremented.

        Inputs:
            None

        Outputs:
            ReporterSnapshot with integer counts keyed by label tuples.
        """
        snap = ReporterSnapshot(timestamp=time.time())
        snap.connections = self._collect(self.connection_counter, ("type", "verdict"))
        snap.domains = self._collect(self.domain_counter, ("domain", "verdict"))
        return snap

    @staticmethod
    def _collect(counter: Counter, labelnames: Tuple[str, str]) -> Dict[Tuple[str, str], int]:
        values: Dict[Tuple[str, str], int] = {}
        for metric in counter.collect():
            for sample in metric.samples:
                if not sample.name.endswith("_total"):
                    continue
                key = tuple(sample.labels.get(name, "") for name in labelnames)
                values[key] = int(sample.value)  # type: ignore[index]
        return values

    def render(self) -> bytes:
        """
        Render the registry in the Prometheus text exposition format.

        Outputs:
            bytes payload served on /metrics and sent to the push gateway.
        """
        return generate_latest(self.registry)
