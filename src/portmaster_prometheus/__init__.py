"""Portmaster Prometheus reporter package"""

from .connection import ConnectionEvent, ConnectionType, Entity, ProcessInfo, Verdict
from .plugin import PrometheusPlugin
from .reporter import PrometheusReporter

__all__ = [
    "ConnectionEvent",
    "ConnectionType",
    "Entity",
    "ProcessInfo",
    "PrometheusPlugin",
    "PrometheusReporter",
    "Verdict",
]
