"""Error taxonomy for the Portmaster Prometheus reporter.

Fatal errors (ConfigError, RegistrationConflict, BindError) abort plugin
initialization. ServeError and TransmitError are raised by the delivery
transports and are logged by their background loops once startup has
completed.
"""

from __future__ import annotations


class PrometheusPluginError(Exception):
    """Brief: Base class for all errors raised by this package."""


class ConfigError(PrometheusPluginError, ValueError):
    """Brief: Invalid or missing static configuration (for example an unknown mode)."""


class RegistrationConflict(PrometheusPluginError, ValueError):
    """Brief: A metric name is already registered in the target registry."""


class BindError(PrometheusPluginError, OSError):
    """Brief: The pull-mode listener could not acquire its configured address."""


class ServeError(PrometheusPluginError, RuntimeError):
    """Brief: The pull-mode HTTP server failed after a successful bind."""


class TransmitError(PrometheusPluginError, RuntimeError):
    """Brief: A push to the remote collector failed."""
