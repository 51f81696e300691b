"""Static configuration parsing for the Portmaster Prometheus reporter.

Brief:
  Portmaster hands the plugin the static configuration written by the
  ``install`` command. This module centralizes:
    - reading the configuration from a YAML/JSON file or mapping
    - JSON Schema validation (via validate_config)
    - typed access through pydantic models
    - duration and listen-address parsing
    - resolving the delivery mode into a PullConfig or PushConfig

Inputs:
  - Static config mappings and file paths.

Outputs:
  - StaticConfig models and DeliveryConfig values.
"""

from __future__ import annotations

import math
import re
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..errors import ConfigError
from .config_schema import validate_config

MODE_PULL = "pull"
MODE_PUSH = "push"

DEFAULT_LISTEN_ADDRESS = "0.0.0.0:8081"
DEFAULT_PUSH_INTERVAL = 10.0
DEFAULT_PUSH_JOB = "portmaster"

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(value: Any) -> float:
    """Brief: Parse a duration into seconds.

    Inputs:
      - value: None, a number of seconds, a numeric string, or a duration
        string made of number+unit parts ("10s", "1m30s", "250ms").

    Outputs:
      - float seconds (0.0 for None or "").

    Raises:
      - ConfigError: for negative, non-finite or unparseable values, and for
        values too large for a timer wait (threading.TIMEOUT_MAX).

    Example:
      >>> parse_duration("1m30s")
      90.0
      >>> parse_duration(5)
      5.0
    """

    if value is None:
        return 0.0
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            return 0.0
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos != len(text) or pos == 0:
                raise ConfigError(f"invalid duration {value!r}")
    if not math.isfinite(seconds):
        raise ConfigError(f"duration must be finite, got {value!r}")
    if seconds < 0:
        raise ConfigError(f"duration must not be negative, got {value!r}")
    if seconds > threading.TIMEOUT_MAX:
        raise ConfigError(
            f"duration {value!r} is too large; bare numbers are seconds, "
            "use a duration string such as \"10s\""
        )
    return seconds


def parse_listen_address(address: str) -> Tuple[str, int]:
    """Brief: Split a "host:port" listen address.

    Inputs:
      - address: "host:port", ":port" (all interfaces) or "[v6addr]:port".

    Outputs:
      - (host, port) with host defaulting to "0.0.0.0".

    Raises:
      - ConfigError: when the port is missing or not a valid port number.

    Example:
      >>> parse_listen_address("[::1]:9100")
      ('::1', 9100)
    """

    text = str(address or "").strip()
    host, sep, port_text = text.rpartition(":")
    if not sep:
        raise ConfigError(f"listen address {address!r} must be in host:port form")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        port = int(port_text)
    except ValueError:
        raise ConfigError(f"invalid port in listen address {address!r}") from None
    if not 0 <= port <= 65535:
        raise ConfigError(f"port out of range in listen address {address!r}")
    return host or "0.0.0.0", port


@dataclass(frozen=True)
class PullConfig:
    """Brief: Pull delivery: serve /metrics on address."""

    address: str
    use_asyncio: bool = True

    mode = MODE_PULL


@dataclass(frozen=True)
class PushConfig:
    """Brief: Push delivery: send the exposition to address every interval seconds."""

    address: str
    interval: float = DEFAULT_PUSH_INTERVAL
    job: str = DEFAULT_PUSH_JOB

    mode = MODE_PUSH


DeliveryConfig = Union[PullConfig, PushConfig]


class PushSettings(BaseModel):
    """Brief: Typed model for the ``push`` block.

    Inputs:
      - interval: Seconds between pushes (number or duration string, 0 = default).
      - job: Pushgateway job name ("" = default).

    A bare number is read as seconds. Configs written by the Go plugin store
    a time.Duration, i.e. an integer count of nanoseconds (10 s is
    10000000000); such values exceed the timer limit and are rejected, so
    they must be rewritten as seconds or a duration string like "10s".
    """

    interval: float = Field(default=0.0)
    job: str = Field(default="")

    @field_validator("interval", mode="before")
    @classmethod
    def _parse_interval(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("job", mode="before")
    @classmethod
    def _none_job(cls, value: Any) -> str:
        return "" if value is None else value


class StaticConfig(BaseModel):
    """Brief: Typed model of the plugin's static configuration.

    Inputs:
      - namespace / subsystem: Metric name prefixes.
      - listenAddress: Listen address (pull) or gateway address (push).
      - mode: "pull" (default when empty) or "push".
      - push: Optional PushSettings.
      - maxDomains: Optional cap on distinct domain labels (0 = unbounded).
      - use_asyncio: Serve pull mode through uvicorn (default True).
      - logging: Optional logging block for init_logging().

    Outputs:
      - StaticConfig instance; call delivery_config() to resolve the mode.
    """

    namespace: str = ""
    subsystem: str = ""
    listen_address: str = Field(default="", alias="listenAddress")
    mode: str = ""
    push: Optional[PushSettings] = None
    max_domains: int = Field(default=0, alias="maxDomains", ge=0)
    use_asyncio: bool = True
    logging: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True

    def delivery_config(self) -> DeliveryConfig:
        """Brief: Resolve the configured mode into a concrete delivery config.

        Outputs:
          - PullConfig for "" or "pull"; PushConfig for "push" with defaults
            applied (interval 10 s, job "portmaster").

        Raises:
          - ConfigError: for an unrecognized mode, or push mode without an
            address.
        """

        if self.mode in ("", MODE_PULL):
            return PullConfig(
                address=self.listen_address or DEFAULT_LISTEN_ADDRESS,
                use_asyncio=self.use_asyncio,
            )

        if self.mode == MODE_PUSH:
            if not self.listen_address:
                raise ConfigError("push mode requires listenAddress to name the push gateway")
            push = self.push or PushSettings()
            return PushConfig(
                address=self.listen_address,
                interval=push.interval or DEFAULT_PUSH_INTERVAL,
                job=push.job or DEFAULT_PUSH_JOB,
            )

        raise ConfigError(
            f"invalid operation mode {self.mode!r}, valid values are 'push' or 'pull'"
        )


def load_static_config(
    raw: Optional[Dict[str, Any]],
    *,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> StaticConfig:
    """Brief: Validate a raw static configuration mapping and build StaticConfig.

    Inputs:
      - raw: Mapping decoded from the static configuration (None = empty).
      - config_path: Optional file path for error messages.
      - unknown_keys: Policy passed through to validate_config().

    Outputs:
      - StaticConfig.

    Raises:
      - ConfigError: on schema or model validation failure.

    Example:
      >>> cfg = load_static_config({"mode": "push", "listenAddress": "gw:9091"})
      >>> cfg.delivery_config()
      PushConfig(address='gw:9091', interval=10.0, job='portmaster')
    """

    data = dict(raw or {})
    validate_config(data, config_path=config_path, unknown_keys=unknown_keys)
    try:
        return StaticConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(
            f"Invalid configuration in {config_path or '<static config>'}: {exc}"
        ) from exc


def read_config_file(config_path: str, *, unknown_keys: str = "warn") -> StaticConfig:
    """Brief: Read a YAML or JSON static configuration file.

    Inputs:
      - config_path: Path to the file.

    Outputs:
      - StaticConfig.

    Raises:
      - ConfigError: when the file cannot be read or parsed, or is invalid.
    """

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"failed to read static configuration {config_path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError("static configuration root must be a mapping")
    return load_static_config(raw, config_path=config_path, unknown_keys=unknown_keys)
