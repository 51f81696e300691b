"""JSON Schema validation for the plugin's static configuration.

The static configuration is written by the ``install`` command and handed to
the plugin by Portmaster at startup. It is validated here before any metric is
registered or any socket is opened.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft202012Validator, ValidationError

from ..errors import ConfigError
from .logging_config import LEVEL_NAMES

logger = logging.getLogger(__name__)

VALID_MODES = ("", "pull", "push")

STATIC_CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "portmaster-prometheus static configuration",
    "type": "object",
    "properties": {
        "namespace": {"type": "string"},
        "subsystem": {"type": "string"},
        "listenAddress": {"type": "string"},
        "mode": {"type": "string", "enum": list(VALID_MODES)},
        "push": {
            "type": ["object", "null"],
            "properties": {
                "interval": {"type": ["number", "string", "null"]},
                "job": {"type": ["string", "null"]},
            },
            "additionalProperties": False,
        },
        "maxDomains": {"type": "integer", "minimum": 0},
        "use_asyncio": {"type": "boolean"},
        "logging": {
            "type": ["object", "null"],
            "properties": {
                "level": {"type": "string", "enum": list(LEVEL_NAMES)},
                "stderr": {"type": "boolean"},
                "file": {"type": "string"},
                "syslog": {"type": ["boolean", "object"]},
            },
            "additionalProperties": False,
        },
    },
    "additionalProperties": False,
}


def _format_errors(errors: List[ValidationError], *, config_path: Optional[str]) -> str:
    """Brief: Format jsonschema validation errors into a human-readable string.

    Inputs:
      - errors: List of jsonschema.ValidationError instances.
      - config_path: Optional path of the config file, for the header line.

    Outputs:
      - Multi-line string, one line per error.
    """

    lines: List[str] = [f"Invalid configuration in {config_path or '<static config>'}:"]
    for err in errors:
        instance_path = "/".join(str(p) for p in err.path) or "<root>"
        lines.append(f"- {instance_path}: {err.message}")
    return "\n".join(lines)


def _is_extra_property(err: ValidationError) -> bool:
    return getattr(err, "validator", None) in {
        "additionalProperties",
        "unevaluatedProperties",
    }


def validate_config(
    cfg: Dict[str, Any],
    *,
    config_path: Optional[str] = None,
    unknown_keys: str = "warn",
) -> None:
    """Brief: Validate a static configuration mapping against STATIC_CONFIG_SCHEMA.

    Inputs:
      - cfg: Parsed static configuration mapping.
      - config_path: Optional file path used only in error messages.
      - unknown_keys: "ignore", "warn" (default) or "error" for keys the
        schema does not describe.

    Outputs:
      - None on success.

    Raises:
      - ConfigError: on any schema violation other than unknown keys, or on
        unknown keys when unknown_keys == "error".

    Example:
      >>> validate_config({"mode": "push", "push": {"interval": "5s"}})
      >>> validate_config({"mode": "bogus"})
      Traceback (most recent call last):
      ...
      portmaster_prometheus.errors.ConfigError: Invalid configuration in <static config>:
      - mode: 'bogus' is not one of ['', 'pull', 'push']
    """

    if unknown_keys not in {"ignore", "warn", "error"}:
        raise ValueError(
            f"unknown_keys policy must be 'ignore', 'warn', or 'error', got {unknown_keys!r}"
        )

    if not isinstance(cfg, dict):
        raise ConfigError("static configuration root must be a mapping")

    validator = Draft202012Validator(STATIC_CONFIG_SCHEMA)
    errors = sorted(validator.iter_errors(cfg), key=lambda e: list(e.path))
    if not errors:
        return None

    extra = [e for e in errors if _is_extra_property(e)]
    other = [e for e in errors if not _is_extra_property(e)]

    if other:
        raise ConfigError(_format_errors(other + extra, config_path=config_path))

    message = _format_errors(extra, config_path=config_path)
    if unknown_keys == "error":
        raise ConfigError(message)
    if unknown_keys == "warn":
        logger.warning(message)
    return None
