"""Root logging setup for the plugin process.

Lines look like ``2026-01-01T00:00:00Z [info] portmaster_prometheus.plugin: ...``
on stderr and in the optional log file; syslog lines drop the timestamp and
carry a tag instead.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

# Level names accepted in the ``logging.level`` config key; they double as
# the bracketed tags in every log line.
LEVEL_NAMES: Dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "crit": logging.CRITICAL,
}

_TAGS = {level: f"[{name}]" for name, level in LEVEL_NAMES.items()}

LOG_FORMAT = "%(asctime)s %(level_tag)s %(name)s: %(message)s"

SYSLOG_TAG = "portmaster-prometheus"


def _level_tag(levelno: int) -> str:
    return _TAGS.get(levelno, f"[lvl{levelno}]")


class SyslogFormatter(logging.Formatter):
    """Formatter for syslog output; syslog adds its own timestamp and host."""

    def __init__(self, tag: str = SYSLOG_TAG) -> None:
        super().__init__()
        self.tag = tag

    def format(self, record):
        prefix = f"{self.tag}: " if self.tag else ""
        return f"{prefix}{_level_tag(record.levelno)} {record.name}: {record.getMessage()}"


class BracketLevelFormatter(logging.Formatter):
    """Formatter with bracketed level tags and UTC timestamps."""

    def formatTime(self, record, datefmt=None):
        return datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%dT%H:%M:%SZ"
        )

    def format(self, record):
        record.level_tag = _level_tag(record.levelno)
        return super().format(record)


def parse_level(value: Any) -> int:
    """Map a configured level name to its logging constant; unknown names mean info."""
    return LEVEL_NAMES.get(str(value or "info").lower(), logging.INFO)


def _syslog_handler(syslog_cfg: Union[bool, Dict[str, Any]]) -> logging.Handler:
    opts = syslog_cfg if isinstance(syslog_cfg, dict) else {}

    address = opts.get("address", "/dev/log")
    if isinstance(address, list):
        # YAML/JSON have no tuples; [host, port] means a UDP syslog server
        address = tuple(address)
    facility = getattr(
        logging.handlers.SysLogHandler,
        f"LOG_{str(opts.get('facility', 'user')).upper()}",
        logging.handlers.SysLogHandler.LOG_USER,
    )

    handler = logging.handlers.SysLogHandler(address=address, facility=facility)
    handler.setFormatter(SyslogFormatter(tag=str(opts.get("tag", SYSLOG_TAG))))
    return handler


def init_logging(cfg: Optional[Dict[str, Any]]) -> None:
    """
    Configure the root logger from the ``logging`` block of the static config.

    Args:
        cfg: Mapping with optional keys:
            - level: debug, info, warn, error or crit (default: info)
            - stderr: log to stderr (default: True)
            - file: path of a log file to append to
            - syslog: True, or a dict with address, facility and tag

    Calling it again replaces the handlers installed by the previous call.

    Example config:
        {
            "level": "debug",
            "file": "/var/log/portmaster-prometheus.log",
            "syslog": {"address": "/dev/log", "facility": "daemon"}
        }
    """
    cfg = cfg or {}

    root = logging.getLogger()
    root.setLevel(parse_level(cfg.get("level")))
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = BracketLevelFormatter(fmt=LOG_FORMAT)

    if cfg.get("stderr", True):
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(formatter)
        root.addHandler(stderr_handler)

    file_path = cfg.get("file")
    if isinstance(file_path, str) and file_path.strip():
        path = os.path.abspath(os.path.expanduser(file_path.strip()))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_handler = logging.FileHandler(path, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    syslog_cfg = cfg.get("syslog")
    if syslog_cfg:
        try:
            root.addHandler(_syslog_handler(syslog_cfg))
        except (OSError, ValueError) as e:  # pragma: no cover - environment-specific
            root.warning("Failed to configure syslog: %s", e)

    logging.captureWarnings(True)
