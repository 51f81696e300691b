"""Connection event model delivered by the Portmaster host.

Brief:
  Portmaster calls the reporter once per observed connection. This module
  defines the immutable event record handed to the reporter, the enums used for
  its connection type and verdict, and the self-traffic check used to drop
  events caused by this process's own metric exports.

Inputs:
  - Events constructed by the host, or decoded from JSON mappings via
    ConnectionEvent.from_mapping().

Outputs:
  - ConnectionEvent instances consumed by labels.extract_labels() and
    reporter.PrometheusReporter.record().
"""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Union


class ConnectionType(enum.IntEnum):
    """Brief: Kind of connection reported by Portmaster."""

    CONNECTION_TYPE_UNKNOWN = 0
    CONNECTION_TYPE_IP = 1
    CONNECTION_TYPE_DNS = 2


class Verdict(enum.IntEnum):
    """Brief: Decision Portmaster made for a connection."""

    VERDICT_UNKNOWN = 0
    VERDICT_UNDECIDED = 1
    VERDICT_UNDETERMINABLE = 2
    VERDICT_ACCEPT = 3
    VERDICT_BLOCK = 4
    VERDICT_DROP = 5
    VERDICT_REROUTE_TO_NAMESERVER = 6
    VERDICT_REROUTE_TO_TUNNEL = 7
    VERDICT_FAILED = 8


# Enum fields may carry raw values the host sent but this module does not
# know about; they are rendered as a placeholder label instead of rejected.
EnumValue = Union[enum.IntEnum, int, str]


@dataclass(frozen=True)
class Entity:
    """Brief: Remote side of a connection.

    Inputs:
      - domain: Domain name the connection was attributed to ("" when none).
      - ip: Remote IP address string.
      - port: Remote port.
      - protocol: IP protocol number.
    """

    domain: str = ""
    ip: str = ""
    port: int = 0
    protocol: int = 0


@dataclass(frozen=True)
class ProcessInfo:
    """Brief: Local process that owns a connection."""

    pid: int = -1
    path: str = ""


@dataclass(frozen=True)
class ConnectionEvent:
    """Brief: One connection observed and judged by Portmaster.

    Inputs:
      - id: Host-assigned connection identifier.
      - type: ConnectionType member or a raw enum value.
      - verdict: Verdict member or a raw enum value.
      - entity: Optional remote Entity.
      - process: Optional ProcessInfo for the local owner.

    Outputs:
      - Immutable event; never retained by the reporter after record().

    Example:
      >>> ev = ConnectionEvent(
      ...     type=ConnectionType.CONNECTION_TYPE_IP,
      ...     verdict=Verdict.VERDICT_ACCEPT,
      ...     entity=Entity(domain="example.com."),
      ... )
      >>> ev.domain
      'example.com.'
    """

    type: EnumValue = ConnectionType.CONNECTION_TYPE_UNKNOWN
    verdict: EnumValue = Verdict.VERDICT_UNKNOWN
    entity: Optional[Entity] = None
    process: Optional[ProcessInfo] = None
    id: str = ""

    @property
    def domain(self) -> str:
        """Return the entity domain or "" when no entity is attached."""

        if self.entity is None:
            return ""
        return self.entity.domain or ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ConnectionEvent":
        """Brief: Build an event from a decoded JSON object.

        Inputs:
          - data: Mapping with optional keys id, type, verdict, entity
            ({domain, ip, port, protocol}) and process ({pid, path}). Enum
            fields accept member names ("VERDICT_BLOCK") or integers.

        Outputs:
          - ConnectionEvent. Unknown enum values are kept as given so that
            they render as the placeholder label rather than being dropped.

        Raises:
          - TypeError: When data is not a mapping.
        """

        if not isinstance(data, Mapping):
            raise TypeError(f"connection event must be a mapping, got {type(data).__name__}")

        entity_raw = data.get("entity")
        entity = None
        if isinstance(entity_raw, Mapping):
            entity = Entity(
                domain=str(entity_raw.get("domain") or ""),
                ip=str(entity_raw.get("ip") or ""),
                port=_as_int(entity_raw.get("port"), 0),
                protocol=_as_int(entity_raw.get("protocol"), 0),
            )

        process_raw = data.get("process")
        process = None
        if isinstance(process_raw, Mapping):
            process = ProcessInfo(
                pid=_as_int(process_raw.get("pid"), -1),
                path=str(process_raw.get("path") or ""),
            )

        return cls(
            type=_coerce_enum(ConnectionType, data.get("type", 0)),
            verdict=_coerce_enum(Verdict, data.get("verdict", 0)),
            entity=entity,
            process=process,
            id=str(data.get("id") or ""),
        )


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _coerce_enum(enum_cls: type, value: Any) -> EnumValue:
    """Map a name or integer onto enum_cls, keeping unknown values as-is."""

    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        member = enum_cls.__members__.get(value.strip().upper())
        if member is not None:
            return member
        if value.strip().lstrip("-").isdigit():
            value = int(value.strip())
        else:
            return value
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return enum_cls(value)
        except ValueError:
            return value
    return str(value)


def is_self(event: ConnectionEvent, pid: Optional[int] = None) -> bool:
    """Brief: Return True when the connection belongs to this process.

    Inputs:
      - event: ConnectionEvent to inspect.
      - pid: Process id to compare against (defaults to os.getpid()).

    Outputs:
      - bool; True for connections opened by this process, such as pushes to
        the gateway or scrapes answered by the pull server.

    Example:
      >>> is_self(ConnectionEvent(process=ProcessInfo(pid=os.getpid())))
      True
    """

    if event.process is None:
        return False
    own_pid = os.getpid() if pid is None else pid
    return event.process.pid == own_pid
