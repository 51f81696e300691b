"""Label extraction for connection events.

Maps a ConnectionEvent to the categorical label values used by the reporter's
counters. All functions here are pure.
"""

from __future__ import annotations

import enum
import functools
from dataclasses import dataclass
from typing import Optional

from .connection import ConnectionEvent, ConnectionType, EnumValue, Verdict

# Label used for enum values that are not part of the known enums.
UNRECOGNIZED_LABEL = "unrecognized"

_TYPE_PREFIX = "CONNECTION_TYPE_"
_VERDICT_PREFIX = "VERDICT_"


@dataclass(frozen=True)
class ConnectionLabels:
    """Brief: Label values derived from a single connection event.

    Inputs:
      - type: Connection type label (e.g. "ip", "dns").
      - verdict: Verdict label (e.g. "accept", "block").
      - domain: Domain label, set only for IP connections with a domain.
    """

    type: str
    verdict: str
    domain: Optional[str] = None


@functools.lru_cache(maxsize=256)
def _render(enum_cls: type, prefix: str, value: EnumValue) -> str:
    if isinstance(value, enum_cls):
        member = value
    else:
        try:
            member = enum_cls(value)
        except (ValueError, TypeError):
            return UNRECOGNIZED_LABEL
    return member.name.replace(prefix, "", 1).lower()


def connection_type_label(value: EnumValue) -> str:
    """Brief: Render a connection type as its lowercase short name.

    Inputs:
      - value: ConnectionType member or raw value.

    Outputs:
      - str: e.g. "ip" for CONNECTION_TYPE_IP, or UNRECOGNIZED_LABEL.

    Example:
      >>> connection_type_label(ConnectionType.CONNECTION_TYPE_DNS)
      'dns'
      >>> connection_type_label(42)
      'unrecognized'
    """

    return _render(ConnectionType, _TYPE_PREFIX, _hashable(value))


def verdict_label(value: EnumValue) -> str:
    """Brief: Render a verdict as its lowercase short name.

    Example:
      >>> verdict_label(Verdict.VERDICT_REROUTE_TO_NAMESERVER)
      'reroute_to_nameserver'
    """

    return _render(Verdict, _VERDICT_PREFIX, _hashable(value))


def _hashable(value: EnumValue) -> EnumValue:
    # lru_cache needs hashable arguments; events decoded from untrusted input
    # may carry anything in their enum slots.
    if isinstance(value, (enum.Enum, int, str)):
        return value
    return repr(value)


def extract_labels(event: ConnectionEvent) -> ConnectionLabels:
    """Brief: Compute all label values for a connection event.

    Inputs:
      - event: ConnectionEvent reported by the host.

    Outputs:
      - ConnectionLabels with type and verdict always set; domain is set only
        when the event is an IP connection whose entity carries a non-empty
        domain name.

    Example:
      >>> from portmaster_prometheus.connection import Entity
      >>> extract_labels(ConnectionEvent(
      ...     type=ConnectionType.CONNECTION_TYPE_IP,
      ...     verdict=Verdict.VERDICT_BLOCK,
      ...     entity=Entity(domain="ads.example."),
      ... ))
      ConnectionLabels(type='ip', verdict='block', domain='ads.example.')
    """

    type_label = connection_type_label(event.type)
    verdict = verdict_label(event.verdict)

    domain: Optional[str] = None
    if type_label == connection_type_label(ConnectionType.CONNECTION_TYPE_IP):
        name = event.domain
        if name:
            domain = name

    return ConnectionLabels(type=type_label, verdict=verdict, domain=domain)
