"""Relay connection events, delivered to the daemon through one callback."""

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class RelayConnecting:
    type: str = field(default="connecting", init=False)


@dataclass(frozen=True)
class RelaySubscribed:
    type: str = field(default="subscribed", init=False)


@dataclass(frozen=True)
class RelayFailed:
    message: str
    type: str = field(default="error", init=False)


@dataclass(frozen=True)
class RelayClosed:
    reason: str = ""
    type: str = field(default="closed", init=False)


RelayEvent = Union[RelayConnecting, RelaySubscribed, RelayFailed, RelayClosed]
