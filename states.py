"""
Controller states.

Each state is its own frozen dataclass and carries only the data that is valid
while the controller sits in it; the SSH session in particular lives on the
three connected states and nowhere else.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, ClassVar, Optional, Union

if TYPE_CHECKING:
    from ssh_connector import SessionHandle
    from tunnel_strategies import ListenerHandle


class TunnelStatus(Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    TUNNEL_ESTABLISHED = "TUNNEL_ESTABLISHED"
    HEALTH_CHECKING = "HEALTH_CHECKING"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"


@dataclass
class ActiveTunnel:
    """The bound listener plus the accept loop serving it."""
    listener: "ListenerHandle"
    thread: threading.Thread
    cancel: threading.Event = field(default_factory=threading.Event)


@dataclass(frozen=True)
class Idle:
    status: ClassVar[TunnelStatus] = TunnelStatus.IDLE
    last_error: Optional[BaseException] = None

    @property
    def session(self) -> None:
        return None


@dataclass(frozen=True)
class Connecting:
    status: ClassVar[TunnelStatus] = TunnelStatus.CONNECTING
    endpoint: str

    @property
    def session(self) -> None:
        return None


@dataclass(frozen=True)
class Authenticating:
    status: ClassVar[TunnelStatus] = TunnelStatus.AUTHENTICATING
    session: "SessionHandle"


@dataclass(frozen=True)
class TunnelEstablished:
    status: ClassVar[TunnelStatus] = TunnelStatus.TUNNEL_ESTABLISHED
    session: "SessionHandle"


@dataclass(frozen=True)
class HealthChecking:
    status: ClassVar[TunnelStatus] = TunnelStatus.HEALTH_CHECKING
    session: "SessionHandle"
    tunnel: ActiveTunnel
    failures: int = 0


@dataclass(frozen=True)
class Reconnecting:
    status: ClassVar[TunnelStatus] = TunnelStatus.RECONNECTING
    reason: str

    @property
    def session(self) -> None:
        return None


@dataclass(frozen=True)
class Failed:
    status: ClassVar[TunnelStatus] = TunnelStatus.FAILED
    error: BaseException

    @property
    def session(self) -> None:
        return None


TunnelState = Union[
    Idle, Connecting, Authenticating, TunnelEstablished,
    HealthChecking, Reconnecting, Failed,
]

CONNECTED_STATES = (TunnelEstablished, HealthChecking)
