from __future__ import annotations

from typing import Optional


class ForwarderError(Exception):
    """Base class for everything the forwarder raises on purpose."""


class ConfigInvalid(ForwarderError):
    """Startup configuration is unusable. Fatal: the daemon never starts."""


# --------------------------------------------------------------------------- #
#                          Session establishment                              #
# --------------------------------------------------------------------------- #

class ConnectError(ForwarderError):
    """
    Connecting to the SSH endpoint failed.  Never fatal: the driver waits
    ``reconnect_delay`` and tries again.
    """

    def __init__(self, message: str, endpoint: Optional[str] = None):
        super().__init__(message)
        self.endpoint = endpoint


class TransportConnectFailed(ConnectError):
    """TCP connection to the SSH endpoint was refused or timed out."""


class HandshakeFailed(ConnectError):
    """SSH protocol negotiation did not complete."""


class AuthFailed(ConnectError):
    """The server rejected the key, or the key could not be loaded."""


# --------------------------------------------------------------------------- #
#                              Tunnel / relay                                 #
# --------------------------------------------------------------------------- #

class TunnelError(ForwarderError):
    pass


class TunnelEstablishFailed(TunnelError):
    """The forwarding listener could not be bound (remote or local side)."""


class HealthProbeFailed(ForwarderError):
    """Used inside the probe only; ``HealthProbe.check`` turns it into False."""


class RelayConnectionError(ForwarderError):
    """One forwarded connection failed.  Scoped to that connection."""


class InvalidTransition(RuntimeError):
    """A controller operation was called from a state that does not allow it."""
