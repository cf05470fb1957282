from __future__ import annotations

import logging
import socket
from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple

import paramiko

from config import format_endpoint
from ssh_connector import SessionHandle

logger = logging.getLogger("tunnel")

Address = Tuple[str, int]


class ListenerClosed(Exception):
    """The listener (or the session under it) is gone; stop accepting."""


class ListenerHandle(ABC):
    """
    The listening side of a bound tunnel.  ``accept`` yields the stream of a
    newly arrived connection; ``open_target`` opens the stream it must be
    paired with.  Both streams speak the socket subset the relay needs:
    ``recv``, ``sendall``, ``close``.
    """

    def __init__(self, session: SessionHandle, target: Address,
                 connect_timeout: Optional[float] = None):
        self.session = session
        self.target = target
        self.connect_timeout = connect_timeout
        self.closed = False

    @abstractmethod
    def accept(self, timeout: float) -> Optional[Tuple[Any, Optional[Address]]]:
        """
        Wait up to *timeout* for the next connection.  Returns
        ``(stream, peer)`` or None.  Raises ListenerClosed when nothing more
        can ever arrive.
        """
        raise NotImplementedError

    @abstractmethod
    def open_target(self, peer: Optional[Address]) -> Any:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    def describe(self) -> str:
        raise NotImplementedError


class RemoteListener(ListenerHandle):
    """Server-side listener from ``tcpip-forward``; targets are local TCP."""

    def __init__(self, session: SessionHandle, bind: Address, bound_port: int,
                 target: Address, connect_timeout: Optional[float] = None):
        super().__init__(session, target, connect_timeout)
        self.bind = (bind[0], bound_port)

    def accept(self, timeout):
        if self.closed or not self.session.is_active:
            raise ListenerClosed(f"session to {self.session.endpoint} is no longer active")
        chan = self.session.accept(timeout)
        if chan is None:
            return None
        return chan, getattr(chan, "origin_addr", None)

    def open_target(self, peer):
        sock = socket.create_connection(self.target, timeout=self.connect_timeout)
        sock.settimeout(None)
        return sock

    def close(self):
        if self.closed:
            return
        self.closed = True
        if not self.session.is_active:
            return
        try:
            self.session.cancel_port_forward(*self.bind)
        except (paramiko.SSHException, EOFError, OSError) as e:
            logger.debug("cancel_port_forward(%s) failed: %s", format_endpoint(*self.bind), e)

    def describe(self):
        return f"{format_endpoint(*self.bind)} (remote) -> {format_endpoint(*self.target)}"


class LocalListener(ListenerHandle):
    """Local TCP listener; targets are ``direct-tcpip`` channels."""

    def __init__(self, session: SessionHandle, server: socket.socket,
                 target: Address, connect_timeout: Optional[float] = None):
        super().__init__(session, target, connect_timeout)
        self.server = server
        self.bind = server.getsockname()[:2]

    def accept(self, timeout):
        if self.closed or not self.session.is_active:
            raise ListenerClosed(f"session to {self.session.endpoint} is no longer active")
        self.server.settimeout(timeout)
        try:
            client_sock, addr = self.server.accept()
        except socket.timeout:
            return None
        except OSError as e:
            if self.closed:
                raise ListenerClosed("local listener closed") from e
            raise
        client_sock.settimeout(None)
        return client_sock, addr[:2]

    def open_target(self, peer):
        return self.session.open_direct_channel(
            self.target, peer or ("127.0.0.1", 0), timeout=self.connect_timeout
        )

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.server.close()

    def describe(self):
        return f"{format_endpoint(*self.bind)} (local) -> {format_endpoint(*self.target)} (remote)"


# --------------------------------------------------------------------------- #
#                             Concrete strategies                             #
# --------------------------------------------------------------------------- #

class ForwardingStrategy(ABC):
    """
    Decides which end of the tunnel listens.  ``bind`` must raise on failure;
    the relay turns that into TunnelEstablishFailed.
    """

    def __init__(self, remote_bind: Address, local_bind: Address,
                 connect_timeout: Optional[float] = None):
        self.remote_bind = remote_bind
        self.local_bind = local_bind
        self.connect_timeout = connect_timeout

    @abstractmethod
    def bind(self, session: SessionHandle) -> ListenerHandle:   # pragma: no cover
        raise NotImplementedError


class ReverseForwardStrategy(ForwardingStrategy):
    """
    Remote port forwarding: the SSH server listens on remote_bind, every
    connection it accepts is relayed to local_bind.
    """

    def bind(self, session):
        host, port = self.remote_bind
        bound_port = session.request_port_forward(host, port)
        if not bound_port:
            bound_port = port
        return RemoteListener(session, (host, port), bound_port,
                              self.local_bind, self.connect_timeout)


class LocalForwardStrategy(ForwardingStrategy):
    """
    Local port forwarding: we listen on local_bind, every connection is
    relayed through a direct-tcpip channel to remote_bind.
    """

    def bind(self, session):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            server.bind(self.local_bind)
            server.listen(100)
        except OSError:
            server.close()
            raise
        return LocalListener(session, server, self.remote_bind, self.connect_timeout)


# --------------------------------------------------------------------------- #
#                                Factory helper                               #
# --------------------------------------------------------------------------- #

def get_strategy(mode: str) -> type[ForwardingStrategy]:
    """
    Map the configured ``tunnel_mode`` to its Strategy class.

    >>> strategy_cls = get_strategy("forward")
    >>> listener = strategy_cls(remote, local).bind(session)
    """
    table = {
        "reverse": ReverseForwardStrategy,
        "forward": LocalForwardStrategy,
    }
    try:
        return table[mode.lower()]
    except KeyError:
        valid = ", ".join(table.keys())
        raise ValueError(f"Unknown tunnel mode '{mode}'. Valid choices: {valid}")
