import logging
import socket
from typing import Optional, Tuple

import paramiko

from config import ConnectionConfig
from errors import AuthFailed, HandshakeFailed, TransportConnectFailed

logger = logging.getLogger("ssh")


def load_private_key(path: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """
    Load any key type paramiko understands.  The passphrase goes in as bytes
    and positionally: the keyword is `passphrase` on paramiko 3 and
    `password` on later releases.
    """
    secret = passphrase.encode("utf-8") if passphrase else None
    return paramiko.PKey.from_path(path, secret)


class SessionHandle:
    """
    An authenticated (or authenticating) paramiko Transport for one SSH
    endpoint.  The controller owns it exclusively; relay and probe threads
    only open channels on it, which paramiko multiplexes over the transport.
    """

    def __init__(self, transport: paramiko.Transport, endpoint: str):
        self.transport = transport
        self.endpoint = endpoint
        self.closed = False

    def __repr__(self):
        state = "closed" if self.closed else "open"
        return f"<SessionHandle {self.endpoint} {state}>"

    @property
    def is_active(self) -> bool:
        return not self.closed and self.transport.is_active()

    @property
    def is_authenticated(self) -> bool:
        return self.is_active and self.transport.is_authenticated()

    # -- channel helpers used by the relay and the probe ------------------- #

    def open_session(self, timeout: Optional[float] = None) -> paramiko.Channel:
        return self.transport.open_session(timeout=timeout)

    def open_direct_channel(self, dest: Tuple[str, int], src: Tuple[str, int],
                            timeout: Optional[float] = None) -> paramiko.Channel:
        """Open a 'direct-tcpip' channel to *dest* on the server side."""
        return self.transport.open_channel("direct-tcpip", dest, src, timeout=timeout)

    def request_port_forward(self, host: str, port: int) -> int:
        """Ask the server to listen on host:port.  Returns the bound port."""
        return self.transport.request_port_forward(host, port)

    def cancel_port_forward(self, host: str, port: int) -> None:
        self.transport.cancel_port_forward(host, port)

    def accept(self, timeout: Optional[float] = None) -> Optional[paramiko.Channel]:
        """Next forwarded channel from the server, or None on timeout."""
        return self.transport.accept(timeout)


class SessionAdapter:
    """
    Transport handshake and public-key authentication against one SSH
    endpoint.  Errors come out typed so the caller can decide on retries;
    nothing here retries on its own.
    """

    def open_transport(self, config: ConnectionConfig) -> SessionHandle:
        """
        TCP connect plus SSH protocol handshake.  No authentication yet.
        """
        endpoint = config.ssh_url
        logger.info("Connecting to SSH server: %s", endpoint)

        try:
            sock = socket.create_connection(
                (config.ssh_host, config.ssh_port), timeout=config.connect_timeout
            )
        except OSError as e:
            raise TransportConnectFailed(
                f"Could not reach {endpoint}: {e}", endpoint=endpoint
            ) from e

        transport = None
        try:
            transport = paramiko.Transport(sock)
            transport.banner_timeout = config.connect_timeout
            transport.start_client(timeout=config.connect_timeout)
        except (paramiko.SSHException, EOFError, OSError) as e:
            if transport is not None:
                transport.close()
            sock.close()
            raise HandshakeFailed(
                f"SSH handshake with {endpoint} failed: {e}", endpoint=endpoint
            ) from e

        # You might want to do hostkey checks here, e.g. against known_hosts:
        #   transport.get_remote_server_key()
        if config.keepalive_interval:
            transport.set_keepalive(config.keepalive_interval)

        logger.debug("Handshake complete with %s", endpoint)
        return SessionHandle(transport, endpoint)

    def authenticate(self, handle: SessionHandle, config: ConnectionConfig) -> None:
        """
        Public-key auth with the configured key.  The passphrase is passed
        only when it is set and non-empty.  On any failure the transport is
        closed before AuthFailed is raised.
        """
        endpoint = handle.endpoint
        try:
            key = load_private_key(config.ssh_private_key_path, config.passphrase)
        except (paramiko.SSHException, paramiko.UnknownKeyType,
                OSError, ValueError, TypeError) as e:
            # TypeError: cryptography refusing a missing or wrong-typed passphrase
            self.disconnect(handle)
            raise AuthFailed(
                f"Could not load private key {config.ssh_private_key_path}: {e}",
                endpoint=endpoint,
            ) from e

        try:
            handle.transport.auth_publickey(config.ssh_username, key)
        except paramiko.AuthenticationException as e:
            self.disconnect(handle)
            raise AuthFailed(
                f"Public key rejected for {config.ssh_username}@{endpoint}: {e}",
                endpoint=endpoint,
            ) from e
        except (paramiko.SSHException, EOFError, OSError) as e:
            self.disconnect(handle)
            raise HandshakeFailed(
                f"Transport to {endpoint} failed during authentication: {e}",
                endpoint=endpoint,
            ) from e

        if not handle.transport.is_authenticated():
            self.disconnect(handle)
            raise AuthFailed("SSH authentication failed", endpoint=endpoint)

        logger.info("SSH authentication successful as %s", config.ssh_username)

    def connect(self, config: ConnectionConfig) -> SessionHandle:
        """open_transport + authenticate in one call."""
        handle = self.open_transport(config)
        self.authenticate(handle, config)
        return handle

    def disconnect(self, handle: Optional[SessionHandle]) -> None:
        """
        Best-effort close.  The handle counts as gone afterwards whatever
        happens; problems are logged, never raised.
        """
        if handle is None or handle.closed:
            return
        handle.closed = True
        try:
            handle.transport.close()
        except Exception as e:
            logger.warning("Error while closing SSH transport to %s: %s", handle.endpoint, e)
        else:
            logger.info("SSH connection to %s disconnected", handle.endpoint)
