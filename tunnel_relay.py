"""
Accept-and-relay loop for a bound tunnel.

Every connection that reaches the listener becomes a ForwardedConnection: a
pair of streams (the arrived one and a freshly opened one to the target) with
bytes copied both ways, unmodified and in order, until either side closes.
Connections run on their own threads and report back through a result queue,
so one stuck peer never holds up the accept loop or the controller.
"""

from __future__ import annotations

import errno
import itertools
import logging
import queue
import socket
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import paramiko

from config import format_endpoint
from errors import RelayConnectionError, TunnelEstablishFailed
from ssh_connector import SessionHandle
from tunnel_strategies import ListenerClosed, ListenerHandle, get_strategy

logger = logging.getLogger("tunnel")

Address = Tuple[str, int]

CHUNK_SIZE = 32 * 1024
ACCEPT_TIMEOUT = 0.5
JOIN_TIMEOUT = 5.0

STREAM_ERRORS = (OSError, EOFError, paramiko.SSHException)

# accept() errors that say "not right now" rather than "never again"
TRANSIENT_ACCEPT_ERRNOS = frozenset({
    errno.EMFILE, errno.ENFILE, errno.ENOBUFS, errno.ENOMEM,
    errno.ECONNABORTED, errno.EINTR,
})


def _peer_str(peer: Optional[Address]) -> str:
    return format_endpoint(*peer) if peer else "<unknown>"


def _close_stream(stream: Any) -> None:
    # shutdown first: close() alone does not wake a recv() blocked in
    # another thread on Linux.
    try:
        stream.shutdown(socket.SHUT_RDWR)
    except STREAM_ERRORS:
        pass
    try:
        stream.close()
    except STREAM_ERRORS:
        pass


@dataclass
class RelayResult:
    conn_id: int
    peer: Optional[Address]
    bytes_up: int
    bytes_down: int
    error: Optional[RelayConnectionError] = None


class ForwardedConnection:
    """
    One arrived stream paired with one target stream.  ``up`` is
    arrived -> target, ``down`` is target -> arrived.
    """

    def __init__(self, conn_id: int, stream: Any, peer: Optional[Address],
                 listener: ListenerHandle, results: "queue.Queue[RelayResult]"):
        self.conn_id = conn_id
        self.stream = stream
        self.peer = peer
        self.listener = listener
        self.results = results
        self.target: Any = None
        self.error: Optional[RelayConnectionError] = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.closed = False
        self._lock = threading.Lock()
        self.thread = threading.Thread(
            target=self._serve, name=f"relay-{conn_id}", daemon=True
        )

    def start(self) -> None:
        self.thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        self.thread.join(timeout)

    def close(self) -> None:
        """Tear down both ends.  Safe from any thread, any number of times."""
        with self._lock:
            if self.closed:
                return
            self.closed = True
            target = self.target
        _close_stream(self.stream)
        if target is not None:
            _close_stream(target)

    def _serve(self) -> None:
        try:
            try:
                target = self.listener.open_target(self.peer)
            except STREAM_ERRORS as e:
                raise RelayConnectionError(
                    f"could not open {format_endpoint(*self.listener.target)}: {e}"
                ) from e

            with self._lock:
                if self.closed:
                    # cancelled while we were dialling
                    _close_stream(target)
                    return
                self.target = target

            upstream = threading.Thread(
                target=self._pump, args=(self.stream, target, "up"),
                name=f"relay-{self.conn_id}-up", daemon=True,
            )
            upstream.start()
            self._pump(target, self.stream, "down")
            upstream.join()
        except RelayConnectionError as e:
            self.error = e
        finally:
            self.close()
            self.results.put(RelayResult(
                self.conn_id, self.peer, self.bytes_up, self.bytes_down, self.error
            ))

    def _pump(self, src: Any, dst: Any, direction: str) -> None:
        """Copy src -> dst until EOF or error, then close the pairing."""
        try:
            while True:
                chunk = src.recv(CHUNK_SIZE)
                if not chunk:
                    break
                dst.sendall(chunk)
                if direction == "up":
                    self.bytes_up += len(chunk)
                else:
                    self.bytes_down += len(chunk)
        except STREAM_ERRORS as e:
            # errors after close() are just the other pump shutting us down
            if not self.closed and self.error is None:
                self.error = RelayConnectionError(f"{direction}: {e}")
        finally:
            self.close()


class TunnelRelay:
    """
    Binds the forwarding listener on a session and serves it.  One instance
    is reused across sessions; ``run`` leaves no connection behind when it
    returns.
    """

    def __init__(self, accept_timeout: float = ACCEPT_TIMEOUT,
                 connect_timeout: Optional[float] = None):
        self.accept_timeout = accept_timeout
        self.connect_timeout = connect_timeout
        self.results: "queue.Queue[RelayResult]" = queue.Queue()
        self._active: Dict[int, ForwardedConnection] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    def establish(self, handle: SessionHandle, remote_bind: Address,
                  local_bind: Address, mode: str = "reverse") -> ListenerHandle:
        strategy = get_strategy(mode)(remote_bind, local_bind, self.connect_timeout)
        logger.info(
            "Creating %s tunnel: %s -> %s", mode,
            format_endpoint(*remote_bind), format_endpoint(*local_bind),
        )
        try:
            listener = strategy.bind(handle)
        except STREAM_ERRORS as e:
            raise TunnelEstablishFailed(f"Failed to bind {mode} tunnel: {e}") from e
        logger.info("Tunnel established: %s", listener.describe())
        return listener

    def start(self, listener: ListenerHandle, cancel: threading.Event) -> threading.Thread:
        """Run the accept loop on a daemon thread."""
        thread = threading.Thread(
            target=self.run, args=(listener, cancel), name="relay-accept", daemon=True
        )
        thread.start()
        return thread

    def run(self, listener: ListenerHandle, cancel: threading.Event) -> None:
        """
        Accept until *cancel* is set or the listener dies.  Cancellation is
        checked before every accept and again after one returns.
        """
        logger.debug("Accept loop started on %s", listener.describe())
        try:
            while not cancel.is_set():
                self._drain_results()
                try:
                    accepted = listener.accept(self.accept_timeout)
                except ListenerClosed as e:
                    logger.info("Listener closed, accept loop stopping: %s", e)
                    break
                except STREAM_ERRORS as e:
                    if getattr(e, "errno", None) in TRANSIENT_ACCEPT_ERRNOS:
                        logger.warning("Accept failed, retrying: %s", e)
                        cancel.wait(self.accept_timeout)
                        continue
                    logger.warning("Accept failed, accept loop stopping: %s", e)
                    break
                if accepted is None:
                    continue

                stream, peer = accepted
                if cancel.is_set():
                    _close_stream(stream)
                    break
                self._spawn(stream, peer, listener)
        finally:
            self._shutdown()
            logger.debug("Accept loop on %s finished", listener.describe())

    def _spawn(self, stream: Any, peer: Optional[Address], listener: ListenerHandle) -> None:
        conn = ForwardedConnection(next(self._ids), stream, peer, listener, self.results)
        with self._lock:
            self._active[conn.conn_id] = conn
        logger.info(
            "Forwarded connection #%d from %s -> %s",
            conn.conn_id, _peer_str(peer), format_endpoint(*listener.target),
        )
        conn.start()

    def _drain_results(self) -> None:
        while True:
            try:
                result = self.results.get_nowait()
            except queue.Empty:
                return
            with self._lock:
                self._active.pop(result.conn_id, None)
            if result.error is not None:
                logger.warning(
                    "Forwarded connection #%d from %s failed: %s",
                    result.conn_id, _peer_str(result.peer), result.error,
                )
            else:
                logger.debug(
                    "Forwarded connection #%d closed (%d bytes up, %d bytes down)",
                    result.conn_id, result.bytes_up, result.bytes_down,
                )

    def _shutdown(self) -> None:
        with self._lock:
            conns = list(self._active.values())
        if conns:
            logger.info("Closing %d in-flight forwarded connection(s)", len(conns))
        for conn in conns:
            conn.close()
        for conn in conns:
            conn.join(JOIN_TIMEOUT)
            if conn.thread.is_alive():
                logger.warning("Forwarded connection #%d did not stop in time", conn.conn_id)
        self._drain_results()
        with self._lock:
            self._active.clear()
