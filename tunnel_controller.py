"""
Connection lifecycle for one tunnel.

    Idle -> Connecting -> Authenticating -> TunnelEstablished -> HealthChecking
                                                                     |
    Idle <- (disconnect) <- Reconnecting <- (N failed probes) -------+

Any failure on the way up lands back in Idle with the session closed.  The
retry driver in ``run`` walks this machine until the shutdown event is set.
"""

import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, Optional

from config import ConnectionConfig
from errors import ConnectError, InvalidTransition, TunnelEstablishFailed
from health_probe import HealthProbe
from ssh_connector import SessionAdapter
from states import (
    CONNECTED_STATES, ActiveTunnel, Authenticating, Connecting, Failed,
    HealthChecking, Idle, Reconnecting, TunnelEstablished, TunnelState,
    TunnelStatus,
)
from tunnel_relay import JOIN_TIMEOUT, TunnelRelay

logger = logging.getLogger("controller")


class TunnelController:
    """
    Owns the state (and through it the session).  Every mutation happens on
    the driver thread; the status server only reads.
    """

    def __init__(self, config: ConnectionConfig,
                 adapter: Optional[SessionAdapter] = None,
                 relay: Optional[TunnelRelay] = None,
                 probe: Optional[HealthProbe] = None):
        self.config = config
        self.adapter = adapter or SessionAdapter()
        self.relay = relay or TunnelRelay(connect_timeout=config.connect_timeout)
        self.probe = probe or HealthProbe(timeout=config.health_check_timeout)
        self.max_failures = config.max_health_check_failures
        self._state: TunnelState = Idle()

    # ------------------------------------------------------------------ #
    # read-only view
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def status(self) -> TunnelStatus:
        return self._state.status

    @property
    def is_connected(self) -> bool:
        return isinstance(self._state, CONNECTED_STATES)

    @property
    def failures(self) -> int:
        state = self._state
        return state.failures if isinstance(state, HealthChecking) else 0

    def endpoints(self) -> Dict[str, str]:
        return {
            "ssh": self.config.ssh_url,
            "local": self.config.local_bind,
            "remote": self.config.remote_bind,
        }

    def snapshot(self) -> Dict[str, Any]:
        state = self._state
        error = getattr(state, "last_error", None) or getattr(state, "error", None)
        return {
            "state": state.status.value,
            "connected": isinstance(state, CONNECTED_STATES),
            "endpoints": self.endpoints(),
            "tunnel_mode": self.config.tunnel_mode,
            "failures": state.failures if isinstance(state, HealthChecking) else 0,
            "active_connections": getattr(self.relay, "active_count", 0),
            "last_error": str(error) if error else None,
        }

    def _transition(self, new: TunnelState) -> None:
        old = self._state
        self._state = new
        if old.status is not new.status:
            logger.info("%s -> %s", old.status.value, new.status.value)

    # ------------------------------------------------------------------ #
    # operations
    # ------------------------------------------------------------------ #
    def connect(self) -> None:
        """
        Idle -> Connecting -> Authenticating -> TunnelEstablished.
        Raises a ConnectError subclass on failure, leaving the controller
        Idle with no session.
        """
        if not isinstance(self._state, Idle):
            raise InvalidTransition(f"connect() called in state {self.status.value}")

        self._transition(Connecting(self.config.ssh_url))
        try:
            handle = self.adapter.open_transport(self.config)
        except ConnectError as e:
            self._transition(Idle(last_error=e))
            raise

        self._transition(Authenticating(handle))
        try:
            self.adapter.authenticate(handle, self.config)
        except ConnectError as e:
            self.adapter.disconnect(handle)
            self._transition(Idle(last_error=e))
            raise

        self._transition(TunnelEstablished(handle))

    def establish_tunnel(self) -> None:
        """
        Bind the forwarding listener and start serving it.  On failure the
        session is closed and the controller goes back to Idle; the caller
        has to connect() again.
        """
        state = self._state
        if not isinstance(state, TunnelEstablished):
            raise InvalidTransition(f"establish_tunnel() called in state {self.status.value}")

        cfg = self.config
        try:
            listener = self.relay.establish(
                state.session,
                (cfg.remote_host, cfg.remote_port),
                (cfg.local_host, cfg.local_port),
                cfg.tunnel_mode,
            )
        except TunnelEstablishFailed as e:
            self.adapter.disconnect(state.session)
            self._transition(Idle(last_error=e))
            raise

        cancel = threading.Event()
        thread = self.relay.start(listener, cancel)
        self._transition(HealthChecking(state.session, ActiveTunnel(listener, thread, cancel)))

    def health_check(self) -> bool:
        """
        Probe the session.  Never raises.  While HealthChecking, keeps the
        consecutive-failure count and forces Reconnecting once it reaches
        ``max_health_check_failures``.
        """
        state = self._state
        if not isinstance(state, CONNECTED_STATES):
            logger.debug("Health check skipped in state %s", state.status.value)
            return False

        if isinstance(state, HealthChecking) and not state.tunnel.thread.is_alive():
            # nothing is accepting any more; a live session alone is no tunnel
            logger.error("Accept loop on %s has stopped, reconnecting...",
                         state.tunnel.listener.describe())
            self._teardown(state)
            self._transition(Reconnecting("accept loop stopped"))
            return False

        try:
            ok = bool(self.probe.check(state.session))
        except Exception as e:
            logger.warning("Health probe raised instead of failing: %s", e)
            ok = False

        if not isinstance(state, HealthChecking):
            return ok

        if ok:
            if state.failures:
                logger.info("Health check passed after %d failure(s)", state.failures)
            else:
                logger.debug("Health check passed")
            self._state = replace(state, failures=0)
            return True

        failures = state.failures + 1
        logger.warning("Health check failed (%d/%d)", failures, self.max_failures)
        if failures < self.max_failures:
            self._state = replace(state, failures=failures)
            return False

        logger.error("Too many health check failures, reconnecting...")
        self._teardown(state)
        self._transition(Reconnecting(f"{failures} consecutive health check failures"))
        return False

    def disconnect(self) -> None:
        """Drop whatever is held and return to Idle.  Idempotent."""
        state = self._state
        if isinstance(state, Idle):
            return
        if isinstance(state, HealthChecking):
            self._teardown(state)
        elif state.session is not None:
            self.adapter.disconnect(state.session)
        self._transition(Idle(last_error=getattr(state, "error", None)))

    def _teardown(self, state: HealthChecking) -> None:
        """Stop relays first, then drop the session they ride on."""
        tunnel = state.tunnel
        tunnel.cancel.set()
        tunnel.thread.join(JOIN_TIMEOUT)
        if tunnel.thread.is_alive():
            logger.warning("Accept loop did not stop within %.0fs", JOIN_TIMEOUT)
        tunnel.listener.close()
        self.adapter.disconnect(state.session)

    # ------------------------------------------------------------------ #
    # retry driver
    # ------------------------------------------------------------------ #
    def run(self, shutdown: threading.Event,
            sleep: Optional[Callable[[float], Any]] = None) -> None:
        """
        Keep the tunnel up until *shutdown* is set.  Fixed reconnect delay,
        no retry limit.  *sleep* defaults to ``shutdown.wait`` so a shutdown
        request cuts waits short; shutdown itself is only acted on between
        operations.
        """
        wait = sleep or shutdown.wait
        logger.info(
            "Starting connection loop: %s, tunnel %s <-> %s (%s)",
            self.config.ssh_url, self.config.remote_bind,
            self.config.local_bind, self.config.tunnel_mode,
        )
        try:
            while not shutdown.is_set():
                try:
                    self.connect()
                except ConnectError as e:
                    logger.error("Failed to connect to SSH server: %s", e)
                    self._pause(wait)
                    continue
                logger.info("SSH connection established successfully")

                try:
                    self.establish_tunnel()
                except TunnelEstablishFailed as e:
                    logger.error("Failed to create tunnel: %s", e)
                    self._pause(wait)
                    continue

                self._monitor(shutdown, wait)

                if isinstance(self._state, Reconnecting):
                    self.disconnect()
                    self._pause(wait)
        except Exception as e:
            logger.exception("Connection loop stopped on an unexpected error")
            self.disconnect()
            self._transition(Failed(e))
            raise

        self.disconnect()
        logger.info("Connection loop stopped")

    def _monitor(self, shutdown: threading.Event, wait: Callable[[float], Any]) -> None:
        while isinstance(self._state, HealthChecking) and not shutdown.is_set():
            wait(self.config.health_check_interval)
            if shutdown.is_set():
                break
            self.health_check()

    def _pause(self, wait: Callable[[float], Any]) -> None:
        logger.info("Reconnecting in %s seconds...", self.config.reconnect_delay)
        wait(self.config.reconnect_delay)
