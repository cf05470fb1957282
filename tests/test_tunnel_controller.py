import threading

import pytest

from conftest import FakeAdapter, FakeClock, FakeProbe, FakeRelay
from errors import (
    AuthFailed, HandshakeFailed, InvalidTransition, TransportConnectFailed,
    TunnelEstablishFailed,
)
from states import (
    Failed, HealthChecking, Idle, Reconnecting, TunnelEstablished, TunnelStatus,
)
from tunnel_controller import TunnelController


def make_controller(config, adapter=None, relay=None, probe=None):
    return TunnelController(
        config,
        adapter=adapter or FakeAdapter(),
        relay=relay or FakeRelay(),
        probe=probe or FakeProbe(),
    )


def checking_controller(config, probe):
    controller = make_controller(config, probe=probe)
    controller.connect()
    controller.establish_tunnel()
    return controller


# --------------------------------------------------------------------------- #
# connect / establish
# --------------------------------------------------------------------------- #

def test_starts_idle_and_disconnected(config):
    controller = make_controller(config)
    assert isinstance(controller.state, Idle)
    assert controller.status is TunnelStatus.IDLE
    assert controller.is_connected is False
    assert controller.state.session is None


def test_connect_success_owns_session(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter)

    controller.connect()

    assert isinstance(controller.state, TunnelEstablished)
    assert controller.state.session is adapter.sessions[0]
    assert controller.is_connected is True


@pytest.mark.parametrize("error", [
    TransportConnectFailed("connection refused"),
    HandshakeFailed("bad banner"),
])
def test_connect_transport_failure_returns_to_idle(config, error):
    adapter = FakeAdapter(open_errors=[error])
    controller = make_controller(config, adapter=adapter)

    with pytest.raises(type(error)):
        controller.connect()

    assert isinstance(controller.state, Idle)
    assert controller.state.last_error is error
    assert controller.state.session is None


def test_auth_failure_closes_session_and_returns_to_idle(config):
    adapter = FakeAdapter(auth_errors=[AuthFailed("key rejected")])
    controller = make_controller(config, adapter=adapter)

    with pytest.raises(AuthFailed):
        controller.connect()

    assert isinstance(controller.state, Idle)
    assert adapter.sessions[0].closed
    assert adapter.disconnected == [adapter.sessions[0]]


def test_connect_twice_is_rejected(config):
    controller = make_controller(config)
    controller.connect()
    with pytest.raises(InvalidTransition):
        controller.connect()


def test_establish_tunnel_enters_health_checking(config):
    relay = FakeRelay()
    controller = make_controller(config, relay=relay)
    controller.connect()

    controller.establish_tunnel()

    state = controller.state
    assert isinstance(state, HealthChecking)
    assert state.failures == 0
    assert state.tunnel.thread.is_alive()
    _, remote, local, mode = relay.established[0]
    assert remote == ("0.0.0.0", 9000)
    assert local == ("127.0.0.1", 8080)
    assert mode == "reverse"
    controller.disconnect()


def test_establish_failure_drops_session(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter, relay=FakeRelay(fail=True))
    controller.connect()

    with pytest.raises(TunnelEstablishFailed):
        controller.establish_tunnel()

    assert isinstance(controller.state, Idle)
    assert adapter.sessions[0].closed


def test_establish_without_session_is_rejected(config):
    controller = make_controller(config)
    with pytest.raises(InvalidTransition):
        controller.establish_tunnel()
    assert isinstance(controller.state, Idle)


# --------------------------------------------------------------------------- #
# health checks
# --------------------------------------------------------------------------- #

def test_failure_counter_resets_on_success(config):
    outcomes = [False, False, True, False, False, True]
    controller = checking_controller(config, FakeProbe(outcomes))

    seen = []
    for _ in outcomes:
        controller.health_check()
        seen.append(controller.failures)

    assert seen == [1, 2, 0, 1, 2, 0]
    assert isinstance(controller.state, HealthChecking)
    controller.disconnect()


def test_three_failures_force_reconnecting(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter,
                                 probe=FakeProbe([False, False, False]))
    controller.connect()
    controller.establish_tunnel()
    tunnel = controller.state.tunnel

    results = [controller.health_check() for _ in range(3)]

    assert results == [False, False, False]
    assert isinstance(controller.state, Reconnecting)
    assert controller.state.session is None
    assert adapter.sessions[0].closed
    assert tunnel.cancel.is_set()
    assert not tunnel.thread.is_alive()
    assert tunnel.listener.closed
    assert controller.is_connected is False


def test_custom_failure_threshold(make_config):
    config = make_config(max_health_check_failures=1)
    controller = checking_controller(config, FakeProbe([False]))

    controller.health_check()

    assert isinstance(controller.state, Reconnecting)


def test_probe_exception_counts_as_failure(config):
    controller = checking_controller(config, FakeProbe([OSError("socket closed")]))

    assert controller.health_check() is False
    assert controller.failures == 1
    controller.disconnect()


def test_health_check_before_tunnel_does_not_count(config):
    probe = FakeProbe([False])
    controller = make_controller(config, probe=probe)
    controller.connect()

    assert controller.health_check() is False
    assert isinstance(controller.state, TunnelEstablished)


def test_health_check_without_session_skips_probe(config):
    probe = FakeProbe()
    controller = make_controller(config, probe=probe)

    assert controller.health_check() is False
    assert probe.calls == []


class StoppedRelay(FakeRelay):
    """Accept loop that has already given up, as after a fatal accept() error."""

    def start(self, listener, cancel):
        thread = threading.Thread(target=lambda: None, daemon=True)
        thread.start()
        thread.join()
        return thread


def test_stopped_accept_loop_forces_reconnecting(config):
    adapter = FakeAdapter()
    probe = FakeProbe()
    relay = StoppedRelay()
    controller = make_controller(config, adapter=adapter, relay=relay, probe=probe)
    controller.connect()
    controller.establish_tunnel()

    assert controller.health_check() is False
    assert isinstance(controller.state, Reconnecting)
    assert controller.state.reason == "accept loop stopped"
    assert adapter.sessions[0].closed
    assert relay.listeners[0].closed
    # no probe once the accept loop is gone
    assert probe.calls == []


# --------------------------------------------------------------------------- #
# disconnect
# --------------------------------------------------------------------------- #

def test_disconnect_is_idempotent(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter)

    controller.disconnect()
    controller.disconnect()

    assert isinstance(controller.state, Idle)
    assert adapter.disconnected == []


def test_disconnect_tears_down_tunnel(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter)
    controller.connect()
    controller.establish_tunnel()
    tunnel = controller.state.tunnel

    controller.disconnect()
    controller.disconnect()

    assert isinstance(controller.state, Idle)
    assert not tunnel.thread.is_alive()
    assert adapter.disconnected == [adapter.sessions[0]]


# --------------------------------------------------------------------------- #
# retry driver
# --------------------------------------------------------------------------- #

def test_reconnect_delay_between_failed_connects(config):
    adapter = FakeAdapter(open_errors=[
        TransportConnectFailed("refused"),
        TransportConnectFailed("refused"),
    ])
    controller = make_controller(config, adapter=adapter)
    shutdown = threading.Event()
    clock = FakeClock(shutdown, stop_after=2)

    controller.run(shutdown, sleep=clock.sleep)

    assert clock.sleeps == [config.reconnect_delay, config.reconnect_delay]
    assert clock.now >= 2 * config.reconnect_delay
    assert adapter.sessions == []
    assert isinstance(controller.state, Idle)


def test_retries_until_connected(config):
    adapter = FakeAdapter(open_errors=[
        TransportConnectFailed("refused"),
        HandshakeFailed("reset"),
        None,
    ])
    controller = make_controller(config, adapter=adapter)
    shutdown = threading.Event()
    # two reconnect delays, then one health-check interval
    clock = FakeClock(shutdown, stop_after=3)

    controller.run(shutdown, sleep=clock.sleep)

    assert clock.sleeps == [5, 5, 30]
    assert len(adapter.sessions) == 1
    assert adapter.sessions[0].closed
    assert isinstance(controller.state, Idle)


def test_three_failed_probes_trigger_reconnect_delay(config):
    adapter = FakeAdapter()
    probe = FakeProbe([False, False, False])
    controller = make_controller(config, adapter=adapter, probe=probe)
    shutdown = threading.Event()
    clock = FakeClock(shutdown, stop_after=4)

    controller.run(shutdown, sleep=clock.sleep)

    # three probe intervals, then the reconnect delay, no probe in between
    assert clock.sleeps == [30, 30, 30, 5]
    assert len(probe.calls) == 3
    assert len(adapter.sessions) == 1
    assert adapter.sessions[0].closed
    assert isinstance(controller.state, Idle)


def test_establish_failure_waits_and_reconnects(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter, relay=FakeRelay(fail=True))
    shutdown = threading.Event()
    clock = FakeClock(shutdown, stop_after=2)

    controller.run(shutdown, sleep=clock.sleep)

    assert clock.sleeps == [5, 5]
    assert len(adapter.sessions) == 2
    assert all(s.closed for s in adapter.sessions)


def test_shutdown_before_start_does_nothing(config):
    adapter = FakeAdapter()
    controller = make_controller(config, adapter=adapter)
    shutdown = threading.Event()
    shutdown.set()

    controller.run(shutdown, sleep=lambda s: pytest.fail("should not sleep"))

    assert adapter.sessions == []
    assert isinstance(controller.state, Idle)


def test_unexpected_error_moves_to_failed(config):
    adapter = FakeAdapter(open_errors=[RuntimeError("bug")])
    controller = make_controller(config, adapter=adapter)

    with pytest.raises(RuntimeError):
        controller.run(threading.Event(), sleep=lambda s: None)

    assert isinstance(controller.state, Failed)
    assert controller.snapshot()["last_error"] == "bug"


# --------------------------------------------------------------------------- #
# read-only view
# --------------------------------------------------------------------------- #

def test_endpoints_and_snapshot(make_config):
    config = make_config(ssh_host="h", ssh_port=2222)
    controller = make_controller(config)

    assert controller.endpoints() == {
        "ssh": "h:2222",
        "local": "127.0.0.1:8080",
        "remote": "0.0.0.0:9000",
    }
    snap = controller.snapshot()
    assert snap["state"] == "IDLE"
    assert snap["connected"] is False
    assert snap["failures"] == 0
    assert snap["last_error"] is None
