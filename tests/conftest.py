import queue
import threading

import pytest

from config import ConnectionConfig, load_config
from errors import TunnelEstablishFailed


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's shell environment out of config parsing."""
    for name in ConnectionConfig.model_fields:
        monkeypatch.delenv(name.upper(), raising=False)


@pytest.fixture
def key_file(tmp_path):
    path = tmp_path / "id_ed25519"
    path.write_text("not really a key\n")
    return path


@pytest.fixture
def make_config(key_file):
    def _make(**overrides):
        values = dict(
            _env_file=None,
            ssh_host="bastion.example.com",
            ssh_port=2222,
            ssh_username="tunnel",
            ssh_private_key_path=str(key_file),
            local_host="127.0.0.1",
            local_port=8080,
            remote_host="0.0.0.0",
            remote_port=9000,
            health_check_interval=30,
            reconnect_delay=5,
        )
        values.update(overrides)
        return load_config(**values)
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


# --------------------------------------------------------------------------- #
#                         Fakes for the controller                            #
# --------------------------------------------------------------------------- #

class FakeSession:
    def __init__(self, endpoint):
        self.endpoint = endpoint
        self.closed = False

    @property
    def is_active(self):
        return not self.closed


class FakeAdapter:
    """
    ``open_errors`` / ``auth_errors`` are consumed one per attempt; None
    means that attempt succeeds.
    """

    def __init__(self, open_errors=(), auth_errors=()):
        self.open_errors = list(open_errors)
        self.auth_errors = list(auth_errors)
        self.sessions = []
        self.disconnected = []

    def open_transport(self, config):
        err = self.open_errors.pop(0) if self.open_errors else None
        if err is not None:
            raise err
        session = FakeSession(config.ssh_url)
        self.sessions.append(session)
        return session

    def authenticate(self, handle, config):
        err = self.auth_errors.pop(0) if self.auth_errors else None
        if err is not None:
            raise err

    def disconnect(self, handle):
        if handle is None or handle.closed:
            return
        handle.closed = True
        self.disconnected.append(handle)


class FakeListener:
    target = ("127.0.0.1", 8080)

    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True

    def describe(self):
        return "fake listener"


class FakeRelay:
    active_count = 0

    def __init__(self, fail=False):
        self.fail = fail
        self.established = []
        self.listeners = []

    def establish(self, handle, remote_bind, local_bind, mode="reverse"):
        self.established.append((handle, remote_bind, local_bind, mode))
        if self.fail:
            raise TunnelEstablishFailed("remote port forwarding request denied")
        listener = FakeListener()
        self.listeners.append(listener)
        return listener

    def start(self, listener, cancel):
        thread = threading.Thread(target=cancel.wait, daemon=True)
        thread.start()
        return thread


class FakeProbe:
    """Returns queued outcomes; True once the queue is empty."""

    def __init__(self, outcomes=()):
        self.outcomes = list(outcomes)
        self.calls = []

    def check(self, handle):
        self.calls.append(handle)
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return True


class FakeClock:
    """
    Stand-in for ``shutdown.wait``: records every requested sleep, advances
    a virtual clock and requests shutdown after ``stop_after`` sleeps.
    """

    def __init__(self, shutdown, stop_after):
        self.shutdown = shutdown
        self.stop_after = stop_after
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        if len(self.sleeps) >= self.stop_after:
            self.shutdown.set()
        return self.shutdown.is_set()


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def fake_relay():
    return FakeRelay()


@pytest.fixture
def fake_probe():
    return FakeProbe()


# --------------------------------------------------------------------------- #
#                         Fakes for relay tests                               #
# --------------------------------------------------------------------------- #

class ChannelSession:
    """
    Session stand-in for the relay: forwarded "channels" are socketpair ends
    pushed into ``incoming``.
    """

    endpoint = "bastion.example.com:2222"

    def __init__(self):
        self.incoming = queue.Queue()
        self.forwards = []
        self.cancelled = []
        self.direct = []
        self.active = True

    @property
    def is_active(self):
        return self.active

    def request_port_forward(self, host, port):
        self.forwards.append((host, port))
        return port

    def cancel_port_forward(self, host, port):
        self.cancelled.append((host, port))

    def accept(self, timeout=None):
        try:
            return self.incoming.get(timeout=timeout)
        except queue.Empty:
            return None

    def open_direct_channel(self, dest, src, timeout=None):
        chan = self.direct_factory()
        self.direct.append((dest, src))
        return chan


@pytest.fixture
def channel_session():
    return ChannelSession()
