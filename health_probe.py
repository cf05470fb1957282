import logging
import time
from typing import Optional

import paramiko

from errors import HealthProbeFailed
from ssh_connector import SessionHandle

logger = logging.getLogger("health")

PROBE_COMMAND = "echo healthcheck"
POLL_INTERVAL = 0.05


class HealthProbe:
    """
    Liveness check: run a no-op command on a fresh session channel of the
    existing transport.  Never raises; a failed probe is just ``False``.

    Success means exit status 0 within ``timeout``.  The channel is closed
    from our side as soon as the status arrives; the server's own close is
    not waited for.
    """

    def __init__(self, timeout: float = 10.0, command: str = PROBE_COMMAND):
        self.timeout = timeout
        self.command = command

    def check(self, handle: Optional[SessionHandle]) -> bool:
        try:
            self._run(handle)
        except (HealthProbeFailed, paramiko.SSHException, EOFError, OSError) as e:
            logger.debug("Health probe failed: %s", e)
            return False
        return True

    def _run(self, handle: Optional[SessionHandle]) -> None:
        if handle is None or not handle.is_active:
            raise HealthProbeFailed("no active session")

        deadline = time.monotonic() + self.timeout
        chan = handle.open_session(timeout=self.timeout)
        try:
            chan.settimeout(self.timeout)
            chan.exec_command(self.command)
            while not chan.exit_status_ready():
                if time.monotonic() >= deadline:
                    raise HealthProbeFailed(f"no exit status within {self.timeout}s")
                time.sleep(POLL_INTERVAL)
            status = chan.recv_exit_status()
            if status != 0:
                raise HealthProbeFailed(f"probe command exited with status {status}")
        finally:
            chan.close()
