import logging
import threading
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from config import ConnectionConfig, describe
from tunnel_controller import TunnelController

logger = logging.getLogger("status")


class StatusResponse(BaseModel):
    status: str
    state: str
    ssh_host: str
    local_bind: str
    remote_bind: str
    tunnel_mode: str
    failures: int = 0
    active_connections: int = 0
    last_error: Optional[str] = None


def create_app(controller: TunnelController, config: ConnectionConfig) -> FastAPI:
    """Read-only view over the controller.  Nothing here mutates it."""
    app = FastAPI(title="SSH Forwarder")

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return "SSH Forwarder is running"

    @app.get("/status", response_model=StatusResponse)
    def status() -> StatusResponse:
        snap = controller.snapshot()
        endpoints = snap["endpoints"]
        return StatusResponse(
            status="connected" if snap["connected"] else "disconnected",
            state=snap["state"],
            ssh_host=endpoints["ssh"],
            local_bind=endpoints["local"],
            remote_bind=endpoints["remote"],
            tunnel_mode=snap["tunnel_mode"],
            failures=snap["failures"],
            active_connections=snap["active_connections"],
            last_error=snap["last_error"],
        )

    @app.get("/config")
    def get_config() -> Dict[str, Any]:
        return describe(config)

    return app


def _uvicorn_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


class StatusServer:
    """uvicorn on a daemon thread, so the driver keeps the main thread."""

    def __init__(self, controller: TunnelController, config: ConnectionConfig):
        self.config = config
        uv_config = uvicorn.Config(
            create_app(controller, config),
            host=config.web_interface,
            port=config.web_port,
            log_level=_uvicorn_level(config.log_level),
            log_config=None,
        )
        # run() off the main thread leaves signal handlers to main.py
        self.server = uvicorn.Server(uv_config)
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self.thread = threading.Thread(target=self.server.run, name="status-server", daemon=True)
        self.thread.start()
        logger.info(
            "Web interface running on http://%s:%s",
            self.config.web_interface, self.config.web_port,
        )

    def stop(self, timeout: float = 5.0) -> None:
        if self.thread is None:
            return
        self.server.should_exit = True
        self.thread.join(timeout)
        self.thread = None
