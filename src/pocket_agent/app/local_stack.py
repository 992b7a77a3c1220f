from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

import uvicorn

from ..config.settings import Settings
from ..main import create_app
from .errors import TunnelError
from .relay_store import RelayStore
from .tunnel import NgrokTunnel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LocalStackUrls:
    relay_base_url: str
    public_base_url: str


class LocalRelayStack:
    """Relay served by uvicorn on a background thread, optionally behind an ngrok tunnel."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: RelayStore | None = None,
        startup_timeout_s: float = 10.0,
    ) -> None:
        self.settings = settings
        self.store = store
        self.startup_timeout_s = startup_timeout_s
        self.urls: LocalStackUrls | None = None
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None
        self._tunnel: NgrokTunnel | None = None

    def start(self) -> LocalStackUrls:
        if self.urls is not None:
            return self.urls

        app = create_app(self.settings, store=self.store)
        config = uvicorn.Config(
            app,
            host=self.settings.relay_host,
            port=self.settings.relay_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)
        self._server = server
        self._thread = threading.Thread(target=server.run, name="relay-server", daemon=True)
        self._thread.start()

        deadline = time.monotonic() + self.startup_timeout_s
        while not server.started:
            if not self._thread.is_alive() or time.monotonic() >= deadline:
                self.stop()
                raise RuntimeError("local relay server failed to start")
            time.sleep(0.05)

        relay_base_url = f"http://{self._display_host()}:{self._bound_port(server)}"
        logger.info("local_stack event=relay_started relay_base_url=%s", relay_base_url)

        public_base_url = self.settings.relay_public_base_url or relay_base_url
        if self.settings.tunnel_provider == "ngrok":
            self._tunnel = NgrokTunnel.from_settings(self.settings, relay_base_url)
            try:
                public_base_url = self._tunnel.start()
            except TunnelError:
                self.stop()
                raise
        self.urls = LocalStackUrls(relay_base_url=relay_base_url, public_base_url=public_base_url)
        return self.urls

    def stop(self) -> None:
        tunnel, self._tunnel = self._tunnel, None
        if tunnel is not None:
            tunnel.stop()
        server, self._server = self._server, None
        thread, self._thread = self._thread, None
        if server is not None:
            server.should_exit = True
        if thread is not None:
            thread.join(timeout=5)
        if self.urls is not None:
            logger.info("local_stack event=stopped relay_base_url=%s", self.urls.relay_base_url)
        self.urls = None

    def __enter__(self) -> LocalRelayStack:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    def _bound_port(self, server: uvicorn.Server) -> int:
        # Port 0 asks the OS for a free port; read back what was bound.
        for listener in server.servers:
            for sock in listener.sockets:
                return int(sock.getsockname()[1])
        return self.settings.relay_port

    def _display_host(self) -> str:
        host = self.settings.relay_host
        return "127.0.0.1" if host in {"0.0.0.0", "::", ""} else host
