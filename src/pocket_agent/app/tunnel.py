from __future__ import annotations

import json
import logging
import os
import subprocess
import threading
import time
from typing import IO, Any
from urllib import error, request

from ..config.settings import Settings
from .errors import TunnelError

logger = logging.getLogger(__name__)


class NgrokTunnel:
    """Runs `ngrok http <target>` and reads the public https URL from ngrok's local API."""

    def __init__(
        self,
        target_url: str,
        *,
        executable: str = "ngrok",
        authtoken: str = "",
        api_base_url: str = "http://127.0.0.1:4040",
        startup_timeout_s: float = 20.0,
        poll_interval_s: float = 0.5,
    ) -> None:
        self.target_url = target_url
        self.executable = executable
        self.authtoken = authtoken
        self.api_base_url = api_base_url.rstrip("/")
        self.startup_timeout_s = startup_timeout_s
        self.poll_interval_s = poll_interval_s
        self.public_url = ""
        self._process: subprocess.Popen[bytes] | None = None

    @classmethod
    def from_settings(cls, settings: Settings, target_url: str) -> NgrokTunnel:
        return cls(
            target_url,
            executable=settings.ngrok_executable,
            authtoken=settings.ngrok_authtoken or os.getenv("NGROK_AUTHTOKEN", ""),
            api_base_url=settings.ngrok_api_base_url,
            startup_timeout_s=settings.ngrok_startup_timeout_s,
        )

    def start(self) -> str:
        if self._process is not None and self._process.poll() is None:
            if self.public_url:
                return self.public_url
            raise TunnelError("ngrok tunnel is already starting")

        args = [self.executable, "http", self.target_url, "--log", "stdout", "--log-format", "json"]
        if self.authtoken:
            args += ["--authtoken", self.authtoken]
        try:
            self._process = subprocess.Popen(
                args, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, stdin=subprocess.DEVNULL
            )
        except OSError as exc:
            raise TunnelError(f"could not start ngrok: {exc}") from exc
        if self._process.stdout is not None:
            threading.Thread(
                target=_drain_log, args=(self._process.stdout,), name="ngrok-log", daemon=True
            ).start()

        deadline = time.monotonic() + self.startup_timeout_s
        last_error = ""
        while time.monotonic() < deadline:
            if self._process.poll() is not None:
                raise TunnelError(
                    f"ngrok exited before the tunnel was ready (rc={self._process.returncode})"
                )
            try:
                self.public_url = self._read_public_url()
                logger.info("tunnel event=ready provider=ngrok public_url=%s", self.public_url)
                return self.public_url
            except TunnelError as exc:
                last_error = str(exc)
            time.sleep(self.poll_interval_s)

        self.stop()
        raise TunnelError(f"timed out waiting for the ngrok tunnel URL: {last_error}")

    def stop(self) -> None:
        process, self._process = self._process, None
        self.public_url = ""
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=5)
        logger.info("tunnel event=stopped provider=ngrok")

    def _read_public_url(self) -> str:
        payload = self._fetch_tunnels()
        tunnels = payload.get("tunnels") if isinstance(payload, dict) else None
        if not isinstance(tunnels, list):
            raise TunnelError("ngrok api returned an invalid payload")
        for item in tunnels:
            if not isinstance(item, dict):
                continue
            public_url = str(item.get("public_url", ""))
            if public_url.startswith("https://"):
                return public_url.rstrip("/")
        raise TunnelError("ngrok api has no https tunnel yet")

    def _fetch_tunnels(self) -> Any:
        req = request.Request(f"{self.api_base_url}/api/tunnels", headers={"Accept": "application/json"})
        try:
            with request.urlopen(req, timeout=2.0) as response:
                return json.loads(response.read().decode("utf-8"))
        except (error.URLError, TimeoutError, OSError, ValueError) as exc:
            raise TunnelError(f"ngrok api unavailable: {exc}") from exc


def _drain_log(stream: IO[bytes]) -> None:
    for raw_line in stream:
        line = raw_line.decode("utf-8", errors="replace").strip()
        if line:
            logger.debug("tunnel provider=ngrok line=%s", line)
