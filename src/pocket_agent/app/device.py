"""Execution target adapter: the only code that touches the Android device.

Beginner terms:
- adb: Android Debug Bridge CLI; every device call here is one adb subprocess.
- exec-out: adb mode that streams raw binary stdout (used for PNG screenshots).
- emu: adb subcommand forwarded to the emulator console (used for `geo fix`).
"""

from __future__ import annotations

import logging
import re
import shlex
import subprocess
import tempfile
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Protocol, assert_never

from ..config.settings import Settings
from .actions import (
    AgentAction,
    FinishAction,
    KeyEventAction,
    LaunchAppAction,
    RequestHumanAuthAction,
    RunScriptAction,
    ShellAction,
    SwipeAction,
    TapAction,
    TypeTextAction,
    WaitAction,
)
from .errors import AdapterActionFailure
from .models import Observation
from .scripts import ScriptRunner

logger = logging.getLogger(__name__)

DEFAULT_SCREEN_SIZE = (1080, 1920)

_FOREGROUND_PATTERNS = (
    re.compile(r"mCurrentFocus=.*\s([A-Za-z0-9._$]+)/[A-Za-z0-9._$]+"),
    re.compile(r"mFocusedApp=.*\s([A-Za-z0-9._$]+)/[A-Za-z0-9._$]+"),
    re.compile(r"topResumedActivity=.*\s([A-Za-z0-9._$]+)/[A-Za-z0-9._$]+"),
)


class ExecutionTarget(Protocol):
    """What the task loop and delegation need from a device."""

    def capture(self) -> Observation: ...

    def apply(self, action: AgentAction) -> str: ...

    def push_file(self, data: bytes, dest_path: str) -> str: ...

    def set_simulated_location(self, lat: float, lon: float) -> str: ...


@dataclass(frozen=True)
class AdbResult:
    args: list[str]
    stdout: bytes
    stderr: str
    returncode: int

    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")


def extract_package_name(window_dump: str) -> str:
    for pattern in _FOREGROUND_PATTERNS:
        match = pattern.search(window_dump)
        if match:
            return match.group(1)
    return "unknown"


def parse_screen_size(wm_size_output: str) -> tuple[int, int]:
    override = re.search(r"Override size:\s*(\d+)x(\d+)", wm_size_output)
    physical = re.search(r"Physical size:\s*(\d+)x(\d+)", wm_size_output)
    match = override or physical
    if not match:
        return DEFAULT_SCREEN_SIZE
    return int(match.group(1)), int(match.group(2))


def encode_input_text(text: str) -> str:
    # `input text` treats %s as a space; newlines are flattened the same way.
    return text.replace(" ", "%s").replace("\n", "%s")


class AdbDevice:
    """adb-backed execution target for one emulator or device."""

    def __init__(
        self,
        *,
        adb_executable: str = "adb",
        device_id: str | None = None,
        timeout_s: float = 30.0,
        scripts: ScriptRunner | None = None,
    ) -> None:
        self.adb_executable = adb_executable
        self.device_id = device_id
        self.timeout_s = timeout_s
        self.scripts = scripts

    @classmethod
    def from_settings(cls, settings: Settings) -> AdbDevice:
        return cls(
            adb_executable=settings.adb_executable,
            device_id=settings.device_id,
            timeout_s=settings.adb_timeout_s,
            scripts=ScriptRunner.from_settings(settings),
        )

    def capture(self) -> Observation:
        screenshot = self._run(["exec-out", "screencap", "-p"]).stdout
        if not screenshot.startswith(b"\x89PNG"):
            raise AdapterActionFailure("screencap produced non-PNG bytes")
        width, height = parse_screen_size(self._run(["shell", "wm", "size"]).text)
        current_app = "unknown"
        windows = self._run(["shell", "dumpsys", "window", "windows"], check=False)
        if windows.ok():
            current_app = extract_package_name(windows.text)
        return Observation(
            screenshot_png=screenshot,
            current_app=current_app,
            width=width,
            height=height,
            captured_at=datetime.now(tz=UTC),
        )

    def apply(self, action: AgentAction) -> str:
        if isinstance(action, TapAction):
            self._shell("input", "tap", str(action.x), str(action.y))
            return f"Tapped at ({action.x}, {action.y})"
        if isinstance(action, SwipeAction):
            self._shell(
                "input",
                "swipe",
                str(action.x1),
                str(action.y1),
                str(action.x2),
                str(action.y2),
                str(action.duration_ms),
            )
            return f"Swiped from ({action.x1}, {action.y1}) to ({action.x2}, {action.y2})"
        if isinstance(action, TypeTextAction):
            return self._type_text(action.text)
        if isinstance(action, KeyEventAction):
            self._shell("input", "keyevent", action.keycode)
            return f"Sent keyevent {action.keycode}"
        if isinstance(action, LaunchAppAction):
            self._shell(
                "monkey",
                "-p",
                action.package_name,
                "-c",
                "android.intent.category.LAUNCHER",
                "1",
            )
            return f"Launched package {action.package_name}"
        if isinstance(action, ShellAction):
            try:
                parts = shlex.split(action.command)
            except ValueError as exc:
                raise AdapterActionFailure(f"could not parse shell command: {exc}") from exc
            if not parts:
                return "Skipped empty shell command"
            result = self._shell(*parts)
            return f"Executed shell command: {action.command} output={result.text.strip()[:300]}"
        if isinstance(action, RunScriptAction):
            if self.scripts is None:
                raise AdapterActionFailure("no script runner configured")
            outcome = self.scripts.run(action.script, timeout_s=action.timeout_s)
            if not outcome.ok:
                raise AdapterActionFailure(outcome.summary())
            return outcome.summary()
        if isinstance(action, WaitAction):
            time.sleep(action.duration_ms / 1000)
            return f"Waited {action.duration_ms}ms"
        if isinstance(action, RequestHumanAuthAction):
            return f"Human authorization requested: capability={action.capability}"
        if isinstance(action, FinishAction):
            return f"Finish: {action.message}"
        assert_never(action)

    def push_file(self, data: bytes, dest_path: str) -> str:
        parent = str(PurePosixPath(dest_path).parent)
        self._shell("mkdir", "-p", parent)
        with tempfile.TemporaryDirectory(prefix="pocket-agent-push-") as tmp_dir:
            local_path = Path(tmp_dir) / PurePosixPath(dest_path).name
            local_path.write_bytes(data)
            self._run(["push", str(local_path), dest_path])
        # Media scan makes the file visible to gallery pickers; failure is not fatal.
        scan = self._shell(
            "am",
            "broadcast",
            "-a",
            "android.intent.action.MEDIA_SCANNER_SCAN_FILE",
            "-d",
            f"file://{dest_path}",
            check=False,
        )
        if not scan.ok():
            logger.warning("adb_push event=media_scan_failed path=%s stderr=%s", dest_path, scan.stderr)
        return f"Pushed {len(data)} bytes to {dest_path}"

    def set_simulated_location(self, lat: float, lon: float) -> str:
        # The emulator console takes longitude first.
        self._run(["emu", "geo", "fix", f"{lon:.6f}", f"{lat:.6f}"])
        return f"Simulated location set to lat={lat:.6f} lon={lon:.6f}"

    def _type_text(self, text: str) -> str:
        # Some emulator images crash on non-ASCII `input text`; paste through the clipboard instead.
        if not text.isascii():
            return self._paste_text(text)
        try:
            self._shell("input", "text", shlex.quote(encode_input_text(text)))
        except AdapterActionFailure as exc:
            logger.warning("adb_type event=input_text_failed error=%s fallback=clipboard", exc)
            return self._paste_text(text)
        return f"Typed text length={len(text)}"

    def _paste_text(self, text: str) -> str:
        self._shell("cmd", "clipboard", "set", "text", shlex.quote(text))
        self._shell("input", "keyevent", "KEYCODE_PASTE")
        return f"Typed text via clipboard paste length={len(text)}"

    def _shell(self, *args: str, check: bool = True) -> AdbResult:
        return self._run(["shell", *args], check=check)

    def _base_cmd(self) -> list[str]:
        cmd = [self.adb_executable]
        if self.device_id:
            cmd += ["-s", self.device_id]
        return cmd

    def _run(self, args: list[str], *, check: bool = True) -> AdbResult:
        cmd = self._base_cmd() + list(args)
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as exc:
            raise AdapterActionFailure(
                f"adb command timed out after {self.timeout_s}s: {' '.join(cmd)}"
            ) from exc
        except OSError as exc:
            raise AdapterActionFailure(f"adb could not be started: {exc}") from exc
        result = AdbResult(
            args=cmd,
            stdout=proc.stdout,
            stderr=proc.stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode,
        )
        if check and not result.ok():
            raise AdapterActionFailure(
                f"adb command failed (rc={result.returncode}): {' '.join(cmd)} "
                f"stderr={result.stderr.strip()[:500]}"
            )
        return result
