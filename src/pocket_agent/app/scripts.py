from __future__ import annotations

import json
import logging
import re
import secrets
import subprocess
import time
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel

from ..config.settings import Settings

logger = logging.getLogger(__name__)

MAX_SCRIPT_CHARS = 12_000

DENY_PATTERNS = [
    re.compile(r"\bsudo\b", re.IGNORECASE),
    re.compile(r"\bshutdown\b", re.IGNORECASE),
    re.compile(r"\breboot\b", re.IGNORECASE),
    re.compile(r"\bpoweroff\b", re.IGNORECASE),
    re.compile(r"\bhalt\b", re.IGNORECASE),
    re.compile(r"\bmkfs\b", re.IGNORECASE),
    re.compile(r"\bdd\s+if=", re.IGNORECASE),
    re.compile(r"rm\s+-rf\s+/(\s|$)", re.IGNORECASE),
]

_SEGMENT_SPLIT = re.compile(r"&&|\|\||;|\|")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=.*")


class ScriptResult(BaseModel):
    ok: bool
    run_id: str
    run_dir: str
    exit_code: int | None = None
    timed_out: bool = False
    duration_ms: int = 0
    stdout: str = ""
    stderr: str = ""

    def summary(self) -> str:
        if self.ok:
            return f"script ok run_id={self.run_id} stdout={self.stdout.strip()[:300]}"
        reason = "timeout" if self.timed_out else f"exit_code={self.exit_code}"
        return f"script failed run_id={self.run_id} {reason} stderr={self.stderr.strip()[:300]}"


class ScriptRunner:
    """Runs short bash scripts for the `run_script` action behind an allowlist."""

    def __init__(
        self,
        workspace_dir: Path,
        *,
        enabled: bool = True,
        allowed_commands: list[str] | None = None,
        timeout_s: int = 60,
        max_output_chars: int = 4000,
    ) -> None:
        self.scripts_dir = Path(workspace_dir) / "scripts"
        self.runs_dir = self.scripts_dir / "runs"
        self.enabled = enabled
        self.allowed_commands = set(allowed_commands or [])
        self.timeout_s = timeout_s
        self.max_output_chars = max_output_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> ScriptRunner:
        return cls(
            settings.workspace_dir,
            enabled=settings.script_enabled,
            allowed_commands=settings.script_allowed_commands,
            timeout_s=settings.script_timeout_s,
            max_output_chars=settings.script_max_output_chars,
        )

    def validate(self, script: str) -> str | None:
        """Return a rejection reason, or None when the script may run."""
        if not self.enabled:
            return "Script runner is disabled by configuration."
        if not script.strip():
            return "Script is empty."
        if len(script) > MAX_SCRIPT_CHARS:
            return f"Script exceeds max length ({MAX_SCRIPT_CHARS} characters)."
        for pattern in DENY_PATTERNS:
            if pattern.search(script):
                return f"Script blocked by safety rule: {pattern.pattern}"

        for raw_line in script.splitlines():
            line = raw_line.split("#", 1)[0].strip()
            if not line:
                continue
            for segment in _SEGMENT_SPLIT.split(line):
                command = _command_name(segment)
                if command and command not in self.allowed_commands:
                    return f"Command '{command}' is not in the script allowlist."
        return None

    def run(self, script: str, timeout_s: int | None = None) -> ScriptResult:
        run_id = f"{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%SZ')}-{secrets.token_hex(3)}"
        run_dir = self.runs_dir / f"run-{run_id}"
        try:
            result = self._run_in(run_dir, run_id, script, timeout_s)
        except OSError as exc:
            # The run directory itself is unusable; nothing can be recorded there.
            logger.error("script_run event=workspace_failed run_id=%s error=%s", run_id, exc)
            return ScriptResult(
                ok=False,
                run_id=run_id,
                run_dir=str(run_dir),
                stderr=f"script workspace error: {exc}",
            )
        logger.info(
            "script_run event=completed run_id=%s ok=%s exit_code=%s timed_out=%s duration_ms=%d",
            run_id,
            result.ok,
            result.exit_code,
            result.timed_out,
            result.duration_ms,
        )
        return result

    def _run_in(
        self, run_dir: Path, run_id: str, script: str, timeout_s: int | None
    ) -> ScriptResult:
        run_dir.mkdir(parents=True, exist_ok=True)
        script_path = run_dir / "script.sh"
        script_path.write_text(f"{script.strip()}\n", encoding="utf-8")
        script_path.chmod(0o700)

        rejection = self.validate(script)
        if rejection:
            result = ScriptResult(ok=False, run_id=run_id, run_dir=str(run_dir), stderr=rejection)
            self._write_result(run_dir, result)
            logger.warning("script_run event=rejected run_id=%s reason=%s", run_id, rejection)
            return result

        limit_s = max(1, timeout_s or self.timeout_s)
        started = time.perf_counter()
        try:
            proc = subprocess.run(
                ["bash", str(script_path)],
                cwd=self.scripts_dir,
                capture_output=True,
                text=True,
                timeout=limit_s,
            )
            result = ScriptResult(
                ok=proc.returncode == 0,
                run_id=run_id,
                run_dir=str(run_dir),
                exit_code=proc.returncode,
                duration_ms=int((time.perf_counter() - started) * 1000),
                stdout=self._truncate(proc.stdout),
                stderr=self._truncate(proc.stderr),
            )
        except subprocess.TimeoutExpired as exc:
            result = ScriptResult(
                ok=False,
                run_id=run_id,
                run_dir=str(run_dir),
                timed_out=True,
                duration_ms=int((time.perf_counter() - started) * 1000),
                stdout=self._truncate(_as_text(exc.stdout)),
                stderr=self._truncate(_as_text(exc.stderr) or f"timed out after {limit_s}s"),
            )
        except OSError as exc:
            result = ScriptResult(ok=False, run_id=run_id, run_dir=str(run_dir), stderr=str(exc))

        (run_dir / "stdout.log").write_text(f"{result.stdout}\n", encoding="utf-8")
        (run_dir / "stderr.log").write_text(f"{result.stderr}\n", encoding="utf-8")
        self._write_result(run_dir, result)
        return result

    def _truncate(self, text: str) -> str:
        if len(text) <= self.max_output_chars:
            return text
        return f"{text[: self.max_output_chars]}\n...[truncated]"

    @staticmethod
    def _write_result(run_dir: Path, result: ScriptResult) -> None:
        (run_dir / "result.json").write_text(
            json.dumps(result.model_dump(), indent=2) + "\n", encoding="utf-8"
        )


def _command_name(segment: str) -> str:
    tokens = segment.split()
    index = 0
    while index < len(tokens) and _ENV_ASSIGNMENT.match(tokens[index]):
        index += 1
    return tokens[index] if index < len(tokens) else ""


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
