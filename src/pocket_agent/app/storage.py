"""Session trace persistence: one auditable record per task run.

Beginner terms:
- Trace: the ordered list of steps (thought, action, result) for one session.
- Final block: written exactly once when the task reaches a terminal status.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, Field

from .models import TaskResult, TaskSession


class StepTrace(BaseModel):
    step: int
    current_app: str = "unknown"
    thought: str = ""
    action: dict[str, Any] = Field(default_factory=dict)
    result: str = ""
    ok: bool = True
    screenshot_path: str | None = None
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class SessionTraceStore(Protocol):
    def create(self, session: TaskSession) -> str | None: ...

    def append(self, session_id: str, trace: StepTrace) -> None: ...

    def finalize(self, session_id: str, result: TaskResult) -> None: ...


class MarkdownSessionStore:
    """Writes `<root>/<session_id>.md`, appending one block per step."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        self._finalized: set[str] = set()

    def path_for(self, session_id: str) -> Path:
        return self.root / f"{session_id}.md"

    def create(self, session: TaskSession) -> str | None:
        path = self.path_for(session.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        header = (
            f"# Session {session.session_id}\n\n"
            f"- goal: {session.goal}\n"
            f"- started_at: {session.started_at.isoformat()}\n\n"
            "## Steps\n"
        )
        with self._lock:
            path.write_text(header, encoding="utf-8")
        return str(path)

    def append(self, session_id: str, trace: StepTrace) -> None:
        block = (
            f"\n### Step {trace.step}\n\n"
            f"- at: {trace.recorded_at.isoformat()}\n"
            f"- app: {trace.current_app}\n"
            f"- ok: {str(trace.ok).lower()}\n"
            f"- thought: {_one_line(trace.thought) or '-'}\n"
            f"- result: {_one_line(trace.result)}\n"
            f"- screenshot: {trace.screenshot_path or '-'}\n\n"
            "```json\n"
            f"{json.dumps(trace.action, indent=2, ensure_ascii=False)}\n"
            "```\n"
        )
        with self._lock:
            with self.path_for(session_id).open("a", encoding="utf-8") as handle:
                handle.write(block)

    def finalize(self, session_id: str, result: TaskResult) -> None:
        lines = [
            "\n## Final\n",
            f"- status: {result.status}",
            f"- ok: {str(result.ok).lower()}",
            f"- steps: {result.steps}",
            f"- message: {_one_line(result.message)}",
        ]
        for item in result.human_auth:
            lines.append(
                f"- human_auth: request_id={item.request_id} capability={item.capability} "
                f"status={item.status} message={_one_line(item.message)}"
            )
        with self._lock:
            if session_id in self._finalized:
                return
            self._finalized.add(session_id)
            with self.path_for(session_id).open("a", encoding="utf-8") as handle:
                handle.write("\n".join(lines) + "\n")


class InMemorySessionStore:
    """Simple in-memory implementation for unit tests."""

    def __init__(self) -> None:
        self.sessions: dict[str, TaskSession] = {}
        self.steps: dict[str, list[StepTrace]] = {}
        self.finals: dict[str, list[TaskResult]] = {}

    def create(self, session: TaskSession) -> str | None:
        self.sessions[session.session_id] = session
        self.steps[session.session_id] = []
        self.finals[session.session_id] = []
        return None

    def append(self, session_id: str, trace: StepTrace) -> None:
        self.steps[session_id].append(trace)

    def finalize(self, session_id: str, result: TaskResult) -> None:
        self.finals[session_id].append(result)


def _one_line(text: str) -> str:
    return " ".join(text.split())
