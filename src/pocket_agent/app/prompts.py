from __future__ import annotations

import json

from .actions import CAPABILITIES
from .models import Observation

HISTORY_WINDOW = 8

ACTION_SCHEMA_HINT = """Respond with ONE JSON object and nothing else:
{"thought": "<short plan>", "action": {"type": "<action type>", ...fields}}

Action types and fields:
- tap: x, y
- swipe: x1, y1, x2, y2, duration_ms
- type: text
- keyevent: keycode (for example KEYCODE_ENTER, KEYCODE_BACK, KEYCODE_HOME)
- launch_app: package_name
- shell: command
- run_script: script, timeout_s
- request_human_auth: capability, instruction, timeout_s, reason
- wait: duration_ms, reason
- finish: message"""


def build_system_prompt() -> str:
    capabilities = ", ".join(sorted(CAPABILITIES))
    return "\n".join(
        [
            "You are Pocket Agent, an Android automation agent.",
            "You see one screenshot per step and choose exactly one action.",
            "",
            "Planning:",
            "- Use the thought field to plan toward the overall task and track finished sub-goals.",
            "- Review the execution history. If you are repeating an action or cycling between "
            "the same screens, try a different approach.",
            "- If an approach fails after 2-3 attempts, try an alternative path.",
            "",
            "Rules:",
            "1) Coordinates must stay within screen bounds.",
            "2) Before typing, make sure the intended input field has focus.",
            "3) If uncertain, prefer a small safe step or wait.",
            "4) Use finish when the task is done and include gathered information in the message.",
            "5) Use run_script only as a fallback with a short deterministic script.",
            "6) If blocked by something only a human with a real phone can do (camera, SMS/2FA, "
            "location, biometric, payment, OAuth, system permission), use request_human_auth.",
            f"   capability must be one of: {capabilities}.",
            "7) After a human approval, history lines starting with delegation_ tell you what was "
            "already injected into the device.",
            "8) Use KEYCODE_BACK to go back and KEYCODE_HOME for the home screen.",
            "",
            ACTION_SCHEMA_HINT,
        ]
    )


def build_user_prompt(
    task: str,
    step: int,
    observation: Observation,
    history: list[str],
    *,
    history_window: int = HISTORY_WINDOW,
) -> str:
    recent = history[-history_window:] if history_window > 0 else []
    screen = {
        "current_app": observation.current_app,
        "width": observation.width,
        "height": observation.height,
        "captured_at": observation.captured_at.isoformat(),
    }
    return "\n".join(
        [
            f"Task: {task}",
            f"Step: {step}",
            "",
            "Screen:",
            json.dumps(screen, indent=2),
            "",
            "Recent execution history:",
            "\n".join(recent) if recent else "(none)",
            "",
            "Choose the next action.",
        ]
    )
