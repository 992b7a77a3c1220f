from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

Capability = Literal[
    "camera",
    "qr",
    "microphone",
    "voice",
    "nfc",
    "sms",
    "2fa",
    "location",
    "biometric",
    "notification",
    "contacts",
    "calendar",
    "files",
    "oauth",
    "payment",
    "permission",
    "unknown",
]

CAPABILITIES: frozenset[str] = frozenset(Capability.__args__)


class ActionModel(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")


class TapAction(ActionModel):
    type: Literal["tap"] = "tap"
    x: int = Field(ge=0)
    y: int = Field(ge=0)
    reason: str = ""


class SwipeAction(ActionModel):
    type: Literal["swipe"] = "swipe"
    x1: int
    y1: int
    x2: int
    y2: int
    duration_ms: int = Field(default=300, ge=100)
    reason: str = ""


class TypeTextAction(ActionModel):
    type: Literal["type"] = "type"
    text: str
    reason: str = ""


class KeyEventAction(ActionModel):
    type: Literal["keyevent"] = "keyevent"
    keycode: str = "KEYCODE_ENTER"
    reason: str = ""


class LaunchAppAction(ActionModel):
    type: Literal["launch_app"] = "launch_app"
    package_name: str = Field(min_length=1)
    reason: str = ""


class ShellAction(ActionModel):
    type: Literal["shell"] = "shell"
    command: str
    reason: str = ""


class RunScriptAction(ActionModel):
    type: Literal["run_script"] = "run_script"
    script: str
    timeout_s: int = Field(default=60, ge=1)
    reason: str = ""


class RequestHumanAuthAction(ActionModel):
    type: Literal["request_human_auth"] = "request_human_auth"
    capability: Capability = "unknown"
    instruction: str = "Human authorization is required to continue."
    timeout_s: int | None = None
    reason: str = ""


class WaitAction(ActionModel):
    type: Literal["wait"] = "wait"
    duration_ms: int = Field(default=1000, ge=0)
    reason: str = ""


class FinishAction(ActionModel):
    type: Literal["finish"] = "finish"
    message: str = "Task finished."


AgentAction = Annotated[
    Union[
        TapAction,
        SwipeAction,
        TypeTextAction,
        KeyEventAction,
        LaunchAppAction,
        ShellAction,
        RunScriptAction,
        RequestHumanAuthAction,
        WaitAction,
        FinishAction,
    ],
    Field(discriminator="type"),
]

_ACTION_ADAPTER: TypeAdapter[AgentAction] = TypeAdapter(AgentAction)

ACTION_TYPES: frozenset[str] = frozenset(
    {
        "tap",
        "swipe",
        "type",
        "keyevent",
        "launch_app",
        "shell",
        "run_script",
        "request_human_auth",
        "wait",
        "finish",
    }
)

# Models often answer in camelCase even when asked for snake_case.
_KEY_ALIASES = {
    "durationMs": "duration_ms",
    "packageName": "package_name",
    "timeoutSec": "timeout_s",
    "timeout_sec": "timeout_s",
}


def normalize_action(raw: Any) -> AgentAction:
    """Coerce a raw model payload into exactly one action; anything unusable becomes a wait."""
    if not isinstance(raw, dict):
        return WaitAction(reason="invalid action payload")

    payload = {_KEY_ALIASES.get(key, key): value for key, value in raw.items()}
    action_type = str(payload.get("type", "")).strip()
    if action_type not in ACTION_TYPES:
        return WaitAction(reason=f"unknown action type '{action_type}'")
    payload["type"] = action_type

    if action_type == "request_human_auth":
        capability = str(payload.get("capability", "unknown")).strip().lower()
        payload["capability"] = capability if capability in CAPABILITIES else "unknown"
        if not payload.get("instruction"):
            payload["instruction"] = payload.get("reason") or (
                "Human authorization is required to continue."
            )
    if action_type == "tap":
        payload["x"] = max(0, _to_int(payload.get("x")))
        payload["y"] = max(0, _to_int(payload.get("y")))
    if action_type == "swipe":
        for key in ("x1", "y1", "x2", "y2"):
            payload[key] = _to_int(payload.get(key))

    try:
        return _ACTION_ADAPTER.validate_python(payload)
    except ValidationError as exc:
        return WaitAction(reason=f"invalid {action_type} payload: {exc.error_count()} error(s)")


def _to_int(value: Any) -> int:
    try:
        return round(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
