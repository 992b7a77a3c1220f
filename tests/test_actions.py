from __future__ import annotations

import pytest
from pydantic import ValidationError

from pocket_agent.app.actions import (
    FinishAction,
    LaunchAppAction,
    RequestHumanAuthAction,
    SwipeAction,
    TapAction,
    TypeTextAction,
    WaitAction,
    normalize_action,
)


def test_tap_coordinates_are_coerced_and_clamped() -> None:
    action = normalize_action({"type": "tap", "x": "12.6", "y": -40})

    assert action == TapAction(x=13, y=0)


def test_swipe_and_camel_case_keys() -> None:
    action = normalize_action(
        {"type": "swipe", "x1": 1, "y1": 2, "x2": 3, "y2": 4, "durationMs": 500}
    )

    assert isinstance(action, SwipeAction)
    assert action.duration_ms == 500


def test_launch_app_accepts_package_name_alias() -> None:
    action = normalize_action({"type": "launch_app", "packageName": "com.android.settings"})

    assert action == LaunchAppAction(package_name="com.android.settings")


def test_human_auth_capability_is_normalized() -> None:
    action = normalize_action(
        {"type": "request_human_auth", "capability": "SMS", "reason": "need the code", "timeoutSec": 90}
    )

    assert isinstance(action, RequestHumanAuthAction)
    assert action.capability == "sms"
    assert action.instruction == "need the code"
    assert action.timeout_s == 90


def test_unknown_capability_becomes_unknown() -> None:
    action = normalize_action({"type": "request_human_auth", "capability": "telepathy"})

    assert action.capability == "unknown"
    assert action.instruction == "Human authorization is required to continue."


@pytest.mark.parametrize(
    "raw",
    [
        None,
        "tap here",
        {"type": "fly"},
        {"type": "launch_app"},
        {"type": "type"},
    ],
)
def test_unusable_payloads_become_wait(raw) -> None:
    assert isinstance(normalize_action(raw), WaitAction)


def test_type_and_finish_pass_through() -> None:
    assert normalize_action({"type": "type", "text": "hello"}) == TypeTextAction(text="hello")
    assert normalize_action({"type": "finish", "message": "done"}) == FinishAction(message="done")


def test_actions_are_frozen() -> None:
    action = TapAction(x=1, y=2)

    with pytest.raises(ValidationError):
        action.x = 5
