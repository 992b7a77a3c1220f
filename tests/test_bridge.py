from __future__ import annotations

import base64
import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from conftest import FakeDevice, InProcessRelayClient, RecordingNotifier, split_open_url
from fastapi.testclient import TestClient

from pocket_agent.app.bridge import APPLIED_HISTORY, HumanAuthBridge, RelayClient
from pocket_agent.app.errors import DecisionPollFailure, HumanAuthCancelled
from pocket_agent.app.models import (
    ArtifactRef,
    CreateHumanAuthResponse,
    HumanAuthDecision,
    HumanAuthRequest,
    HumanAuthStatusResponse,
)


def _human_request(**overrides) -> HumanAuthRequest:
    values = {
        "task": "pay the invoice",
        "session_id": "session-a",
        "step": 3,
        "capability": "payment",
        "instruction": "Confirm the payment in your banking app.",
        "timeout_s": 60,
    }
    values.update(overrides)
    return HumanAuthRequest(**values)


class ScriptedRelayClient(RelayClient):
    """Returns queued poll results; a DecisionPollFailure in the queue is raised."""

    def __init__(self, statuses: list, *, expires_in_s: float = 60.0, create_error: bool = False):
        super().__init__("http://relay.invalid")
        self.statuses = list(statuses)
        self.expires_in_s = expires_in_s
        self.create_error = create_error
        self.polls = 0
        self.downloads: list[str] = []

    def create(self, human_request: HumanAuthRequest) -> CreateHumanAuthResponse:
        if self.create_error:
            raise DecisionPollFailure("relay unreachable: connection refused")
        return CreateHumanAuthResponse(
            request_id="auth-1-feed",
            open_url="https://relay.example/human-auth/auth-1-feed?token=open",
            poll_token="poll",
            expires_at=datetime.now(tz=UTC) + timedelta(seconds=self.expires_in_s),
        )

    def status(self, request_id: str, poll_token: str) -> HumanAuthStatusResponse:
        self.polls += 1
        item = self.statuses.pop(0) if self.statuses else "pending"
        if isinstance(item, Exception):
            raise item
        if isinstance(item, HumanAuthStatusResponse):
            return item
        return HumanAuthStatusResponse(
            request_id=request_id,
            status=item,
            expires_at=datetime.now(tz=UTC) + timedelta(seconds=self.expires_in_s),
        )

    def download_artifact(self, request_id: str, poll_token: str) -> bytes:
        self.downloads.append(request_id)
        return b"image-bytes"


class RecordingEvent(threading.Event):
    """Stop event that never blocks and records every requested wait."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: list[float] = []

    def wait(self, timeout: float | None = None) -> bool:
        self.waits.append(timeout)
        return self.is_set()


def _bridge(client: RelayClient, tmp_path: Path, **kwargs) -> HumanAuthBridge:
    kwargs.setdefault("poll_interval_s", 1.0)
    kwargs.setdefault("poll_interval_max_s", 3.0)
    return HumanAuthBridge(client, artifacts_dir=tmp_path / "artifacts", **kwargs)


def test_poll_interval_grows_linearly_up_to_the_cap(tmp_path: Path) -> None:
    client = ScriptedRelayClient(["pending"] * 5 + ["approved"])
    stop = RecordingEvent()

    decision = _bridge(client, tmp_path).request_and_wait(_human_request(), stop)

    assert decision.approved
    assert decision.status == "approved"
    assert decision.message == "Approved by human."
    assert stop.waits == [1.0, 2.0, 3.0, 3.0, 3.0, 3.0]


def test_polling_stops_at_first_terminal_status(tmp_path: Path) -> None:
    client = ScriptedRelayClient(["pending", "rejected", "approved"])

    decision = _bridge(client, tmp_path).request_and_wait(_human_request(), RecordingEvent())

    assert decision.status == "rejected"
    assert not decision.approved
    assert client.polls == 2


def test_poll_failures_are_retried(tmp_path: Path) -> None:
    client = ScriptedRelayClient([DecisionPollFailure("blip"), "timeout"])

    decision = _bridge(client, tmp_path).request_and_wait(_human_request(), RecordingEvent())

    assert decision.status == "timeout"
    assert decision.message == "No decision before the request expired."
    assert client.polls == 2


def test_unreachable_relay_times_out_locally(tmp_path: Path) -> None:
    client = ScriptedRelayClient([DecisionPollFailure("down")] * 50, expires_in_s=-10)

    decision = _bridge(client, tmp_path, grace_s=0.0).request_and_wait(
        _human_request(), RecordingEvent()
    )

    assert decision.status == "timeout"
    assert not decision.approved
    assert decision.request_id == "auth-1-feed"
    assert client.polls == 1


def test_create_failure_counts_as_rejection(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    client = ScriptedRelayClient([], create_error=True)

    decision = _bridge(client, tmp_path, notifier=notifier).request_and_wait(_human_request())

    assert decision.request_id == "local-error"
    assert decision.status == "rejected"
    assert decision.capability == "payment"
    assert "connection refused" in decision.message
    assert notifier.sent == []
    assert client.polls == 0


def test_stop_event_cancels_the_wait(tmp_path: Path) -> None:
    client = ScriptedRelayClient([])
    stop = RecordingEvent()
    stop.set()

    with pytest.raises(HumanAuthCancelled) as excinfo:
        _bridge(client, tmp_path).request_and_wait(_human_request(), stop)

    assert excinfo.value.request_id == "auth-1-feed"
    assert client.polls == 0


def test_notifier_receives_open_url(tmp_path: Path) -> None:
    notifier = RecordingNotifier()
    client = ScriptedRelayClient(["approved"])

    _bridge(client, tmp_path, notifier=notifier).request_and_wait(_human_request(), RecordingEvent())

    [(message, url)] = notifier.sent
    assert "payment" in message
    assert url == "https://relay.example/human-auth/auth-1-feed?token=open"


def test_notifier_failure_does_not_abort_the_wait(tmp_path: Path) -> None:
    def explode(url: str | None) -> None:
        raise RuntimeError("push service down")

    client = ScriptedRelayClient(["approved"])
    bridge = _bridge(client, tmp_path, notifier=RecordingNotifier(on_send=explode))

    assert bridge.request_and_wait(_human_request(), RecordingEvent()).approved


def test_second_request_for_same_session_is_refused(tmp_path: Path) -> None:
    client = ScriptedRelayClient([])
    bridge = _bridge(client, tmp_path, poll_interval_s=0.01, poll_interval_max_s=0.01)
    stop = threading.Event()
    errors: list[BaseException] = []

    def first_wait() -> None:
        try:
            bridge.request_and_wait(_human_request(), stop)
        except HumanAuthCancelled as exc:
            errors.append(exc)

    worker = threading.Thread(target=first_wait)
    worker.start()
    try:
        for _ in range(200):
            if bridge.list_pending():
                break
            stop.wait(0.01)
        assert [entry["session_id"] for entry in bridge.list_pending()] == ["session-a"]
        with pytest.raises(RuntimeError):
            bridge.request_and_wait(_human_request(), RecordingEvent())
    finally:
        stop.set()
        worker.join(timeout=5)

    assert len(errors) == 1
    assert bridge.list_pending() == []


def test_rejected_decision_drops_artifact(tmp_path: Path) -> None:
    rejected = HumanAuthStatusResponse(
        request_id="auth-1-feed",
        status="rejected",
        expires_at=datetime.now(tz=UTC),
        artifact=ArtifactRef(kind="text", value="should not leak"),
    )
    client = ScriptedRelayClient([rejected])

    decision = _bridge(client, tmp_path).request_and_wait(_human_request(), RecordingEvent())

    assert decision.artifact is None


def test_image_artifact_is_downloaded_locally(tmp_path: Path) -> None:
    approved = HumanAuthStatusResponse(
        request_id="auth-1-feed",
        status="approved",
        expires_at=datetime.now(tz=UTC),
        note="here you go",
        artifact=ArtifactRef(kind="image", mime_type="image/png", path="/relay/side.png"),
    )
    client = ScriptedRelayClient([approved])

    decision = _bridge(client, tmp_path).request_and_wait(_human_request(), RecordingEvent())

    assert client.downloads == ["auth-1-feed"]
    local = Path(decision.artifact_path)
    assert local.parent == tmp_path / "artifacts"
    assert local.suffix == ".png"
    assert local.read_bytes() == b"image-bytes"
    assert decision.artifact.path == str(local)
    assert decision.message == "here you go"


def test_end_to_end_against_in_process_relay(make_bridge) -> None:
    """The notifier plays the human and approves through the public resolve route."""
    holder: dict = {}

    def approve(url: str | None) -> None:
        request_id, token = split_open_url(url)
        response = holder["client"].post(
            f"/v1/human-auth/requests/{request_id}/resolve",
            params={"token": token},
            json={"decision": "approve", "artifact": {"kind": "text", "value": "777111"}},
        )
        assert response.status_code == 200

    bridge = make_bridge(RecordingNotifier(on_send=approve))
    holder["client"] = bridge.client.test_client

    decision = bridge.request_and_wait(_human_request(capability="2fa"), threading.Event())

    assert decision.approved
    assert decision.capability == "2fa"
    assert decision.artifact.kind == "text"
    assert decision.artifact.value == "777111"


def test_end_to_end_image_download(make_bridge, settings) -> None:
    image = b"\x89PNG\r\n\x1a\nreal-enough"
    holder: dict = {}

    def approve(url: str | None) -> None:
        request_id, token = split_open_url(url)
        holder["client"].post(
            f"/v1/human-auth/requests/{request_id}/resolve",
            params={"token": token},
            json={
                "decision": "approve",
                "artifact": {
                    "kind": "image",
                    "mime_type": "image/png",
                    "base64": base64.b64encode(image).decode("ascii"),
                },
            },
        )

    bridge = make_bridge(RecordingNotifier(on_send=approve))
    holder["client"] = bridge.client.test_client

    decision = bridge.request_and_wait(_human_request(capability="camera"), threading.Event())

    local = Path(decision.artifact_path)
    assert local.parent == settings.bridge_artifacts_dir()
    assert local.read_bytes() == image


def test_relay_client_reports_http_errors(live_client: TestClient) -> None:
    client = InProcessRelayClient(live_client, api_key="wrong-key")

    with pytest.raises(DecisionPollFailure) as excinfo:
        client.list_requests()

    assert excinfo.value.status_code == 401


def test_applied_request_ids_are_remembered_within_a_bounded_window(tmp_path: Path) -> None:
    bridge = _bridge(ScriptedRelayClient([]), tmp_path)
    device = FakeDevice()

    def approved(number: int) -> HumanAuthDecision:
        return HumanAuthDecision(
            request_id=f"auth-{number}",
            approved=True,
            status="approved",
            capability="2fa",
            artifact=ArtifactRef(kind="text", value="1234"),
        )

    assert bridge.apply_delegation(approved(0), device) is not None
    assert bridge.apply_delegation(approved(0), device) is None
    for number in range(1, APPLIED_HISTORY + 10):
        bridge.apply_delegation(approved(number), device)

    assert len(bridge._applied) == APPLIED_HISTORY
    assert "auth-0" not in bridge._applied
    assert bridge.apply_delegation(approved(APPLIED_HISTORY + 5), device) is None
    assert len(device.actions_of("type")) == APPLIED_HISTORY + 10


def test_screenshot_path_reaches_the_relay_listing(make_bridge) -> None:
    holder: dict = {}

    def reject(url: str | None) -> None:
        request_id, token = split_open_url(url)
        holder["client"].post(
            f"/v1/human-auth/requests/{request_id}/resolve",
            params={"token": token},
            json={"decision": "reject"},
        )

    bridge = make_bridge(RecordingNotifier(on_send=reject))
    holder["client"] = bridge.client.test_client

    decision = bridge.request_and_wait(
        _human_request(screenshot_path="/state/screenshots/step-003.png"), threading.Event()
    )

    [row] = bridge.client.list_requests()
    assert row.request_id == decision.request_id
    assert row.screenshot_path == "/state/screenshots/step-003.png"
