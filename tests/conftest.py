from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from urllib import parse

import pytest
from fastapi.testclient import TestClient

from pocket_agent.app.actions import AgentAction, WaitAction
from pocket_agent.app.bridge import HumanAuthBridge, RelayClient
from pocket_agent.app.errors import AdapterActionFailure
from pocket_agent.app.llm import AgentDecision
from pocket_agent.app.models import Observation
from pocket_agent.app.relay_store import RelayStore
from pocket_agent.config.settings import Settings
from pocket_agent.main import create_app

API_KEY = "test-relay-key"
AUTH_HEADERS = {"Authorization": f"Bearer {API_KEY}"}


class FakeClock:
    """Manual clock for relay-store tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeDevice:
    """Test-only execution target that records every call."""

    def __init__(self, *, fail_types: set[str] | None = None, fail_capture: int = 0) -> None:
        self.fail_types = fail_types or set()
        self.fail_capture = fail_capture
        self.actions: list[AgentAction] = []
        self.pushed: list[tuple[bytes, str]] = []
        self.locations: list[tuple[float, float]] = []
        self.captures = 0
        self._lock = threading.Lock()

    def capture(self) -> Observation:
        with self._lock:
            self.captures += 1
            if self.captures <= self.fail_capture:
                raise AdapterActionFailure("screencap failed")
        return Observation(
            screenshot_png=b"\x89PNG fake",
            current_app="com.example.app",
            width=1080,
            height=1920,
            captured_at=datetime.now(tz=UTC),
        )

    def apply(self, action: AgentAction) -> str:
        with self._lock:
            self.actions.append(action)
        if action.type in self.fail_types:
            raise AdapterActionFailure(f"{action.type} exploded")
        return f"applied {action.type}"

    def push_file(self, data: bytes, dest_path: str) -> str:
        with self._lock:
            self.pushed.append((data, dest_path))
        return f"pushed {len(data)} bytes"

    def set_simulated_location(self, lat: float, lon: float) -> str:
        with self._lock:
            self.locations.append((lat, lon))
        return "location set"

    def actions_of(self, action_type: str) -> list[AgentAction]:
        return [action for action in self.actions if action.type == action_type]


class ScriptedDecisionClient:
    """Returns queued actions in order, then `default` forever. Records the history it saw."""

    def __init__(self, actions: list[AgentAction], default: AgentAction | None = None) -> None:
        self.actions = list(actions)
        self.default = default or WaitAction(duration_ms=0, reason="idle")
        self.histories: list[list[str]] = []
        self._lock = threading.Lock()

    def decide(
        self, observation: Observation, history: list[str], *, task: str, step: int
    ) -> AgentDecision:
        with self._lock:
            self.histories.append(list(history))
            action = self.actions.pop(0) if self.actions else self.default
        return AgentDecision(thought=f"step {step}", action=action)


class InProcessRelayClient(RelayClient):
    """RelayClient whose transport is a FastAPI TestClient instead of urllib."""

    def __init__(self, test_client: TestClient, *, api_key: str = API_KEY, **kwargs: Any) -> None:
        super().__init__("http://testserver", api_key=api_key, **kwargs)
        self.test_client = test_client

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, bytes]:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        response = self.test_client.request(
            method, path, params=query, json=payload, headers=headers
        )
        return response.status_code, response.content


class RecordingNotifier:
    """Collects approval links; an optional callback plays the human."""

    def __init__(self, on_send: Any = None) -> None:
        self.sent: list[tuple[str, str | None]] = []
        self.on_send = on_send
        self.notified = threading.Event()

    def send(self, message: str, url: str | None = None) -> None:
        self.sent.append((message, url))
        self.notified.set()
        if self.on_send is not None:
            self.on_send(url)


def split_open_url(url: str) -> tuple[str, str]:
    """Return (request_id, open_token) from an approval link."""
    parsed = parse.urlsplit(url)
    request_id = parsed.path.rsplit("/", 1)[-1]
    token = parse.parse_qs(parsed.query)["token"][0]
    return request_id, token


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "state_dir": tmp_path / "state",
        "workspace_dir": tmp_path / "workspace",
        "relay_api_key": API_KEY,
        "relay_public_base_url": "",
        "relay_sweep_interval_s": 0,
        "human_auth_min_timeout_s": 1,
        "poll_interval_s": 0.05,
        "poll_interval_max_s": 0.2,
        "loop_delay_s": 0.0,
        "max_steps": 10,
        "return_home_on_task_end": True,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(settings: Settings, clock: FakeClock) -> RelayStore:
    return RelayStore.from_settings(settings, clock=clock)


@pytest.fixture
def client(settings: Settings, store: RelayStore) -> TestClient:
    app = create_app(settings, store=store)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def live_store(settings: Settings) -> RelayStore:
    """Relay store on the real clock, for end-to-end waits."""
    return RelayStore.from_settings(settings)


@pytest.fixture
def live_client(settings: Settings, live_store: RelayStore) -> TestClient:
    return TestClient(create_app(settings, store=live_store))


@pytest.fixture
def make_bridge(settings: Settings, live_client: TestClient):
    def factory(notifier: RecordingNotifier) -> HumanAuthBridge:
        return HumanAuthBridge(
            InProcessRelayClient(live_client),
            artifacts_dir=settings.bridge_artifacts_dir(),
            notifier=notifier,
            poll_interval_s=settings.poll_interval_s,
            poll_interval_max_s=settings.poll_interval_max_s,
            grace_s=2.0,
        )

    return factory


def create_body(**overrides: Any) -> dict[str, Any]:
    body: dict[str, Any] = {
        "capability": "sms",
        "instruction": "Read the 6-digit code from your phone.",
        "reason": "login needs a one-time code",
        "task": "log in to the bank app",
        "session_id": "session-a",
        "step": 4,
        "current_app": "com.example.bank",
        "timeout_s": 60,
    }
    body.update(overrides)
    return body
