"""Task execution loop: observe, decide, dispatch, record, repeat.

Beginner terms:
- Session: one run of one goal; owns its own history and stop event.
- Suspension: a request_human_auth action blocks this session (only) inside the
  bridge until a human decides, the request times out, or the session is stopped.
- History line: one short text record per event; the model sees the last few.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import UTC, datetime
from typing import Callable, assert_never

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
from .bridge import HumanAuthBridge
from .device import ExecutionTarget
from .errors import AdapterActionFailure, HumanAuthCancelled, ModelClientError
from .llm import DecisionClient
from .models import (
    HumanAuthRequest,
    HumanAuthSummary,
    Observation,
    TaskResult,
    TaskSession,
    TaskStatus,
)
from .screenshots import ScreenshotStore
from .storage import SessionTraceStore, StepTrace

logger = logging.getLogger(__name__)


def new_session_id() -> str:
    return f"session-{datetime.now(tz=UTC).strftime('%Y%m%dT%H%M%SZ')}-{secrets.token_hex(3)}"


class TaskExecutor:
    """Runs tasks against one device. Concurrent run_task calls share the device lock."""

    def __init__(
        self,
        *,
        device: ExecutionTarget,
        decision_client: DecisionClient,
        trace_store: SessionTraceStore,
        bridge: HumanAuthBridge | None = None,
        screenshots: ScreenshotStore | None = None,
        human_auth_enabled: bool = True,
        max_steps: int = 50,
        loop_delay_s: float = 0.4,
        return_home: bool = True,
        default_auth_timeout_s: int = 300,
        min_auth_timeout_s: int = 1,
        max_auth_timeout_s: int = 1800,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.device = device
        self.decision_client = decision_client
        self.trace_store = trace_store
        self.bridge = bridge
        self.screenshots = screenshots
        self.human_auth_enabled = human_auth_enabled
        self.max_steps = max_steps
        self.loop_delay_s = loop_delay_s
        self.return_home = return_home
        self.default_auth_timeout_s = default_auth_timeout_s
        self.min_auth_timeout_s = min_auth_timeout_s
        self.max_auth_timeout_s = max_auth_timeout_s
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        # One device, many sessions: every device call goes through this lock.
        self._device_lock = threading.Lock()
        self._sessions_lock = threading.Lock()
        self._stops: dict[str, threading.Event] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        device: ExecutionTarget,
        decision_client: DecisionClient,
        trace_store: SessionTraceStore,
        bridge: HumanAuthBridge | None = None,
    ) -> TaskExecutor:
        return cls(
            device=device,
            decision_client=decision_client,
            trace_store=trace_store,
            bridge=bridge,
            screenshots=ScreenshotStore.from_settings(settings),
            human_auth_enabled=settings.human_auth_enabled,
            max_steps=settings.max_steps,
            loop_delay_s=settings.loop_delay_s,
            return_home=settings.return_home_on_task_end,
            default_auth_timeout_s=settings.human_auth_timeout_s,
            min_auth_timeout_s=settings.human_auth_min_timeout_s,
            max_auth_timeout_s=settings.human_auth_max_timeout_s,
        )

    def stop(self, session_id: str) -> bool:
        """Signal a running session to stop; returns False if it is not running."""
        with self._sessions_lock:
            event = self._stops.get(session_id)
        if event is None:
            return False
        event.set()
        logger.info("task_run event=stop_requested session_id=%s", session_id)
        return True

    def active_sessions(self) -> list[str]:
        with self._sessions_lock:
            return sorted(self._stops)

    def run_task(
        self,
        goal: str,
        *,
        session_id: str | None = None,
        stop_event: threading.Event | None = None,
        max_steps: int | None = None,
    ) -> TaskResult:
        session = TaskSession(
            session_id=session_id or new_session_id(),
            goal=goal,
            started_at=self._clock(),
        )
        stop = stop_event or threading.Event()
        step_limit = max_steps or self.max_steps
        with self._sessions_lock:
            if session.session_id in self._stops:
                raise ValueError(f"session {session.session_id} is already running")
            self._stops[session.session_id] = stop

        run_started_perf = time.perf_counter()
        logger.info(
            "task_run event=start session_id=%s max_steps=%d", session.session_id, step_limit
        )
        try:
            trace_path = self.trace_store.create(session)
            try:
                status, message = self._loop(session, stop, step_limit)
            except Exception as exc:  # noqa: BLE001
                # Last-resort recovery: the session still ends and its trace is finalized.
                logger.error(
                    "task_run event=crashed session_id=%s step=%d error=%r",
                    session.session_id,
                    session.step,
                    exc,
                )
                status, message = "finished_failed", f"Unexpected task failure: {exc}"
            if self.return_home:
                self._return_home(session)
        finally:
            with self._sessions_lock:
                self._stops.pop(session.session_id, None)

        session.status = status
        session.finished_at = self._clock()
        result = TaskResult(
            session_id=session.session_id,
            ok=status == "finished_ok",
            status=status,
            message=_with_auth_summary(message, session.human_auth),
            steps=session.step,
            human_auth=list(session.human_auth),
            trace_path=trace_path,
        )
        self.trace_store.finalize(session.session_id, result)
        logger.info(
            "task_run event=completed session_id=%s status=%s steps=%d human_auth=%d duration_ms=%d",
            session.session_id,
            status,
            session.step,
            len(session.human_auth),
            int((time.perf_counter() - run_started_perf) * 1000),
        )
        return result

    def _loop(
        self, session: TaskSession, stop: threading.Event, step_limit: int
    ) -> tuple[TaskStatus, str]:
        while True:
            # 1) Stop signal first, then the step ceiling.
            if stop.is_set():
                return "stopped", "Task stopped."
            if session.step >= step_limit:
                return "finished_failed", f"Max steps reached ({step_limit})"
            session.step += 1
            step = session.step

            # 2) Observe. A capture failure costs a step but does not end the task.
            try:
                with self._device_lock:
                    observation = self.device.capture()
            except AdapterActionFailure as exc:
                self._record(
                    session,
                    StepTrace(step=step, ok=False, result=f"capture failed error={exc}"),
                    f"step {step}: capture failed error={exc}",
                )
                stop.wait(self.loop_delay_s)
                continue
            screenshot_path = self._save_screenshot(session, observation)

            # 3) Decide. Transport failures after retries are fatal; bad output is already a wait.
            try:
                decision = self.decision_client.decide(
                    observation, list(session.history), task=session.goal, step=step
                )
            except ModelClientError as exc:
                logger.error("task_run event=model_failed session_id=%s error=%s", session.session_id, exc)
                return "finished_failed", f"Model request failed: {exc}"
            action = decision.action
            logger.info(
                "task_run event=step session_id=%s step=%d app=%s action=%s",
                session.session_id,
                step,
                observation.current_app,
                action.type,
            )

            # 4) Dispatch.
            if isinstance(action, FinishAction):
                self._record(
                    session,
                    _trace(
                        step,
                        observation,
                        decision.thought,
                        action,
                        action.message,
                        ok=True,
                        screenshot_path=screenshot_path,
                    ),
                    f"step {step}: app={observation.current_app} action=finish result={action.message}",
                )
                return "finished_ok", action.message
            try:
                ok, result = self._dispatch(session, action, observation, stop, screenshot_path)
            except HumanAuthCancelled as exc:
                self._record(
                    session,
                    _trace(
                        step,
                        observation,
                        decision.thought,
                        action,
                        "stopped while waiting",
                        ok=False,
                        screenshot_path=screenshot_path,
                    ),
                    f"step {step}: human_auth_cancelled request_id={exc.request_id}",
                )
                return "stopped", f"Task stopped while waiting for human authorization ({exc.request_id})."
            self.trace_store.append(
                session.session_id,
                _trace(
                    step,
                    observation,
                    decision.thought,
                    action,
                    result,
                    ok=ok,
                    screenshot_path=screenshot_path,
                ),
            )

            # 5) Pause between steps; a stop ends the pause early.
            stop.wait(self.loop_delay_s)

    def _dispatch(
        self,
        session: TaskSession,
        action: AgentAction,
        observation: Observation,
        stop: threading.Event,
        screenshot_path: str | None = None,
    ) -> tuple[bool, str]:
        step = session.step
        app = observation.current_app
        if isinstance(action, RequestHumanAuthAction):
            return self._human_auth(session, action, observation, stop, screenshot_path)
        if isinstance(action, WaitAction):
            stop.wait(action.duration_ms / 1000)
            result = f"Waited {action.duration_ms}ms"
            if action.reason:
                result = f"{result} reason={action.reason}"
            session.history.append(f"step {step}: app={app} action=wait result={result}")
            return True, result
        if isinstance(
            action,
            (
                TapAction,
                SwipeAction,
                TypeTextAction,
                KeyEventAction,
                LaunchAppAction,
                ShellAction,
                RunScriptAction,
            ),
        ):
            try:
                with self._device_lock:
                    result = self.device.apply(action)
            except AdapterActionFailure as exc:
                logger.warning(
                    "task_run event=action_failed session_id=%s step=%d action=%s error=%s",
                    session.session_id,
                    step,
                    action.type,
                    exc,
                )
                session.history.append(f"step {step}: app={app} action={action.type} failed error={exc}")
                return False, f"failed error={exc}"
            session.history.append(f"step {step}: app={app} action={action.type} result={result}")
            return True, result
        if isinstance(action, FinishAction):
            return True, action.message
        assert_never(action)

    def _human_auth(
        self,
        session: TaskSession,
        action: RequestHumanAuthAction,
        observation: Observation,
        stop: threading.Event,
        screenshot_path: str | None = None,
    ) -> tuple[bool, str]:
        step = session.step
        if not self.human_auth_enabled or self.bridge is None:
            message = "Human authorization is not configured; continue without it."
            session.history.append(
                f"step {step}: human_auth_unavailable capability={action.capability} message={message}"
            )
            return False, message

        human_request = HumanAuthRequest(
            task=session.goal,
            session_id=session.session_id,
            step=step,
            capability=action.capability,
            instruction=action.instruction,
            reason=action.reason,
            current_app=observation.current_app,
            timeout_s=self._clamp_auth_timeout(action.timeout_s),
            screenshot_path=screenshot_path,
        )
        logger.info(
            "task_run event=suspended session_id=%s step=%d capability=%s timeout_s=%d",
            session.session_id,
            step,
            action.capability,
            human_request.timeout_s,
        )
        # Blocks this session only; HumanAuthCancelled propagates to the loop.
        decision = self.bridge.request_and_wait(human_request, stop_event=stop)
        session.history.append(
            f"step {step}: human_auth_{decision.status} request_id={decision.request_id} "
            f"capability={action.capability} message={decision.message}"
        )
        session.human_auth.append(
            HumanAuthSummary(
                request_id=decision.request_id,
                capability=action.capability,
                status=decision.status,
                session_id=session.session_id,
                step=step,
                message=decision.message,
                decided_at=decision.decided_at,
                has_artifact=decision.artifact is not None,
            )
        )

        with self._device_lock:
            outcome = self.bridge.apply_delegation(decision, self.device)
        result = f"human_auth_{decision.status} request_id={decision.request_id}"
        if outcome is not None:
            session.history.append(f"step {step}: delegation_result={outcome.result}")
            result = f"{result} delegation_result={outcome.result}"
            if outcome.template:
                session.history.append(f"step {step}: delegation_template={outcome.template}")
        logger.info(
            "task_run event=resumed session_id=%s step=%d request_id=%s status=%s",
            session.session_id,
            step,
            decision.request_id,
            decision.status,
        )
        return decision.approved, result

    def _clamp_auth_timeout(self, requested: int | None) -> int:
        value = self.default_auth_timeout_s if requested is None else requested
        return max(self.min_auth_timeout_s, min(self.max_auth_timeout_s, int(value)))

    def _save_screenshot(self, session: TaskSession, observation: Observation) -> str | None:
        if self.screenshots is None or not observation.screenshot_png:
            return None
        try:
            return self.screenshots.save(
                observation.screenshot_png,
                session_id=session.session_id,
                step=session.step,
                current_app=observation.current_app,
            )
        except OSError as exc:
            logger.warning(
                "task_run event=screenshot_failed session_id=%s step=%d error=%s",
                session.session_id,
                session.step,
                exc,
            )
            return None

    def _return_home(self, session: TaskSession) -> None:
        try:
            with self._device_lock:
                self.device.apply(KeyEventAction(keycode="KEYCODE_HOME", reason="task ended"))
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task_run event=return_home_failed session_id=%s error=%s", session.session_id, exc
            )

    def _record(self, session: TaskSession, trace: StepTrace, line: str) -> None:
        session.history.append(line)
        self.trace_store.append(session.session_id, trace)


def _trace(
    step: int,
    observation: Observation,
    thought: str,
    action: AgentAction,
    result: str,
    *,
    ok: bool,
    screenshot_path: str | None = None,
) -> StepTrace:
    if screenshot_path:
        result = f"{result} local_screenshot={screenshot_path}"
    return StepTrace(
        step=step,
        current_app=observation.current_app,
        thought=thought,
        action=action.model_dump(),
        result=result,
        ok=ok,
        screenshot_path=screenshot_path,
    )


def _with_auth_summary(message: str, human_auth: list[HumanAuthSummary]) -> str:
    if not human_auth:
        return message
    parts = ", ".join(
        f"{item.request_id} ({item.capability}) {item.status}" for item in human_auth
    )
    return f"{message} Human authorization: {parts}."
