"""Client side of the human-auth handoff: create, notify, poll, apply.

Beginner terms:
- Relay client: thin HTTP wrapper over the relay routes (urllib, no SDK).
- Notifier: anything that can put the approval URL in front of a human.
- Capped linear backoff: poll after 1x, 2x, 3x ... the interval, never above a cap.
- Stop event: threading.Event shared with the task loop; setting it abandons the wait.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Protocol
from urllib import error, parse, request

from pydantic import ValidationError

from ..config.settings import Settings
from .delegation import apply_artifact
from .device import ExecutionTarget
from .errors import DecisionPollFailure, HumanAuthCancelled
from .models import (
    TERMINAL_STATUSES,
    CreateHumanAuthRequest,
    CreateHumanAuthResponse,
    DelegationOutcome,
    HumanAuthDecision,
    HumanAuthRequest,
    HumanAuthStatusResponse,
    HumanAuthSummary,
    ResolveHumanAuthRequest,
)
from .relay_store import image_extension

logger = logging.getLogger(__name__)

API_PREFIX = "/v1/human-auth"
# Recently applied request ids remembered for duplicate suppression.
APPLIED_HISTORY = 256

_DEFAULT_MESSAGES = {
    "approved": "Approved by human.",
    "rejected": "Rejected by human.",
    "timeout": "No decision before the request expired.",
}


class Notifier(Protocol):
    def send(self, message: str, url: str | None = None) -> None: ...


class LoggingNotifier:
    """Default notifier: writes the approval link to the log."""

    def send(self, message: str, url: str | None = None) -> None:
        logger.warning("human_auth_notify message=%s url=%s", message, url or "")


class RelayClient:
    """HTTP client for the relay. `_request` is the single transport seam."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str = "",
        timeout_s: float = 10.0,
        public_base_url: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.public_base_url = public_base_url

    def create(self, human_request: HumanAuthRequest) -> CreateHumanAuthResponse:
        body = CreateHumanAuthRequest(
            capability=human_request.capability,
            instruction=human_request.instruction,
            reason=human_request.reason,
            task=human_request.task,
            session_id=human_request.session_id,
            step=human_request.step,
            current_app=human_request.current_app,
            timeout_s=human_request.timeout_s,
            screenshot_path=human_request.screenshot_path,
            public_base_url=self.public_base_url,
        )
        data = self._request_json(
            "POST", f"{API_PREFIX}/requests", payload=body.model_dump(exclude_none=True)
        )
        return self._parse(CreateHumanAuthResponse, data)

    def status(self, request_id: str, poll_token: str) -> HumanAuthStatusResponse:
        data = self._request_json(
            "GET",
            f"{API_PREFIX}/requests/{parse.quote(request_id)}/status",
            query={"token": poll_token},
        )
        return self._parse(HumanAuthStatusResponse, data)

    def download_artifact(self, request_id: str, poll_token: str) -> bytes:
        status_code, body = self._request(
            "GET",
            f"{API_PREFIX}/requests/{parse.quote(request_id)}/artifact",
            query={"token": poll_token},
        )
        if status_code >= 400:
            raise DecisionPollFailure(
                f"artifact download failed status={status_code}", status_code=status_code
            )
        return body

    def list_requests(self, status: str | None = None) -> list[HumanAuthSummary]:
        data = self._request_json(
            "GET", f"{API_PREFIX}/requests", query={"status": status} if status else None
        )
        if not isinstance(data, list):
            raise DecisionPollFailure("relay list response was not a JSON array")
        return [self._parse(HumanAuthSummary, item) for item in data]

    def override(
        self, request_id: str, decision: ResolveHumanAuthRequest
    ) -> HumanAuthStatusResponse:
        data = self._request_json(
            "POST",
            f"{API_PREFIX}/requests/{parse.quote(request_id)}/override",
            payload=decision.model_dump(exclude_none=True),
        )
        return self._parse(HumanAuthStatusResponse, data)

    def _request_json(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        status_code, body = self._request(method, path, query=query, payload=payload)
        if status_code >= 400:
            detail = body.decode("utf-8", errors="replace")[:300]
            raise DecisionPollFailure(
                f"relay {method} {path} failed status={status_code} detail={detail}",
                status_code=status_code,
            )
        try:
            return json.loads(body.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise DecisionPollFailure(f"relay returned invalid JSON: {exc}") from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: dict[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> tuple[int, bytes]:
        url = f"{self.base_url}{path}"
        if query:
            url = f"{url}?{parse.urlencode(query)}"
        raw_payload: bytes | None = None
        headers = {"Accept": "application/json"}
        if payload is not None:
            raw_payload = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        req = request.Request(url=url, method=method, data=raw_payload, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                return response.status, response.read()
        except error.HTTPError as exc:
            return exc.code, exc.read()
        except (error.URLError, TimeoutError, OSError) as exc:
            raise DecisionPollFailure(f"relay unreachable: {exc}") from exc

    @staticmethod
    def _parse(model: type, data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise DecisionPollFailure(
                f"relay response did not match {model.__name__}: {exc.error_count()} error(s)"
            ) from exc


class HumanAuthBridge:
    """Blocks one task until a human decides, the request expires, or the task is stopped."""

    def __init__(
        self,
        client: RelayClient,
        *,
        artifacts_dir: Path,
        notifier: Notifier | None = None,
        poll_interval_s: float = 1.0,
        poll_interval_max_s: float = 5.0,
        grace_s: float = 5.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.client = client
        self.artifacts_dir = Path(artifacts_dir)
        self.notifier = notifier or LoggingNotifier()
        self.poll_interval_s = poll_interval_s
        self.poll_interval_max_s = max(poll_interval_s, poll_interval_max_s)
        self.grace_s = grace_s
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        # session_id -> in-flight wait summary
        self._inflight: dict[str, dict[str, Any]] = {}
        self._applied: deque[str] = deque(maxlen=APPLIED_HISTORY)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        base_url: str | None = None,
        public_base_url: str | None = None,
        notifier: Notifier | None = None,
    ) -> HumanAuthBridge:
        client = RelayClient(
            base_url or settings.relay_base_url,
            api_key=settings.relay_api_key,
            timeout_s=settings.relay_request_timeout_s,
            public_base_url=public_base_url or settings.relay_public_base_url or None,
        )
        return cls(
            client,
            artifacts_dir=settings.bridge_artifacts_dir(),
            notifier=notifier,
            poll_interval_s=settings.poll_interval_s,
            poll_interval_max_s=settings.poll_interval_max_s,
        )

    def request_and_wait(
        self,
        human_request: HumanAuthRequest,
        stop_event: threading.Event | None = None,
    ) -> HumanAuthDecision:
        session_id = human_request.session_id
        with self._lock:
            if session_id in self._inflight:
                raise RuntimeError(f"session {session_id} already has a pending human-auth request")
            self._inflight[session_id] = {
                "session_id": session_id,
                "capability": human_request.capability,
                "step": human_request.step,
                "request_id": None,
            }
        try:
            return self._request_and_wait(human_request, stop_event or threading.Event())
        finally:
            with self._lock:
                self._inflight.pop(session_id, None)

    def list_pending(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self._inflight.values()]

    def apply_delegation(
        self, decision: HumanAuthDecision, device: ExecutionTarget
    ) -> DelegationOutcome | None:
        """Apply an approved artifact to the device, at most once per request id."""
        if not decision.approved or decision.artifact is None:
            return None
        with self._lock:
            if decision.request_id in self._applied:
                return None
            self._applied.append(decision.request_id)
        return apply_artifact(decision, device)

    def _request_and_wait(
        self, human_request: HumanAuthRequest, stop: threading.Event
    ) -> HumanAuthDecision:
        # 1) Create the relay request; a relay we cannot reach counts as a rejection.
        try:
            created = self.client.create(human_request)
        except DecisionPollFailure as exc:
            logger.warning(
                "human_auth event=create_failed session_id=%s capability=%s error=%s",
                human_request.session_id,
                human_request.capability,
                exc,
            )
            return HumanAuthDecision(
                request_id="local-error",
                approved=False,
                status="rejected",
                message=f"Relay request failed: {exc}",
                capability=human_request.capability,
            )
        request_id = created.request_id
        with self._lock:
            self._inflight[human_request.session_id]["request_id"] = request_id
        logger.info(
            "human_auth event=created request_id=%s session_id=%s capability=%s expires_at=%s",
            request_id,
            human_request.session_id,
            human_request.capability,
            created.expires_at.isoformat(),
        )

        # 2) Surface the approval link.
        self._notify(human_request, created)

        # 3) Poll until a terminal status, the local budget runs out, or stop is set.
        deadline = created.expires_at + timedelta(seconds=self.grace_s)
        attempt = 0
        while True:
            attempt += 1
            interval = min(self.poll_interval_s * attempt, self.poll_interval_max_s)
            if stop.wait(interval):
                logger.info("human_auth event=cancelled request_id=%s", request_id)
                raise HumanAuthCancelled(request_id)
            try:
                status = self.client.status(request_id, created.poll_token)
            except DecisionPollFailure as exc:
                logger.warning(
                    "human_auth event=poll_failed request_id=%s attempt=%d error=%s",
                    request_id,
                    attempt,
                    exc,
                )
                if self._clock() >= deadline:
                    return self._local_timeout(human_request, request_id)
                continue
            if status.status in TERMINAL_STATUSES:
                return self._finish(human_request, created, status)
            if self._clock() >= deadline:
                return self._local_timeout(human_request, request_id)

    def _notify(self, human_request: HumanAuthRequest, created: CreateHumanAuthResponse) -> None:
        message = (
            f"Authorization needed ({human_request.capability}): {human_request.instruction}"
        )
        try:
            self.notifier.send(message, created.open_url)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "human_auth event=notify_failed request_id=%s error=%s", created.request_id, exc
            )

    def _finish(
        self,
        human_request: HumanAuthRequest,
        created: CreateHumanAuthResponse,
        status: HumanAuthStatusResponse,
    ) -> HumanAuthDecision:
        approved = status.status == "approved"
        message = status.note or _DEFAULT_MESSAGES[status.status]
        artifact = status.artifact if approved else None
        artifact_path = None
        if artifact is not None and artifact.kind == "image":
            try:
                artifact_path = self._download_image(created, artifact.mime_type or "")
                artifact = artifact.model_copy(update={"path": str(artifact_path)})
            except (DecisionPollFailure, OSError) as exc:
                logger.warning(
                    "human_auth event=artifact_failed request_id=%s error=%s",
                    created.request_id,
                    exc,
                )
                message = f"{message} (image artifact unavailable: {exc})"
                artifact = None
        logger.info(
            "human_auth event=decided request_id=%s status=%s artifact=%s",
            created.request_id,
            status.status,
            artifact.kind if artifact else "none",
        )
        return HumanAuthDecision(
            request_id=created.request_id,
            approved=approved,
            status=status.status,
            message=message,
            decided_at=status.decided_at,
            artifact_path=str(artifact_path) if artifact_path else None,
            artifact=artifact,
            capability=human_request.capability,
        )

    def _download_image(self, created: CreateHumanAuthResponse, mime_type: str) -> Path:
        data = self.client.download_artifact(created.request_id, created.poll_token)
        stamp = self._clock().strftime("%Y%m%dT%H%M%S%fZ")
        extension = image_extension(mime_type) if mime_type else "bin"
        path = self.artifacts_dir / f"{created.request_id}-{stamp}.{extension}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return path

    def _local_timeout(self, human_request: HumanAuthRequest, request_id: str) -> HumanAuthDecision:
        logger.warning("human_auth event=local_timeout request_id=%s", request_id)
        return HumanAuthDecision(
            request_id=request_id,
            approved=False,
            status="timeout",
            message="Relay did not report a decision before the request expired.",
            decided_at=self._clock(),
            capability=human_request.capability,
        )
