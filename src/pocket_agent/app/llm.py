from __future__ import annotations

import base64
import json
import logging
import re
import time
from typing import Any, Protocol
from urllib import error, request

from pydantic import BaseModel

from ..config.settings import Settings
from .actions import AgentAction, WaitAction, normalize_action
from .errors import MalformedModelOutput, ModelClientError
from .models import Observation
from .prompts import HISTORY_WINDOW, build_system_prompt, build_user_prompt

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)


class AgentDecision(BaseModel):
    """One model turn: a short plan plus exactly one normalized action."""

    thought: str = ""
    action: AgentAction


class DecisionClient(Protocol):
    """Interface the task loop uses to pick the next action."""

    def decide(
        self,
        observation: Observation,
        history: list[str],
        *,
        task: str,
        step: int,
    ) -> AgentDecision: ...


class OpenAIDecisionClient:
    """Multimodal decision client using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 60.0,
        max_retries: int = 1,
        backoff_s: float = 0.5,
        max_tokens: int = 1024,
        history_window: int = HISTORY_WINDOW,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)
        self.max_tokens = max_tokens
        self.history_window = history_window

    def decide(
        self,
        observation: Observation,
        history: list[str],
        *,
        task: str,
        step: int,
    ) -> AgentDecision:
        user_content: list[dict[str, Any]] = [
            {
                "type": "text",
                "text": build_user_prompt(
                    task, step, observation, history, history_window=self.history_window
                ),
            }
        ]
        if observation.screenshot_png:
            encoded = base64.b64encode(observation.screenshot_png).decode("ascii")
            user_content.append(
                {"type": "image_url", "image_url": {"url": f"data:image/png;base64,{encoded}"}}
            )
        payload = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": build_system_prompt()},
                {"role": "user", "content": user_content},
            ],
        }
        response_json = self._request_with_retry(payload)
        try:
            content = self._extract_content(response_json)
            parsed = parse_decision_payload(content)
        except MalformedModelOutput as exc:
            logger.warning("model_decision event=malformed model=%s step=%d error=%s", self.model, step, exc)
            return AgentDecision(action=WaitAction(reason=f"malformed model output: {exc}"))

        thought = parsed.get("thought")
        action = normalize_action(parsed.get("action"))
        logger.info("model_decision event=ok model=%s step=%d action=%s", self.model, step, action.type)
        return AgentDecision(thought=str(thought or ""), action=action)

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except (TimeoutError, ValueError, OSError) as exc:
                # URLError and HTTPError are OSError subclasses.
                last_error = exc
                logger.warning(
                    "OpenAI request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    self.model,
                    exc,
                )
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * (attempt + 1))
        raise ModelClientError(f"model request failed after {self.max_retries + 1} attempt(s): {last_error}")

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        raw_payload = json.dumps(payload).encode("utf-8")
        req = request.Request(
            url=url,
            data=raw_payload,
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"OpenAI API request failed: {raw_error[:500]}",
                exc.headers,
                None,
            ) from exc
        return json.loads(body)

    @staticmethod
    def _extract_content(response_json: dict[str, Any]) -> str:
        choices = response_json.get("choices", [])
        if not choices:
            raise MalformedModelOutput("response did not contain choices")

        message = choices[0].get("message", {})
        content = message.get("content", "")
        if isinstance(content, str) and content.strip():
            return content
        if isinstance(content, list):
            text_segments: list[str] = []
            for item in content:
                if isinstance(item, dict):
                    text = item.get("text")
                    if isinstance(text, str):
                        text_segments.append(text)
            merged = "".join(text_segments).strip()
            if merged:
                return merged
        raise MalformedModelOutput("response content could not be parsed as text")


def parse_decision_payload(text: str) -> dict[str, Any]:
    """Pull the decision object out of model text (fenced, bare, or wrapped in prose).

    Returns a dict with an "action" key. A bare action object (one with a "type")
    is accepted and wrapped.
    """
    candidates: list[str] = []
    fenced = _FENCED_JSON.search(text)
    if fenced:
        candidates.append(fenced.group(1))
    stripped = text.strip()
    candidates.append(stripped)
    start, end = stripped.find("{"), stripped.rfind("}")
    if 0 <= start < end:
        candidates.append(stripped[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        if isinstance(parsed.get("action"), dict):
            return parsed
        if "type" in parsed:
            return {"thought": parsed.pop("thought", ""), "action": parsed}
        raise MalformedModelOutput("JSON object has neither an action nor a type")
    raise MalformedModelOutput("no JSON object found in model output")


def build_decision_client(settings: Settings) -> OpenAIDecisionClient:
    api_key = settings.resolved_openai_api_key()
    if not api_key:
        raise RuntimeError(
            "No model API key configured. Set POCKET_AGENT_OPENAI_API_KEY or OPENAI_API_KEY."
        )
    return OpenAIDecisionClient(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        timeout_s=settings.llm_timeout_s,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
        max_tokens=settings.llm_max_tokens,
        history_window=settings.history_window,
    )
