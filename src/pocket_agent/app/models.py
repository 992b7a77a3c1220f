"""Pydantic models shared by the relay, bridge, task loop, and trace store.

Beginner terms used in this file:
- Relay record: the server-side copy of one human-auth request (token hashes only).
- Artifact payload: what the approval page submits with a decision (text, geo, image).
- Artifact ref: what the relay stores and returns after validating that payload.
- Discriminator: the field pydantic reads to pick one model out of a union.
"""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from .actions import Capability

# Request lifecycle on the relay. Only pending -> terminal, exactly once.
HumanAuthStatus = Literal["pending", "approved", "rejected", "timeout"]
TerminalStatus = Literal["approved", "rejected", "timeout"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"approved", "rejected", "timeout"})

# Task lifecycle owned by the execution loop.
TaskStatus = Literal["running", "finished_ok", "finished_failed", "stopped"]

ArtifactKind = Literal["text", "geo", "image"]

MAX_TEXT_ARTIFACT_CHARS = 4000


class TextArtifactPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["text"] = "text"
    value: str = Field(min_length=1, max_length=MAX_TEXT_ARTIFACT_CHARS)


class GeoArtifactPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["geo"] = "geo"
    lat: float = Field(ge=-90.0, le=90.0)
    lon: float = Field(ge=-180.0, le=180.0)


class ImageArtifactPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["image"] = "image"
    mime_type: str = Field(pattern=r"^image/[A-Za-z0-9.+-]+$")
    # Standard base64 of the file bytes; decoded and size-checked by the relay store.
    base64: str = Field(min_length=1)


ArtifactPayload = Annotated[
    Union[TextArtifactPayload, GeoArtifactPayload, ImageArtifactPayload],
    Field(discriminator="kind"),
]


class ArtifactRef(BaseModel):
    """Stored form of a delegation artifact: inline for text/geo, a file path for images."""

    kind: ArtifactKind
    value: str | None = None
    lat: float | None = None
    lon: float | None = None
    path: str | None = None
    mime_type: str | None = None
    size_bytes: int | None = None


class RelayRecord(BaseModel):
    """One human-auth request as persisted in the relay state file."""

    model_config = ConfigDict(extra="ignore")

    request_id: str
    capability: Capability = "unknown"
    instruction: str
    reason: str = ""
    task: str = ""
    session_id: str
    step: int = 0
    current_app: str = ""
    # Agent-side path of the screen the model saw when it asked; metadata only.
    screenshot_path: str | None = None
    created_at: datetime
    expires_at: datetime
    status: HumanAuthStatus = "pending"
    note: str = ""
    decided_at: datetime | None = None
    # "human", "operator", or "timeout" once terminal.
    decided_by: str | None = None
    artifact: ArtifactRef | None = None
    open_token_hash: str
    poll_token_hash: str


class CreateHumanAuthRequest(BaseModel):
    """Request body for POST /v1/human-auth/requests."""

    model_config = ConfigDict(extra="forbid")

    capability: Capability = "unknown"
    instruction: str = Field(min_length=1, max_length=4000)
    reason: str = ""
    task: str = ""
    session_id: str = Field(min_length=1)
    step: int = Field(default=0, ge=0)
    current_app: str = ""
    timeout_s: int | None = Field(default=None, ge=1)
    screenshot_path: str | None = None
    # Overrides the relay's configured public base URL for the returned open_url.
    public_base_url: str | None = None


class CreateHumanAuthResponse(BaseModel):
    request_id: str
    open_url: str
    poll_token: str
    expires_at: datetime


class ResolveHumanAuthRequest(BaseModel):
    """Decision body for the resolve and override routes."""

    model_config = ConfigDict(extra="forbid")

    decision: Literal["approve", "reject"]
    note: str = Field(default="", max_length=1000)
    artifact: ArtifactPayload | None = None


class HumanAuthContext(BaseModel):
    """What the approval page shows. Never includes token hashes."""

    request_id: str
    capability: Capability
    instruction: str
    reason: str
    task: str
    session_id: str
    step: int
    current_app: str
    created_at: datetime
    expires_at: datetime
    status: HumanAuthStatus
    note: str = ""
    decided_at: datetime | None = None


class HumanAuthStatusResponse(BaseModel):
    """Response body for the poll route."""

    request_id: str
    status: HumanAuthStatus
    expires_at: datetime
    decided_at: datetime | None = None
    note: str = ""
    artifact: ArtifactRef | None = None


class HumanAuthSummary(BaseModel):
    """Operator listing row and per-task summary line."""

    request_id: str
    capability: Capability
    status: HumanAuthStatus
    session_id: str = ""
    step: int = 0
    message: str = ""
    created_at: datetime | None = None
    expires_at: datetime | None = None
    decided_at: datetime | None = None
    has_artifact: bool = False
    screenshot_path: str | None = None


class HumanAuthRequest(BaseModel):
    """What the task loop hands to the bridge when an action asks for a human."""

    task: str
    session_id: str
    step: int
    capability: Capability = "unknown"
    instruction: str
    reason: str = ""
    current_app: str = ""
    timeout_s: int = Field(ge=1)
    screenshot_path: str | None = None


class HumanAuthDecision(BaseModel):
    """Terminal outcome observed by the bridge."""

    request_id: str
    approved: bool
    status: TerminalStatus
    message: str = ""
    decided_at: datetime | None = None
    # Local file for image artifacts (downloaded from the relay).
    artifact_path: str | None = None
    artifact: ArtifactRef | None = None
    capability: Capability = "unknown"


class DelegationOutcome(BaseModel):
    """What applying an approved artifact did to the device."""

    request_id: str
    kind: ArtifactKind
    ok: bool
    result: str
    # Advisory follow-up for the model (image pushes only).
    template: str | None = None


class Observation(BaseModel):
    """Snapshot of the device handed to the model each step."""

    screenshot_png: bytes = b""
    current_app: str = "unknown"
    width: int = 0
    height: int = 0
    captured_at: datetime


class TaskSession(BaseModel):
    """Mutable per-task state owned by the execution loop."""

    session_id: str
    goal: str
    step: int = 0
    status: TaskStatus = "running"
    history: list[str] = Field(default_factory=list)
    human_auth: list[HumanAuthSummary] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None


class TaskResult(BaseModel):
    session_id: str
    ok: bool
    status: TaskStatus
    message: str
    steps: int
    human_auth: list[HumanAuthSummary] = Field(default_factory=list)
    trace_path: str | None = None
