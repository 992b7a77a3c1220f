"""Human-auth request state for the relay server.

Beginner terms:
- Open token: secret embedded in the approval URL; only lets a human view and resolve.
- Poll token: secret held by the bridge; only lets it read status and artifacts.
- Lazy timeout: a pending request past its expiry is flipped to `timeout` the
  next time anyone touches it, so no background job is required for correctness.
- Atomic write: write a temp file, then os.replace() it over the real file.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import os
import secrets
import tempfile
import threading
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from ..config.settings import Settings
from .errors import InvalidArtifact, InvalidOrExpiredToken, RequestNotFound
from .models import (
    ArtifactRef,
    CreateHumanAuthRequest,
    GeoArtifactPayload,
    ImageArtifactPayload,
    RelayRecord,
    ResolveHumanAuthRequest,
    TextArtifactPayload,
)

logger = logging.getLogger(__name__)

TIMEOUT_NOTE = "No decision before the request expired."

_IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/heic": "heic",
    "image/heif": "heif",
}


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def token_matches(token: str | None, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_token(token or ""), stored_hash)


def image_extension(mime_type: str) -> str:
    known = _IMAGE_EXTENSIONS.get(mime_type.lower())
    if known:
        return known
    subtype = mime_type.split("/", 1)[-1].lower()
    cleaned = "".join(ch for ch in subtype if ch.isalnum())
    return cleaned or "bin"


def advance(record: RelayRecord, now: datetime) -> RelayRecord:
    """Apply the time-based transition: pending past expiry becomes timeout.

    Pure function; terminal records come back unchanged so `decided_at` is
    written at most once.
    """
    if record.status != "pending" or now < record.expires_at:
        return record
    return record.model_copy(
        update={
            "status": "timeout",
            "decided_at": record.expires_at,
            "decided_by": "timeout",
            "note": TIMEOUT_NOTE,
        }
    )


@dataclass(frozen=True)
class IssuedRequest:
    """Create result. The plaintext tokens exist only here, never on disk."""

    record: RelayRecord
    open_token: str
    poll_token: str


class RelayStore:
    """Thread-safe, JSON-file-backed store of human-auth requests."""

    def __init__(
        self,
        state_file: Path,
        artifacts_dir: Path,
        *,
        min_timeout_s: int = 1,
        max_timeout_s: int = 1800,
        default_timeout_s: int = 300,
        max_artifact_bytes: int = 6_000_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if min_timeout_s > max_timeout_s:
            raise ValueError("min_timeout_s must not exceed max_timeout_s")
        self.state_file = Path(state_file)
        self.artifacts_dir = Path(artifacts_dir)
        self.min_timeout_s = min_timeout_s
        self.max_timeout_s = max_timeout_s
        self.default_timeout_s = default_timeout_s
        self.max_artifact_bytes = max_artifact_bytes
        self._clock = clock
        # Lock serializes every read-modify-write so the first valid decision wins.
        self._lock = threading.Lock()
        self._records: dict[str, RelayRecord] = self._load()

    @classmethod
    def from_settings(
        cls, settings: Settings, clock: Callable[[], datetime] = utc_now
    ) -> RelayStore:
        return cls(
            settings.resolved_relay_state_file(),
            settings.resolved_relay_artifacts_dir(),
            min_timeout_s=settings.relay_min_timeout_s,
            max_timeout_s=settings.relay_max_timeout_s,
            default_timeout_s=settings.human_auth_timeout_s,
            max_artifact_bytes=settings.relay_max_artifact_bytes,
            clock=clock,
        )

    def clamp_timeout(self, requested: int | None) -> int:
        value = self.default_timeout_s if requested is None else requested
        return max(self.min_timeout_s, min(self.max_timeout_s, int(value)))

    def create(self, body: CreateHumanAuthRequest) -> IssuedRequest:
        """Register a pending request and issue its two independent tokens."""
        now = self._clock()
        open_token = secrets.token_urlsafe(24)
        poll_token = secrets.token_urlsafe(24)
        while poll_token == open_token:
            poll_token = secrets.token_urlsafe(24)
        timeout_s = self.clamp_timeout(body.timeout_s)
        record = RelayRecord(
            request_id=f"auth-{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}",
            capability=body.capability,
            instruction=body.instruction,
            reason=body.reason,
            task=body.task,
            session_id=body.session_id,
            step=body.step,
            current_app=body.current_app,
            screenshot_path=body.screenshot_path,
            created_at=now,
            expires_at=now + timedelta(seconds=timeout_s),
            open_token_hash=hash_token(open_token),
            poll_token_hash=hash_token(poll_token),
        )
        with self._lock:
            self._records[record.request_id] = record
            self._persist()
        logger.info(
            "relay_request event=created request_id=%s session_id=%s capability=%s timeout_s=%d",
            record.request_id,
            record.session_id,
            record.capability,
            timeout_s,
        )
        return IssuedRequest(record=record, open_token=open_token, poll_token=poll_token)

    def get_for_open_token(self, request_id: str, token: str | None) -> RelayRecord:
        """Return the record for the approval page (any status, valid open token only)."""
        with self._lock:
            record = self._advance_locked(self._require(request_id))
        if not token_matches(token, record.open_token_hash):
            raise InvalidOrExpiredToken(request_id, "open token mismatch")
        return record

    def resolve(
        self, request_id: str, token: str | None, body: ResolveHumanAuthRequest
    ) -> RelayRecord:
        """Record a human decision. Raises InvalidOrExpiredToken without mutating on failure."""
        return self._decide(request_id, body, decided_by="human", open_token=token)

    def override(self, request_id: str, body: ResolveHumanAuthRequest) -> RelayRecord:
        """Operator decision through the bearer-gated path; no open token involved."""
        return self._decide(request_id, body, decided_by="operator", open_token=None)

    def poll(self, request_id: str, token: str | None) -> RelayRecord:
        """Status read for the bridge. Idempotent apart from the lazy timeout."""
        with self._lock:
            record = self._require(request_id)
            if not token_matches(token, record.poll_token_hash):
                raise InvalidOrExpiredToken(request_id, "poll token mismatch")
            return self._advance_locked(record)

    def read_artifact(self, request_id: str, token: str | None) -> tuple[bytes, str] | None:
        """Return (bytes, mime_type) of an image artifact, or None if there is none."""
        record = self.poll(request_id, token)
        artifact = record.artifact
        if artifact is None or artifact.kind != "image" or not artifact.path:
            return None
        path = Path(artifact.path)
        if not path.is_file():
            logger.warning(
                "relay_artifact event=missing request_id=%s path=%s", request_id, path
            )
            return None
        return path.read_bytes(), artifact.mime_type or "application/octet-stream"

    def list_records(self, status: str | None = None) -> list[RelayRecord]:
        with self._lock:
            self._sweep_locked()
            records = list(self._records.values())
        if status:
            records = [record for record in records if record.status == status]
        return sorted(records, key=lambda record: record.created_at)

    def sweep_expired(self) -> int:
        """Apply the timeout transition to every pending record; returns how many flipped."""
        with self._lock:
            return self._sweep_locked()

    def _decide(
        self,
        request_id: str,
        body: ResolveHumanAuthRequest,
        *,
        decided_by: str,
        open_token: str | None,
    ) -> RelayRecord:
        approved = body.decision == "approve"
        # Decode before taking the lock so a bad artifact never touches state.
        image_bytes = None
        if approved and isinstance(body.artifact, ImageArtifactPayload):
            image_bytes = self._decode_image(body.artifact)

        with self._lock:
            record = self._advance_locked(self._require(request_id))
            if decided_by == "human" and not token_matches(open_token, record.open_token_hash):
                raise InvalidOrExpiredToken(request_id, "open token mismatch")
            if record.status != "pending":
                raise InvalidOrExpiredToken(request_id, f"request is already {record.status}")

            now = self._clock()
            artifact = None
            if approved and body.artifact is not None:
                artifact = self._store_artifact(request_id, body, image_bytes, now)
            updated = record.model_copy(
                update={
                    "status": "approved" if approved else "rejected",
                    "decided_at": now,
                    "decided_by": decided_by,
                    "note": body.note,
                    "artifact": artifact,
                }
            )
            self._records[request_id] = updated
            self._persist()
        logger.info(
            "relay_request event=resolved request_id=%s status=%s decided_by=%s artifact=%s",
            request_id,
            updated.status,
            decided_by,
            artifact.kind if artifact else "none",
        )
        return updated

    def _decode_image(self, payload: ImageArtifactPayload) -> bytes:
        try:
            data = base64.b64decode(payload.base64, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidArtifact(f"image artifact is not valid base64: {exc}") from exc
        if not data:
            raise InvalidArtifact("image artifact is empty")
        if len(data) > self.max_artifact_bytes:
            raise InvalidArtifact(
                f"image artifact is {len(data)} bytes; limit is {self.max_artifact_bytes}"
            )
        return data

    def _store_artifact(
        self,
        request_id: str,
        body: ResolveHumanAuthRequest,
        image_bytes: bytes | None,
        now: datetime,
    ) -> ArtifactRef:
        payload = body.artifact
        if isinstance(payload, TextArtifactPayload):
            return ArtifactRef(kind="text", value=payload.value)
        if isinstance(payload, GeoArtifactPayload):
            return ArtifactRef(kind="geo", lat=payload.lat, lon=payload.lon)
        if not isinstance(payload, ImageArtifactPayload):
            raise InvalidArtifact(f"unsupported artifact payload: {type(payload).__name__}")
        if image_bytes is None:
            image_bytes = self._decode_image(payload)
        stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
        path = self.artifacts_dir / f"{request_id}-{stamp}.{image_extension(payload.mime_type)}"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image_bytes)
        return ArtifactRef(
            kind="image",
            path=str(path),
            mime_type=payload.mime_type,
            size_bytes=len(image_bytes),
        )

    def _require(self, request_id: str) -> RelayRecord:
        record = self._records.get(request_id)
        if record is None:
            raise RequestNotFound(request_id)
        return record

    def _advance_locked(self, record: RelayRecord) -> RelayRecord:
        advanced = advance(record, self._clock())
        if advanced is not record:
            self._records[record.request_id] = advanced
            self._persist()
            logger.info("relay_request event=timeout request_id=%s", record.request_id)
        return advanced

    def _sweep_locked(self) -> int:
        now = self._clock()
        changed = 0
        for request_id, record in list(self._records.items()):
            advanced = advance(record, now)
            if advanced is not record:
                self._records[request_id] = advanced
                changed += 1
        if changed:
            self._persist()
            logger.info("relay_sweep event=timeout count=%d", changed)
        return changed

    def _load(self) -> dict[str, RelayRecord]:
        if not self.state_file.exists():
            return {}
        try:
            raw = json.loads(self.state_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("relay_state event=unreadable path=%s error=%s", self.state_file, exc)
            return {}
        if not isinstance(raw, list):
            logger.warning("relay_state event=unexpected_shape path=%s", self.state_file)
            return {}

        records: dict[str, RelayRecord] = {}
        for entry in raw:
            try:
                record = RelayRecord.model_validate(entry)
            except ValidationError as exc:
                logger.warning(
                    "relay_state event=skip_entry errors=%d", exc.error_count()
                )
                continue
            records[record.request_id] = record
        logger.info("relay_state event=loaded path=%s count=%d", self.state_file, len(records))
        return records

    def _persist(self) -> None:
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        payload = [record.model_dump(mode="json") for record in self._records.values()]
        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_file.parent, prefix=".requests-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self.state_file)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
