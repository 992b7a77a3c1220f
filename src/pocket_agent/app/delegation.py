"""Map an approved delegation artifact onto one device side effect.

The mapping is by artifact kind, never by capability tag:
text -> one type action, geo -> one simulated-location fix, image -> one file push.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .actions import TypeTextAction
from .errors import AdapterActionFailure
from .models import DelegationOutcome, HumanAuthDecision

if TYPE_CHECKING:
    from .device import ExecutionTarget

logger = logging.getLogger(__name__)

DEVICE_IMPORT_DIR = "/sdcard/Download/PocketAgent"


def apply_artifact(
    decision: HumanAuthDecision, device: ExecutionTarget
) -> DelegationOutcome | None:
    artifact = decision.artifact
    if not decision.approved or artifact is None:
        return None

    request_id = decision.request_id
    try:
        if artifact.kind == "text":
            result = device.apply(
                TypeTextAction(text=artifact.value or "", reason=f"human_auth {request_id}")
            )
            return DelegationOutcome(
                request_id=request_id,
                kind="text",
                ok=True,
                result=f"typed {len(artifact.value or '')} chars ({result})",
            )

        if artifact.kind == "geo":
            if artifact.lat is None or artifact.lon is None:
                return _failed(decision, "geo artifact without coordinates")
            result = device.set_simulated_location(artifact.lat, artifact.lon)
            return DelegationOutcome(
                request_id=request_id,
                kind="geo",
                ok=True,
                result=f"location set lat={artifact.lat} lon={artifact.lon} ({result})",
            )

        local_path = decision.artifact_path or artifact.path
        if not local_path or not Path(local_path).is_file():
            return _failed(decision, "image artifact file is missing")
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%SZ")
        suffix = Path(local_path).suffix or ".bin"
        dest_path = f"{DEVICE_IMPORT_DIR}/{request_id}-{stamp}{suffix}"
        result = device.push_file(Path(local_path).read_bytes(), dest_path)
        return DelegationOutcome(
            request_id=request_id,
            kind="image",
            ok=True,
            result=f"pushed image to {dest_path} ({result})",
            template=(
                f"gallery_import path={dest_path} mime_type={artifact.mime_type or 'image/*'} "
                "hint=open the target app's photo picker and choose the newest image "
                "in Downloads/PocketAgent"
            ),
        )
    except AdapterActionFailure as exc:
        return _failed(decision, str(exc))
    except OSError as exc:
        return _failed(decision, f"could not read artifact: {exc}")


def _failed(decision: HumanAuthDecision, error: str) -> DelegationOutcome:
    kind = decision.artifact.kind if decision.artifact else "text"
    logger.warning(
        "delegation event=failed request_id=%s kind=%s error=%s",
        decision.request_id,
        kind,
        error,
    )
    return DelegationOutcome(
        request_id=decision.request_id,
        kind=kind,
        ok=False,
        result=f"failed error={error}",
    )
