"""Per-step screenshot files kept for auditing a session after the fact."""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from pathlib import Path

from ..config.settings import Settings

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^a-zA-Z0-9._-]+")


class ScreenshotStore:
    """Writes one PNG per step and keeps only the newest `max_count` files."""

    def __init__(self, root: Path, max_count: int = 400) -> None:
        self.root = Path(root)
        self.max_count = max(1, max_count)

    @classmethod
    def from_settings(cls, settings: Settings) -> ScreenshotStore | None:
        if not settings.save_step_screenshots:
            return None
        return cls(settings.resolved_screenshots_dir(), settings.screenshot_max_count)

    def save(self, png: bytes, *, session_id: str, step: int, current_app: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(tz=UTC).strftime("%Y%m%dT%H%M%S%fZ")
        app = _safe_name(current_app or "unknown")
        path = self.root / f"{stamp}-{_safe_name(session_id)}-step-{step:03d}-{app}.png"
        path.write_bytes(png)
        self.prune()
        return str(path)

    def prune(self) -> int:
        """Delete the oldest files beyond the cap; returns how many were removed."""
        # File names start with a UTC timestamp, so name order is age order.
        files = sorted(self.root.glob("*.png"), key=lambda item: item.name)
        extra = files[: max(0, len(files) - self.max_count)]
        for path in extra:
            path.unlink(missing_ok=True)
        if extra:
            logger.info("screenshots event=pruned removed=%d kept=%d", len(extra), self.max_count)
        return len(extra)


def _safe_name(text: str) -> str:
    return _UNSAFE_NAME.sub("_", text)[:48]
