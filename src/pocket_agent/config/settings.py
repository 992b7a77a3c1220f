"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_HOME = Path.home() / ".pocket-agent"

DEFAULT_ALLOWED_SCRIPT_COMMANDS = [
    "adb",
    "echo",
    "cat",
    "ls",
    "grep",
    "sed",
    "awk",
    "head",
    "tail",
    "sleep",
    "date",
    "pwd",
    "wc",
]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "pocket-agent"
    log_level: str = "INFO"
    state_dir: Path = DEFAULT_HOME / "state"
    workspace_dir: Path = DEFAULT_HOME / "workspace"

    # Relay server side.
    relay_host: str = "127.0.0.1"
    relay_port: int = Field(default=8787, ge=0, le=65535)
    relay_public_base_url: str = ""
    relay_api_key: str = ""
    relay_state_file: Path | None = None
    relay_artifacts_dir: Path | None = None
    relay_min_timeout_s: int = Field(default=1, ge=1)
    relay_max_timeout_s: int = Field(default=1800, ge=1)
    relay_sweep_interval_s: float = Field(default=5.0, ge=0.0)
    relay_max_artifact_bytes: int = Field(default=6_000_000, ge=1)

    # Bridge / client side. Empty relay_base_url means "start the local relay stack".
    human_auth_enabled: bool = True
    relay_base_url: str = ""
    human_auth_timeout_s: int = Field(default=300, ge=1)
    human_auth_min_timeout_s: int = Field(default=1, ge=1)
    human_auth_max_timeout_s: int = Field(default=1800, ge=1)
    poll_interval_s: float = Field(default=1.0, gt=0.0)
    poll_interval_max_s: float = Field(default=5.0, gt=0.0)
    relay_request_timeout_s: float = Field(default=10.0, gt=0.0)

    tunnel_provider: Literal["none", "ngrok"] = "none"
    ngrok_executable: str = "ngrok"
    ngrok_authtoken: str = ""
    ngrok_api_base_url: str = "http://127.0.0.1:4040"
    ngrok_startup_timeout_s: float = Field(default=20.0, gt=0.0)

    max_steps: int = Field(default=50, ge=1)
    loop_delay_s: float = Field(default=0.4, ge=0.0)
    history_window: int = Field(default=8, ge=1)
    device_id: str | None = None
    return_home_on_task_end: bool = True
    adb_executable: str = "adb"
    adb_timeout_s: float = Field(default=30.0, gt=0.0)

    save_step_screenshots: bool = True
    screenshots_dir: Path | None = None
    screenshot_max_count: int = Field(default=400, ge=1)

    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    llm_max_tokens: int = Field(default=1024, ge=16)
    openai_api_key: str = ""

    script_enabled: bool = True
    script_timeout_s: int = Field(default=60, ge=1)
    script_max_output_chars: int = Field(default=4000, ge=100)
    script_allowed_commands: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_SCRIPT_COMMANDS)
    )

    model_config = SettingsConfigDict(
        env_prefix="POCKET_AGENT_",
        extra="ignore",
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_relay_state_file(self) -> Path:
        return self.relay_state_file or self.state_dir / "human-auth-relay" / "requests.json"

    def resolved_relay_artifacts_dir(self) -> Path:
        return self.relay_artifacts_dir or self.state_dir / "human-auth-relay" / "artifacts"

    def bridge_artifacts_dir(self) -> Path:
        return self.state_dir / "human-auth-artifacts"

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_screenshots_dir(self) -> Path:
        return self.screenshots_dir or self.state_dir / "screenshots"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
