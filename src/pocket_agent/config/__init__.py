"""Runtime configuration."""

from pocket_agent.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
