"""Android automation agent with a human-authorization relay."""

__version__ = "0.1.0"
