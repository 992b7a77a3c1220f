"""Relay, bridge, device adapter, and task loop."""
