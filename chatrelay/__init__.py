"""Presence-aware chat relay and call-signaling server."""

__version__ = "0.1.0"
