"""Pulse Identity: Sign in with Slack and channel-driven team directory sync."""

__version__ = "1.0.0"
