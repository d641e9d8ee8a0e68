"""Slack Flow: relay Slack threads to Claude Code sessions."""

__version__ = "0.1.0"
