"""Base error type shared by claude-task modules."""

from __future__ import annotations


class ClaudeTaskError(RuntimeError):
    """Base class for errors surfaced to CLI and MCP callers."""


__all__ = ["ClaudeTaskError"]
