"""Approval tool permission parsing."""

from __future__ import annotations

from dataclasses import dataclass

from .errors import ClaudeTaskError


class PermissionFormatError(ClaudeTaskError, ValueError):
    """Raised when an approval tool permission string is malformed."""


@dataclass(frozen=True, slots=True)
class ApprovalToolPermission:
    """An MCP tool reference of the form ``mcp__<server>__<tool>``."""

    server: str
    tool: str

    @classmethod
    def parse(cls, value: str) -> "ApprovalToolPermission":
        if not value:
            raise PermissionFormatError("Approval tool permission must not be empty")
        if any(char.isspace() for char in value):
            raise PermissionFormatError(
                f"Approval tool permission '{value}' must not contain whitespace"
            )

        parts = value.split("__")
        if len(parts) != 3:
            raise PermissionFormatError(
                f"Approval tool permission '{value}' must have the form mcp__<server>__<tool>"
            )
        prefix, server, tool = parts
        if prefix != "mcp":
            raise PermissionFormatError(
                f"Approval tool permission '{value}' must start with 'mcp__'"
            )
        if not server or not tool:
            raise PermissionFormatError(
                f"Approval tool permission '{value}' has an empty server or tool name"
            )
        return cls(server=server, tool=tool)

    @property
    def tool_name(self) -> str:
        return f"mcp__{self.server}__{self.tool}"

    def __str__(self) -> str:
        return self.tool_name


__all__ = ["ApprovalToolPermission", "PermissionFormatError"]
