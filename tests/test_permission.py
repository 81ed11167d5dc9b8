from __future__ import annotations

import pytest

from claude_task.permission import ApprovalToolPermission, PermissionFormatError


def test_parse_valid_permission() -> None:
    permission = ApprovalToolPermission.parse("mcp__approvals__approve")
    assert permission.server == "approvals"
    assert permission.tool == "approve"
    assert permission.tool_name == "mcp__approvals__approve"
    assert str(permission) == "mcp__approvals__approve"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "mcp__server",
        "mcp__a__b__c",
        "tool__server__name",
        "mcp____tool",
        "mcp__server__",
        "mcp__my server__tool",
    ],
)
def test_parse_rejects_malformed_permissions(value: str) -> None:
    with pytest.raises(PermissionFormatError):
        ApprovalToolPermission.parse(value)


def test_format_error_is_value_error() -> None:
    with pytest.raises(ValueError):
        ApprovalToolPermission.parse("nope")
