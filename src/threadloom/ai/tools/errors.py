"""Error types tools raise to produce error-typed results."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

__all__ = ["ErrorCode", "ToolError", "ApprovalDeniedError", "InvalidToolInputError"]


class ErrorCode:
    """Constants for error codes used in tool results."""

    INVALID_INPUT = "invalid_input"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_NOT_ALLOWED = "tool_not_allowed"
    APPROVAL_DENIED = "approval_denied"
    OPERATION_CANCELLED = "operation_cancelled"
    SUBAGENT_FAILED = "subagent_failed"
    INTERNAL_ERROR = "internal_error"


@dataclass
class ToolError(Exception):
    """Base exception for failures a tool reports back to the model.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
        suggestion: Actionable guidance for recovery.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    suggestion: str = ""

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = dict(self.details)
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result

    def __str__(self) -> str:
        text = f"[{self.error_code}] {self.message}"
        if self.suggestion:
            text += f" {self.suggestion}"
        return text


@dataclass
class ApprovalDeniedError(ToolError):
    error_code: str = field(default=ErrorCode.APPROVAL_DENIED)
    message: str = field(default="The user did not approve this tool call")


@dataclass
class InvalidToolInputError(ToolError):
    error_code: str = field(default=ErrorCode.INVALID_INPUT)
    message: str = field(default="Tool input failed validation")
