"""Shared types and helpers for the tools package."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from backend import Backend, LocalBackend, PathEscapeError
from errors import ErrorCode


@dataclass
class ToolResult:
    """Result from executing a tool"""
    success: bool
    result: str
    error: Optional[str] = None
    meta: Optional[Dict[str, Any]] = None
    code: Optional[ErrorCode] = None

    def to_message_content(self) -> str:
        """Text handed back to the model as the tool-result message."""
        if self.success:
            return self.result or ""
        text = f"Error: {self.error or 'Unknown error'}"
        return f"{text}\n\n{self.result}" if self.result else text


def fail(error: str, code: ErrorCode = ErrorCode.UNKNOWN, result: str = "",
         meta: Optional[Dict[str, Any]] = None) -> ToolResult:
    return ToolResult(success=False, result=result, error=error, meta=meta, code=code)


def _require_path(path: str, name: str = "path") -> Optional[ToolResult]:
    """Return an error ToolResult if path is empty/whitespace; else None."""
    if not (path or "").strip():
        return fail(f"{name} is required", ErrorCode.INVALID_ARGUMENTS)
    return None


def _get_backend(backend: Optional[Backend], working_directory: str) -> Backend:
    return backend or LocalBackend(working_directory)


def _check_path(b: Backend, path: str) -> Optional[ToolResult]:
    """INVALID_PATH result if path resolves outside the workspace."""
    try:
        b._ensure_under_working(b.resolve_path(path))
    except PathEscapeError as e:
        return fail(str(e), ErrorCode.INVALID_PATH)
    return None


def _format_size(size: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}TB"
