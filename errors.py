"""
Error taxonomy shared by the adapter layer, the tool executor and the agent loop.
"""

import re
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorCode(str, Enum):
    UNKNOWN = "UNKNOWN"
    NETWORK = "NETWORK"
    TIMEOUT = "TIMEOUT"
    ABORTED = "ABORTED"

    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    FILE_ACCESS_DENIED = "FILE_ACCESS_DENIED"
    FILE_READ = "FILE_READ"
    FILE_WRITE = "FILE_WRITE"
    INVALID_PATH = "INVALID_PATH"

    EDIT_NO_MATCH = "EDIT_NO_MATCH"
    UNKNOWN_TOOL = "UNKNOWN_TOOL"
    INVALID_ARGUMENTS = "INVALID_ARGUMENTS"
    COMMAND_FAILED = "COMMAND_FAILED"

    API_KEY_INVALID = "API_KEY_INVALID"
    API_RATE_LIMIT = "API_RATE_LIMIT"
    API_CALL_FAILED = "API_CALL_FAILED"

    LLM_NO_RESPONSE = "LLM_NO_RESPONSE"
    LLM_PARSE_ERROR = "LLM_PARSE_ERROR"
    LLM_CONTEXT_TOO_LONG = "LLM_CONTEXT_TOO_LONG"
    LLM_UNSUPPORTED_MODEL = "LLM_UNSUPPORTED_MODEL"


class AppError(Exception):
    """Base error with a stable code for user-visible reporting"""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN,
                 retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.retryable = retryable
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "message": self.message,
            "code": self.code.value,
            "retryable": self.retryable,
        }
        if self.status is not None:
            data["status"] = self.status
        return data

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.code.value}: {self.message})"


class LLMError(AppError):
    """Error raised or reported by a model call"""

    @classmethod
    def from_status(cls, status: int, body: str = "") -> "LLMError":
        detail = body.strip()[:500] if body else ""
        suffix = f": {detail}" if detail else ""
        if status in (401, 403):
            return cls(f"Authentication failed ({status}){suffix}", ErrorCode.API_KEY_INVALID, False, status)
        if status == 404:
            return cls(f"Model or endpoint not found ({status}){suffix}", ErrorCode.LLM_UNSUPPORTED_MODEL, False, status)
        if status == 408:
            return cls(f"Request timed out ({status}){suffix}", ErrorCode.TIMEOUT, True, status)
        if status == 413:
            return cls(f"Request too large ({status}){suffix}", ErrorCode.LLM_CONTEXT_TOO_LONG, False, status)
        if status == 429:
            return cls(f"Rate limit exceeded ({status}){suffix}", ErrorCode.API_RATE_LIMIT, True, status)
        if status >= 500:
            return cls(f"Provider error ({status}){suffix}", ErrorCode.API_CALL_FAILED, True, status)
        return cls(f"API call failed ({status}){suffix}", ErrorCode.API_CALL_FAILED, False, status)


_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"timeout", r"timed out", r"ECONNRESET", r"ETIMEDOUT", r"ENOTFOUND",
        r"network", r"temporarily unavailable", r"rate limit",
        r"\b429\b", r"\b502\b", r"\b503\b",
    )
]


def is_retryable_message(text: str) -> bool:
    """Keyword check for transient failures reported only as text."""
    return any(p.search(text or "") for p in _RETRYABLE_PATTERNS)


def classify_exception(exc: BaseException) -> AppError:
    """Map an arbitrary exception from a model call onto the taxonomy."""
    if isinstance(exc, AppError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return LLMError(f"Request timed out: {exc}", ErrorCode.TIMEOUT, True)
    if isinstance(exc, httpx.TransportError):
        return LLMError(f"Network error: {exc}", ErrorCode.NETWORK, True)
    if isinstance(exc, httpx.HTTPStatusError):
        return LLMError.from_status(exc.response.status_code, exc.response.text)
    message = str(exc) or type(exc).__name__
    return AppError(message, ErrorCode.UNKNOWN, is_retryable_message(message))
