"""Shell command tool."""

import logging
from typing import Any, Optional

from backend import Backend
from errors import ErrorCode
from tools._common import ToolResult, _check_path, _get_backend, fail

logger = logging.getLogger(__name__)


def run_command(command: str, cwd: Optional[str] = None, timeout: int = 30,
                backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Execute a shell command. Succeeds iff the exit code is 0."""
    if not (command or "").strip():
        return fail("command is required", ErrorCode.INVALID_ARGUMENTS)
    b = _get_backend(backend, working_directory)
    run_cwd = cwd or "."
    err = _check_path(b, run_cwd)
    if err:
        return err
    full_cwd = b.resolve_path(run_cwd)
    try:
        stdout, stderr, rc = b.run_command(command, cwd=run_cwd, timeout=timeout)
    except OSError as e:
        return fail(f"Failed to run command: {e}", ErrorCode.COMMAND_FAILED)

    parts = [f"$ {command}"]
    if cwd:
        parts.append(f"(cwd: {full_cwd})")
    parts.append(f"Exit code: {rc}")
    parts.append("")
    body = stdout or ""
    if stderr:
        body += f"\nStderr:\n{stderr}"
    parts.append(body if body else "(No output)")
    output = "\n".join(parts)

    if rc == 0:
        return ToolResult(success=True, result=output, meta={"exitCode": rc})
    if rc == -1 and "timed out" in (stderr or ""):
        logger.warning(f"Command timed out after {timeout}s: {command}")
        return fail(f"Command timed out after {timeout}s", ErrorCode.TIMEOUT, result=output,
                    meta={"exitCode": rc})
    return fail(f"Command failed with exit code {rc}", ErrorCode.COMMAND_FAILED, result=output,
                meta={"exitCode": rc})
