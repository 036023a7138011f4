"""Tool execution dispatch and approval logic."""

import logging
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from backend import Backend
from errors import ErrorCode
from tools._common import ToolResult, fail
from tools.schemas import (
    TOOL_DEFINITIONS, TOOL_DEFINITIONS_BY_NAME, TOOL_IMPLEMENTATIONS,
    ApprovalType, ToolDefinition,
)

logger = logging.getLogger(__name__)


def _format_validation_error(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def execute_tool(
    name: str,
    inputs: Optional[Dict[str, Any]],
    working_directory: str = ".",
    backend: Optional[Backend] = None,
) -> ToolResult:
    """Validate inputs against the tool's argument model and run it. Never raises."""
    definition = TOOL_DEFINITIONS_BY_NAME.get(name)
    impl = TOOL_IMPLEMENTATIONS.get(name)
    if not definition or not impl:
        return fail(f"Unknown tool: {name}", ErrorCode.UNKNOWN_TOOL)
    try:
        args = definition.args_model.model_validate(inputs or {})
    except ValidationError as e:
        return fail(f"Invalid arguments for {name}: {_format_validation_error(e)}", ErrorCode.INVALID_ARGUMENTS)
    try:
        return impl(**args.model_dump(), working_directory=working_directory, backend=backend)
    except Exception as e:
        logger.exception(f"Tool execution error: {name}")
        return fail(f"Tool error: {e}")


def get_tool_definitions(names: Optional[Iterable[str]] = None) -> List[ToolDefinition]:
    if names is None:
        return list(TOOL_DEFINITIONS)
    wanted = set(names)
    return [t for t in TOOL_DEFINITIONS if t.name in wanted]


def get_tool_approval_type(tool_name: str) -> ApprovalType:
    definition = TOOL_DEFINITIONS_BY_NAME.get(tool_name)
    return definition.approval_type if definition else ApprovalType.NONE


def needs_approval(tool_name: str, auto_approve: Iterable[str] = ()) -> bool:
    """Check if a tool call must wait for the user, given auto-approved approval types."""
    approval = get_tool_approval_type(tool_name)
    if approval is ApprovalType.NONE:
        return False
    return approval.value not in set(auto_approve)
