"""
Tool definitions and implementations for the agent.
Each tool has a typed argument model, a generated JSON schema and an
implementation function. Tools use a Backend abstraction for file/command
operations.
"""

from tools._common import ToolResult  # noqa: F401
from tools.gitignore import invalidate_gitignore_cache  # noqa: F401
from tools.file_ops import (  # noqa: F401
    read_file,
    write_file,
    edit_file,
    create_file_or_folder,
    delete_file_or_folder,
    parse_search_replace_blocks,
    apply_search_replace_blocks,
)
from tools.search_ops import (  # noqa: F401
    list_directory,
    get_dir_tree,
    search_files,
    get_lint_errors,
)
from tools.external_ops import run_command  # noqa: F401
from tools.schemas import (  # noqa: F401
    ApprovalType,
    ToolDefinition,
    TOOL_DEFINITIONS,
    TOOL_IMPLEMENTATIONS,
    TOOLS_REQUIRING_APPROVAL,
    READ_ONLY_TOOLS,
    WRITE_TOOLS,
)
from tools.dispatch import (  # noqa: F401
    execute_tool,
    get_tool_definitions,
    get_tool_approval_type,
    needs_approval,
)
