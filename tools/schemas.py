"""Tool argument models, published JSON schemas and dispatch maps.

Each tool's arguments are a distinct pydantic model; the JSON schema sent to the
model is generated from that model, so dispatch-time validation and the
published contract are the same thing.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from pydantic import BaseModel, Field

from tools._common import ToolResult
from tools.external_ops import run_command
from tools.file_ops import create_file_or_folder, delete_file_or_folder, edit_file, read_file, write_file
from tools.search_ops import get_dir_tree, get_lint_errors, list_directory, search_files


class ApprovalType(str, Enum):
    NONE = "none"
    EDITS = "edits"
    TERMINAL = "terminal"
    DANGEROUS = "dangerous"


# ---------------------------------------------------------------------------
# Argument variants
# ---------------------------------------------------------------------------

class ReadFileArgs(BaseModel):
    path: str = Field(description="File path, relative to the workspace root")
    start_line: Optional[int] = Field(default=None, description="First line to read (1-indexed)")
    end_line: Optional[int] = Field(default=None, description="Last line to read (inclusive)")


class ListDirectoryArgs(BaseModel):
    path: str = Field(default=".", description="Directory path")


class GetDirTreeArgs(BaseModel):
    path: str = Field(default=".", description="Root directory of the tree")
    max_depth: int = Field(default=3, description="Maximum depth (capped at 5)")


class SearchFilesArgs(BaseModel):
    pattern: str = Field(description="Text or regex to search for (case-insensitive)")
    path: str = Field(default=".", description="Directory to search in")
    is_regex: bool = Field(default=False, description="Treat pattern as a regular expression")
    file_pattern: Optional[str] = Field(default=None, description="File name glob, e.g. *.py")


class EditFileArgs(BaseModel):
    path: str = Field(description="File to edit")
    search_replace_blocks: str = Field(
        description=(
            "One or more blocks of the form:\n"
            "<<<<<<< SEARCH\n<exact existing text>\n=======\n<replacement>\n>>>>>>> REPLACE"
        )
    )


class WriteFileArgs(BaseModel):
    path: str = Field(description="File to create or overwrite")
    content: str = Field(description="Complete file content")


class CreateFileOrFolderArgs(BaseModel):
    path: str = Field(description="Path to create; a trailing / creates a folder")
    content: Optional[str] = Field(default=None, description="Initial file content")


class DeleteFileOrFolderArgs(BaseModel):
    path: str = Field(description="File or folder to delete")
    recursive: bool = Field(default=False, description="Delete non-empty folders")


class RunCommandArgs(BaseModel):
    command: str = Field(description="Shell command to run")
    cwd: Optional[str] = Field(default=None, description="Working directory for the command")
    timeout: int = Field(default=30, description="Timeout in seconds")


class GetLintErrorsArgs(BaseModel):
    path: str = Field(description="File to check")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_model: Type[BaseModel]
    approval_type: ApprovalType = ApprovalType.NONE

    @property
    def parameters(self) -> Dict[str, Any]:
        return _schema_for(self.args_model)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}


def _schema_for(model: Type[BaseModel]) -> Dict[str, Any]:
    schema = model.model_json_schema()
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    return schema


TOOL_DEFINITIONS: List[ToolDefinition] = [
    ToolDefinition(
        "read_file",
        "Read a file with line numbers. Use start_line/end_line to read a window of a large file.",
        ReadFileArgs,
    ),
    ToolDefinition("list_directory", "List the entries of a directory.", ListDirectoryArgs),
    ToolDefinition(
        "get_dir_tree",
        "Show the directory tree. Build output, VCS and dependency folders are skipped.",
        GetDirTreeArgs,
    ),
    ToolDefinition(
        "search_files",
        "Search file contents line by line (case-insensitive). Optionally filter by file name glob.",
        SearchFilesArgs,
    ),
    ToolDefinition(
        "edit_file",
        "Edit an existing file with SEARCH/REPLACE blocks. Read the file first; SEARCH text must match.",
        EditFileArgs,
        ApprovalType.EDITS,
    ),
    ToolDefinition("write_file", "Create or completely overwrite a file.", WriteFileArgs, ApprovalType.EDITS),
    ToolDefinition(
        "create_file_or_folder",
        "Create an empty file, a file with content, or a folder (path ending in /).",
        CreateFileOrFolderArgs,
        ApprovalType.EDITS,
    ),
    ToolDefinition(
        "delete_file_or_folder",
        "Delete a file or folder.",
        DeleteFileOrFolderArgs,
        ApprovalType.DANGEROUS,
    ),
    ToolDefinition(
        "run_command",
        "Run a shell command in the workspace and return its exit code and output.",
        RunCommandArgs,
        ApprovalType.TERMINAL,
    ),
    ToolDefinition("get_lint_errors", "Check a file for syntax errors.", GetLintErrorsArgs),
]

TOOL_DEFINITIONS_BY_NAME: Dict[str, ToolDefinition] = {t.name: t for t in TOOL_DEFINITIONS}

TOOL_IMPLEMENTATIONS: Dict[str, Callable[..., ToolResult]] = {
    "read_file": read_file,
    "list_directory": list_directory,
    "get_dir_tree": get_dir_tree,
    "search_files": search_files,
    "edit_file": edit_file,
    "write_file": write_file,
    "create_file_or_folder": create_file_or_folder,
    "delete_file_or_folder": delete_file_or_folder,
    "run_command": run_command,
    "get_lint_errors": get_lint_errors,
}

READ_ONLY_TOOLS = frozenset({"read_file", "list_directory", "get_dir_tree", "search_files", "get_lint_errors"})
WRITE_TOOLS = frozenset({"edit_file", "write_file", "create_file_or_folder", "delete_file_or_folder"})
TOOLS_REQUIRING_APPROVAL = frozenset(
    t.name for t in TOOL_DEFINITIONS if t.approval_type is not ApprovalType.NONE
)
