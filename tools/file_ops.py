"""File operation tools: read, write, create, delete, edit."""

import logging
import os
import re
from typing import Any, Dict, List, Optional, Tuple

from backend import Backend
from errors import ErrorCode
from tools._common import ToolResult, _check_path, _get_backend, _require_path, fail
from tools.gitignore import invalidate_gitignore_cache

logger = logging.getLogger(__name__)

_SEARCH_REPLACE_RE = re.compile(
    r"<<<<<<< SEARCH\n(.*?)\n=======\n(.*?)\n>>>>>>> REPLACE", re.DOTALL
)


def _line_count(text: str) -> int:
    return len(text.split("\n"))


def _write_meta(path: str, old_content: str, new_content: str, is_new: bool) -> Dict[str, Any]:
    return {
        "filePath": path,
        "oldContent": old_content,
        "newContent": new_content,
        "linesAdded": _line_count(new_content),
        "linesRemoved": _line_count(old_content) if old_content else 0,
        "isNewFile": is_new,
    }


def _after_write(path: str, b: Backend) -> None:
    if os.path.basename(path) == ".gitignore":
        invalidate_gitignore_cache(b.working_directory)


def read_file(path: str, start_line: Optional[int] = None, end_line: Optional[int] = None,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Read a file, optionally a 1-indexed [start_line, end_line] window. Output is line-numbered."""
    err = _require_path(path)
    if err:
        return err
    try:
        b = _get_backend(backend, working_directory)
        err = _check_path(b, path)
        if err:
            return err
        full_path = b.resolve_path(path)
        if not b.is_file(path):
            return fail(f"File not found: {full_path}", ErrorCode.FILE_NOT_FOUND)

        lines = b.read_file(path).split("\n")
        total = len(lines)
        start = max(1, start_line) if start_line is not None else 1
        end = min(total, end_line) if end_line is not None else total
        selected = lines[start - 1:end]
        numbered = "\n".join(f"{start + i}: {line}" for i, line in enumerate(selected))
        return ToolResult(
            success=True,
            result=f"File: {full_path}\nLines {start}-{end} of {total}\n\n{numbered}",
        )
    except OSError as e:
        return fail(str(e), ErrorCode.FILE_READ)
    except Exception as e:
        return fail(str(e))


def write_file(path: str, content: str,
               backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Create a new file or completely overwrite an existing file."""
    err = _require_path(path)
    if err:
        return err
    b = _get_backend(backend, working_directory)
    err = _check_path(b, path)
    if err:
        return err
    full_path = b.resolve_path(path)
    try:
        is_new = not b.is_file(path)
        old_content = "" if is_new else b.read_file(path)
        parent = os.path.dirname(full_path)
        if parent:
            b.make_dir(parent)
        b.write_file(path, content)
    except OSError as e:
        return fail(f"Failed to write: {full_path} ({e})", ErrorCode.FILE_WRITE)
    _after_write(path, b)
    return ToolResult(
        success=True,
        result=f"{'Created' if is_new else 'Updated'} {full_path}",
        meta=_write_meta(full_path, old_content, content, is_new),
    )


def create_file_or_folder(path: str, content: Optional[str] = None,
                          backend: Optional[Backend] = None, working_directory: str = ".",
                          **kw: Any) -> ToolResult:
    """Create a file, or a folder when path ends with a separator."""
    err = _require_path(path)
    if err:
        return err
    is_folder = path.endswith("/") or path.endswith("\\")
    target = path.rstrip("/\\") if is_folder else path
    b = _get_backend(backend, working_directory)
    err = _check_path(b, target)
    if err:
        return err
    full_path = b.resolve_path(target)
    try:
        if is_folder:
            b.make_dir(target)
            return ToolResult(success=True, result=f"Created folder: {full_path}")
        parent = os.path.dirname(full_path)
        if parent:
            b.make_dir(parent)
        text = content or ""
        b.write_file(target, text)
    except OSError as e:
        kind = "folder" if is_folder else "file"
        return fail(f"Failed to create {kind}: {full_path} ({e})", ErrorCode.FILE_WRITE)
    _after_write(target, b)
    return ToolResult(
        success=True,
        result=f"Created file: {full_path}",
        meta=_write_meta(full_path, "", text, True),
    )


def delete_file_or_folder(path: str, recursive: bool = False,
                          backend: Optional[Backend] = None, working_directory: str = ".",
                          **kw: Any) -> ToolResult:
    """Delete a file or directory. Approval is the caller's job."""
    err = _require_path(path)
    if err:
        return err
    b = _get_backend(backend, working_directory)
    err = _check_path(b, path)
    if err:
        return err
    full_path = b.resolve_path(path)
    if not b.file_exists(path):
        return fail(f"File not found: {full_path}", ErrorCode.FILE_NOT_FOUND)
    try:
        if b.is_dir(path):
            b.remove_dir(path, recursive=recursive)
        else:
            b.remove_file(path)
    except OSError as e:
        hint = " (directory not empty; pass recursive=true)" if b.is_dir(path) and not recursive else ""
        return fail(f"Failed to delete: {full_path} ({e}){hint}", ErrorCode.FILE_WRITE)
    except ValueError as e:
        return fail(str(e), ErrorCode.INVALID_PATH)
    return ToolResult(success=True, result=f"Deleted: {full_path}")


def parse_search_replace_blocks(blocks: str) -> List[Tuple[str, str]]:
    """Extract (search, replace) pairs from SEARCH/REPLACE delimited text."""
    return [(m.group(1), m.group(2)) for m in _SEARCH_REPLACE_RE.finditer(blocks or "")]


def apply_search_replace_blocks(content: str, blocks: List[Tuple[str, str]]) -> Tuple[str, int, List[str]]:
    """Apply blocks in order. Returns (new_content, applied_count, errors).

    Each block tries an exact substring match first, then a window of the same
    line count compared with trailing whitespace stripped on every line.
    """
    new_content = content
    applied = 0
    errors: List[str] = []

    for search, replace in blocks:
        if search in new_content:
            new_content = new_content.replace(search, replace, 1)
            applied += 1
            continue

        search_lines = search.split("\n")
        normalized_search = [ln.rstrip() for ln in search_lines]
        lines = new_content.split("\n")
        window = len(search_lines)
        found = False
        for i in range(len(lines) - window + 1):
            if [ln.rstrip() for ln in lines[i:i + window]] == normalized_search:
                lines[i:i + window] = replace.split("\n")
                new_content = "\n".join(lines)
                applied += 1
                found = True
                break
        if not found:
            errors.append(f'Search block not found: "{search[:50]}..."')

    return new_content, applied, errors


def edit_file(path: str, search_replace_blocks: str,
              backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Apply one or more SEARCH/REPLACE blocks to an existing file."""
    err = _require_path(path)
    if err:
        return err
    b = _get_backend(backend, working_directory)
    err = _check_path(b, path)
    if err:
        return err
    full_path = b.resolve_path(path)
    if not b.is_file(path):
        return fail(f"File not found: {full_path}", ErrorCode.FILE_NOT_FOUND)

    blocks = parse_search_replace_blocks(search_replace_blocks)
    if not blocks:
        return fail("No valid SEARCH/REPLACE blocks found.", ErrorCode.INVALID_ARGUMENTS,
                    meta={"appliedCount": 0, "totalBlocks": 0, "errors": []})

    try:
        content = b.read_file(path)
    except OSError as e:
        return fail(str(e), ErrorCode.FILE_READ)

    new_content, applied, errors = apply_search_replace_blocks(content, blocks)
    if applied == 0:
        return fail(
            "No changes applied. Errors:\n" + "\n".join(errors),
            ErrorCode.EDIT_NO_MATCH,
            meta={"appliedCount": 0, "totalBlocks": len(blocks), "errors": errors},
        )

    try:
        b.write_file(path, new_content)
    except OSError as e:
        return fail(f"Failed to write: {full_path} ({e})", ErrorCode.FILE_WRITE)
    _after_write(path, b)

    old_lines, new_lines = _line_count(content), _line_count(new_content)
    summary = f"Applied {applied}/{len(blocks)} changes to {full_path}"
    if errors:
        summary += "\n" + "\n".join(errors)
    return ToolResult(
        success=True,
        result=summary,
        meta={
            "appliedCount": applied,
            "totalBlocks": len(blocks),
            "errors": errors,
            "filePath": full_path,
            "oldContent": content,
            "newContent": new_content,
            "linesAdded": max(0, new_lines - old_lines),
            "linesRemoved": max(0, old_lines - new_lines),
        },
    )
