"""Search and navigation tools: list_directory, get_dir_tree, search_files, get_lint_errors."""

import logging
import os
import re
import shlex
import sys
from typing import Any, Dict, List, Optional

from backend import Backend
from errors import ErrorCode
from tools._common import ToolResult, _check_path, _format_size, _get_backend, _require_path, fail
from tools.gitignore import _is_hidden_or_skipped, _is_ignored, _load_gitignore

logger = logging.getLogger(__name__)

_MAX_LIST_ENTRIES = 100
_MAX_TREE_DEPTH = 5
_MAX_FILES_SCANNED = 50
_MAX_FILES_REPORTED = 20
_MAX_MATCHES_PER_FILE = 5


def _visible_entries(b: Backend, path: str) -> List[Dict[str, Any]]:
    return [
        e for e in b.list_dir(path)
        if not _is_hidden_or_skipped(e["name"], e["type"] == "directory")
    ]


def list_directory(path: str = ".",
                   backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """List files and directories at a path."""
    try:
        b = _get_backend(backend, working_directory)
        target = path or "."
        err = _check_path(b, target)
        if err:
            return err
        full_path = b.resolve_path(target)
        if not b.is_dir(target):
            return fail(f"Directory not found: {full_path}", ErrorCode.FILE_NOT_FOUND)

        entries = _visible_entries(b, target)
        if not entries:
            return ToolResult(success=True, result=f"Directory empty: {full_path}")

        lines = []
        for e in entries[:_MAX_LIST_ENTRIES]:
            if e["type"] == "directory":
                lines.append(f"[dir]  {e['name']}/")
            else:
                lines.append(f"[file] {e['name']} ({_format_size(e.get('size', 0))})")
        output = f"Contents of {full_path} ({len(entries)} items):\n" + "\n".join(lines)
        if len(entries) > _MAX_LIST_ENTRIES:
            output += "\n...(truncated)"
        return ToolResult(success=True, result=output)
    except OSError as e:
        return fail(str(e), ErrorCode.FILE_READ)


def _build_tree(b: Backend, path: str, max_depth: int, depth: int = 0) -> List[Dict[str, Any]]:
    if depth >= max_depth:
        return []
    nodes = []
    for e in _visible_entries(b, path):
        is_dir = e["type"] == "directory"
        child = os.path.join(path, e["name"]) if path not in ("", ".") else e["name"]
        node: Dict[str, Any] = {"name": e["name"], "path": child, "isDirectory": is_dir}
        if is_dir and depth < max_depth - 1:
            node["children"] = _build_tree(b, child, max_depth, depth + 1)
        nodes.append(node)
    nodes.sort(key=lambda n: (not n["isDirectory"], n["name"].lower()))
    return nodes


def _render_tree(nodes: List[Dict[str, Any]], prefix: str = "") -> List[str]:
    lines = []
    for i, node in enumerate(nodes):
        last = i == len(nodes) - 1
        suffix = "/" if node["isDirectory"] else ""
        lines.append(f"{prefix}{'└── ' if last else '├── '}{node['name']}{suffix}")
        if node.get("children"):
            lines.extend(_render_tree(node["children"], prefix + ("    " if last else "│   ")))
    return lines


def get_dir_tree(path: str = ".", max_depth: int = 3,
                 backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Depth-bounded directory tree. Depth is capped at 5; depth <= 0 yields no nodes."""
    try:
        b = _get_backend(backend, working_directory)
        target = path or "."
        err = _check_path(b, target)
        if err:
            return err
        full_path = b.resolve_path(target)
        if not b.is_dir(target):
            return fail(f"Directory not found: {full_path}", ErrorCode.FILE_NOT_FOUND)

        depth = min(max_depth, _MAX_TREE_DEPTH)
        nodes = _build_tree(b, target, depth) if depth > 0 else []
        if not nodes:
            return ToolResult(success=True, result=f"Directory tree of {full_path}: (no entries)",
                              meta={"nodes": []})
        return ToolResult(
            success=True,
            result=f"Directory tree of {full_path}:\n" + "\n".join(_render_tree(nodes)),
            meta={"nodes": nodes},
        )
    except OSError as e:
        return fail(str(e), ErrorCode.FILE_READ)


def _glob_to_regex(file_pattern: str) -> "re.Pattern[str]":
    escaped = re.escape(file_pattern).replace(r"\*", ".*").replace(r"\?", ".")
    return re.compile(f"^{escaped}$", re.IGNORECASE)


def _iter_files(b: Backend, root: str, limit: int):
    """Breadth-first walk yielding relative file paths, honoring ignore rules."""
    gi = _load_gitignore(b)
    queue = [root]
    yielded = 0
    while queue and yielded < limit:
        current = queue.pop(0)
        for e in b.list_dir(current):
            child = os.path.join(current, e["name"]) if current not in ("", ".") else e["name"]
            is_dir = e["type"] == "directory"
            if _is_ignored(b.relative_path(child), e["name"], is_dir, gi):
                continue
            if is_dir:
                queue.append(child)
            else:
                yield child, e["name"]
                yielded += 1
                if yielded >= limit:
                    return


def search_files(pattern: str, path: str = ".", is_regex: bool = False,
                 file_pattern: Optional[str] = None,
                 backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Case-insensitive per-line search across files under path."""
    if not pattern:
        return fail("pattern is required", ErrorCode.INVALID_ARGUMENTS)
    try:
        regex = re.compile(pattern, re.IGNORECASE) if is_regex else None
    except re.error as e:
        return fail(f"Invalid regex {pattern!r}: {e}", ErrorCode.INVALID_ARGUMENTS)
    needle = pattern.lower()
    name_filter = _glob_to_regex(file_pattern) if file_pattern else None

    try:
        b = _get_backend(backend, working_directory)
        target = path or "."
        err = _check_path(b, target)
        if err:
            return err
        full_path = b.resolve_path(target)
        if not b.is_dir(target):
            return fail(f"Directory not found: {full_path}", ErrorCode.FILE_NOT_FOUND)

        candidates = (
            (rel, name) for rel, name in _iter_files(b, target, 10_000)
            if not name_filter or name_filter.match(name)
        )
        results = []
        for scanned, (rel, _name) in enumerate(candidates):
            if scanned >= _MAX_FILES_SCANNED:
                break
            try:
                content = b.read_file(rel)
            except OSError:
                continue
            matches = []
            for i, line in enumerate(content.split("\n")):
                hit = regex.search(line) if regex else needle in line.lower()
                if hit:
                    matches.append((i + 1, line.strip()[:100]))
                    if len(matches) >= _MAX_MATCHES_PER_FILE:
                        break
            if matches:
                results.append((b.relative_path(rel), matches))

        if not results:
            return ToolResult(success=True, result=f'No matches for "{pattern}" in {full_path}')

        out = [f"Found {len(results)} files with matches:", ""]
        for rel, matches in results[:_MAX_FILES_REPORTED]:
            out.append(f"{rel}:")
            out.extend(f"  Line {n}: {text}" for n, text in matches)
            out.append("")
        return ToolResult(success=True, result="\n".join(out).rstrip() + "\n")
    except OSError as e:
        return fail(str(e), ErrorCode.FILE_READ)


_LINT_COMMANDS = {
    ".py": shlex.quote(sys.executable) + " -m py_compile {path}",
    ".js": "node --check {path}",
    ".mjs": "node --check {path}",
    ".sh": "bash -n {path}",
    ".bash": "bash -n {path}",
    ".rb": "ruby -c {path}",
}


def get_lint_errors(path: str,
                    backend: Optional[Backend] = None, working_directory: str = ".", **kw: Any) -> ToolResult:
    """Run a syntax check chosen by file extension."""
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

        ext = os.path.splitext(path)[1].lower()
        template = _LINT_COMMANDS.get(ext)
        if not template:
            return ToolResult(success=True, result=f"No linter configured for {ext or 'extensionless'} files. Skipping.")

        stdout, stderr, rc = b.run_command(template.format(path=shlex.quote(full_path)), cwd=".", timeout=30)
        output = "\n".join(part.strip() for part in (stdout, stderr) if part and part.strip())
        if rc == 0:
            return ToolResult(success=True, result=output or f"No lint errors found in {full_path}")
        return ToolResult(success=True, result=f"[error] Lint check found issues in {full_path}\n{output}",
                          meta={"exitCode": rc})
    except OSError as e:
        return fail(str(e), ErrorCode.COMMAND_FAILED)
