"""Ignore rules for directory walks: fixed skip set, dotfile allow-list, .gitignore."""

import logging
from typing import Dict, Optional, Set

import pathspec

from backend import Backend

logger = logging.getLogger(__name__)

# Build artifacts, VCS metadata and dependency directories
_ALWAYS_SKIP_DIRS: Set[str] = {
    "node_modules", ".git", "dist", "build", ".next", "__pycache__", ".venv",
}

# Dotfiles that stay visible in listings
_ALLOWED_DOTFILES: Set[str] = {".env", ".gitignore"}

_gitignore_cache: Dict[str, Optional[pathspec.PathSpec]] = {}


def _is_hidden_or_skipped(name: str, is_dir: bool) -> bool:
    """True for names the listing tools never show."""
    if name in _ALWAYS_SKIP_DIRS:
        return True
    return name.startswith(".") and name not in _ALLOWED_DOTFILES


def _load_gitignore(backend: Backend) -> Optional[pathspec.PathSpec]:
    """Load and cache .gitignore patterns for the backend's project root.

    Returns a PathSpec matcher or None if no .gitignore exists.
    """
    root = backend.working_directory
    if root in _gitignore_cache:
        return _gitignore_cache[root]

    spec = None
    try:
        if backend.is_file(".gitignore"):
            content = backend.read_file(".gitignore")
            spec = pathspec.PathSpec.from_lines("gitwildmatch", content.splitlines())
    except OSError as e:
        logger.debug(f"Failed to read .gitignore: {e}")

    _gitignore_cache[root] = spec
    return spec


def _is_ignored(rel_path: str, name: str, is_dir: bool,
                gitignore_spec: Optional[pathspec.PathSpec]) -> bool:
    """Check if a path should be skipped by the fixed rules or .gitignore."""
    if _is_hidden_or_skipped(name, is_dir):
        return True
    if gitignore_spec:
        check_path = rel_path + "/" if is_dir else rel_path
        if gitignore_spec.match_file(check_path):
            return True
    return False


def invalidate_gitignore_cache(working_directory: Optional[str] = None) -> None:
    """Clear cached .gitignore specs. Call when .gitignore changes."""
    if working_directory:
        _gitignore_cache.pop(working_directory, None)
    else:
        _gitignore_cache.clear()
