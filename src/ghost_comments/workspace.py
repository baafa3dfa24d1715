"""Workspace roots and workspace-relative paths.

The store keys annotations by a path relative to the workspace that owns the
file, always with forward slashes, and places one sidecar per workspace root.
"""

from collections.abc import Iterable
from pathlib import Path


def find_project_root(start_path: Path | None = None) -> Path:
    """
    Find the project root by looking for .git directory.

    Walks up the directory tree from start_path until finding a .git entry.

    Args:
        start_path: Starting directory for search (defaults to current working directory)

    Returns:
        Absolute path to project root

    Raises:
        ValueError: If no .git directory found in any parent directory
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    for parent in [current] + list(current.parents):
        git_path = parent / ".git"
        if git_path.exists() and (git_path.is_dir() or git_path.is_file()):
            return parent

    raise ValueError(f"No .git directory found in {start_path} or any parent directory.")


class WorkspaceResolver:
    """Maps absolute file locations to their owning workspace root."""

    def __init__(self, roots: Iterable[Path]) -> None:
        self.roots = [Path(root).resolve() for root in roots]

    def workspace_for(self, file: Path) -> Path | None:
        """Return the deepest workspace root containing ``file``, or None."""
        resolved = Path(file).resolve()
        owners = [root for root in self.roots if resolved == root or root in resolved.parents]
        if not owners:
            return None
        return max(owners, key=lambda root: len(root.parts))

    def relative_path(self, file: Path) -> str | None:
        """Return ``file`` relative to its workspace with POSIX separators, or None."""
        root = self.workspace_for(file)
        if root is None:
            return None
        return Path(file).resolve().relative_to(root).as_posix()

    def __repr__(self) -> str:
        return f"WorkspaceResolver({[str(root) for root in self.roots]})"
