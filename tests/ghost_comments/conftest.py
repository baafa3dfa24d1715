"""Shared fixtures for annotation store tests."""

from pathlib import Path

import pytest

from ghost_comments.config import GhostConfig
from ghost_comments.logging import Logger
from ghost_comments.storage import AnnotationStore
from ghost_comments.workspace import WorkspaceResolver


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """Workspace root that looks like a git checkout."""
    root = tmp_path / "repo"
    root.mkdir()
    (root / ".git").mkdir()
    return root.resolve()


@pytest.fixture
def config() -> GhostConfig:
    return GhostConfig()


@pytest.fixture
def store(workspace: Path, config: GhostConfig) -> AnnotationStore:
    return AnnotationStore(config, WorkspaceResolver([workspace]), logger=Logger(use_colors=False))


@pytest.fixture
def sidecar(workspace: Path) -> Path:
    return workspace / ".ghost-comments.json"


@pytest.fixture
def sample_file(workspace: Path) -> Path:
    """Ten-line source file under the workspace."""
    path = workspace / "src" / "app.py"
    path.parent.mkdir()
    path.write_text("\n".join(f"value_{i} = {i}" for i in range(1, 11)) + "\n", encoding="utf-8")
    return path
