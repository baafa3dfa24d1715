"""Per-workspace configuration.

Settings live in an optional ``.ghost-comments.yaml`` at the workspace root.
Keys may be given either in snake_case or with the camelCase names used by
editor settings::

    filename: .ghost-comments.json
    maxFileSize: 5242880
    maxCommentLength: 500
    author: alice
    searchRange: 15        # 0 or negative searches the whole file
    autoSyncOnSave: true
    sortOrder: date        # alpha | date
"""

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

CONFIG_FILENAME = ".ghost-comments.yaml"
AUTHOR_ENV_VAR = "GHOST_COMMENTS_AUTHOR"


class ConfigError(ValueError):
    """Raised when the configuration file cannot be parsed or validated."""


class GhostConfig(BaseModel):
    """Settings consumed by the store, the anchoring engine and the front ends.

    The sidecar ``filename`` is checked by the store when it resolves the
    sidecar location, not here.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    filename: str = ".ghost-comments.json"
    max_file_size: int = Field(default=5242880, gt=0, alias="maxFileSize")
    max_comment_length: int = Field(default=500, gt=0, alias="maxCommentLength")
    author: str | None = None
    search_range: int = Field(default=15, alias="searchRange")
    auto_sync: bool = Field(default=False, alias="autoSyncOnSave")
    sort_order: Literal["alpha", "date"] = Field(default="alpha", alias="sortOrder")


def load_config(workspace_root: Path | None = None) -> GhostConfig:
    """
    Load configuration for a workspace.

    Args:
        workspace_root: Directory holding ``.ghost-comments.yaml``; None for defaults

    Returns:
        GhostConfig with file values applied and the author env override

    Raises:
        ConfigError: If the file is not valid YAML or holds invalid values
    """
    data: dict = {}

    if workspace_root is not None:
        config_path = Path(workspace_root) / CONFIG_FILENAME
        if config_path.is_file():
            try:
                loaded = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e
            if loaded is None:
                loaded = {}
            if not isinstance(loaded, dict):
                raise ConfigError(f"{config_path} must contain a mapping of settings")
            data = loaded

    env_author = os.environ.get(AUTHOR_ENV_VAR)
    if env_author:
        data = {**data, "author": env_author}

    try:
        return GhostConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
