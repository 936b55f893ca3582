from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from ..errors import ConfigStoreError
from ..schemas import Workspace, WorkspaceConfig
from .json_documents import read_json_document, write_json_document


class WorkspaceConfigRepo:
    """
    `config.json`: `{"workspaces": [Workspace, ...]}`.

    Load-or-initialize-empty; every mutation rewrites the whole document.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> WorkspaceConfig:
        raw = read_json_document(self._path)
        if raw is None:
            cfg = WorkspaceConfig()
            self.save(cfg)
            return cfg
        try:
            return WorkspaceConfig.model_validate(raw)
        except ValidationError as e:
            raise ConfigStoreError(
                message="Failed to load Slack configuration", code="invalid_config", cause=e
            ) from e

    def save(self, config: WorkspaceConfig) -> None:
        write_json_document(
            self._path,
            config.model_dump(mode="json", by_alias=True, exclude_none=True),
            private=True,
        )

    def add(self, workspace: Workspace) -> None:
        """Insert or replace (by id) a workspace."""
        cfg = self.load()
        cfg.workspaces = [w for w in cfg.workspaces if w.id != workspace.id]
        cfg.workspaces.append(workspace)
        self.save(cfg)

    def remove(self, workspace_id: str) -> bool:
        cfg = self.load()
        kept = [w for w in cfg.workspaces if w.id != workspace_id]
        if len(kept) == len(cfg.workspaces):
            return False
        cfg.workspaces = kept
        self.save(cfg)
        return True

    def get(self, workspace_id: str) -> Workspace | None:
        for w in self.load().workspaces:
            if w.id == workspace_id:
                return w
        return None

    def list(self) -> list[Workspace]:
        return list(self.load().workspaces)
