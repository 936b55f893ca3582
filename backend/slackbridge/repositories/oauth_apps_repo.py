from __future__ import annotations

from pathlib import Path

from pydantic import ValidationError

from ..errors import ConfigurationMissing, ConfigStoreError
from ..schemas import OAuthAppCredentials
from .json_documents import read_json_document


class OAuthAppsRepo:
    """
    `oauth-config.json`: `{"apps": {workspaceId: {clientId, clientSecret}}}`.

    Maintained by hand; read-only here.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    def get_credentials(self, workspace_id: str) -> OAuthAppCredentials:
        raw = read_json_document(self._path)
        if raw is None:
            raise ConfigurationMissing(
                message=(
                    f"OAuth config not found at {self._path}. "
                    "Please create this file with your Slack app credentials."
                ),
                workspace_id=workspace_id,
                code="oauth_config_missing",
            )
        apps = raw.get("apps") if isinstance(raw, dict) else None
        entry = apps.get(workspace_id) if isinstance(apps, dict) else None
        if not isinstance(entry, dict):
            raise ConfigurationMissing(
                message=f"No OAuth app configured for workspace: {workspace_id}. Add it to {self._path}",
                workspace_id=workspace_id,
                code="oauth_app_missing",
            )
        try:
            return OAuthAppCredentials.model_validate(entry)
        except ValidationError as e:
            raise ConfigStoreError(
                message=f"OAuth app entry for {workspace_id} is incomplete",
                workspace_id=workspace_id,
                code="invalid_oauth_config",
                cause=e,
            ) from e
