from __future__ import annotations

from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from ..errors import ConfigStoreError
from ..schemas import StoredUserToken
from .json_documents import read_json_document, write_json_document


_TOKENS = TypeAdapter(dict[str, StoredUserToken])


class UserTokenStore:
    """`user-tokens.json`: `{workspaceId: {accessToken, userId, teamId, refreshToken?, expiresAt?}}`."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def load(self) -> dict[str, StoredUserToken]:
        raw = read_json_document(self._path)
        if raw is None:
            return {}
        try:
            return _TOKENS.validate_python(raw)
        except ValidationError as e:
            raise ConfigStoreError(message="Failed to load user tokens", code="invalid_tokens", cause=e) from e

    def _save(self, tokens: dict[str, StoredUserToken]) -> None:
        write_json_document(
            self._path,
            _TOKENS.dump_python(tokens, mode="json", by_alias=True, exclude_none=True),
            private=True,
        )

    def get(self, workspace_id: str) -> StoredUserToken | None:
        return self.load().get(workspace_id)

    def put(self, workspace_id: str, token: StoredUserToken) -> None:
        tokens = self.load()
        tokens[workspace_id] = token
        self._save(tokens)

    def remove(self, workspace_id: str) -> bool:
        tokens = self.load()
        if tokens.pop(workspace_id, None) is None:
            return False
        self._save(tokens)
        return True
