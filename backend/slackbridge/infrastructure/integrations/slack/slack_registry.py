from __future__ import annotations

import threading

import httpx

from ....errors import SessionNotFound
from ....observability.logging import get_logger
from ....schemas import Workspace
from .slack_session import SlackSession


log = get_logger("slack_registry")


class WorkspaceRegistry:
    """
    One SlackSession per workspace id.

    Re-registering an id replaces its session (last registration wins).
    Callers already holding the old session finish against it; new lookups
    get the new one. Tokens are held in memory only and never logged.
    """

    def __init__(self, *, http_client: httpx.AsyncClient, api_base_url: str):
        self._http = http_client
        self._api_base_url = api_base_url
        self._sessions: dict[str, SlackSession] = {}
        self._lock = threading.Lock()

    @property
    def http_client(self) -> httpx.AsyncClient:
        return self._http

    def register(self, workspace: Workspace) -> SlackSession:
        session = SlackSession(workspace, http_client=self._http, api_base_url=self._api_base_url)
        with self._lock:
            replaced = workspace.id in self._sessions
            self._sessions[workspace.id] = session
        log.info(
            "workspace_registered",
            workspace_id=workspace.id,
            token_type=workspace.token_type,
            replaced=replaced,
        )
        return session

    def lookup(self, workspace_id: str) -> SlackSession:
        with self._lock:
            session = self._sessions.get(workspace_id)
        if session is None:
            raise SessionNotFound(
                message=f"No client found for workspace: {workspace_id}",
                workspace_id=workspace_id,
                code="session_not_found",
            )
        return session

    def unregister(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            session = self._sessions.pop(workspace_id, None)
        if session is None:
            return None
        log.info("workspace_unregistered", workspace_id=workspace_id)
        return session.workspace

    def get_workspace(self, workspace_id: str) -> Workspace | None:
        with self._lock:
            session = self._sessions.get(workspace_id)
        return session.workspace if session else None

    def workspace_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions.keys())

    def __contains__(self, workspace_id: object) -> bool:
        with self._lock:
            return workspace_id in self._sessions

    async def aclose(self) -> None:
        await self._http.aclose()
