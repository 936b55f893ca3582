from __future__ import annotations

import asyncio

import httpx

from ..errors import ConfigStoreError, SessionNotFound, SlackBridgeError
from ..infrastructure.integrations.slack.slack_gateway import SlackGateway
from ..infrastructure.integrations.slack.slack_rate_limiter import SlidingWindowRateLimiter
from ..infrastructure.integrations.slack.slack_registry import WorkspaceRegistry
from ..infrastructure.oauth.callback_server import AuthorizationFlow, ListenerFactory, OAuthCallbackServer
from ..infrastructure.tls.local_certificates import LocalCertificateProvider
from ..observability.logging import get_logger
from ..repositories.oauth_apps_repo import OAuthAppsRepo
from ..repositories.user_tokens_repo import UserTokenStore
from ..repositories.workspace_config_repo import WorkspaceConfigRepo
from ..schemas import UnreadConversation, Workspace
from ..settings import Settings, settings as default_settings


log = get_logger("workspace_service")


class WorkspaceService:
    """
    Owns every per-process collaborator: sessions, rate windows, gateway,
    persisted documents and the OAuth callback server.

    The registry is the source of truth for what can be called; the config
    document is what gets re-registered on the next start.
    """

    def __init__(
        self,
        *,
        registry: WorkspaceRegistry,
        gateway: SlackGateway,
        config_repo: WorkspaceConfigRepo,
        oauth_apps: OAuthAppsRepo,
        token_store: UserTokenStore,
        oauth_server: OAuthCallbackServer,
    ):
        self._registry = registry
        self._gateway = gateway
        self._config_repo = config_repo
        self._oauth_apps = oauth_apps
        self._token_store = token_store
        self._oauth = oauth_server
        self._auth_tasks: set[asyncio.Task] = set()

    @classmethod
    def from_settings(
        cls,
        s: Settings | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
        listener_factory: ListenerFactory | None = None,
    ) -> "WorkspaceService":
        s = s or default_settings
        http = http_client or httpx.AsyncClient(timeout=s.slack_http_timeout_s)
        registry = WorkspaceRegistry(http_client=http, api_base_url=s.slack_api_base_url)
        limiter = SlidingWindowRateLimiter(
            max_requests=s.rate_limit_max_requests,
            window_s=s.rate_limit_window_s,
            poll_interval_s=s.rate_limit_poll_interval_s,
        )
        token_store = UserTokenStore(s.user_tokens_path)
        return cls(
            registry=registry,
            gateway=SlackGateway(registry, limiter, default_retry_after_s=s.throttle_default_retry_after_s),
            config_repo=WorkspaceConfigRepo(s.config_path),
            oauth_apps=OAuthAppsRepo(s.oauth_apps_path),
            token_store=token_store,
            oauth_server=OAuthCallbackServer(
                token_store,
                LocalCertificateProvider(s.certificate_path, s.private_key_path),
                http_client=http,
                listener_factory=listener_factory,
                settings=s,
            ),
        )

    @property
    def gateway(self) -> SlackGateway:
        return self._gateway

    @property
    def oauth_server(self) -> OAuthCallbackServer:
        return self._oauth

    def load_persisted(self) -> int:
        """Register every workspace in the config document; returns how many."""
        workspaces = self._config_repo.list()
        for ws in workspaces:
            self._registry.register(ws)
        log.info("workspaces_loaded", count=len(workspaces))
        return len(workspaces)

    def _restore(self, workspace_id: str, previous: Workspace | None) -> None:
        if previous is not None:
            self._registry.register(previous)
        else:
            self._registry.unregister(workspace_id)

    async def add_workspace(self, workspace: Workspace) -> Workspace:
        """Register, verify the token with Slack, then persist."""
        previous = self._registry.get_workspace(workspace.id)
        self._registry.register(workspace)
        try:
            await self._gateway.verify_connection(workspace.id)
        except SlackBridgeError as e:
            self._restore(workspace.id, previous)
            raise SlackBridgeError(
                message="Failed to connect to Slack workspace. Please check your token.",
                workspace_id=workspace.id,
                code=e.code,
                retryable=e.retryable,
                cause=e,
            ) from e
        try:
            self._config_repo.add(workspace)
        except ConfigStoreError:
            self._restore(workspace.id, previous)
            raise
        log.info("workspace_added", workspace_id=workspace.id, token_type=workspace.token_type)
        return workspace

    def remove_workspace(self, workspace_id: str) -> Workspace:
        stored = self._config_repo.get(workspace_id)
        live = self._registry.unregister(workspace_id)
        removed = stored or live
        if removed is None:
            raise SessionNotFound(
                message=f"Workspace {workspace_id} not found",
                workspace_id=workspace_id,
                code="workspace_not_found",
            )
        if stored is not None:
            self._config_repo.remove(workspace_id)
        self._token_store.remove(workspace_id)
        log.info("workspace_removed", workspace_id=workspace_id)
        return removed

    def list_workspaces(self) -> list[Workspace]:
        return self._config_repo.list()

    def workspace_name(self, workspace_id: str) -> str:
        ws = self._registry.get_workspace(workspace_id)
        return ws.name if ws else workspace_id

    # ---- OAuth ----

    async def start_authentication(
        self,
        workspace_id: str,
        workspace_name: str,
        *,
        user_only: bool = True,
        scopes: list[str] | None = None,
    ) -> str:
        """
        Start an OAuth flow and return the URL the user must open.

        Completion happens in the background: once the callback succeeds the
        workspace is registered with the user token and persisted.
        """
        creds = self._oauth_apps.get_credentials(workspace_id)
        if user_only:
            flow = await self._oauth.start_user_only_flow(
                workspace_id, creds.client_id, creds.client_secret, user_scopes=scopes
            )
        else:
            flow = await self._oauth.start_flow(workspace_id, creds.client_id, creds.client_secret, scopes=scopes)

        task = asyncio.create_task(self._complete_authentication(flow, workspace_name))
        self._auth_tasks.add(task)
        task.add_done_callback(self._auth_tasks.discard)
        return flow.auth_url

    async def _complete_authentication(self, flow: AuthorizationFlow, workspace_name: str) -> Workspace | None:
        try:
            result = await flow.wait()
        except SlackBridgeError as e:
            log.warning(
                "authentication_failed",
                workspace_id=flow.workspace_id,
                error=str(e),
                error_code=e.code,
            )
            return None

        workspace = Workspace(
            id=flow.workspace_id,
            name=workspace_name,
            token=result.access_token,
            team_id=result.team_id,
            token_type="user",
            user_id=result.user_id,
        )
        self._registry.register(workspace)
        try:
            self._config_repo.add(workspace)
        except ConfigStoreError as e:
            log.error("authentication_persist_failed", workspace_id=workspace.id, error=str(e))
            return workspace
        log.info("authentication_completed", workspace_id=workspace.id, user_id=workspace.user_id)
        return workspace

    async def wait_for_authentications(self) -> None:
        """Wait for every background authentication to settle."""
        if self._auth_tasks:
            await asyncio.gather(*list(self._auth_tasks), return_exceptions=True)

    # ---- aggregation ----

    async def unread_across(self, workspace_id: str | None = None) -> list[UnreadConversation]:
        """Unread heuristic for one or all workspaces; failing workspaces are skipped."""
        if workspace_id:
            ids = [workspace_id] if workspace_id in self._registry else []
        else:
            ids = self._registry.workspace_ids()
        if not ids:
            raise SessionNotFound(message="No workspaces found", workspace_id=workspace_id, code="no_workspaces")

        results = await asyncio.gather(
            *(self._gateway.get_all_unread_conversations(i) for i in ids),
            return_exceptions=True,
        )
        out: list[UnreadConversation] = []
        for wid, res in zip(ids, results):
            if isinstance(res, BaseException):
                if not isinstance(res, Exception):
                    raise res
                log.warning("unread_workspace_skipped", workspace_id=wid, error=str(res) or type(res).__name__)
                continue
            out.extend(res)
        return out

    async def aclose(self) -> None:
        await self._oauth.aclose()
        await self.wait_for_authentications()
        await self._registry.aclose()
