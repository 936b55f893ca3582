from __future__ import annotations

import asyncio
import html
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from ...errors import (
    AuthorizationError,
    AuthorizationTimeout,
    CallbackPortBusy,
    SlackBridgeError,
    TokenExchangeFailed,
    TokenVerificationFailed,
)
from ...observability.logging import get_logger
from ...repositories.user_tokens_repo import UserTokenStore
from ...schemas import AuthResult, StoredUserToken, Workspace
from ...settings import Settings, settings as default_settings
from ..integrations.slack.slack_session import SlackSession
from ..tls.local_certificates import CertificatePair, LocalCertificateProvider
from .callback_listener import CallbackListener, TlsCallbackListener


log = get_logger("oauth")

DEFAULT_SCOPES: tuple[str, ...] = (
    "channels:history",
    "channels:read",
    "groups:history",
    "groups:read",
    "im:history",
    "im:read",
    "chat:write",
    "users:read",
    "team:read",
)

ListenerFactory = Callable[[FastAPI, str, int, CertificatePair], CallbackListener]


def _default_listener_factory(app: FastAPI, host: str, port: int, certificates: CertificatePair) -> CallbackListener:
    return TlsCallbackListener(app, host=host, port=port, certificates=certificates)


@dataclass
class AuthorizationFlow:
    """Handle returned to the caller: show `auth_url` to a human, then await `wait()`."""

    workspace_id: str
    auth_url: str
    result: asyncio.Future
    user_only: bool = True

    async def wait(self) -> AuthResult:
        return await self.result


@dataclass
class _PendingFlow:
    flow: AuthorizationFlow
    state: str
    client_id: str
    client_secret: str = field(repr=False)
    listener: CallbackListener | None = None
    watchdog: asyncio.Task | None = None
    exchanging: bool = False
    finished: bool = False


def _page(title: str, *lines: str) -> str:
    body = "".join(f"<p>{html.escape(line)}</p>" for line in lines)
    return f"<html><body><h1>{html.escape(title)}</h1>{body}</body></html>"


class OAuthCallbackServer:
    """
    Slack OAuth v2 authorization-code flow terminated on a local HTTPS listener.

    At most one flow is pending per server (and therefore per port). The
    `state` sent to Slack is random and bound to the workspace id in a side
    table. The listener is torn down exactly once per flow, on success,
    error, missing code, exchange/verification failure, timeout or close.
    """

    def __init__(
        self,
        token_store: UserTokenStore,
        certificates: LocalCertificateProvider,
        *,
        http_client: httpx.AsyncClient | None = None,
        listener_factory: ListenerFactory | None = None,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._settings = settings or default_settings
        self._token_store = token_store
        self._certificates = certificates
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=self._settings.slack_http_timeout_s)
        self._listener_factory = listener_factory or _default_listener_factory
        self._sleep = sleep
        self._clock = clock

        # state -> workspace id for the pending flow.
        self._states: dict[str, str] = {}
        self._pending: _PendingFlow | None = None
        self._last_listener: CallbackListener | None = None
        self._start_lock = asyncio.Lock()
        self.app = self._build_app()

    @property
    def redirect_uri(self) -> str:
        return self._settings.oauth_redirect_uri

    @property
    def callback_path(self) -> str:
        return "/" + str(self._settings.oauth_callback_path or "").lstrip("/")

    @property
    def pending_workspace_id(self) -> str | None:
        return self._pending.flow.workspace_id if self._pending else None

    def authorization_url(
        self,
        *,
        client_id: str,
        state: str,
        scopes: list[str] | tuple[str, ...],
        user_scopes: list[str] | tuple[str, ...] | None = None,
    ) -> str:
        params = {"client_id": client_id, "scope": ",".join(scopes)}
        if user_scopes is not None:
            params["user_scope"] = ",".join(user_scopes)
        params["redirect_uri"] = self.redirect_uri
        params["state"] = state
        return str(httpx.URL(self._settings.slack_authorize_url).copy_with(params=params))

    # ---- flow lifecycle ----

    async def start_flow(
        self,
        workspace_id: str,
        client_id: str,
        client_secret: str,
        scopes: list[str] | None = None,
    ) -> AuthorizationFlow:
        """Flow requesting app (bot) scopes; keeps the user token when Slack issues one."""
        return await self._start(
            workspace_id,
            client_id,
            client_secret,
            scopes=list(scopes or DEFAULT_SCOPES),
            user_scopes=None,
        )

    async def start_user_only_flow(
        self,
        workspace_id: str,
        client_id: str,
        client_secret: str,
        user_scopes: list[str] | None = None,
    ) -> AuthorizationFlow:
        """Flow for apps without a bot user: empty app scope, user scopes only."""
        return await self._start(
            workspace_id,
            client_id,
            client_secret,
            scopes=[],
            user_scopes=list(user_scopes or DEFAULT_SCOPES),
        )

    async def _start(
        self,
        workspace_id: str,
        client_id: str,
        client_secret: str,
        *,
        scopes: list[str],
        user_scopes: list[str] | None,
    ) -> AuthorizationFlow:
        port = int(self._settings.oauth_port)
        async with self._start_lock:
            if self._pending is not None:
                raise CallbackPortBusy(
                    message=(
                        f"An authorization flow for {self._pending.flow.workspace_id} "
                        f"is already waiting on port {port}"
                    ),
                    workspace_id=workspace_id,
                    code="flow_pending",
                )
            if self._last_listener is not None:
                await self._last_listener.wait_closed()
                self._last_listener = None

            pair = await asyncio.to_thread(self._certificates.ensure)
            state = secrets.token_urlsafe(24)
            flow = AuthorizationFlow(
                workspace_id=workspace_id,
                auth_url=self.authorization_url(
                    client_id=client_id, state=state, scopes=scopes, user_scopes=user_scopes
                ),
                result=asyncio.get_running_loop().create_future(),
                user_only=user_scopes is not None,
            )
            listener = self._listener_factory(self.app, self._settings.oauth_host, port, pair)
            await listener.start()

            pending = _PendingFlow(
                flow=flow,
                state=state,
                client_id=client_id,
                client_secret=client_secret,
                listener=listener,
            )
            self._pending = pending
            self._states[state] = workspace_id
            timeout = float(self._settings.oauth_flow_timeout_s or 0)
            if timeout > 0:
                pending.watchdog = asyncio.create_task(self._expire(pending, timeout))
            log.info("oauth_flow_started", workspace_id=workspace_id, port=port, user_only=flow.user_only)
            return flow

    async def _expire(self, pending: _PendingFlow, timeout_s: float) -> None:
        await self._sleep(timeout_s)
        self._finish(
            pending,
            exc=AuthorizationTimeout(
                message=f"Authorization was not completed within {int(timeout_s)}s",
                workspace_id=pending.flow.workspace_id,
                code="timeout",
            ),
        )

    def _finish(self, pending: _PendingFlow, *, result: AuthResult | None = None, exc: SlackBridgeError | None = None) -> None:
        if pending.finished:
            return
        pending.finished = True
        self._states.pop(pending.state, None)
        if self._pending is pending:
            self._pending = None
        if pending.watchdog is not None and pending.watchdog is not asyncio.current_task():
            pending.watchdog.cancel()
        if pending.listener is not None:
            pending.listener.request_shutdown()
            self._last_listener = pending.listener

        fut = pending.flow.result
        if exc is not None:
            log.warning(
                "oauth_flow_failed",
                workspace_id=pending.flow.workspace_id,
                error=str(exc),
                error_code=exc.code,
            )
            if not fut.done():
                fut.set_exception(exc)
        else:
            log.info("oauth_flow_completed", workspace_id=pending.flow.workspace_id)
            if not fut.done():
                fut.set_result(result)

    async def aclose(self) -> None:
        """Abort any pending flow and wait for the listener to go away."""
        if self._pending is not None:
            self._finish(
                self._pending,
                exc=AuthorizationError(
                    message="Authorization flow cancelled",
                    workspace_id=self._pending.flow.workspace_id,
                    code="cancelled",
                ),
            )
        if self._last_listener is not None:
            await self._last_listener.wait_closed()
            self._last_listener = None
        if self._owns_http:
            await self._http.aclose()

    # ---- callback handling ----

    def _build_app(self) -> FastAPI:
        app = FastAPI(title="Slack OAuth callback", docs_url=None, redoc_url=None, openapi_url=None)

        @app.get(self.callback_path, response_class=HTMLResponse)
        async def oauth_callback(
            code: str | None = None,
            state: str | None = None,
            error: str | None = None,
        ) -> HTMLResponse:
            status, body = await self.handle_callback(code=code, state=state, error=error)
            return HTMLResponse(body, status_code=status)

        return app

    async def handle_callback(self, *, code: str | None, state: str | None, error: str | None) -> tuple[int, str]:
        pending = self._pending
        if pending is None or pending.finished:
            return 410, _page("No authorization in progress", "Start the authorization again from your client.")
        if pending.exchanging:
            return 409, _page("Authorization in progress", "This authorization is already being completed.")

        ws = pending.flow.workspace_id
        if error:
            self._finish(pending, exc=AuthorizationError(message=f"OAuth error: {error}", workspace_id=ws, code=error))
            return 400, _page("Authorization failed", f"OAuth error: {error}")

        if not state or state != pending.state or self._states.get(state) != ws:
            self._finish(
                pending,
                exc=AuthorizationError(message="OAuth state mismatch", workspace_id=ws, code="invalid_state"),
            )
            return 400, _page("Authorization failed", "The authorization response did not match this request.")

        if not code:
            self._finish(
                pending,
                exc=AuthorizationError(message="No authorization code received", workspace_id=ws, code="no_code"),
            )
            return 400, _page("Authorization failed", "No authorization code received")

        pending.exchanging = True
        try:
            result, user_label = await self._exchange_and_verify(pending, code)
        except SlackBridgeError as e:
            self._finish(pending, exc=e)
            return 500, _page("Authentication failed", str(e))
        except Exception as e:
            log.exception("oauth_callback_unexpected_error", workspace_id=ws)
            self._finish(
                pending,
                exc=TokenExchangeFailed(message="Authentication failed", workspace_id=ws, code="internal_error", cause=e),
            )
            return 500, _page("Authentication failed", "Unexpected error while completing authorization.")

        self._finish(pending, result=result)
        return 200, _page(
            "Authentication Successful!",
            "You can now close this window and return to your client.",
            f"Workspace: {ws}",
            f"User: {user_label}",
        )

    async def _exchange_and_verify(self, pending: _PendingFlow, code: str) -> tuple[AuthResult, str]:
        ws = pending.flow.workspace_id
        base = str(self._settings.slack_api_base_url).rstrip("/")
        try:
            resp = await self._http.post(
                f"{base}/oauth.v2.access",
                data={
                    "client_id": pending.client_id,
                    "client_secret": pending.client_secret,
                    "code": code,
                    "redirect_uri": self.redirect_uri,
                },
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
            data: Any = resp.json() if resp.content else {}
        except (httpx.HTTPError, ValueError) as e:
            raise TokenExchangeFailed(
                message="Token exchange failed: request_failed", workspace_id=ws, code="request_failed", cause=e
            ) from e
        if not isinstance(data, dict) or not bool(data.get("ok")):
            err = str((data or {}).get("error") or "").strip() if isinstance(data, dict) else ""
            err = err or "invalid_response"
            raise TokenExchangeFailed(message=f"Token exchange failed: {err}", workspace_id=ws, code=err)

        raw_authed = data.get("authed_user")
        grant: dict[str, Any] = raw_authed if isinstance(raw_authed, dict) else {}
        if not grant.get("access_token") and not pending.flow.user_only:
            grant = data
        access_token = str(grant.get("access_token") or "").strip()
        if not access_token:
            raise TokenExchangeFailed(
                message="No user access token received", workspace_id=ws, code="no_access_token"
            )

        session = SlackSession(
            Workspace(id=ws, name=ws, token=access_token, team_id=""),
            http_client=self._http,
            api_base_url=base,
        )
        try:
            auth = await session.api_call("auth.test")
        except SlackBridgeError as e:
            raise TokenVerificationFailed(
                message="Failed to verify token", workspace_id=ws, code=e.code, cause=e
            ) from e
        user_id = str(auth.get("user_id") or "").strip()
        team_id = str(auth.get("team_id") or "").strip()
        if not user_id or not team_id:
            raise TokenVerificationFailed(
                message="Failed to verify token", workspace_id=ws, code="incomplete_identity"
            )

        expires_in = grant.get("expires_in")
        expires_at = (
            int((self._clock() + float(expires_in)) * 1000)
            if isinstance(expires_in, (int, float)) and expires_in > 0
            else None
        )
        self._token_store.put(
            ws,
            StoredUserToken(
                access_token=access_token,
                user_id=user_id,
                team_id=team_id,
                refresh_token=(str(grant.get("refresh_token") or "").strip() or None),
                expires_at=expires_at,
            ),
        )
        result = AuthResult(access_token=access_token, user_id=user_id, team_id=team_id)
        return result, str(auth.get("user") or user_id)
