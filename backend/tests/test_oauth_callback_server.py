from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from conftest import FakeCertificates, ManualClock, RecordingSleep, make_settings
from slackbridge.errors import (
    AuthorizationError,
    AuthorizationTimeout,
    CallbackPortBusy,
    TokenExchangeFailed,
    TokenVerificationFailed,
)
from slackbridge.infrastructure.oauth.callback_server import DEFAULT_SCOPES, OAuthCallbackServer
from slackbridge.repositories.user_tokens_repo import UserTokenStore


def _server(tmp_path, fake_slack, listener_factory, **kw) -> OAuthCallbackServer:
    s = make_settings(tmp_path, **kw.pop("settings", {}))
    return OAuthCallbackServer(
        UserTokenStore(s.user_tokens_path),
        FakeCertificates(tmp_path),
        http_client=fake_slack.client(),
        listener_factory=listener_factory,
        settings=s,
        **kw,
    )


async def _callback(server: OAuthCallbackServer, path: str = "/oauth/callback", **params) -> httpx.Response:
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(transport=transport, base_url="https://localhost:3001") as client:
        return await client.get(path, params=params)


def _state(flow) -> str:
    return httpx.URL(flow.auth_url).params["state"]


def _grant_ok(fake_slack, *, authed_user: dict | None = None, **top) -> None:
    body = {"ok": True, **top}
    if authed_user is not None:
        body["authed_user"] = authed_user
    fake_slack.on("oauth.v2.access", body)
    fake_slack.on("auth.test", {"ok": True, "user_id": "U1", "team_id": "T1", "user": "alice"})


@pytest.mark.asyncio
async def test_user_only_authorization_url(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)

    flow = await server.start_user_only_flow("acme", "cid", "secret")

    url = httpx.URL(flow.auth_url)
    assert url.host == "slack.test"
    assert url.params["client_id"] == "cid"
    assert url.params["scope"] == ""
    assert url.params["user_scope"] == ",".join(DEFAULT_SCOPES)
    assert url.params["redirect_uri"] == "https://localhost:3001/oauth/callback"
    assert len(url.params["state"]) >= 16
    assert "secret" not in flow.auth_url
    assert listener_factory.bound == [("127.0.0.1", 3001)]
    await server.aclose()


@pytest.mark.asyncio
async def test_success_exchanges_verifies_and_persists_token(tmp_path, fake_slack, listener_factory):
    _grant_ok(fake_slack, authed_user={"id": "U1", "access_token": "xoxp-1", "expires_in": 3600})
    server = _server(tmp_path, fake_slack, listener_factory, clock=ManualClock(1_000.0))
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, code="the-code", state=_state(flow))

    assert r.status_code == 200
    assert "Authentication Successful!" in r.text
    assert "alice" in r.text
    result = await flow.wait()
    assert (result.access_token, result.user_id, result.team_id) == ("xoxp-1", "U1", "T1")

    exchange = fake_slack.calls_to("oauth.v2.access")[0].args
    assert exchange == {
        "client_id": "cid",
        "client_secret": "secret",
        "code": "the-code",
        "redirect_uri": "https://localhost:3001/oauth/callback",
    }
    assert fake_slack.calls_to("auth.test")[0].authorization == "Bearer xoxp-1"

    stored = json.loads((tmp_path / "user-tokens.json").read_text())
    assert stored["acme"] == {"accessToken": "xoxp-1", "userId": "U1", "teamId": "T1", "expiresAt": 4_600_000}
    assert listener_factory.last.shutdown_requests == 1
    assert server.pending_workspace_id is None


@pytest.mark.asyncio
async def test_access_denied_rejects_and_closes_listener(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, error="access_denied", state=_state(flow))

    assert r.status_code == 400
    assert "access_denied" in r.text
    with pytest.raises(AuthorizationError) as ei:
        await flow.wait()
    assert ei.value.code == "access_denied"
    assert listener_factory.last.shutdown_requests == 1
    assert fake_slack.calls == []


@pytest.mark.asyncio
async def test_missing_code_rejects(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, state=_state(flow))

    assert r.status_code == 400
    with pytest.raises(AuthorizationError) as ei:
        await flow.wait()
    assert ei.value.code == "no_code"
    assert listener_factory.last.shutdown_requests == 1


@pytest.mark.asyncio
async def test_unknown_state_rejects_without_exchange(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, code="the-code", state="forged")

    assert r.status_code == 400
    with pytest.raises(AuthorizationError) as ei:
        await flow.wait()
    assert ei.value.code == "invalid_state"
    assert fake_slack.count("oauth.v2.access") == 0


@pytest.mark.asyncio
async def test_exchange_failure_returns_500(tmp_path, fake_slack, listener_factory):
    fake_slack.on("oauth.v2.access", {"ok": False, "error": "invalid_code"})
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, code="stale", state=_state(flow))

    assert r.status_code == 500
    with pytest.raises(TokenExchangeFailed) as ei:
        await flow.wait()
    assert ei.value.code == "invalid_code"
    assert listener_factory.last.shutdown_requests == 1


@pytest.mark.asyncio
async def test_user_only_flow_requires_user_token(tmp_path, fake_slack, listener_factory):
    fake_slack.on("oauth.v2.access", {"ok": True, "access_token": "xoxb-bot"})
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, code="c", state=_state(flow))

    assert r.status_code == 500
    with pytest.raises(TokenExchangeFailed) as ei:
        await flow.wait()
    assert ei.value.code == "no_access_token"


@pytest.mark.asyncio
async def test_bot_flow_falls_back_to_top_level_token(tmp_path, fake_slack, listener_factory):
    _grant_ok(fake_slack, access_token="xoxb-bot")
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_flow("acme", "cid", "secret")
    assert httpx.URL(flow.auth_url).params["scope"] == ",".join(DEFAULT_SCOPES)
    assert "user_scope" not in httpx.URL(flow.auth_url).params

    r = await _callback(server, code="c", state=_state(flow))

    assert r.status_code == 200
    assert (await flow.wait()).access_token == "xoxb-bot"


@pytest.mark.asyncio
async def test_verification_failure_stores_nothing(tmp_path, fake_slack, listener_factory):
    fake_slack.on("oauth.v2.access", {"ok": True, "authed_user": {"id": "U1", "access_token": "xoxp-1"}})
    fake_slack.on("auth.test", {"ok": False, "error": "invalid_auth"})
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, code="c", state=_state(flow))

    assert r.status_code == 500
    with pytest.raises(TokenVerificationFailed):
        await flow.wait()
    assert not (tmp_path / "user-tokens.json").exists()


@pytest.mark.asyncio
async def test_listener_torn_down_once_and_late_callbacks_are_refused(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    await _callback(server, error="access_denied", state=_state(flow))
    late = await _callback(server, code="c", state=_state(flow))

    assert late.status_code == 410
    assert listener_factory.last.shutdown_requests == 1
    with pytest.raises(AuthorizationError):
        await flow.wait()


@pytest.mark.asyncio
async def test_other_paths_are_404(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    r = await _callback(server, path="/favicon.ico")

    assert r.status_code == 404
    assert server.pending_workspace_id == "acme"
    await server.aclose()
    with pytest.raises(AuthorizationError):
        await flow.wait()


@pytest.mark.asyncio
async def test_second_flow_while_pending_is_refused(tmp_path, fake_slack, listener_factory):
    server = _server(tmp_path, fake_slack, listener_factory)
    first = await server.start_user_only_flow("acme", "cid", "secret")

    with pytest.raises(CallbackPortBusy):
        await server.start_user_only_flow("other", "cid", "secret")

    await _callback(server, error="access_denied", state=_state(first))
    with pytest.raises(AuthorizationError):
        await first.wait()

    second = await server.start_user_only_flow("other", "cid", "secret")
    assert second.workspace_id == "other"
    assert len(listener_factory.listeners) == 2
    assert listener_factory.listeners[0].closed_waits == 1
    await server.aclose()
    with pytest.raises(AuthorizationError):
        await second.wait()


@pytest.mark.asyncio
async def test_busy_port_fails_start(tmp_path, fake_slack, busy_listener_factory):
    server = _server(tmp_path, fake_slack, busy_listener_factory)

    with pytest.raises(CallbackPortBusy):
        await server.start_user_only_flow("acme", "cid", "secret")
    assert server.pending_workspace_id is None


@pytest.mark.asyncio
async def test_flow_times_out_and_tears_down(tmp_path, fake_slack, listener_factory):
    sleep = RecordingSleep()
    server = _server(
        tmp_path,
        fake_slack,
        listener_factory,
        settings={"OAUTH_FLOW_TIMEOUT_S": 120},
        sleep=sleep,
    )
    flow = await server.start_user_only_flow("acme", "cid", "secret")

    with pytest.raises(AuthorizationTimeout):
        await asyncio.wait_for(flow.wait(), timeout=1)
    assert sleep.delays == [120.0]
    assert listener_factory.last.shutdown_requests == 1
    assert server.pending_workspace_id is None
