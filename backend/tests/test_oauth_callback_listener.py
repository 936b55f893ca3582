from __future__ import annotations

import socket

import httpx
import pytest

from conftest import make_settings
from slackbridge.errors import AuthorizationError, CallbackPortBusy
from slackbridge.infrastructure.oauth.callback_server import OAuthCallbackServer
from slackbridge.infrastructure.tls.local_certificates import LocalCertificateProvider
from slackbridge.repositories.user_tokens_repo import UserTokenStore


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def _bind(port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind(("127.0.0.1", port))


def _server(tmp_path, port: int) -> OAuthCallbackServer:
    s = make_settings(tmp_path, OAUTH_CALLBACK_PORT=port)
    return OAuthCallbackServer(
        UserTokenStore(s.user_tokens_path),
        LocalCertificateProvider(s.certificate_path, s.private_key_path),
        settings=s,
    )


@pytest.mark.asyncio
async def test_tls_listener_serves_callback_and_releases_port(tmp_path):
    port = _free_port()
    first = _server(tmp_path, port)
    second = _server(tmp_path, port)
    try:
        flow = await first.start_user_only_flow("acme", "cid", "secret")

        with pytest.raises(CallbackPortBusy) as ei:
            await second.start_user_only_flow("beta", "cid", "secret")
        assert ei.value.code == "port_in_use"

        state = httpx.URL(flow.auth_url).params["state"]
        async with httpx.AsyncClient(verify=False) as client:
            r = await client.get(
                f"https://127.0.0.1:{port}/oauth/callback",
                params={"error": "access_denied", "state": state},
            )
        assert r.status_code == 400
        assert "OAuth error: access_denied" in r.text

        with pytest.raises(AuthorizationError) as ei:
            await flow.wait()
        assert ei.value.code == "access_denied"
    finally:
        await first.aclose()
        await second.aclose()

    _bind(port)
