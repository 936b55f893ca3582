from __future__ import annotations

import asyncio
import socket
from typing import Protocol

import uvicorn
from fastapi import FastAPI

from ...errors import CallbackPortBusy, SlackBridgeError
from ...observability.logging import get_logger
from ..tls.local_certificates import CertificatePair


log = get_logger("oauth_listener")

_STARTUP_POLL_S = 0.02


class CallbackListener(Protocol):
    async def start(self) -> None: ...

    def request_shutdown(self) -> None: ...

    async def wait_closed(self) -> None: ...


class TlsCallbackListener:
    """
    Short-lived HTTPS listener serving the callback app with uvicorn.

    The socket is bound here rather than by uvicorn so an occupied port
    surfaces as CallbackPortBusy instead of uvicorn exiting the process.
    `request_shutdown()` only flips uvicorn's exit flag, so it is safe to
    call from inside a request that the listener is still serving.
    """

    def __init__(self, app: FastAPI, *, host: str, port: int, certificates: CertificatePair):
        self._app = app
        self._host = host
        self._port = int(port)
        self._certificates = certificates
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._port))
        except OSError as e:
            sock.close()
            raise CallbackPortBusy(
                message=f"OAuth callback port {self._port} is already in use",
                code="port_in_use",
                cause=e,
            ) from e
        sock.setblocking(False)
        return sock

    async def start(self) -> None:
        config = uvicorn.Config(
            self._app,
            ssl_certfile=str(self._certificates.cert_path),
            ssl_keyfile=str(self._certificates.key_path),
            lifespan="off",
            log_config=None,
            access_log=False,
            timeout_keep_alive=1,
            timeout_graceful_shutdown=5,
        )
        # Load (SSL context included) before binding so bad cert material
        # raises here instead of inside the serving task.
        config.load()
        sock = self._bind()
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))
        while not self._server.started:
            if self._task.done():
                sock.close()
                exc = self._task.exception()
                raise SlackBridgeError(
                    message="OAuth callback listener failed to start",
                    code="listener_failed",
                    cause=exc if isinstance(exc, Exception) else None,
                )
            await asyncio.sleep(_STARTUP_POLL_S)
        log.info("oauth_listener_started", host=self._host, port=self._port)

    def request_shutdown(self) -> None:
        if self._server is not None:
            self._server.should_exit = True

    async def wait_closed(self) -> None:
        if self._task is None:
            return
        await asyncio.shield(self._task)
        log.info("oauth_listener_stopped", port=self._port)
