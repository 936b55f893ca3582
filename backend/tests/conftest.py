from __future__ import annotations

import json
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable
from urllib.parse import parse_qsl

import httpx
import pytest

# Ensure `backend/` is on sys.path so `import slackbridge.*` works in tests.
BACKEND_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(BACKEND_DIR))

from slackbridge.errors import CallbackPortBusy  # noqa: E402
from slackbridge.infrastructure.tls.local_certificates import CertificatePair  # noqa: E402
from slackbridge.schemas import Workspace  # noqa: E402
from slackbridge.settings import Settings  # noqa: E402


SLACK_API = "https://slack.test/api"


@dataclass
class SlackCall:
    method: str
    args: dict[str, Any]
    authorization: str | None


class FakeSlack:
    """
    Slack Web API stand-in behind httpx.MockTransport.

    `on(method, *responses)` queues responses; the last one repeats. A
    response is a JSON dict (HTTP 200), an httpx.Response, or a callable
    `(args) -> dict | httpx.Response`.
    """

    def __init__(self):
        self.calls: list[SlackCall] = []
        self._routes: dict[str, list[Any]] = {}

    def on(self, method: str, *responses: Any) -> "FakeSlack":
        self._routes[method] = list(responses)
        return self

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c.method == method)

    def calls_to(self, method: str) -> list[SlackCall]:
        return [c for c in self.calls if c.method == method]

    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.url.path.rsplit("/", 1)[-1]
        if request.method == "POST":
            ctype = request.headers.get("content-type", "")
            raw = request.content.decode("utf-8") if request.content else ""
            if "json" in ctype:
                args = json.loads(raw or "{}")
            else:
                args = dict(parse_qsl(raw))
        else:
            args = dict(request.url.params)
        self.calls.append(SlackCall(method, args, request.headers.get("authorization")))

        queue = self._routes.get(method)
        if not queue:
            return httpx.Response(200, json={"ok": False, "error": "unknown_method"})
        resp = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(resp):
            resp = resp(args)
        if isinstance(resp, httpx.Response):
            return resp
        return httpx.Response(200, json=resp)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def throttled(retry_after: str | None = None) -> httpx.Response:
    headers = {"Retry-After": retry_after} if retry_after is not None else {}
    return httpx.Response(429, headers=headers, json={"ok": False, "error": "ratelimited"})


class RecordingSleep:
    """Async sleep replacement that returns immediately and remembers delays."""

    def __init__(self, on_sleep: Callable[[float], None] | None = None):
        self.delays: list[float] = []
        self._on_sleep = on_sleep

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        if self._on_sleep is not None:
            self._on_sleep(seconds)


class ManualClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class FakeListener:
    fail_with: Exception | None = None
    started: bool = False
    shutdown_requests: int = 0
    closed_waits: int = 0

    async def start(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.started = True

    def request_shutdown(self) -> None:
        self.shutdown_requests += 1

    async def wait_closed(self) -> None:
        self.closed_waits += 1


@dataclass
class ListenerFactory:
    fail_with: Exception | None = None
    listeners: list[FakeListener] = field(default_factory=list)
    bound: list[tuple[str, int]] = field(default_factory=list)

    def __call__(self, app, host: str, port: int, certificates: CertificatePair) -> FakeListener:
        listener = FakeListener(fail_with=self.fail_with)
        self.listeners.append(listener)
        self.bound.append((host, port))
        return listener

    @property
    def last(self) -> FakeListener:
        return self.listeners[-1]


class FakeCertificates:
    def __init__(self, tmp_path: Path):
        self.pair = CertificatePair(
            tmp_path / "localhost.crt",
            tmp_path / "localhost.key",
            datetime(2099, 1, 1, tzinfo=timezone.utc),
        )
        self.ensured = 0

    def ensure(self) -> CertificatePair:
        self.ensured += 1
        return self.pair


def make_workspace(id: str = "acme", *, token: str = "xoxb-acme", team_id: str = "T1", **kw: Any) -> Workspace:
    return Workspace(id=id, name=kw.pop("name", id.title()), token=token, team_id=team_id, **kw)


def make_settings(tmp_path: Path, **overrides: Any) -> Settings:
    env = {
        "SLACK_MCP_CONFIG_DIR": str(tmp_path),
        "SLACK_API_BASE_URL": SLACK_API,
        "SLACK_AUTHORIZE_URL": "https://slack.test/oauth/v2/authorize",
        "OAUTH_CALLBACK_PORT": 3001,
        "OAUTH_FLOW_TIMEOUT_S": 0,
    }
    env.update(overrides)
    return Settings(**env)


@pytest.fixture
def fake_slack() -> FakeSlack:
    return FakeSlack()


@pytest.fixture
def listener_factory() -> ListenerFactory:
    return ListenerFactory()


@pytest.fixture
def busy_listener_factory() -> ListenerFactory:
    return ListenerFactory(fail_with=CallbackPortBusy(message="OAuth callback port 3001 is already in use"))
