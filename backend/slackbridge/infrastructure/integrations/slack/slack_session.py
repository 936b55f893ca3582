from __future__ import annotations

from typing import Any

import httpx

from ....errors import SlackApiError, SlackRequestFailed, SlackThrottled
from ....observability.logging import get_logger
from ....schemas import Workspace


log = get_logger("slack")


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    raw = str(resp.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        v = float(raw)
    except ValueError:
        return None
    return v if v >= 0 else None


class SlackSession:
    """
    Authenticated handle for one workspace's token.

    Sessions share the registry's HTTP client, so a replaced session can be
    dropped without closing anything.
    """

    def __init__(self, workspace: Workspace, *, http_client: httpx.AsyncClient, api_base_url: str):
        self._workspace = workspace
        self._http = http_client
        self._base = str(api_base_url or "").rstrip("/")

    @property
    def workspace(self) -> Workspace:
        return self._workspace

    @property
    def workspace_id(self) -> str:
        return self._workspace.id

    def __repr__(self) -> str:
        return f"SlackSession(workspace_id={self._workspace.id!r})"

    async def api_call(
        self,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        http_method: str = "GET",
    ) -> dict[str, Any]:
        """
        Call a Slack Web API method and return its decoded JSON payload.

        Raises SlackThrottled on 429 / `ratelimited`, SlackApiError on any
        other `ok: false`, SlackRequestFailed on transport or decoding errors.
        """
        m = str(method or "").strip().lstrip("/")
        if not m:
            raise SlackApiError(message="Invalid Slack API method", workspace_id=self.workspace_id, code="invalid_method")

        headers = {"Authorization": f"Bearer {self._workspace.token}"}
        try:
            if http_method.upper() == "POST":
                resp = await self._http.post(f"{self._base}/{m}", headers=headers, json=json or {})
            else:
                resp = await self._http.get(f"{self._base}/{m}", headers=headers, params=_clean(params))
        except httpx.HTTPError as e:
            log.warning("slack_api_request_failed", method=m, workspace_id=self.workspace_id, error=str(e) or type(e).__name__)
            raise SlackRequestFailed(
                message=f"Slack request failed ({m})",
                workspace_id=self.workspace_id,
                code="request_failed",
                retryable=True,
                cause=e,
            ) from e

        if resp.status_code == 429:
            raise SlackThrottled(
                message=f"Slack rate limited {m}",
                workspace_id=self.workspace_id,
                code="ratelimited",
                retryable=True,
                retry_after_s=_retry_after_seconds(resp),
            )

        try:
            data = resp.json() if resp.content else {}
        except ValueError as e:
            raise SlackRequestFailed(
                message=f"Slack returned an invalid response ({m}, HTTP {resp.status_code})",
                workspace_id=self.workspace_id,
                code="invalid_response",
                cause=e,
            ) from e
        if not isinstance(data, dict):
            raise SlackRequestFailed(
                message=f"Slack returned an invalid response ({m})",
                workspace_id=self.workspace_id,
                code="invalid_response",
            )

        if not bool(data.get("ok")):
            err = str(data.get("error") or "").strip() or "unknown_error"
            if err == "ratelimited":
                raise SlackThrottled(
                    message=f"Slack rate limited {m}",
                    workspace_id=self.workspace_id,
                    code=err,
                    retryable=True,
                    retry_after_s=_retry_after_seconds(resp),
                )
            raise SlackApiError(message=f"Slack {m} failed: {err}", workspace_id=self.workspace_id, code=err)
        return data


def _clean(params: dict[str, Any] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for k, v in (params or {}).items():
        if v is None:
            continue
        out[k] = ("true" if v else "false") if isinstance(v, bool) else v
    return out
