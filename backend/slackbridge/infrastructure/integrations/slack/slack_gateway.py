from __future__ import annotations

import asyncio
import time
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, TypeVar

from ....errors import (
    ChannelNotFound,
    RateLimited,
    SendFailed,
    SessionNotFound,
    SlackApiError,
    SlackBridgeError,
    SlackThrottled,
)
from ....observability.logging import get_logger
from ....schemas import (
    AuthIdentity,
    Channel,
    ChannelKind,
    ConversationSummary,
    Message,
    SlackUser,
    UnreadConversation,
    UserMatch,
)
from .slack_directory import find_user_in_directory, is_user_id, user_from_member, user_label
from .slack_rate_limiter import SlidingWindowRateLimiter
from .slack_registry import WorkspaceRegistry


log = get_logger("slack_gateway")

T = TypeVar("T")

# One initial attempt plus exactly one retry after a throttle.
_MAX_ATTEMPTS = 2

_HISTORY_PAGE_SIZE = 100
_LIST_PAGE_SIZE = 200
_MAX_LIST_PAGES = 20
_ALL_CONVERSATION_TYPES = "public_channel,private_channel,im,mpim"

# "Unread" heuristic: a conversation counts as unread when any of its
# _UNREAD_SAMPLE most recent messages is younger than _RECENT_ACTIVITY_S.
_UNREAD_FETCH = 10
_UNREAD_SAMPLE = 5
_RECENT_ACTIVITY_S = 60 * 60


def _ts_value(ts: Any) -> Decimal:
    try:
        return Decimal(str(ts or "0"))
    except InvalidOperation:
        return Decimal(0)


def _chronological(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: _ts_value(m.ts))


def _channel_kind(raw: dict[str, Any]) -> ChannelKind:
    if raw.get("is_im"):
        return ChannelKind.DIRECT
    if raw.get("is_mpim"):
        return ChannelKind.GROUP_DM
    if raw.get("is_private") or raw.get("is_group"):
        return ChannelKind.PRIVATE
    return ChannelKind.PUBLIC


def _channel_from(raw: Any, kind: ChannelKind | None = None) -> Channel | None:
    if not isinstance(raw, dict):
        return None
    cid = str(raw.get("id") or "").strip()
    if not cid:
        return None
    k = kind or _channel_kind(raw)
    if k == ChannelKind.DIRECT:
        # DMs have no name; the peer's user id is the best cheap label.
        name = str(raw.get("user") or "").strip() or cid
    else:
        name = str(raw.get("name") or "").strip() or cid
    members = raw.get("num_members")
    return Channel(
        id=cid,
        name=name,
        kind=k,
        is_member=True if k == ChannelKind.DIRECT else bool(raw.get("is_member")),
        member_count=int(members) if isinstance(members, int) else None,
    )


def _message_from(raw: Any, channel_id: str) -> Message | None:
    if not isinstance(raw, dict):
        return None
    ts = str(raw.get("ts") or "").strip()
    if not ts:
        return None
    return Message(
        ts=ts,
        text=str(raw.get("text") or ""),
        user=str(raw.get("user") or raw.get("bot_id") or "unknown"),
        channel=channel_id,
        thread_ts=raw.get("thread_ts"),
        subtype=raw.get("subtype"),
        username=raw.get("username"),
        bot_id=raw.get("bot_id"),
    )


def _messages_from(data: dict[str, Any], channel_id: str) -> list[Message]:
    raw = data.get("messages")
    msgs = (_message_from(m, channel_id) for m in (raw if isinstance(raw, list) else []))
    return [m for m in msgs if m is not None]


class SlackGateway:
    """
    Slack Web API operations across registered workspaces.

    Every remote call waits for rate-limiter admission first. Each public
    operation runs in a bounded loop: a throttle from Slack sleeps for the
    advertised Retry-After (default 60s) and reruns the operation once, a
    second throttle raises RateLimited. Other errors propagate immediately.
    """

    def __init__(
        self,
        registry: WorkspaceRegistry,
        rate_limiter: SlidingWindowRateLimiter,
        *,
        default_retry_after_s: float = 60.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._registry = registry
        self._limiter = rate_limiter
        self._default_retry_after_s = float(default_retry_after_s)
        self._sleep = sleep
        self._clock = clock

    # ---- plumbing ----

    async def _call(
        self,
        workspace_id: str,
        method: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        http_method: str = "GET",
    ) -> dict[str, Any]:
        # Fail fast on unknown workspaces before spending a rate-limit slot.
        self._registry.lookup(workspace_id)
        await self._limiter.acquire(workspace_id)
        # Re-resolve after waiting so a re-registration in between wins.
        session = self._registry.lookup(workspace_id)
        return await session.api_call(method, params=params, json=json, http_method=http_method)

    async def _with_throttle_retry(
        self,
        workspace_id: str,
        operation: str,
        fn: Callable[[], Awaitable[T]],
    ) -> T:
        attempt = 1
        while True:
            try:
                return await fn()
            except SlackThrottled as e:
                if attempt >= _MAX_ATTEMPTS:
                    log.warning("slack_throttle_retry_exhausted", workspace_id=workspace_id, operation=operation)
                    raise RateLimited(
                        message=f"Slack rate limit persisted for {operation}",
                        workspace_id=workspace_id,
                        code="ratelimited",
                        retryable=True,
                        cause=e,
                    ) from e
                delay = e.retry_after_s if e.retry_after_s is not None else self._default_retry_after_s
                log.warning(
                    "slack_throttled_retrying",
                    workspace_id=workspace_id,
                    operation=operation,
                    retry_after_s=delay,
                )
                await self._sleep(delay)
                attempt += 1

    async def _list_all(
        self,
        workspace_id: str,
        method: str,
        key: str,
        params: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Follow `response_metadata.next_cursor` through a listing."""
        out: list[dict[str, Any]] = []
        cursor = ""
        for _ in range(_MAX_LIST_PAGES):
            p = dict(params)
            if cursor:
                p["cursor"] = cursor
            data = await self._call(workspace_id, method, params=p)
            items = data.get(key)
            out.extend(i for i in (items if isinstance(items, list) else []) if isinstance(i, dict))
            meta = data.get("response_metadata")
            cursor = str((meta or {}).get("next_cursor") or "").strip() if isinstance(meta, dict) else ""
            if not cursor:
                break
        return out

    async def _fetch_users(self, workspace_id: str) -> list[SlackUser]:
        members = await self._list_all(workspace_id, "users.list", "members", {"limit": _LIST_PAGE_SIZE})
        return [u for u in (user_from_member(m) for m in members) if u is not None]

    async def _open_dm(self, workspace_id: str, user_id: str) -> str | None:
        data = await self._call(
            workspace_id, "conversations.open", json={"users": user_id}, http_method="POST"
        )
        ch = data.get("channel")
        if isinstance(ch, dict):
            return str(ch.get("id") or "").strip() or None
        return None

    # ---- connection ----

    async def verify_connection(self, workspace_id: str) -> AuthIdentity:
        """auth.test for the workspace's token; raises typed errors."""
        data = await self._with_throttle_retry(
            workspace_id, "verify_connection", lambda: self._call(workspace_id, "auth.test")
        )
        return AuthIdentity(
            user_id=str(data.get("user_id") or ""),
            team_id=str(data.get("team_id") or ""),
            user=data.get("user"),
            team=data.get("team"),
        )

    async def test_connection(self, workspace_id: str) -> bool:
        """Liveness check; never raises."""
        try:
            await self.verify_connection(workspace_id)
            return True
        except Exception as e:
            log.warning("slack_connection_test_failed", workspace_id=workspace_id, error=str(e) or type(e).__name__)
            return False

    # ---- channels & messages ----

    async def list_channels(self, workspace_id: str) -> list[Channel]:
        """Non-archived public channels, then private channels, then DMs."""

        async def run() -> list[Channel]:
            out: list[Channel] = []
            for kind in (ChannelKind.PUBLIC, ChannelKind.PRIVATE, ChannelKind.DIRECT):
                raws = await self._list_all(
                    workspace_id,
                    "conversations.list",
                    "channels",
                    {"types": kind.value, "exclude_archived": True, "limit": _LIST_PAGE_SIZE},
                )
                out.extend(ch for ch in (_channel_from(r, kind) for r in raws) if ch is not None)
            return out

        return await self._with_throttle_retry(workspace_id, "list_channels", run)

    async def get_messages(self, workspace_id: str, channel_id: str, limit: int | None = None) -> list[Message]:
        """
        Up to one history page (100) in ascending timestamp order; `limit`
        keeps only the most recent N.
        """

        async def run() -> list[Message]:
            try:
                info = await self._call(workspace_id, "conversations.info", params={"channel": channel_id})
                if not isinstance(info.get("channel"), dict):
                    raise ChannelNotFound(
                        message=f"Channel {channel_id} not found",
                        workspace_id=workspace_id,
                        code="channel_not_found",
                    )
                history = await self._call(
                    workspace_id,
                    "conversations.history",
                    params={"channel": channel_id, "limit": _HISTORY_PAGE_SIZE},
                )
            except SlackApiError as e:
                if e.code == "channel_not_found":
                    raise ChannelNotFound(
                        message=f"Channel {channel_id} not found",
                        workspace_id=workspace_id,
                        code=e.code,
                        cause=e,
                    ) from e
                raise
            # Slack returns newest first.
            msgs = _chronological(_messages_from(history, channel_id))
            if limit is not None:
                n = max(0, int(limit))
                msgs = msgs[len(msgs) - n:] if n else []
            return msgs

        return await self._with_throttle_retry(workspace_id, "get_messages", run)

    async def send_message(
        self,
        workspace_id: str,
        channel_id: str,
        text: str,
        thread_ts: str | None = None,
    ) -> str:
        """Post a message (optionally into a thread); returns the posted ts."""
        payload: dict[str, Any] = {"channel": channel_id, "text": text}
        if thread_ts and str(thread_ts).strip():
            payload["thread_ts"] = str(thread_ts).strip()

        try:
            data = await self._with_throttle_retry(
                workspace_id,
                "send_message",
                lambda: self._call(workspace_id, "chat.postMessage", json=payload, http_method="POST"),
            )
        except RateLimited as e:
            raise SendFailed(
                message="Failed to send message: ratelimited",
                workspace_id=workspace_id,
                code="ratelimited",
                cause=e,
            ) from e
        except SlackApiError as e:
            log.warning("slack_send_message_failed", workspace_id=workspace_id, channel=channel_id, error=e.code)
            raise SendFailed(
                message=f"Failed to send message: {e.code}",
                workspace_id=workspace_id,
                code=e.code,
                cause=e,
            ) from e
        return str(data.get("ts") or "")

    # ---- users ----

    async def list_users(self, workspace_id: str) -> list[SlackUser]:
        return await self._with_throttle_retry(workspace_id, "list_users", lambda: self._fetch_users(workspace_id))

    async def get_user(self, workspace_id: str, user_id: str) -> SlackUser | None:
        """users.info; None when the id is unknown or the lookup fails."""
        try:
            data = await self._with_throttle_retry(
                workspace_id,
                "get_user",
                lambda: self._call(workspace_id, "users.info", params={"user": user_id}),
            )
        except SessionNotFound:
            raise
        except SlackBridgeError as e:
            log.info("slack_user_lookup_failed", workspace_id=workspace_id, user_id=user_id, error=e.code)
            return None
        return user_from_member(data.get("user"))

    async def find_user_by_identifier(self, workspace_id: str, query: str) -> SlackUser | None:
        async def run() -> SlackUser | None:
            return find_user_in_directory(await self._fetch_users(workspace_id), query)

        return await self._with_throttle_retry(workspace_id, "find_user_by_identifier", run)

    async def find_user(self, workspace_id: str, query: str) -> UserMatch | None:
        """Directory match plus the DM channel with that user, when it can be opened."""

        async def run() -> UserMatch | None:
            user = find_user_in_directory(await self._fetch_users(workspace_id), query)
            if user is None:
                return None
            try:
                dm = await self._open_dm(workspace_id, user.id)
            except SlackApiError as e:
                log.info("slack_open_dm_failed", workspace_id=workspace_id, user_id=user.id, error=e.code)
                dm = None
            return UserMatch(user=user, dm_channel_id=dm)

        return await self._with_throttle_retry(workspace_id, "find_user", run)

    async def resolve_dm_channel(self, workspace_id: str, user_identifier: str) -> str | None:
        """
        DM channel id for a user id, handle or name; None when the user cannot
        be resolved or the DM cannot be opened. conversations.open returns the
        existing DM, so repeated calls yield the same id.
        """
        ident = str(user_identifier or "").strip()

        async def run() -> str | None:
            if is_user_id(ident):
                user_id = ident
            else:
                user = find_user_in_directory(await self._fetch_users(workspace_id), ident)
                if user is None:
                    return None
                user_id = user.id
            return await self._open_dm(workspace_id, user_id)

        try:
            return await self._with_throttle_retry(workspace_id, "resolve_dm_channel", run)
        except (SessionNotFound, RateLimited):
            raise
        except SlackBridgeError as e:
            log.info("slack_resolve_dm_failed", workspace_id=workspace_id, error=e.code)
            return None

    async def resolve_user_ids(self, workspace_id: str, user_ids: list[str]) -> dict[str, SlackUser]:
        """Resolve many ids with a single directory listing, never per-id lookups."""
        wanted = {str(i).strip() for i in (user_ids or []) if str(i).strip()}
        if not wanted:
            return {}
        users = await self._with_throttle_retry(
            workspace_id, "resolve_user_ids", lambda: self._fetch_users(workspace_id)
        )
        return {u.id: u for u in users if u.id in wanted}

    # ---- aggregations ----

    async def get_all_unread_conversations(self, workspace_id: str) -> list[UnreadConversation]:
        """
        Approximate "unread" conversations from recent activity.

        Slack's read cursors are not consulted. A member channel, or any DM,
        is reported when one of its 5 newest messages is less than an hour
        old. This misses unread messages older than an hour and reports
        recent messages that were already read.

        A channel that fails is skipped; a throttle restarts the whole
        aggregation once.
        """

        async def run() -> list[UnreadConversation]:
            listing = await self._list_all(
                workspace_id,
                "conversations.list",
                "channels",
                {"types": _ALL_CONVERSATION_TYPES, "exclude_archived": True, "limit": 1000},
            )
            cutoff = Decimal(str(self._clock() - _RECENT_ACTIVITY_S))
            out: list[UnreadConversation] = []
            for raw in listing:
                channel = _channel_from(raw)
                if channel is None:
                    continue
                if not channel.is_member and not channel.is_direct:
                    continue
                try:
                    history = await self._call(
                        workspace_id,
                        "conversations.history",
                        params={"channel": channel.id, "limit": _UNREAD_FETCH},
                    )
                except (SlackThrottled, SessionNotFound):
                    raise
                except SlackBridgeError as e:
                    log.warning(
                        "slack_unread_channel_skipped",
                        workspace_id=workspace_id,
                        channel=channel.id,
                        error=e.code,
                    )
                    continue

                newest = sorted(_messages_from(history, channel.id), key=lambda m: _ts_value(m.ts), reverse=True)
                recent = newest[:_UNREAD_SAMPLE]
                if not any(_ts_value(m.ts) > cutoff for m in recent):
                    continue
                msgs = _chronological(recent)
                out.append(
                    UnreadConversation(
                        channel=channel,
                        messages=msgs,
                        unread_count=len(msgs),
                        workspace_id=workspace_id,
                    )
                )
            return out

        return await self._with_throttle_retry(workspace_id, "get_all_unread_conversations", run)

    async def list_recent_conversations(self, workspace_id: str, limit: int = 20) -> list[ConversationSummary]:
        """
        Conversations sorted by last activity (newest first), DM peers named
        from one bulk directory load. Channels with no history sort last;
        channels whose history fails are skipped.
        """
        lim = max(1, min(1000, int(limit or 20)))

        async def run() -> list[ConversationSummary]:
            data = await self._call(
                workspace_id,
                "conversations.list",
                params={"types": _ALL_CONVERSATION_TYPES, "exclude_archived": True, "limit": lim},
            )
            raws = data.get("channels")
            directory = {u.id: u for u in await self._fetch_users(workspace_id)}

            out: list[ConversationSummary] = []
            for raw in raws if isinstance(raws, list) else []:
                channel = _channel_from(raw)
                if channel is None:
                    continue
                if channel.kind == ChannelKind.DIRECT:
                    peer = str(raw.get("user") or "").strip()
                    user = directory.get(peer)
                    name = f"@{user_label(user)}" if user else f"@{peer or channel.id}"
                    ctype = "dm"
                elif channel.kind == ChannelKind.GROUP_DM:
                    name, ctype = channel.name, "group_dm"
                elif channel.kind == ChannelKind.PRIVATE:
                    name, ctype = channel.name, "private_channel"
                else:
                    name, ctype = channel.name, "channel"

                try:
                    history = await self._call(
                        workspace_id,
                        "conversations.history",
                        params={"channel": channel.id, "limit": 1},
                    )
                except (SlackThrottled, SessionNotFound):
                    raise
                except SlackBridgeError as e:
                    log.warning(
                        "slack_recent_channel_skipped",
                        workspace_id=workspace_id,
                        channel=channel.id,
                        error=e.code,
                    )
                    continue
                latest = _messages_from(history, channel.id)
                out.append(
                    ConversationSummary(
                        id=channel.id,
                        name=name,
                        type=ctype,
                        is_member=bool(raw.get("is_member")),
                        last_activity=max((m.ts for m in latest), key=_ts_value) if latest else "0",
                        user_count=channel.member_count or 0,
                    )
                )
            out.sort(key=lambda c: _ts_value(c.last_activity), reverse=True)
            return out

        return await self._with_throttle_retry(workspace_id, "list_recent_conversations", run)
