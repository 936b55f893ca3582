from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..errors import SlackBridgeError
from ..schemas import ChannelKind, UnreadConversation, Workspace
from ..services.workspace_service import WorkspaceService
from .registry.tool_registry import ToolRegistry


class _Args(BaseModel):
    # Agents send camelCase (workspaceId); snake_case is accepted too.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddWorkspaceArgs(_Args):
    id: str = Field(description="Unique identifier for the workspace")
    name: str = Field(description="Display name for the workspace")
    token: str = Field(repr=False, description="Slack Bot Token (xoxb-...) or User Token (xoxp-...)")
    team_id: str = Field(description="Slack Team ID")
    token_type: Literal["bot", "user"] = Field(default="bot", description="Type of token - bot or user")
    user_id: str | None = Field(default=None, description="User ID (required for user tokens)")


class AuthenticateArgs(_Args):
    workspace_id: str = Field(description="Unique identifier for the workspace (must match OAuth config file)")
    workspace_name: str = Field(description="Display name for the workspace")


class WorkspaceArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")


class ListWorkspacesArgs(_Args):
    pass


class UnreadArgs(_Args):
    workspace_id: str | None = Field(
        default=None, description="Specific workspace ID (if not provided, gets from all workspaces)"
    )


class GetMessagesArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    channel_id: str = Field(description="Channel ID to get messages from")
    limit: int = Field(default=50, ge=0, description="Maximum number of messages to retrieve")


class SendMessageArgs(_Args):
    workspace_id: str = Field(description="Workspace ID to send message to")
    channel_id: str = Field(description="Channel ID to send message to")
    text: str = Field(description="Message text to send")
    thread_ts: str | None = Field(default=None, description="Thread timestamp to reply to (optional)")


class GetUserInfoArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    user_id: str = Field(description="User ID to get information for")


class DmChannelArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    user_identifier: str = Field(description="User ID, username, or display name (@username or username)")


class FindUserArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    query: str = Field(description="Search query (name, username, or partial match)")


class RecentConversationsArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    limit: int = Field(default=20, ge=1, le=1000, description="Number of conversations to return")


class ResolveUserIdsArgs(_Args):
    workspace_id: str = Field(description="Workspace ID")
    user_ids: list[str] = Field(description="Array of user IDs to resolve")


TOOL_DESCRIPTIONS: dict[str, str] = {
    "add_workspace": "Add a new Slack workspace configuration (bot or user token)",
    "authenticate_user": "Authenticate a user through the Slack app's OAuth flow (bot and user scopes)",
    "authenticate_user_only": (
        "Authenticate as user-only (no bot required) - for apps configured without bot users"
    ),
    "remove_workspace": "Remove a Slack workspace configuration",
    "list_workspaces": "List all configured Slack workspaces",
    "get_unread_conversations": "Get unread conversations from DMs, channels, and groups",
    "get_channels": "Get all channels, DMs, and groups from a workspace",
    "get_messages": "Get messages from a specific channel",
    "send_message": "Send a message to a channel or DM",
    "get_users": "Get all users from a workspace",
    "get_user_info": "Get information about a specific user",
    "get_dm_channel_by_user": "Get DM channel ID for a specific user (by ID, username, or display name)",
    "find_user": "Smart user search with DM channel - find by name, username, or partial match",
    "get_recent_conversations": "Get recent conversations with user names and metadata",
    "resolve_user_ids": "Bulk resolve user IDs to user information",
}


def _format_ts(ts: str) -> str:
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    except (TypeError, ValueError, OverflowError):
        return ts


def _clip(text: str, n: int = 100) -> str:
    return text[:n] + ("..." if len(text) > n else "")


def _workspace_line(w: Workspace) -> str:
    line = f"- {w.name} ({w.id}) - Team: {w.team_id} - Type: {w.token_type}"
    return line + (f" - User: {w.user_id}" if w.user_id else "")


def _unread_block(conv: UnreadConversation, workspace_name: str) -> str:
    kind = conv.channel.kind
    if kind == ChannelKind.DIRECT:
        label = "DM"
    elif kind in (ChannelKind.PRIVATE, ChannelKind.GROUP_DM):
        label = "Group"
    else:
        label = "Channel"
    recent = "\n".join(f"  {m.user}: {_clip(m.text)}" for m in conv.messages[-3:])
    return (
        f"{label}: #{conv.channel.name} ({workspace_name})\n"
        f"Unread: {conv.unread_count} messages\n"
        f"Recent messages:\n{recent}\n"
    )


def _auth_started_text(auth_url: str, *, user_only: bool) -> str:
    heading = "User-Only OAuth Authentication Started" if user_only else "OAuth Authentication Started"
    scope_note = (
        "This will grant USER permissions only (no bot required)."
        if user_only
        else "This will grant the app's permissions and your user permissions."
    )
    return (
        f"{heading}\n\n"
        "Please visit this URL to authenticate with Slack:\n\n"
        f"{auth_url}\n\n"
        "Your browser may show a security warning for the self-signed certificate.\n"
        'Click "Advanced" then "Proceed to localhost (unsafe)" to continue.\n\n'
        f"{scope_note}\n"
        "After authorization, use 'list_workspaces' to verify authentication completed."
    )


def _json(doc: object) -> str:
    return json.dumps(doc, indent=2)


class SlackTools:
    """Handlers behind each tool name; each returns the text shown to the agent."""

    def __init__(self, service: WorkspaceService):
        self._service = service
        self._gateway = service.gateway

    async def add_workspace(self, args: AddWorkspaceArgs) -> str:
        ws = await self._service.add_workspace(
            Workspace(
                id=args.id,
                name=args.name,
                token=args.token,
                team_id=args.team_id,
                token_type=args.token_type,
                user_id=args.user_id,
            )
        )
        return f"Successfully added workspace: {ws.name} ({ws.id})"

    async def authenticate_user(self, args: AuthenticateArgs) -> str:
        url = await self._service.start_authentication(args.workspace_id, args.workspace_name, user_only=False)
        return _auth_started_text(url, user_only=False)

    async def authenticate_user_only(self, args: AuthenticateArgs) -> str:
        url = await self._service.start_authentication(args.workspace_id, args.workspace_name, user_only=True)
        return _auth_started_text(url, user_only=True)

    async def remove_workspace(self, args: WorkspaceArgs) -> str:
        ws = self._service.remove_workspace(args.workspace_id)
        return f"Successfully removed workspace: {ws.name}"

    async def list_workspaces(self, args: ListWorkspacesArgs) -> str:
        workspaces = self._service.list_workspaces()
        if not workspaces:
            return "No workspaces configured. Use add_workspace to add your first workspace."
        lines = "\n".join(_workspace_line(w) for w in workspaces)
        return f"Configured workspaces ({len(workspaces)}):\n{lines}"

    async def get_unread_conversations(self, args: UnreadArgs) -> str:
        convs = await self._service.unread_across(args.workspace_id)
        if not convs:
            return "No unread conversations found."
        blocks = "\n".join(_unread_block(c, self._service.workspace_name(c.workspace_id)) for c in convs)
        return f"Found {len(convs)} unread conversations:\n\n{blocks}"

    async def get_channels(self, args: WorkspaceArgs) -> str:
        channels = await self._gateway.list_channels(args.workspace_id)
        public = [c for c in channels if c.kind == ChannelKind.PUBLIC]
        private = [c for c in channels if c.kind in (ChannelKind.PRIVATE, ChannelKind.GROUP_DM)]
        dms = [c for c in channels if c.kind == ChannelKind.DIRECT]
        return "\n".join(
            [
                f"Channels ({len(public)}):",
                *(f"  #{c.name} ({c.id})" for c in public),
                "",
                f"Private Groups ({len(private)}):",
                *(f"  #{c.name} ({c.id})" for c in private),
                "",
                f"Direct Messages ({len(dms)}):",
                *(f"  @{c.name} ({c.id})" for c in dms),
            ]
        )

    async def get_messages(self, args: GetMessagesArgs) -> str:
        msgs = await self._gateway.get_messages(args.workspace_id, args.channel_id, limit=args.limit)
        if not msgs:
            return "No messages found in this channel."
        lines = "\n".join(f"[{_format_ts(m.ts)}] {m.user}: {m.text}" for m in msgs)
        return f"Messages (showing last {len(msgs)}):\n\n{lines}"

    async def send_message(self, args: SendMessageArgs) -> str:
        await self._gateway.send_message(args.workspace_id, args.channel_id, args.text, args.thread_ts)
        return f"Message sent successfully to channel {args.channel_id}"

    async def get_users(self, args: WorkspaceArgs) -> str:
        users = await self._gateway.list_users(args.workspace_id)
        lines = "\n".join(f"{u.real_name or u.name} (@{u.name}) - {u.id}" for u in users if not u.is_bot)
        return f"Users ({len(users)}):\n{lines}"

    async def get_user_info(self, args: GetUserInfoArgs) -> str:
        user = await self._gateway.get_user(args.workspace_id, args.user_id)
        if user is None:
            raise SlackBridgeError(
                message=f"User {args.user_id} not found", workspace_id=args.workspace_id, code="user_not_found"
            )
        return "\n".join(
            [
                f"Name: {user.real_name or user.name}",
                f"Username: @{user.name}",
                f"ID: {user.id}",
                f"Email: {user.email or 'Not available'}",
                f"Is Bot: {'Yes' if user.is_bot else 'No'}",
            ]
        )

    async def get_dm_channel_by_user(self, args: DmChannelArgs) -> str:
        channel_id = await self._gateway.resolve_dm_channel(args.workspace_id, args.user_identifier)
        if not channel_id:
            raise SlackBridgeError(
                message=f"Could not find DM channel for user: {args.user_identifier}",
                workspace_id=args.workspace_id,
                code="dm_not_found",
            )
        return _json({"channelId": channel_id, "userIdentifier": args.user_identifier})

    async def find_user(self, args: FindUserArgs) -> str:
        match = await self._gateway.find_user(args.workspace_id, args.query)
        if match is None:
            raise SlackBridgeError(
                message=f"No user found matching: {args.query}",
                workspace_id=args.workspace_id,
                code="user_not_found",
            )
        return _json({"user": match.user.model_dump(), "dmChannelId": match.dm_channel_id, "query": args.query})

    async def get_recent_conversations(self, args: RecentConversationsArgs) -> str:
        convs = await self._gateway.list_recent_conversations(args.workspace_id, args.limit)
        return _json(
            {
                "workspaceId": args.workspace_id,
                "count": len(convs),
                "conversations": [c.model_dump() for c in convs],
            }
        )

    async def resolve_user_ids(self, args: ResolveUserIdsArgs) -> str:
        resolved = await self._gateway.resolve_user_ids(args.workspace_id, args.user_ids)
        return _json(
            {
                "workspaceId": args.workspace_id,
                "requestedIds": args.user_ids,
                "resolvedCount": len(resolved),
                "users": {uid: u.model_dump() for uid, u in resolved.items()},
            }
        )


def build_tool_registry(service: WorkspaceService) -> ToolRegistry:
    tools = SlackTools(service)
    registry = ToolRegistry()
    for name, model in (
        ("add_workspace", AddWorkspaceArgs),
        ("authenticate_user", AuthenticateArgs),
        ("authenticate_user_only", AuthenticateArgs),
        ("remove_workspace", WorkspaceArgs),
        ("list_workspaces", ListWorkspacesArgs),
        ("get_unread_conversations", UnreadArgs),
        ("get_channels", WorkspaceArgs),
        ("get_messages", GetMessagesArgs),
        ("send_message", SendMessageArgs),
        ("get_users", WorkspaceArgs),
        ("get_user_info", GetUserInfoArgs),
        ("get_dm_channel_by_user", DmChannelArgs),
        ("find_user", FindUserArgs),
        ("get_recent_conversations", RecentConversationsArgs),
        ("resolve_user_ids", ResolveUserIdsArgs),
    ):
        registry.register_tool(name, TOOL_DESCRIPTIONS[name], model, getattr(tools, name))
    return registry
