"""Slack bridge MCP server (stdio transport).

Each tool forwards to the ToolRegistry, which validates arguments, maps
errors to text and binds a tool call id into the logging context.

Environment Variables:
    SLACK_MCP_CONFIG_DIR: Directory holding config.json, oauth-config.json,
        user-tokens.json and the localhost certificate (default ~/.slack-mcp).
    OAUTH_CALLBACK_PORT: Port of the local HTTPS OAuth callback (default 3001).
    LOG_LEVEL: Log level for the JSON log stream on stderr.
"""

from typing import Annotated, Any, Literal

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel

from .observability.logging import configure_logging, get_logger
from .services.workspace_service import WorkspaceService
from .settings import settings
from .tools.registry.tool_registry import ToolRegistry
from .tools.slack_tools import (
    TOOL_DESCRIPTIONS,
    AddWorkspaceArgs,
    AuthenticateArgs,
    DmChannelArgs,
    FindUserArgs,
    GetMessagesArgs,
    GetUserInfoArgs,
    RecentConversationsArgs,
    ResolveUserIdsArgs,
    SendMessageArgs,
    UnreadArgs,
    WorkspaceArgs,
    build_tool_registry,
)


log = get_logger("server")

mcp = FastMCP(
    name="slack-mcp-server",
    instructions=(
        "Multi-workspace Slack access: list channels, read and send messages, "
        "resolve users and summarize recent activity across configured workspaces. "
        "Workspaces are added with a token (add_workspace) or through OAuth "
        "(authenticate_user_only)."
    ),
)

# Lazy-initialized singletons
_service: WorkspaceService | None = None
_registry: ToolRegistry | None = None


def _get_registry() -> ToolRegistry:
    global _service, _registry
    if _registry is None:
        _service = WorkspaceService.from_settings(settings)
        _service.load_persisted()
        _registry = build_tool_registry(_service)
    return _registry


async def _call(name: str, arguments: dict[str, Any]) -> str:
    result = await _get_registry().call_tool(name, {k: v for k, v in arguments.items() if v is not None})
    if result.is_error:
        raise ToolError(result.text)
    return result.text


# ---------------------------------------------------------------------------
# MCP Tools
# ---------------------------------------------------------------------------


def _arg(model: type[BaseModel], name: str) -> Any:
    # Served parameters carry the registry model's camelCase alias and description.
    return Field(alias=to_camel(name), description=model.model_fields[name].description)


@mcp.tool(name="add_workspace", description=TOOL_DESCRIPTIONS["add_workspace"])
async def add_workspace(
    id: Annotated[str, _arg(AddWorkspaceArgs, "id")],
    name: Annotated[str, _arg(AddWorkspaceArgs, "name")],
    token: Annotated[str, _arg(AddWorkspaceArgs, "token")],
    team_id: Annotated[str, _arg(AddWorkspaceArgs, "team_id")],
    token_type: Annotated[Literal["bot", "user"], _arg(AddWorkspaceArgs, "token_type")] = "bot",
    user_id: Annotated[str | None, _arg(AddWorkspaceArgs, "user_id")] = None,
) -> str:
    return await _call(
        "add_workspace",
        {"id": id, "name": name, "token": token, "team_id": team_id, "token_type": token_type, "user_id": user_id},
    )


@mcp.tool(name="authenticate_user", description=TOOL_DESCRIPTIONS["authenticate_user"])
async def authenticate_user(
    workspace_id: Annotated[str, _arg(AuthenticateArgs, "workspace_id")],
    workspace_name: Annotated[str, _arg(AuthenticateArgs, "workspace_name")],
) -> str:
    return await _call("authenticate_user", {"workspace_id": workspace_id, "workspace_name": workspace_name})


@mcp.tool(name="authenticate_user_only", description=TOOL_DESCRIPTIONS["authenticate_user_only"])
async def authenticate_user_only(
    workspace_id: Annotated[str, _arg(AuthenticateArgs, "workspace_id")],
    workspace_name: Annotated[str, _arg(AuthenticateArgs, "workspace_name")],
) -> str:
    return await _call("authenticate_user_only", {"workspace_id": workspace_id, "workspace_name": workspace_name})


@mcp.tool(name="remove_workspace", description=TOOL_DESCRIPTIONS["remove_workspace"])
async def remove_workspace(workspace_id: Annotated[str, _arg(WorkspaceArgs, "workspace_id")]) -> str:
    return await _call("remove_workspace", {"workspace_id": workspace_id})


@mcp.tool(name="list_workspaces", description=TOOL_DESCRIPTIONS["list_workspaces"])
async def list_workspaces() -> str:
    return await _call("list_workspaces", {})


@mcp.tool(name="get_unread_conversations", description=TOOL_DESCRIPTIONS["get_unread_conversations"])
async def get_unread_conversations(
    workspace_id: Annotated[str | None, _arg(UnreadArgs, "workspace_id")] = None,
) -> str:
    return await _call("get_unread_conversations", {"workspace_id": workspace_id})


@mcp.tool(name="get_channels", description=TOOL_DESCRIPTIONS["get_channels"])
async def get_channels(workspace_id: Annotated[str, _arg(WorkspaceArgs, "workspace_id")]) -> str:
    return await _call("get_channels", {"workspace_id": workspace_id})


@mcp.tool(name="get_messages", description=TOOL_DESCRIPTIONS["get_messages"])
async def get_messages(
    workspace_id: Annotated[str, _arg(GetMessagesArgs, "workspace_id")],
    channel_id: Annotated[str, _arg(GetMessagesArgs, "channel_id")],
    limit: Annotated[int, _arg(GetMessagesArgs, "limit")] = 50,
) -> str:
    return await _call("get_messages", {"workspace_id": workspace_id, "channel_id": channel_id, "limit": limit})


@mcp.tool(name="send_message", description=TOOL_DESCRIPTIONS["send_message"])
async def send_message(
    workspace_id: Annotated[str, _arg(SendMessageArgs, "workspace_id")],
    channel_id: Annotated[str, _arg(SendMessageArgs, "channel_id")],
    text: Annotated[str, _arg(SendMessageArgs, "text")],
    thread_ts: Annotated[str | None, _arg(SendMessageArgs, "thread_ts")] = None,
) -> str:
    return await _call(
        "send_message",
        {"workspace_id": workspace_id, "channel_id": channel_id, "text": text, "thread_ts": thread_ts},
    )


@mcp.tool(name="get_users", description=TOOL_DESCRIPTIONS["get_users"])
async def get_users(workspace_id: Annotated[str, _arg(WorkspaceArgs, "workspace_id")]) -> str:
    return await _call("get_users", {"workspace_id": workspace_id})


@mcp.tool(name="get_user_info", description=TOOL_DESCRIPTIONS["get_user_info"])
async def get_user_info(
    workspace_id: Annotated[str, _arg(GetUserInfoArgs, "workspace_id")],
    user_id: Annotated[str, _arg(GetUserInfoArgs, "user_id")],
) -> str:
    return await _call("get_user_info", {"workspace_id": workspace_id, "user_id": user_id})


@mcp.tool(name="get_dm_channel_by_user", description=TOOL_DESCRIPTIONS["get_dm_channel_by_user"])
async def get_dm_channel_by_user(
    workspace_id: Annotated[str, _arg(DmChannelArgs, "workspace_id")],
    user_identifier: Annotated[str, _arg(DmChannelArgs, "user_identifier")],
) -> str:
    return await _call("get_dm_channel_by_user", {"workspace_id": workspace_id, "user_identifier": user_identifier})


@mcp.tool(name="find_user", description=TOOL_DESCRIPTIONS["find_user"])
async def find_user(
    workspace_id: Annotated[str, _arg(FindUserArgs, "workspace_id")],
    query: Annotated[str, _arg(FindUserArgs, "query")],
) -> str:
    return await _call("find_user", {"workspace_id": workspace_id, "query": query})


@mcp.tool(name="get_recent_conversations", description=TOOL_DESCRIPTIONS["get_recent_conversations"])
async def get_recent_conversations(
    workspace_id: Annotated[str, _arg(RecentConversationsArgs, "workspace_id")],
    limit: Annotated[int, _arg(RecentConversationsArgs, "limit")] = 20,
) -> str:
    return await _call("get_recent_conversations", {"workspace_id": workspace_id, "limit": limit})


@mcp.tool(name="resolve_user_ids", description=TOOL_DESCRIPTIONS["resolve_user_ids"])
async def resolve_user_ids(
    workspace_id: Annotated[str, _arg(ResolveUserIdsArgs, "workspace_id")],
    user_ids: Annotated[list[str], _arg(ResolveUserIdsArgs, "user_ids")],
) -> str:
    return await _call("resolve_user_ids", {"workspace_id": workspace_id, "user_ids": user_ids})


def main() -> None:
    configure_logging(level=settings.log_level)
    log.info("server_starting", settings=settings.to_log_safe_dict())
    _get_registry()
    mcp.run()


if __name__ == "__main__":
    main()
