from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _Persisted(BaseModel):
    """Models stored in the JSON documents under the config dir (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Workspace(_Persisted):
    id: str
    name: str
    token: str = Field(repr=False)
    team_id: str
    token_type: Literal["bot", "user"] = "bot"
    user_id: str | None = None


class WorkspaceConfig(_Persisted):
    workspaces: list[Workspace] = Field(default_factory=list)


class OAuthAppCredentials(_Persisted):
    client_id: str
    client_secret: str = Field(repr=False)


class StoredUserToken(_Persisted):
    access_token: str = Field(repr=False)
    user_id: str
    team_id: str
    refresh_token: str | None = Field(default=None, repr=False)
    # Epoch milliseconds.
    expires_at: int | None = None


class ChannelKind(str, Enum):
    PUBLIC = "public_channel"
    PRIVATE = "private_channel"
    DIRECT = "im"
    GROUP_DM = "mpim"


class Channel(BaseModel):
    id: str
    name: str
    kind: ChannelKind
    is_member: bool = False
    member_count: int | None = None

    @property
    def is_direct(self) -> bool:
        return self.kind == ChannelKind.DIRECT


class Message(BaseModel):
    # Slack's "ts": decimal seconds string, unique per channel; id and sort key.
    ts: str
    text: str = ""
    user: str = "unknown"
    channel: str
    thread_ts: str | None = None
    subtype: str | None = None
    username: str | None = None
    bot_id: str | None = None


class SlackUser(BaseModel):
    id: str
    name: str
    real_name: str | None = None
    display_name: str | None = None
    email: str | None = None
    is_bot: bool = False


class UnreadConversation(BaseModel):
    channel: Channel
    messages: list[Message] = Field(default_factory=list)
    unread_count: int = 0
    workspace_id: str


class ConversationSummary(BaseModel):
    id: str
    name: str
    type: Literal["channel", "private_channel", "dm", "group_dm"]
    is_member: bool = False
    last_activity: str = "0"
    user_count: int = 0


class UserMatch(BaseModel):
    user: SlackUser
    dm_channel_id: str | None = None


class AuthIdentity(BaseModel):
    user_id: str
    team_id: str
    user: str | None = None
    team: str | None = None


class AuthResult(BaseModel):
    access_token: str = Field(repr=False)
    user_id: str
    team_id: str
