from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class SlackBridgeError(Exception):
    """Base error for workspace, Slack API and OAuth operations.

    The tool surface renders these as a short `Error: <message>` line; they
    never carry token values or client secrets.
    """

    message: str
    workspace_id: str | None = None
    code: str | None = None
    retryable: bool = False
    cause: Exception | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class SessionNotFound(SlackBridgeError):
    pass


@dataclass(slots=True)
class ChannelNotFound(SlackBridgeError):
    pass


@dataclass(slots=True)
class SendFailed(SlackBridgeError):
    pass


@dataclass(slots=True)
class SlackApiError(SlackBridgeError):
    pass


@dataclass(slots=True)
class SlackRequestFailed(SlackBridgeError):
    pass


@dataclass(slots=True)
class SlackThrottled(SlackBridgeError):
    """Slack asked us to back off (HTTP 429 or `error=ratelimited`)."""

    retry_after_s: float | None = None


@dataclass(slots=True)
class RateLimited(SlackBridgeError):
    """Throttling that survived the single bounded retry."""

    pass


@dataclass(slots=True)
class AuthorizationError(SlackBridgeError):
    pass


@dataclass(slots=True)
class TokenExchangeFailed(SlackBridgeError):
    pass


@dataclass(slots=True)
class TokenVerificationFailed(SlackBridgeError):
    pass


@dataclass(slots=True)
class AuthorizationTimeout(SlackBridgeError):
    pass


@dataclass(slots=True)
class CallbackPortBusy(SlackBridgeError):
    pass


@dataclass(slots=True)
class ConfigurationMissing(SlackBridgeError):
    pass


@dataclass(slots=True)
class ConfigStoreError(SlackBridgeError):
    pass
