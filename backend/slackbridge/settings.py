from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_config_dir() -> Path:
    return Path.home() / ".slack-mcp"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=None, extra="ignore")

    # Runtime
    environment: str = Field(default="development", validation_alias="SLACKBRIDGE_ENV")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    # Local persistence (workspaces, OAuth apps, user tokens, TLS material)
    config_dir: Path = Field(default_factory=_default_config_dir, validation_alias="SLACK_MCP_CONFIG_DIR")

    # Slack Web API
    slack_api_base_url: str = Field(default="https://slack.com/api", validation_alias="SLACK_API_BASE_URL")
    slack_authorize_url: str = Field(
        default="https://slack.com/oauth/v2/authorize", validation_alias="SLACK_AUTHORIZE_URL"
    )
    slack_http_timeout_s: float = Field(default=20.0, validation_alias="SLACK_HTTP_TIMEOUT_S")

    # Client-side admission control, per workspace.
    # Slack tier 3 methods allow ~50 req/min; stay at that conservative ceiling.
    rate_limit_max_requests: int = Field(default=50, validation_alias="SLACK_RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_s: float = Field(default=60.0, validation_alias="SLACK_RATE_LIMIT_WINDOW_S")
    rate_limit_poll_interval_s: float = Field(
        default=1.0, validation_alias="SLACK_RATE_LIMIT_POLL_INTERVAL_S"
    )
    # Used when Slack throttles without a Retry-After header.
    throttle_default_retry_after_s: float = Field(
        default=60.0, validation_alias="SLACK_THROTTLE_DEFAULT_RETRY_AFTER_S"
    )

    # OAuth callback listener (self-signed HTTPS on localhost)
    oauth_host: str = Field(default="127.0.0.1", validation_alias="OAUTH_CALLBACK_HOST")
    oauth_port: int = Field(default=3001, validation_alias="OAUTH_CALLBACK_PORT")
    oauth_callback_path: str = Field(default="/oauth/callback", validation_alias="OAUTH_CALLBACK_PATH")
    oauth_flow_timeout_s: float = Field(default=600.0, validation_alias="OAUTH_FLOW_TIMEOUT_S")

    @field_validator("config_dir", mode="after")
    @classmethod
    def _expand_config_dir(cls, v: Path) -> Path:
        return Path(v).expanduser()

    # ---- helpers / derived paths ----
    @property
    def normalized_environment(self) -> str:
        v = (self.environment or "").strip().lower()
        if v in ("prod", "production"):
            return "production"
        if v in ("dev", "development"):
            return "development"
        return v or "development"

    @property
    def config_path(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def oauth_apps_path(self) -> Path:
        return self.config_dir / "oauth-config.json"

    @property
    def user_tokens_path(self) -> Path:
        return self.config_dir / "user-tokens.json"

    @property
    def certificate_path(self) -> Path:
        return self.config_dir / "localhost.crt"

    @property
    def private_key_path(self) -> Path:
        return self.config_dir / "localhost.key"

    @property
    def oauth_redirect_uri(self) -> str:
        path = "/" + str(self.oauth_callback_path or "").lstrip("/")
        return f"https://localhost:{int(self.oauth_port)}{path}"

    def to_log_safe_dict(self) -> dict[str, object]:
        """
        A redacted representation safe for structured logs / diagnostics.

        Nothing in Settings is secret today; tokens and client secrets live in
        the JSON documents under config_dir and are never read here.
        """
        return {
            "environment": self.normalized_environment,
            "config_dir": str(self.config_dir),
            "slack": {
                "api_base_url": self.slack_api_base_url,
                "http_timeout_s": self.slack_http_timeout_s,
            },
            "rate_limit": {
                "max_requests": self.rate_limit_max_requests,
                "window_s": self.rate_limit_window_s,
                "poll_interval_s": self.rate_limit_poll_interval_s,
                "default_retry_after_s": self.throttle_default_retry_after_s,
            },
            "oauth": {
                "redirect_uri": self.oauth_redirect_uri,
                "bind_host": self.oauth_host,
                "flow_timeout_s": self.oauth_flow_timeout_s,
            },
        }


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
