"""Multi-workspace Slack client layer with a local OAuth callback flow."""

__version__ = "1.0.0"
