from __future__ import annotations

from contextvars import ContextVar

# Set per tool invocation so every log line of one call can be correlated.
tool_call_id_var: ContextVar[str | None] = ContextVar("tool_call_id", default=None)


def get_tool_call_id() -> str | None:
    return tool_call_id_var.get()
