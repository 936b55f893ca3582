"""
Tool registry: discovery and execution for the tool surface.

`call_tool` is the last error boundary before the host process. Typed
errors render as `Error: <message>`; anything else is logged with its
traceback and reported as an internal error.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ValidationError

from ...errors import SlackBridgeError
from ...observability.context import tool_call_id_var
from ...observability.logging import get_logger

log = get_logger("tool_registry")

ToolHandler = Callable[[Any], Awaitable[str]]


@dataclass(frozen=True, slots=True)
class ToolResult:
    text: str
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    description: str
    args_model: type[BaseModel]
    handler: ToolHandler


def tool_def(name: str, description: str, parameters: dict[str, Any]) -> dict[str, Any]:
    return {
        "name": name,
        "description": description,
        "inputSchema": parameters,
    }


def _validation_summary(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err.get("loc") or ()) or "arguments"
        parts.append(f"{loc}: {err.get('msg')}")
    return "; ".join(parts)


class ToolRegistry:
    """Registry for tools exposed to the calling agent."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register_tool(
        self,
        name: str,
        description: str,
        args_model: type[BaseModel],
        handler: ToolHandler,
    ) -> None:
        if name in self._tools:
            log.warning("tool_already_registered", tool_name=name, overwriting=True)
        self._tools[name] = ToolSpec(name=name, description=description, args_model=args_model, handler=handler)
        log.debug("tool_registered", tool_name=name)

    def get_tool(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            tool_def(spec.name, spec.description, spec.args_model.model_json_schema(by_alias=True))
            for spec in self._tools.values()
        ]

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> ToolResult:
        token = tool_call_id_var.set(uuid.uuid4().hex)
        try:
            spec = self._tools.get(name)
            if spec is None:
                return ToolResult(f"Error: Unknown tool: {name}", is_error=True)
            try:
                args = spec.args_model.model_validate(arguments or {})
            except ValidationError as e:
                return ToolResult(f"Error: Invalid arguments for {name}: {_validation_summary(e)}", is_error=True)

            started = time.monotonic()
            try:
                text = await spec.handler(args)
            except SlackBridgeError as e:
                log.warning(
                    "tool_call_failed",
                    tool_name=name,
                    workspace_id=e.workspace_id,
                    error=str(e),
                    error_code=e.code,
                )
                return ToolResult(f"Error: {e}", is_error=True)
            except Exception:
                log.exception("tool_call_crashed", tool_name=name)
                return ToolResult("Error: internal error", is_error=True)

            log.info("tool_call_completed", tool_name=name, duration_ms=int((time.monotonic() - started) * 1000))
            return ToolResult(text)
        finally:
            tool_call_id_var.reset(token)
