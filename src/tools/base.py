"""Tool contract: declared parameters, validation, and prompt description."""

from abc import ABC, abstractmethod
from typing import Any

import httpx

from src.errors import ToolExecutionError
from src.models import ToolParameter, ToolResult

_TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
    "object": (dict,),
    "array": (list, tuple),
}


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, list | tuple):
        return "array"
    if value is None:
        return "null"
    return type(value).__name__


def _matches(expected: str, value: Any) -> bool:
    # bool is an int subclass; never let True pass as a number.
    if expected == "number" and isinstance(value, bool):
        return False
    allowed = _TYPE_CHECKS.get(expected)
    return allowed is None or isinstance(value, allowed)


class BaseTool(ABC):
    """A research tool the registry can dispatch to."""

    name: str = ""
    description: str = ""
    source: str = ""
    parameters: tuple[ToolParameter, ...] = ()

    def validate(self, params: dict[str, Any]) -> list[str]:
        """Return validation errors for ``params``; empty when valid."""
        errors: list[str] = []
        for param in self.parameters:
            if param.name not in params or params[param.name] is None:
                if param.required:
                    errors.append(f"Missing required parameter: {param.name}")
                continue
            value = params[param.name]
            if not _matches(param.type, value):
                errors.append(f"Parameter {param.name} must be {param.type}, got {_type_name(value)}")
        return errors

    def with_defaults(self, params: dict[str, Any]) -> dict[str, Any]:
        filled = dict(params)
        for param in self.parameters:
            if filled.get(param.name) is None and param.default is not None:
                filled[param.name] = param.default
        return filled

    def to_prompt_string(self) -> str:
        lines = [f"{self.name}: {self.description}"]
        for param in self.parameters:
            flag = "required" if param.required else f"optional, default {param.default!r}"
            lines.append(f"  - {param.name} ({param.type}, {flag}): {param.description}")
        return "\n".join(lines)

    @abstractmethod
    async def execute(self, params: dict[str, Any]) -> ToolResult:
        """Run the tool with validated, default-filled params.

        Raises:
            ToolExecutionError: On upstream failure. The registry turns this
                into a failed ToolResult.
        """
        ...


async def fetch_json(
    client: httpx.AsyncClient,
    tool_name: str,
    method: str,
    url: str,
    **kwargs: Any,
) -> Any:
    """Send one HTTP request and decode its JSON body.

    Raises:
        ToolExecutionError: Transport error, non-2xx status, or a body that
            is not JSON.
    """
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.HTTPError as exc:
        raise ToolExecutionError(tool_name, f"request failed: {exc}") from exc
    if response.status_code >= 400:
        raise ToolExecutionError(tool_name, f"API error: {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise ToolExecutionError(tool_name, "response was not valid JSON") from exc
