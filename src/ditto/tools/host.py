from __future__ import annotations

import itertools
import logging
from typing import Any, Protocol

import httpx

from ditto.config import ToolHostSettings
from ditto.errors import DecodeError, ToolInvocationError, TransportError
from ditto.types import ToolDescriptor, ToolParameter

LOGGER = logging.getLogger(__name__)


class ToolHost(Protocol):
    host_id: str

    async def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str: ...


def descriptor_from_metadata(host_id: str, metadata: dict[str, Any]) -> ToolDescriptor:
    name = metadata.get("name")
    if not isinstance(name, str) or not name:
        raise DecodeError(f"Tool metadata from {host_id} is missing a name")

    schema = metadata.get("inputSchema") or {}
    if not isinstance(schema, dict):
        raise DecodeError(f"Tool {host_id}/{name} inputSchema must be an object")
    properties = schema.get("properties") or {}
    if not isinstance(properties, dict):
        raise DecodeError(f"Tool {host_id}/{name} properties must be an object")
    required = schema.get("required") or []
    if not isinstance(required, list):
        raise DecodeError(f"Tool {host_id}/{name} required must be a list")

    parameters: dict[str, ToolParameter] = {}
    for arg_name, arg_schema in properties.items():
        if not isinstance(arg_schema, dict):
            continue
        parameters[arg_name] = ToolParameter(
            type=str(arg_schema.get("type") or "string"),
            description=str(arg_schema.get("description") or ""),
        )

    return ToolDescriptor(
        host_id=host_id,
        tool_name=name,
        description=str(metadata.get("description") or ""),
        parameters=parameters,
        required=frozenset(r for r in required if isinstance(r, str)),
    )


def first_text_content(result: dict[str, Any]) -> str:
    for item in result.get("content") or []:
        if isinstance(item, dict) and item.get("type") == "text":
            text = item.get("text")
            return text if isinstance(text, str) else ""
    return ""


class HttpToolHost:
    """Tool host speaking JSON-RPC 2.0 (`tools/list`, `tools/call`) over HTTP."""

    def __init__(self, settings: ToolHostSettings):
        self.host_id = settings.id
        self._settings = settings
        self._ids = itertools.count(1)

    async def list_tools(self) -> list[ToolDescriptor]:
        result = await self._rpc("tools/list", {})
        tools = result.get("tools") or []
        return [descriptor_from_metadata(self.host_id, tool) for tool in tools if isinstance(tool, dict)]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> str:
        result = await self._rpc("tools/call", {"name": name, "arguments": arguments})
        if result.get("isError"):
            raise ToolInvocationError(
                f"Tool {self.host_id}/{name} reported an error: {first_text_content(result)}"
            )
        return first_text_content(result)

    async def _rpc(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        headers = {"Accept": "application/json", "Content-Type": "application/json"}

        async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
            try:
                response = await client.post(self._settings.url, headers=headers, json=payload)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise TransportError(
                    f"Tool host {self.host_id} {method} failed: {exc}",
                    status_code=exc.response.status_code,
                ) from exc
            except httpx.HTTPError as exc:
                raise TransportError(f"Tool host {self.host_id} {method} failed: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise DecodeError(f"Tool host {self.host_id} returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise DecodeError(f"Tool host {self.host_id} returned a non-object body")
        error = body.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else error
            raise ToolInvocationError(f"Tool host {self.host_id} {method} error: {message}")
        result = body.get("result")
        if not isinstance(result, dict):
            raise DecodeError(f"Tool host {self.host_id} {method} response missing result")
        LOGGER.debug("Tool host %s %s ok", self.host_id, method)
        return result
