from __future__ import annotations

import json
import logging
from typing import Any, Optional, Sequence

from ditto.errors import DecodeError, DittoError, ToolNotFound
from ditto.tools.host import ToolHost
from ditto.types import ToolDescriptor

LOGGER = logging.getLogger(__name__)


def to_function_declaration(descriptor: ToolDescriptor) -> dict[str, Any]:
    properties = {
        name: {"type": param.type, "description": param.description}
        for name, param in descriptor.parameters.items()
    }
    return {
        "type": "function",
        "name": descriptor.unified_name,
        "description": descriptor.description,
        "parameters": {
            "type": "object",
            "properties": properties,
            "required": sorted(descriptor.required),
        },
    }


class ToolCatalog:
    def __init__(self, hosts: Sequence[ToolHost]):
        self._hosts = {host.host_id: host for host in hosts}
        # Longest id first so "a_b" wins over "a" for "a_b_tool".
        self._host_ids = sorted(self._hosts, key=len, reverse=True)
        self._cached: Optional[list[ToolDescriptor]] = None

    async def list_tools(self) -> list[ToolDescriptor]:
        if self._cached is not None:
            return list(self._cached)

        descriptors: list[ToolDescriptor] = []
        failed = False
        for host_id, host in self._hosts.items():
            try:
                descriptors.extend(await host.list_tools())
            except DittoError as exc:
                failed = True
                LOGGER.warning("Listing tools from host %s failed: %s", host_id, exc)

        if not failed:
            self._cached = descriptors
        return list(descriptors)

    def refresh(self) -> None:
        self._cached = None

    async def declarations(self) -> list[dict[str, Any]]:
        return [to_function_declaration(d) for d in await self.list_tools()]

    def resolve(self, unified_name: str) -> tuple[ToolHost, str]:
        if self._cached is not None and all(d.unified_name != unified_name for d in self._cached):
            raise ToolNotFound(unified_name)
        for host_id in self._host_ids:
            prefix = f"{host_id}_"
            if unified_name.startswith(prefix) and len(unified_name) > len(prefix):
                return self._hosts[host_id], unified_name[len(prefix) :]
        raise ToolNotFound(unified_name)

    async def invoke(self, unified_name: str, arguments_json: str) -> str:
        host, tool_name = self.resolve(unified_name)
        try:
            arguments = json.loads(arguments_json) if arguments_json.strip() else {}
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Malformed arguments for {unified_name}: {exc}") from exc
        if not isinstance(arguments, dict):
            raise DecodeError(f"Arguments for {unified_name} must be a JSON object")

        LOGGER.info("Invoking tool %s on host %s", tool_name, host.host_id)
        return await host.call_tool(tool_name, arguments)
